"""Configuration management from environment variables."""
import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()


class Config:
    """Application configuration."""

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")
    SUPABASE_ANON_KEY: str | None = os.getenv("SUPABASE_ANON_KEY")
    RECEIPTS_TABLE: str = os.getenv("RECEIPTS_TABLE", "receipts")
    SETTINGS_TABLE: str = os.getenv("SETTINGS_TABLE", "user_settings")
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "receipts")

    # Worker functions
    FUNCTIONS_URL: str = os.getenv("FUNCTIONS_URL", "http://localhost:8000")
    FUNCTIONS_TOKEN: str | None = os.getenv("FUNCTIONS_TOKEN")

    # Extraction / comparison service
    GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    GEMINI_BASE_URL: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    )

    # HTTP
    TIMEOUT: int = int(os.getenv("TIMEOUT", "60"))
    MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "1"))

    # Pipeline
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "EUR")
    MAX_ALTERNATIVES: int = int(os.getenv("MAX_ALTERNATIVES", "3"))
    COMPARISON_RATE: float = float(os.getenv("COMPARISON_RATE", "1.0"))
    STALE_AFTER_MINUTES: int = int(os.getenv("STALE_AFTER_MINUTES", "15"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls, require_supabase: bool = True, require_functions: bool = False) -> None:
        """Validate required configuration."""
        errors = []
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE and not cls.SUPABASE_ANON_KEY:
                errors.append("Either SUPABASE_SERVICE_ROLE or SUPABASE_ANON_KEY is required")
        if require_functions and not cls.FUNCTIONS_URL:
            errors.append("FUNCTIONS_URL is required")
        if cls.MAX_ATTEMPTS < 1:
            errors.append("MAX_ATTEMPTS must be at least 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
