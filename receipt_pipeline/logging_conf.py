"""Logging setup shared by the CLI and the HTTP surface."""
import logging
import sys

from receipt_pipeline.config import config

LOG_FORMAT = "%(asctime)s  %(name)-36s  %(levelname)-5s  %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once."""
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
