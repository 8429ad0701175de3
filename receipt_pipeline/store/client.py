"""Supabase client construction."""
import logging
from typing import Optional

from supabase import AsyncClient, Client, acreate_client, create_client

from receipt_pipeline.config import config

logger = logging.getLogger(__name__)


def _resolve_key(service_role: bool) -> Optional[str]:
    if service_role:
        return config.SUPABASE_SERVICE_ROLE
    return config.SUPABASE_ANON_KEY or config.SUPABASE_SERVICE_ROLE


def create_supabase_client(service_role: bool = True) -> Client:
    """Synchronous client; the server side uses the service role, clients the anon key."""
    key = _resolve_key(service_role)
    if not config.SUPABASE_URL or not key:
        raise ValueError("Supabase configuration missing")
    return create_client(config.SUPABASE_URL, key)


async def create_realtime_client() -> AsyncClient:
    """Async client, required for change-feed subscriptions."""
    key = _resolve_key(service_role=False)
    if not config.SUPABASE_URL or not key:
        raise ValueError("Supabase configuration missing")
    return await acreate_client(config.SUPABASE_URL, key)
