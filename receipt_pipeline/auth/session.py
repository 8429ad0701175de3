"""Caller identity for client-side operations."""
import asyncio
import logging
from typing import Optional

from supabase import Client

from receipt_pipeline.errors import Unauthenticated

logger = logging.getLogger(__name__)


class UserSession:
    """Resolves the authenticated user id, caching it once known.

    Either the id is supplied directly (already authenticated elsewhere) or
    it is looked up from an access token through the Supabase auth API.
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        access_token: Optional[str] = None,
        client: Optional[Client] = None,
    ):
        self._user_id = user_id
        self.access_token = access_token
        self.client = client

    async def require_user_id(self) -> str:
        """Return the caller's id or raise ``Unauthenticated``."""
        if self._user_id:
            return self._user_id

        if self.client is None or not self.access_token:
            raise Unauthenticated("User not authenticated.")

        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(
                None, self.client.auth.get_user, self.access_token
            )
        except Exception as e:
            logger.warning(f"Token validation failed: {e}")
            raise Unauthenticated("User not authenticated.") from e

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise Unauthenticated("User not authenticated.")
        self._user_id = str(user.id)
        return self._user_id

    def clear(self) -> None:
        self._user_id = None
        self.access_token = None
