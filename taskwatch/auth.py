"""Session providers and remote client construction."""

import logging
from typing import Optional

from supabase import AsyncClient, acreate_client

from taskwatch.config import Settings, get_settings
from taskwatch.protocols import OwnerSession

logger = logging.getLogger(__name__)


class StaticSessionProvider:
    """Session provider with a fixed (or manually switched) owner."""

    def __init__(self, owner_id: Optional[str] = None, access_token: Optional[str] = None):
        self._session = OwnerSession(owner_id, access_token) if owner_id else None

    def set_owner(self, owner_id: Optional[str], access_token: Optional[str] = None) -> None:
        self._session = OwnerSession(owner_id, access_token) if owner_id else None

    async def get_current_session(self) -> Optional[OwnerSession]:
        return self._session


class SupabaseSessionProvider:
    """Reads the signed-in user from a Supabase async client.

    Args:
        client: Supabase ``AsyncClient``.
        settings: Source of stored access/refresh tokens for ``restore()``.
    """

    def __init__(self, client: AsyncClient, settings: Optional[Settings] = None):
        self._client = client
        self._settings = settings or get_settings()

    async def restore(self) -> bool:
        """Restore a stored session from settings.

        Returns:
            True if a session was restored.
        """
        access = self._settings.supabase_access_token
        refresh = self._settings.supabase_refresh_token
        if not access or not refresh:
            return False
        try:
            await self._client.auth.set_session(access, refresh)
        except Exception as e:
            logger.warning(f"Failed to restore stored session: {e}")
            return False
        return True

    async def get_current_session(self) -> Optional[OwnerSession]:
        try:
            session = await self._client.auth.get_session()
        except Exception as e:
            # Treated as signed out; sync passes skip until a session returns
            logger.debug(f"Failed to read auth session: {e}", exc_info=True)
            return None
        user = getattr(session, "user", None) if session else None
        owner_id = getattr(user, "id", None)
        if not owner_id:
            return None
        return OwnerSession(owner_id=str(owner_id), access_token=getattr(session, "access_token", None))


async def create_remote_client(settings: Optional[Settings] = None) -> AsyncClient:
    """Create the Supabase async client from settings.

    Raises:
        ValueError: The remote is not configured.
    """
    settings = settings or get_settings()
    if not settings.remote_configured:
        raise ValueError("TASKWATCH_SUPABASE_URL and TASKWATCH_SUPABASE_KEY must be set")
    return await acreate_client(settings.supabase_url, settings.supabase_key)
