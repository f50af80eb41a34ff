# Per-engine bearer token cache
import asyncio
from typing import Awaitable, Callable, Optional

from core.config.settings import Settings
from core.logging import get_api_logger_safe

TokenProvider = Callable[[str], Awaitable[Optional[str]]]

logger = get_api_logger_safe("auth")


class TokenCache:
    """Memoizes one token for the engine's current account.

    Concurrent callers share a single provider call. A 401 from the snapshot
    source invalidates the token so the next cycle re-authenticates.
    """

    def __init__(self, provider: TokenProvider):
        self._provider = provider
        self._token: Optional[str] = None
        self._account_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> Optional[str]:
        return self._token

    async def get(self, account_id: str) -> Optional[str]:
        async with self._lock:
            if self._token is not None and self._account_id == account_id:
                return self._token

            token = await self._provider(account_id)
            if not token:
                logger.warning("Token provider returned no token", account_id=account_id)
                return None

            self._token = token
            self._account_id = account_id
            return token

    def invalidate(self) -> None:
        if self._token is not None:
            logger.info("Invalidating cached token", account_id=self._account_id)
        self._token = None
        self._account_id = None


def settings_token_provider(settings: Settings, client=None) -> TokenProvider:
    """Static token from settings when configured, else login with the account password."""
    static_token = settings.metaapi.access_token
    password = settings.metaapi.password

    async def provide(account_id: str) -> Optional[str]:
        if static_token:
            return static_token
        if client is None or not password:
            logger.error("No access token or password configured", account_id=account_id)
            return None
        return await client.login(
            account_id,
            password,
            settings.metaapi.device_id,
            settings.metaapi.device_type,
        )

    return provide
