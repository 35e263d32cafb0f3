# backend/armogrid/services/token_cache.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from armogrid.services.iot_client import (
    ACCOUNT_ADMIN,
    IotAuthError,
    IotClient,
    hash_password,
)

logger = logging.getLogger("iot.token_cache")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AdminTokenCache:
    """
    Holds the platform admin token for the lifetime of the application.

    Created once at startup and handed to every consumer, so tests can build
    their own instance with a fixed clock.
    """

    def __init__(
        self,
        static_token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.static_token = static_token
        self.username = username
        self.password = password
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock
        self.token: Optional[str] = None
        self.expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def is_valid(self) -> bool:
        return bool(self.token) and self.expires_at is not None and self.clock() < self.expires_at

    def seed(self, token: str, expires_at: Optional[datetime] = None) -> None:
        self.token = token
        self.expires_at = expires_at or (self.clock() + self.ttl)

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = None

    async def get_token(self, client: IotClient) -> str:
        if self.static_token:
            return self.static_token
        if self.is_valid():
            return self.token

        async with self._lock:
            # another caller may have logged in while we waited
            if self.is_valid():
                return self.token

            if not self.username or not self.password:
                raise IotAuthError("Admin credentials not configured")

            result = await client.login(self.username, hash_password(self.password), ACCOUNT_ADMIN)
            if not result.ok:
                raise IotAuthError(f"Failed to get admin token: {result.message}")

            self.seed(result.data)
            logger.info(f"Admin token refreshed, valid until {self.expires_at.isoformat()}")
            return self.token
