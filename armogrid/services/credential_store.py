# backend/armogrid/services/credential_store.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from armogrid.services.iot_client import ACCOUNT_USER, IotClient, IotClientError
from armogrid.services.token_cache import now_utc

logger = logging.getLogger("meters.credentials")

TOKEN_TTL = timedelta(hours=24)


class CredentialNotFound(Exception):
    def __init__(self, room_no: str):
        super().__init__(f"No credentials linked for room {room_no}")
        self.room_no = room_no


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def token_is_valid(record: Dict[str, Any], now: datetime) -> bool:
    """A stored token is usable only while now < token_expires_at."""
    expires_at = _aware(record.get("token_expires_at"))
    return bool(record.get("iot_token")) and expires_at is not None and now < expires_at


class CredentialStore:
    """
    meter_credentials collection: one document per room, keyed by room_no,
    holding the platform login, the cached session token and the last
    telemetry snapshot.
    """

    def __init__(
        self,
        collection: Any,
        client: IotClient,
        clock: Callable[[], datetime] = now_utc,
        token_ttl: timedelta = TOKEN_TTL,
    ):
        self.collection = collection
        self.client = client
        self.clock = clock
        self.token_ttl = token_ttl

    # -----------------------------
    # Reads
    # -----------------------------
    async def get(self, room_no: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"room_no": room_no})

    async def require(self, room_no: str) -> Dict[str, Any]:
        record = await self.get(room_no)
        if not record:
            raise CredentialNotFound(room_no)
        return record

    async def list_all(self, room_no: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"room_no": room_no} if room_no else {}
        cursor = self.collection.find(query).sort("room_no", 1)
        return await cursor.to_list(length=None)

    # -----------------------------
    # Token refresh
    # -----------------------------
    async def ensure_token(self, record: Dict[str, Any]) -> Optional[str]:
        """
        Return a usable token for the record, logging in again only when the
        stored one has expired. Login failures are logged and yield None.
        """
        if token_is_valid(record, self.clock()):
            return record["iot_token"]
        return await self.refresh_token(record)

    async def refresh_token(self, record: Dict[str, Any]) -> Optional[str]:
        now = self.clock()
        room_no = record.get("room_no")
        username = record.get("username")
        password_hash = record.get("password_hash")
        if not username or not password_hash:
            logger.warning(f"[Credentials] {room_no} has an expired token and no login to refresh it")
            return None

        try:
            result = await self.client.login(username, password_hash, ACCOUNT_USER)
        except IotClientError as e:
            logger.error(f"[Credentials] Failed to refresh token for {room_no}: {e}")
            return None

        if not result.ok:
            logger.error(f"[Credentials] Login rejected for {room_no}: {result.message}")
            return None

        token = result.data
        expires_at = now + self.token_ttl
        await self.collection.update_one(
            {"room_no": room_no},
            {"$set": {"iot_token": token, "token_expires_at": expires_at, "updated_at": now}},
        )
        record["iot_token"] = token
        record["token_expires_at"] = expires_at
        logger.info(f"[Credentials] Token refreshed for {room_no}")
        return token

    async def load_all_credentials(self) -> Dict[str, str]:
        """room_no -> token for every record that ends up with a usable token."""
        records = await self.list_all()

        async def _one(record: Dict[str, Any]):
            try:
                return record.get("room_no"), await self.ensure_token(record)
            except Exception as e:
                logger.error(f"[Credentials] Unexpected error refreshing {record.get('room_no')}: {e}")
                return record.get("room_no"), None

        results = await asyncio.gather(*[_one(r) for r in records])
        return {room_no: token for room_no, token in results if token}

    # -----------------------------
    # Writes
    # -----------------------------
    async def upsert_credentials(
        self,
        room_no: str,
        username: str,
        password_hash: str,
        token: str,
        project_id: str = "",
        project_name: Optional[str] = None,
        meter_data: Optional[Dict[str, Any]] = None,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = self.clock()
        fields = {
            "room_no": room_no,
            "project_id": project_id or "",
            "project_name": project_name,
            "username": username,
            "password_hash": password_hash,
            "iot_token": token,
            "token_expires_at": now + self.token_ttl,
            "last_sync_at": now if meter_data is not None else None,
            "meter_data": meter_data,
            "snapshot": snapshot,
            "updated_at": now,
        }
        await self.collection.update_one(
            {"room_no": room_no},
            {"$set": fields, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        return await self.require(room_no)

    async def save_snapshot(
        self,
        room_no: str,
        meter_data: Dict[str, Any],
        snapshot: Dict[str, Any],
        expected_last_sync_at: Optional[datetime],
    ) -> bool:
        """
        Overwrite the stored telemetry only if nobody else synced this room
        since we read it (compare-and-swap on last_sync_at).
        """
        now = self.clock()
        result = await self.collection.update_one(
            {"room_no": room_no, "last_sync_at": expected_last_sync_at},
            {"$set": {"meter_data": meter_data, "snapshot": snapshot, "last_sync_at": now, "updated_at": now}},
        )
        return result.matched_count > 0

    async def delete(self, room_no: str) -> bool:
        result = await self.collection.delete_one({"room_no": room_no})
        return result.deleted_count > 0
