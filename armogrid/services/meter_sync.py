# backend/armogrid/services/meter_sync.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from armogrid.models.meter import MeterTelemetrySnapshot
from armogrid.services.credential_store import CredentialNotFound, CredentialStore
from armogrid.services.iot_client import (
    ACCOUNT_USER,
    IotAuthError,
    IotClient,
    IotClientError,
    hash_password,
)

logger = logging.getLogger("meters.sync")


class MeterSyncError(Exception):
    """The platform did not give us fresh telemetry for a room."""

    def __init__(self, room_no: str, reason: str):
        super().__init__(f"{room_no}: {reason}")
        self.room_no = room_no
        self.reason = reason


@dataclass
class SyncOutcome:
    room_no: str
    snapshot: MeterTelemetrySnapshot
    meter_data: Dict[str, Any]
    last_sync_at: Optional[datetime]
    persisted: bool = True


@dataclass
class SyncSummary:
    synced: int = 0
    failed: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)


def parse_snapshot(meter_data: Dict[str, Any]) -> MeterTelemetrySnapshot:
    return MeterTelemetrySnapshot.from_meter_info(meter_data or {})


class MeterSyncEngine:
    def __init__(self, store: CredentialStore, client: IotClient):
        self.store = store
        self.client = client

    async def sync_meter(self, room_no: str) -> SyncOutcome:
        """
        Refresh one room's telemetry. On any upstream failure the stored
        snapshot is left as it was and MeterSyncError is raised; no retry.
        """
        record = await self.store.require(room_no)
        return await self._sync_record(record)

    async def _sync_record(self, record: Dict[str, Any], token: Optional[str] = None) -> SyncOutcome:
        room_no = record["room_no"]
        previous_sync_at = record.get("last_sync_at")

        token = token or await self.store.ensure_token(record)
        if not token:
            raise MeterSyncError(room_no, "Token refresh failed")

        try:
            result = await self.client.get_meter_info(room_no, token)
        except IotClientError as e:
            raise MeterSyncError(room_no, str(e)) from e

        if not result.ok or not isinstance(result.data, dict):
            raise MeterSyncError(room_no, result.message or "Failed to fetch meter info")

        snapshot = parse_snapshot(result.data)
        persisted = await self.store.save_snapshot(
            room_no, result.data, snapshot.model_dump(mode="json"), previous_sync_at
        )
        if not persisted:
            logger.info(f"[Sync] {room_no} was synced concurrently; keeping the newer stored snapshot")

        fresh = await self.store.get(room_no) or record
        return SyncOutcome(
            room_no=room_no,
            snapshot=snapshot,
            meter_data=result.data,
            last_sync_at=fresh.get("last_sync_at"),
            persisted=persisted,
        )

    async def sync_all(self, room_no: Optional[str] = None) -> SyncSummary:
        # a fleet sync refreshes every expired token up front, once per room
        tokens = None if room_no else await self.store.load_all_credentials()
        records = await self.store.list_all(room_no)
        summary = SyncSummary()
        if not records:
            return summary

        logger.info(f"[Sync] Syncing {len(records)} meters...")

        async def _one(record: Dict[str, Any]) -> Dict[str, Any]:
            try:
                token = None
                if tokens is not None:
                    token = tokens.get(record["room_no"])
                    if not token:
                        raise MeterSyncError(record["room_no"], "Token refresh failed")
                outcome = await self._sync_record(record, token)
                return {
                    "roomNo": outcome.room_no,
                    "success": True,
                    "data": outcome.snapshot.model_dump(mode="json"),
                }
            except MeterSyncError as e:
                logger.warning(f"[Sync] {e.room_no} failed: {e.reason}")
                return {"roomNo": e.room_no, "success": False, "error": e.reason}
            except Exception as e:
                logger.exception(f"[Sync] Unexpected error syncing {record.get('room_no')}")
                return {"roomNo": record.get("room_no"), "success": False, "error": str(e)}

        summary.results = list(await asyncio.gather(*[_one(r) for r in records]))
        summary.synced = sum(1 for r in summary.results if r["success"])
        summary.failed = len(summary.results) - summary.synced

        logger.info(f"[Sync] Complete: {summary.synced} synced, {summary.failed} failed")
        return summary

    async def link_credentials(
        self,
        room_no: str,
        username: str,
        password: str,
        project_id: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> SyncOutcome:
        """
        Verify a customer login against the platform, store it for the room
        and take the first telemetry snapshot.
        """
        password_hash = hash_password(password)
        login = await self.client.login(username, password_hash, ACCOUNT_USER)
        if not login.ok:
            raise IotAuthError(login.message or "Invalid credentials")

        token = login.data
        meter_data: Optional[Dict[str, Any]] = None
        try:
            info = await self.client.get_meter_info(room_no, token)
            if info.ok and isinstance(info.data, dict):
                meter_data = info.data
            else:
                logger.warning(f"[Credentials] Meter info for {room_no} unavailable: {info.message}")
        except IotClientError as e:
            logger.warning(f"[Credentials] Meter info for {room_no} unavailable: {e}")

        snapshot = parse_snapshot(meter_data) if meter_data is not None else None
        record = await self.store.upsert_credentials(
            room_no=room_no,
            username=username,
            password_hash=password_hash,
            token=token,
            project_id=project_id or "",
            project_name=project_name,
            meter_data=meter_data,
            snapshot=snapshot.model_dump(mode="json") if snapshot else None,
        )
        logger.info(f"[Credentials] Saved credentials for {room_no}")

        return SyncOutcome(
            room_no=room_no,
            snapshot=snapshot or MeterTelemetrySnapshot(),
            meter_data=meter_data or {},
            last_sync_at=record.get("last_sync_at"),
            persisted=meter_data is not None,
        )


__all__ = [
    "CredentialNotFound",
    "MeterSyncEngine",
    "MeterSyncError",
    "SyncOutcome",
    "SyncSummary",
    "parse_snapshot",
]
