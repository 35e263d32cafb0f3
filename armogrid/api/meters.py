# backend/armogrid/api/meters.py

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from armogrid.api.analytics import parse_period
from armogrid.api.auth import admin_required
from armogrid.api.deps import get_admin_tokens, get_credential_store, get_iot_client, get_sync_engine
from armogrid.models.meter import ControlIn, ControlType, CredentialLinkIn, MeterCredential, SyncIn
from armogrid.services.credential_store import CredentialNotFound, CredentialStore, token_is_valid
from armogrid.services.iot_client import IotAuthError, IotClient, IotClientError
from armogrid.services.meter_sync import MeterSyncEngine, MeterSyncError, parse_snapshot
from armogrid.services.token_cache import AdminTokenCache, now_utc

router = APIRouter()
logger = logging.getLogger(__name__)

CONTROL_MESSAGES = {
    ControlType.OFF: "Meter turned off",
    ControlType.ON: "Meter turned on",
    ControlType.PREPAID: "Prepaid mode restored",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def credential_info(record: Dict[str, Any]) -> Dict[str, Any]:
    """Never exposes the password hash or the platform token."""
    cred = MeterCredential.model_validate(record)
    return {
        "linked": True,
        "roomNo": cred.room_no,
        "username": cred.username,
        "projectId": cred.project_id,
        "projectName": cred.project_name,
        "hasToken": token_is_valid(record, now_utc()),
        "lastSyncAt": _iso(cred.last_sync_at),
        "meterData": cred.meter_data,
        "snapshot": cred.snapshot,
    }


async def _admin_token(client: IotClient, tokens: AdminTokenCache) -> str:
    try:
        return await tokens.get_token(client)
    except IotAuthError as e:
        logger.error(f"[Meters] No admin token: {e}")
        raise HTTPException(status_code=502, detail="No admin token available")


# -----------------------------
# Sync
# -----------------------------
@router.post("/sync")
async def sync_meters(
    payload: Optional[SyncIn] = Body(default=None),
    user=Depends(admin_required),
    engine: MeterSyncEngine = Depends(get_sync_engine),
):
    room_no = payload.roomNo if payload else None

    if room_no:
        try:
            outcome = await engine.sync_meter(room_no)
        except CredentialNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except MeterSyncError as e:
            raise HTTPException(status_code=502, detail=e.reason)
        return {
            "success": True,
            "synced": 1,
            "failed": 0,
            "results": [{"roomNo": room_no, "success": True, "data": outcome.snapshot.model_dump(mode="json")}],
        }

    summary = await engine.sync_all()
    return {
        "success": True,
        "synced": summary.synced,
        "failed": summary.failed,
        "results": summary.results,
    }


@router.get("/sync")
async def list_synced_meters(
    user=Depends(admin_required),
    store: CredentialStore = Depends(get_credential_store),
):
    records = await store.list_all()
    data = {r["room_no"]: credential_info(r) for r in records}
    return {"success": True, "data": data, "count": len(data)}


# -----------------------------
# Credentials
# -----------------------------
@router.get("/{meterId}/credentials")
async def get_credentials(
    meterId: str,
    roomNo: Optional[str] = Query(default=None),
    user=Depends(admin_required),
    store: CredentialStore = Depends(get_credential_store),
):
    record = await store.get(roomNo or meterId)
    if not record:
        return {"success": True, "data": {"linked": False, "roomNo": roomNo or meterId}}
    return {"success": True, "data": credential_info(record)}


@router.post("/{meterId}/credentials")
async def link_credentials(
    meterId: str,
    payload: CredentialLinkIn,
    user=Depends(admin_required),
    engine: MeterSyncEngine = Depends(get_sync_engine),
):
    try:
        outcome = await engine.link_credentials(
            room_no=payload.roomNo.strip(),
            username=payload.username.strip(),
            password=payload.password,
            project_id=payload.projectId,
            project_name=payload.projectName,
        )
    except IotAuthError as e:
        raise HTTPException(status_code=401, detail=f"Invalid IoT credentials: {e}")
    except IotClientError as e:
        raise HTTPException(status_code=502, detail=str(e))

    logger.info(f"[Credentials] {user.get('username')} linked {payload.roomNo} (meter {meterId})")
    return {
        "success": True,
        "message": "Credentials saved and verified",
        "data": {
            "roomNo": outcome.room_no,
            "username": payload.username.strip(),
            "meterData": outcome.meter_data or None,
            "snapshot": outcome.snapshot.model_dump(mode="json") if outcome.persisted else None,
            "lastSyncAt": _iso(outcome.last_sync_at),
        },
    }


@router.delete("/{meterId}/credentials")
async def unlink_credentials(
    meterId: str,
    roomNo: Optional[str] = Query(default=None),
    user=Depends(admin_required),
    store: CredentialStore = Depends(get_credential_store),
):
    room_no = roomNo or meterId
    if not await store.delete(room_no):
        raise HTTPException(status_code=404, detail=f"No credentials linked for room {room_no}")
    logger.info(f"[Credentials] {user.get('username')} unlinked {room_no}")
    return {"success": True, "message": "Credentials removed"}


# -----------------------------
# Control and history
# -----------------------------
@router.post("/{meterId}/control")
async def control_meter(
    meterId: str,
    payload: ControlIn,
    user=Depends(admin_required),
    client: IotClient = Depends(get_iot_client),
    tokens: AdminTokenCache = Depends(get_admin_tokens),
    engine: MeterSyncEngine = Depends(get_sync_engine),
):
    token = await _admin_token(client, tokens)
    try:
        result = await client.control_meter(meterId, payload.type, token)
    except IotClientError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not result.ok:
        raise HTTPException(status_code=400, detail=result.message or "Failed to control meter")

    snapshot = None
    if payload.roomNo:
        try:
            outcome = await engine.sync_meter(payload.roomNo)
            snapshot = outcome.snapshot.model_dump(mode="json")
        except (CredentialNotFound, MeterSyncError) as e:
            logger.info(f"[Control] Post-control sync of {payload.roomNo} skipped: {e}")
    else:
        # no linked room given; read the meter back by id with the admin token
        try:
            info = await client.get_meter_info_by_id(meterId, token)
            if info.ok and isinstance(info.data, dict):
                snapshot = parse_snapshot(info.data).model_dump(mode="json")
        except IotClientError as e:
            logger.info(f"[Control] Post-control read of meter {meterId} skipped: {e}")

    logger.info(f"[Control] {user.get('username')} set meter {meterId} to {payload.type.name}")
    return {"success": True, "message": CONTROL_MESSAGES[payload.type], "snapshot": snapshot}


@router.get("/{meterId}/energy")
async def get_meter_energy(
    meterId: str,
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    granularity: str = Query(default="day", pattern="^(day|month)$"),
    user=Depends(admin_required),
    client: IotClient = Depends(get_iot_client),
    tokens: AdminTokenCache = Depends(get_admin_tokens),
):
    start, end = parse_period(startDate, endDate)
    token = await _admin_token(client, tokens)

    fetch = client.get_meter_energy_month if granularity == "month" else client.get_meter_energy_day
    try:
        result = await fetch(meterId, start.isoformat(), end.isoformat(), token)
    except IotClientError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not result.ok:
        raise HTTPException(status_code=400, detail=result.message or "Failed to fetch energy data")
    return {"success": True, "data": result.data or [], "granularity": granularity}
