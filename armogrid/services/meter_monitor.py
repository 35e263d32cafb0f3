# backend/armogrid/services/meter_monitor.py

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from armogrid.core.config import Settings, settings as default_settings
from armogrid.models.meter import Connectivity, to_int
from armogrid.services.credential_store import CredentialStore
from armogrid.services.iot_client import IotClient
from armogrid.services.meter_sync import MeterSyncEngine
from armogrid.services.notifications import NotificationDispatcher
from armogrid.services.power_readings import PowerReadingLog

logger = logging.getLogger("meters.monitor")

OFFLINE_STATE_KEY = "offline_meters_state"

STATUS: Dict[str, Any] = {
    "last_sync": None,
    "last_sync_result": None,
    "last_offline_check": None,
    "last_prune": None,
    "last_error": None,
}


def is_offline(record: Dict[str, Any]) -> bool:
    snapshot = record.get("snapshot") or {}
    if snapshot.get("connectivity"):
        return snapshot["connectivity"] == Connectivity.OFFLINE.value
    meter_data = record.get("meter_data") or {}
    return to_int(meter_data.get("unConnnect", meter_data.get("unConnect")), default=0) == 1


def offline_alert(record: Dict[str, Any]) -> str:
    return (
        "METER OFFLINE ALERT\n"
        f"Meter: {(record.get('meter_data') or {}).get('meterId') or record.get('room_no')}\n"
        f"Room: {record.get('room_no') or 'N/A'}\n"
        f"Project: {record.get('project_name') or 'N/A'}"
    )


def bulk_offline_alert(count: int) -> str:
    return f"BULK OFFLINE ALERT\n{count} meters are offline. Please check the admin dashboard for details."


async def check_offline_meters(
    database: Any,
    dispatcher: NotificationDispatcher,
    bulk_threshold: int = 5,
) -> Dict[str, int]:
    """
    Alert on rooms that went offline since the previous check. The set of
    offline rooms is kept in admin_settings so restarts do not re-alert.
    """
    cursor = database.meter_credentials.find({"meter_data": {"$ne": None}})
    records: List[Dict[str, Any]] = await cursor.to_list(length=None)

    offline = [r for r in records if is_offline(r)]
    state = await database.admin_settings.find_one({"key": OFFLINE_STATE_KEY}) or {}
    previous = set(state.get("value") or [])
    newly_offline = [r for r in offline if r["room_no"] not in previous]

    alerts_sent = 0
    if len(newly_offline) > bulk_threshold:
        if await dispatcher.send_admin_alert(bulk_offline_alert(len(newly_offline))):
            alerts_sent = 1
    else:
        for record in newly_offline:
            if await dispatcher.send_admin_alert(offline_alert(record)):
                alerts_sent += 1

    await database.admin_settings.update_one(
        {"key": OFFLINE_STATE_KEY},
        {"$set": {"value": sorted(r["room_no"] for r in offline), "updated_at": datetime.now(timezone.utc)}},
        upsert=True,
    )

    summary = {
        "checked": len(records),
        "offline": len(offline),
        "newlyOffline": len(newly_offline),
        "alertsSent": alerts_sent,
    }
    STATUS["last_offline_check"] = datetime.now(timezone.utc).isoformat()
    logger.info(f"[Monitor] {summary}")
    return summary


async def run_scheduled_sync(
    database: Any,
    client: IotClient,
    dispatcher: NotificationDispatcher,
    cfg: Optional[Settings] = None,
) -> None:
    cfg = cfg or default_settings
    engine = MeterSyncEngine(CredentialStore(database.meter_credentials, client), client)
    try:
        summary = await engine.sync_all()
        STATUS["last_sync"] = datetime.now(timezone.utc).isoformat()
        STATUS["last_sync_result"] = {"synced": summary.synced, "failed": summary.failed}

        if cfg.OFFLINE_ALERTS_ENABLED:
            await check_offline_meters(database, dispatcher, cfg.OFFLINE_BULK_ALERT_THRESHOLD)
        STATUS["last_error"] = None
    except Exception as e:
        # keep the scheduler alive; the next run retries
        STATUS["last_error"] = str(e)
        logger.exception("[Monitor] Scheduled sync failed")


async def prune_power_readings(database: Any, retention_days: Optional[int]) -> int:
    deleted = await PowerReadingLog(database.power_readings).prune(retention_days)
    STATUS["last_prune"] = datetime.now(timezone.utc).isoformat()
    return deleted


def start_meter_scheduler(
    database: Any,
    client: IotClient,
    dispatcher: NotificationDispatcher,
    cfg: Optional[Settings] = None,
) -> AsyncIOScheduler:
    """Start background sync and retention jobs; each is off unless configured."""
    cfg = cfg or default_settings
    scheduler = AsyncIOScheduler(timezone=cfg.TIMEZONE)

    if cfg.METER_SYNC_INTERVAL_MINUTES > 0:
        scheduler.add_job(
            run_scheduled_sync,
            trigger=IntervalTrigger(minutes=int(cfg.METER_SYNC_INTERVAL_MINUTES)),
            args=[database, client, dispatcher, cfg],
            id="meter_sync",
            name="Meter Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

    if cfg.POWER_READING_RETENTION_DAYS:
        scheduler.add_job(
            prune_power_readings,
            trigger=CronTrigger(hour=3, minute=0),
            args=[database, cfg.POWER_READING_RETENTION_DAYS],
            id="power_readings_prune",
            name="Power Readings Retention",
            replace_existing=True,
        )

    scheduler.start()
    logger.info(
        f"[Monitor] Scheduler started: sync every {cfg.METER_SYNC_INTERVAL_MINUTES or 'never'} min, "
        f"retention {cfg.POWER_READING_RETENTION_DAYS or 'unbounded'} days"
    )
    return scheduler


def get_monitor_status(scheduler: Optional[AsyncIOScheduler]) -> Dict[str, Any]:
    return {
        "running": bool(scheduler and scheduler.running),
        "jobs": [job.id for job in scheduler.get_jobs()] if scheduler else [],
        **STATUS,
    }
