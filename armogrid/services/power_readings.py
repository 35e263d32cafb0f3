# backend/armogrid/services/power_readings.py

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pymongo import ASCENDING

from armogrid.services.token_cache import now_utc

logger = logging.getLogger("meters.power_readings")

MAX_METERS_PER_READING = 20


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _day_end(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59, 999000), tzinfo=timezone.utc)


class PowerReadingLog:
    """
    Append-only time series of fleet-wide live power. Rows are only ever
    removed by prune(), which runs from the scheduler when a retention
    window is configured.
    """

    def __init__(self, collection: Any, clock: Callable[[], datetime] = now_utc):
        self.collection = collection
        self.clock = clock

    async def append(
        self,
        total_power: float,
        active_meters: int,
        readings_by_project: Dict[str, Dict[str, Any]],
        readings_by_meter: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        doc = {
            "recorded_at": self.clock(),
            "total_power": round(float(total_power), 3),
            "active_meters": int(active_meters),
            "readings_by_project": readings_by_project,
            "readings_by_meter": readings_by_meter[:MAX_METERS_PER_READING],
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.debug(f"[PowerReadings] Recorded {doc['total_power']} kW across {active_meters} meters")
        return doc

    async def history(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Readings in [start 00:00, end 23:59:59], oldest first."""
        query: Dict[str, Any] = {}
        bounds: Dict[str, Any] = {}
        if start:
            bounds["$gte"] = _day_start(start)
        if end:
            bounds["$lte"] = _day_end(end)
        if bounds:
            query["recorded_at"] = bounds

        cursor = self.collection.find(query).sort("recorded_at", ASCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    async def prune(self, retention_days: Optional[int]) -> int:
        if not retention_days:
            return 0
        cutoff = self.clock() - timedelta(days=retention_days)
        result = await self.collection.delete_many({"recorded_at": {"$lt": cutoff}})
        if result.deleted_count:
            logger.info(f"[PowerReadings] Pruned {result.deleted_count} readings older than {cutoff.isoformat()}")
        return result.deleted_count


def serialize_reading(doc: Dict[str, Any]) -> Dict[str, Any]:
    recorded_at = doc.get("recorded_at")
    return {
        "id": str(doc.get("_id")) if doc.get("_id") is not None else None,
        "recordedAt": recorded_at.isoformat() if isinstance(recorded_at, datetime) else recorded_at,
        "totalPower": doc.get("total_power", 0),
        "activeMeters": doc.get("active_meters", 0),
        "readingsByProject": doc.get("readings_by_project") or {},
        "readingsByMeter": doc.get("readings_by_meter") or [],
    }
