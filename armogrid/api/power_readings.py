# backend/armogrid/api/power_readings.py

from typing import Optional

from fastapi import APIRouter, Depends, Query

from armogrid.api.analytics import parse_period
from armogrid.api.auth import admin_required
from armogrid.api.deps import get_power_log
from armogrid.services.power_readings import PowerReadingLog, serialize_reading

router = APIRouter()


@router.get("/power-readings")
async def get_power_readings(
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=5000),
    user=Depends(admin_required),
    power_log: PowerReadingLog = Depends(get_power_log),
):
    start, end = parse_period(startDate, endDate) if (startDate or endDate) else (None, None)
    rows = await power_log.history(start, end, limit)
    return {"success": True, "data": [serialize_reading(r) for r in rows]}
