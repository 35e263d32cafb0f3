# backend/armogrid/api/analytics.py

from datetime import date
from typing import List, Optional, Tuple
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from armogrid.api.auth import admin_required
from armogrid.api.deps import get_analytics_engine
from armogrid.models.analytics import AnalyticsPeriod, AnalyticsResponse
from armogrid.services.analytics_engine import AnalyticsEngine, AnalyticsUnavailable

router = APIRouter()
logger = logging.getLogger(__name__)


def parse_period(start_date: Optional[str], end_date: Optional[str], today: Optional[date] = None) -> Tuple[date, date]:
    """YYYY-MM-DD bounds; defaults to the first of the current month through today."""
    today = today or date.today()
    try:
        start = date.fromisoformat(start_date) if start_date else today.replace(day=1)
        end = date.fromisoformat(end_date) if end_date else today
    except ValueError:
        raise HTTPException(status_code=400, detail="Dates must be YYYY-MM-DD")
    if start > end:
        raise HTTPException(status_code=400, detail="startDate must not be after endDate")
    return start, end


def parse_project_ids(raw: Optional[str]) -> List[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    projectIds: Optional[str] = Query(default=None, description="Comma-separated project ids"),
    user=Depends(admin_required),
    engine: AnalyticsEngine = Depends(get_analytics_engine),
):
    start, end = parse_period(startDate, endDate)
    project_ids = parse_project_ids(projectIds)

    try:
        result = await engine.compute(start, end, project_ids or None)
    except AnalyticsUnavailable as e:
        logger.error(f"[Analytics] {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return AnalyticsResponse(
        success=True,
        data=result.data,
        period=AnalyticsPeriod(startDate=start.isoformat(), endDate=end.isoformat()),
        loadTimeMs=result.load_time_ms,
    )
