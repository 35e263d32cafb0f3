# backend/armogrid/services/analytics_engine.py

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from armogrid.models.analytics import (
    AnalyticsData,
    DayEnergy,
    DayRevenue,
    FetchError,
    ForcedModeMeter,
    LivePower,
    LowBalanceMeter,
    MeterEnergy,
    MeterRevenue,
    MeterStatusCounts,
    OfflineMeter,
    PowerPoint,
    ProjectRevenue,
)
from armogrid.models.meter import ControlMode, MeterStatus, resolve_control_mode, to_float, to_int
from armogrid.services.iot_client import (
    IotAuthError,
    IotClient,
    IotClientError,
    format_range_end,
    format_range_start,
)
from armogrid.services.power_readings import PowerReadingLog
from armogrid.services.token_cache import AdminTokenCache

logger = logging.getLogger("analytics.engine")

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 10
DEFAULT_ALARM_THRESHOLD = 100.0
TOP_N = 10

KIND_SALES = "sales"
KIND_ENERGY = "energy"


class AnalyticsUnavailable(Exception):
    """The project list could not be fetched, so there is nothing to aggregate."""


@dataclass
class MeterRecord:
    meter_id: str
    room_no: str
    project_id: str
    project_name: str
    balance: float
    alarm_threshold: float
    online: bool
    control_mode: ControlMode
    power: float
    status: MeterStatus = MeterStatus.NORMAL


@dataclass
class FetchOutcome:
    """Result of one deferred per-meter call: either records, or the reason there are none."""

    meter_id: str
    kind: str
    ok: bool
    records: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class AnalyticsResult:
    data: AnalyticsData
    load_time_ms: int


def classify_status(balance: float, alarm_threshold: float, online: bool) -> MeterStatus:
    if not online:
        return MeterStatus.OFFLINE
    if 0 < balance < alarm_threshold:
        return MeterStatus.ALARM
    return MeterStatus.NORMAL


def extract_meter(
    raw: Dict[str, Any],
    project: Dict[str, Any],
    default_alarm_threshold: float = DEFAULT_ALARM_THRESHOLD,
) -> MeterRecord:
    meter_id = str(raw.get("id") or raw.get("meterId") or "")
    room_no = str(raw.get("roomNo") or raw.get("meterName") or raw.get("meterSn") or meter_id)
    project_id = str(raw.get("projectId") or project.get("id") or "")
    project_name = raw.get("projectName") or project.get("projectName") or "Unknown"

    balance = to_float(raw.get("balance"))
    alarm_threshold = to_float(raw.get("alarmA"), default=default_alarm_threshold)
    online = to_int(raw.get("unConnect", raw.get("unConnnect")), default=1) == 0

    meter = MeterRecord(
        meter_id=meter_id,
        room_no=room_no,
        project_id=project_id,
        project_name=project_name,
        balance=balance,
        alarm_threshold=alarm_threshold,
        online=online,
        control_mode=resolve_control_mode(raw.get("controlMode", raw.get("prepaidType")), raw.get("switchSta")),
        power=to_float(raw.get("p", raw.get("power"))),
    )
    meter.status = classify_status(balance, alarm_threshold, online)
    return meter


async def run_in_batches(
    calls: Sequence[Callable[[], Awaitable[T]]],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[T]:
    """
    Run deferred calls batch_size at a time. Calls inside a batch run
    concurrently; the next batch starts only after the whole batch resolved.
    Results keep the order of `calls`.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    results: List[T] = []
    for offset in range(0, len(calls), batch_size):
        batch = calls[offset : offset + batch_size]
        results.extend(await asyncio.gather(*[call() for call in batch]))
    return results


def _record_day(record: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value:
            return str(value)[:10]
    return None


def sale_amount(sale: Dict[str, Any]) -> float:
    """Whole naira of a sale, or 0 when the sale should not count."""
    if "success" in sale and to_int(sale.get("success")) != 1:
        return 0.0
    amount = to_float(sale.get("saleMoney", sale.get("money")))
    return amount if amount > 0 else 0.0


@dataclass
class _Accumulator:
    total_revenue: float = 0.0
    total_energy: float = 0.0
    revenue_by_day: Dict[str, float] = field(default_factory=dict)
    revenue_by_project: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    revenue_by_meter: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    energy_by_day: Dict[str, float] = field(default_factory=dict)
    energy_by_meter: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def reduce_sales(acc: _Accumulator, meter: MeterRecord, sales: Iterable[Dict[str, Any]]) -> None:
    for sale in sales:
        amount = sale_amount(sale)
        if amount <= 0:
            continue

        acc.total_revenue += amount

        day = _record_day(sale, "createTime", "saleDate")
        if day:
            acc.revenue_by_day[day] = acc.revenue_by_day.get(day, 0.0) + amount

        project = acc.revenue_by_project.setdefault(
            meter.project_id, {"projectName": meter.project_name, "revenue": 0.0}
        )
        project["revenue"] += amount

        entry = acc.revenue_by_meter.setdefault(
            meter.meter_id,
            {"roomNo": meter.room_no, "projectName": meter.project_name, "revenue": 0.0},
        )
        entry["revenue"] += amount


def reduce_energy(acc: _Accumulator, meter: MeterRecord, records: Iterable[Dict[str, Any]]) -> None:
    for record in records:
        energy = to_float(record.get("powerUse"))
        if energy <= 0:
            continue

        acc.total_energy += energy

        day = _record_day(record, "createTime", "date", "dataTime")
        if day:
            acc.energy_by_day[day] = acc.energy_by_day.get(day, 0.0) + energy

        entry = acc.energy_by_meter.setdefault(
            meter.meter_id,
            {"roomNo": meter.room_no, "projectName": meter.project_name, "energy": 0.0},
        )
        entry["energy"] += energy


def build_status_views(meters: List[MeterRecord], data: AnalyticsData) -> None:
    counts = MeterStatusCounts(total=len(meters))
    for meter in meters:
        if meter.status == MeterStatus.OFFLINE:
            counts.offline += 1
            data.offlineMeters.append(
                OfflineMeter(meterId=meter.meter_id, roomNo=meter.room_no, projectName=meter.project_name)
            )
        elif meter.status == MeterStatus.ALARM:
            counts.alarm += 1
            data.lowBalanceMeters.append(
                LowBalanceMeter(
                    meterId=meter.meter_id,
                    roomNo=meter.room_no,
                    balance=meter.balance,
                    alarmThreshold=meter.alarm_threshold,
                )
            )
        else:
            counts.normal += 1

        if meter.control_mode != ControlMode.PREPAID:
            data.forcedModeMeters.append(
                ForcedModeMeter(meterId=meter.meter_id, roomNo=meter.room_no, controlMode=meter.control_mode.value)
            )

        if meter.online:
            data.activeMeters += 1
            data.livePower += meter.power
            if meter.power > 0:
                data.livePowerByMeter.append(
                    LivePower(
                        meterId=meter.meter_id,
                        roomNo=meter.room_no,
                        projectName=meter.project_name,
                        power=meter.power,
                    )
                )

    data.meterStatus = counts
    data.totalMeters = len(meters)
    data.livePower = round(data.livePower, 3)
    data.lowBalanceMeters.sort(key=lambda m: m.balance)
    data.livePowerByMeter.sort(key=lambda m: m.power, reverse=True)


def build_aggregate_views(acc: _Accumulator, data: AnalyticsData) -> None:
    data.totalRevenue = acc.total_revenue
    data.totalEnergy = round(acc.total_energy, 3)

    data.revenueByDay = [DayRevenue(date=d, revenue=v) for d, v in sorted(acc.revenue_by_day.items())]
    data.energyByDay = [DayEnergy(date=d, energy=round(v, 3)) for d, v in sorted(acc.energy_by_day.items())]

    data.revenueByProject = sorted(
        (ProjectRevenue(projectId=pid, **entry) for pid, entry in acc.revenue_by_project.items()),
        key=lambda p: p.revenue,
        reverse=True,
    )
    data.revenueByMeter = sorted(
        (MeterRevenue(meterId=mid, **entry) for mid, entry in acc.revenue_by_meter.items()),
        key=lambda m: m.revenue,
        reverse=True,
    )
    data.energyByMeter = sorted(
        (MeterEnergy(meterId=mid, **entry) for mid, entry in acc.energy_by_meter.items()),
        key=lambda m: m.energy,
        reverse=True,
    )

    data.topConsumers = data.energyByMeter[:TOP_N]
    data.topRevenue = data.revenueByMeter[:TOP_N]


def _power_breakdown(data: AnalyticsData, meters: List[MeterRecord]) -> Dict[str, Dict[str, Any]]:
    project_of = {m.meter_id: m.project_id for m in meters}
    by_project: Dict[str, Dict[str, Any]] = {}
    for entry in data.livePowerByMeter:
        key = project_of.get(entry.meterId) or entry.projectName
        bucket = by_project.setdefault(key, {"projectName": entry.projectName, "power": 0.0, "meterCount": 0})
        bucket["power"] += entry.power
        bucket["meterCount"] += 1
    return by_project


class AnalyticsEngine:
    def __init__(
        self,
        client: IotClient,
        token_cache: AdminTokenCache,
        power_log: Optional[PowerReadingLog] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        default_alarm_threshold: float = DEFAULT_ALARM_THRESHOLD,
        power_history_limit: int = 500,
    ):
        self.client = client
        self.token_cache = token_cache
        self.power_log = power_log
        self.batch_size = batch_size
        self.default_alarm_threshold = default_alarm_threshold
        self.power_history_limit = power_history_limit

    # -----------------------------
    # Upstream fetches
    # -----------------------------
    async def _admin_token(self) -> str:
        try:
            return await self.token_cache.get_token(self.client)
        except IotAuthError as e:
            raise AnalyticsUnavailable(f"No admin token available: {e}") from e

    async def _fetch_projects(self, token: str, project_ids: Optional[Iterable[str]]) -> List[Dict[str, Any]]:
        try:
            result = await self.client.get_project_list(token)
        except IotClientError as e:
            raise AnalyticsUnavailable(f"Failed to fetch projects: {e}") from e
        if not result.ok:
            # a rejected admin token must not be reused by the next request
            self.token_cache.invalidate()
            raise AnalyticsUnavailable(f"Failed to fetch projects: {result.message}")

        projects = result.data or []
        wanted = {str(p) for p in project_ids or [] if str(p)}
        if wanted:
            projects = [p for p in projects if str(p.get("id")) in wanted]
        return projects

    async def _fetch_project_meters(self, project: Dict[str, Any], token: str) -> Optional[List[Dict[str, Any]]]:
        """None when the project could not be read; it then counts as zero meters."""
        project_id = str(project.get("id") or "")
        try:
            result = await self.client.get_project_meter_list(project_id, token)
        except IotClientError as e:
            logger.warning(f"[Analytics] Meter list for project {project_id} failed: {e}")
            return None
        if not result.ok:
            logger.warning(f"[Analytics] Meter list for project {project_id} failed: {result.message}")
            return None
        return result.data or []

    async def _fetch_history(self, meter: MeterRecord, kind: str, start: str, end: str, token: str) -> FetchOutcome:
        if kind == KIND_SALES:
            fetch = self.client.get_meter_sales
        else:
            fetch = self.client.get_meter_energy_day

        try:
            result = await fetch(meter.meter_id, start, end, token)
        except Exception as e:
            # one meter's failure must not abort its batch
            logger.warning(f"[Analytics] {kind} for meter {meter.meter_id} failed: {e}")
            return FetchOutcome(meter_id=meter.meter_id, kind=kind, ok=False, error=str(e) or type(e).__name__)

        if not result.ok:
            return FetchOutcome(meter_id=meter.meter_id, kind=kind, ok=False, error=result.message)
        return FetchOutcome(meter_id=meter.meter_id, kind=kind, ok=True, records=list(result.data or []))

    # -----------------------------
    # Power readings
    # -----------------------------
    async def _record_power(self, data: AnalyticsData, meters: List[MeterRecord]) -> None:
        if self.power_log is None or data.activeMeters == 0:
            return
        try:
            await self.power_log.append(
                total_power=data.livePower,
                active_meters=data.activeMeters,
                readings_by_project=_power_breakdown(data, meters),
                readings_by_meter=[m.model_dump() for m in data.livePowerByMeter],
            )
        except Exception as e:
            logger.error(f"[Analytics] Error recording power reading: {e}")

    async def _power_history(self, start: date, end: date) -> List[PowerPoint]:
        if self.power_log is None:
            return []
        try:
            rows = await self.power_log.history(start, end, self.power_history_limit)
        except Exception as e:
            logger.error(f"[Analytics] Error fetching power history: {e}")
            return []

        points = []
        for row in rows:
            recorded_at = row.get("recorded_at")
            points.append(
                PowerPoint(
                    timestamp=recorded_at.isoformat() if isinstance(recorded_at, datetime) else str(recorded_at),
                    power=to_float(row.get("total_power")),
                    activeMeters=to_int(row.get("active_meters")),
                )
            )
        return points

    # -----------------------------
    # Entry point
    # -----------------------------
    async def compute(
        self,
        start_date: date,
        end_date: date,
        project_ids: Optional[Iterable[str]] = None,
    ) -> AnalyticsResult:
        started = time.perf_counter()
        token = await self._admin_token()

        projects = await self._fetch_projects(token, project_ids)
        logger.info(f"[Analytics] {len(projects)} projects, {start_date} to {end_date}")

        meter_lists = await asyncio.gather(*[self._fetch_project_meters(p, token) for p in projects])

        data = AnalyticsData()
        meters: List[MeterRecord] = []
        for project, raw_meters in zip(projects, meter_lists):
            if raw_meters is None:
                data.projectsFailed.append(str(project.get("id") or ""))
                continue
            for raw in raw_meters:
                meters.append(extract_meter(raw, project, self.default_alarm_threshold))

        build_status_views(meters, data)

        start = format_range_start(start_date)
        end = format_range_end(end_date)
        calls: List[Callable[[], Awaitable[FetchOutcome]]] = []
        for meter in meters:
            if not meter.meter_id:
                continue
            for kind in (KIND_SALES, KIND_ENERGY):
                calls.append(lambda m=meter, k=kind: self._fetch_history(m, k, start, end, token))

        outcomes = await run_in_batches(calls, self.batch_size)

        by_id = {m.meter_id: m for m in meters}
        acc = _Accumulator()
        for outcome in outcomes:
            meter = by_id[outcome.meter_id]
            if not outcome.ok:
                data.fetchErrors.append(
                    FetchError(meterId=outcome.meter_id, kind=outcome.kind, reason=outcome.error or "unknown")
                )
                continue
            if outcome.kind == KIND_SALES:
                reduce_sales(acc, meter, outcome.records)
            else:
                reduce_energy(acc, meter, outcome.records)

        build_aggregate_views(acc, data)

        await self._record_power(data, meters)
        data.powerHistory = await self._power_history(start_date, end_date)

        load_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"[Analytics] {data.totalMeters} meters, revenue {data.totalRevenue}, "
            f"{len(data.fetchErrors)} fetch errors in {load_time_ms}ms"
        )
        return AnalyticsResult(data=data, load_time_ms=load_time_ms)
