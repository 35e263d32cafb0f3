from typing import List

from pydantic import BaseModel, Field


class DayRevenue(BaseModel):
    date: str
    revenue: float


class ProjectRevenue(BaseModel):
    projectId: str
    projectName: str
    revenue: float


class MeterRevenue(BaseModel):
    meterId: str
    roomNo: str
    projectName: str
    revenue: float


class DayEnergy(BaseModel):
    date: str
    energy: float


class MeterEnergy(BaseModel):
    meterId: str
    roomNo: str
    projectName: str
    energy: float


class LowBalanceMeter(BaseModel):
    meterId: str
    roomNo: str
    balance: float
    alarmThreshold: float


class ForcedModeMeter(BaseModel):
    meterId: str
    roomNo: str
    controlMode: str


class OfflineMeter(BaseModel):
    meterId: str
    roomNo: str
    projectName: str


class LivePower(BaseModel):
    meterId: str
    roomNo: str
    projectName: str
    power: float


class PowerPoint(BaseModel):
    timestamp: str
    power: float
    activeMeters: int


class MeterStatusCounts(BaseModel):
    normal: int = 0
    offline: int = 0
    alarm: int = 0
    total: int = 0


class FetchError(BaseModel):
    meterId: str
    kind: str
    reason: str


class AnalyticsData(BaseModel):
    """Response body of GET /api/admin/analytics. Money is whole naira."""

    totalRevenue: float = 0.0
    totalEnergy: float = 0.0
    livePower: float = 0.0
    activeMeters: int = 0
    totalMeters: int = 0
    meterStatus: MeterStatusCounts = Field(default_factory=MeterStatusCounts)

    revenueByDay: List[DayRevenue] = Field(default_factory=list)
    revenueByProject: List[ProjectRevenue] = Field(default_factory=list)
    revenueByMeter: List[MeterRevenue] = Field(default_factory=list)
    energyByDay: List[DayEnergy] = Field(default_factory=list)
    energyByMeter: List[MeterEnergy] = Field(default_factory=list)

    topConsumers: List[MeterEnergy] = Field(default_factory=list)
    topRevenue: List[MeterRevenue] = Field(default_factory=list)

    lowBalanceMeters: List[LowBalanceMeter] = Field(default_factory=list)
    forcedModeMeters: List[ForcedModeMeter] = Field(default_factory=list)
    offlineMeters: List[OfflineMeter] = Field(default_factory=list)
    livePowerByMeter: List[LivePower] = Field(default_factory=list)

    powerHistory: List[PowerPoint] = Field(default_factory=list)
    fetchErrors: List[FetchError] = Field(default_factory=list)
    projectsFailed: List[str] = Field(default_factory=list)


class AnalyticsPeriod(BaseModel):
    startDate: str
    endDate: str


class AnalyticsResponse(BaseModel):
    success: bool = True
    data: AnalyticsData
    period: AnalyticsPeriod
    loadTimeMs: int
