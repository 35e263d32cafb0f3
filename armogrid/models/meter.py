from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ControlType(IntEnum):
    OFF = 0
    ON = 1
    PREPAID = 2


class MeterStatus(str, Enum):
    NORMAL = "normal"
    OFFLINE = "offline"
    ALARM = "alarm"


class SwitchState(str, Enum):
    ON = "on"
    OFF = "off"


class Connectivity(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ControlMode(str, Enum):
    PREPAID = "prepaid"
    FORCED_ON = "forced_on"
    FORCED_OFF = "forced_off"


def to_float(value: Any, default: float = 0.0) -> float:
    """Upstream numbers arrive as str, int, float or null."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def resolve_control_mode(control_mode: Any, switch_sta: Any) -> ControlMode:
    # 1 and 2 are the forced modes; the switch state tells which way.
    if to_int(control_mode, default=0) in (1, 2):
        return ControlMode.FORCED_ON if to_int(switch_sta) == 1 else ControlMode.FORCED_OFF
    return ControlMode.PREPAID


class MeterTelemetrySnapshot(BaseModel):
    balance: float = 0.0
    reading: float = 0.0
    switch_state: SwitchState = SwitchState.OFF
    connectivity: Connectivity = Connectivity.OFFLINE
    control_mode: ControlMode = ControlMode.PREPAID
    power: float = 0.0

    @classmethod
    def from_meter_info(cls, data: Dict[str, Any]) -> "MeterTelemetrySnapshot":
        # getMeterInfo spells the connectivity flag "unConnnect"; the meter list uses "unConnect".
        offline_flag = data.get("unConnnect", data.get("unConnect", 1))
        return cls(
            balance=to_float(data.get("balance")),
            reading=to_float(data.get("epi", data.get("EPI"))),
            switch_state=SwitchState.ON if to_int(data.get("switchSta")) == 1 else SwitchState.OFF,
            connectivity=Connectivity.ONLINE if to_int(offline_flag, default=1) == 0 else Connectivity.OFFLINE,
            control_mode=resolve_control_mode(data.get("controlMode"), data.get("switchSta")),
            power=to_float(data.get("p", data.get("power"))),
        )


class MeterCredential(BaseModel):
    room_no: str
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    username: Optional[str] = None
    password_hash: Optional[str] = None
    iot_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    meter_data: Optional[Dict[str, Any]] = None
    snapshot: Optional[Dict[str, Any]] = None
    last_sync_at: Optional[datetime] = None


# -----------------------------
# Request bodies
# -----------------------------
class CredentialLinkIn(BaseModel):
    roomNo: str = Field(..., min_length=1)
    projectId: Optional[str] = None
    projectName: Optional[str] = None
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SyncIn(BaseModel):
    roomNo: Optional[str] = None


class ControlIn(BaseModel):
    type: ControlType
    roomNo: Optional[str] = None
