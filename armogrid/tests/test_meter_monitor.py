import pytest

from armogrid.services.meter_monitor import (
    OFFLINE_STATE_KEY,
    check_offline_meters,
    get_monitor_status,
    is_offline,
    prune_power_readings,
)
from armogrid.tests.fakes import FakeDB


class AlertRecorder:
    def __init__(self, ok=True):
        self.alerts = []
        self.ok = ok

    async def send_admin_alert(self, text):
        self.alerts.append(text)
        return self.ok


def _record(room_no, offline):
    return {
        "room_no": room_no,
        "project_name": "Block A",
        "meter_data": {"meterId": f"m-{room_no}", "unConnnect": 1 if offline else 0},
    }


def test_is_offline_prefers_snapshot():
    assert is_offline({"snapshot": {"connectivity": "offline"}, "meter_data": {"unConnnect": 0}}) is True
    assert is_offline({"snapshot": {"connectivity": "online"}, "meter_data": {"unConnnect": 1}}) is False
    assert is_offline({"meter_data": {"unConnnect": "1"}}) is True
    assert is_offline({"meter_data": {}}) is False


@pytest.mark.asyncio
async def test_alerts_only_for_newly_offline_rooms():
    database = FakeDB()
    for doc in (_record("A1", True), _record("A2", False), {"room_no": "A3", "meter_data": None}):
        await database.meter_credentials.insert_one(doc)
    recorder = AlertRecorder()

    first = await check_offline_meters(database, recorder)
    second = await check_offline_meters(database, recorder)

    assert first == {"checked": 2, "offline": 1, "newlyOffline": 1, "alertsSent": 1}
    assert second["newlyOffline"] == 0
    assert len(recorder.alerts) == 1
    assert "m-A1" in recorder.alerts[0]
    state = await database.admin_settings.find_one({"key": OFFLINE_STATE_KEY})
    assert state["value"] == ["A1"]


@pytest.mark.asyncio
async def test_many_rooms_offline_send_one_bulk_alert():
    database = FakeDB()
    for i in range(7):
        await database.meter_credentials.insert_one(_record(f"R{i}", True))
    recorder = AlertRecorder()

    summary = await check_offline_meters(database, recorder, bulk_threshold=5)

    assert summary["alertsSent"] == 1
    assert recorder.alerts[0].startswith("BULK OFFLINE ALERT\n7 meters")


@pytest.mark.asyncio
async def test_prune_without_retention_keeps_everything():
    database = FakeDB()
    await database.power_readings.insert_one({"total_power": 1.0})

    assert await prune_power_readings(database, None) == 0
    assert len(database.power_readings.docs) == 1


def test_monitor_status_without_scheduler():
    status = get_monitor_status(None)
    assert status["running"] is False
    assert status["jobs"] == []
