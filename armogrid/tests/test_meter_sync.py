from datetime import timedelta

import pytest

from armogrid.models.meter import Connectivity, ControlMode, SwitchState
from armogrid.services.credential_store import CredentialNotFound, CredentialStore
from armogrid.services.iot_client import IotAuthError, IotClientError, IotResult, hash_password
from armogrid.services.meter_sync import MeterSyncEngine, MeterSyncError, parse_snapshot
from armogrid.tests.fakes import Clock, FakeCollection, FakeIotClient

METER_INFO = {
    "meterId": "9001",
    "roomNo": "A1",
    "balance": "250.5",
    "epi": "1234.5",
    "switchSta": "1",
    "unConnnect": 0,
    "controlMode": "0",
    "p": "1.25",
}


def _engine(docs, clock=None):
    clock = clock or Clock()
    client = FakeIotClient()
    collection = FakeCollection(docs)
    store = CredentialStore(collection, client, clock=clock)
    return MeterSyncEngine(store, client), collection, client


def _linked(room_no, clock, **extra):
    doc = {
        "room_no": room_no,
        "project_id": "p1",
        "username": f"user-{room_no}",
        "password_hash": "hash",
        "iot_token": "tok",
        "token_expires_at": clock.now + timedelta(hours=2),
        "meter_data": {"balance": "1"},
        "snapshot": {"balance": 1.0},
        "last_sync_at": None,
    }
    doc.update(extra)
    return doc


def test_parse_snapshot_reads_platform_fields():
    snap = parse_snapshot(METER_INFO)
    assert snap.balance == 250.5
    assert snap.reading == 1234.5
    assert snap.switch_state == SwitchState.ON
    assert snap.connectivity == Connectivity.ONLINE
    assert snap.control_mode == ControlMode.PREPAID
    assert snap.power == 1.25


def test_parse_snapshot_forced_modes_and_offline():
    snap = parse_snapshot({"unConnnect": "1", "controlMode": "2", "switchSta": "0"})
    assert snap.connectivity == Connectivity.OFFLINE
    assert snap.control_mode == ControlMode.FORCED_OFF

    snap = parse_snapshot({"unConnect": 0, "controlMode": 1, "switchSta": 1})
    assert snap.connectivity == Connectivity.ONLINE
    assert snap.control_mode == ControlMode.FORCED_ON


@pytest.mark.asyncio
async def test_sync_meter_overwrites_snapshot():
    clock = Clock()
    engine, collection, client = _engine([_linked("A1", clock)], clock)
    client.meter_info["A1"] = METER_INFO

    outcome = await engine.sync_meter("A1")

    assert outcome.persisted is True
    assert outcome.snapshot.balance == 250.5
    stored = await collection.find_one({"room_no": "A1"})
    assert stored["meter_data"] == METER_INFO
    assert stored["snapshot"]["connectivity"] == "online"
    assert stored["last_sync_at"] == clock.now


@pytest.mark.asyncio
async def test_sync_meter_upstream_failure_keeps_previous_snapshot():
    clock = Clock()
    engine, collection, client = _engine([_linked("A1", clock)], clock)
    client.meter_info["A1"] = IotResult.failure("meter busy")

    with pytest.raises(MeterSyncError) as exc:
        await engine.sync_meter("A1")

    assert exc.value.reason == "meter busy"
    stored = await collection.find_one({"room_no": "A1"})
    assert stored["meter_data"] == {"balance": "1"}
    assert stored["last_sync_at"] is None
    assert client.count("get_meter_info") == 1


@pytest.mark.asyncio
async def test_sync_meter_transport_error_is_a_sync_error():
    clock = Clock()
    engine, _, client = _engine([_linked("A1", clock)], clock)
    client.meter_info["A1"] = IotClientError("timeout")

    with pytest.raises(MeterSyncError):
        await engine.sync_meter("A1")


@pytest.mark.asyncio
async def test_sync_meter_refreshes_expired_token_first():
    clock = Clock()
    engine, _, client = _engine([_linked("A1", clock, token_expires_at=clock.now - timedelta(seconds=1))], clock)
    client.logins["user-A1"] = IotResult.success("new-tok")
    client.meter_info["A1"] = METER_INFO

    await engine.sync_meter("A1")

    assert client.calls[0][0] == "login"
    assert client.calls[1] == ("get_meter_info", "A1", "new-tok")


@pytest.mark.asyncio
async def test_sync_meter_unknown_room():
    engine, _, _ = _engine([])
    with pytest.raises(CredentialNotFound):
        await engine.sync_meter("missing")


@pytest.mark.asyncio
async def test_sync_all_isolates_failures():
    clock = Clock()
    engine, _, client = _engine([_linked("A1", clock), _linked("A2", clock), _linked("A3", clock)], clock)
    client.meter_info["A1"] = METER_INFO
    client.meter_info["A2"] = IotClientError("reset")
    client.meter_info["A3"] = dict(METER_INFO, roomNo="A3")

    summary = await engine.sync_all()

    assert summary.synced == 2
    assert summary.failed == 1
    failed = [r for r in summary.results if not r["success"]]
    assert failed[0]["roomNo"] == "A2"


@pytest.mark.asyncio
async def test_link_credentials_rejects_bad_login():
    engine, collection, _ = _engine([])

    with pytest.raises(IotAuthError):
        await engine.link_credentials("A1", "user", "wrong")

    assert collection.docs == []


@pytest.mark.asyncio
async def test_link_credentials_stores_hash_and_first_snapshot():
    clock = Clock()
    engine, collection, client = _engine([], clock)
    client.logins["user"] = IotResult.success("tok")
    client.meter_info["A1"] = METER_INFO

    outcome = await engine.link_credentials("A1", "user", "secret", project_id="p1", project_name="Block A")

    assert outcome.snapshot.balance == 250.5
    stored = await collection.find_one({"room_no": "A1"})
    assert stored["password_hash"] == hash_password("secret")
    assert stored["iot_token"] == "tok"
    assert stored["token_expires_at"] == clock.now + timedelta(hours=24)
    assert stored["project_name"] == "Block A"
    assert stored["last_sync_at"] == clock.now


@pytest.mark.asyncio
async def test_fleet_sync_refreshes_expired_tokens_once_per_room():
    clock = Clock()
    expired = clock.now - timedelta(minutes=1)
    engine, _, client = _engine(
        [
            _linked("A1", clock, token_expires_at=expired),
            _linked("A2", clock, token_expires_at=expired),
        ],
        clock,
    )
    client.logins["user-A1"] = IotResult.success("tok-A1")
    client.meter_info["A1"] = METER_INFO
    client.meter_info["A2"] = METER_INFO

    summary = await engine.sync_all()

    assert summary.synced == 1
    assert summary.results[1] == {"roomNo": "A2", "success": False, "error": "Token refresh failed"}
    assert client.count("login") == 2
    assert ("get_meter_info", "A1", "tok-A1") in client.calls
    assert client.count("get_meter_info") == 1
