import pytest

from armogrid.services.iot_client import (
    ACCOUNT_USER,
    IotClient,
    IotClientError,
    format_range_end,
    format_range_start,
    hash_password,
    normalize_response,
)
from armogrid.tests.fakes import FakeHttpSession


def test_normalize_new_format_success():
    result = normalize_response({"success": "1", "errorCode": "", "errorMsg": "", "data": {"balance": "12"}})
    assert result.ok is True
    assert result.data == {"balance": "12"}


def test_normalize_new_format_failure_carries_message():
    result = normalize_response({"success": "0", "errorCode": "E01", "errorMsg": "token expired", "data": None})
    assert result.ok is False
    assert result.message == "token expired"


@pytest.mark.parametrize("code", [0, 200, "200"])
def test_normalize_legacy_success_codes(code):
    result = normalize_response({"code": code, "msg": "ok", "data": [1, 2]})
    assert result.ok is True
    assert result.data == [1, 2]


def test_normalize_legacy_failure():
    result = normalize_response({"code": 500, "msg": "meter offline"})
    assert result.ok is False
    assert result.message == "meter offline"


def test_normalize_unknown_shape():
    assert normalize_response({"foo": "bar"}).message == "Unexpected response format"
    assert normalize_response(["not", "a", "dict"]).ok is False


def test_hash_password_is_md5_hex():
    assert hash_password("password") == "5f4dcc3b5aa765d61d8327deb882cf99"


def test_range_bounds_cover_whole_days():
    assert format_range_start("2024-05-01") == "2024-05-01 00:00:00"
    assert format_range_end("2024-05-31") == "2024-05-31 23:59:59"


def _scripted(client, answers):
    sent = []

    async def fake_request(endpoint, method="POST", body=None, token=None):
        sent.append((endpoint, body, token))
        return answers.pop(0)

    client._request = fake_request
    return sent


@pytest.mark.asyncio
async def test_login_accepts_legacy_token_object():
    client = IotClient(base_url="http://iot.test")
    sent = _scripted(client, [{"code": 0, "msg": "ok", "data": {"token": "abc", "userId": 7}}])

    result = await client.login("room-101", hash_password("secret"), ACCOUNT_USER)

    assert result.ok is True
    assert result.data == "abc"
    assert sent[0][0] == "appUserLogin"
    assert sent[0][1] == {"username": "room-101", "password": hash_password("secret"), "type": ACCOUNT_USER}


@pytest.mark.asyncio
async def test_login_without_token_is_a_failure():
    client = IotClient(base_url="http://iot.test")
    _scripted(client, [{"success": "1", "data": ""}])

    result = await client.login("room-101", "x")

    assert result.ok is False


@pytest.mark.asyncio
async def test_project_meter_list_follows_pagination():
    client = IotClient(base_url="http://iot.test")
    sent = _scripted(
        client,
        [
            {"success": "1", "data": {"list": [{"id": 1}, {"id": 2}], "pagination": {"pageCount": 2}}},
            {"success": "1", "data": {"list": [{"id": 3}], "pagination": {"pageCount": 2}}},
        ],
    )

    result = await client.get_project_meter_list("p1", "tok")

    assert result.ok is True
    assert [m["id"] for m in result.data] == [1, 2, 3]
    assert [body["pageIndex"] for _, body, _ in sent] == [1, 2]
    assert all(token == "tok" for _, _, token in sent)


@pytest.mark.asyncio
async def test_meter_info_by_id_and_sale_power_bodies():
    client = IotClient(base_url="http://iot.test")
    sent = _scripted(
        client,
        [
            {"success": "1", "data": {"meterId": "9001", "balance": "12.5"}},
            {"success": "0", "errorMsg": "Meter offline"},
        ],
    )

    info = await client.get_meter_info_by_id("9001", "tok")
    sale = await client.sale_power("9001", 500000, 3, "1700000000000", "tok")

    assert info.data["balance"] == "12.5"
    assert sale.ok is False
    assert sale.message == "Meter offline"
    assert sent[0][:2] == ("MeterInfo", {"meterId": "9001"})
    assert sent[1][:2] == (
        "SalePower",
        {"meterId": "9001", "saleMoney": 500000, "buyType": 3, "saleId": "1700000000000"},
    )


@pytest.mark.asyncio
async def test_html_body_is_a_client_error():
    client = IotClient(base_url="http://iot.test")
    client.session = FakeHttpSession(lambda endpoint, body: (200, "<html>Bad Gateway</html>"))

    with pytest.raises(IotClientError):
        await client.get_meter_info("A1", "tok")


@pytest.mark.asyncio
async def test_http_error_status_is_a_client_error():
    client = IotClient(base_url="http://iot.test")
    client.session = FakeHttpSession(lambda endpoint, body: (503, "unavailable"))

    with pytest.raises(IotClientError):
        await client.get_project_list("tok")


@pytest.mark.asyncio
async def test_json_body_goes_through_normalization():
    client = IotClient(base_url="http://iot.test")
    session = FakeHttpSession(lambda endpoint, body: (200, {"success": "1", "data": {"balance": "3"}}))
    client.session = session

    result = await client.get_meter_info("A1", "tok")

    assert result.ok is True
    assert session.requests == [("getMeterInfo", {"roomNo": "A1"})]
