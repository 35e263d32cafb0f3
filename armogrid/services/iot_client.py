# backend/armogrid/services/iot_client.py

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

import aiohttp

from armogrid.core.config import settings

logger = logging.getLogger("iot.client")

ACCOUNT_ADMIN = 0
ACCOUNT_USER = 1

API_PREFIX = "/basic/prepayment/app"


class IotClientError(Exception):
    """Transport failure or non-2xx answer from the IoT platform."""


class IotAuthError(IotClientError):
    """Login rejected, or no way to obtain a token."""


@dataclass
class IotResult:
    """Normalized upstream answer: either ok with data, or not ok with a message."""

    ok: bool
    data: Any = None
    message: str = ""

    @classmethod
    def success(cls, data: Any) -> "IotResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str) -> "IotResult":
        return cls(ok=False, message=message or "Unknown error")


def normalize_response(payload: Any) -> IotResult:
    """
    The platform mixes two envelopes:
      new:    {"success": "1" | "0", "errorCode", "errorMsg", "data"}
      legacy: {"code": 0 | 200 | ..., "msg", "data"}
    """
    if not isinstance(payload, dict):
        return IotResult.failure("Unexpected response format")

    if "success" in payload:
        if str(payload.get("success")) == "1":
            return IotResult.success(payload.get("data"))
        return IotResult.failure(payload.get("errorMsg") or payload.get("msg") or "Request failed")

    if "code" in payload:
        try:
            code = int(payload.get("code"))
        except (TypeError, ValueError):
            code = -1
        if code in (0, 200):
            return IotResult.success(payload.get("data"))
        return IotResult.failure(payload.get("msg") or f"Request failed with code {payload.get('code')}")

    return IotResult.failure("Unexpected response format")


def hash_password(password: str) -> str:
    """The platform's login expects the MD5 hex digest, never the plain password."""
    return hashlib.md5(password.encode("utf-8")).hexdigest()


def format_range_start(day: Union[str, date]) -> str:
    return f"{_as_day(day)} 00:00:00"


def format_range_end(day: Union[str, date]) -> str:
    return f"{_as_day(day)} 23:59:59"


def _as_day(day: Union[str, date]) -> str:
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    return str(day)[:10]


def _as_list(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get("list")
        if isinstance(items, list):
            return items
    return []


class IotClient:
    """
    Client for the prepaid meter platform.

    One aiohttp session per client; create the client at startup and call
    close() at shutdown.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        verify_ssl: Optional[bool] = None,
    ):
        self.base_url = (base_url or settings.IOT_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.IOT_REQUEST_TIMEOUT_SECONDS
        self.verify_ssl = settings.IOT_VERIFY_SSL if verify_ssl is None else verify_ssl
        self.session: Optional[aiohttp.ClientSession] = None

        logger.info(f"IotClient initialized with base URL: {self.base_url}")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(ssl=None if self.verify_ssl else False),
                headers={
                    "User-Agent": "ArmogridMeterAPI/1.0",
                    "Accept": "application/json",
                },
            )
        return self.session

    async def _request(
        self,
        endpoint: str,
        method: str = "POST",
        body: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body."""
        url = f"{self.base_url}{API_PREFIX}/{endpoint.lstrip('/')}"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["token"] = token

        session = await self._get_session()
        logger.debug(f"{method} {url}")
        try:
            async with session.request(method, url, headers=headers, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.error(f"[IoT] {method} {url} failed ({response.status}): {text[:200]}")
                    raise IotClientError(f"IoT API Error: HTTP {response.status}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"[IoT] {method} {url} returned a non-JSON body")
                    raise IotClientError("IoT API returned a non-JSON body") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[IoT] HTTP client error for {endpoint}: {e}")
            raise IotClientError(f"IoT API unreachable: {e}") from e

    async def _call(
        self,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        method: str = "POST",
    ) -> IotResult:
        return normalize_response(await self._request(endpoint, method=method, body=body, token=token))

    # -----------------------------
    # Auth
    # -----------------------------
    async def login(self, username: str, password_hash: str, account_type: int = ACCOUNT_USER) -> IotResult:
        """Login with an already MD5-hashed password. data is the token string."""
        result = await self._call(
            "appUserLogin",
            {"username": username, "password": password_hash, "type": account_type},
        )
        if not result.ok:
            return result
        # legacy accounts answer {"token": ..., "userId": ...}
        token = result.data.get("token") if isinstance(result.data, dict) else result.data
        if not token:
            return IotResult.failure("Login returned no token")
        return IotResult.success(str(token))

    # -----------------------------
    # Projects and meters
    # -----------------------------
    async def get_project_list(
        self, token: str, keyword: str = "", page_size: int = 100, page_index: int = 1
    ) -> IotResult:
        result = await self._call(
            "appProjectList",
            {"keyword": keyword, "pageSize": page_size, "pageIndex": page_index},
            token=token,
        )
        if result.ok:
            result.data = _as_list(result.data)
        return result

    async def get_project_meter_list(
        self, project_id: str, token: str, energy_id: str = "1", page_size: int = 100
    ) -> IotResult:
        """All meters of a project, following pagination."""

        def body(page: int) -> Dict[str, Any]:
            return {
                "keyword": "",
                "projectId": project_id,
                "energyId": energy_id,
                "pageSize": page_size,
                "pageIndex": page,
            }

        first = await self._call("appProjectMeterList", body(1), token=token)
        if not first.ok:
            return first

        meters = _as_list(first.data)
        pagination = first.data.get("pagination") if isinstance(first.data, dict) else None
        page_count = int((pagination or {}).get("pageCount") or 1)

        for page in range(2, page_count + 1):
            nxt = await self._call("appProjectMeterList", body(page), token=token)
            if not nxt.ok:
                logger.warning(f"[IoT] Page {page} of project {project_id} failed: {nxt.message}")
                continue
            meters.extend(_as_list(nxt.data))

        logger.debug(f"[IoT] Project {project_id}: {len(meters)} meters over {page_count} page(s)")
        return IotResult.success(meters)

    async def get_meter_info(self, room_no: str, token: str) -> IotResult:
        return await self._call("getMeterInfo", {"roomNo": room_no}, token=token)

    async def get_meter_info_by_id(self, meter_id: str, token: str) -> IotResult:
        return await self._call("MeterInfo", {"meterId": meter_id}, token=token)

    # -----------------------------
    # Control and credit
    # -----------------------------
    async def control_meter(self, meter_id: str, control_type: int, token: str) -> IotResult:
        return await self._call("MeterControl", {"meterId": meter_id, "type": int(control_type)}, token=token)

    async def sale_power(
        self, meter_id: str, sale_money: int, buy_type: int, sale_id: str, token: str
    ) -> IotResult:
        logger.info(f"[IoT] SalePower meter={meter_id} amount={sale_money} buyType={buy_type} saleId={sale_id}")
        return await self._call(
            "SalePower",
            {"meterId": meter_id, "saleMoney": sale_money, "buyType": buy_type, "saleId": sale_id},
            token=token,
        )

    # -----------------------------
    # History
    # -----------------------------
    async def get_meter_sales(self, meter_id: str, start: str, end: str, token: str) -> IotResult:
        """Sales of one meter between two 'YYYY-MM-DD HH:MM:SS' bounds."""
        result = await self._call(
            "SaleInfoByMeterId", {"meterId": meter_id, "startTime": start, "endTime": end}, token=token
        )
        if result.ok:
            result.data = _as_list(result.data)
        return result

    async def get_meter_energy_day(self, meter_id: str, start: str, end: str, token: str) -> IotResult:
        result = await self._call(
            "getMeterEnergyDay", {"meterId": meter_id, "startDate": start, "endDate": end}, token=token
        )
        if result.ok:
            result.data = _as_list(result.data)
        return result

    async def get_meter_energy_month(self, meter_id: str, start: str, end: str, token: str) -> IotResult:
        result = await self._call(
            "getMeterEnergyMonth", {"meterId": meter_id, "startDate": start, "endDate": end}, token=token
        )
        if result.ok:
            result.data = _as_list(result.data)
        return result

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
            logger.info("IotClient session closed")
