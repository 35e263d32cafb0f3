import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone

from bson import ObjectId
from pymongo import ReturnDocument

from armogrid.services.iot_client import IotResult


# ---------------------------------------------------------------------------
# Mongo
# ---------------------------------------------------------------------------

def _get(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _matches_value(actual, expected):
    if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
        for op, arg in expected.items():
            if op == "$ne" and actual == arg:
                return False
            if op == "$in" and actual not in arg:
                return False
            if op == "$exists" and (actual is not None) != bool(arg):
                return False
            if op in ("$gt", "$gte", "$lt", "$lte"):
                if actual is None:
                    return False
                if op == "$gt" and not actual > arg:
                    return False
                if op == "$gte" and not actual >= arg:
                    return False
                if op == "$lt" and not actual < arg:
                    return False
                if op == "$lte" and not actual <= arg:
                    return False
        return True
    # {field: None} matches a missing field, like Mongo
    return actual == expected


def matches(doc, query):
    for key, expected in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in expected):
                return False
            continue
        if not _matches_value(_get(doc, key), expected):
            return False
    return True


class Result:
    def __init__(self, matched_count=0, modified_count=0, deleted_count=0, inserted_id=None, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.deleted_count = deleted_count
        self.inserted_id = inserted_id
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key, direction=1):
        present = [d for d in self._docs if _get(d, key) is not None]
        missing = [d for d in self._docs if _get(d, key) is None]
        present.sort(key=lambda d: _get(d, key), reverse=direction == -1)
        self._docs = present + missing
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs
        if self._limit:
            docs = docs[: self._limit]
        if length:
            docs = docs[:length]
        return [copy.deepcopy(d) for d in docs]


class FakeCollection:
    """In-memory stand-in for the motor collection API the services use."""

    def __init__(self, docs=None):
        self.docs = []
        self.indexes = []
        for doc in docs or []:
            self._insert(doc)

    def _insert(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return doc

    def _first(self, query):
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    @staticmethod
    def _apply(doc, update, inserting=False):
        for key, value in (update.get("$set") or {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in (update.get("$setOnInsert") or {}).items():
                doc[key] = copy.deepcopy(value)
        for key in (update.get("$unset") or {}):
            doc.pop(key, None)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return "_".join(k for k, _ in keys)

    async def find_one(self, query=None):
        doc = self._first(query)
        return copy.deepcopy(doc) if doc else None

    def find(self, query=None):
        return FakeCursor([d for d in self.docs if matches(d, query)])

    async def insert_one(self, doc):
        stored = self._insert(doc)
        return Result(inserted_id=stored["_id"])

    async def update_one(self, query, update, upsert=False):
        doc = self._first(query)
        if doc is not None:
            self._apply(doc, update)
            return Result(matched_count=1, modified_count=1)
        if upsert:
            new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
            self._apply(new_doc, update, inserting=True)
            stored = self._insert(new_doc)
            return Result(upserted_id=stored["_id"])
        return Result()

    async def update_many(self, query, update):
        count = 0
        for doc in self.docs:
            if matches(doc, query):
                self._apply(doc, update)
                count += 1
        return Result(matched_count=count, modified_count=count)

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE):
        doc = self._first(query)
        if doc is None:
            return None
        before = copy.deepcopy(doc)
        self._apply(doc, update)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def delete_one(self, query):
        doc = self._first(query)
        if doc is None:
            return Result()
        self.docs.remove(doc)
        return Result(deleted_count=1)

    async def delete_many(self, query):
        keep = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return Result(deleted_count=deleted)


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self._collections.setdefault(name, FakeCollection())

    async def command(self, name):
        return {"ok": 1}


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class Clock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# IoT platform
# ---------------------------------------------------------------------------

def _answer(value):
    if isinstance(value, BaseException):
        raise value
    if isinstance(value, IotResult):
        return value
    return IotResult.success(value)


class FakeIotClient:
    """
    Scripted platform. Each table maps an id to the data to return, an
    IotResult (for explicit failures) or an exception to raise.
    """

    def __init__(self):
        self.calls = []
        self.logins = {}
        self.meter_info = {}
        self.meter_info_by_id = {}
        self.projects = []
        self.project_meters = {}
        self.sales = {}
        self.energy = {}
        self.sale_power_result = IotResult.success({"saleId": "ok"})
        self.control_result = IotResult.success(None)
        self.in_flight = 0
        self.max_in_flight = 0

    async def _track(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1

    async def login(self, username, password_hash, account_type=1):
        self.calls.append(("login", username, password_hash, account_type))
        await asyncio.sleep(0)
        return _answer(self.logins.get(username, IotResult.failure("Invalid username or password")))

    async def get_project_list(self, token, keyword="", page_size=100, page_index=1):
        self.calls.append(("get_project_list", token))
        return _answer(self.projects)

    async def get_project_meter_list(self, project_id, token, energy_id="1", page_size=100):
        self.calls.append(("get_project_meter_list", project_id))
        await asyncio.sleep(0)
        return _answer(self.project_meters.get(project_id, []))

    async def get_meter_info(self, room_no, token):
        self.calls.append(("get_meter_info", room_no, token))
        await asyncio.sleep(0)
        return _answer(self.meter_info.get(room_no, IotResult.failure("Meter not found")))

    async def get_meter_info_by_id(self, meter_id, token):
        self.calls.append(("get_meter_info_by_id", meter_id, token))
        return _answer(self.meter_info_by_id.get(meter_id, IotResult.failure("Meter not found")))

    async def control_meter(self, meter_id, control_type, token):
        self.calls.append(("control_meter", meter_id, int(control_type), token))
        return _answer(self.control_result)

    async def sale_power(self, meter_id, sale_money, buy_type, sale_id, token):
        self.calls.append(("sale_power", meter_id, sale_money, buy_type, sale_id, token))
        await asyncio.sleep(0)
        return _answer(self.sale_power_result)

    async def get_meter_sales(self, meter_id, start, end, token):
        self.calls.append(("get_meter_sales", meter_id, start, end))
        await self._track()
        return _answer(self.sales.get(meter_id, []))

    async def get_meter_energy_day(self, meter_id, start, end, token):
        self.calls.append(("get_meter_energy_day", meter_id, start, end))
        await self._track()
        return _answer(self.energy.get(meter_id, []))

    async def get_meter_energy_month(self, meter_id, start, end, token):
        self.calls.append(("get_meter_energy_month", meter_id, start, end))
        return _answer(self.energy.get(meter_id, []))

    def count(self, method):
        return sum(1 for c in self.calls if c[0] == method)

    async def close(self):
        pass


# ---------------------------------------------------------------------------
# HTTP (aiohttp session stand-in for the real IotClient)
# ---------------------------------------------------------------------------

class FakeHttpResponse:
    def __init__(self, status, text):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        return json.loads(self._text)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeHttpSession:
    """
    Hand to IotClient.session. `route(endpoint, body)` returns
    (status, raw body text); dicts are JSON-encoded.
    """

    def __init__(self, route):
        self.route = route
        self.closed = False
        self.requests = []

    def request(self, method, url, headers=None, json=None):
        endpoint = url.rsplit("/", 1)[-1]
        self.requests.append((endpoint, json))
        status, body = self.route(endpoint, json or {})
        if not isinstance(body, str):
            body = _dumps(body)
        return FakeHttpResponse(status, body)

    async def close(self):
        self.closed = True


def _dumps(value):
    return json.dumps(value)
