# backend/armogrid/api/deps.py

from typing import Any

from fastapi import Depends, Request

from armogrid.core.config import settings
from armogrid.core.database import db
from armogrid.services.analytics_engine import AnalyticsEngine
from armogrid.services.credential_store import CredentialStore
from armogrid.services.iot_client import IotClient
from armogrid.services.meter_sync import MeterSyncEngine
from armogrid.services.notifications import NotificationDispatcher
from armogrid.services.payment_webhook import PaymentWebhookProcessor
from armogrid.services.power_readings import PowerReadingLog
from armogrid.services.token_cache import AdminTokenCache

# Long-lived objects are created at startup and hung on app.state (see main.py).


def get_iot_client(request: Request) -> IotClient:
    return request.app.state.iot_client


def get_admin_tokens(request: Request) -> AdminTokenCache:
    return request.app.state.admin_tokens


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_database() -> Any:
    return db


def get_credential_store(
    client: IotClient = Depends(get_iot_client),
    database: Any = Depends(get_database),
) -> CredentialStore:
    return CredentialStore(database.meter_credentials, client)


def get_sync_engine(
    store: CredentialStore = Depends(get_credential_store),
    client: IotClient = Depends(get_iot_client),
) -> MeterSyncEngine:
    return MeterSyncEngine(store, client)


def get_power_log(database: Any = Depends(get_database)) -> PowerReadingLog:
    return PowerReadingLog(database.power_readings)


def get_analytics_engine(
    client: IotClient = Depends(get_iot_client),
    tokens: AdminTokenCache = Depends(get_admin_tokens),
    power_log: PowerReadingLog = Depends(get_power_log),
) -> AnalyticsEngine:
    return AnalyticsEngine(
        client,
        tokens,
        power_log,
        batch_size=settings.ANALYTICS_BATCH_SIZE,
        default_alarm_threshold=settings.DEFAULT_ALARM_THRESHOLD,
        power_history_limit=settings.POWER_HISTORY_LIMIT,
    )


def get_webhook_processor(
    database: Any = Depends(get_database),
    client: IotClient = Depends(get_iot_client),
    tokens: AdminTokenCache = Depends(get_admin_tokens),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(database, client, tokens, dispatcher, buy_type=settings.PAYSTACK_BUY_TYPE)
