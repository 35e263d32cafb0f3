# backend/armogrid/services/payment_webhook.py

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument

from armogrid.models.transaction import (
    PaystackEvent,
    TransactionStatus,
    WebhookOutcome,
    WebhookResult,
    kobo_to_naira,
)
from armogrid.services.iot_client import IotClient, IotClientError
from armogrid.services.notifications import EventKind, NotificationDispatcher, NotificationEvent
from armogrid.services.token_cache import AdminTokenCache, now_utc

logger = logging.getLogger("webhook.paystack")

CHARGE_SUCCESS = "charge.success"
CLAIM_TIMEOUT = timedelta(minutes=10)


def generate_sale_id() -> str:
    """Millisecond timestamp, the sale id format the platform accepts."""
    return str(int(time.time() * 1000))


def _customer_event(tx: Dict[str, Any], meter_id: str, reference: str) -> NotificationEvent:
    meta = tx.get("metadata") or {}
    return NotificationEvent(
        kind=EventKind.PAYMENT,
        name=tx.get("customer_name") or meta.get("customerName") or "",
        phone=tx.get("customer_phone") or meta.get("phone") or "",
        email=tx.get("customer_email") or meta.get("email") or "",
        room_no=tx.get("room_no") or meta.get("roomNo") or meter_id,
        amount_naira=kobo_to_naira(int(tx.get("amount_kobo") or 0)),
        reference=reference,
    )


class PaymentWebhookProcessor:
    """
    transactions move pending -> success or pending -> failed, never back.

    The credit step is guarded by an atomic claim on the transaction row, so
    two deliveries of the same event can never both call SalePower.
    """

    def __init__(
        self,
        db: Any,
        client: IotClient,
        token_cache: AdminTokenCache,
        dispatcher: Optional[NotificationDispatcher] = None,
        buy_type: int = 3,
        clock: Callable[[], datetime] = now_utc,
        sale_id_factory: Callable[[], str] = generate_sale_id,
    ):
        self.db = db
        self.client = client
        self.token_cache = token_cache
        self.dispatcher = dispatcher
        self.buy_type = buy_type
        self.clock = clock
        self.sale_id_factory = sale_id_factory

    async def _log_event(self, event: PaystackEvent, payload: Dict[str, Any]) -> None:
        await self.db.webhook_logs.insert_one(
            {
                "event_type": event.event,
                "reference": event.data.reference,
                "payload": payload,
                "processed": False,
                "received_at": self.clock(),
            }
        )

    async def _claim(self, reference: str) -> Optional[Dict[str, Any]]:
        now = self.clock()
        return await self.db.transactions.find_one_and_update(
            {
                "paystack_reference": reference,
                "status": {"$ne": TransactionStatus.SUCCESS.value},
                "$or": [{"claimed_at": None}, {"claimed_at": {"$lt": now - CLAIM_TIMEOUT}}],
            },
            {"$set": {"claimed_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def process(self, event: PaystackEvent, payload: Dict[str, Any]) -> WebhookResult:
        reference = event.data.reference
        await self._log_event(event, payload)

        if event.event != CHARGE_SUCCESS:
            logger.info(f"[Webhook] {event.event} for {reference}: not a charge.success, skipping")
            return WebhookResult(outcome=WebhookOutcome.IGNORED, reference=reference)

        meter_id = (event.data.metadata or {}).get("meterId")
        if not meter_id:
            logger.error(f"[Webhook] No meterId in webhook metadata for {reference}")
            return WebhookResult(outcome=WebhookOutcome.IGNORED, reference=reference)

        tx = await self.db.transactions.find_one({"paystack_reference": reference})
        if not tx:
            logger.error(f"[Webhook] Transaction not found: {reference}")
            return WebhookResult(outcome=WebhookOutcome.NOT_FOUND, reference=reference)

        if tx.get("status") == TransactionStatus.SUCCESS.value and tx.get("sale_id"):
            logger.info(f"[Webhook] Transaction {reference} already processed, skipping")
            return WebhookResult(outcome=WebhookOutcome.ALREADY_PROCESSED, reference=reference, sale_id=tx["sale_id"])

        if event.data.status != "success":
            return await self._mark_failed(tx, reference, event.data.gateway_response)

        claimed = await self._claim(reference)
        if not claimed:
            current = await self.db.transactions.find_one({"paystack_reference": reference}) or {}
            if current.get("status") == TransactionStatus.SUCCESS.value:
                return WebhookResult(
                    outcome=WebhookOutcome.ALREADY_PROCESSED, reference=reference, sale_id=current.get("sale_id")
                )
            logger.info(f"[Webhook] {reference} is being credited by another delivery")
            return WebhookResult(outcome=WebhookOutcome.IN_PROGRESS, reference=reference)

        return await self._credit(claimed, str(meter_id), reference)

    async def _credit(self, tx: Dict[str, Any], meter_id: str, reference: str) -> WebhookResult:
        amount_kobo = int(tx.get("amount_kobo") or 0)
        sale_id = self.sale_id_factory()
        error: Optional[str] = None
        response_data: Any = None

        try:
            token = await self.token_cache.get_token(self.client)
            result = await self.client.sale_power(meter_id, amount_kobo, self.buy_type, sale_id, token)
            if result.ok:
                response_data = result.data
            else:
                error = result.message or "Failed to credit meter"
        except IotClientError as e:
            error = str(e)

        now = self.clock()
        metadata = dict(tx.get("metadata") or {})

        if error is None:
            metadata.update({"iot_response": response_data, "credited_at": now.isoformat()})
            metadata.pop("processing_error", None)
            await self.db.transactions.update_one(
                {"_id": tx["_id"]},
                {
                    "$set": {
                        "status": TransactionStatus.SUCCESS.value,
                        "sale_id": sale_id,
                        "metadata": metadata,
                        "updated_at": now,
                    },
                    "$unset": {"claimed_at": ""},
                },
            )
            await self.db.webhook_logs.update_many({"reference": reference}, {"$set": {"processed": True}})
            logger.info(f"[Webhook] Credited meter {meter_id} with N{kobo_to_naira(amount_kobo)} (sale {sale_id})")

            if self.dispatcher is not None:
                self.dispatcher.dispatch(_customer_event(tx, meter_id, reference))
            return WebhookResult(outcome=WebhookOutcome.CREDITED, reference=reference, sale_id=sale_id)

        # leave it pending so a later delivery can retry
        logger.error(f"[Webhook] SalePower failed for {reference}: {error}")
        metadata["processing_error"] = error
        await self.db.transactions.update_one(
            {"_id": tx["_id"]},
            {"$set": {"metadata": metadata, "updated_at": now}, "$unset": {"claimed_at": ""}},
        )
        await self.db.webhook_logs.update_many(
            {"reference": reference}, {"$set": {"error": error, "processed": False}}
        )
        return WebhookResult(outcome=WebhookOutcome.CREDIT_FAILED, reference=reference, error=error)

    async def _mark_failed(self, tx: Dict[str, Any], reference: str, reason: Optional[str]) -> WebhookResult:
        metadata = dict(tx.get("metadata") or {})
        metadata["failure_reason"] = reason
        await self.db.transactions.update_one(
            {"_id": tx["_id"], "status": {"$ne": TransactionStatus.SUCCESS.value}},
            {"$set": {"status": TransactionStatus.FAILED.value, "metadata": metadata, "updated_at": self.clock()}},
        )
        logger.info(f"[Webhook] Payment {reference} reported {reason!r}, marked failed")
        return WebhookResult(outcome=WebhookOutcome.MARKED_FAILED, reference=reference, error=reason)
