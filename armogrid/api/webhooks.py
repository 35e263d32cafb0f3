# backend/armogrid/api/webhooks.py

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from armogrid.api.deps import get_webhook_processor
from armogrid.core.config import settings
from armogrid.models.transaction import PaystackEvent
from armogrid.services.payment_webhook import PaymentWebhookProcessor
from armogrid.services.paystack import InvalidSignature, verify_webhook_signature

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    processor: PaymentWebhookProcessor = Depends(get_webhook_processor),
):
    body = await request.body()
    signature = request.headers.get("x-paystack-signature")
    if not signature:
        logger.error("[Webhook] Missing signature")
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        verify_webhook_signature(body, signature, settings.PAYSTACK_SECRET_KEY)
    except InvalidSignature as e:
        logger.error(f"[Webhook] {e}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
        event = PaystackEvent.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.error(f"[Webhook] Malformed payload: {e}")
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    result = await processor.process(event, payload)
    logger.info(f"[Webhook] {event.event} {result.reference}: {result.outcome.value}")
    return {"received": True}
