from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def kobo_to_naira(amount_kobo: int) -> float:
    return round(amount_kobo / 100, 2)


class PaystackChargeData(BaseModel):
    reference: str
    status: str = ""
    amount: Optional[int] = None
    gateway_response: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    customer: Optional[Dict[str, Any]] = None


class PaystackEvent(BaseModel):
    event: str
    data: PaystackChargeData


class WebhookOutcome(str, Enum):
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"
    CREDITED = "credited"
    CREDIT_FAILED = "credit_failed"
    MARKED_FAILED = "marked_failed"


class WebhookResult(BaseModel):
    outcome: WebhookOutcome
    reference: Optional[str] = None
    sale_id: Optional[str] = None
    error: Optional[str] = None
