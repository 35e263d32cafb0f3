# backend/armogrid/services/paystack.py

import hashlib
import hmac
from typing import Optional


class InvalidSignature(Exception):
    pass


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Paystack signs the raw request body with HMAC-SHA512 of the secret key
    and sends the hex digest in x-paystack-signature.
    """
    if not secret:
        raise InvalidSignature("PAYSTACK_SECRET_KEY not configured")
    if not signature:
        raise InvalidSignature("Missing signature")
    if not hmac.compare_digest(compute_signature(body, secret), signature.strip().lower()):
        raise InvalidSignature("Invalid signature")
