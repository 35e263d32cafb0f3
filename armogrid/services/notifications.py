# backend/armogrid/services/notifications.py

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Set

import httpx

from armogrid.core.config import Settings, settings as default_settings
from armogrid.services.email_service import can_send_email, send_email

logger = logging.getLogger("notifications")


class EventKind(str, Enum):
    PAYMENT = "payment"
    REGISTRATION = "registration"


@dataclass
class NotificationEvent:
    kind: EventKind
    name: str
    phone: str
    room_no: str
    amount_naira: float
    reference: str
    email: str = ""
    location_name: str = ""


@dataclass
class NotificationResult:
    email_sent: bool = False
    whatsapp_sent: bool = False
    customer_whatsapp_sent: bool = False

    def as_dict(self) -> dict:
        return {
            "emailSent": self.email_sent,
            "whatsappSent": self.whatsapp_sent,
            "customerWhatsappSent": self.customer_whatsapp_sent,
        }


def normalize_phone(phone: str, country_code: str = "+234") -> str:
    """Local numbers (0803..., 803...) get the country code; +... is kept."""
    cleaned = re.sub(r"[\s\-]", "", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("0"):
        return country_code + cleaned[1:]
    return country_code + cleaned


def _naira(amount: float) -> str:
    return f"N{amount:,.2f}"


def admin_message(event: NotificationEvent) -> str:
    title = "Meter Recharge" if event.kind == EventKind.PAYMENT else "New Customer Registration"
    lines = [
        f"*{title}*",
        "",
        f"*Name:* {event.name}",
        f"*Phone:* {event.phone}",
        f"*Room Number:* {event.room_no}",
    ]
    if event.email:
        lines.append(f"*Email:* {event.email}")
    if event.location_name:
        lines.append(f"*Location:* {event.location_name}")
    lines += [
        f"*Amount Paid:* {_naira(event.amount_naira)}",
        f"*Reference:* {event.reference}",
        "",
        "_Sent from ArmogridSolar_",
    ]
    return "\n".join(lines)


def customer_message(event: NotificationEvent) -> str:
    if event.kind == EventKind.PAYMENT:
        return (
            "*Recharge Successful!*\n\n"
            f"Hello {event.name},\n\n"
            f"{_naira(event.amount_naira)} has been credited to meter {event.room_no}.\n"
            f"Reference: {event.reference}\n\n"
            "_Thank you for choosing ArmogridSolar!_"
        )
    return (
        "*Registration Successful!*\n\n"
        f"Hello {event.name},\n\n"
        "Thank you for registering with ArmogridSolar!\n\n"
        f"Room: {event.room_no}\n"
        f"Location: {event.location_name}\n"
        f"Amount Paid: {_naira(event.amount_naira)}\n"
        f"Reference: {event.reference}\n\n"
        "Our team will contact you within 24-48 hours to schedule your meter installation.\n\n"
        "_Thank you for choosing ArmogridSolar!_"
    )


class NotificationDispatcher:
    """
    Best-effort outbound notifications. Every channel is attempted on its
    own; a failing channel only flips its flag in the result.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        email_sender: Callable[..., None] = send_email,
    ):
        self.cfg = cfg or default_settings
        self.transport = transport
        self.email_sender = email_sender
        self._pending: Set[asyncio.Task] = set()

    # -----------------------------
    # Channels
    # -----------------------------
    async def send_whatsapp(self, to_number: str, message: str) -> bool:
        cfg = self.cfg
        if not cfg.ultramsg_configured:
            logger.info("[Notification] UltraMsg not configured, skipping WhatsApp")
            return False
        if not to_number:
            return False

        url = f"{cfg.ULTRAMSG_BASE_URL.rstrip('/')}/{cfg.ULTRAMSG_INSTANCE_ID}/messages/chat"
        form = {"token": cfg.ULTRAMSG_TOKEN, "to": to_number, "body": message, "priority": "1"}

        try:
            async with httpx.AsyncClient(timeout=15, transport=self.transport) as client:
                response = await client.post(url, data=form)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[UltraMsg] Error sending to {to_number}: {e}")
            return False

        sent = str(result.get("sent")).lower() == "true" or bool(result.get("id"))
        if sent:
            logger.info(f"[UltraMsg] Message sent to {to_number}")
        else:
            logger.warning(f"[UltraMsg] Failed to send to {to_number}: {result.get('error') or result}")
        return sent

    async def send_admin_email(self, event: NotificationEvent) -> bool:
        admin_email = self.cfg.ADMIN_EMAIL
        if not admin_email or not can_send_email(self.cfg):
            logger.info("[Notification] Admin email or SMTP not configured, skipping email")
            return False

        subject = (
            f"Meter Recharge - {event.room_no}"
            if event.kind == EventKind.PAYMENT
            else f"New Customer Registration - {event.name}"
        )
        try:
            await asyncio.to_thread(self.email_sender, admin_email, subject, admin_message(event), None, self.cfg)
        except Exception as e:
            logger.error(f"[Notification] Email notification error: {e}")
            return False
        return True

    async def send_admin_whatsapp(self, event: NotificationEvent) -> bool:
        return await self.send_whatsapp(self.cfg.ADMIN_WHATSAPP or "", admin_message(event))

    async def send_customer_whatsapp(self, event: NotificationEvent) -> bool:
        phone = normalize_phone(event.phone, self.cfg.DEFAULT_COUNTRY_CODE)
        return await self.send_whatsapp(phone, customer_message(event))

    async def send_admin_alert(self, text: str) -> bool:
        return await self.send_whatsapp(self.cfg.ADMIN_WHATSAPP or "", text)

    # -----------------------------
    # Fan-out
    # -----------------------------
    async def notify(self, event: NotificationEvent) -> NotificationResult:
        """Never raises."""
        channels = await asyncio.gather(
            self.send_admin_email(event),
            self.send_admin_whatsapp(event),
            self.send_customer_whatsapp(event),
            return_exceptions=True,
        )
        flags = []
        for outcome in channels:
            if isinstance(outcome, BaseException):
                logger.error(f"[Notification] Channel failed: {outcome}")
                flags.append(False)
            else:
                flags.append(bool(outcome))

        result = NotificationResult(*flags)
        logger.info(f"[Notification] {event.kind.value} {event.reference}: {result.as_dict()}")
        return result

    def dispatch(self, event: NotificationEvent) -> asyncio.Task:
        """Schedule notify() without waiting for it."""
        task = asyncio.create_task(self.notify(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
