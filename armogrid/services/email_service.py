# backend/armogrid/services/email_service.py
import smtplib
import socket
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

from armogrid.core.config import Settings, settings as default_settings


def can_send_email(cfg: Optional[Settings] = None) -> bool:
    """
    Returns True only if SMTP is configured well enough to attempt sending.
    """
    return (cfg or default_settings).smtp_configured


def send_email(to_email: str, subject: str, text: str, html: Optional[str] = None, cfg: Optional[Settings] = None) -> None:
    """
    Sends one email using SMTP. Blocking; async callers run it in a thread.

    Raises if SMTP is not configured or sending fails. Callers that treat
    email as best effort catch and log.
    """
    cfg = cfg or default_settings
    if not can_send_email(cfg):
        raise RuntimeError("SMTP not configured (missing SMTP_* or FROM_EMAIL settings)")

    smtp_host = cfg.SMTP_HOST
    smtp_port = int(cfg.SMTP_PORT)

    # Port 465 => implicit TLS, anything else => STARTTLS
    use_ssl = cfg.SMTP_SSL if cfg.SMTP_SSL is not None else smtp_port == 465

    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((cfg.FROM_NAME, cfg.FROM_EMAIL))
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(text, "plain", "utf-8"))
    if html:
        msg.attach(MIMEText(html, "html", "utf-8"))

    context = ssl.create_default_context()

    # Fail fast on DNS instead of hanging on connect
    try:
        socket.getaddrinfo(smtp_host, smtp_port)
    except Exception as e:
        raise RuntimeError(f"SMTP host resolution failed for {smtp_host}:{smtp_port} ({e})") from e

    if use_ssl:
        with smtplib.SMTP_SSL(smtp_host, smtp_port, timeout=cfg.SMTP_TIMEOUT, context=context) as server:
            server.login(cfg.SMTP_USER, cfg.SMTP_PASS)
            server.sendmail(cfg.FROM_EMAIL, [to_email], msg.as_string())
    else:
        with smtplib.SMTP(smtp_host, smtp_port, timeout=cfg.SMTP_TIMEOUT) as server:
            server.ehlo()
            server.starttls(context=context)
            server.ehlo()
            server.login(cfg.SMTP_USER, cfg.SMTP_PASS)
            server.sendmail(cfg.FROM_EMAIL, [to_email], msg.as_string())
