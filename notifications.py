"""
Outbound email: one-time codes and order confirmations.

Delivery is fire-and-forget. The send_* helpers run as background tasks after
the response is prepared, and a delivery failure is logged, never raised.
"""
import logging
import secrets
from typing import Protocol

import resend

import config

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> None:
        ...


class LogEmailSender:
    """Development sender: writes the message to the log instead of mailing it."""

    def __init__(self):
        self.outbox = []

    def send(self, to, subject, html):
        self.outbox.append({"to": to, "subject": subject, "html": html})
        logger.info("Email to %s | %s\n%s", to, subject, html)


class ResendEmailSender:
    def __init__(self, api_key: str, sender: str):
        resend.api_key = api_key
        self.sender = sender

    def send(self, to, subject, html):
        resend.Emails.send({"from": self.sender, "to": [to], "subject": subject, "html": html})


_sender = None


def get_email_sender() -> EmailSender:
    global _sender
    if _sender is None:
        if config.EMAIL_PROVIDER == "resend" and config.RESEND_API_KEY:
            _sender = ResendEmailSender(config.RESEND_API_KEY, config.EMAIL_FROM)
        else:
            if config.EMAIL_PROVIDER == "resend":
                logger.warning("EMAIL_PROVIDER=resend but RESEND_API_KEY is not set; logging emails instead")
            _sender = LogEmailSender()
    return _sender


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def send_verification_code(sender: EmailSender, email: str, code: str) -> None:
    html = (
        f"<p>Your verification code is <strong>{code}</strong>.</p>"
        f"<p>It expires in {config.OTP_TTL_MINUTES} minutes.</p>"
    )
    try:
        sender.send(email, "Verify your email", html)
    except Exception:
        logger.exception("Failed to send verification code to %s", email)


def send_password_reset_code(sender: EmailSender, email: str, code: str) -> None:
    html = (
        f"<p>Use <strong>{code}</strong> to reset your password.</p>"
        f"<p>It expires in {config.OTP_TTL_MINUTES} minutes. If you did not ask for a reset, ignore this email.</p>"
    )
    try:
        sender.send(email, "Reset your password", html)
    except Exception:
        logger.exception("Failed to send password reset code to %s", email)


def send_order_confirmation(sender: EmailSender, order: dict) -> None:
    info = order.get("customerInfo") or {}
    email = info.get("email")
    if not email:
        return
    lines = "".join(
        f"<li>{it['name']} x {it['quantity']} @ {it['price']:.2f} {it.get('currency', '')}</li>"
        for it in order.get("items", [])
    )
    html = (
        f"<p>Hi {info.get('firstName', '')}, thanks for your order "
        f"<strong>{order['orderNumber']}</strong>.</p>"
        f"<ul>{lines}</ul>"
        f"<p>Total: {order['totalAmount']:.2f} {order.get('currency', '')}</p>"
    )
    try:
        sender.send(email, f"Order {order['orderNumber']} received", html)
    except Exception:
        logger.exception("Failed to send order confirmation for %s", order.get("orderNumber"))
