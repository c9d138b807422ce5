"""
WhatsApp delivery for payment reminders.

Two routes out: a ``wa.me`` link the operator opens by hand, and the
whatsapp-bot relay service for direct sends. Relay failures are logged and
swallowed so an outage never breaks the ledger flow.
"""

import logging
from urllib.parse import quote

import requests

from kost.core.config import settings

logger = logging.getLogger(__name__)


def normalize_phone(phone: str) -> str:
    """Digits only, with a local leading 0 replaced by the Indonesian country code."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if digits.startswith("0"):
        digits = "62" + digits[1:]
    return digits


def whatsapp_link(phone: str, message: str) -> str | None:
    number = normalize_phone(phone or "")
    if not number:
        return None
    return f"https://wa.me/{number}?text={quote(message)}"


def send_whatsapp(to: str, message: str) -> bool:
    """
    Relay a message through the bot service.

    Returns True on success, False on any error (logs the reason).
    Safe to call even when whatsapp_enabled=False; returns False silently.
    """
    if not settings.whatsapp_enabled:
        return False
    if not to or not message:
        return False
    try:
        resp = requests.post(
            f"{settings.whatsapp_bot_url}/send",
            json={"to": "+" + normalize_phone(to), "message": message},
            timeout=10,
        )
        if resp.status_code == 200:
            return True
        logger.warning("WhatsApp /send returned %d: %s", resp.status_code, resp.text[:200])
        return False
    except requests.RequestException as exc:
        logger.warning("WhatsApp send failed (to=%s): %s", to, exc)
        return False
