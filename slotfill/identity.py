"""
Sender identity normalization for inbound and outbound channels
"""

import re
from typing import Optional

TELEGRAM_PREFIX = "telegram:"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    (657) 252-2903 -> +16572522903, 1-657-252-2903 -> +16572522903,
    numbers already starting with + keep their country code. Anything else
    is taken to include its country code.
    """
    if not phone:
        return None
    phone = phone.strip()
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return None
    if phone.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def telegram_identity(chat_id: int) -> str:
    return f"{TELEGRAM_PREFIX}{chat_id}"


def normalize_sender(sender: str) -> str:
    """
    Canonical form of an inbound sender.

    "telegram:<chat id>" stays as is, anything else is treated as a phone number.
    """
    sender = sender.strip()
    if sender.lower().startswith(TELEGRAM_PREFIX):
        chat_id = sender[len(TELEGRAM_PREFIX):].strip()
        if chat_id.lstrip("-").isdigit():
            return f"{TELEGRAM_PREFIX}{int(chat_id)}"
        return sender
    return normalize_phone(sender) or sender


def parse_telegram_identity(sender: str) -> Optional[int]:
    """Chat id of a normalized telegram identity, None for phone numbers"""
    if sender.startswith(TELEGRAM_PREFIX):
        chat_id = sender[len(TELEGRAM_PREFIX):]
        if chat_id.lstrip("-").isdigit():
            return int(chat_id)
    return None
