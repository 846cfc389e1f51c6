# libs/classifier.py
"""Gate: is this text blob an M-Pesa notification at all?

Ложные срабатывания допустимы – дальше парсер просто не найдёт суммы/кода.
Ложные пропуски молча теряют сообщение; это осознанный компромисс, другого
источника истины о том, «финансовое ли это SMS», у нас нет.
"""
from __future__ import annotations

KNOWN_SENDERS = ("MPESA", "M-PESA", "SAFARICOM")
RELEVANT_KEYWORDS = ("ksh", "kes", "m-pesa", "mpesa", "confirmed")


def is_relevant(sender_id: str | None, text: str | None) -> bool:
    """True if the sender is a known short-code/name or the text has a keyword."""
    sender = (sender_id or "").upper()
    if any(known in sender for known in KNOWN_SENDERS):
        return True
    body = (text or "").lower()
    return any(keyword in body for keyword in RELEVANT_KEYWORDS)


__all__ = ["is_relevant", "KNOWN_SENDERS", "RELEVANT_KEYWORDS"]
