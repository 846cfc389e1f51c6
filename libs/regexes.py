# libs/regexes.py
"""Single point of truth for **all** regular-expression patterns and a helper
that converts an M-Pesa notification text into :class:`libs.models.ParsedExtraction`.

Новая схема = достаточно добавить паттерн в таблицу ниже – *пайплайн
подхватит автоматически*.

Порядок важен: группы проверяются сверху вниз (SENT → RECEIVED → WITHDRAWN →
DEPOSITED), внутри группы побеждает первый совпавший паттерн. Если не
совпало ничего – общий fallback вытаскивает хотя бы сумму и телефон.
Код транзакции, баланс, комиссия и дата ищутся *отдельно* по всему тексту,
независимо от того, какой паттерн сработал.
"""
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Match, Optional

from libs.decimal_utils import parse_amount
from libs.models import Direction, ParsedExtraction

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------
# Общие части
CURRENCY_RE = r"(?:ksh|kes)\.?\s*"
NUMBER_RE = r"\d[\d,]*(?:\.\d{1,2})?"
AMOUNT_RE = rf"{CURRENCY_RE}(?P<amount>{NUMBER_RE})"
PHONE_RE = r"(?<!\d)(?P<phone>\d{10})(?!\d)"
NAME_RE = r"(?P<name>.+?)"
# "on 27/8/25 at 2:45 PM" – только как якорь конца имени
WHEN_ANCHOR = r"\s+on\s+\d{1,2}/\d{1,2}/\d{2,4}\s+at\s+\d{1,2}:\d{2}\s*[AP]M"
NEW_BALANCE_ANCHOR = r"\s+new\s+m-?pesa\s+balance"

_FLAGS = re.IGNORECASE


def _p(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, _FLAGS)


# --- 1. Отправка ------------------------------------------------------------------
SENT_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # "Ksh5.00 sent to SAFARICOM DATA BUNDLES for account DATA on 6/10/25 at 5:14 PM"
    ("sent_for_account", _p(rf"{AMOUNT_RE}\s+sent\s+to\s+{NAME_RE}\s+for\s+account\s+.+?{WHEN_ANCHOR}")),
    # "Ksh2,500.00 sent to JOHN KAMAU 0712345678 on 27/8/25 at 2:45 PM"
    ("sent_name_phone", _p(rf"{AMOUNT_RE}\s+sent\s+to\s+{NAME_RE}\s+{PHONE_RE}{WHEN_ANCHOR}")),
    # "Ksh2,500.00 sent to 0712345678 JOHN KAMAU on 27/8/25 at 2:45 PM"
    ("sent_phone_name", _p(rf"{AMOUNT_RE}\s+sent\s+to\s+{PHONE_RE}\s+{NAME_RE}{WHEN_ANCHOR}")),
    # "Ksh30.00 sent to SIMON NDERITU on 6/10/25 at 7:43 AM"
    ("sent_name", _p(rf"{AMOUNT_RE}\s+sent\s+to\s+{NAME_RE}{WHEN_ANCHOR}")),
    # Lipa na M-Pesa: "Ksh450.00 paid to NAIVAS SUPERMARKET. on 6/10/25 at 1:02 PM"
    ("paid_to", _p(rf"{AMOUNT_RE}\s+paid\s+to\s+{NAME_RE}{WHEN_ANCHOR}")),
]

# --- 2. Получение -----------------------------------------------------------------
RECEIVED_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # "You have received Ksh1,200.00 from MARY WANJIKU 0723456789 on 27/8/25 at 3:15 PM"
    ("received_name_phone", _p(rf"received\s+{AMOUNT_RE}\s+from\s+{NAME_RE}\s+{PHONE_RE}{WHEN_ANCHOR}")),
    # "Ksh1,200.00 received from 0723456789 MARY WANJIKU on 27/8/25 at 3:15 PM"
    ("received_phone_name", _p(rf"{AMOUNT_RE}\s+received\s+from\s+{PHONE_RE}\s+{NAME_RE}{WHEN_ANCHOR}")),
    # "You have received Ksh100.00 from Equity Bulk Account 300600 on 3/10/25 at 10:55 PM"
    ("received_name", _p(rf"received\s+{AMOUNT_RE}\s+from\s+{NAME_RE}{WHEN_ANCHOR}")),
]

# --- 3. Снятие у агента -----------------------------------------------------------
WITHDRAWN_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # "on 5/6/25 at 2:00 PM Withdraw Ksh1,000.00 from 123456 - SHOP AGENT New M-PESA balance is ..."
    ("withdraw_agent", _p(rf"withdraw(?:n)?\s+{AMOUNT_RE}\s+from\s+(?:\d+\s*-\s*)?{NAME_RE}{NEW_BALANCE_ANCHOR}")),
    ("withdrawn", _p(rf"withdrawn?\s+{AMOUNT_RE}\s+from\s+(?:\d+\s*-\s*)?{NAME_RE}{WHEN_ANCHOR}")),
]

# --- 4. Пополнение через агента ---------------------------------------------------
DEPOSITED_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # "On 5/6/25 at 10:00 AM Give Ksh1,000.00 cash to SHOP AGENT New M-PESA balance is ..."
    ("give_cash", _p(rf"give\s+{AMOUNT_RE}\s+cash\s+to\s+{NAME_RE}{NEW_BALANCE_ANCHOR}")),
    ("deposited", _p(rf"deposited\s+{AMOUNT_RE}")),
]

_PATTERN_GROUPS: list[tuple[Direction, list[tuple[str, re.Pattern[str]]]]] = [
    (Direction.SENT, SENT_PATTERNS),
    (Direction.RECEIVED, RECEIVED_PATTERNS),
    (Direction.WITHDRAWN, WITHDRAWN_PATTERNS),
    (Direction.DEPOSITED, DEPOSITED_PATTERNS),
]

# --- 5. Поля, которые ищем по всему тексту ----------------------------------------
# После метки код с цифрой берём всегда; из одних букв – только после ":" или "#",
# иначе "Transaction successful" превращается в код.
LABELLED_REF_RE = _p(
    r"\b(?:transaction(?:\s+id)?|code|ref(?:erence)?(?:\s+no)?)\b"
    r"(?:\s*[:.#]?\s*(?P<code>(?=[A-Z]*\d)[A-Z0-9]{8,12})|\s*[:#]\s*(?P<letters>[A-Z]{8,12}))\b"
)
# Без метки берём только "похожие на код" токены: ВЕРХНИЙ регистр, буквы + цифры.
# Иначе телефон (10 цифр) или слово "Confirmed" становятся ключом дедупликации.
BARE_REF_RE = re.compile(r"\b(?=[A-Z0-9]*[A-Z])(?=[A-Z0-9]*\d)[A-Z0-9]{8,12}\b")
BALANCE_RE = _p(rf"balance\s+is\s*:?\s*{CURRENCY_RE}(?P<balance>{NUMBER_RE})")
COST_RE = _p(rf"transaction\s+cost,?\s*{CURRENCY_RE}(?P<cost>{NUMBER_RE})")
WHEN_RE = _p(r"\bon\s+(?P<date>\d{1,2}/\d{1,2}/\d{2,4})\s+at\s+(?P<time>\d{1,2}:\d{2})\s*(?P<ampm>[AP]M)")

# --- 6. Fallback ------------------------------------------------------------------
FALLBACK_AMOUNT_RES = [
    _p(rf"{CURRENCY_RE}(?P<amount>{NUMBER_RE})"),
    re.compile(r"(?<![\d/:.,])(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?)(?![\d/:])"),
]
PHONE_ANYWHERE_RE = re.compile(r"(?<!\d)(\d{10})(?!\d)")

_DATE_LIKE_RE = re.compile(r"\d+/\d+/\d+")
_DIGITS_ONLY_RE = re.compile(r"[\d\s+-]+")
_CURRENCY_WORD_RE = _p(r"ksh|\bkes\b")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def _build(rule: str, direction: Direction, m: Match[str], text: str) -> ParsedExtraction:
    """Builder for any structured pattern: named groups → fields."""
    groups = m.groupdict()
    return ParsedExtraction(
        amount=parse_amount(groups["amount"]),
        counterparty_phone=groups.get("phone"),
        counterparty_name=_clean_name(groups.get("name")),
        reference_code=extract_reference_code(text),
        resulting_balance=extract_balance(text),
        direction=direction,
        occurred_at=extract_occurred_at(text),
        transaction_cost=extract_transaction_cost(text),
        rule=rule,
    )


def _build_fallback(text: str) -> ParsedExtraction:
    """Builder for unrecognised layouts: first amount + first phone."""
    amount = Decimal("0")
    for pattern in FALLBACK_AMOUNT_RES:
        if match := pattern.search(text):
            amount = parse_amount(match["amount"])
            break

    phone_match = PHONE_ANYWHERE_RE.search(text)
    return ParsedExtraction(
        amount=amount,
        counterparty_phone=phone_match.group(1) if phone_match else None,
        reference_code=extract_reference_code(text),
        resulting_balance=extract_balance(text),
        direction=Direction.UNKNOWN,
        occurred_at=extract_occurred_at(text),
        transaction_cost=extract_transaction_cost(text),
        rule="fallback",
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_sms(text: str) -> ParsedExtraction:
    """Attempt to recognise `text` using one of the known patterns.

    Never raises for unrecognised text: the result simply has
    ``is_valid == False`` and the caller decides what to do.
    """
    cleaned = normalize_text(text)
    for direction, patterns in _PATTERN_GROUPS:
        for rule, pattern in patterns:
            if match := pattern.search(cleaned):
                return _build(rule, direction, match, cleaned)
    return _build_fallback(cleaned)


def normalize_text(text: str) -> str:
    """Схлопывает переводы строк и повторные пробелы."""
    return re.sub(r"\s+", " ", text or "").strip()


def extract_reference_code(text: str) -> str:
    """Код транзакции: сначала по метке, затем первый «похожий на код» токен."""
    if match := LABELLED_REF_RE.search(text):
        return (match["code"] or match["letters"]).upper()
    if match := BARE_REF_RE.search(text):
        return match.group(0)
    return ""


def extract_balance(text: str) -> Optional[Decimal]:
    if match := BALANCE_RE.search(text):
        return parse_amount(match["balance"])
    return None


def extract_transaction_cost(text: str) -> Optional[Decimal]:
    if match := COST_RE.search(text):
        return parse_amount(match["cost"])
    return None


def extract_occurred_at(text: str) -> Optional[datetime]:
    if match := WHEN_RE.search(text):
        return _to_timestamp(match["date"], match["time"], match["ampm"])
    return None


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------
def _clean_name(raw: Optional[str]) -> Optional[str]:
    """Имя контрагента – только подсказка: отбрасываем явный мусор.

    Цифры, валюта или дата вместо имени означают, что паттерн «промахнулся».
    """
    if not raw:
        return None
    name = re.sub(r"\s+", " ", raw).strip(" .,-")
    if not name:
        return None
    if _DIGITS_ONLY_RE.fullmatch(name) or _DATE_LIKE_RE.fullmatch(name):
        return None
    if _CURRENCY_WORD_RE.search(name):
        return None
    return name


def _to_timestamp(date_str: str, time_str: str, ampm: str) -> Optional[datetime]:
    """Converts "27/8/25" + "2:45" + "PM" to a single :class:`datetime`.

    Day comes first (Kenyan format). Supports both 2- and 4-digit years
    (assumes 2000-based for 2-digit). Returns ``None`` for impossible dates.
    """
    day, month, year = date_str.split("/")
    year_num = int(year)
    if year_num < 100:
        year_num += 2000
    dt_str = f"{year_num}-{int(month):02d}-{int(day):02d} {time_str} {ampm.upper()}"
    try:
        return datetime.strptime(dt_str, "%Y-%m-%d %I:%M %p")
    except ValueError:
        return None


__all__ = [
    "parse_sms",
    "normalize_text",
    "extract_reference_code",
    "extract_balance",
    "extract_transaction_cost",
    "extract_occurred_at",
]
