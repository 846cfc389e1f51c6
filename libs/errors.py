# libs/errors.py
"""Exceptions of the confirmation side of the pipeline.

Ингест ничего не бросает наружу – он возвращает тег
(:class:`services.pipeline.ingest.IngestOutcome`). Исключения ниже нужны
только там, где есть живой пользователь, который может исправить ввод.
"""
from __future__ import annotations


class LedgerError(Exception):
    """Base class for all domain errors."""


class ConfirmationValidationError(LedgerError):
    """Не заполнены обязательные поля подтверждения."""

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(f"Required fields are empty: {', '.join(fields)}")


class PendingNotFound(LedgerError):
    def __init__(self, pending_id: int):
        self.pending_id = pending_id
        super().__init__(f"Pending transaction {pending_id} not found")


class PendingStateError(LedgerError):
    """Переход из терминального состояния (CONFIRMED ↔ REJECTED)."""

    def __init__(self, pending_id: int, status: str, action: str):
        self.pending_id = pending_id
        self.status = status
        super().__init__(f"Cannot {action} pending transaction {pending_id}: it is {status}")


class LoanNotFound(LedgerError):
    """Нет такой транзакции-займа у пользователя (или это не заём)."""

    def __init__(self, transaction_id: int):
        self.transaction_id = transaction_id
        super().__init__(f"Loan transaction {transaction_id} not found")


class EnrichmentFailure(LedgerError):
    """Хук обогащения (поставщик/товар) упал после коммита транзакции."""

    def __init__(self, hook: str, cause: BaseException):
        self.hook = hook
        self.cause = cause
        super().__init__(f"Enrichment hook {hook!r} failed: {cause}")


__all__ = [
    "LedgerError",
    "ConfirmationValidationError",
    "PendingNotFound",
    "PendingStateError",
    "LoanNotFound",
    "EnrichmentFailure",
]
