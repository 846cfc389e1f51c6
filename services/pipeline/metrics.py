# services/pipeline/metrics.py
"""Prometheus-метрики пайплайна (общие для HTTP-шлюза и NATS-воркера).

Экспортируются два типа показателей:
1. **Business** – исходы ингеста (created / duplicate / invalid / irrelevant),
   подтверждения, отклонения, возвраты займов и упавшие хуки обогащения.
2. **Runtime**  – время обработки одного уведомления, очередь NATS-воркера.

> Запуск: вызовите `start_metrics_server()` один раз при старте процесса – он
> поднимет HTTP-endpoint `/metrics` на указанном порту.
"""
from __future__ import annotations

import contextlib
import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Metric objects (module-level singletons)
# ---------------------------------------------------------------------------
INGESTED = Counter(
    "sms_ingested_total",
    "Уведомления, прошедшие через ингест, по исходу",
    ["outcome"],
)
CONFIRMED = Counter(
    "sms_confirmed_total",
    "Черновики, подтверждённые пользователем",
)
REJECTED = Counter(
    "sms_rejected_total",
    "Черновики, отклонённые пользователем",
)
LOANS_REPAID = Counter(
    "loans_repaid_total",
    "Займы, отмеченные как возвращённые",
)
ENRICHMENT_FAILED = Counter(
    "sms_enrichment_failed_total",
    "Упавшие хуки обогащения после коммита транзакции",
    ["hook"],
)
PROCESSING_TIME = Histogram(
    "sms_ingest_processing_seconds",
    "Время (сек) затраченное на ингест одного уведомления",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
WORKER_DLQ = Counter(
    "sms_worker_dlq_total",
    "Сообщения из sms.raw, отправленные воркером в sms.failed",
    ["reason"],
)
ACK_PENDING = Gauge(
    "sms_worker_ack_pending",
    "Сообщения, выданные воркеру и ещё не подтверждённые",
)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def start_metrics_server(port: int) -> None:  # pragma: no cover – network
    """Запускает HTTP-эндпоинт `/metrics` в отдельном треде."""
    with contextlib.suppress(OSError):  # идемпотентность при повторном вызове
        start_http_server(port)
        log.info("Prometheus metrics available on http://0.0.0.0:%s/metrics", port)
