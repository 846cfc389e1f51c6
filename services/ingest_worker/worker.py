# services/ingest_worker/worker.py
"""NATS-фид для пайплайна.

Листенер на телефоне может не ходить в HTTP-шлюз, а публиковать
:class:`libs.models.RawNotification` (с `userId`) в JetStream `sms.raw`.
Воркер забирает сообщения durable-подпиской и прогоняет их через тот же
`submit_notification`, что и шлюз. Всё, что не стало черновиком (кроме
дубликатов), уходит в `sms.failed`.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from contextlib import suppress
from typing import Any

import sentry_sdk
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.session import get_sessionmaker, init_models
from libs.attribution import Clock, system_clock
from libs.config import get_settings
from libs.models import RawNotification
from libs.nats_utils import (
    STREAM_NAME,
    SUBJECT_FAILED,
    SUBJECT_RAW,
    ensure_stream,
    get_nats_connection,
)
from libs.sentry import init_sentry, sentry_capture
from services.pipeline.ingest import IngestOutcome, submit_notification
from services.pipeline.metrics import ACK_PENDING, WORKER_DLQ, start_metrics_server

logger = logging.getLogger("ingest_worker")


async def _to_dlq(nc: NATS, reason: str, payload: dict[str, Any]) -> None:
    js = nc.jetstream()
    body = json.dumps({"reason": reason, **payload}, default=str).encode()
    await js.publish(SUBJECT_FAILED, body)
    WORKER_DLQ.labels(reason=reason).inc()


# ---------------------------------------------------------------------------
# Core processing logic
# ---------------------------------------------------------------------------

async def process_one(
    nc: NATS,
    msg: Msg,
    sessionmaker: async_sessionmaker[AsyncSession],
    clock: Clock = system_clock,
) -> None:
    """Обрабатывает *одно* уведомление из NATS и всегда его ack-ает."""
    with sentry_sdk.start_transaction(op="task", name="ingest_notification"):
        raw = msg.data.decode(errors="ignore")
        try:
            notification = RawNotification.model_validate_json(msg.data)
            if not notification.user_id:
                raise ValueError("userId is required on the message bus")
        except (ValidationError, ValueError) as err:
            logger.error("❌ Невалидное сообщение: %s. Данные: %.200s", err, raw)
            await _to_dlq(nc, "malformed", {"err": str(err), "entry": raw})
            await msg.ack()
            return

        entry = notification.model_dump(mode="json", by_alias=True)
        try:
            async with sessionmaker() as session:
                result = await submit_notification(
                    session,
                    user_id=notification.user_id,
                    notification=notification,
                    clock=clock,
                )
        except Exception as err:
            logger.exception("Ошибка пайплайна для %.80s", notification.text)
            sentry_capture(err, extras={"entry": entry, "user_id": notification.user_id}, tags={"source": "nats"})
            await _to_dlq(nc, "error", {"err": str(err), "entry": entry})
            await msg.ack()
            return

        if result.outcome in (IngestOutcome.IRRELEVANT, IngestOutcome.INVALID):
            logger.info("Уведомление не стало черновиком (%s): %.80s", result.outcome.value, notification.text)
            extra: dict[str, Any] = {"entry": entry}
            if result.extraction is not None:
                extra["parsedData"] = result.extraction.model_dump(mode="json", by_alias=True)
            await _to_dlq(nc, result.outcome.value, extra)
        else:
            assert result.pending is not None
            logger.info("✅ %s pending #%s (%s)", result.outcome.value, result.pending.id, result.pending.reference_code)
        await msg.ack()


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

async def _worker_loop(nc: NATS, consumer_group: str) -> None:  # pragma: no cover – infinite loop
    js = nc.jetstream()
    # durable-подписка: несколько воркеров одной группы делят поток
    sub = await js.subscribe(SUBJECT_RAW, durable=consumer_group)
    sessionmaker = get_sessionmaker()
    logger.info("Воркер запущен. Группа: '%s'. Слушаем субъект: '%s'...", consumer_group, SUBJECT_RAW)
    async for msg in sub.messages:
        await process_one(nc, msg, sessionmaker)


async def _stats_loop(js: Any, durable: str) -> None:  # pragma: no cover
    while True:
        info = await js.consumer_info(STREAM_NAME, durable)
        ACK_PENDING.set(info.num_ack_pending)
        await asyncio.sleep(5)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Ingest worker for the M-Pesa notification feed")
    p.add_argument("--name", default=f"{os.uname().nodename}-{os.getpid()}", help="Уникальное имя этого воркера")
    p.add_argument("--group", default="ingest_worker", help="Имя группы консьюмеров (durable name)")
    return p.parse_args(argv)


async def _amain(argv: list[str] | None = None) -> None:  # pragma: no cover
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()

    # Metrics & Sentry first
    start_metrics_server(settings.worker_metrics_port)
    init_sentry(release="ingest_worker@0.1.0")

    await init_models()
    nc = await get_nats_connection()
    await ensure_stream(nc=nc)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _sig_handler(*_: Any) -> None:
        logger.info("Получен сигнал остановки, завершаем работу...")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _sig_handler)

    worker_task = asyncio.create_task(_worker_loop(nc, args.group))
    stats_task = asyncio.create_task(_stats_loop(nc.jetstream(), args.group))

    await stop_event.wait()

    worker_task.cancel()
    stats_task.cancel()
    await nc.drain()

    with suppress(asyncio.CancelledError):
        await worker_task

    await nc.close()
    logger.info("Соединение с NATS закрыто. Выход.")


def main() -> None:  # pragma: no cover – CLI
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(_amain())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
