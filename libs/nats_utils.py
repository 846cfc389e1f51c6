# libs/nats_utils.py
"""NATS-helpers for the notification feed (async, JetStream-only).

Android-листенер (или любой другой источник) кладёт сырое уведомление в
`sms.raw`; `services.ingest_worker` его забирает и прогоняет через тот же
пайплайн, что и HTTP-шлюз. Всё, что не стало черновиком (мусор, невалидный
разбор, ошибки), уходит в `sms.failed` для ручного разбора.
"""
from __future__ import annotations

import logging

import nats
from async_lru import alru_cache
from nats.aio.client import Client as NATS
from nats.js.api import PubAck, RetentionPolicy, StorageType, StreamConfig
from nats.js.errors import NotFoundError

from libs.config import get_settings
from libs.models import RawNotification

# ---------------------------------------------------------------------------
# Constants / settings
# ---------------------------------------------------------------------------
STREAM_NAME = "SMS"
SUBJECT_RAW = "sms.raw"  # Сырые уведомления от листенера
SUBJECT_FAILED = "sms.failed"  # DLQ: не ставшие черновиком

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# NATS connection singleton
# ---------------------------------------------------------------------------
@alru_cache(maxsize=1)
async def get_nats_connection() -> NATS:  # pragma: no cover – network
    """Singleton-подключение к NATS."""
    settings = get_settings()
    logger.info("Connecting to NATS %s", settings.nats_dsn)
    nc = await nats.connect(settings.nats_dsn)
    return nc


async def ensure_stream(nc: NATS) -> None:
    """
    Проверяет существование стрима и создает/обновляет его, если он
    отсутствует или его список субъектов устарел. Идемпотентна.
    """
    subjects = [SUBJECT_RAW, SUBJECT_FAILED]
    jsm = nc.jetstream()
    config = StreamConfig(
        name=STREAM_NAME,
        subjects=subjects,
        storage=StorageType.FILE,
        retention=RetentionPolicy.LIMITS,
        max_age=60 * 60 * 24 * 3,  # 3 дня в секундах
    )

    try:
        stream_info = await jsm.stream_info(STREAM_NAME)
    except NotFoundError:
        logger.info("Стрим '%s' не найден, создаём", STREAM_NAME)
        await jsm.add_stream(config)
        return

    if sorted(stream_info.config.subjects or []) != sorted(subjects):
        logger.warning("Конфигурация стрима '%s' устарела. Обновляем...", STREAM_NAME)
        await jsm.update_stream(config)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
async def publish_raw_notification(
    nc: NATS | None,
    notification: RawNotification,
    *,
    subject: str = SUBJECT_RAW,
) -> PubAck:
    """Publish an *unparsed* notification into JetStream.

    Parameters
    ----------
    nc: NATS | None
        Активное подключение; если `None`, будет создан singleton через `get_nats_connection()`.
    notification: RawNotification
        Pydantic-модель «как есть» (должна содержать `user_id`).
    subject: str
        Название NATS subject (по умолчанию `sms.raw`).
    """
    if nc is None:  # pragma: no cover – convenience
        nc = await get_nats_connection()

    await ensure_stream(nc=nc)

    js = nc.jetstream()
    payload = notification.model_dump_json(by_alias=True).encode("utf-8")
    return await js.publish(subject, payload)


__all__ = [
    "publish_raw_notification",
    "get_nats_connection",
    "ensure_stream",
    "STREAM_NAME",
    "SUBJECT_RAW",
    "SUBJECT_FAILED",
]
