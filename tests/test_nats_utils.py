# tests/test_nats_utils.py
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from nats.js.errors import NotFoundError

from libs.models import RawNotification
from libs.nats_utils import (
    STREAM_NAME,
    SUBJECT_FAILED,
    SUBJECT_RAW,
    ensure_stream,
    get_nats_connection,
    publish_raw_notification,
)


@pytest.fixture
def sample_notification() -> RawNotification:
    """Фикстура, создающая тестовое уведомление для шины."""
    return RawNotification(
        text="QR345678 Confirmed. Ksh2,500.00 sent to JOHN KAMAU 0712345678",
        sender_id="MPESA",
        line_id="SIM1",
        user_id="user-1",
    )


@pytest.fixture
def mock_nc():
    """NATS-клиент с замоканным JetStream-контекстом."""
    js = MagicMock()
    js.stream_info = AsyncMock()
    js.add_stream = AsyncMock()
    js.update_stream = AsyncMock()
    js.publish = AsyncMock(return_value="ack")
    nc = MagicMock()
    nc.jetstream.return_value = js
    return nc


@pytest.fixture(autouse=True)
def clear_cache():
    """Очищаем кеш синглтона после каждого теста."""
    yield
    get_nats_connection.cache_clear()


async def test_get_nats_connection_is_singleton(mocker):
    mock_connect = mocker.patch("nats.connect", new_callable=AsyncMock)
    mock_connect.return_value = "fake_connection_object"

    conn1 = await get_nats_connection()
    conn2 = await get_nats_connection()

    assert conn1 is conn2
    mock_connect.assert_called_once()


async def test_ensure_stream_creates_missing_stream(mock_nc):
    js = mock_nc.jetstream.return_value
    js.stream_info.side_effect = NotFoundError()

    await ensure_stream(mock_nc)

    js.add_stream.assert_awaited_once()
    config = js.add_stream.await_args.args[0]
    assert config.name == STREAM_NAME
    assert sorted(config.subjects) == sorted([SUBJECT_RAW, SUBJECT_FAILED])
    js.update_stream.assert_not_awaited()


async def test_ensure_stream_updates_stale_subjects(mock_nc):
    js = mock_nc.jetstream.return_value
    js.stream_info.return_value = MagicMock(config=MagicMock(subjects=["sms.raw"]))

    await ensure_stream(mock_nc)

    js.update_stream.assert_awaited_once()
    js.add_stream.assert_not_awaited()


async def test_ensure_stream_is_noop_when_up_to_date(mock_nc):
    js = mock_nc.jetstream.return_value
    js.stream_info.return_value = MagicMock(config=MagicMock(subjects=[SUBJECT_FAILED, SUBJECT_RAW]))

    await ensure_stream(mock_nc)

    js.update_stream.assert_not_awaited()
    js.add_stream.assert_not_awaited()


async def test_publish_raw_notification(mock_nc, sample_notification):
    js = mock_nc.jetstream.return_value
    js.stream_info.return_value = MagicMock(config=MagicMock(subjects=[SUBJECT_RAW, SUBJECT_FAILED]))

    ack = await publish_raw_notification(mock_nc, sample_notification)

    assert ack == "ack"
    js.publish.assert_awaited_once()
    subject, payload = js.publish.await_args.args
    assert subject == SUBJECT_RAW
    body = json.loads(payload)
    assert body["userId"] == "user-1"
    assert body["senderId"] == "MPESA"
    assert RawNotification.model_validate_json(payload) == sample_notification
