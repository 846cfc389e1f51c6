# libs/sentry.py
"""Thin wrapper around *sentry-sdk* used by every service.

*   **Lazy init** – Sentry initialises **once** via :func:`init_sentry`.
    Without a DSN, the helpers silently no-op – удобно для локальной
    разработки и тестов.
*   **Ledger context** – :func:`sentry_capture` attaches *extras* and
    promotes ledger identifiers (``user_id``, ``pending_id``,
    ``transaction_id``, ``hook``) to tags, so events can be filtered by
    user or by the pending transaction that failed. ``user_id`` also
    becomes the Sentry user.

Usage
-----
```python
from libs.sentry import init_sentry, sentry_capture

init_sentry(release="api_gateway@1.0.0")
...
try:
    confirm(...)
except Exception as e:
    sentry_capture(e, extras={"user_id": "user-1", "pending_id": 123})
```
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Optional

import sentry_sdk

from libs.config import get_settings

# Ключи extras, по которым в Sentry удобно искать – дублируем их в теги
LEDGER_TAGS = ("user_id", "pending_id", "transaction_id", "hook")


@lru_cache(maxsize=1)
def init_sentry(*, release: str | None = None, env: str | None = None) -> None:
    """Initialise Sentry SDK once per process.

    If neither *SENTRY_DSN* environment variable nor *settings.sentry_dsn* is
    present, the function becomes a no-op.
    """
    settings = get_settings()
    dsn = os.getenv("SENTRY_DSN") or settings.sentry_dsn
    if not dsn:
        return  # Local run without Sentry – silently skip

    sentry_sdk.init(
        dsn=dsn,
        release=release,
        environment=env or settings.env,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "1.0")),
        max_value_length=4_096,  # SMS body + parsed fields
        send_default_pii=False,
    )
    sentry_sdk.set_tag("timezone", settings.timezone)


def sentry_capture(
    exc: BaseException,
    *,
    extras: Optional[dict[str, Any]] = None,
    tags: Optional[dict[str, str]] = None,
) -> None:
    """Capture *exc* with ledger context, if the SDK is initialised."""
    if not sentry_sdk.is_initialized():
        return

    extras = extras or {}
    with sentry_sdk.new_scope() as scope:
        for key, value in extras.items():
            scope.set_extra(key, value)
        for key in LEDGER_TAGS:
            if extras.get(key) is not None:
                scope.set_tag(key, str(extras[key]))
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        if extras.get("user_id"):
            scope.set_user({"id": str(extras["user_id"])})
        sentry_sdk.capture_exception(exc)
