# services/api_gateway/main.py
"""FastAPI шлюз: уведомление → черновик → подтверждённая транзакция.

* **POST  /sms/notifications**     уведомление от телефона (или ручной тест).
* **GET   /sms/unconfirmed**       черновики, ждущие подтверждения.
* **PATCH /sms/{id}/confirm**      подтверждение пользователем.
* **PATCH /sms/{id}/reject**       отклонение (запись остаётся для аудита).
* **GET   /suppliers**, **/items** подсказки для формы подтверждения.
* **GET   /loans/outstanding**      непогашенные займы.
* **PATCH /loans/{id}/repaid**     заём возвращён.
* **GET   /health**                ping базы.

Пользователь определяется заголовком `X-User-Id` (аутентификация – снаружи).

❗ DTO-модели вынесены в `services.api_gateway.schemas`, чтобы избежать
циклических импортов и централизовать OpenAPI-описание.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import ngrok
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_engine, get_sessionmaker, init_models, ping
from libs.attribution import Clock, system_clock
from libs.config import Settings, get_settings
from libs.errors import ConfirmationValidationError, LoanNotFound, PendingNotFound, PendingStateError
from libs.models import ConfirmRequest, Item, PendingTransaction, RawNotification, Supplier, Transaction
from libs.sentry import init_sentry, sentry_capture
from services.api_gateway.schemas import (
    ConfirmResponse,
    InvalidResponse,
    IrrelevantResponse,
    SubmissionResponse,
    SubmitNotificationPayload,
)
from services.pipeline.confirm import confirm_pending, reject_pending
from services.pipeline.ingest import IngestOutcome, submit_notification
from services.pipeline.loans import list_outstanding_loans, mark_loan_repaid
from services.pipeline.memory import list_items, list_suppliers
from services.pipeline.metrics import start_metrics_server
from services.pipeline.store import list_unconfirmed

VERSION = "0.1.0"

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------#
# Graceful shutdown helpers (optional)                                       #
# ---------------------------------------------------------------------------#
shutdown_event = asyncio.Event()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    _configure_file_logging(settings)
    init_sentry(release=f"api_gateway@{VERSION}")
    await init_models()
    logger.info("API Gateway started")
    yield
    logger.info("API Gateway shutting down…")
    _stop_ngrok()
    await get_engine().dispose()
    shutdown_event.set()


app = FastAPI(title="M-Pesa Ledger API Gateway", version=VERSION, lifespan=lifespan)


# ──────────────────────────────────────────────────────────────────────────
# ✨  Файловое логирование
# ──────────────────────────────────────────────────────────────────────────
_file_handler: logging.FileHandler | None = None


def _configure_file_logging(settings: Settings) -> None:
    """Пишет лог шлюза ещё и в `<log_dir>/api_gateway.log`, если log_dir задан."""
    global _file_handler
    if settings.log_dir is None or _file_handler is not None:
        return
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    _file_handler = logging.FileHandler(settings.log_dir / "api_gateway.log", encoding="utf-8")
    _file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logging.getLogger().addHandler(_file_handler)


# ---------------------------------------------------------------------------#
# ngrok helpers                                                              #
# ---------------------------------------------------------------------------#
_NGROK_LISTENER: Any = None


def _start_ngrok(settings: Settings) -> None:  # pragma: no cover
    """Запускает ngrok-туннель поверх локального API Gateway."""
    global _NGROK_LISTENER

    if not settings.enable_ngrok:
        return
    if not settings.ngrok_authtoken:
        logger.info("NGROK_AUTHTOKEN не задан - туннель не поднимаю.")
        return

    ngrok_cfg: dict[str, Any] = {"authtoken": settings.ngrok_authtoken}
    # Необязательный кастомный домен
    if settings.ngrok_domain:
        ngrok_cfg["domain"] = settings.ngrok_domain

    local_url = f"http://127.0.0.1:{settings.api_port}"
    try:
        _NGROK_LISTENER = ngrok.connect(local_url, **ngrok_cfg)  # type: ignore[arg-type]
        logger.info("🌐  ngrok tunnel: %s  ➜  %s", _NGROK_LISTENER.url(), local_url)
    except Exception as exc:
        sentry_capture(exc)
        logger.exception("Не удалось поднять ngrok-туннель")


def _stop_ngrok() -> None:
    """Корректно закрывает туннель при завершении приложения."""
    global _NGROK_LISTENER
    if _NGROK_LISTENER:
        logger.info("Закрываю ngrok-туннель…")
        try:
            _NGROK_LISTENER.close()
        except Exception:
            logger.warning("Не удалось закрыть туннель корректно", exc_info=True)
        _NGROK_LISTENER = None


# ---------------------------------------------------------------------------#
# Dependencies                                                               #
# ---------------------------------------------------------------------------#
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        yield session


def get_clock() -> Clock:
    return system_clock


def get_user_id(x_user_id: str = Header(..., alias="X-User-Id", min_length=1)) -> str:
    return x_user_id


# ---------------------------------------------------------------------------#
# Error mapping                                                              #
# ---------------------------------------------------------------------------#
@app.exception_handler(ConfirmationValidationError)
async def _validation_error(_: Request, exc: ConfirmationValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "fields": exc.fields},
    )


@app.exception_handler(PendingNotFound)
@app.exception_handler(LoanNotFound)
async def _not_found(_: Request, exc: PendingNotFound | LoanNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(PendingStateError)
async def _state_conflict(_: Request, exc: PendingStateError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "status": exc.status},
    )


@app.exception_handler(Exception)
async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(
        exc,
        extras={"path": request.url.path, "user_id": request.headers.get("X-User-Id")},
        tags={"source": "http"},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal error"},
    )


def _json(model: Any, status_code: int) -> JSONResponse:
    return JSONResponse(
        content=model.model_dump(mode="json", by_alias=True),
        status_code=status_code,
    )


# ---------------------------------------------------------------------------#
# Routes                                                                     #
# ---------------------------------------------------------------------------#
@app.post(
    "/sms/notifications",
    status_code=status.HTTP_201_CREATED,
    response_model=SubmissionResponse,
    responses={
        200: {"description": "Duplicate reference or irrelevant message"},
        422: {"model": InvalidResponse},
    },
)
async def post_notification(
    payload: SubmitNotificationPayload,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> JSONResponse:
    """Прогоняет уведомление через пайплайн и возвращает черновик."""
    logger.debug("↘︎ /sms/notifications from %s (%s)", payload.sender_number, user_id)
    notification = RawNotification(
        text=payload.sms_text,
        sender_id=payload.sender_number,
        line_id=payload.line_id,
        received_at=payload.received_at,
        user_id=user_id,
    )
    result = await submit_notification(session, user_id=user_id, notification=notification, clock=clock)

    if result.outcome is IngestOutcome.IRRELEVANT:
        return _json(IrrelevantResponse(), status.HTTP_200_OK)
    if result.outcome is IngestOutcome.INVALID:
        assert result.extraction is not None
        return _json(
            InvalidResponse(
                detail="Could not extract a positive amount and a reference code",
                parsed_data=result.extraction,
            ),
            status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    assert result.pending is not None and result.extraction is not None and result.classification is not None
    envelope = SubmissionResponse(
        pending_transaction=result.pending,
        parsed_data=result.extraction,
        classification=result.classification,
        matched_supplier=result.matched_supplier,
        suggestion=result.suggestion,
        needs_confirmation=True,
        duplicate=result.outcome is IngestOutcome.DUPLICATE,
    )
    code = status.HTTP_201_CREATED if result.outcome is IngestOutcome.CREATED else status.HTTP_200_OK
    return _json(envelope, code)


@app.get("/sms/unconfirmed", response_model=List[PendingTransaction])
async def get_unconfirmed(
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> List[PendingTransaction]:
    rows = await list_unconfirmed(session, user_id)
    return [PendingTransaction.model_validate(row) for row in rows]


@app.patch("/sms/{pending_id}/confirm", response_model=ConfirmResponse)
async def patch_confirm(
    pending_id: int,
    payload: ConfirmRequest,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> ConfirmResponse:
    transaction = await confirm_pending(
        session, user_id=user_id, pending_id=pending_id, request=payload, clock=clock
    )
    return ConfirmResponse(transaction=transaction, confirmed=True)


@app.patch("/sms/{pending_id}/reject", response_model=PendingTransaction)
async def patch_reject(
    pending_id: int,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> PendingTransaction:
    return await reject_pending(session, user_id=user_id, pending_id=pending_id, clock=clock)


@app.get("/suppliers", response_model=List[Supplier])
async def get_suppliers(
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> List[Supplier]:
    return [Supplier.model_validate(row) for row in await list_suppliers(session, user_id)]


@app.get("/items", response_model=List[Item])
async def get_items(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> List[Item]:
    return [Item.model_validate(row) for row in await list_items(session, user_id, category_id)]


@app.get("/loans/outstanding", response_model=List[Transaction])
async def get_outstanding_loans(
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> List[Transaction]:
    return [Transaction.model_validate(row) for row in await list_outstanding_loans(session, user_id)]


@app.patch("/loans/{transaction_id}/repaid", response_model=Transaction)
async def patch_loan_repaid(
    transaction_id: int,
    user_id: str = Depends(get_user_id),
    session: AsyncSession = Depends(get_session),
) -> Transaction:
    return await mark_loan_repaid(session, user_id=user_id, transaction_id=transaction_id)


@app.get("/health", status_code=status.HTTP_200_OK, response_model=None)
async def health(session: AsyncSession = Depends(get_session)) -> Dict[str, Any] | JSONResponse:  # noqa: D401
    """Проверка готовности. Легковесна: просто SELECT 1."""
    try:
        await ping(session)
        return {"status": "ok"}
    except Exception as exc:
        logger.warning("Database ping failed: %s", exc)
        sentry_capture(exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "db_down"},
        )


# ---------------------------------------------------------------------------#
# Entrypoint                                                                 #
# ---------------------------------------------------------------------------#
if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = get_settings()

    start_metrics_server(settings.api_metrics_port)

    # ──────────────────────────────────────────────────────────────────────
    # ngrok-туннель (если настроен)
    # ──────────────────────────────────────────────────────────────────────
    _start_ngrok(settings)

    # ──────────────────────────────────────────────────────────────────────
    # Грейсфул-завершение
    # ──────────────────────────────────────────────────────────────────────
    def _graceful_exit(*_sig: object) -> None:  # noqa: D401
        logger.info("SIGTERM/SIGINT caught, shutting down uvicorn…")
        _stop_ngrok()
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _graceful_exit)
    signal.signal(signal.SIGINT, _graceful_exit)

    # ──────────────────────────────────────────────────────────────────────
    # Запуск Uvicorn
    # ──────────────────────────────────────────────────────────────────────
    uvicorn.run(
        "services.api_gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        lifespan="on",
    )
