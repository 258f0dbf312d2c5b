"""FastAPI server for the well-being engine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vigil import __version__
from vigil.api.admin_routes import admin_router
from vigil.api.auth import GatewayTokenMiddleware
from vigil.api.wellbeing_routes import wellbeing_router
from vigil.liveness.engine import WellbeingService
from vigil.liveness.errors import (
    AdminRequired,
    ConcurrencyConflict,
    InvalidTransition,
    NotFoundError,
    TransientError,
    ValidationError,
    VigilError,
)
from vigil.liveness.models import AdminReview, NotificationAttempt
from vigil.liveness.store import LivenessStore
from vigil.nominees import SqliteNomineeDirectory
from vigil.notifications import build_channel
from vigil.notifications.admin import AdminNotifier

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_BY_ERROR: list[tuple[type[VigilError], int]] = [
    (ValidationError, 400),
    (AdminRequired, 403),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ConcurrencyConflict, 409),
    (TransientError, 503),
]


def error_status(exc: VigilError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


async def _vigil_error_handler(request: Request, exc: VigilError) -> JSONResponse:
    status = error_status(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine, start the sweep loop and resume unfinished dispatches."""
    loop = asyncio.get_running_loop()

    store = LivenessStore()
    directory = SqliteNomineeDirectory(store.db_path)
    notifier = AdminNotifier()
    app.state.admin_notifier = notifier
    logger.info("Operator alerts: %s", notifier.status())

    # Callbacks fire on worker threads; hand the coroutine to the server loop.
    def _on_escalation(review: AdminReview) -> None:
        if notifier.is_enabled:
            profile = store.get_profile(review.user_id)
            asyncio.run_coroutine_threadsafe(
                notifier.notify_review_opened(
                    review.id,
                    review.user_id,
                    missed_count=profile.missed_count if profile else None,
                    threshold=profile.threshold if profile else None,
                ),
                loop,
            )

    def _on_exhausted(attempt: NotificationAttempt) -> None:
        if notifier.is_enabled:
            asyncio.run_coroutine_threadsafe(
                notifier.notify_followup(attempt.review_id, attempt.nominee_id, attempt.last_error), loop,
            )

    service = WellbeingService(
        store,
        directory,
        build_channel(),
        on_escalation=_on_escalation,
        on_exhausted=_on_exhausted,
    )
    app.state.service = service

    try:
        await service.scanner.start()
    except Exception:
        logger.exception("Liveness scanner failed to start")

    resumed = service.resume_dispatches()
    if resumed:
        logger.info("Re-queued %d approved reviews for dispatch", len(resumed))

    yield

    # Shutdown
    await service.scanner.stop()
    service.shutdown()
    store.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Vigil - Well-being Check-ins",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(GatewayTokenMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(VigilError, _vigil_error_handler)

    app.include_router(wellbeing_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    return app


app = create_app()
