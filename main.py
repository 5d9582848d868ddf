"""FastAPI application for the clinic queue system.

Patients register for a ticket and follow their position on a personal
page; the front desk calls patients in order and completes or cancels
them.  Both sides stay current through Server-Sent Events fed by the
change notifications in :mod:`notifications`.

Front-desk endpoints require the shared PIN stored in settings
(``ADMIN_PASS`` overrides it at startup).
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

import config
import notifications
import services
from errors import QueueError, StoreUnavailableError
from frontdesk import desk_for
from schemas import (
    ActionRequest,
    AddPatientRequest,
    PatientView,
    RegisterRequest,
    SettingsRequest,
)
from viewers import ViewerSync, read_board_view, read_patient_view

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting Clinic Queue application...")
    services.init_db()
    if config.ADMIN_PASS:
        with services.get_session() as session:
            services.set_admin_pass(session, config.ADMIN_PASS)
        logger.info("🔐 Admin PIN set from environment")
    logger.info("⚡ Redis: %s", notifications.redis_status())
    yield
    logger.info("🛑 Clinic Queue shutting down")


app = FastAPI(
    title="Clinic Queue",
    description="Patient queue with live position tracking",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    content: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, StoreUnavailableError):
        # the client shows a "connection problem, retry" state
        content["retry"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


def require_passcode(passcode: Optional[str]) -> None:
    with services.get_session() as session:
        if not services.check_passcode(session, passcode):
            raise HTTPException(status_code=401, detail="Invalid passcode")


def sse_message(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def event_stream(request: Request, sync: ViewerSync, subscription) -> AsyncIterator[str]:
    """Yield a viewer's state as SSE messages until the client leaves."""
    stream = sync.stream(subscription)
    try:
        async for state in stream:
            if await request.is_disconnected():
                break
            if state is None:
                yield sse_message({"type": "heartbeat"})
                continue
            data = state.model_dump() if isinstance(state, PatientView) else state
            yield sse_message({"type": "view", "data": data})
    except QueueError as exc:
        logger.warning("Event stream stopped: %s", exc.message)
        yield sse_message({"type": "error", "message": exc.message, "retry": True})
    finally:
        await stream.aclose()
        subscription.close()


def event_response(request: Request, sync: ViewerSync, subscription) -> StreamingResponse:
    return StreamingResponse(
        event_stream(request, sync, subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@app.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint with system status."""
    return {
        "service": "Clinic Queue API",
        "status": "running",
        "version": app.version,
        "endpoints": {
            "register": "/patients",
            "patient_view": "/queue/{patient_id}",
            "patient_events": "/queue/{patient_id}/events",
            "admin_board": "/admin/board",
            "admin_events": "/admin/events",
            "admin_action": "/admin/action",
        },
    }


@app.get("/health")
def health_check() -> Dict[str, Any]:
    try:
        with services.get_session() as session:
            settings = services.get_settings(session)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {exc.message}")
    return {
        "status": "healthy",
        "database": "connected",
        "redis": notifications.redis_status(),
        "clinic_name": settings.clinic_name,
    }


# ===== PATIENT-FACING =====

@app.post("/patients", status_code=201)
def register(body: RegisterRequest, request: Request) -> Dict[str, Any]:
    """Register a patient and hand out their ticket."""
    rate_key = (body.phone or "").replace(" ", "") or (request.client.host if request.client else "anonymous")
    if not notifications.check_rate_limit(rate_key, "register"):
        raise HTTPException(status_code=429, detail="Too many requests. Please wait a few minutes before trying again.")

    with services.get_session() as session:
        patient, entry = services.register_patient(session, body.name, body.phone)
    return {
        "patient_id": patient.id,
        "entry_id": entry.id,
        "position": entry.position,
        "estimated_wait_time": entry.estimated_wait_time,
        "status": patient.status.value,
    }


@app.get("/queue/{patient_id}", response_model=PatientView)
def patient_view(patient_id: str) -> PatientView:
    return read_patient_view(patient_id)


@app.get("/queue/{patient_id}/events")
async def patient_events(patient_id: str, request: Request) -> StreamingResponse:
    """Server-Sent Events for one patient's page."""
    sync = ViewerSync(lambda: read_patient_view(patient_id))
    # 404 before the stream opens
    await sync.refresh()
    subscription = await run_in_threadpool(notifications.subscribe, patient_id)
    return event_response(request, sync, subscription)


# ===== FRONT DESK =====

@app.get("/admin/board")
def admin_board(passcode: str) -> Dict[str, Any]:
    """Return the current board state."""
    require_passcode(passcode)
    return read_board_view()


@app.post("/admin/patients", status_code=201)
def admin_add_patient(body: AddPatientRequest) -> Dict[str, Any]:
    require_passcode(body.passcode)
    return desk_for(body.session).add_patient(body.name, body.phone)


@app.post("/admin/action")
def admin_action(body: ActionRequest) -> Dict[str, Any]:
    """Perform an action on the queue (call_next, complete, cancel)."""
    require_passcode(body.passcode)
    return desk_for(body.session).run(body.action, body.entry_id, body.patient_id)


@app.get("/admin/events")
async def admin_events(passcode: str, request: Request) -> StreamingResponse:
    """Server-Sent Events endpoint for real-time board updates."""
    await run_in_threadpool(require_passcode, passcode)
    sync = ViewerSync(read_board_view)
    subscription = await run_in_threadpool(notifications.subscribe)
    return event_response(request, sync, subscription)


@app.get("/admin/metrics")
def admin_metrics(passcode: str) -> Dict[str, Any]:
    require_passcode(passcode)
    with services.get_session() as session:
        return services.get_queue_metrics(session)


@app.post("/admin/settings")
def admin_settings(body: SettingsRequest) -> Dict[str, Any]:
    require_passcode(body.passcode)
    with services.get_session() as session:
        settings = services.update_settings(
            session,
            average_consultation_time=body.average_consultation_time,
            open=body.open,
            clinic_name=body.clinic_name,
        )
    return {
        "clinic_name": settings.clinic_name,
        "average_consultation_time": settings.average_consultation_time,
        "open": settings.open,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
