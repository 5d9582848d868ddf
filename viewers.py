"""Viewer synchronization for patient pages and the front-desk board.

A viewer never patches its state from notification payloads.  Every change
notification triggers a full re-read of the queue, and the most recently
issued read wins: when two re-reads overlap and finish out of order, the
older one is discarded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Generic, Optional, TypeVar

from starlette.concurrency import run_in_threadpool

import config
import services
from errors import NotFoundError
from models import Patient, PatientStatus, QueueEntry, TERMINAL_STATUSES
from notifications import Subscription
from schemas import PatientView

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCREEN_THANK_YOU = "thank_you"
SCREEN_YOUR_TURN = "your_turn"
SCREEN_WAITING = "waiting"


def present(entry: Optional[QueueEntry], patient: Patient) -> PatientView:
    """Decide what a patient sees from their patient row and queue entry."""
    if patient.status in TERMINAL_STATUSES:
        return PatientView(
            patient_id=patient.id,
            name=patient.name,
            status=patient.status.value,
            screen=SCREEN_THANK_YOU,
        )
    if patient.status == PatientStatus.called:
        return PatientView(
            patient_id=patient.id,
            name=patient.name,
            status=patient.status.value,
            screen=SCREEN_YOUR_TURN,
            position=entry.position if entry is not None else None,
            estimated_wait_time=0,
        )
    return PatientView(
        patient_id=patient.id,
        name=patient.name,
        status=patient.status.value,
        screen=SCREEN_WAITING,
        position=entry.position if entry is not None else None,
        estimated_wait_time=entry.estimated_wait_time if entry is not None else None,
    )


def read_patient_view(patient_id: str) -> PatientView:
    with services.get_session() as session:
        patient = services.get_patient(session, patient_id)
        if patient is None:
            raise NotFoundError(f"Patient {patient_id} not found")
        entry = services.get_active_entry(session, patient_id)
    return present(entry, patient)


def read_board_view() -> Dict[str, Any]:
    with services.get_session() as session:
        settings = services.get_settings(session)
        entries = services.get_board(session)
    return {
        "clinic_name": settings.clinic_name,
        "average_consultation_time": settings.average_consultation_time,
        "open": settings.open,
        "entries": entries,
    }


class ViewerSync(Generic[T]):
    """Holds one viewer's latest state and re-reads it on demand.

    ``read`` is a blocking call against the store; it runs in the
    threadpool so several refreshes may be in flight at once.
    """

    def __init__(self, read: Callable[[], T]) -> None:
        self._read = read
        self._issued = 0
        self._applied = 0
        self.current: Optional[T] = None
        self.read_at: Optional[datetime] = None

    async def refresh(self) -> Optional[T]:
        self._issued += 1
        ticket = self._issued
        result = await run_in_threadpool(self._read)
        if ticket > self._applied:
            self._applied = ticket
            self.current = result
            self.read_at = datetime.now(timezone.utc)
        else:
            logger.debug("Discarding stale read %d (latest applied %d)", ticket, self._applied)
        return self.current

    async def stream(
        self, subscription: Subscription, heartbeat: Optional[float] = None
    ) -> AsyncIterator[Optional[T]]:
        """Yield the state now and after every change.

        Yields None when ``heartbeat`` seconds pass without a change.  The
        subscription is released when the stream ends.
        """
        heartbeat = config.HEARTBEAT_SECONDS if heartbeat is None else heartbeat
        try:
            yield await self.refresh()
            while True:
                if await subscription.wait(heartbeat):
                    yield await self.refresh()
                else:
                    yield None
        finally:
            subscription.close()
