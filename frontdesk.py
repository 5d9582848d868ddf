"""Front-desk commands: add a patient, call the next one, complete or cancel.

Each operator session gets one :class:`FrontDesk`.  A desk runs one command
at a time; a command that arrives while another is still in flight is
refused with DeskBusyError rather than queued, which stops a double click
from calling or removing the same patient twice.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import services
from errors import DeskBusyError, NotFoundError, ValidationError
from models import QueueEntry

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"

_desks: Dict[str, "FrontDesk"] = {}
_desks_lock = threading.Lock()


def entry_to_dict(entry: Optional[QueueEntry]) -> Optional[Dict[str, Any]]:
    if entry is None:
        return None
    return {
        "entry_id": entry.id,
        "patient_id": entry.patient_id,
        "position": entry.position,
        "estimated_wait_time": entry.estimated_wait_time,
    }


def _result(action: str, entry: Optional[QueueEntry] = None, already_resolved: bool = False) -> Dict[str, Any]:
    return {
        "ok": True,
        "action": action,
        "entry": entry_to_dict(entry),
        "already_resolved": already_resolved,
    }


class FrontDesk:
    def __init__(self, session_id: str = DEFAULT_SESSION) -> None:
        self.session_id = session_id
        self._in_flight = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    @contextmanager
    def _exclusive(self, action: str) -> Iterator[None]:
        if not self._in_flight.acquire(blocking=False):
            logger.info("Desk %s busy, refusing %s", self.session_id, action)
            raise DeskBusyError("Another action is still in progress")
        try:
            yield
        finally:
            self._in_flight.release()

    def add_patient(self, name: Optional[str], phone: Optional[str] = None) -> Dict[str, Any]:
        with self._exclusive("add_patient"), services.get_session() as session:
            _, entry = services.register_patient(session, name, phone)
        return _result("add_patient", entry)

    def call_next(self) -> Dict[str, Any]:
        with self._exclusive("call_next"), services.get_session() as session:
            entry = services.call_next(session)
        result = _result("call_next", entry)
        result["empty"] = entry is None
        return result

    def complete(self, entry_id: Optional[str], patient_id: Optional[str]) -> Dict[str, Any]:
        return self._remove("complete", services.complete, entry_id, patient_id)

    def cancel(self, entry_id: Optional[str], patient_id: Optional[str]) -> Dict[str, Any]:
        return self._remove("cancel", services.cancel, entry_id, patient_id)

    def _remove(self, action, operation, entry_id, patient_id) -> Dict[str, Any]:
        if not entry_id or not patient_id:
            raise ValidationError("entry_id and patient_id are required")
        with self._exclusive(action), services.get_session() as session:
            try:
                operation(session, entry_id, patient_id)
            except NotFoundError:
                # most likely a duplicate submission that already went through
                logger.info("%s on %s: already resolved", action, entry_id)
                return _result(action, already_resolved=True)
        return _result(action)

    def run(self, action: str, entry_id: Optional[str] = None,
            patient_id: Optional[str] = None) -> Dict[str, Any]:
        if action == "call_next":
            return self.call_next()
        if action == "complete":
            return self.complete(entry_id, patient_id)
        if action == "cancel":
            return self.cancel(entry_id, patient_id)
        raise ValidationError(f"Invalid action: {action}")


def desk_for(session_id: Optional[str] = None) -> FrontDesk:
    session_id = session_id or DEFAULT_SESSION
    with _desks_lock:
        desk = _desks.get(session_id)
        if desk is None:
            desk = _desks[session_id] = FrontDesk(session_id)
        return desk


def reset_desks() -> None:
    with _desks_lock:
        _desks.clear()
