"""Database and business logic for the clinic queue.

This module owns the patient store and the queue ordering engine.  All
queue state lives in two tables, ``patient`` and ``queueentry``; every
other part of the application reads and changes it through the functions
below and never assigns positions itself.

Positions of active entries are always the dense range ``1..N``.  Every
mutation that can renumber (enroll, complete, cancel, a change of the
average consultation time) runs inside :func:`queue_transaction`: one
database transaction, serialized by a process-wide writer lock and by a
``FOR UPDATE`` lock on the settings row where the database supports it.

Each committed mutation is announced through :mod:`notifications`.
"""

from __future__ import annotations

import hmac
import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, func, select

import config
import notifications
from errors import NotFoundError, StoreUnavailableError, ValidationError
from models import (
    Event,
    EventType,
    Patient,
    PatientStatus,
    QueueEntry,
    Settings,
    TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

# 06/07/05 + 8 digits, or +212 + 9 digits
PHONE_PATTERN = re.compile(r"(?:\+212|0)[5-7][0-9]{8}")

ALLOWED_TRANSITIONS = {
    PatientStatus.waiting: {PatientStatus.called, PatientStatus.completed, PatientStatus.cancelled},
    PatientStatus.called: {PatientStatus.completed, PatientStatus.cancelled},
}

# errors that mean the database cannot be reached, not that a statement was wrong
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError)

_engine: Optional[Engine] = None
_write_lock = threading.Lock()


# ===== CONNECTION =====

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record) -> None:
            dbapi_connection.execute("PRAGMA foreign_keys = ON")

        return engine
    return create_engine(url, pool_pre_ping=True)


def configure_engine(url: Optional[str] = None) -> Engine:
    """(Re)build the module engine, by default from DATABASE_URL."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = make_engine(url or config.DATABASE_URL)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        configure_engine()
    return _engine


def get_session() -> Session:
    """Return a new session.  Objects stay readable after it is closed."""
    return Session(get_engine(), expire_on_commit=False)


@contextmanager
def store_guard(session: Session) -> Iterator[None]:
    """Translate connectivity failures into StoreUnavailableError."""
    try:
        yield
    except UNAVAILABLE_ERRORS as exc:
        session.rollback()
        logger.error("Database unavailable: %s", exc)
        raise StoreUnavailableError("Database unavailable") from exc


def init_db() -> None:
    """Create tables if they do not exist and seed the settings row."""
    engine = get_engine()
    try:
        SQLModel.metadata.create_all(engine)
    except UNAVAILABLE_ERRORS as exc:
        logger.error("Database unavailable: %s", exc)
        raise StoreUnavailableError("Database unavailable") from exc
    with get_session() as session, store_guard(session):
        if session.get(Settings, 1) is None:
            session.add(Settings(
                id=1,
                average_consultation_time=config.DEFAULT_CONSULTATION_MINUTES,
                admin_passcode=config.DEFAULT_ADMIN_PASSCODE,
            ))
            session.commit()


@contextmanager
def queue_transaction(session: Session) -> Iterator[Settings]:
    """Run one queue mutation as a single serialized transaction.

    Yields the settings row, locked ``FOR UPDATE`` on databases that
    support row locks.  Commits on success, rolls back on any error.
    Rows read inside must be loaded with ``populate_existing`` so that
    another writer's changes replace stale copies in the identity map.
    """
    with _write_lock:
        try:
            settings = session.exec(
                select(Settings)
                .where(Settings.id == 1)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).one()
            yield settings
            session.commit()
        except UNAVAILABLE_ERRORS as exc:
            session.rollback()
            logger.error("Database unavailable: %s", exc)
            raise StoreUnavailableError("Database unavailable") from exc
        except Exception:
            session.rollback()
            raise


# ===== SETTINGS =====

def get_settings(session: Session) -> Settings:
    with store_guard(session):
        settings = session.get(Settings, 1)
    if settings is None:
        raise StoreUnavailableError("Settings are not initialised")
    return settings


def set_admin_pass(session: Session, passcode: str) -> None:
    with store_guard(session):
        settings = session.get(Settings, 1)
        settings.admin_passcode = passcode
        session.add(settings)
        session.commit()


def check_passcode(session: Session, passcode: Optional[str]) -> bool:
    expected = get_settings(session).admin_passcode
    return hmac.compare_digest((passcode or "").encode(), expected.encode())


def update_settings(
    session: Session,
    average_consultation_time: Optional[int] = None,
    open: Optional[bool] = None,
    clinic_name: Optional[str] = None,
) -> Settings:
    """Change clinic settings.  A new consultation time re-estimates every wait."""
    if average_consultation_time is not None and average_consultation_time < 1:
        raise ValidationError("Average consultation time must be at least 1 minute")
    if clinic_name is not None and not clinic_name.strip():
        raise ValidationError("Clinic name cannot be empty")

    touched: List[str] = []
    with queue_transaction(session) as settings:
        if open is not None:
            settings.open = open
        if clinic_name is not None:
            settings.clinic_name = clinic_name.strip()
        if (average_consultation_time is not None
                and average_consultation_time != settings.average_consultation_time):
            settings.average_consultation_time = average_consultation_time
            touched = _recompute_waits(session, average_consultation_time)
        session.add(settings)

    logger.info("Settings updated (average=%s min, open=%s)",
                settings.average_consultation_time, settings.open)
    notifications.publish_changes(touched, "settings")
    return settings


# ===== PATIENT STORE =====

def validate_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Patient name is required")
    return cleaned


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """Return the phone without whitespace, or None when none was given."""
    if phone is None:
        return None
    cleaned = re.sub(r"\s", "", phone)
    if not cleaned:
        return None
    if not PHONE_PATTERN.fullmatch(cleaned):
        raise ValidationError("Invalid phone number. Use 06XXXXXXXX, 07XXXXXXXX or +212XXXXXXXXX")
    return cleaned


def create_patient(session: Session, name: Optional[str], phone: Optional[str] = None) -> Patient:
    """Add a new waiting patient to the session.  The caller commits."""
    patient = Patient(name=validate_name(name), phone=validate_phone(phone))
    session.add(patient)
    return patient


def get_patient(session: Session, patient_id: str) -> Optional[Patient]:
    with store_guard(session):
        return session.get(Patient, patient_id)


def set_patient_status(session: Session, patient: Patient, status: PatientStatus) -> None:
    """Move a patient along waiting -> called -> completed/cancelled."""
    if patient.status == status:
        return
    if status not in ALLOWED_TRANSITIONS.get(patient.status, ()):
        raise ValidationError(
            f"Cannot move patient from {patient.status.value} to {status.value}"
        )
    patient.status = status
    patient.updated_at = utcnow()
    session.add(patient)


def _record(session: Session, patient_id: str, event_type: EventType) -> None:
    session.add(Event(patient_id=patient_id, event_type=event_type))


# ===== QUEUE ORDERING ENGINE =====

def estimate_wait(position: int, average_consultation_time: int) -> int:
    return (position - 1) * average_consultation_time


def enroll(session: Session, patient: Patient) -> QueueEntry:
    """Append a patient to the end of the queue."""
    if not (patient.name or "").strip():
        raise ValidationError("Patient name is required")

    stored = inspect(patient).persistent
    with queue_transaction(session) as settings:
        if not settings.open:
            raise ValidationError("The queue is closed")
        if stored:
            session.refresh(patient)
        if patient.status in TERMINAL_STATUSES:
            raise ValidationError("Patient is no longer active")
        existing = session.exec(
            select(QueueEntry).where(QueueEntry.patient_id == patient.id)
        ).first()
        if existing is not None:
            raise ValidationError("Patient already has an active ticket")

        active_count = session.exec(select(func.count()).select_from(QueueEntry)).one()
        position = active_count + 1
        entry = QueueEntry(
            patient_id=patient.id,
            position=position,
            estimated_wait_time=estimate_wait(position, settings.average_consultation_time),
        )
        session.add(patient)
        session.add(entry)
        _record(session, patient.id, EventType.joined)

    logger.info("Patient %s enrolled at position %d", patient.id, position)
    notifications.publish_changes([patient.id], "joined")
    return entry


def register_patient(
    session: Session, name: Optional[str], phone: Optional[str] = None
) -> Tuple[Patient, QueueEntry]:
    """Create a patient and enroll them in one transaction."""
    patient = create_patient(session, name, phone)
    entry = enroll(session, patient)
    logger.info("Registered patient %s (phone %s)", patient.id,
                f"...{patient.phone[-4:]}" if patient.phone else "none")
    return patient, entry


def call_next(session: Session) -> Optional[QueueEntry]:
    """Mark the head of the queue as in service.

    The entry keeps position 1 until it is completed or cancelled.  Returns
    None when the queue is empty.
    """
    with queue_transaction(session):
        entry = session.exec(
            select(QueueEntry)
            .order_by(QueueEntry.position)
            .limit(1)
            .execution_options(populate_existing=True)
        ).first()
        if entry is not None:
            patient = session.get(Patient, entry.patient_id, populate_existing=True)
            if patient.status != PatientStatus.called:
                set_patient_status(session, patient, PatientStatus.called)
                _record(session, patient.id, EventType.called)
            entry.estimated_wait_time = 0
            entry.updated_at = utcnow()
            session.add(entry)

    if entry is None:
        logger.info("Call next: queue is empty")
        return None
    logger.info("Called patient %s", entry.patient_id)
    notifications.publish_changes([entry.patient_id], "called")
    return entry


def _recompute_waits(session: Session, average_consultation_time: int) -> List[str]:
    entries = session.exec(
        select(QueueEntry)
        .order_by(QueueEntry.position)
        .execution_options(populate_existing=True)
    ).all()
    called = set(session.exec(
        select(Patient.id).where(Patient.status == PatientStatus.called)
    ).all())
    now = utcnow()
    for entry in entries:
        entry.estimated_wait_time = (
            0 if entry.patient_id in called
            else estimate_wait(entry.position, average_consultation_time)
        )
        entry.updated_at = now
        session.add(entry)
    return [entry.patient_id for entry in entries]


def _compact(session: Session, removed_position: int, average_consultation_time: int) -> List[str]:
    """Close the gap at ``removed_position``.  Returns renumbered patient ids."""
    followers = session.exec(
        select(QueueEntry)
        .where(QueueEntry.position > removed_position)
        .order_by(QueueEntry.position)
        .execution_options(populate_existing=True)
    ).all()
    called = set(session.exec(
        select(Patient.id).where(Patient.status == PatientStatus.called)
    ).all())
    now = utcnow()
    for entry in followers:
        entry.position -= 1
        # an entry already in service keeps its zero wait
        if entry.patient_id not in called:
            entry.estimated_wait_time = estimate_wait(entry.position, average_consultation_time)
        entry.updated_at = now
        session.add(entry)
    return [entry.patient_id for entry in followers]


def _remove(
    session: Session,
    entry_id: str,
    patient_id: str,
    status: PatientStatus,
    event_type: EventType,
) -> None:
    with queue_transaction(session) as settings:
        entry = session.get(QueueEntry, entry_id, populate_existing=True)
        if entry is None or entry.patient_id != patient_id:
            raise NotFoundError(f"No active queue entry {entry_id} for patient {patient_id}")
        patient = session.get(Patient, patient_id, populate_existing=True)
        if patient is None:
            raise NotFoundError(f"Patient {patient_id} not found")

        set_patient_status(session, patient, status)
        _record(session, patient_id, event_type)
        removed_position = entry.position
        session.delete(entry)
        session.flush()
        touched = [patient_id] + _compact(
            session, removed_position, settings.average_consultation_time
        )

    logger.info("Patient %s %s, left position %d", patient_id, status.value, removed_position)
    notifications.publish_changes(touched, event_type.value)


def complete(session: Session, entry_id: str, patient_id: str) -> None:
    _remove(session, entry_id, patient_id, PatientStatus.completed, EventType.completed)


def cancel(session: Session, entry_id: str, patient_id: str) -> None:
    _remove(session, entry_id, patient_id, PatientStatus.cancelled, EventType.cancelled)


# ===== READS =====

def get_active_entry(session: Session, patient_id: str) -> Optional[QueueEntry]:
    with store_guard(session):
        return session.exec(
            select(QueueEntry).where(QueueEntry.patient_id == patient_id)
        ).first()


def current_position(session: Session, patient_id: str) -> Optional[int]:
    entry = get_active_entry(session, patient_id)
    return entry.position if entry is not None else None


def get_board(session: Session) -> List[Dict[str, Any]]:
    """Active entries in queue order, each joined with its patient."""
    with store_guard(session):
        rows = session.exec(
            select(QueueEntry, Patient)
            .join(Patient, Patient.id == QueueEntry.patient_id)
            .order_by(QueueEntry.position)
        ).all()
    return [
        {
            "entry_id": entry.id,
            "patient_id": patient.id,
            "name": patient.name,
            "phone": patient.phone,
            "status": patient.status.value,
            "position": entry.position,
            "estimated_wait_time": entry.estimated_wait_time,
            "in_service": patient.status == PatientStatus.called,
            "created_at": entry.created_at.isoformat(),
        }
        for entry, patient in rows
    ]


def get_queue_metrics(session: Session) -> Dict[str, Any]:
    """Real-time queue metrics for the front desk."""
    settings = get_settings(session)
    today_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    with store_guard(session):
        queue_length = session.exec(select(func.count()).select_from(QueueEntry)).one()
        in_service = session.exec(
            select(func.count())
            .select_from(QueueEntry)
            .join(Patient, Patient.id == QueueEntry.patient_id)
            .where(Patient.status == PatientStatus.called)
        ).one()
        counts = dict(session.exec(
            select(Event.event_type, func.count())
            .where(Event.at >= today_start)
            .group_by(Event.event_type)
        ).all())

    return {
        "queue_length": queue_length,
        "in_service": in_service,
        "estimated_wait_for_new_patient": queue_length * settings.average_consultation_time,
        "average_consultation_time": settings.average_consultation_time,
        "today_joined": counts.get(EventType.joined, 0),
        "today_completed": counts.get(EventType.completed, 0),
        "today_cancelled": counts.get(EventType.cancelled, 0),
        "last_updated": utcnow().isoformat(),
    }
