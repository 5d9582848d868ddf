"""Database models for the clinic queue.

We use SQLModel to define the schema.  Patients hold identity and
lifecycle status; queue entries hold the ordering of everyone still
waiting.  A queue entry only exists while its patient is active: once the
patient is completed or cancelled the entry is deleted and the status lives
on the patient alone.  Settings is a single row of clinic-level
configuration.  Events are stored to provide an audit trail.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Current time in UTC, timezone-aware."""
    return datetime.now(timezone.utc)


class PatientStatus(str, Enum):
    """Possible statuses for a patient."""

    waiting = "waiting"
    called = "called"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_STATUSES = (PatientStatus.completed, PatientStatus.cancelled)


class Patient(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    phone: Optional[str] = Field(default=None, index=True)
    status: PatientStatus = Field(default=PatientStatus.waiting, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class QueueEntry(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    patient_id: str = Field(foreign_key="patient.id", unique=True, index=True)
    position: int = Field(index=True)
    estimated_wait_time: int = 0  # minutes
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EventType(str, Enum):
    joined = "joined"
    called = "called"
    completed = "completed"
    cancelled = "cancelled"


class Event(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: str = Field(foreign_key="patient.id", index=True)
    event_type: EventType
    at: datetime = Field(default_factory=utcnow)


class Settings(SQLModel, table=True):
    id: Optional[int] = Field(default=1, primary_key=True)
    clinic_name: str = Field(default="Clinic Queue")
    average_consultation_time: int = Field(default=15)
    open: bool = Field(default=True)
    admin_passcode: str = Field(default="1234")
