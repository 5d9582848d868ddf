"""Pydantic schemas for requests and patient-facing responses.

Field validation of names and phone numbers happens in the service layer
so that every entry point reports the same human-readable message.
Board and metrics responses are returned as plain dicts directly from the
service layer.
"""
from typing import Optional

from pydantic import BaseModel


class RegisterRequest(BaseModel):
    name: str = ""
    phone: Optional[str] = None


class AddPatientRequest(BaseModel):
    passcode: str
    name: str = ""
    phone: Optional[str] = None
    session: Optional[str] = None


class ActionRequest(BaseModel):
    passcode: str
    action: str
    entry_id: Optional[str] = None
    patient_id: Optional[str] = None
    session: Optional[str] = None


class SettingsRequest(BaseModel):
    passcode: str
    average_consultation_time: Optional[int] = None
    open: Optional[bool] = None
    clinic_name: Optional[str] = None


class PatientView(BaseModel):
    """What a patient sees on their personal page."""

    patient_id: str
    name: str
    status: str
    screen: str  # thank_you, your_turn or waiting
    position: Optional[int] = None
    estimated_wait_time: Optional[int] = None
