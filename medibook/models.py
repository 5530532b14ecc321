"""
Domain Models
=============
Flat records for doctors, clinics, appointments, emergency rooms and users.
They carry shape validation only; the directory fixtures and the SQLite
appointment book populate them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

APPOINTMENT_STATUSES = ("booked", "cancelled", "completed")


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are read as UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str


class ScheduleEntry(BaseModel):
    """Opening hours for one weekday (0 = Sunday ... 6 = Saturday)."""

    day_of_week: int = Field(ge=0, le=6)
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")


class Clinic(BaseModel):
    id: str
    name: str
    location: Location
    contact_number: str
    schedule: list[ScheduleEntry] = Field(default_factory=list)
    capacity: int = Field(ge=0)


class Ratings(BaseModel):
    avg: float = Field(ge=0, le=5)
    count: int = Field(ge=0)


class Doctor(BaseModel):
    id: str
    name: str
    image_id: str
    specialties: list[str]
    qualifications: list[str]
    years_experience: int = Field(ge=0)
    ratings: Ratings
    fees: float = Field(ge=0)
    clinics: list[Clinic]


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_end_after_start(self) -> "TimeRange":
        if to_utc(self.end) <= to_utc(self.start):
            raise ValueError("end must be after start")
        return self

    def overlaps(self, other: "TimeRange") -> bool:
        return to_utc(self.start) < to_utc(other.end) and to_utc(other.start) < to_utc(self.end)


class Appointment(BaseModel):
    id: str
    patient_id: str
    doctor_id: str
    clinic_id: str
    slot: TimeRange
    status: Literal["booked", "cancelled", "completed"] = "booked"
    created_at: datetime


class EmergencyRoom(BaseModel):
    id: str
    name: str
    location: Location
    beds_available: int = Field(ge=0)
    eta_driving_minutes: int = Field(ge=0)
    call_number: str
    ambulance_number: Optional[str] = None
    map_url: str
    image_id: str


class User(BaseModel):
    id: str
    name: str
    phone: str = Field(pattern=r"^\+[1-9]\d{6,14}$")
    email: Optional[str] = None
    role: Literal["patient", "admin"] = "patient"
    created_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def check_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()
