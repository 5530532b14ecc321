"""
Flow Schemas
============
Input and output schemas for every structured-inference flow. Outputs are
what the model must return in JSON mode; ``StructuredModel.generate``
validates the raw response against them before a flow sees it.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medibook.models import TimeRange, to_utc

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"
_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.S)


def _none_to_list(value):
    return [] if value is None else value


# ---------------------------------------------------------------------------
# Queue prediction
# ---------------------------------------------------------------------------

class QueuePredictionInput(BaseModel):
    clinic_id: str = Field(min_length=1)
    time: datetime


class QueuePredictionOutput(BaseModel):
    patients_ahead: int = Field(ge=0)
    estimated_wait_minutes: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)


# ---------------------------------------------------------------------------
# Slot optimization
# ---------------------------------------------------------------------------

class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime

    @model_validator(mode="after")
    def check_to_after_from(self) -> "DateRange":
        if to_utc(self.to) <= to_utc(self.from_):
            raise ValueError("date_range.to must be after date_range.from")
        return self


class PatientPreferences(BaseModel):
    earliest_time: Optional[str] = Field(default=None, pattern=_HHMM)
    latest_time: Optional[str] = Field(default=None, pattern=_HHMM)


class OptimizeSlotsInput(BaseModel):
    doctor_id: str = Field(min_length=1)
    date_range: DateRange
    patient_preferences: Optional[PatientPreferences] = None
    existing_appointments: list[TimeRange] = Field(default_factory=list)
    no_show_probability: Optional[float] = Field(default=None, ge=0, le=1)

    @field_validator("existing_appointments", mode="before")
    @classmethod
    def default_appointments(cls, value):
        return _none_to_list(value)


class BestSlot(BaseModel):
    start: datetime
    end: datetime
    score: float
    reason: str


class OptimizeSlotsOutput(BaseModel):
    best_slots: list[BestSlot]


# ---------------------------------------------------------------------------
# Smart triage
# ---------------------------------------------------------------------------

class SmartTriageInput(BaseModel):
    symptoms: list[str] = Field(min_length=1)
    age: Optional[int] = Field(default=None, ge=0, le=120)
    gender: Optional[Literal["M", "F", "O"]] = None
    chronic_flags: list[str] = Field(default_factory=list)

    @field_validator("symptoms", "chronic_flags", mode="before")
    @classmethod
    def clean_items(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("symptoms")
    @classmethod
    def check_symptoms_present(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one symptom is required")
        return value


class SmartTriageOutput(BaseModel):
    is_query: bool = False
    procedure_explanation: list[str] = Field(default_factory=list)
    recommended_specialty: Optional[str] = None
    urgency: Optional[Literal["low", "medium", "high"]] = None
    risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    risk_category: Optional[Literal["low", "medium", "high"]] = None
    confidence: float = Field(ge=0, le=1)
    contributing_factors: list[str] = Field(default_factory=list)
    explanation: list[str] = Field(default_factory=list)
    suggested_next_steps: list[str] = Field(default_factory=list)

    @field_validator(
        "procedure_explanation",
        "contributing_factors",
        "explanation",
        "suggested_next_steps",
        mode="before",
    )
    @classmethod
    def default_lists(cls, value):
        return _none_to_list(value)

    @model_validator(mode="after")
    def check_shape(self) -> "SmartTriageOutput":
        if self.is_query:
            if not self.procedure_explanation:
                raise ValueError("a first-aid answer needs procedure_explanation steps")
        elif not self.recommended_specialty or self.urgency is None:
            raise ValueError("a triage result needs recommended_specialty and urgency")
        return self


# ---------------------------------------------------------------------------
# Clinic stats
# ---------------------------------------------------------------------------

class ClinicStatsInput(BaseModel):
    clinic_id: str = Field(min_length=1)


class PeakForecastEntry(BaseModel):
    time: str
    load: float = Field(ge=0, le=1)


class ClinicStatsOutput(BaseModel):
    queue_length: int = Field(ge=0)
    predicted_wait_mins: float = Field(ge=0)
    doctor_availability: float = Field(ge=0, le=1)
    peak_forecast: list[PeakForecastEntry]
    no_show_probability: float = Field(ge=0, le=1)


# ---------------------------------------------------------------------------
# Document interpreter
# ---------------------------------------------------------------------------

class DocumentInterpreterInput(BaseModel):
    document_image: str

    @field_validator("document_image")
    @classmethod
    def check_image_data_uri(cls, value: str) -> str:
        match = _DATA_URI_RE.match(value)
        if not match:
            raise ValueError("document_image must be a base64 data URI")
        if not match.group("mime").startswith("image/"):
            raise ValueError("document_image must be an image")
        return value

    @property
    def mime_type(self) -> str:
        return _DATA_URI_RE.match(self.document_image).group("mime")

    @property
    def encoded_data(self) -> str:
        return _DATA_URI_RE.match(self.document_image).group("data")


class KeyVital(BaseModel):
    name: str
    value: str
    unit: str = ""


class AbnormalReading(BaseModel):
    name: str
    value: str
    unit: str = ""
    interpretation: str


class Medication(BaseModel):
    name: str
    dosage: str = ""
    frequency: str = ""


class MedicalDocument(BaseModel):
    document_type: Literal["Prescription", "Lab Report", "Discharge Summary", "Other"]
    summary: str
    key_vitals: list[KeyVital] = Field(default_factory=list)
    abnormal_readings: list[AbnormalReading] = Field(default_factory=list)
    medications: list[Medication] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)

    @field_validator(
        "key_vitals", "abnormal_readings", "medications", "next_steps", mode="before"
    )
    @classmethod
    def default_lists(cls, value):
        return _none_to_list(value)


# ---------------------------------------------------------------------------
# Speech
# ---------------------------------------------------------------------------

class SpeechAudio(BaseModel):
    audio: str
    provider: str


class TranscribedWord(BaseModel):
    word: str
    start: float
    end: float
    confidence: float
    punctuated_word: Optional[str] = None


class TranscriptionResult(BaseModel):
    text: str
    is_final: bool = False
    confidence: float = 0.0
    words: list[TranscribedWord] = Field(default_factory=list)
