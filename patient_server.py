"""
MediBook — Patient API Server
=============================
FastAPI backend for the patient-facing app: doctor search and comparison,
clinic stats and queue prediction, symptom triage, slot optimization and
booking with SMS confirmation, document interpretation, speech helpers
and the emergency-room finder.

Run:
    pip install -e .
    python patient_server.py

Then open: http://localhost:8002/docs
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# ── path setup ────────────────────────────────────────────────────────────────
ROOT = Path(__file__).parent
sys.path.insert(0, str(ROOT))

from medibook import directory
from medibook.appointments import AppointmentBook, BookingResult, BookingService, split_upcoming_past
from medibook.clinic_stats import ClinicStatsEngine
from medibook.document_interpreter import DocumentInterpreter
from medibook.emergency import EmergencyLocator
from medibook.errors import (
    InferenceError,
    InferenceOutputError,
    MediBookError,
    NotConfiguredError,
    NotFoundError,
    ProviderError,
    RetriesExhaustedError,
    SlotConflictError,
)
from medibook.llm_client import StructuredModel
from medibook.models import Appointment, Clinic, Doctor, TimeRange, User
from medibook.queue_prediction import QueuePredictor
from medibook.schemas import (
    ClinicStatsInput,
    ClinicStatsOutput,
    DocumentInterpreterInput,
    MedicalDocument,
    OptimizeSlotsInput,
    OptimizeSlotsOutput,
    QueuePredictionInput,
    QueuePredictionOutput,
    SmartTriageInput,
    SmartTriageOutput,
    SpeechAudio,
    TranscriptionResult,
)
from medibook.slot_optimizer import SlotOptimizer
from medibook.sms import SmsSender
from medibook.speech_handler import SpeechHandler, decode_base64_audio
from medibook.triage_engine import TriageEngine

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

# ── init ──────────────────────────────────────────────────────────────────────
model = StructuredModel()
sms = SmsSender()
book = AppointmentBook()
booking = BookingService(book, sms)
triage_engine = TriageEngine(model)
slot_optimizer = SlotOptimizer(model)
queue_predictor = QueuePredictor(model)
clinic_stats = ClinicStatsEngine(model)
interpreter = DocumentInterpreter(model)
speech = SpeechHandler(model)
locator = EmergencyLocator()

app = FastAPI(title="MediBook Patient API", version="1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── error mapping ─────────────────────────────────────────────────────────────

# Most specific first; detail None means the exception message is shown as is
ERROR_RESPONSES: list[tuple[type[MediBookError], int, Optional[str]]] = [
    (NotConfiguredError, 503, None),
    (NotFoundError, 404, None),
    (SlotConflictError, 409, None),
    (RetriesExhaustedError, 503, "The AI model is overloaded. Please try again in a moment."),
    (InferenceOutputError, 502, "The AI model returned an unexpected response. Please try again."),
    (InferenceError, 502, "The AI request failed. Please try again."),
    (ProviderError, 502, None),
]


@app.exception_handler(MediBookError)
async def handle_medibook_error(request: Request, exc: MediBookError) -> JSONResponse:
    for cls, status, detail in ERROR_RESPONSES:
        if isinstance(exc, cls):
            break
    else:
        status, detail = 500, "An unexpected error occurred. Please try again."

    if status >= 500:
        logger.error("%s %s failed: %s (cause: %r)", request.method, request.url.path, exc, exc.__cause__)
    else:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": detail or str(exc)})


# ── request bodies ────────────────────────────────────────────────────────────

class BookAppointmentRequest(BaseModel):
    doctor_id: str = Field(min_length=1)
    clinic_id: Optional[str] = None
    slot: TimeRange
    phone: Optional[str] = Field(default=None, pattern=r"^\+[1-9]\d{6,14}$")


class TextToSpeechRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4096)


class TranscribeRequest(BaseModel):
    audio: str = Field(min_length=1)
    content_type: str = "audio/wav"


class ProfileUpdate(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None


class AppointmentList(BaseModel):
    upcoming: list[Appointment]
    past: list[Appointment]


# ── helpers ───────────────────────────────────────────────────────────────────

def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Patient id set by the hosted auth provider in front of this API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Sign in to continue.")
    return x_user_id.strip()


def _coordinates(lat: Optional[float], lng: Optional[float]) -> tuple[Optional[float], Optional[float]]:
    if (lat is None) != (lng is None):
        raise HTTPException(422, "lat and lng must be given together")
    return lat, lng


# ── API endpoints ─────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    """Liveness plus which third-party providers are configured."""
    return {
        "status": "ok",
        "providers": {
            "llm": model.is_configured,
            "tts": speech.tts_available,
            "stt": speech.stt_available,
            "sms": sms.is_configured,
            "maps": locator.is_configured,
        },
    }


@app.get("/api/doctors", response_model=list[Doctor])
def api_doctors(query: Optional[str] = None, specialty: Optional[str] = None):
    return directory.search_doctors(query, specialty)


@app.get("/api/specialties")
def api_specialties():
    return directory.SPECIALTIES


@app.get("/api/doctors/compare", response_model=list[Doctor])
def api_compare_doctors(ids: str = Query(..., description="Comma-separated doctor ids")):
    wanted = [i.strip() for i in ids.split(",") if i.strip()]
    if len(wanted) < 2:
        raise HTTPException(422, "Select at least two doctors to compare.")
    found = directory.compare_doctors(wanted)
    if not found:
        raise HTTPException(404, "None of the selected doctors were found.")
    return found


@app.get("/api/doctors/{doctor_id}", response_model=Doctor)
def api_doctor(doctor_id: str):
    doc = directory.get_doctor_by_id(doctor_id)
    if doc is None:
        raise HTTPException(404, "Doctor not found")
    return doc


@app.get("/api/clinics", response_model=list[Clinic])
def api_clinics():
    return directory.get_clinics()


@app.get("/api/clinics/{clinic_id}", response_model=Clinic)
def api_clinic(clinic_id: str):
    clinic = directory.get_clinic_by_id(clinic_id)
    if clinic is None:
        raise HTTPException(404, "Clinic not found")
    return clinic


@app.get("/api/clinics/{clinic_id}/stats", response_model=ClinicStatsOutput)
def api_clinic_stats(clinic_id: str):
    if directory.get_clinic_by_id(clinic_id) is None:
        raise HTTPException(404, "Clinic not found")
    return clinic_stats.get_stats(ClinicStatsInput(clinic_id=clinic_id))


@app.post("/api/queue/predict", response_model=QueuePredictionOutput)
def api_queue_predict(body: QueuePredictionInput):
    return queue_predictor.predict(body)


@app.post("/api/triage", response_model=SmartTriageOutput, response_model_exclude_none=True)
def api_triage(body: SmartTriageInput):
    return triage_engine.triage(body)


@app.post("/api/slots/optimize", response_model=OptimizeSlotsOutput)
def api_optimize_slots(body: OptimizeSlotsInput):
    """Suggest slots; bookings already in the appointment book count as busy."""
    booked = book.busy_slots(body.doctor_id, body.date_range.from_, body.date_range.to)
    if booked:
        body = body.model_copy(
            update={"existing_appointments": body.existing_appointments + booked}
        )
    return slot_optimizer.optimize(body)


@app.post("/api/documents/interpret", response_model=MedicalDocument)
def api_interpret_document(body: DocumentInterpreterInput):
    try:
        return interpreter.interpret(body)
    except ValueError as exc:
        raise HTTPException(422, str(exc))


@app.post("/api/speech/tts", response_model=SpeechAudio)
def api_text_to_speech(body: TextToSpeechRequest):
    return speech.text_to_speech(body.text)


@app.post("/api/speech/transcribe", response_model=TranscriptionResult)
def api_transcribe(body: TranscribeRequest):
    try:
        audio = decode_base64_audio(body.audio)
    except ValueError as exc:
        raise HTTPException(422, "audio must be base64 encoded") from exc
    return speech.transcribe_audio(audio, body.content_type)


@app.get("/api/emergency-rooms")
def api_emergency_rooms(lat: Optional[float] = None, lng: Optional[float] = None):
    lat, lng = _coordinates(lat, lng)
    return locator.find_nearest(lat, lng)


@app.get("/api/emergency/info")
def api_emergency_info(lat: Optional[float] = None, lng: Optional[float] = None):
    lat, lng = _coordinates(lat, lng)
    return locator.emergency_info(lat, lng)


@app.get("/api/appointments", response_model=AppointmentList)
def api_appointments(user_id: str = Depends(current_user)):
    upcoming, past = split_upcoming_past(book.list_for_patient(user_id), datetime.now().astimezone())
    return AppointmentList(upcoming=upcoming, past=past)


@app.post("/api/appointments", response_model=BookingResult, status_code=201)
def api_book_appointment(body: BookAppointmentRequest, user_id: str = Depends(current_user)):
    return booking.book_and_notify(
        patient_id=user_id,
        doctor_id=body.doctor_id,
        slot=body.slot,
        clinic_id=body.clinic_id,
        phone=body.phone,
    )


@app.post("/api/appointments/{appointment_id}/cancel", response_model=Appointment)
def api_cancel_appointment(appointment_id: str, user_id: str = Depends(current_user)):
    return book.cancel(appointment_id, user_id)


@app.get("/api/profile", response_model=User)
def api_get_profile(user_id: str = Depends(current_user)):
    profile = book.get_profile(user_id)
    if profile is None:
        raise HTTPException(404, "Profile not found")
    return profile


@app.put("/api/profile", response_model=User)
def api_save_profile(body: ProfileUpdate, user_id: str = Depends(current_user)):
    try:
        user = User(id=user_id, name=body.name, phone=body.phone, email=body.email)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return book.save_profile(user)


# ── Entry point ───────────────────────────────────────────────────────────────

def main() -> None:
    port = int(os.getenv("PORT", "8002"))
    print("\n" + "═" * 58)
    print("  🩺  MediBook — Patient API")
    print("═" * 58)
    print(f"  ➜  API:        http://localhost:{port}")
    print(f"  ➜  API docs:   http://localhost:{port}/docs")
    print(f"  ➜  DB path:    {book.db_path}")
    print(f"  ➜  LLM:        {'configured' if model.is_configured else 'local fallbacks'}")
    print("═" * 58 + "\n")
    uvicorn.run(app, host="0.0.0.0", port=port, reload=False, log_level="warning")


if __name__ == "__main__":
    main()
