"""
Directory Module
================
Static catalogue of clinics, doctors and emergency rooms, plus the
lookups the patient API serves: doctor search by name or clinic address,
specialty filtering and side-by-side comparison.

All data is simulated for demo purposes.
"""

from __future__ import annotations

import logging
from typing import Optional

from medibook.models import Clinic, Doctor, EmergencyRoom

logger = logging.getLogger(__name__)

# Filter chips offered by the doctor search
SPECIALTIES: list[str] = [
    "Cardiology",
    "Neurology",
    "Pediatrics",
    "Dermatology",
    "Orthopedics",
]

# ---------------------------------------------------------------------------
# Clinics
# ---------------------------------------------------------------------------
_CLINICS: list[Clinic] = [
    Clinic.model_validate(c)
    for c in [
        {
            "id": "clinic-1",
            "name": "Downtown Medical Center",
            "location": {"lat": 40.7128, "lng": -74.0060, "address": "123 Main St, New York, NY"},
            "contact_number": "212-555-0101",
            "schedule": [{"day_of_week": 1, "start": "09:00", "end": "17:00"}],
            "capacity": 20,
        },
        {
            "id": "clinic-2",
            "name": "Uptown Health Hub",
            "location": {"lat": 40.7580, "lng": -73.9855, "address": "456 Park Ave, New York, NY"},
            "contact_number": "212-555-0102",
            "schedule": [{"day_of_week": 1, "start": "08:00", "end": "18:00"}],
            "capacity": 30,
        },
        {
            "id": "clinic-3",
            "name": "Brooklyn Wellness Clinic",
            "location": {"lat": 40.6782, "lng": -73.9442, "address": "789 Flatbush Ave, Brooklyn, NY"},
            "contact_number": "718-555-0103",
            "schedule": [{"day_of_week": 2, "start": "10:00", "end": "19:00"}],
            "capacity": 15,
        },
        {
            "id": "clinic-4",
            "name": "Queens General Practice",
            "location": {"lat": 40.7282, "lng": -73.7949, "address": "101 Queens Blvd, Queens, NY"},
            "contact_number": "718-555-0104",
            "schedule": [{"day_of_week": 3, "start": "09:00", "end": "17:00"}],
            "capacity": 25,
        },
        {
            "id": "clinic-5",
            "name": "Midtown Specialists",
            "location": {"lat": 40.7549, "lng": -73.9840, "address": "321 5th Ave, New York, NY"},
            "contact_number": "212-555-0105",
            "schedule": [{"day_of_week": 4, "start": "09:00", "end": "20:00"}],
            "capacity": 40,
        },
    ]
]

_CLINIC_INDEX: dict[str, Clinic] = {c.id: c for c in _CLINICS}


def _doctor(
    doc_id: str,
    name: str,
    specialties: list[str],
    qualifications: list[str],
    years: int,
    avg: float,
    count: int,
    fees: float,
    clinic_ids: list[str],
) -> Doctor:
    return Doctor(
        id=doc_id,
        name=name,
        image_id=doc_id,
        specialties=specialties,
        qualifications=qualifications,
        years_experience=years,
        ratings={"avg": avg, "count": count},
        fees=fees,
        clinics=[_CLINIC_INDEX[cid] for cid in clinic_ids],
    )


# ---------------------------------------------------------------------------
# Doctors
# ---------------------------------------------------------------------------
_DOCTORS: list[Doctor] = [
    _doctor("doc-1", "Dr. Evelyn Reed", ["Cardiology"], ["MD", "FACC"], 15, 4.9, 258, 300, ["clinic-1", "clinic-5"]),
    _doctor("doc-2", "Dr. Marcus Thorne", ["Neurology"], ["MD", "PhD"], 12, 4.8, 192, 275, ["clinic-2"]),
    _doctor("doc-3", "Dr. Elena Cruz", ["Pediatrics"], ["MD", "FAAP"], 10, 4.9, 312, 150, ["clinic-3"]),
    _doctor("doc-4", "Dr. Julian Bennett", ["Dermatology"], ["MD"], 8, 4.7, 150, 200, ["clinic-1", "clinic-4"]),
    _doctor("doc-5", "Dr. Anya Sharma", ["Endocrinology"], ["MD", "FACE"], 11, 4.8, 180, 250, ["clinic-5"]),
    _doctor("doc-6", "Dr. Ben Carter", ["Gastroenterology", "Cardiology"], ["MD"], 9, 4.6, 134, 220, ["clinic-2", "clinic-3"]),
    _doctor("doc-7", "Dr. Olivia Hayes", ["Oncology", "Neurology"], ["MD", "FACP"], 20, 4.9, 402, 350, ["clinic-1", "clinic-2", "clinic-5"]),
    _doctor("doc-8", "Dr. Samuel Chen", ["Ophthalmology"], ["MD"], 14, 4.8, 210, 180, ["clinic-4"]),
    _doctor("doc-9", "Dr. Chloe Webb", ["Rheumatology", "Dermatology"], ["MD"], 7, 4.7, 98, 210, ["clinic-3", "clinic-5"]),
    _doctor("doc-10", "Dr. Leo Maxwell", ["Urology", "Orthopedics"], ["MD", "FACS"], 18, 4.9, 289, 290, ["clinic-1"]),
]

# ---------------------------------------------------------------------------
# Emergency rooms
# ---------------------------------------------------------------------------
_EMERGENCY_ROOMS: list[EmergencyRoom] = [
    EmergencyRoom.model_validate(er)
    for er in [
        {
            "id": "er-1",
            "name": "City General Hospital Emergency Room",
            "location": {"lat": 40.7145, "lng": -74.0080, "address": "200 Broadway, New York, NY"},
            "beds_available": 5,
            "eta_driving_minutes": 8,
            "call_number": "212-555-0110",
            "map_url": "https://www.google.com/maps/dir/?api=1&destination=200+Broadway,New+York,NY",
            "image_id": "er-1",
        },
        {
            "id": "er-2",
            "name": "MetroHealth Emergency Center",
            "location": {"lat": 40.7620, "lng": -73.9890, "address": "550 W 42nd St, New York, NY"},
            "beds_available": 2,
            "eta_driving_minutes": 12,
            "call_number": "212-555-0112",
            "map_url": "https://www.google.com/maps/dir/?api=1&destination=550+W+42nd+St,New+York,NY",
            "image_id": "er-2",
        },
        {
            "id": "er-3",
            "name": "Brooklyn Central ER",
            "location": {"lat": 40.6750, "lng": -73.9500, "address": "900 Atlantic Ave, Brooklyn, NY"},
            "beds_available": 8,
            "eta_driving_minutes": 15,
            "call_number": "718-555-0115",
            "map_url": "https://www.google.com/maps/dir/?api=1&destination=900+Atlantic+Ave,Brooklyn,NY",
            "image_id": "er-3",
        },
    ]
]


# ---------------------------------------------------------------------------
# Lookups (callers get deep copies)
# ---------------------------------------------------------------------------

def get_doctors() -> list[Doctor]:
    return [d.model_copy(deep=True) for d in _DOCTORS]


def get_doctor_by_id(doctor_id: str) -> Optional[Doctor]:
    doc = next((d for d in _DOCTORS if d.id == doctor_id), None)
    return doc.model_copy(deep=True) if doc is not None else None


def get_clinics() -> list[Clinic]:
    return [c.model_copy(deep=True) for c in _CLINICS]


def get_clinic_by_id(clinic_id: str) -> Optional[Clinic]:
    clinic = _CLINIC_INDEX.get(clinic_id)
    return clinic.model_copy(deep=True) if clinic is not None else None


def get_emergency_rooms() -> list[EmergencyRoom]:
    return [er.model_copy(deep=True) for er in _EMERGENCY_ROOMS]


def search_doctors(
    query: Optional[str] = None, specialty: Optional[str] = None
) -> list[Doctor]:
    """Filter doctors by free text and specialty.

    Args:
        query: Case-insensitive substring matched against the doctor's
            name or the address of any clinic they practise at.
        specialty: Exact specialty name; ``None`` or empty means any.

    Returns:
        Matching doctors in catalogue order.
    """
    needle = (query or "").strip().lower()
    results: list[Doctor] = []
    for doc in _DOCTORS:
        if specialty and specialty not in doc.specialties:
            continue
        if needle and not (
            needle in doc.name.lower()
            or any(needle in c.location.address.lower() for c in doc.clinics)
        ):
            continue
        results.append(doc.model_copy(deep=True))

    logger.info(
        "Doctor search query=%r specialty=%r -> %d result(s).",
        needle, specialty, len(results),
    )
    return results


def compare_doctors(ids: list[str]) -> list[Doctor]:
    """Return the known doctors among ``ids`` in request order.

    Unknown ids are skipped; duplicates are collapsed.
    """
    seen: set[str] = set()
    found: list[Doctor] = []
    for doc_id in ids:
        if doc_id in seen:
            continue
        seen.add(doc_id)
        doc = get_doctor_by_id(doc_id)
        if doc is not None:
            found.append(doc)
    return found
