"""
Patient API Tests
=================
End-to-end checks of the FastAPI routes with every third-party provider
unconfigured, so flows run on their local fallbacks and the SQLite
appointment book lives in a temporary directory.

Run with: python -m pytest tests/test_server.py -v
"""

import importlib
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import requests
from fastapi.testclient import TestClient

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from medibook.errors import InferenceOutputError, RetriesExhaustedError

OFFLINE_ENV = {
    "AZURE_OPENAI_ENDPOINT": "",
    "AZURE_OPENAI_KEY": "",
    "OPENAI_API_KEY": "",
    "ELEVEN_LABS_API_KEY": "",
    "DEEPGRAM_API_KEY": "",
    "TWILIO_ACCOUNT_SID": "",
    "TWILIO_AUTH_TOKEN": "",
    "TWILIO_PHONE_NUMBER": "",
    "MAPS_SUBSCRIPTION_KEY": "",
}

PATIENT = {"X-User-Id": "patient-1"}
OTHER_PATIENT = {"X-User-Id": "patient-2"}
MONDAY_10 = {"start": "2026-10-19T10:00:00Z", "end": "2026-10-19T10:30:00Z"}


class ServerTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.tmp = tempfile.TemporaryDirectory()
        env = {**OFFLINE_ENV, "APPOINTMENTS_DB_PATH": os.path.join(cls.tmp.name, "api.db")}
        with mock.patch.dict(os.environ, env):
            if "patient_server" in sys.modules:
                cls.server = importlib.reload(sys.modules["patient_server"])
            else:
                cls.server = importlib.import_module("patient_server")
        cls.client = TestClient(cls.server.app)

    @classmethod
    def tearDownClass(cls):
        cls.tmp.cleanup()

    def setUp(self):
        self.server.book.clear()


class TestCatalogueRoutes(ServerTestCase):
    """Doctors, clinics and emergency rooms."""

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["providers"]["llm"])
        self.assertFalse(body["providers"]["sms"])

    def test_search_doctors(self):
        response = self.client.get("/api/doctors", params={"query": "reed"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([d["id"] for d in response.json()], ["doc-1"])

        cardiology = self.client.get("/api/doctors", params={"specialty": "Cardiology"}).json()
        self.assertEqual({d["id"] for d in cardiology}, {"doc-1", "doc-6"})

    def test_specialties(self):
        self.assertIn("Cardiology", self.client.get("/api/specialties").json())

    def test_doctor_detail(self):
        self.assertEqual(self.client.get("/api/doctors/doc-2").json()["name"], "Dr. Marcus Thorne")
        self.assertEqual(self.client.get("/api/doctors/doc-404").status_code, 404)

    def test_compare(self):
        response = self.client.get("/api/doctors/compare", params={"ids": "doc-3,doc-1"})
        self.assertEqual([d["id"] for d in response.json()], ["doc-3", "doc-1"])
        self.assertEqual(
            self.client.get("/api/doctors/compare", params={"ids": "doc-1"}).status_code, 422
        )
        self.assertEqual(
            self.client.get("/api/doctors/compare", params={"ids": "doc-98,doc-99"}).status_code,
            404,
        )

    def test_clinics(self):
        self.assertEqual(len(self.client.get("/api/clinics").json()), 5)
        self.assertEqual(self.client.get("/api/clinics/clinic-9").status_code, 404)

    def test_clinic_stats(self):
        stats = self.client.get("/api/clinics/clinic-1/stats").json()
        self.assertEqual(len(stats["peak_forecast"]), 4)
        self.assertTrue(5 <= stats["queue_length"] <= 25)
        self.assertEqual(self.client.get("/api/clinics/clinic-9/stats").status_code, 404)

    def test_emergency_rooms(self):
        rooms = self.client.get("/api/emergency-rooms", params={"lat": 40.675, "lng": -73.95}).json()
        self.assertEqual(rooms[0]["id"], "er-3")
        self.assertEqual(rooms[0]["distance_km"], 0.0)

        unsorted = self.client.get("/api/emergency-rooms").json()
        self.assertEqual([r["id"] for r in unsorted], ["er-1", "er-2", "er-3"])
        self.assertEqual(
            self.client.get("/api/emergency-rooms", params={"lat": 40.675}).status_code, 422
        )

    def test_emergency_info(self):
        info = self.client.get("/api/emergency/info", params={"lat": 40.7, "lng": -74.0}).json()
        self.assertEqual(info["ice_contact"], "911")
        self.assertIn("40.7,-74.0", info["share_message"])


class TestFlowRoutes(ServerTestCase):
    """AI-backed flows on their local fallbacks, plus error mapping."""

    def test_queue_prediction(self):
        response = self.client.post(
            "/api/queue/predict", json={"clinic_id": "clinic-1", "time": "2026-10-19T11:00:00"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["patients_ahead"], 18)

    def test_triage(self):
        response = self.client.post(
            "/api/triage", json={"symptoms": ["chest pain", "shortness of breath"], "age": 70}
        )
        body = response.json()
        self.assertEqual(body["recommended_specialty"], "Cardiology")
        self.assertEqual(body["urgency"], "high")

    def test_first_aid_omits_triage_fields(self):
        body = self.client.post("/api/triage", json={"symptoms": ["how to treat a burn"]}).json()
        self.assertTrue(body["is_query"])
        self.assertNotIn("recommended_specialty", body)

    def test_triage_validation(self):
        self.assertEqual(self.client.post("/api/triage", json={"symptoms": []}).status_code, 422)
        self.assertEqual(
            self.client.post("/api/triage", json={"symptoms": ["cough"], "gender": "X"}).status_code,
            422,
        )

    def test_overloaded_model_maps_to_503(self):
        with mock.patch.object(
            self.server.triage_engine, "triage", side_effect=RetriesExhaustedError("smart_triage", 3)
        ):
            response = self.client.post("/api/triage", json={"symptoms": ["cough"]})
        self.assertEqual(response.status_code, 503)
        self.assertEqual(
            response.json()["detail"], "The AI model is overloaded. Please try again in a moment."
        )

    def test_bad_model_output_maps_to_502(self):
        with mock.patch.object(
            self.server.queue_predictor, "predict", side_effect=InferenceOutputError("bad shape")
        ):
            response = self.client.post(
                "/api/queue/predict", json={"clinic_id": "clinic-1", "time": "2026-10-19T11:00:00"}
            )
        self.assertEqual(response.status_code, 502)

    def test_slot_optimizer_sees_booked_appointments(self):
        booked = self.client.post(
            "/api/appointments", json={"doctor_id": "doc-1", "slot": MONDAY_10}, headers=PATIENT
        )
        self.assertEqual(booked.status_code, 201)

        response = self.client.post(
            "/api/slots/optimize",
            json={
                "doctor_id": "doc-1",
                "date_range": {"from": "2026-10-19T00:00:00Z", "to": "2026-10-19T23:59:00Z"},
            },
        )
        self.assertEqual(response.status_code, 200)
        slots = response.json()["best_slots"]
        self.assertEqual(len(slots), 5)
        self.assertEqual(
            [s["start"][:16] for s in slots[:2]], ["2026-10-19T09:30", "2026-10-19T10:30"]
        )
        self.assertFalse(any(s["start"].startswith("2026-10-19T10:00") for s in slots))

    def test_slot_optimizer_accepts_mixed_naive_and_aware_range(self):
        response = self.client.post(
            "/api/slots/optimize",
            json={
                "doctor_id": "doc-1",
                "date_range": {"from": "2026-10-19T00:00:00", "to": "2026-10-19T23:59:00+00:00"},
                "existing_appointments": [
                    {"start": "2026-10-19T12:00:00+02:00", "end": "2026-10-19T12:30:00"}
                ],
            },
        )
        self.assertEqual(response.status_code, 200)
        starts = [s["start"][:16] for s in response.json()["best_slots"]]
        self.assertTrue(starts)
        self.assertNotIn("2026-10-19T10:00", starts)

        backwards = self.client.post(
            "/api/slots/optimize",
            json={
                "doctor_id": "doc-1",
                "date_range": {"from": "2026-10-19T12:00:00", "to": "2026-10-19T13:00:00+02:00"},
            },
        )
        self.assertEqual(backwards.status_code, 422)

    def test_slot_optimizer_unknown_doctor(self):
        response = self.client.post(
            "/api/slots/optimize",
            json={
                "doctor_id": "doc-404",
                "date_range": {"from": "2026-10-19T00:00:00Z", "to": "2026-10-19T23:59:00Z"},
            },
        )
        self.assertEqual(response.status_code, 404)

    def test_document_interpreter_not_configured(self):
        response = self.client.post(
            "/api/documents/interpret", json={"document_image": "data:image/png;base64,iVBORw0KGgo="}
        )
        self.assertEqual(response.status_code, 503)
        self.assertEqual(
            self.client.post(
                "/api/documents/interpret", json={"document_image": "data:text/plain;base64,aGk="}
            ).status_code,
            422,
        )

    def test_speech_not_configured(self):
        self.assertEqual(self.client.post("/api/speech/tts", json={"text": "hello"}).status_code, 503)
        self.assertEqual(
            self.client.post("/api/speech/transcribe", json={"audio": "UklGRg=="}).status_code, 503
        )

    def test_transcribe_rejects_invalid_base64(self):
        response = self.client.post("/api/speech/transcribe", json={"audio": "@@@ not audio"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["detail"], "audio must be base64 encoded")

    def test_transcribe_non_json_provider_body_maps_to_502(self):
        reply = mock.Mock(ok=True, status_code=200, text="<html>gateway</html>")
        reply.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        with mock.patch.object(self.server.speech, "deepgram_key", "dg-key"), mock.patch(
            "medibook.speech_handler.requests.post", return_value=reply
        ):
            response = self.client.post("/api/speech/transcribe", json={"audio": "UklGRg=="})
        self.assertEqual(response.status_code, 502)


class TestAppointmentRoutes(ServerTestCase):
    """Booking, listing, cancelling and profiles."""

    def book(self, slot=MONDAY_10, headers=PATIENT, **extra):
        return self.client.post(
            "/api/appointments", json={"doctor_id": "doc-1", "slot": slot, **extra}, headers=headers
        )

    def test_requires_sign_in(self):
        self.assertEqual(self.client.get("/api/appointments").status_code, 401)
        self.assertEqual(
            self.client.post(
                "/api/appointments", json={"doctor_id": "doc-1", "slot": MONDAY_10}
            ).status_code,
            401,
        )

    def test_book_without_sms(self):
        response = self.book(phone="+15551234567")
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertRegex(body["appointment"]["id"], r"^MB-[0-9A-F]{6}$")
        self.assertFalse(body["sms_sent"])
        self.assertIn("Dr. Evelyn Reed", body["message"])

    def test_double_booking_conflicts(self):
        self.assertEqual(self.book().status_code, 201)
        response = self.book(headers=OTHER_PATIENT)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "This slot is no longer available.")

    def test_wrong_clinic(self):
        self.assertEqual(self.book(clinic_id="clinic-3").status_code, 404)

    def test_invalid_slot(self):
        backwards = {"start": "2026-10-19T10:30:00Z", "end": "2026-10-19T10:00:00Z"}
        self.assertEqual(self.book(slot=backwards).status_code, 422)
        self.assertEqual(self.book(phone="555-1234").status_code, 422)

    def test_mixed_naive_and_aware_slot(self):
        mixed = {"start": "2026-10-19T10:00:00", "end": "2026-10-19T12:30:00+02:00"}
        response = self.book(slot=mixed)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self.book(headers=OTHER_PATIENT).status_code, 409)

        backwards = {"start": "2026-10-19T11:00:00", "end": "2026-10-19T12:30:00+02:00"}
        self.assertEqual(self.book(slot=backwards).status_code, 422)

    def test_upcoming_and_past(self):
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        for offset in (timedelta(days=2), timedelta(days=-2)):
            start = now + offset
            slot = {"start": start.isoformat(), "end": (start + timedelta(minutes=30)).isoformat()}
            self.assertEqual(self.book(slot=slot).status_code, 201)

        body = self.client.get("/api/appointments", headers=PATIENT).json()
        self.assertEqual(len(body["upcoming"]), 1)
        self.assertEqual(len(body["past"]), 1)
        self.assertEqual(self.client.get("/api/appointments", headers=OTHER_PATIENT).json()["upcoming"], [])

    def test_cancel(self):
        appointment_id = self.book().json()["appointment"]["id"]
        self.assertEqual(
            self.client.post(f"/api/appointments/{appointment_id}/cancel", headers=OTHER_PATIENT).status_code,
            404,
        )
        response = self.client.post(f"/api/appointments/{appointment_id}/cancel", headers=PATIENT)
        self.assertEqual(response.json()["status"], "cancelled")
        self.assertEqual(self.book(headers=OTHER_PATIENT).status_code, 201)

    def test_profile(self):
        self.assertEqual(self.client.get("/api/profile", headers=PATIENT).status_code, 404)
        self.assertEqual(
            self.client.put(
                "/api/profile", json={"name": "Ana", "phone": "12345"}, headers=PATIENT
            ).status_code,
            422,
        )

        saved = self.client.put(
            "/api/profile", json={"name": "Ana Diaz", "phone": "+15551234567"}, headers=PATIENT
        )
        self.assertEqual(saved.status_code, 200)
        profile = self.client.get("/api/profile", headers=PATIENT).json()
        self.assertEqual(profile["phone"], "+15551234567")
        self.assertEqual(profile["id"], "patient-1")


if __name__ == "__main__":
    unittest.main(verbosity=2)
