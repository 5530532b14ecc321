"""
Appointments Module
===================
Local appointment book and patient profiles backed by SQLite, plus the
booking service that confirms an appointment and texts the patient.

Slot times are stored as UTC ISO-8601 strings so that overlap checks can
be done with plain string comparison inside SQLite.
"""

from __future__ import annotations

import logging
import os
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from medibook import directory
from medibook.errors import MediBookError, NotFoundError, SlotConflictError
from medibook.models import APPOINTMENT_STATUSES, Appointment, TimeRange, User, to_utc
from medibook.sms import SmsSender

load_dotenv()
logger = logging.getLogger(__name__)

# Database file location
DB_PATH = Path(__file__).parent.parent / "data" / "appointments.db"


def _stamp(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="seconds")


def new_booking_id() -> str:
    return f"MB-{secrets.token_hex(3).upper()}"


def split_upcoming_past(
    appointments: list[Appointment], now: Optional[datetime] = None
) -> tuple[list[Appointment], list[Appointment]]:
    """Split appointments for the patient dashboard.

    Returns:
        ``(upcoming, past)``: upcoming sorted soonest first, past sorted
        most recent first.
    """
    now = to_utc(now or datetime.now(timezone.utc))
    upcoming = [a for a in appointments if to_utc(a.slot.start) > now]
    past = [a for a in appointments if to_utc(a.slot.start) <= now]
    upcoming.sort(key=lambda a: to_utc(a.slot.start))
    past.sort(key=lambda a: to_utc(a.slot.start), reverse=True)
    return upcoming, past


class AppointmentBook:
    """Stores appointments and patient profiles in SQLite.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the appointment book.

        Args:
            db_path: Optional custom path; defaults to ``APPOINTMENTS_DB_PATH``
                or ``data/appointments.db``.
        """
        configured = db_path or os.getenv("APPOINTMENTS_DB_PATH", "")
        self.db_path = Path(configured) if configured else DB_PATH
        self._create_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """Autocommit connection with dict-like row access."""
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_tables(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS appointments (
                    id TEXT PRIMARY KEY,
                    patient_id TEXT NOT NULL,
                    doctor_id TEXT NOT NULL,
                    clinic_id TEXT NOT NULL,
                    slot_start TEXT NOT NULL,
                    slot_end TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'booked',
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_appointments_doctor
                    ON appointments (doctor_id, slot_start);
                CREATE INDEX IF NOT EXISTS idx_appointments_patient
                    ON appointments (patient_id, slot_start);
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    email TEXT,
                    role TEXT NOT NULL DEFAULT 'patient',
                    created_at TEXT NOT NULL
                );
                """
            )
        finally:
            conn.close()
        logger.info("Appointment tables ready at %s.", self.db_path)

    @staticmethod
    def _row_to_appointment(row: sqlite3.Row) -> Appointment:
        return Appointment(
            id=row["id"],
            patient_id=row["patient_id"],
            doctor_id=row["doctor_id"],
            clinic_id=row["clinic_id"],
            slot=TimeRange(start=row["slot_start"], end=row["slot_end"]),
            status=row["status"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    def book(
        self, patient_id: str, doctor_id: str, clinic_id: str, slot: TimeRange
    ) -> Appointment:
        """Book a slot for a patient.

        Raises:
            SlotConflictError: The slot overlaps another booked appointment
                of the same doctor.
        """
        start, end = _stamp(slot.start), _stamp(slot.end)
        appointment = Appointment(
            id=new_booking_id(),
            patient_id=patient_id,
            doctor_id=doctor_id,
            clinic_id=clinic_id,
            slot=TimeRange(start=start, end=end),
            status="booked",
            created_at=datetime.now(timezone.utc).replace(microsecond=0),
        )

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            clash = conn.execute(
                """
                SELECT id FROM appointments
                WHERE doctor_id = ? AND status = 'booked'
                  AND slot_start < ? AND ? < slot_end
                LIMIT 1
                """,
                (doctor_id, end, start),
            ).fetchone()
            if clash:
                conn.execute("ROLLBACK")
                logger.warning(
                    "Slot %s-%s for %s clashes with %s.", start, end, doctor_id, clash["id"]
                )
                raise SlotConflictError("This slot is no longer available.")

            conn.execute(
                """
                INSERT INTO appointments (
                    id, patient_id, doctor_id, clinic_id,
                    slot_start, slot_end, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'booked', ?)
                """,
                (
                    appointment.id, patient_id, doctor_id, clinic_id,
                    start, end, _stamp(appointment.created_at),
                ),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.info("Appointment %s booked: %s with %s at %s.", appointment.id, patient_id, doctor_id, start)
        return appointment

    def get(self, appointment_id: str) -> Optional[Appointment]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM appointments WHERE id = ?", (appointment_id,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_appointment(row) if row else None

    def list_for_patient(self, patient_id: str) -> list[Appointment]:
        """All of a patient's appointments, latest slot first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM appointments
                WHERE patient_id = ?
                ORDER BY slot_start DESC
                """,
                (patient_id,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_appointment(r) for r in rows]

    def busy_slots(
        self, doctor_id: str, start: datetime, end: datetime
    ) -> list[TimeRange]:
        """Booked slots of a doctor that overlap ``[start, end)``."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT slot_start, slot_end FROM appointments
                WHERE doctor_id = ? AND status = 'booked'
                  AND slot_start < ? AND ? < slot_end
                ORDER BY slot_start
                """,
                (doctor_id, _stamp(end), _stamp(start)),
            ).fetchall()
        finally:
            conn.close()
        return [TimeRange(start=r["slot_start"], end=r["slot_end"]) for r in rows]

    def update_status(self, appointment_id: str, status: str) -> bool:
        """Set an appointment's status.

        Args:
            appointment_id: Booking id.
            status: One of 'booked', 'cancelled', 'completed'.

        Returns:
            True if a row was updated.
        """
        if status not in APPOINTMENT_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {APPOINTMENT_STATUSES}")
        conn = self._get_connection()
        try:
            updated = conn.execute(
                "UPDATE appointments SET status = ? WHERE id = ?",
                (status, appointment_id),
            ).rowcount
        finally:
            conn.close()
        if updated:
            logger.info("Appointment %s status → %s.", appointment_id, status)
        return updated > 0

    def cancel(self, appointment_id: str, patient_id: str) -> Appointment:
        """Cancel one of the patient's own appointments.

        Raises:
            NotFoundError: No such appointment for this patient.
        """
        appointment = self.get(appointment_id)
        if appointment is None or appointment.patient_id != patient_id:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        if appointment.status == "cancelled":
            return appointment
        self.update_status(appointment_id, "cancelled")
        return appointment.model_copy(update={"status": "cancelled"})

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def save_profile(self, user: User) -> User:
        created_at = user.created_at or datetime.now(timezone.utc).replace(microsecond=0)
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO profiles (id, name, phone, email, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    phone = excluded.phone,
                    email = excluded.email,
                    role = excluded.role
                """,
                (user.id, user.name, user.phone, user.email, user.role, _stamp(created_at)),
            )
        finally:
            conn.close()
        logger.info("Profile %s saved.", user.id)
        return self.get_profile(user.id)

    def get_profile(self, user_id: str) -> Optional[User]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        return User(**dict(row)) if row else None

    def clear(self) -> None:
        """Delete all appointments and profiles. Used for testing."""
        conn = self._get_connection()
        try:
            conn.execute("DELETE FROM appointments")
            conn.execute("DELETE FROM profiles")
        finally:
            conn.close()
        logger.info("Appointment book cleared.")


# ---------------------------------------------------------------------------
# Booking service
# ---------------------------------------------------------------------------

class BookingResult(BaseModel):
    appointment: Appointment
    sms_sent: bool
    sms_sid: Optional[str] = None
    message: str


def confirmation_message(doctor_name: str, clinic_name: str, start: datetime) -> str:
    on_date = f"{start:%A, %B} {start.day}"
    return (
        f"Hi! Your appointment with {doctor_name} at {clinic_name} is confirmed "
        f"for {on_date} at {start:%H:%M}. See you soon! - MediBook Pro"
    )


class BookingService:
    """Books appointments and sends the SMS confirmation.

    A failed or unconfigured SMS never fails the booking; the result
    reports whether the text went out.
    """

    def __init__(self, book: AppointmentBook, sms: Optional[SmsSender] = None) -> None:
        self.book = book
        self.sms = sms or SmsSender()

    def book_and_notify(
        self,
        patient_id: str,
        doctor_id: str,
        slot: TimeRange,
        clinic_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> BookingResult:
        """Book ``slot`` with a doctor and text the patient.

        Args:
            patient_id: Authenticated patient id.
            doctor_id: Doctor to book.
            slot: Requested time range.
            clinic_id: Clinic of the doctor; defaults to their first clinic.
            phone: Number to text; defaults to the phone on the patient profile.

        Raises:
            NotFoundError: Unknown doctor, or a clinic the doctor does not work at.
            SlotConflictError: The doctor is already booked at that time.
        """
        doctor = directory.get_doctor_by_id(doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")

        if clinic_id is None:
            clinic = doctor.clinics[0]
        else:
            clinic = next((c for c in doctor.clinics if c.id == clinic_id), None)
            if clinic is None:
                raise NotFoundError(f"{doctor.name} does not practise at clinic {clinic_id}")

        appointment = self.book.book(patient_id, doctor.id, clinic.id, slot)
        message = confirmation_message(doctor.name, clinic.name, slot.start)

        if phone is None:
            profile = self.book.get_profile(patient_id)
            phone = profile.phone if profile else None

        if not phone:
            logger.warning("No phone number for %s; skipping SMS for %s.", patient_id, appointment.id)
            return BookingResult(appointment=appointment, sms_sent=False, message=message)

        try:
            receipt = self.sms.send_sms(phone, message)
        except MediBookError as exc:
            logger.warning("SMS for %s not sent: %s", appointment.id, exc)
            return BookingResult(appointment=appointment, sms_sent=False, message=message)

        return BookingResult(
            appointment=appointment, sms_sent=True, sms_sid=receipt.sid, message=message
        )
