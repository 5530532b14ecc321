"""
Slot Optimizer Module
=====================
Suggests the best appointment slots for a doctor inside a date range,
preferring slots that keep the doctor's day contiguous and avoiding
short unusable gaps between bookings.

The model proposes slots; anything it returns outside the requested
range, with a non-positive duration, or overlapping an existing booking
is dropped. Without a configured model, candidates are generated from
the doctor's clinic hours and scored locally with the same objective.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from medibook import directory
from medibook.errors import NotFoundError
from medibook.llm_client import STATUS_OVERLOADED, StructuredModel
from medibook.models import Doctor, TimeRange, to_utc
from medibook.schemas import BestSlot, OptimizeSlotsInput, OptimizeSlotsOutput

logger = logging.getLogger(__name__)

SLOT_MINUTES = 30
MAX_SUGGESTIONS = 5
MAX_DAYS = 31
DEFAULT_HOURS = ("09:00", "17:00")

BASE_SCORE = 50.0
ADJACENCY_BONUS = 30.0
GAP_PENALTY = 15.0

SYSTEM_PROMPT = """You are an AI assistant that optimizes appointment slots for doctors.
Given the doctor, the date range, the patient preferences (earliest and latest time of day),
the existing appointments and the no-show probability, suggest the best available
appointment slots, minimizing fragmentation and maximizing contiguous appointments.

Slots must lie inside the date range and must not overlap existing appointments.

OUTPUT FORMAT (strict JSON):
{
  "best_slots": [
    {"start": "ISO datetime", "end": "ISO datetime", "score": 90, "reason": "Why this slot is good"}
  ]
}
"""


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _align(value: datetime, reference: datetime) -> datetime:
    """Express ``value`` in the timezone of ``reference``; naive means UTC."""
    if reference.tzinfo is None:
        return to_utc(value).replace(tzinfo=None)
    return to_utc(value).astimezone(reference.tzinfo)


def _js_weekday(day: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


class SlotOptimizer:
    """Ranks candidate appointment slots for a doctor.

    Attributes:
        model: Structured inference client shared with the other flows.
    """

    def __init__(self, model: Optional[StructuredModel] = None) -> None:
        self.model = model or StructuredModel()

    def optimize(
        self,
        request: OptimizeSlotsInput,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> OptimizeSlotsOutput:
        """Suggest the best slots for ``request.doctor_id``.

        Raises:
            NotFoundError: The doctor id is unknown.
        """
        doctor = directory.get_doctor_by_id(request.doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {request.doctor_id} not found")

        reference = request.date_range.from_
        busy = [
            TimeRange(start=_align(a.start, reference), end=_align(a.end, reference))
            for a in request.existing_appointments
        ]

        if not self.model.is_configured:
            slots = self._rank_locally(doctor, request, busy)
            logger.warning(
                "Model not configured. Ranked %d slot(s) locally for %s.",
                len(slots), doctor.id,
            )
            return OptimizeSlotsOutput(best_slots=slots)

        user_message = json.dumps(
            {
                **request.model_dump(mode="json", by_alias=True),
                "doctor_name": doctor.name,
                "clinic_hours": [
                    {"clinic": c.name, "schedule": [s.model_dump() for s in c.schedule]}
                    for c in doctor.clinics
                ],
            }
        )
        proposed = self.model.generate(
            "slot_optimization",
            SYSTEM_PROMPT,
            user_message,
            OptimizeSlotsOutput,
            retry_statuses=(STATUS_OVERLOADED,),
            on_retry=on_retry,
        )
        kept = self._drop_invalid(proposed.best_slots, request, busy)
        logger.info(
            "Slot optimization for %s: model proposed %d, kept %d.",
            doctor.id, len(proposed.best_slots), len(kept),
        )
        return OptimizeSlotsOutput(best_slots=kept)

    # ------------------------------------------------------------------
    # Model output filtering
    # ------------------------------------------------------------------

    @staticmethod
    def _drop_invalid(
        slots: list[BestSlot], request: OptimizeSlotsInput, busy: list[TimeRange]
    ) -> list[BestSlot]:
        range_start = request.date_range.from_
        range_end = _align(request.date_range.to, range_start)

        kept: list[BestSlot] = []
        for slot in slots:
            start = _align(slot.start, range_start)
            end = _align(slot.end, range_start)
            if end <= start:
                logger.warning("Dropping slot %s: end is not after start.", slot.start)
                continue
            if start < range_start or end > range_end:
                logger.warning("Dropping slot %s: outside the requested range.", slot.start)
                continue
            if any(start < b.end and b.start < end for b in busy):
                logger.warning("Dropping slot %s: overlaps an existing appointment.", slot.start)
                continue
            kept.append(slot.model_copy(update={"start": start, "end": end}))
        return kept

    # ------------------------------------------------------------------
    # Local ranking
    # ------------------------------------------------------------------

    def _rank_locally(
        self, doctor: Doctor, request: OptimizeSlotsInput, busy: list[TimeRange]
    ) -> list[BestSlot]:
        range_start = request.date_range.from_
        range_end = _align(request.date_range.to, range_start)
        no_show = request.no_show_probability or 0.0
        prefs = request.patient_preferences
        step = timedelta(minutes=SLOT_MINUTES)

        scored: dict[datetime, BestSlot] = {}
        day = range_start.date()
        last_day = min(range_end.date(), day + timedelta(days=MAX_DAYS - 1))
        while day <= last_day:
            for open_at, close_at in self._clinic_hours(doctor, day):
                window_open = datetime.combine(day, open_at, tzinfo=range_start.tzinfo)
                window_close = datetime.combine(day, close_at, tzinfo=range_start.tzinfo)

                lower = max(window_open, range_start)
                upper = min(window_close, range_end)
                if prefs and prefs.earliest_time:
                    earliest = datetime.combine(
                        day, _parse_hhmm(prefs.earliest_time), tzinfo=range_start.tzinfo
                    )
                    lower = max(lower, earliest)
                if prefs and prefs.latest_time:
                    latest = datetime.combine(
                        day, _parse_hhmm(prefs.latest_time), tzinfo=range_start.tzinfo
                    )
                    upper = min(upper, latest)

                start = window_open
                while start + step <= upper:
                    end = start + step
                    if start >= lower and start not in scored:
                        if not any(start < b.end and b.start < end for b in busy):
                            scored[start] = self._score(start, end, lower, upper, busy, no_show)
                    start = end
            day += timedelta(days=1)

        ranked = sorted(scored.values(), key=lambda s: (-s.score, s.start))
        return ranked[:MAX_SUGGESTIONS]

    @staticmethod
    def _clinic_hours(doctor: Doctor, day: date) -> list[tuple[time, time]]:
        weekday = _js_weekday(day)
        hours = [
            (_parse_hhmm(entry.start), _parse_hhmm(entry.end))
            for clinic in doctor.clinics
            for entry in clinic.schedule
            if entry.day_of_week == weekday
        ]
        if not hours:
            hours = [(_parse_hhmm(DEFAULT_HOURS[0]), _parse_hhmm(DEFAULT_HOURS[1]))]
        return hours

    @staticmethod
    def _score(
        start: datetime,
        end: datetime,
        lower: datetime,
        upper: datetime,
        busy: list[TimeRange],
        no_show: float,
    ) -> BestSlot:
        """Score one free slot by how well it packs against existing bookings."""
        step = timedelta(minutes=SLOT_MINUTES)
        score = BASE_SCORE
        reasons: list[str] = []

        ends_before = [b.end for b in busy if lower <= b.end <= start]
        left_edge = max(ends_before + [lower])
        starts_after = [b.start for b in busy if end <= b.start <= upper]
        right_edge = min(starts_after + [upper])

        touching = 0
        for gap, edge_is_booking in (
            (start - left_edge, left_edge in ends_before),
            (right_edge - end, right_edge in starts_after),
        ):
            if gap == timedelta(0) and edge_is_booking:
                touching += 1
                score += ADJACENCY_BONUS * (1 - no_show)
            elif timedelta(0) < gap < step:
                score -= GAP_PENALTY
                reasons.append("leaves a short unusable gap")

        if touching == 2:
            reasons.insert(0, "fills the gap between two appointments")
        elif touching == 1:
            reasons.insert(0, "adjacent to an existing appointment")
        if not reasons:
            reasons.append("open slot within clinic hours")

        score = max(0.0, min(100.0, score))
        reason = "; ".join(reasons)
        return BestSlot(
            start=start, end=end, score=round(score, 1), reason=reason[0].upper() + reason[1:]
        )
