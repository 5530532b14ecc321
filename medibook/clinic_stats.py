"""
Clinic Stats Module
===================
Operational statistics for the clinic dashboard: queue length, predicted
wait, doctor availability, a short peak-load forecast and the average
no-show probability.

The model is asked to simulate plausible numbers for the current time.
Without a configured model the same ranges are filled from a
deterministic simulation driven by the typical hourly load curve, so the
dashboard reads the same for a given clinic within the same hour.
"""

from __future__ import annotations

import json
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from medibook.llm_client import StructuredModel
from medibook.schemas import ClinicStatsInput, ClinicStatsOutput, PeakForecastEntry

logger = logging.getLogger(__name__)

# Typical share of capacity in use by hour of day (clinics are busiest mid-day)
HOURLY_LOAD: dict[int, float] = {
    7: 0.15, 8: 0.35, 9: 0.55, 10: 0.75, 11: 0.9, 12: 0.85,
    13: 0.8, 14: 0.9, 15: 0.85, 16: 0.7, 17: 0.5, 18: 0.35,
    19: 0.25, 20: 0.15,
}
OFF_HOURS_LOAD = 0.05

FORECAST_HOURS = 4

SYSTEM_PROMPT = """You are an AI that generates realistic, simulated operational data for a medical clinic dashboard.
For the given clinic, generate a plausible set of current operational statistics.

- Base your simulation on typical clinic patterns. Queues are longer mid-day. Doctor availability might fluctuate.
- The peak forecast should show a believable trend over the next few hours, one entry per hour.

Example values:
- queue_length: between 5 and 25
- predicted_wait_mins: between 15 and 90
- doctor_availability: between 0.5 and 1.0
- no_show_probability: between 0.05 and 0.20

OUTPUT FORMAT (strict JSON):
{
  "queue_length": 12,
  "predicted_wait_mins": 35,
  "doctor_availability": 0.8,
  "peak_forecast": [{"time": "3 PM", "load": 0.7}],
  "no_show_probability": 0.1
}
"""


def hourly_load(hour: int) -> float:
    """Typical clinic load (0..1) for an hour of the day."""
    return HOURLY_LOAD.get(hour % 24, OFF_HOURS_LOAD)


def hour_label(hour: int) -> str:
    """Format an hour of the day the way the dashboard shows it ("3 PM")."""
    hour %= 24
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display} {suffix}"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ClinicStatsEngine:
    """Produces dashboard statistics for one clinic.

    Attributes:
        model: Structured inference client shared with the other flows.
    """

    def __init__(self, model: Optional[StructuredModel] = None) -> None:
        self.model = model or StructuredModel()

    def get_stats(
        self,
        request: ClinicStatsInput,
        now: Optional[datetime] = None,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> ClinicStatsOutput:
        now = now or datetime.now()

        if not self.model.is_configured:
            return self._simulate(request.clinic_id, now)

        user_message = json.dumps(
            {
                "clinic_id": request.clinic_id,
                "current_time": now.strftime("%I:%M %p"),
            }
        )
        stats = self.model.generate(
            "clinic_stats",
            SYSTEM_PROMPT,
            user_message,
            ClinicStatsOutput,
            on_retry=on_retry,
        )
        logger.info(
            "Clinic stats for %s: queue=%d wait=%.0f min.",
            request.clinic_id, stats.queue_length, stats.predicted_wait_mins,
        )
        return stats

    # ------------------------------------------------------------------
    # Local simulation
    # ------------------------------------------------------------------

    def _simulate(self, clinic_id: str, now: datetime) -> ClinicStatsOutput:
        """Deterministic stats for a clinic and hour, inside the prompt ranges."""
        rng = random.Random(f"{clinic_id}:{now:%Y-%m-%d %H}")
        load = hourly_load(now.hour)

        queue_length = int(round(_clamp(5 + 20 * load * rng.uniform(0.85, 1.0), 5, 25)))
        predicted_wait = round(_clamp(15 + 75 * load * rng.uniform(0.85, 1.0), 15, 90))
        availability = round(_clamp(1.0 - 0.5 * load + rng.uniform(-0.05, 0.05), 0.5, 1.0), 2)
        no_show = round(rng.uniform(0.05, 0.20), 2)

        forecast: list[PeakForecastEntry] = []
        for step in range(1, FORECAST_HOURS + 1):
            slot = now + timedelta(hours=step)
            slot_load = _clamp(hourly_load(slot.hour) + rng.uniform(-0.05, 0.05), 0.0, 1.0)
            forecast.append(
                PeakForecastEntry(time=hour_label(slot.hour), load=round(slot_load, 2))
            )

        logger.warning(
            "Model not configured. Simulated clinic stats for %s at %s.",
            clinic_id, now.strftime("%H:%M"),
        )
        return ClinicStatsOutput(
            queue_length=queue_length,
            predicted_wait_mins=predicted_wait,
            doctor_availability=availability,
            peak_forecast=forecast,
            no_show_probability=no_show,
        )
