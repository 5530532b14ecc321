"""
Queue Prediction Module
=======================
Predicts how many patients are ahead and how long the wait will be at a
clinic for a given time. Model calls are retried only while the model is
reported overloaded (HTTP 503).
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from medibook import directory
from medibook.clinic_stats import hourly_load
from medibook.llm_client import STATUS_OVERLOADED, StructuredModel
from medibook.schemas import QueuePredictionInput, QueuePredictionOutput

logger = logging.getLogger(__name__)

MINUTES_PER_PATIENT = 8
DEFAULT_CAPACITY = 20

SYSTEM_PROMPT = """You are an expert at predicting queue lengths and wait times for medical clinics.
Given the clinic and the time, predict the number of patients ahead, the estimated
wait time in minutes, and the confidence level of your prediction (0-1).

OUTPUT FORMAT (strict JSON):
{
  "patients_ahead": 6,
  "estimated_wait_minutes": 45,
  "confidence": 0.7
}
"""


class QueuePredictor:
    """Queue length and wait-time prediction for a clinic visit.

    Attributes:
        model: Structured inference client shared with the other flows.
    """

    def __init__(self, model: Optional[StructuredModel] = None) -> None:
        self.model = model or StructuredModel()

    def predict(
        self,
        request: QueuePredictionInput,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> QueuePredictionOutput:
        """Predict the queue at ``request.clinic_id`` for ``request.time``.

        Args:
            request: Clinic id and the time of the intended visit.
            on_retry: Optional progress callback while the model is overloaded.

        Returns:
            Patients ahead, estimated wait and a confidence score.
        """
        if not self.model.is_configured:
            return self._estimate(request)

        clinic = directory.get_clinic_by_id(request.clinic_id)
        user_message = json.dumps(
            {
                "clinic_id": request.clinic_id,
                "clinic_name": clinic.name if clinic else None,
                "capacity": clinic.capacity if clinic else None,
                "time": request.time.isoformat(),
            }
        )
        prediction = self.model.generate(
            "queue_prediction",
            SYSTEM_PROMPT,
            user_message,
            QueuePredictionOutput,
            retry_statuses=(STATUS_OVERLOADED,),
            on_retry=on_retry,
        )
        logger.info(
            "Queue prediction for %s: %d ahead, ~%d min.",
            request.clinic_id, prediction.patients_ahead, prediction.estimated_wait_minutes,
        )
        return prediction

    def _estimate(self, request: QueuePredictionInput) -> QueuePredictionOutput:
        """Load curve × capacity estimate used when no model is configured."""
        clinic = directory.get_clinic_by_id(request.clinic_id)
        capacity = clinic.capacity if clinic else DEFAULT_CAPACITY
        patients_ahead = int(round(hourly_load(request.time.hour) * capacity))

        logger.warning(
            "Model not configured. Estimated queue for %s from the hourly load curve.",
            request.clinic_id,
        )
        return QueuePredictionOutput(
            patients_ahead=patients_ahead,
            estimated_wait_minutes=patients_ahead * MINUTES_PER_PATIENT,
            confidence=0.5 if clinic else 0.3,
        )
