"""
Triage Engine Module
====================
Symptom triage for patients choosing which doctor to see. Given reported
symptoms, age, gender and chronic conditions, recommends a medical
specialty, an urgency level and a 0-100 risk score with the factors that
drove it. First-aid questions ("how do I treat a burn?") are answered with
a step-by-step procedure instead.

The model produces the assessment in JSON mode. Without a configured
model, a local protocol scores red-flag keywords, age and chronic
conditions so the triage page keeps working in demo mode.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from medibook.llm_client import STATUS_OVERLOADED, StructuredModel
from medibook.schemas import SmartTriageInput, SmartTriageOutput

logger = logging.getLogger(__name__)

URGENCY_LOW = "low"
URGENCY_MEDIUM = "medium"
URGENCY_HIGH = "high"

HIGH_RISK_THRESHOLD = 70
MEDIUM_RISK_THRESHOLD = 40
FALLBACK_CONFIDENCE = 0.4

SYSTEM_PROMPT = """You are an AI-powered medical triage assistant. Based on the patient's symptoms,
age, gender and chronic conditions, recommend the appropriate medical specialty, urgency
level and suggested next steps, and estimate a risk score.

RULES:
1. If the input is a first-aid or procedural question (e.g. "How do I treat a burn?"),
   set "is_query" to true and answer with clear numbered steps in "procedure_explanation".
2. Otherwise set "is_query" to false and fill recommended_specialty, urgency,
   risk_score (0-100) and risk_category (low|medium|high).
3. List the symptoms, demographics or conditions that raised the risk in contributing_factors.
4. Explain your reasoning in short sentences in "explanation".
5. Never give a diagnosis. Recommend emergency services for life-threatening signs.

OUTPUT FORMAT (strict JSON):
{
  "is_query": false,
  "procedure_explanation": [],
  "recommended_specialty": "Cardiology",
  "urgency": "low|medium|high",
  "risk_score": 65,
  "risk_category": "low|medium|high",
  "confidence": 0.8,
  "contributing_factors": ["Chest pain", "Age over 65"],
  "explanation": ["Short reasoning sentences"],
  "suggested_next_steps": ["What the patient should do"]
}
"""

# ---------------------------------------------------------------------------
# Local protocol tables
# ---------------------------------------------------------------------------

# keyword -> (weight, factor label)
RED_FLAGS: dict[str, tuple[int, str]] = {
    "chest pain": (45, "Chest pain"),
    "chest tightness": (40, "Chest tightness"),
    "shortness of breath": (30, "Shortness of breath"),
    "difficulty breathing": (30, "Difficulty breathing"),
    "can't breathe": (45, "Unable to breathe"),
    "unconscious": (60, "Loss of consciousness"),
    "fainting": (25, "Fainting"),
    "seizure": (45, "Seizure"),
    "slurred speech": (45, "Slurred speech"),
    "face droop": (45, "Facial droop"),
    "arm weakness": (35, "Arm weakness"),
    "numbness": (20, "Numbness"),
    "confusion": (30, "Confusion"),
    "severe headache": (30, "Severe headache"),
    "headache": (10, "Headache"),
    "vomiting blood": (45, "Vomiting blood"),
    "bleeding": (30, "Bleeding"),
    "high fever": (25, "High fever"),
    "fever": (10, "Fever"),
    "palpitations": (20, "Palpitations"),
    "dizziness": (15, "Dizziness"),
    "abdominal pain": (15, "Abdominal pain"),
    "vomiting": (10, "Vomiting"),
    "fracture": (25, "Possible fracture"),
    "cough": (5, "Cough"),
    "rash": (5, "Rash"),
}

# Ordered: earlier entries win ties
SPECIALTY_KEYWORDS: list[tuple[str, list[str]]] = [
    ("Cardiology", ["chest", "heart", "palpitat"]),
    ("Neurology", ["headache", "migraine", "seizure", "numb", "slurred", "dizz", "stroke", "face droop", "arm weakness", "confusion"]),
    ("Pulmonology", ["breath", "cough", "wheez", "asthma"]),
    ("Gastroenterology", ["stomach", "abdominal", "nausea", "vomit", "diarrh", "heartburn"]),
    ("Dermatology", ["rash", "skin", "itch", "acne", "mole", "eczema"]),
    ("Orthopedics", ["bone", "joint", "fracture", "back pain", "knee", "sprain", "broken"]),
    ("Ophthalmology", ["eye", "vision", "blurry"]),
    ("Urology", ["urin", "bladder", "kidney"]),
    ("Endocrinology", ["thirst", "diabet", "thyroid"]),
]

# Checked in order; "nosebleed" must come before "bleed"
FIRST_AID_PROCEDURES: dict[str, list[str]] = {
    "nosebleed": [
        "Sit upright and lean slightly forward.",
        "Pinch the soft part of the nose for 10-15 minutes.",
        "Breathe through your mouth and do not tilt your head back.",
        "Seek care if bleeding lasts longer than 20 minutes.",
    ],
    "burn": [
        "Cool the burn under cool (not cold) running water for at least 10 minutes.",
        "Remove rings or tight items near the burned area before it swells.",
        "Cover the burn loosely with sterile, non-stick dressing or cling film.",
        "Do not apply ice, butter or creams, and do not break blisters.",
        "Seek medical care for large, deep or facial burns.",
    ],
    "bleed": [
        "Apply firm, direct pressure to the wound with a clean cloth.",
        "Keep pressure on for at least 10 minutes without checking.",
        "Raise the injured area above the heart if possible.",
        "Add more cloth on top if blood soaks through; do not remove the first layer.",
        "Call 911 if bleeding is heavy or does not stop.",
    ],
    "chok": [
        "Ask the person to cough forcefully if they can.",
        "Give up to 5 sharp back blows between the shoulder blades.",
        "Give up to 5 abdominal thrusts (Heimlich manoeuvre).",
        "Alternate back blows and abdominal thrusts until the object is cleared.",
        "Call 911 if the person becomes unresponsive and start CPR.",
    ],
    "cpr": [
        "Call 911 and ask for an automated external defibrillator (AED).",
        "Place the heel of your hand on the centre of the chest, other hand on top.",
        "Push hard and fast: 5-6 cm deep at 100-120 compressions per minute.",
        "Allow the chest to recoil fully between compressions.",
        "Continue until help arrives or an AED is ready to use.",
    ],
    "sprain": [
        "Rest the injured joint and avoid putting weight on it.",
        "Apply ice wrapped in a cloth for 15-20 minutes every few hours.",
        "Compress with an elastic bandage, not too tight.",
        "Elevate the joint above heart level.",
        "See a doctor if you cannot bear weight or the pain is severe.",
    ],
}

GENERAL_FIRST_AID = [
    "Make sure the area is safe for you and the patient.",
    "Check whether the person is responsive and breathing.",
    "Call 911 for any life-threatening signs.",
    "Keep the person comfortable and calm until help arrives.",
]

NEXT_STEPS = {
    URGENCY_HIGH: [
        "Call 911 or go to the nearest emergency room now.",
        "Do not drive yourself if you feel faint or have chest pain.",
    ],
    URGENCY_MEDIUM: [
        "Book an appointment with the recommended specialist within 24-48 hours.",
        "Go to urgent care if symptoms get worse.",
    ],
    URGENCY_LOW: [
        "Book a routine appointment with the recommended specialist.",
        "Monitor your symptoms and rest.",
    ],
}

_QUERY_PREFIXES = ("how do i", "how to", "how can i", "how should i", "what should i do")


def risk_category(score: int) -> str:
    if score >= HIGH_RISK_THRESHOLD:
        return URGENCY_HIGH
    if score >= MEDIUM_RISK_THRESHOLD:
        return URGENCY_MEDIUM
    return URGENCY_LOW


class TriageEngine:
    """Symptom triage with a local scoring protocol as fallback.

    Attributes:
        model: Structured inference client shared with the other flows.
    """

    def __init__(self, model: Optional[StructuredModel] = None) -> None:
        self.model = model or StructuredModel()

    def triage(
        self,
        request: SmartTriageInput,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> SmartTriageOutput:
        """Assess the patient's symptoms.

        Args:
            request: Symptoms plus optional age, gender and chronic flags.
            on_retry: Optional progress callback while the model is overloaded.

        Returns:
            A first-aid procedure when the input is a question, otherwise a
            specialty, urgency and risk assessment.
        """
        if not self.model.is_configured:
            return self._local_assessment(request)

        user_message = json.dumps(
            {
                "symptoms": request.symptoms,
                "age": request.age,
                "gender": request.gender,
                "chronic_conditions": request.chronic_flags,
            }
        )
        result = self.model.generate(
            "smart_triage",
            SYSTEM_PROMPT,
            user_message,
            SmartTriageOutput,
            retry_statuses=(STATUS_OVERLOADED,),
            on_retry=on_retry,
        )
        logger.info(
            "Triage: query=%s specialty=%s urgency=%s risk=%s",
            result.is_query, result.recommended_specialty, result.urgency, result.risk_score,
        )
        return result

    # ------------------------------------------------------------------
    # Local protocol
    # ------------------------------------------------------------------

    @staticmethod
    def is_first_aid_query(symptoms: list[str]) -> bool:
        text = " ".join(symptoms).strip().lower()
        return text.startswith(_QUERY_PREFIXES) or text.endswith("?")

    def _local_assessment(self, request: SmartTriageInput) -> SmartTriageOutput:
        if self.is_first_aid_query(request.symptoms):
            return self._first_aid(request.symptoms)

        texts = [s.lower() for s in request.symptoms]

        # ── Red flags (longest keyword wins inside one symptom) ──────────
        factors: list[str] = []
        score = 0
        for text in texts:
            matched = [kw for kw in RED_FLAGS if kw in text]
            matched = [kw for kw in matched if not any(kw != o and kw in o for o in matched)]
            for kw in matched:
                weight, label = RED_FLAGS[kw]
                if label not in factors:
                    factors.append(label)
                    score += weight

        explanation: list[str] = []
        if factors:
            explanation.append("Reported symptoms include: " + ", ".join(factors) + ".")

        # ── Demographics ─────────────────────────────────────────────────
        if request.age is not None:
            if request.age >= 65:
                score += 15
                factors.append("Age 65 or older")
                explanation.append("Older age raises the risk of complications.")
            elif request.age < 5:
                score += 10
                factors.append("Age under 5")
                explanation.append("Young children can deteriorate quickly.")

        # ── Chronic conditions ───────────────────────────────────────────
        if request.chronic_flags:
            score += min(20, 5 * len(request.chronic_flags))
            factors.extend(f"Chronic: {c}" for c in request.chronic_flags)
            explanation.append(
                f"{len(request.chronic_flags)} chronic condition(s) increase the overall risk."
            )

        score = min(100, score)
        category = risk_category(score)
        specialty = self._specialty(texts, request.age)
        explanation.append(f"Risk score {score}/100 puts this in the {category} category.")

        logger.warning(
            "Model not configured. Local triage: %s / %s (risk=%d).",
            specialty, category, score,
        )
        return SmartTriageOutput(
            is_query=False,
            recommended_specialty=specialty,
            urgency=category,
            risk_score=score,
            risk_category=category,
            confidence=FALLBACK_CONFIDENCE,
            contributing_factors=factors,
            explanation=explanation,
            suggested_next_steps=list(NEXT_STEPS[category]),
        )

    @staticmethod
    def _specialty(texts: list[str], age: Optional[int]) -> str:
        best, best_hits = None, 0
        for specialty, keywords in SPECIALTY_KEYWORDS:
            hits = sum(1 for text in texts for kw in keywords if kw in text)
            if hits > best_hits:
                best, best_hits = specialty, hits
        if best:
            return best
        if age is not None and age < 18:
            return "Pediatrics"
        return "General Practice"

    @staticmethod
    def _first_aid(symptoms: list[str]) -> SmartTriageOutput:
        text = " ".join(symptoms).lower()
        steps = next(
            (proc for topic, proc in FIRST_AID_PROCEDURES.items() if topic in text),
            GENERAL_FIRST_AID,
        )
        return SmartTriageOutput(
            is_query=True,
            procedure_explanation=list(steps),
            confidence=FALLBACK_CONFIDENCE,
            explanation=["General first-aid guidance; not a substitute for professional care."],
            suggested_next_steps=["Call 911 if the situation is life-threatening."],
        )
