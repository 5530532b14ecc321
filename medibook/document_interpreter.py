"""
Document Interpreter Module
===========================
Reads a photo of a medical document (prescription, lab report, discharge
summary) with a vision-capable model and extracts its content into a
structured record: document type, a one-sentence summary, key vitals,
abnormal readings, medications and next steps.

The interpreter only structures what the document says. It never adds a
diagnosis or advice of its own.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from pathlib import Path
from typing import Callable, Optional

from medibook.errors import NotConfiguredError
from medibook.llm_client import StructuredModel
from medibook.schemas import DocumentInterpreterInput, MedicalDocument

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 4 * 1024 * 1024

SYSTEM_PROMPT = """You are an expert AI medical document interpreter. Analyze the provided image of a
medical document and extract the key information into the specified JSON format.

- Identify the type of document: Prescription, Lab Report, Discharge Summary or Other.
- Extract key vitals, any prescribed medications, and suggested next steps.
- Specifically highlight any readings that are clearly marked as abnormal or outside the
  standard range. Provide a brief, neutral interpretation for these.
- Do NOT provide a diagnosis or medical advice. Your role is to extract and structure the
  information present in the document.
- If a section (e.g., medications) is not present in the document, return an empty array
  for that field.

OUTPUT FORMAT (strict JSON):
{
  "document_type": "Prescription|Lab Report|Discharge Summary|Other",
  "summary": "One-sentence summary of the document's purpose or main finding",
  "key_vitals": [{"name": "Blood Pressure", "value": "120/80", "unit": "mmHg"}],
  "abnormal_readings": [{"name": "Glucose", "value": "180", "unit": "mg/dL", "interpretation": "Above the reference range"}],
  "medications": [{"name": "Metformin", "dosage": "500mg", "frequency": "Twice a day"}],
  "next_steps": ["Follow-up actions listed in the document"]
}
"""


def decoded_size(encoded: str) -> int:
    """Byte length of a base64 payload.

    Raises:
        ValueError: The payload is not valid base64.
    """
    try:
        return len(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("document_image is not valid base64 data") from exc


class DocumentInterpreter:
    """Extracts structured data from medical document images.

    Attributes:
        model: Structured inference client shared with the other flows.
    """

    def __init__(self, model: Optional[StructuredModel] = None) -> None:
        self.model = model or StructuredModel()

    def interpret(
        self,
        request: DocumentInterpreterInput,
        on_retry: Optional[Callable[[str], None]] = None,
    ) -> MedicalDocument:
        """Interpret one document image.

        Args:
            request: The image as a ``data:image/...;base64,...`` URI.
            on_retry: Optional progress callback while the model is overloaded.

        Returns:
            The structured document. Sections missing from the document
            come back as empty lists.

        Raises:
            ValueError: The image is larger than 4 MB or not valid base64.
            NotConfiguredError: No vision model is configured.
        """
        size = decoded_size(request.encoded_data)
        if size > MAX_IMAGE_BYTES:
            raise ValueError(
                f"Document image is {size / (1024 * 1024):.1f} MB; the limit is 4 MB."
            )

        if not self.model.is_configured:
            raise NotConfiguredError("Document interpretation is not configured.")

        user_content = [
            {"type": "text", "text": "Interpret this medical document."},
            {"type": "image_url", "image_url": {"url": request.document_image}},
        ]
        document = self.model.generate(
            "document_interpreter",
            SYSTEM_PROMPT,
            user_content,
            MedicalDocument,
            on_retry=on_retry,
            max_tokens=1500,
        )
        logger.info(
            "Interpreted %s (%d bytes): %d vitals, %d abnormal, %d medications.",
            document.document_type,
            size,
            len(document.key_vitals),
            len(document.abnormal_readings),
            len(document.medications),
        )
        return document

    def interpret_file(self, path: str) -> MedicalDocument:
        """Interpret a local image file.

        Raises:
            ValueError: The file is not an image or is too large.
        """
        file_path = Path(path)
        mime, _ = mimetypes.guess_type(file_path.name)
        if not mime or not mime.startswith("image/"):
            raise ValueError(f"{file_path.name} is not an image file")

        encoded = base64.b64encode(file_path.read_bytes()).decode("ascii")
        return self.interpret(
            DocumentInterpreterInput(document_image=f"data:{mime};base64,{encoded}")
        )
