"""
Speech Handler Module
=====================
Text-to-speech for reading triage results and instructions aloud, and
speech-to-text for dictating symptoms.

Text-to-speech tries providers in order:
  1. OpenAI TTS (raw 24 kHz 16-bit mono PCM, wrapped into a WAV container),
     retried while the provider answers 429
  2. ElevenLabs (MP3)

Speech-to-text uses the Deepgram ``nova-2`` model over REST.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import time
import wave
from pathlib import Path
from typing import Callable, Optional

import requests
from dotenv import load_dotenv
from pydantic import ValidationError

from medibook.errors import NotConfiguredError, ProviderError
from medibook.llm_client import STATUS_RATE_LIMITED, StructuredModel, invoke_with_retry
from medibook.schemas import SpeechAudio, TranscriptionResult

load_dotenv()
logger = logging.getLogger(__name__)

PCM_SAMPLE_RATE = 24000
PCM_CHANNELS = 1
PCM_SAMPLE_WIDTH = 2

ELEVEN_LABS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
DEEPGRAM_URL = "https://api.deepgram.com/v1/listen"
DEEPGRAM_MODEL = "nova-2"

AUDIO_CONTENT_TYPES: dict[str, str] = {
    "wav": "audio/wav",
    "mp3": "audio/mp3",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
    "m4a": "audio/m4a",
}


def pcm_to_wav(
    pcm: bytes,
    channels: int = PCM_CHANNELS,
    rate: int = PCM_SAMPLE_RATE,
    sample_width: int = PCM_SAMPLE_WIDTH,
) -> bytes:
    """Wrap raw little-endian PCM samples in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as writer:
        writer.setnchannels(channels)
        writer.setsampwidth(sample_width)
        writer.setframerate(rate)
        writer.writeframes(pcm)
    return buffer.getvalue()


def content_type_for(path: str) -> str:
    """Audio MIME type from a file extension."""
    extension = Path(path).suffix.lstrip(".").lower()
    return AUDIO_CONTENT_TYPES.get(extension, "application/octet-stream")


def _data_uri(mime: str, payload: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def decode_base64_audio(encoded: str) -> bytes:
    """Decode base64 audio, stripping any data-URI prefix.

    Raises:
        ValueError: The payload is not valid base64.
    """
    if "base64," in encoded:
        encoded = encoded.split("base64,", 1)[1]
    return base64.b64decode(encoded, validate=True)


class SpeechHandler:
    """Text-to-speech and speech-to-text over hosted providers.

    Attributes:
        model: Structured inference client; its OpenAI client does TTS.
        tts_deployment: OpenAI TTS model / Azure deployment name.
        tts_voice: OpenAI TTS voice.
        eleven_labs_key: ElevenLabs API key.
        deepgram_key: Deepgram API key.
    """

    def __init__(
        self,
        model: Optional[StructuredModel] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model or StructuredModel()
        self.tts_deployment: str = os.getenv("TTS_DEPLOYMENT", "gpt-4o-mini-tts")
        self.tts_voice: str = os.getenv("TTS_VOICE", "alloy")
        self.eleven_labs_key: str = os.getenv("ELEVEN_LABS_API_KEY", "")
        self.eleven_labs_voice: str = os.getenv("ELEVEN_LABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
        self.eleven_labs_model: str = os.getenv("ELEVEN_LABS_MODEL_ID", "eleven_monolingual_v2")
        self.deepgram_key: str = os.getenv("DEEPGRAM_API_KEY", "")
        self._sleep = sleep

        if not self.deepgram_key or self.deepgram_key == "your-key":
            self.deepgram_key = ""
            logger.warning("Deepgram credentials not configured. Voice input will be unavailable.")
        if self.eleven_labs_key == "your-key":
            self.eleven_labs_key = ""

    @property
    def tts_available(self) -> bool:
        return self.model.is_configured or bool(self.eleven_labs_key)

    @property
    def stt_available(self) -> bool:
        return bool(self.deepgram_key)

    # ------------------------------------------------------------------
    # Text-to-speech
    # ------------------------------------------------------------------

    def text_to_speech(
        self, text: str, on_retry: Optional[Callable[[str], None]] = None
    ) -> SpeechAudio:
        """Synthesize ``text`` with the first provider that succeeds.

        Args:
            text: Text to read aloud.
            on_retry: Optional progress callback while the model is rate limited.

        Returns:
            Audio as a data URI plus the provider that produced it.

        Raises:
            NotConfiguredError: No TTS provider has credentials.
            ProviderError: Every configured provider failed.
        """
        if not self.tts_available:
            raise NotConfiguredError("Text-to-speech is not configured.")

        last_error: Optional[Exception] = None

        if self.model.is_configured:
            try:
                return self._openai_tts(text, on_retry)
            except Exception as exc:
                logger.error("OpenAI TTS failed: %s", exc)
                last_error = exc

        if self.eleven_labs_key:
            try:
                return self._eleven_labs_tts(text)
            except Exception as exc:
                logger.error("ElevenLabs TTS failed: %s", exc)
                last_error = exc

        raise ProviderError("Could not generate audio.") from last_error

    def _openai_tts(
        self, text: str, on_retry: Optional[Callable[[str], None]]
    ) -> SpeechAudio:
        def call() -> bytes:
            response = self.model.client.audio.speech.create(
                model=self.tts_deployment,
                voice=self.tts_voice,
                input=text,
                response_format="pcm",
            )
            pcm = response.content
            if not pcm:
                raise ProviderError("No audio was generated.")
            return pcm

        pcm = invoke_with_retry(
            call,
            name="text_to_speech",
            policy=self.model.retry_policy.with_statuses(STATUS_RATE_LIMITED),
            on_retry=on_retry,
            sleep=self._sleep,
        )
        logger.info("OpenAI TTS generated %d bytes of PCM.", len(pcm))
        return SpeechAudio(audio=_data_uri("audio/wav", pcm_to_wav(pcm)), provider="openai")

    def _eleven_labs_tts(self, text: str) -> SpeechAudio:
        response = requests.post(
            ELEVEN_LABS_URL.format(voice_id=self.eleven_labs_voice),
            headers={
                "Content-Type": "application/json",
                "xi-api-key": self.eleven_labs_key,
                "accept": "audio/mpeg",
            },
            json={
                "text": text,
                "model_id": self.eleven_labs_model,
                "voice_settings": {
                    "stability": 0.5,
                    "similarity_boost": 0.5,
                    "style": 0.5,
                    "use_speaker_boost": True,
                },
            },
            timeout=30,
        )
        if not response.ok:
            raise ProviderError(
                f"ElevenLabs API error: {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.info("ElevenLabs TTS generated %d bytes of MP3.", len(response.content))
        return SpeechAudio(audio=_data_uri("audio/mpeg", response.content), provider="elevenlabs")

    # ------------------------------------------------------------------
    # Speech-to-text
    # ------------------------------------------------------------------

    def transcribe_audio(
        self, audio: bytes, content_type: str = "audio/wav"
    ) -> TranscriptionResult:
        """Transcribe raw audio bytes with Deepgram.

        Raises:
            NotConfiguredError: No Deepgram key.
            ProviderError: The request failed or returned no alternatives.
        """
        if not self.deepgram_key:
            raise NotConfiguredError("Speech-to-text is not configured.")

        try:
            response = requests.post(
                DEEPGRAM_URL,
                params={"model": DEEPGRAM_MODEL},
                headers={
                    "Content-Type": content_type,
                    "Authorization": f"Token {self.deepgram_key}",
                },
                data=audio,
                timeout=60,
            )
        except requests.RequestException as exc:
            logger.error("Deepgram request error: %s", exc)
            raise ProviderError("Failed to transcribe audio.") from exc

        if not response.ok:
            logger.error("Deepgram API error %s: %s", response.status_code, response.text[:200])
            raise ProviderError("Failed to transcribe audio.", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("Deepgram returned a non-JSON body: %s", response.text[:200])
            raise ProviderError("Unexpected transcription format.") from exc
        if not isinstance(data, dict):
            raise ProviderError("Unexpected transcription format.")
        channels = (data.get("results") or {}).get("channels") or [{}]
        alternatives = channels[0].get("alternatives") or []
        if not alternatives:
            raise ProviderError("No transcription results found in the response.")

        best = alternatives[0]
        try:
            result = TranscriptionResult(
                text=best.get("transcript") or "",
                is_final=bool(best.get("is_final", False)),
                confidence=best.get("confidence") or 0.0,
                words=best.get("words") or [],
            )
        except ValidationError as exc:
            raise ProviderError("Unexpected transcription format.") from exc

        logger.info(
            "Transcribed %d bytes of %s (confidence=%.2f).",
            len(audio), content_type, result.confidence,
        )
        return result

    def transcribe_base64_audio(
        self, encoded: str, content_type: str = "audio/wav"
    ) -> TranscriptionResult:
        """Transcribe base64 audio, with or without a data-URI prefix."""
        return self.transcribe_audio(decode_base64_audio(encoded), content_type)

    def transcribe_audio_file(self, path: str) -> TranscriptionResult:
        return self.transcribe_audio(Path(path).read_bytes(), content_type_for(path))
