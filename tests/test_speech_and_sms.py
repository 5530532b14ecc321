"""
Speech and SMS Tests
====================
Text-to-speech provider fallback, Deepgram transcription and Twilio SMS,
with every HTTP and SDK call patched out.

Run with: python -m pytest tests/test_speech_and_sms.py -v
"""

import base64
import io
import os
import sys
import unittest
import wave
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import requests

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from medibook.errors import NotConfiguredError, ProviderError
from medibook.llm_client import StructuredModel
from medibook.sms import SmsSender
from medibook.speech_handler import (
    SpeechHandler,
    content_type_for,
    decode_base64_audio,
    pcm_to_wav,
)

NO_PROVIDERS_ENV = {
    "AZURE_OPENAI_ENDPOINT": "",
    "AZURE_OPENAI_KEY": "",
    "OPENAI_API_KEY": "",
    "ELEVEN_LABS_API_KEY": "",
    "DEEPGRAM_API_KEY": "",
}

DEEPGRAM_REPLY = {
    "results": {
        "channels": [
            {
                "alternatives": [
                    {
                        "transcript": "I have a headache",
                        "confidence": 0.97,
                        "words": [
                            {"word": "i", "start": 0.1, "end": 0.2, "confidence": 0.99},
                            {"word": "have", "start": 0.2, "end": 0.4, "confidence": 0.98},
                        ],
                    }
                ]
            }
        ]
    }
}


class StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Error code: {status_code}")
        self.status_code = status_code


def http_response(ok=True, status=200, content=b"", payload=None, text=""):
    response = mock.Mock()
    response.ok = ok
    response.status_code = status
    response.content = content
    response.text = text
    response.json.return_value = payload
    return response


def make_handler(env: dict, tts_create=None, sleeps=None) -> SpeechHandler:
    """SpeechHandler with the given env; ``tts_create`` fakes the OpenAI audio API."""
    with mock.patch.dict(os.environ, {**NO_PROVIDERS_ENV, **env}):
        if tts_create is None:
            model = StructuredModel()
        else:
            client = SimpleNamespace(audio=SimpleNamespace(speech=SimpleNamespace(create=tts_create)))
            model = StructuredModel(client=client)
        return SpeechHandler(model, sleep=(sleeps.append if sleeps is not None else lambda s: None))


class TestAudioHelpers(unittest.TestCase):
    def test_pcm_to_wav(self):
        pcm = b"\x00\x01" * 2400
        wav = pcm_to_wav(pcm)
        self.assertTrue(wav.startswith(b"RIFF"))
        with wave.open(io.BytesIO(wav), "rb") as reader:
            self.assertEqual(reader.getnchannels(), 1)
            self.assertEqual(reader.getsampwidth(), 2)
            self.assertEqual(reader.getframerate(), 24000)
            self.assertEqual(reader.getnframes(), 2400)

    def test_content_type_for(self):
        self.assertEqual(content_type_for("clip.WAV"), "audio/wav")
        self.assertEqual(content_type_for("clip.webm"), "audio/webm")
        self.assertEqual(content_type_for("clip.flac"), "application/octet-stream")


class TestTextToSpeech(unittest.TestCase):
    """OpenAI first, ElevenLabs second."""

    def test_openai_retries_rate_limit(self):
        sleeps: list[float] = []
        create = mock.Mock(
            side_effect=[StatusError(429), StatusError(429), SimpleNamespace(content=b"\x00\x01" * 10)]
        )
        handler = make_handler({}, tts_create=create, sleeps=sleeps)

        audio = handler.text_to_speech("Take two tablets daily.")
        self.assertEqual(audio.provider, "openai")
        self.assertTrue(audio.audio.startswith("data:audio/wav;base64,"))
        self.assertEqual(create.call_count, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(create.call_args.kwargs["response_format"], "pcm")

        wav = base64.b64decode(audio.audio.split(",", 1)[1])
        self.assertTrue(wav.startswith(b"RIFF"))

    def test_openai_overload_is_not_retried(self):
        create = mock.Mock(side_effect=StatusError(503))
        handler = make_handler({}, tts_create=create)
        with self.assertRaises(ProviderError):
            handler.text_to_speech("hello")
        self.assertEqual(create.call_count, 1)

    def test_falls_back_to_eleven_labs(self):
        create = mock.Mock(side_effect=StatusError(500))
        handler = make_handler({"ELEVEN_LABS_API_KEY": "el-key"}, tts_create=create)
        reply = http_response(content=b"ID3mp3")
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply) as post:
            audio = handler.text_to_speech("hello")

        self.assertEqual(audio.provider, "elevenlabs")
        self.assertEqual(audio.audio, "data:audio/mpeg;base64," + base64.b64encode(b"ID3mp3").decode())
        self.assertEqual(post.call_args.kwargs["headers"]["xi-api-key"], "el-key")
        self.assertEqual(post.call_args.kwargs["json"]["text"], "hello")

    def test_eleven_labs_only(self):
        handler = make_handler({"ELEVEN_LABS_API_KEY": "el-key"})
        self.assertTrue(handler.tts_available)
        with mock.patch(
            "medibook.speech_handler.requests.post",
            return_value=http_response(content=b"ID3"),
        ):
            self.assertEqual(handler.text_to_speech("hi").provider, "elevenlabs")

    def test_every_provider_failing(self):
        create = mock.Mock(side_effect=StatusError(500))
        handler = make_handler({"ELEVEN_LABS_API_KEY": "el-key"}, tts_create=create)
        with mock.patch(
            "medibook.speech_handler.requests.post",
            return_value=http_response(ok=False, status=401, text="unauthorized"),
        ):
            with self.assertRaises(ProviderError) as ctx:
                handler.text_to_speech("hello")
        self.assertEqual(str(ctx.exception), "Could not generate audio.")

    def test_no_provider_configured(self):
        handler = make_handler({})
        self.assertFalse(handler.tts_available)
        with self.assertRaises(NotConfiguredError):
            handler.text_to_speech("hello")


class TestTranscription(unittest.TestCase):
    """Deepgram speech-to-text."""

    def test_transcribe(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        reply = http_response(payload=DEEPGRAM_REPLY)
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply) as post:
            result = handler.transcribe_audio(b"RIFFdata", "audio/webm")

        self.assertEqual(result.text, "I have a headache")
        self.assertEqual(result.confidence, 0.97)
        self.assertEqual(len(result.words), 2)
        kwargs = post.call_args.kwargs
        self.assertEqual(kwargs["params"], {"model": "nova-2"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Token dg-key")
        self.assertEqual(kwargs["headers"]["Content-Type"], "audio/webm")
        self.assertEqual(kwargs["data"], b"RIFFdata")

    def test_data_uri_prefix_is_stripped(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        encoded = "data:audio/wav;base64," + base64.b64encode(b"RIFFdata").decode()
        reply = http_response(payload=DEEPGRAM_REPLY)
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply) as post:
            handler.transcribe_base64_audio(encoded)
        self.assertEqual(post.call_args.kwargs["data"], b"RIFFdata")

    def test_non_json_body_is_a_provider_error(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        reply = http_response(text="<html>gateway</html>")
        reply.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply):
            with self.assertRaises(ProviderError) as ctx:
                handler.transcribe_audio(b"RIFFdata")
        self.assertEqual(str(ctx.exception), "Unexpected transcription format.")

    def test_decode_base64_audio(self):
        self.assertEqual(decode_base64_audio("data:audio/wav;base64,UklGRg=="), b"RIFF")
        with self.assertRaises(ValueError):
            decode_base64_audio("@@@ not audio")

    def test_no_alternatives(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        reply = http_response(payload={"results": {"channels": []}})
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply):
            with self.assertRaises(ProviderError):
                handler.transcribe_audio(b"RIFFdata")

    def test_http_error(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        reply = http_response(ok=False, status=400, text="bad audio")
        with mock.patch("medibook.speech_handler.requests.post", return_value=reply):
            with self.assertRaises(ProviderError) as ctx:
                handler.transcribe_audio(b"RIFFdata")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_network_error(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "dg-key"})
        with mock.patch(
            "medibook.speech_handler.requests.post",
            side_effect=requests.ConnectionError("offline"),
        ):
            with self.assertRaises(ProviderError):
                handler.transcribe_audio(b"RIFFdata")

    def test_not_configured(self):
        handler = make_handler({"DEEPGRAM_API_KEY": "your-key"})
        self.assertFalse(handler.stt_available)
        with self.assertRaises(NotConfiguredError):
            handler.transcribe_audio(b"RIFFdata")


class TestSms(unittest.TestCase):
    """Twilio SMS sender."""

    def make_sender(self) -> SmsSender:
        return SmsSender(account_sid="AC123", auth_token="token", from_number="+15550000000")

    def test_send(self):
        with mock.patch("medibook.sms.Client") as client_cls:
            client_cls.return_value.messages.create.return_value = SimpleNamespace(sid="SM42")
            receipt = self.make_sender().send_sms("+15551234567", "Your appointment is confirmed.")

        self.assertTrue(receipt.success)
        self.assertEqual(receipt.sid, "SM42")
        client_cls.assert_called_once_with("AC123", "token")
        client_cls.return_value.messages.create.assert_called_once_with(
            body="Your appointment is confirmed.", from_="+15550000000", to="+15551234567"
        )

    def test_provider_failure(self):
        with mock.patch("medibook.sms.Client") as client_cls:
            client_cls.return_value.messages.create.side_effect = RuntimeError("invalid number")
            with self.assertRaises(ProviderError) as ctx:
                self.make_sender().send_sms("+15551234567", "hi")
        self.assertEqual(str(ctx.exception), "Could not send SMS.")

    def test_not_configured(self):
        with mock.patch.dict(
            os.environ,
            {"TWILIO_ACCOUNT_SID": "", "TWILIO_AUTH_TOKEN": "", "TWILIO_PHONE_NUMBER": ""},
        ):
            sender = SmsSender()
        self.assertFalse(sender.is_configured)
        with self.assertRaises(NotConfiguredError):
            sender.send_sms("+15551234567", "hi")


if __name__ == "__main__":
    unittest.main(verbosity=2)
