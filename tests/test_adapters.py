"""
Adapter tests: classifier reply parsing, OpenAI classifier and transcriber
with mocked clients, ElevenLabs voice coach fallback and backend selection.
"""

import os
import sys
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend")))

from config import Settings
from pipeline.asr_stream import OpenAITranscriber, WhisperTranscriber, build_transcriber
from pipeline.classifier import OpenAIClassifier, parse_classifier_output
from pipeline.coach import WARNINGS, ElevenLabsCoach, warning_text
from pipeline.errors import ConfigurationUnavailable, TransientAdapterFailure
from pipeline.language import Lang


class TestParseClassifierOutput(unittest.TestCase):

    def test_json_inside_prose(self):
        content = 'Sure! {"scam_score": 0.82, "top_reasons": ["OTP request", "urgency"]} hope this helps'
        result = parse_classifier_output(content, model="m")
        self.assertAlmostEqual(result.score, 0.82)
        self.assertEqual(result.reasons, ["OTP request", "urgency"])
        self.assertEqual(result.model, "m")

    def test_score_is_clamped(self):
        self.assertEqual(parse_classifier_output('{"scam_score": 7}', "m").score, 1.0)
        self.assertEqual(parse_classifier_output('{"scam_score": -2}', "m").score, 0.0)

    def test_reasons_are_capped(self):
        content = '{"scam_score": 0.5, "top_reasons": ["a", "b", "c", "d", "e", "f"]}'
        self.assertEqual(parse_classifier_output(content, "m").reasons, ["a", "b", "c", "d"])

    def test_garbage_degrades_to_zero(self):
        for content in ("no json here", "{not json}", "", None, '{"scam_score": "high"}'):
            result = parse_classifier_output(content, "m")
            self.assertEqual(result.score, 0.0)
            self.assertEqual(result.reasons, [])


class TestOpenAIClassifier(unittest.IsolatedAsyncioTestCase):

    async def test_without_key_is_unavailable(self):
        classifier = OpenAIClassifier(api_key=None)
        self.assertFalse(classifier.probe())
        with self.assertRaises(ConfigurationUnavailable):
            await classifier.classify("hello", Lang.EN)

    async def test_classify(self):
        client = MagicMock()
        client.responses.create = AsyncMock(
            return_value=SimpleNamespace(output_text='{"scam_score": 0.7, "top_reasons": ["gift cards"]}')
        )
        classifier = OpenAIClassifier(api_key=None, model="gpt-4o-mini", client=client)
        self.assertTrue(classifier.probe())

        result = await classifier.classify("buy gift cards now", "es-ES")

        self.assertAlmostEqual(result.score, 0.7)
        self.assertEqual(result.reasons, ["gift cards"])
        self.assertEqual(result.model, "openai:gpt-4o-mini")
        kwargs = client.responses.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-4o-mini")
        self.assertIn("Lang: es", kwargs["input"])
        self.assertIn("buy gift cards now", kwargs["input"])

    async def test_client_error_is_transient(self):
        client = MagicMock()
        client.responses.create = AsyncMock(side_effect=RuntimeError("connection reset"))
        classifier = OpenAIClassifier(api_key=None, client=client)
        with self.assertRaises(TransientAdapterFailure):
            await classifier.classify("hello", Lang.EN)


class TestOpenAITranscriber(unittest.IsolatedAsyncioTestCase):

    def make(self, text=" hola, necesito su codigo "):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text=text))
        return OpenAITranscriber(api_key=None, model="whisper-1", client=client), client

    async def test_transcribe(self):
        transcriber, client = self.make()
        text = await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000, Lang.ES)
        self.assertEqual(text, "hola, necesito su codigo")
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "whisper-1")
        self.assertEqual(kwargs["language"], "es")
        self.assertEqual(kwargs["file"].name, "remote-audio.wav")
        self.assertTrue(kwargs["file"].getvalue().startswith(b"RIFF"))

    async def test_auto_language_sends_no_hint(self):
        transcriber, client = self.make()
        await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000, None)
        self.assertNotIn("language", client.audio.transcriptions.create.call_args.kwargs)

    async def test_short_chunk_is_skipped(self):
        transcriber, client = self.make()
        self.assertEqual(await transcriber.transcribe(np.zeros(100, dtype=np.float32), 16000), "")
        client.audio.transcriptions.create.assert_not_called()

    async def test_failure_is_transient(self):
        transcriber, client = self.make()
        client.audio.transcriptions.create.side_effect = RuntimeError("503")
        with self.assertRaises(TransientAdapterFailure):
            await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000)

    async def test_without_key_is_unavailable(self):
        transcriber = OpenAITranscriber(api_key=None)
        self.assertFalse(transcriber.probe())
        with self.assertRaises(ConfigurationUnavailable):
            await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000)


class TestWhisperTranscriber(unittest.IsolatedAsyncioTestCase):

    async def test_model_is_loaded_lazily_and_language_remembered(self):
        segment = SimpleNamespace(text=" bonjour madame ")
        model = MagicMock()
        model.transcribe.return_value = ([segment], SimpleNamespace(language="fr"))
        factory = MagicMock(return_value=model)

        transcriber = WhisperTranscriber(model_size="tiny")
        transcriber._WhisperModel = factory
        self.assertIsNone(transcriber.model)

        text = await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000)

        self.assertEqual(text, "bonjour madame")
        self.assertEqual(transcriber.last_language, "fr")
        factory.assert_called_once_with("tiny", device="cpu", compute_type="int8")

    async def test_other_sample_rates_are_resampled(self):
        model = MagicMock()
        model.transcribe.return_value = ([SimpleNamespace(text="hallo")], SimpleNamespace(language="de"))
        transcriber = WhisperTranscriber()
        transcriber._WhisperModel = MagicMock(return_value=model)

        text = await transcriber.transcribe(np.zeros(48000, dtype=np.float32), 48000)

        self.assertEqual(text, "hallo")
        audio = model.transcribe.call_args.args[0]
        self.assertEqual(audio.shape[0], 16000)
        self.assertEqual(audio.dtype, np.float32)

    async def test_rejects_non_positive_sample_rate(self):
        transcriber = WhisperTranscriber()
        transcriber._WhisperModel = MagicMock()
        with self.assertRaises(TransientAdapterFailure):
            await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 0)

    async def test_missing_package_is_unavailable(self):
        transcriber = WhisperTranscriber()
        transcriber._WhisperModel = None
        self.assertFalse(transcriber.probe())
        with self.assertRaises(ConfigurationUnavailable):
            await transcriber.transcribe(np.zeros(16000, dtype=np.float32), 16000)


class TestBuildTranscriber(unittest.TestCase):

    def settings(self, **values):
        return Settings(_env_file=None, **values)

    def test_off(self):
        self.assertIsNone(build_transcriber(self.settings(transcriber="off")))

    def test_auto_prefers_openai_with_key(self):
        transcriber = build_transcriber(self.settings(transcriber="auto", openai_api_key="sk-test"))
        self.assertIsInstance(transcriber, OpenAITranscriber)

    def test_auto_without_key_uses_whisper(self):
        transcriber = build_transcriber(self.settings(transcriber="auto", openai_api_key=None))
        self.assertIsInstance(transcriber, WhisperTranscriber)

    def test_explicit_whisper(self):
        transcriber = build_transcriber(self.settings(transcriber="whisper", openai_api_key="sk-test"))
        self.assertIsInstance(transcriber, WhisperTranscriber)


class RecordingSink:

    def __init__(self):
        self.calls = []

    async def say(self, text, lang):
        self.calls.append(("say", text, lang))

    async def play_audio(self, audio, text, lang):
        self.calls.append(("play_audio", audio, text, lang))


class TestVoiceCoach(unittest.IsolatedAsyncioTestCase):

    async def test_without_key_falls_back_to_local_speech(self):
        coach = ElevenLabsCoach(api_key=None)
        sink = RecordingSink()
        self.assertFalse(coach.probe())
        await coach.speak(warning_text("de"), "de", sink)
        self.assertEqual(sink.calls, [("say", WARNINGS[Lang.DE], Lang.DE)])

    async def test_synthesized_audio_is_played(self):
        coach = ElevenLabsCoach(api_key="xi-test")
        sink = RecordingSink()
        with patch.object(coach, "synthesize", AsyncMock(return_value=b"ID3mp3")):
            await coach.speak("careful", Lang.EN, sink)
        self.assertEqual(sink.calls, [("play_audio", b"ID3mp3", "careful", Lang.EN)])

    async def test_service_failure_falls_back(self):
        coach = ElevenLabsCoach(api_key="xi-test")
        sink = RecordingSink()
        failing = AsyncMock(side_effect=TransientAdapterFailure("voice coach HTTP 500"))
        with patch.object(coach, "synthesize", failing):
            await coach.speak("careful", Lang.FR, sink)
        self.assertEqual(sink.calls, [("say", "careful", Lang.FR)])

    async def test_synthesize_requires_key(self):
        with self.assertRaises(ConfigurationUnavailable):
            await ElevenLabsCoach(api_key=None).synthesize("hi")


class TestLanguage(unittest.TestCase):

    def test_parse(self):
        self.assertIs(Lang.parse("es-ES"), Lang.ES)
        self.assertIs(Lang.parse("fr_FR"), Lang.FR)
        self.assertIs(Lang.parse("DE"), Lang.DE)
        self.assertIs(Lang.parse("pt"), Lang.EN)
        self.assertIs(Lang.parse(None), Lang.EN)
        self.assertIs(Lang.parse(Lang.FR), Lang.FR)

    def test_bcp47(self):
        self.assertEqual(Lang.ES.bcp47, "es-ES")
        self.assertEqual(Lang.EN.bcp47, "en-US")

    def test_every_language_has_a_warning(self):
        for lang in Lang:
            self.assertTrue(warning_text(lang))
        self.assertEqual(warning_text("it"), WARNINGS[Lang.EN])


if __name__ == "__main__":
    unittest.main()
