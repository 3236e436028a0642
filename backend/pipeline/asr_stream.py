from __future__ import annotations

import asyncio
import io
import logging
from typing import Optional

import numpy as np
from openai import AsyncOpenAI

from pipeline.errors import ConfigurationUnavailable, TransientAdapterFailure
from pipeline.language import Lang
from utils.audio_buffers import float32_to_wav_bytes, resample_linear


# Chunks shorter than this carry too little speech to be worth a request.
MIN_CHUNK_SECONDS = 0.4
WHISPER_SAMPLE_RATE = 16000


class OpenAITranscriber:
    """Remote transcription of call-audio chunks via the OpenAI audio API."""

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini-transcribe", client=None) -> None:
        self.model = model
        self.last_language: Optional[str] = None
        self._client = client
        if self._client is None and api_key:
            self._client = AsyncOpenAI(api_key=api_key)

    def probe(self) -> bool:
        return self._client is not None

    async def transcribe(self, chunk: np.ndarray, sample_rate: int = 16000, lang=None) -> str:
        if self._client is None:
            raise ConfigurationUnavailable("transcriber: OPENAI_API_KEY not set")
        if chunk is None or chunk.size < int(MIN_CHUNK_SECONDS * sample_rate):
            return ""
        audio = io.BytesIO(float32_to_wav_bytes(chunk, sample_rate))
        audio.name = "remote-audio.wav"
        kwargs = {"model": self.model, "file": audio}
        if lang:
            kwargs["language"] = Lang.parse(lang).value
        try:
            resp = await self._client.audio.transcriptions.create(**kwargs)
        except Exception as e:
            raise TransientAdapterFailure(f"remote transcription failed: {e}") from e
        return (getattr(resp, "text", "") or "").strip()


class WhisperTranscriber:
    """Local faster-whisper transcription for short call-audio chunks.

    The model is loaded lazily on first use. Takes mono float32 in [-1, 1]
    at any rate; chunks are resampled to 16 kHz. Remembers the last detected
    language.
    """

    def __init__(self, model_size: str = "small", device: str = "cpu", compute_type: str = "int8") -> None:
        # Lazy import: faster-whisper is an optional extra
        try:
            from faster_whisper import WhisperModel  # type: ignore
        except Exception:
            WhisperModel = None  # type: ignore
        self._WhisperModel = WhisperModel
        self._model_size = model_size
        self._device = device
        self._compute_type = compute_type
        self._logger = logging.getLogger("callguard")
        self.model = None
        self.last_language: Optional[str] = None
        self.fallback_used: Optional[str] = None  # compute_type actually used, if fallback occurred

    def probe(self) -> bool:
        return self._WhisperModel is not None

    def _load(self) -> None:
        # Try preferred compute type first, then fall back
        try_types = [self._compute_type, "int8_float16", "float16", "int8", "float32"]
        last_err: Optional[Exception] = None
        for ct in try_types:
            try:
                self.model = self._WhisperModel(self._model_size, device=self._device, compute_type=ct)
                self.fallback_used = ct if ct != self._compute_type else None
                return
            except Exception as e:  # keep trying
                last_err = e
                self.model = None
        raise ConfigurationUnavailable(f"whisper model could not be loaded: {last_err}")

    def _transcribe_sync(self, audio: np.ndarray, language: Optional[str]) -> str:
        if self.model is None:
            self._load()
            if self.fallback_used:
                self._logger.info("Whisper compute_type fallback in use: %s", self.fallback_used)
        segments, info = self.model.transcribe(
            audio,
            beam_size=1,
            vad_filter=False,
            language=language,
            temperature=0.0,
            condition_on_previous_text=False,
        )
        text = " ".join(seg.text.strip() for seg in segments).strip()
        if info is not None and getattr(info, "language", None):
            self.last_language = info.language
        return text

    async def transcribe(self, chunk: np.ndarray, sample_rate: int = 16000, lang=None) -> str:
        if self._WhisperModel is None:
            raise ConfigurationUnavailable("faster-whisper not installed")
        if sample_rate <= 0:
            raise TransientAdapterFailure(f"invalid sample rate {sample_rate}")
        if chunk is None or chunk.size < int(MIN_CHUNK_SECONDS * sample_rate):
            return ""
        # Whisper models take 16 kHz input only
        audio = resample_linear(chunk, sample_rate, WHISPER_SAMPLE_RATE)
        language = Lang.parse(lang).value if lang else None
        try:
            return await asyncio.to_thread(self._transcribe_sync, audio, language)
        except ConfigurationUnavailable:
            raise
        except Exception as e:
            raise TransientAdapterFailure(f"whisper transcription failed: {e}") from e


def build_transcriber(settings):
    """Pick the transcription backend named by ``settings.transcriber``.

    "auto" prefers the OpenAI API when a key is configured, else local Whisper.
    Returns None when transcription is switched off.
    """
    choice = (settings.transcriber or "auto").lower()
    if choice == "off":
        return None
    if choice == "openai" or (choice == "auto" and settings.openai_api_key):
        return OpenAITranscriber(api_key=settings.openai_api_key, model=settings.transcribe_model)
    return WhisperTranscriber(model_size=settings.asr_model_size, device="cpu", compute_type="int8")
