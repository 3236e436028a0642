from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from pipeline.errors import CallGuardError, ConfigurationUnavailable, TransientAdapterFailure
from pipeline.language import Lang


ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"

WARNINGS = {
    Lang.EN: "Alert: this may be a scam. Do not share codes or bank details. Hang up and call back on an official number.",
    Lang.ES: "Alerta: posible estafa. No comparta códigos ni datos bancarios. Cuelgue y verifique con un número oficial.",
    Lang.FR: (
        "Alerte: possible arnaque. Ne partagez pas de codes ni d'informations bancaires. "
        "Raccrochez et vérifiez via un numéro officiel."
    ),
    Lang.DE: (
        "Warnung: möglicher Betrug. Keine Codes oder Bankdaten teilen. "
        "Auflegen und über eine offizielle Nummer verifizieren."
    ),
}


def warning_text(lang) -> str:
    return WARNINGS[Lang.parse(lang)]


class ElevenLabsCoach:
    """Spoken warnings via ElevenLabs text-to-speech.

    speak() hands synthesized audio to the session's sink; when the service
    is unconfigured or fails, the sink is asked to synthesize locally instead.
    """

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: str = DEFAULT_VOICE_ID,
        model_id: str = "eleven_multilingual_v2",
        timeout_s: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self.voice_id = voice_id or DEFAULT_VOICE_ID
        self.model_id = model_id
        self.timeout_s = timeout_s
        self._logger = logging.getLogger("callguard")

    def probe(self) -> bool:
        return bool(self._api_key)

    async def synthesize(self, text: str, lang=Lang.EN) -> bytes:
        if not self._api_key:
            raise ConfigurationUnavailable("voice coach: ELEVENLABS_API_KEY not set")
        if not text:
            raise TransientAdapterFailure("voice coach: missing text")
        payload = {
            "model_id": self.model_id,
            "text": text,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.85,
                "style": 0.15,
                "use_speaker_boost": True,
            },
        }
        headers = {
            "xi-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    ELEVENLABS_TTS_URL.format(voice_id=self.voice_id),
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as resp:
                    if resp.status != 200:
                        detail = await resp.text()
                        raise TransientAdapterFailure(f"voice coach HTTP {resp.status}: {detail[:200]}")
                    return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientAdapterFailure(f"voice coach request failed: {e}") from e

    async def speak(self, text: str, lang, sink) -> None:
        lang = Lang.parse(lang)
        audio: Optional[bytes] = None
        try:
            audio = await self.synthesize(text, lang)
        except CallGuardError as e:
            self._logger.debug("voice coach unavailable, using local synthesis: %s", e)
        if audio:
            await sink.play_audio(audio, text=text, lang=lang)
        else:
            await sink.say(text, lang)
