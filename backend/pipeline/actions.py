from __future__ import annotations

from typing import List

from pipeline.language import Lang


class GuardActions:
    """Side effects the controller can ask for when a call turns risky.

    Every method is best-effort and may be invoked concurrently with the
    others. The base class does nothing, so a session can run headless.
    """

    async def alert(self) -> None:
        """Short discreet audible/haptic cue."""

    async def say(self, text: str, lang: Lang) -> None:
        """Speak ``text`` with a local offline synthesizer."""

    async def play_audio(self, audio: bytes, text: str, lang: Lang) -> None:
        """Play pre-synthesized warning audio."""

    async def mute_microphone(self) -> bool:
        """Disable the outgoing microphone. Returns True if it was muted."""
        return False

    async def unmute_microphone(self) -> None:
        pass

    async def hangup(self) -> None:
        pass

    async def high_risk(self, risk: int, reasons: List[str]) -> None:
        """Notification hook for the upward threshold crossing."""
