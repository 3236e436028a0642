from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set

from pipeline.actions import GuardActions
from pipeline.clone import CloneMetrics, estimate
from pipeline.coach import warning_text
from pipeline.errors import CallGuardError, ResourceAcquisitionFailure
from pipeline.fuse import (
    CLONE_KEEP,
    LOCAL_KEEP,
    REMOTE_KEEP,
    clone_suspicion,
    crossed_up,
    fuse_scores,
    overall_risk,
    pct,
    smooth,
)
from pipeline.language import Lang
from pipeline.rules import analyze
from utils.audio_buffers import ChunkAccumulator
from utils.lease import Lease


logger = logging.getLogger("callguard")

# Classifier reasons shown next to the local ones.
MAX_SERVER_REASONS = 3
MAX_EVIDENCE = 12


class Channel(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


def _as_channel(channel) -> Channel:
    """Anything that is not the remote channel counts as local speech."""
    try:
        return Channel(channel)
    except ValueError:
        logger.debug("unknown transcript channel %r; treating as local", channel)
        return Channel.LOCAL


@dataclass
class SessionState:
    session_id: str
    lang: Lang = Lang.EN
    auto_lang: bool = True
    scam_score: int = 0
    clone_score: int = 0
    local_transcript: str = ""
    remote_transcript: str = ""
    interim: str = ""
    last_classify_at: Optional[float] = None
    last_overall_risk: int = 0
    muted_by_guard: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    local_reasons: List[str] = field(default_factory=list)
    server_reasons: List[str] = field(default_factory=list)
    evidence: List[dict] = field(default_factory=list)
    alerts_fired: int = 0
    last_metrics: Optional[CloneMetrics] = None

    def combined_transcript(self) -> str:
        return " ".join(t for t in (self.local_transcript, self.remote_transcript) if t)

    def reasons(self) -> List[str]:
        merged: List[str] = []
        for r in self.local_reasons + self.server_reasons:
            if r not in merged:
                merged.append(r)
        return merged


class CallGuard:
    """Risk fusion and alerting for one monitored call at a time.

    Owns the SessionState. Audio frames and final transcripts are applied
    synchronously in arrival order; classifier, transcription and alert
    actions run as background tasks whose failures never stop monitoring.
    """

    def __init__(
        self,
        settings,
        classifier=None,
        coach=None,
        transcriber=None,
        actions: Optional[GuardActions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.classifier = classifier
        self.coach = coach
        self.transcriber = transcriber
        self.actions = actions or GuardActions()
        self.state: Optional[SessionState] = None
        self._capture = None
        self._tasks: Set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()
        self._classify_lease = Lease(clock)
        self._transcribe_lease = Lease(clock)
        self._alert_lease = Lease(clock)
        self._remote_audio: Optional[ChunkAccumulator] = None
        self.classifier_available = False
        self.transcriber_available = False

    @property
    def monitoring(self) -> bool:
        return self.state is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, capture=None, lang: Optional[str] = None, session_id: Optional[str] = None) -> SessionState:
        # Concurrent callers wait for the first start and share its session
        async with self._start_lock:
            if self.state is not None:
                return self.state
            return await self._start(capture, lang, session_id)

    async def _start(self, capture, lang: Optional[str], session_id: Optional[str]) -> SessionState:
        if capture is not None:
            try:
                await capture.open()
            except ResourceAcquisitionFailure:
                raise
            except Exception as e:
                raise ResourceAcquisitionFailure(f"audio capture failed: {e}") from e
        self._capture = capture

        requested = lang or self.settings.default_lang
        auto = str(requested).lower() == "auto"
        state = SessionState(
            session_id=session_id or str(uuid.uuid4()),
            lang=Lang.parse(None if auto else requested),
            auto_lang=auto,
        )
        self._classify_lease.reset()
        self._transcribe_lease.reset()
        self._alert_lease.reset()
        self._remote_audio = None
        self.classifier_available = self._probe(self.classifier, "classifier")
        self.transcriber_available = self._probe(self.transcriber, "transcriber")
        self.state = state
        logger.info(
            "session %s started (lang=%s%s, classifier=%s, transcriber=%s)",
            state.session_id,
            state.lang.value,
            " auto" if auto else "",
            self.classifier_available,
            self.transcriber_available,
        )
        return state

    def stop(self) -> Optional[SessionState]:
        """End monitoring and return the final state. Safe to call repeatedly."""
        state = self.state
        if state is None:
            return None
        self.state = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._capture is not None:
            try:
                self._capture.close()
            except Exception:
                logger.warning("capture close failed", exc_info=True)
            self._capture = None
        if self._remote_audio is not None:
            self._remote_audio.clear()
            self._remote_audio = None
        self._transcribe_lease.release()
        state.interim = ""
        state.last_metrics = None
        state.ended_at = datetime.now(timezone.utc)
        logger.info(
            "session %s stopped (risk=%d, alerts=%d)", state.session_id, state.last_overall_risk, state.alerts_fired
        )
        return state

    async def wait_idle(self) -> None:
        """Wait until every background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Signal inputs
    # ------------------------------------------------------------------

    def on_audio_frame(self, samples, sample_rate: int) -> None:
        state = self.state
        if state is None:
            return
        metrics = estimate(samples, sample_rate)
        if metrics is None:
            return
        state.last_metrics = metrics
        state.clone_score = smooth(state.clone_score, clone_suspicion(metrics), CLONE_KEEP)
        self._evaluate()

    def on_transcript_partial(self, channel, text: str) -> None:
        if self.state is not None:
            self.state.interim = (text or "").strip()

    def on_transcript_final(self, channel, text: str) -> None:
        state = self.state
        if state is None:
            return
        text = (text or "").strip()
        if not text:
            return
        if _as_channel(channel) is Channel.REMOTE:
            state.remote_transcript = f"{state.remote_transcript} {text}".strip()
        else:
            state.local_transcript = f"{state.local_transcript} {text}".strip()
            state.interim = ""
        self._analyze_window(state)
        self._maybe_classify(state)

    def on_remote_audio(self, samples, sample_rate: int) -> None:
        """Buffer call audio and hand full chunks to the transcriber.

        A chunk that completes while the previous one is still being
        transcribed is dropped.
        """
        state = self.state
        if state is None or not self.transcriber_available:
            return
        if self._remote_audio is None or self._remote_audio.sample_rate != int(sample_rate):
            self._remote_audio = ChunkAccumulator(self.settings.remote_chunk_s, sample_rate)
        self._remote_audio.push(samples)
        if not self._remote_audio.ready():
            return
        chunk = self._remote_audio.drain()
        if not self._transcribe_lease.try_acquire(exclusive=True):
            logger.debug("transcriber busy; dropped %d samples", chunk.shape[0])
            return
        self._spawn(self._transcribe(state, chunk, int(sample_rate)), "transcribe")

    def set_language(self, lang: Optional[str]) -> None:
        state = self.state
        if state is None:
            return
        if not lang or str(lang).lower() == "auto":
            state.auto_lang = True
            return
        state.auto_lang = False
        state.lang = Lang.parse(lang)

    async def unmute_microphone(self) -> None:
        state = self.state
        if state is None or not state.muted_by_guard:
            return
        try:
            await self.actions.unmute_microphone()
        except Exception:
            logger.warning("unmute failed", exc_info=True)
            return
        state.muted_by_guard = False

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    def overall_risk(self) -> int:
        if self.state is None:
            return 0
        return overall_risk(self.state.scam_score, self.state.clone_score)

    def reasons(self) -> List[str]:
        return self.state.reasons() if self.state is not None else []

    def snapshot(self) -> dict:
        state = self.state
        if state is None:
            return {"monitoring": False}
        fusion = fuse_scores(state.scam_score, state.clone_score, state.reasons())
        metrics = state.last_metrics
        return {
            "monitoring": True,
            "session_id": state.session_id,
            "risk": fusion.risk,
            "label": fusion.label,
            "rationale": fusion.rationale,
            "scam": state.scam_score,
            "clone": state.clone_score,
            "reasons": fusion.reasons,
            "evidence": state.evidence,
            "lang": state.lang.value,
            "auto_lang": state.auto_lang,
            "muted_by_guard": state.muted_by_guard,
            "interim": state.interim,
            "partial_transcript": state.combined_transcript()[-400:],
            "pitch_hz": metrics.pitch_hz if metrics else 0.0,
            "clone_likelihood": metrics.clone_likelihood if metrics else 0.0,
            "classifier_available": self.classifier_available,
            "transcriber_available": self.transcriber_available,
        }

    def _analyze_window(self, state: SessionState) -> None:
        window = state.combined_transcript()[-self.settings.local_window_chars :]
        analysis = analyze(window, state.lang)
        state.local_reasons = analysis.reasons
        state.evidence = analysis.evidence(MAX_EVIDENCE)
        state.scam_score = smooth(state.scam_score, analysis.score, LOCAL_KEEP)
        self._evaluate()

    def _maybe_classify(self, state: SessionState) -> None:
        if not self.classifier_available:
            return
        if not self._classify_lease.try_acquire(self.settings.classify_interval_s):
            return
        state.last_classify_at = self._classify_lease.last_acquired
        text = state.combined_transcript()[-self.settings.classify_window_chars :]
        self._spawn(self._classify(state, text, state.lang), "classify")

    def _evaluate(self) -> None:
        state = self.state
        if state is None:
            return
        risk = overall_risk(state.scam_score, state.clone_score)
        previous = state.last_overall_risk
        state.last_overall_risk = risk
        if crossed_up(previous, risk, self.settings.high_risk_threshold):
            self.dispatch_alert(state.reasons(), risk)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def dispatch_alert(self, reasons: List[str], risk: Optional[int] = None) -> None:
        state = self.state
        if state is None:
            return
        risk = self.overall_risk() if risk is None else risk
        state.alerts_fired += 1
        logger.info("session %s crossed high risk (%d): %s", state.session_id, risk, "; ".join(reasons) or "-")
        s = self.settings
        self._spawn(self.actions.high_risk(risk, list(reasons)), "high_risk")
        if s.discreet_alert and self._alert_lease.try_acquire(s.alert_cooldown_s):
            self._spawn(self.actions.alert(), "alert")
        if s.voice_coach:
            self._spawn(self._speak_warning(state.lang), "voice_coach")
        if s.auto_mute_mic and not state.muted_by_guard:
            state.muted_by_guard = True
            self._spawn(self._mute(state), "mute")
        if s.auto_hangup:
            self._spawn(self._delayed_hangup(s.hangup_delay_s), "hangup")

    async def _speak_warning(self, lang: Lang) -> None:
        text = warning_text(lang)
        if self.coach is not None:
            await self.coach.speak(text, lang, self.actions)
        else:
            await self.actions.say(text, lang)

    async def _mute(self, state: SessionState) -> None:
        muted = await self.actions.mute_microphone()
        if not muted:
            state.muted_by_guard = False

    async def _delayed_hangup(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.actions.hangup()

    # ------------------------------------------------------------------
    # Adapters
    # ------------------------------------------------------------------

    async def _classify(self, state: SessionState, text: str, lang: Lang) -> None:
        try:
            result = await self.classifier.classify(text, lang)
        except CallGuardError as e:
            logger.debug("classifier skipped: %s", e)
            return
        if state is not self.state or result is None:
            return
        state.scam_score = smooth(state.scam_score, pct(result.score * 100.0), REMOTE_KEEP)
        state.server_reasons = list(result.reasons[:MAX_SERVER_REASONS])
        self._evaluate()

    async def _transcribe(self, state: SessionState, chunk, sample_rate: int) -> None:
        try:
            text = await self.transcriber.transcribe(chunk, sample_rate, None if state.auto_lang else state.lang)
        except CallGuardError as e:
            logger.debug("remote transcription skipped: %s", e)
            return
        finally:
            self._transcribe_lease.release()
        if state is not self.state:
            return
        detected = getattr(self.transcriber, "last_language", None)
        if state.auto_lang and detected:
            state.lang = Lang.parse(detected)
        if text:
            self.on_transcript_final(Channel.REMOTE, text)

    def _probe(self, adapter, name: str) -> bool:
        if adapter is None:
            return False
        try:
            return bool(adapter.probe())
        except Exception:
            logger.warning("%s probe failed", name, exc_info=True)
            return False

    def _spawn(self, coro, name: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("no running event loop; %s skipped", name)
            return None
        task = loop.create_task(self._guarded(coro, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("%s failed", name, exc_info=True)
