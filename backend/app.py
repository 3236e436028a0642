from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
import asyncio
import base64
import json
import numpy as np
import uuid

from utils.audio_buffers import ChunkAccumulator, pcm16le_bytes_to_float32
from utils.report import build_report, build_report_markdown
from pipeline.actions import GuardActions
from pipeline.asr_stream import build_transcriber
from pipeline.classifier import OpenAIClassifier
from pipeline.coach import ElevenLabsCoach
from pipeline.errors import ResourceAcquisitionFailure
from pipeline.guard import CallGuard, Channel
from pipeline.language import Lang
from config import settings
import logging


app = FastAPI(title="Call Guard")
logger = logging.getLogger("callguard")
logging.basicConfig(level=logging.INFO)

# Optional global adapters (initialized once)
CLASSIFIER = OpenAIClassifier(api_key=settings.openai_api_key, model=settings.classifier_model)
if CLASSIFIER.probe():
    logger.info("Classifier enabled (%s)", settings.classifier_model)
else:
    logger.info("Classifier unavailable; scoring on local rules only")
COACH = ElevenLabsCoach(api_key=settings.elevenlabs_api_key, voice_id=settings.elevenlabs_voice_id)
if COACH.probe():
    logger.info("Voice coach enabled (ElevenLabs)")
else:
    logger.info("Voice coach unavailable; clients synthesize warnings locally")
TRANSCRIBER = build_transcriber(settings)
if TRANSCRIBER is not None and TRANSCRIBER.probe():
    logger.info("Remote transcription enabled (%s)", type(TRANSCRIBER).__name__)
else:
    logger.info("Remote transcription disabled or unavailable")

# In-memory report store (simple, non-persistent)
REPORTS: dict[str, dict] = {}

HANDSHAKE_TIMEOUT_S = 10.0
EMIT_INTERVAL_S = 0.5
ANALYSIS_FRAME_SAMPLES = 2048


def _available(adapter) -> bool:
    try:
        return bool(adapter is not None and adapter.probe())
    except Exception:
        return False


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/probe")
def probe():
    return {
        "classifier": _available(CLASSIFIER),
        "voice_coach": _available(COACH),
        "transcriber": _available(TRANSCRIBER),
    }


class WebSocketCapture:
    """Capture handshake for a browser client.

    The client opens its microphone first and then sends
    {"type": "start", "sample_rate": 16000, "lang": "auto"}; a start message
    carrying "error" (e.g. permission denied) means no audio is coming.
    """

    def __init__(self, ws: WebSocket, timeout_s: float = HANDSHAKE_TIMEOUT_S) -> None:
        self.ws = ws
        self.timeout_s = timeout_s
        self.sample_rate = settings.sample_rate
        self.lang = None
        self.closed = False

    async def open(self) -> None:
        try:
            msg = await asyncio.wait_for(self.ws.receive_json(), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise ResourceAcquisitionFailure("no start message from client") from e
        if not isinstance(msg, dict) or msg.get("type") != "start":
            raise ResourceAcquisitionFailure("expected a start message")
        if msg.get("error"):
            raise ResourceAcquisitionFailure(f"client capture failed: {msg['error']}")
        raw_rate = msg.get("sample_rate")
        try:
            sample_rate = settings.sample_rate if raw_rate is None else int(raw_rate)
        except (TypeError, ValueError) as e:
            raise ResourceAcquisitionFailure(f"invalid sample_rate {raw_rate!r}") from e
        if sample_rate <= 0:
            raise ResourceAcquisitionFailure(f"invalid sample_rate {sample_rate}")
        self.sample_rate = sample_rate
        self.lang = msg.get("lang")

    def close(self) -> None:
        self.closed = True


class WebSocketActions(GuardActions):
    """Forwards alert actions to the client as JSON commands."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        self._lock = asyncio.Lock()

    async def send(self, payload: dict) -> None:
        async with self._lock:
            await self.ws.send_json(payload)

    async def alert(self) -> None:
        await self.send({"action": "alert"})

    async def say(self, text: str, lang: Lang) -> None:
        await self.send({"action": "say", "text": text, "lang": lang.value, "bcp47": lang.bcp47})

    async def play_audio(self, audio: bytes, text: str, lang: Lang) -> None:
        await self.send({
            "action": "play_audio",
            "mime": "audio/mpeg",
            "audio_b64": base64.b64encode(audio).decode("ascii"),
            "text": text,
            "lang": lang.value,
        })

    async def mute_microphone(self) -> bool:
        await self.send({"action": "mute"})
        return True

    async def unmute_microphone(self) -> None:
        await self.send({"action": "unmute"})

    async def hangup(self) -> None:
        await self.send({"action": "hangup"})

    async def high_risk(self, risk: int, reasons: list[str]) -> None:
        await self.send({"action": "high_risk", "risk": risk, "reasons": reasons})


async def handle_control(guard: CallGuard, msg: dict) -> bool:
    """Apply one JSON control message. Returns False when the client asks to stop."""
    kind = msg.get("type")
    if kind == "transcript":
        channel = msg.get("channel", Channel.LOCAL.value)
        text = str(msg.get("text") or "")
        if msg.get("final", True):
            guard.on_transcript_final(channel, text)
        else:
            guard.on_transcript_partial(channel, text)
    elif kind == "lang":
        guard.set_language(msg.get("lang"))
    elif kind == "unmute":
        await guard.unmute_microphone()
    elif kind == "stop":
        return False
    else:
        logger.debug("ignoring control message %r", kind)
    return True


@app.websocket("/ws/audio")
async def ws_audio(ws: WebSocket):
    await ws.accept()
    session_id = str(uuid.uuid4())
    actions = WebSocketActions(ws)
    guard = CallGuard(
        settings,
        classifier=CLASSIFIER,
        coach=COACH,
        transcriber=TRANSCRIBER,
        actions=actions,
    )
    capture = WebSocketCapture(ws)
    try:
        await guard.start(capture=capture, session_id=session_id)
    except ResourceAcquisitionFailure as e:
        logger.warning("session not started: %s", e)
        try:
            await ws.send_json({"ok": False, "error": str(e)})
            await ws.close(code=1011)
        except Exception:
            pass
        return
    if capture.lang:
        guard.set_language(capture.lang)
    sample_rate = capture.sample_rate
    analysis = ChunkAccumulator(ANALYSIS_FRAME_SAMPLES / sample_rate, sample_rate)
    await actions.send({"ok": True, "session_id": session_id})

    last_rx_level = 0.0
    frames_received = 0
    first_frame_logged = False

    async def emit_loop():
        # Emit status every 500ms
        while True:
            await asyncio.sleep(EMIT_INTERVAL_S)
            try:
                payload = guard.snapshot()
                payload.update({
                    "tick": True,
                    "rx_level": float(last_rx_level),
                    "frames_received": int(frames_received),
                })
                await actions.send(payload)
            except Exception:
                logger.debug("status emit failed", exc_info=True)

    emit_task = asyncio.create_task(emit_loop())
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data is not None:
                # PCM16LE mono frames at the negotiated sample rate
                samples = pcm16le_bytes_to_float32(data)
                if samples.size > 0:
                    last_rx_level = float(np.sqrt(float(np.mean(np.square(samples)))) + 1e-9)
                    if not first_frame_logged and last_rx_level > 0:
                        logger.info("received first audio frame (rms=%.6f)", last_rx_level)
                        first_frame_logged = True
                    frames_received += 1
                # Re-frame to fixed-size blocks for the estimator
                analysis.push(samples)
                while analysis.ready():
                    guard.on_audio_frame(analysis.take(ANALYSIS_FRAME_SAMPLES), sample_rate)
                guard.on_remote_audio(samples, sample_rate)
                continue
            text = message.get("text")
            if text is None:
                continue
            try:
                msg = json.loads(text)
            except ValueError:
                logger.debug("ignoring non-JSON text frame")
                continue
            if isinstance(msg, dict) and not await handle_control(guard, msg):
                break
    finally:
        emit_task.cancel()
        try:
            await emit_task
        except (asyncio.CancelledError, Exception):
            pass
        final = guard.stop()
        if final is not None:
            REPORTS[session_id] = build_report(final)


@app.get("/report/{session_id}")
def get_report(session_id: str):
    report = REPORTS.get(session_id)
    if not report:
        return JSONResponse(status_code=404, content={"error": "not found"})
    return report


@app.get("/report/{session_id}/markdown")
def get_report_markdown(session_id: str):
    report = REPORTS.get(session_id)
    if not report:
        return JSONResponse(status_code=404, content={"error": "not found"})
    return PlainTextResponse(build_report_markdown(report), media_type="text/markdown")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="127.0.0.1", port=8000)
