from __future__ import annotations

import io
import wave
from typing import List

import numpy as np


def pcm16le_bytes_to_float32(data: bytes) -> np.ndarray:
    if not data:
        return np.zeros(0, dtype=np.float32)
    # Drop a dangling odd byte rather than fail on a torn frame
    usable = len(data) - (len(data) % 2)
    arr = np.frombuffer(data[:usable], dtype=np.int16)
    # Normalize to [-1, 1]
    return (arr.astype(np.float32) / 32768.0).astype(np.float32)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample of mono float32 audio."""
    x = np.asarray(samples, dtype=np.float32).reshape(-1)
    if src_rate == dst_rate or x.shape[0] == 0:
        return x
    if src_rate <= 0 or dst_rate <= 0:
        raise ValueError("sample rates must be > 0")
    n_out = int(round(x.shape[0] * float(dst_rate) / float(src_rate)))
    if n_out <= 0:
        return np.zeros(0, dtype=np.float32)
    src_t = np.arange(x.shape[0], dtype=np.float64) / src_rate
    dst_t = np.arange(n_out, dtype=np.float64) / dst_rate
    return np.interp(dst_t, src_t, x).astype(np.float32)


def float32_to_wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode mono float32 samples as a 16-bit PCM WAV file in memory."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    pcm = (clipped * 32767.0).astype(np.int16)
    out = io.BytesIO()
    with wave.open(out, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm.tobytes())
    return out.getvalue()


class ChunkAccumulator:
    """Collects streamed mono float32 frames into fixed-duration chunks.

    - push() appends a frame; frames are kept as-is until drained.
    - ready() is True once at least chunk_seconds of audio is held.
    - drain() returns everything held as one contiguous array and empties
      the accumulator.
    """

    def __init__(self, chunk_seconds: float, sample_rate: int) -> None:
        if chunk_seconds <= 0:
            raise ValueError("chunk_seconds must be > 0")
        self.sample_rate = int(sample_rate)
        self.chunk_samples = int(round(chunk_seconds * self.sample_rate))
        self._frames: List[np.ndarray] = []
        self._size = 0

    def push(self, samples: np.ndarray) -> None:
        if samples is None:
            return
        x = np.asarray(samples, dtype=np.float32).reshape(-1)
        if x.shape[0] == 0:
            return
        self._frames.append(x)
        self._size += x.shape[0]

    def ready(self) -> bool:
        return self._size >= self.chunk_samples

    def drain(self) -> np.ndarray:
        if not self._frames:
            return np.zeros(0, dtype=np.float32)
        out = np.concatenate(self._frames).astype(np.float32, copy=False)
        self.clear()
        return out

    def take(self, n: int) -> np.ndarray:
        """Remove and return exactly the oldest n samples (empty if fewer held)."""
        n = int(n)
        if n <= 0 or self._size < n:
            return np.zeros(0, dtype=np.float32)
        held = np.concatenate(self._frames).astype(np.float32, copy=False)
        rest = held[n:]
        self._frames = [rest] if rest.shape[0] else []
        self._size = rest.shape[0]
        return held[:n]

    def clear(self) -> None:
        self._frames = []
        self._size = 0

    def size(self) -> int:
        return self._size
