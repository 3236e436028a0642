from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np


MIN_SAMPLES = 512
MIN_RMS = 0.01
PITCH_SEARCH_HZ = (80.0, 400.0)
PITCH_VALID_HZ = (60.0, 500.0)
# Leading share of the frame counted as "low" energy by the flatness proxy.
LOW_BAND_SHARE = 0.2


@dataclass
class CloneMetrics:
    pitch_hz: float
    jitter_ratio: float
    zero_crossing_rate: float
    flatness: float
    low_variance_voicing: float
    clone_likelihood: float


def _as_float32(samples) -> np.ndarray:
    x = np.asarray(samples, dtype=np.float32)
    if x.ndim != 1:
        x = x.reshape(-1)
    return x


def detect_pitch(buf: np.ndarray, sample_rate: int) -> float:
    """Naive autocorrelation pitch in Hz, or 0.0 when silent/unvoiced.

    A lag is only taken when its correlation is rising from the previous lag,
    which keeps the search off the flank of the zero-lag peak.
    """
    size = buf.shape[0]
    if size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(buf, dtype=np.float64))))
    if rms < MIN_RMS:
        return 0.0
    min_lag = int(sample_rate // PITCH_SEARCH_HZ[1])
    max_lag = min(int(sample_rate // PITCH_SEARCH_HZ[0]), size - 1)
    x = buf.astype(np.float64, copy=False)
    best_lag = -1
    best_corr = 0.0
    last_corr = 1.0
    for lag in range(max(1, min_lag), max_lag + 1):
        corr = float(np.dot(x[: size - lag], x[lag:])) / (size - lag)
        if corr > best_corr and corr > last_corr:
            best_corr = corr
            best_lag = lag
        last_corr = corr
    if best_lag == -1:
        return 0.0
    freq = sample_rate / best_lag
    if freq < PITCH_VALID_HZ[0] or freq > PITCH_VALID_HZ[1]:
        return 0.0
    return float(freq)


def zero_crossing_rate(buf: np.ndarray) -> float:
    if buf.shape[0] == 0:
        return 0.0
    signs = buf >= 0
    return float(np.count_nonzero(signs[1:] != signs[:-1])) / buf.shape[0]


def flatness_proxy(buf: np.ndarray) -> float:
    """Share of absolute amplitude outside the leading 20% of the frame.

    Time-domain stand-in for spectral flatness; no transform is taken.
    """
    mags = np.abs(buf.astype(np.float64, copy=False))
    split = int(math.ceil(buf.shape[0] * LOW_BAND_SHARE))
    low = float(mags[:split].sum())
    high = float(mags[split:].sum())
    return min(1.0, max(0.0, high / (low + high + 1e-6)))


def estimate(samples, sample_rate: int) -> Optional[CloneMetrics]:
    """Heuristic synthetic-voice metrics for one audio frame.

    Returns None when the frame is shorter than MIN_SAMPLES. Not a deepfake
    detector: steady pitch, mid-low ZCR and a flat energy profile merely look
    "robotic".
    """
    if samples is None:
        return None
    buf = _as_float32(samples)
    if buf.shape[0] < MIN_SAMPLES or sample_rate <= 0:
        return None
    buf = np.nan_to_num(buf, nan=0.0, posinf=0.0, neginf=0.0)

    pitch = detect_pitch(buf, sample_rate)
    zcr = zero_crossing_rate(buf)
    flatness = flatness_proxy(buf)

    mid = buf.shape[0] // 2
    p1 = detect_pitch(buf[:mid], sample_rate) or pitch
    p2 = detect_pitch(buf[mid:], sample_rate) or pitch
    jitter = abs(p1 - p2) / pitch if pitch > 0 else 1.0

    variance = float(np.var(buf, dtype=np.float64))
    low_var = max(0.0, min(1.0, 1.0 - math.tanh(variance * 50.0)))

    likelihood = (
        0.45 * (1.0 - min(1.0, jitter))
        + 0.35 * max(0.0, flatness - 0.4)
        + 0.20 * max(0.0, 0.3 - abs(zcr - 0.1))
    )
    return CloneMetrics(
        pitch_hz=pitch,
        jitter_ratio=jitter,
        zero_crossing_rate=zcr,
        flatness=flatness,
        low_variance_voicing=low_var,
        clone_likelihood=min(1.0, max(0.0, likelihood)),
    )
