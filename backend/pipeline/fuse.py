from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

from pipeline.clone import CloneMetrics


# Smoothing constants are empirical; tune freely.
CLONE_KEEP = 0.85  # per-frame acoustic suspicion, fast decay
LOCAL_KEEP = 0.3  # local lexical score dominates on each transcript
REMOTE_KEEP = 0.6  # classifier arrives late, weigh it less
SCAM_WEIGHT = 0.65
CLONE_WEIGHT = 0.35


def pct(value: float) -> int:
    """Round half up and clamp to 0..100."""
    return int(max(0, min(100, math.floor(value + 0.5))))


def smooth(previous: float, value: float, keep: float) -> int:
    return pct(previous * keep + value * (1.0 - keep))


def clone_suspicion(metrics: CloneMetrics) -> int:
    raw = 100.0 * (
        0.6 * metrics.clone_likelihood
        + 0.25 * (1.0 - min(1.0, abs(metrics.jitter_ratio)))
        + 0.15 * metrics.flatness
    )
    return pct(raw)


def overall_risk(scam_score: float, clone_score: float) -> int:
    return pct(SCAM_WEIGHT * scam_score + CLONE_WEIGHT * clone_score)


def risk_label(risk: float) -> str:
    if risk < 35:
        return "SAFE"
    if risk < 65:
        return "SUSPICIOUS"
    return "SCAM"


@dataclass
class FusionResult:
    risk: int
    label: str
    rationale: str
    reasons: List[str]


def fuse_scores(scam: int, clone: int, reasons: List[str]) -> FusionResult:
    risk = overall_risk(scam, clone)
    rationale_parts: List[str] = []
    if scam > 0:
        rationale_parts.append(f"scam={scam}")
    if clone > 0:
        rationale_parts.append(f"clone={clone}")
    rationale = ", ".join(rationale_parts) if rationale_parts else "baseline"
    return FusionResult(risk=risk, label=risk_label(risk), rationale=rationale, reasons=reasons)


def crossed_up(previous: float, current: float, threshold: float) -> bool:
    """Edge trigger: True only on previous < threshold <= current.

    Staying above the threshold never re-fires; the value has to drop below
    and cross again.
    """
    return previous < threshold <= current
