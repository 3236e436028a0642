from __future__ import annotations

from typing import List

from pipeline.fuse import overall_risk, risk_label


TRANSCRIPT_TAIL = 1000
MAX_EVIDENCE = 12

RECOMMENDATIONS = (
    "Do not share OTPs, account, or card details over calls.",
    "Hang up and call the institution back using an official number.",
    "Do not install remote access tools on request.",
)


def build_report(state) -> dict:
    """Structured record of a finished session (see SessionState)."""
    risk = overall_risk(state.scam_score, state.clone_score)
    return {
        "session_id": state.session_id,
        "started_at": state.started_at.isoformat() if state.started_at else None,
        "ended_at": state.ended_at.isoformat() if state.ended_at else None,
        "language": state.lang.value,
        "overall_risk": risk,
        "label": risk_label(risk),
        "scam_score": state.scam_score,
        "clone_score": state.clone_score,
        "alerts_fired": state.alerts_fired,
        "muted_by_guard": state.muted_by_guard,
        "reasons": state.reasons(),
        "evidence": list(state.evidence[:MAX_EVIDENCE]),
        "transcript": state.combined_transcript()[-TRANSCRIPT_TAIL:],
    }


def build_report_markdown(report: dict) -> str:
    lines: List[str] = []
    lines.append("# Call Guard Report")
    lines.append("")
    lines.append(f"- Started: {report.get('started_at') or ''}")
    lines.append(f"- Ended: {report.get('ended_at') or ''}")
    lines.append(f"- Language: {str(report.get('language', '')).upper()}")
    lines.append(f"- Overall Risk: {report['overall_risk']}% ({report['label']})")
    lines.append(f"- Scam Intent: {report['scam_score']}%")
    lines.append(f"- Synthetic Voice Likelihood: {report['clone_score']}%")
    lines.append("")
    lines.append("## Why this call was flagged")
    if report["reasons"]:
        for r in report["reasons"]:
            lines.append(f"- {r}")
    else:
        lines.append("- No specific reasons captured (heuristic only).")
    if report["evidence"]:
        lines.append("")
        lines.append("## Evidence snippets")
        for e in report["evidence"][:MAX_EVIDENCE]:
            lines.append(f"- [{e['category']}] “…{e['snippet']}…”")
    lines.append("")
    lines.append("## Recommendations")
    for rec in RECOMMENDATIONS:
        lines.append(f"- {rec}")
    lines.append("")
    lines.append(f"## Transcript (last {TRANSCRIPT_TAIL} chars)")
    lines.append("```")
    lines.append(report["transcript"][-TRANSCRIPT_TAIL:])
    lines.append("```")
    lines.append("")
    return "\n".join(lines)
