from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from openai import AsyncOpenAI

from pipeline.errors import ConfigurationUnavailable, TransientAdapterFailure
from pipeline.language import Lang


MAX_REASONS = 4

SYSTEM_PROMPT = " ".join(
    [
        "You detect scam intent in call transcripts.",
        "Return a JSON object with fields: scam_score (0..1), top_reasons (array of short strings).",
        "Be language-aware: English, Spanish, French, German.",
        "Indicators: urgency, identity verification, gift cards/crypto/wire, code-sharing, do not hang up,"
        " remote-access apps, banking/card details, trading/broker credentials.",
        "If uncertain, return a low score.",
    ]
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class ClassifierResult:
    score: float
    reasons: List[str]
    model: str


def parse_classifier_output(content: str, model: str) -> ClassifierResult:
    """Pull the first JSON object out of a model reply.

    Missing or malformed fields degrade to score 0 / no reasons.
    """
    score = 0.0
    reasons: List[str] = []
    match = _JSON_OBJECT.search(content or "")
    if match:
        try:
            data = json.loads(match.group(0))
        except ValueError:
            data = {}
        if isinstance(data, dict):
            try:
                score = float(data.get("scam_score", 0.0) or 0.0)
            except (TypeError, ValueError):
                score = 0.0
            if score != score:  # NaN
                score = 0.0
            raw = data.get("top_reasons")
            if isinstance(raw, list):
                reasons = [str(r) for r in raw[:MAX_REASONS]]
    return ClassifierResult(score=max(0.0, min(1.0, score)), reasons=reasons, model=model)


class OpenAIClassifier:
    """Semantic scam classifier backed by the OpenAI Responses API."""

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini", client=None) -> None:
        self.model = model
        self._logger = logging.getLogger("callguard")
        self._client = client
        if self._client is None and api_key:
            self._client = AsyncOpenAI(api_key=api_key)

    def probe(self) -> bool:
        return self._client is not None

    async def classify(self, text: str, lang=Lang.EN) -> ClassifierResult:
        if self._client is None:
            raise ConfigurationUnavailable("classifier: OPENAI_API_KEY not set")
        lang = Lang.parse(lang)
        prompt = (
            f"Lang: {lang.value}\nText: {text}\n"
            'Respond ONLY with JSON like {"scam_score":0.42,"top_reasons":["reason1","reason2"]}'
        )
        try:
            resp = await self._client.responses.create(
                model=self.model,
                instructions=SYSTEM_PROMPT,
                input=prompt,
            )
            content = resp.output_text
        except Exception as e:
            raise TransientAdapterFailure(f"classifier call failed: {e}") from e
        return parse_classifier_output(content, model=f"openai:{self.model}")
