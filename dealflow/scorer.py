"""Assessment engine: one LLM call, defensive decoding, deterministic aggregation.

Architecture
------------
``generate_assessment`` runs a fixed sequence for one company:

1. **Prompt**: :mod:`dealflow.prompts` renders the screening or full template.
2. **Completion**: :class:`dealflow.llm.LLMClient` returns raw text and token counts.
3. **Parse**: :func:`dealflow.parsing.parse_structured_response` recovers JSON.
4. **Decode**: :func:`decode_assessment` splits the payload into content,
   per-dimension scores and the recommendation.  Missing required keys raise
   :class:`AssessmentShapeError`.
5. **Aggregate**: :func:`compute_overall_score` applies the fixed weights:

   ========== ======
   market      0.20
   team        0.25
   product     0.20
   traction    0.15
   financials  0.10
   competitive 0.10
   ========== ======

   Dimensions without a valid score are skipped and the remaining weights are
   renormalized, so an incomplete response is not dragged towards zero.
   Halves round up.

Semantic anomalies (scores outside 0-100, unknown recommendation labels) are
logged and kept in the stored payload; out-of-range scores do not count
towards the overall score.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Sequence

from dealflow.llm import LLMClient
from dealflow.parsing import parse_structured_response
from dealflow.prompts import (
    DIMENSIONS,
    RECOMMENDATIONS,
    CompanyProfile,
    DocumentExcerpt,
    build_assessment_prompt,
)
from dealflow.utils import round_half_up

log = logging.getLogger(__name__)

DIMENSION_WEIGHTS: dict[str, float] = {
    "market": 0.20,
    "team": 0.25,
    "product": 0.20,
    "traction": 0.15,
    "financials": 0.10,
    "competitive": 0.10,
}

ASSESSMENT_KINDS = ("screening", "full")

_SCREENING_FIELDS = ("summary", "keyHighlights", "redFlags", "quickTake", "recommendedNextSteps")


class AssessmentShapeError(ValueError):
    """Parsed model output lacks a key the assessment needs."""


# ---------------------------------------------------------------------------
# Decoded types
# ---------------------------------------------------------------------------


@dataclass
class DimensionScore:
    score: float | None
    reasoning: str = ""
    strengths: list[str] = field(default_factory=list)
    concerns: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return valid_score(self.score)

    @classmethod
    def from_payload(cls, raw: Any) -> DimensionScore:
        if not isinstance(raw, Mapping):
            return cls(score=None)
        return cls(
            score=raw.get("score"),
            reasoning=str(raw.get("reasoning") or ""),
            strengths=_str_list(raw.get("strengths")),
            concerns=_str_list(raw.get("concerns")),
        )


@dataclass
class Recommendation:
    label: str
    confidence: float | None = None
    reasons: list[str] = field(default_factory=list)
    contingencies: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "recommendation": self.label,
            "confidence": self.confidence,
            "primaryReasons": self.reasons,
        }
        if self.contingencies:
            payload["contingencies"] = self.contingencies
        return payload


@dataclass
class AssessmentRequest:
    kind: str
    company: CompanyProfile
    documents: list[DocumentExcerpt]


@dataclass
class AssessmentResult:
    content: dict[str, Any]
    scores: dict[str, DimensionScore]
    recommendation: Recommendation
    overall_score: int
    processing_time_ms: int
    tokens_used: int
    model: str

    def scores_payload(self) -> dict[str, Any]:
        return {dim: asdict(s) for dim, s in self.scores.items()}


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def valid_score(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # NaN fails both comparisons; huge ints compare without float conversion
    return 0 <= value <= 100


# ---------------------------------------------------------------------------
# Deterministic aggregation
# ---------------------------------------------------------------------------


def compute_overall_score(scores: Mapping[str, DimensionScore | Mapping[str, Any] | None]) -> int:
    """Weighted mean of the valid dimension scores, renormalized over present weights."""
    weighted_sum = 0.0
    total_weight = 0.0
    for dim, weight in DIMENSION_WEIGHTS.items():
        entry = scores.get(dim)
        if isinstance(entry, DimensionScore):
            value = entry.score
        elif isinstance(entry, Mapping):
            value = entry.get("score")
        else:
            value = None
        if not valid_score(value):
            continue
        weighted_sum += value * weight
        total_weight += weight
    if total_weight <= 0:
        return 0
    return int(round_half_up(weighted_sum / total_weight))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_scores(raw: Any) -> dict[str, DimensionScore]:
    if not isinstance(raw, Mapping):
        raise AssessmentShapeError("Assessment response is missing the 'scores' object")
    scores: dict[str, DimensionScore] = {}
    for dim in DIMENSIONS:
        if dim not in raw:
            log.warning("Assessment response has no %s score", dim)
            continue
        score = DimensionScore.from_payload(raw[dim])
        if score.score is not None and not score.is_valid:
            log.warning("Invalid %s score %r excluded from overall score", dim, score.score)
        scores[dim] = score
    return scores


def decode_recommendation(raw: Any) -> Recommendation:
    if not isinstance(raw, Mapping) or "recommendation" not in raw:
        raise AssessmentShapeError("Assessment response is missing the 'recommendation' object")
    label = str(raw.get("recommendation") or "").strip().lower()
    if label not in RECOMMENDATIONS:
        log.warning("Unrecognized recommendation label %r", raw.get("recommendation"))
    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    return Recommendation(
        label=label,
        confidence=confidence,
        reasons=_str_list(raw.get("primaryReasons")),
        contingencies=_str_list(raw.get("contingencies")),
    )


def decode_assessment(kind: str, payload: Any) -> tuple[dict[str, Any], dict[str, DimensionScore], Recommendation]:
    """Split a parsed response into (content, scores, recommendation)."""
    if not isinstance(payload, Mapping):
        raise AssessmentShapeError(f"Assessment response is a {type(payload).__name__}, expected an object")
    if kind == "screening":
        content = {f: payload.get(f) for f in _SCREENING_FIELDS}
    elif kind == "full":
        content = payload.get("content")
        if not isinstance(content, Mapping):
            raise AssessmentShapeError("Full assessment response is missing the 'content' object")
        content = dict(content)
    else:
        raise ValueError(f"Unknown assessment kind: {kind!r}")
    return content, decode_scores(payload.get("scores")), decode_recommendation(payload.get("recommendation"))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def generate_assessment(
    request: AssessmentRequest,
    client: LLMClient,
    char_limit: int | None = None,
) -> AssessmentResult:
    """Prompt → completion → parse → decode → aggregate for one company."""
    started = time.monotonic()
    prompt = build_assessment_prompt(request.kind, request.company, request.documents, char_limit)
    completion = await client.complete(request.kind, prompt)
    payload = parse_structured_response(completion.text)
    content, scores, recommendation = decode_assessment(request.kind, payload)
    overall = compute_overall_score(scores)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    return AssessmentResult(
        content=content,
        scores=scores,
        recommendation=recommendation,
        overall_score=overall,
        processing_time_ms=elapsed_ms,
        tokens_used=completion.tokens_used,
        model=completion.model,
    )


def documents_from_rows(rows: Sequence[Any]) -> list[DocumentExcerpt]:
    """Map Document rows to prompt excerpts."""
    return [
        DocumentExcerpt(
            file_name=row.file_name,
            classification=row.classification or "other",
            extracted_text=row.extracted_text or "",
        )
        for row in rows
    ]


def company_profile(company: Any) -> CompanyProfile:
    return CompanyProfile(
        name=company.name,
        stage=company.stage,
        sector=company.sector,
        raise_amount=company.raise_amount,
        valuation=company.valuation,
        description=company.description,
        website=company.website,
    )
