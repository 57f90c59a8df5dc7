"""Prompt builder: renders a company profile and its documents into LLM prompts.

Two assessment variants share one layout:

- **screening**, a quick review: summary, highlights, red flags, quick take,
  next steps, six dimension scores and a recommendation.
- **full**, an investment memo: a ``content`` object with the structured memo
  sections, followed by the same scores and recommendation block.

Both end with the scoring bands, the recommendation semantics, and an
instruction to answer with a JSON object only.  That textual contract is what
:func:`dealflow.parsing.parse_structured_response` relies on.

Every builder here is a pure function of its inputs.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Sequence

NOT_SPECIFIED = "Not specified"

DIMENSIONS = ("market", "team", "product", "traction", "financials", "competitive")
RECOMMENDATIONS = ("strong_conviction", "proceed", "conditional", "pass")


@dataclass(frozen=True)
class CompanyProfile:
    name: str
    stage: str | None = None
    sector: str | None = None
    raise_amount: float | None = None
    valuation: float | None = None
    description: str | None = None
    website: str | None = None


@dataclass(frozen=True)
class DocumentExcerpt:
    file_name: str
    classification: str = "other"
    extracted_text: str = ""

    def truncated(self, limit: int | None) -> DocumentExcerpt:
        if limit is None or len(self.extracted_text) <= limit:
            return self
        return DocumentExcerpt(self.file_name, self.classification, self.extracted_text[:limit])


# ---------------------------------------------------------------------------
# Shared blocks
# ---------------------------------------------------------------------------

_SCREENING_ROLE = """\
You are an experienced venture capital analyst conducting a screening assessment \
of a startup investment opportunity. Your task is to provide a quick but thorough \
initial analysis."""

_FULL_ROLE = """\
You are a senior venture capital partner conducting a comprehensive due diligence \
assessment of a startup investment opportunity. Your analysis will be used by \
investment committee members to make funding decisions."""

_SCREENING_TASK = """\
## Your Task
Analyze the provided materials and generate a screening assessment. Be direct, \
specific, and evidence-based. Reference specific data points from the documents."""

_FULL_TASK = """\
## Your Task
Generate a comprehensive investment memo based on the provided materials. Be \
thorough, analytical, and evidence-based. Reference specific data points and \
metrics from the documents. Note any gaps in information that would typically \
be expected."""


def _dimension_schema(reasoning: str, strengths: str, concerns: str) -> str:
    lines = []
    for dim in DIMENSIONS:
        lines.append(
            f'    "{dim}": {{\n'
            f'      "score": <0-100>,\n'
            f'      "reasoning": "{reasoning}",\n'
            f'      "strengths": ["{strengths}"],\n'
            f'      "concerns": ["{concerns}"]\n'
            f"    }}"
        )
    return '  "scores": {\n' + ",\n".join(lines) + "\n  }"


_RECOMMENDATION_LABELS = " | ".join(f'"{r}"' for r in RECOMMENDATIONS)

_SCREENING_SCHEMA = (
    "{\n"
    '  "summary": "A 2-3 sentence executive summary of the opportunity",\n'
    '  "keyHighlights": ["3-5 most compelling positive aspects"],\n'
    '  "redFlags": ["Any concerning issues or missing information"],\n'
    '  "quickTake": "Your overall impression in 1-2 sentences",\n'
    '  "recommendedNextSteps": ["What should be done next if proceeding"],\n'
    + _dimension_schema("Brief explanation", "Key strengths", "Key concerns") + ",\n"
    '  "recommendation": {\n'
    f'    "recommendation": {_RECOMMENDATION_LABELS},\n'
    '    "confidence": <0-100>,\n'
    '    "primaryReasons": ["Top 3 reasons for this recommendation"]\n'
    "  }\n"
    "}"
)

_FULL_CONTENT_SCHEMA = """\
  "content": {
    "executiveSummary": "3-4 paragraph comprehensive summary of the investment opportunity",
    "companyOverview": {
      "description": "Detailed company description",
      "stage": "Current company stage with context",
      "sector": "Sector and subsector analysis",
      "businessModel": "How the company makes money"
    },
    "marketAnalysis": {
      "marketSize": "TAM/SAM/SOM analysis with numbers if available",
      "marketTrends": ["Key trends affecting this market"],
      "targetCustomer": "ICP and customer segment analysis",
      "marketPosition": "Where company sits in the market"
    },
    "teamAnalysis": {
      "founderBackground": "Founder backgrounds and relevant experience",
      "teamStrengths": ["What the team does well"],
      "teamGaps": ["Missing capabilities or roles"],
      "advisors": "Advisory board and notable backers"
    },
    "productAnalysis": {
      "productDescription": "What the product does",
      "valueProposition": "Core value prop and differentiation",
      "productStage": "Current development stage",
      "technicalMoat": "Technical advantages or IP",
      "roadmap": ["Upcoming product milestones"]
    },
    "tractionAnalysis": {
      "currentMetrics": {"metric_name": "value"},
      "growthTrajectory": "Growth rate and trajectory analysis",
      "customerFeedback": "Customer satisfaction and retention data",
      "partnerships": ["Notable partnerships or customers"]
    },
    "financialAnalysis": {
      "revenueModel": "How revenue is generated",
      "unitEconomics": "CAC, LTV, margins analysis",
      "burnRate": "Monthly burn and efficiency",
      "runway": "Current runway",
      "fundingHistory": "Previous funding rounds",
      "useOfFunds": ["How the raise will be deployed"]
    },
    "competitiveAnalysis": {
      "competitors": [
        {"name": "Competitor name", "comparison": "How they compare"}
      ],
      "differentiators": ["Key competitive advantages"],
      "defensibility": "Moat and barriers to entry"
    },
    "riskAssessment": {
      "keyRisks": [
        {"risk": "Risk description", "severity": "low|medium|high", "mitigation": "How to mitigate"}
      ]
    },
    "investmentThesis": {
      "bullCase": ["Reasons this could be a great investment"],
      "bearCase": ["Reasons for concern"],
      "keyQuestions": ["Questions for founders/further diligence"]
    },
    "conclusion": "Final assessment and recommendation rationale"
  }"""

_FULL_SCHEMA = (
    "{\n"
    + _FULL_CONTENT_SCHEMA + ",\n"
    + _dimension_schema("Detailed explanation with evidence", "Specific strengths", "Specific concerns") + ",\n"
    '  "recommendation": {\n'
    f'    "recommendation": {_RECOMMENDATION_LABELS},\n'
    '    "confidence": <0-100>,\n'
    '    "primaryReasons": ["Top 3-5 reasons for this recommendation"],\n'
    '    "contingencies": ["If conditional, what needs to be true"]\n'
    "  }\n"
    "}"
)

_SCREENING_GUIDELINES = """\
Guidelines for scoring:
- 80-100: Exceptional, best-in-class
- 60-79: Strong, above average
- 40-59: Average, some concerns
- 20-39: Below average, significant concerns
- 0-19: Poor, major red flags

Guidelines for recommendation:
- strong_conviction: Exceptional opportunity, move quickly
- proceed: Good opportunity, worth pursuing
- conditional: Promising but needs more diligence on specific areas
- pass: Does not meet investment criteria"""

_FULL_GUIDELINES = """\
Guidelines for scoring:
- 80-100: Exceptional, best-in-class for stage
- 60-79: Strong, above average
- 40-59: Average, some concerns
- 20-39: Below average, significant concerns
- 0-19: Poor, major red flags or missing critical information

Guidelines for recommendation:
- strong_conviction: Exceptional opportunity across multiple dimensions, move quickly
- proceed: Solid opportunity that meets investment criteria, proceed to terms
- conditional: Promising but specific concerns need resolution before proceeding
- pass: Does not meet investment criteria, document reasons for future reference

Be specific and reference actual data from the documents. If information is \
missing, note it explicitly and adjust scores accordingly."""

_JSON_ONLY = "Respond ONLY with the JSON object, no additional text."


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _text(value: str | None) -> str:
    return value.strip() if value and value.strip() else NOT_SPECIFIED


def _money(value: float | None) -> str:
    if not value:
        return NOT_SPECIFIED
    if float(value).is_integer():
        return f"${int(value):,}"
    return f"${value:,.2f}"


def render_company_section(company: CompanyProfile) -> str:
    return "\n".join([
        "## Company Information",
        f"- **Name:** {company.name}",
        f"- **Stage:** {_text(company.stage)}",
        f"- **Sector:** {_text(company.sector)}",
        f"- **Raise Amount:** {_money(company.raise_amount)}",
        f"- **Valuation:** {_money(company.valuation)}",
        f"- **Description:** {_text(company.description)}",
        f"- **Website:** {_text(company.website)}",
    ])


def render_documents_section(
    documents: Sequence[DocumentExcerpt], char_limit: int | None = None,
) -> str:
    blocks = []
    for doc in documents:
        doc = doc.truncated(char_limit)
        blocks.append(f"\n### {doc.file_name} ({doc.classification or 'other'})\n{doc.extracted_text}\n")
    return "## Available Documents\n" + "\n---\n".join(blocks)


def _assemble(*parts: str) -> str:
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Assessment prompts
# ---------------------------------------------------------------------------


def build_screening_prompt(
    company: CompanyProfile,
    documents: Sequence[DocumentExcerpt],
    char_limit: int | None = None,
) -> str:
    return _assemble(
        _SCREENING_ROLE,
        render_company_section(company),
        render_documents_section(documents, char_limit),
        _SCREENING_TASK,
        "Respond with a JSON object in this exact format:\n" + _SCREENING_SCHEMA,
        _SCREENING_GUIDELINES,
        _JSON_ONLY,
    )


def build_full_prompt(
    company: CompanyProfile,
    documents: Sequence[DocumentExcerpt],
    char_limit: int | None = None,
) -> str:
    return _assemble(
        _FULL_ROLE,
        render_company_section(company),
        render_documents_section(documents, char_limit),
        _FULL_TASK,
        "Respond with a JSON object in this exact format:\n" + _FULL_SCHEMA,
        _FULL_GUIDELINES,
        _JSON_ONLY,
    )


PROMPT_BUILDERS = {
    "screening": build_screening_prompt,
    "full": build_full_prompt,
}


def build_assessment_prompt(
    kind: str,
    company: CompanyProfile,
    documents: Sequence[DocumentExcerpt],
    char_limit: int | None = None,
) -> str:
    try:
        builder = PROMPT_BUILDERS[kind]
    except KeyError:
        raise ValueError(f"Unknown assessment kind: {kind!r}") from None
    return builder(company, documents, char_limit)


# ---------------------------------------------------------------------------
# Chat system prompt
# ---------------------------------------------------------------------------

_CHAT_ROLE = """\
## Your Role
- Answer questions about the company based on available documents and assessment data
- Provide specific, evidence-based answers
- When referencing information, cite the source document using [Source: document_name]
- Be concise but thorough
- If information isn't available, say so clearly"""

_CHAT_GUIDELINES = """\
## Guidelines
1. Always cite your sources when referencing specific information from documents
2. Be analytical and objective
3. If asked about something not in the documents, clearly state that
4. Provide actionable insights when possible
5. Keep responses focused and relevant to the question"""


def build_chat_system_prompt(
    company: CompanyProfile,
    documents: Sequence[DocumentExcerpt],
    assessment: dict[str, Any] | None = None,
) -> str:
    """System prompt for document Q&A.

    ``assessment`` is the latest completed assessment as a dict with
    ``overall_score``, ``recommendation`` and ``scores``.
    """
    parts = [
        f"You are an AI assistant helping a venture capital investor analyze {company.name}.",
        "\n".join([
            "## Company Information",
            f"- Name: {company.name}",
            f"- Stage: {_text(company.stage)}",
            f"- Sector: {_text(company.sector)}",
            f"- Description: {_text(company.description)}",
        ]),
        _CHAT_ROLE,
    ]
    if documents:
        parts.append("## Available Documents\n" + "\n".join(
            f"\n### {doc.file_name} ({doc.classification or 'document'})\n{doc.extracted_text}"
            for doc in documents
        ))
    if assessment:
        parts.append("\n".join([
            "## Assessment Summary",
            f"- Overall Score: {assessment.get('overall_score')}/100",
            f"- Recommendation: {assessment.get('recommendation')}",
            f"- Key Scores: {json.dumps(assessment.get('scores'), indent=2)}",
        ]))
    parts.append(_CHAT_GUIDELINES)
    return _assemble(*parts)
