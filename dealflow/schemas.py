"""Pydantic request/response schemas for the Dealflow API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

VoteValue = Literal["strong_yes", "yes", "neutral", "no", "strong_no"]


# ---------------------------------------------------------------------------
# Companies & documents
# ---------------------------------------------------------------------------


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=300)
    stage: str | None = None
    sector: str | None = None
    raise_amount: float | None = None
    valuation: float | None = None
    description: str | None = None
    website: str | None = None


class CompanyOut(CompanyCreate):
    id: int
    document_count: int = 0


class DocumentCreate(BaseModel):
    file_name: str = Field(min_length=1, max_length=500)
    classification: str | None = None
    extracted_text: str | None = None


class DocumentOut(BaseModel):
    id: int
    company_id: int
    file_name: str
    classification: str | None = None
    extracted: bool
    processed_at: str | None = None


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


class AssessmentCreate(BaseModel):
    company_id: int
    kind: Literal["screening", "full"] = "screening"


class AssessmentAccepted(BaseModel):
    id: int
    status: str
    message: str


class AssessmentOut(BaseModel):
    id: int
    company_id: int
    company_name: str | None = None
    kind: str
    status: str
    recommendation: str | None = None
    overall_score: int | None = None
    processing_time_ms: int | None = None
    created_at: str | None = None
    completed_at: str | None = None


class AssessmentDetail(AssessmentOut):
    content: dict[str, Any] | None = None
    scores: dict[str, Any] | None = None
    recommendation_detail: dict[str, Any] | None = None
    confidence: float | None = None
    tokens_used: int | None = None
    llm_model: str | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Voting
# ---------------------------------------------------------------------------


class RoundCreate(BaseModel):
    assessment_id: int
    deadline: datetime
    participant_ids: list[int] = Field(min_length=1)
    quorum_percentage: int = Field(50, ge=1, le=100)
    title: str | None = Field(None, max_length=255)


class RoundUpdate(BaseModel):
    """Fields left out of the request body stay unchanged."""

    title: str | None = Field(None, max_length=255)
    deadline: datetime | None = None
    quorum_percentage: int | None = Field(None, ge=1, le=100)


class VoteIn(BaseModel):
    vote: VoteValue
    comment: str | None = Field(None, max_length=2000)

    @field_validator("comment")
    @classmethod
    def blank_comment_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class VoteOut(BaseModel):
    id: int
    round_id: int
    voter_id: int
    vote: str
    comment: str | None = None


class BallotOut(BaseModel):
    voter_id: int | None = None
    voter_name: str | None = None
    vote: str | None = None
    comment: str | None = None
    is_own: bool = False


class RoundOut(BaseModel):
    id: int
    assessment_id: int
    title: str | None = None
    status: str
    deadline: str | None = None
    quorum_percentage: int
    revealed_at: str | None = None
    created_by: int
    is_revealed: bool
    is_participant: bool
    user_has_voted: bool
    total_participants: int
    votes_submitted: int
    votes: list[BallotOut] = []


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatThreadCreate(BaseModel):
    company_id: int
    title: str | None = Field(None, max_length=300)


class ChatThreadOut(BaseModel):
    id: int
    company_id: int
    title: str
    message_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None


class ChatMessageIn(BaseModel):
    content: str = Field(min_length=1)


class CitationOut(BaseModel):
    source: str
    text: str


class ChatMessageOut(BaseModel):
    id: int
    role: str
    content: str
    citations: list[CitationOut] = []
    created_at: str | None = None


class ChatExchangeOut(BaseModel):
    user_message: ChatMessageOut
    assistant_message: ChatMessageOut


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageOut(BaseModel):
    org_id: int
    assessments_used_this_month: int
    usage_records: int
    tokens_used: int
