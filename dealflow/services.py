"""Shared business logic for the Dealflow API and MCP server.

Functions taking a ``session`` flush but do not commit; the caller commits.
The exceptions are :func:`run_assessment_generation` and
:func:`generate_with_client_factory`, which run detached from any request and
manage their own sessions.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dealflow.chat import generate_chat_answer
from dealflow.db import session_scope
from dealflow.errors import InvalidRequest, NotFoundError, PermissionDenied
from dealflow.llm import LLMClient
from dealflow.models import (
    Assessment,
    ChatMessage,
    ChatThread,
    Company,
    Document,
    Membership,
    Organization,
    RoundParticipant,
    UsageRecord,
    Vote,
    VotingRound,
)
from dealflow.prompts import DocumentExcerpt
from dealflow.scorer import (
    ASSESSMENT_KINDS,
    AssessmentRequest,
    AssessmentResult,
    company_profile,
    documents_from_rows,
    generate_assessment,
)
from dealflow.utils import as_utc, isoformat, json_parse, utcnow
from dealflow import voting

log = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "admin")
TERMINAL_STATUSES = ("completed", "failed")


@dataclass(frozen=True)
class Identity:
    """Caller identity as supplied by the authenticating layer."""
    org_id: int
    user_id: int
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def require_admin(identity: Identity, action: str) -> None:
    if not identity.is_admin:
        raise PermissionDenied(f"Only admins can {action}")


# ---------------------------------------------------------------------------
# Companies & documents
# ---------------------------------------------------------------------------

COMPANY_FIELDS = ("name", "stage", "sector", "raise_amount", "valuation", "description", "website")


def get_company(session: Session, identity: Identity, company_id: int) -> Company:
    company = session.execute(
        select(Company).where(Company.id == company_id, Company.org_id == identity.org_id)
    ).scalars().first()
    if company is None:
        raise NotFoundError("Company not found")
    return company


def create_company(session: Session, identity: Identity, **fields: Any) -> Company:
    company = Company(org_id=identity.org_id, **{f: fields.get(f) for f in COMPANY_FIELDS})
    session.add(company)
    session.flush()
    return company


def add_document(
    session: Session,
    identity: Identity,
    company_id: int,
    file_name: str,
    extracted_text: str | None = None,
    classification: str | None = None,
) -> Document:
    """Register a document whose text was extracted upstream."""
    company = get_company(session, identity, company_id)
    doc = Document(
        file_name=file_name,
        classification=classification,
        extracted_text=extracted_text,
        processed_at=utcnow() if extracted_text else None,
    )
    company.documents.append(doc)
    session.flush()
    return doc


def extracted_documents(session: Session, company_id: int, limit: int | None = None) -> list[Document]:
    query = (
        select(Document)
        .where(
            Document.company_id == company_id,
            Document.processed_at.is_not(None),
            Document.extracted_text.is_not(None),
        )
        .order_by(Document.id)
    )
    if limit:
        query = query.limit(limit)
    return list(session.execute(query).scalars().all())


def company_summary(company: Company) -> dict[str, Any]:
    return {
        "id": company.id,
        **{f: getattr(company, f) for f in COMPANY_FIELDS},
        "document_count": len(company.documents),
    }


def document_summary(doc: Document) -> dict[str, Any]:
    return {
        "id": doc.id,
        "company_id": doc.company_id,
        "file_name": doc.file_name,
        "classification": doc.classification,
        "extracted": doc.extracted_text is not None and doc.processed_at is not None,
        "processed_at": isoformat(doc.processed_at),
    }


# ---------------------------------------------------------------------------
# Assessments: creation and background generation
# ---------------------------------------------------------------------------


def create_assessment(
    session: Session, identity: Identity, company_id: int, kind: str = "screening",
) -> tuple[Assessment, AssessmentRequest]:
    """Validate preconditions and insert a ``processing`` assessment.

    Returns the row and the generation request to hand to
    :func:`run_assessment_generation` once the row is committed.
    """
    if kind not in ASSESSMENT_KINDS:
        raise InvalidRequest("Invalid assessment type")
    company = get_company(session, identity, company_id)
    documents = extracted_documents(session, company.id)
    if not documents:
        raise InvalidRequest("No processed documents available for assessment")

    assessment = Assessment(
        org_id=identity.org_id,
        company_id=company.id,
        created_by=identity.user_id,
        kind=kind,
        status="processing",
    )
    session.add(assessment)
    session.flush()
    request = AssessmentRequest(
        kind=kind,
        company=company_profile(company),
        documents=documents_from_rows(documents),
    )
    return assessment, request


def _load_for_update(session: Session, assessment_id: int, org_id: int) -> Assessment | None:
    assessment = session.execute(
        select(Assessment).where(Assessment.id == assessment_id, Assessment.org_id == org_id)
    ).scalars().first()
    if assessment is None:
        log.warning("Assessment %s vanished during generation; dropping result", assessment_id)
        return None
    if assessment.status in TERMINAL_STATUSES:
        log.warning("Assessment %s already %s; dropping result", assessment_id, assessment.status)
        return None
    return assessment


def complete_assessment(
    session: Session, assessment_id: int, org_id: int, result: AssessmentResult,
) -> bool:
    assessment = _load_for_update(session, assessment_id, org_id)
    if assessment is None:
        return False
    assessment.status = "completed"
    assessment.content_json = json.dumps(result.content)
    assessment.scores_json = json.dumps(result.scores_payload())
    assessment.recommendation = result.recommendation.label
    assessment.recommendation_json = json.dumps(result.recommendation.to_payload())
    assessment.confidence = result.recommendation.confidence
    assessment.overall_score = result.overall_score
    assessment.processing_time_ms = result.processing_time_ms
    assessment.tokens_used = result.tokens_used
    assessment.llm_model = result.model
    assessment.error_message = None
    assessment.completed_at = utcnow()
    session.flush()
    return True


def fail_assessment(session: Session, assessment_id: int, org_id: int, message: str) -> bool:
    assessment = _load_for_update(session, assessment_id, org_id)
    if assessment is None:
        return False
    assessment.status = "failed"
    assessment.overall_score = None
    assessment.error_message = message or "Assessment generation failed"
    session.flush()
    return True


def record_usage(session: Session, org_id: int, assessment_id: int | None, kind: str, tokens_used: int) -> None:
    session.add(UsageRecord(
        org_id=org_id, assessment_id=assessment_id,
        assessment_kind=kind, tokens_used=tokens_used,
    ))
    session.flush()


def increment_monthly_usage(session: Session, org_id: int) -> None:
    """Read-then-write; concurrent completions may under-count."""
    org = session.execute(select(Organization).where(Organization.id == org_id)).scalars().first()
    if org is None:
        return
    org.assessments_used_this_month = (org.assessments_used_this_month or 0) + 1
    session.flush()


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def run_assessment_generation(
    assessment_id: int,
    org_id: int,
    request: AssessmentRequest,
    client: LLMClient,
    char_limit: int | None = None,
) -> None:
    """Background task: generate, then persist ``completed`` or ``failed``.

    Never raises. The only channel back to callers is the stored status.
    """
    log.info("Generating %s assessment %s for %s", request.kind, assessment_id, request.company.name)
    try:
        result = await generate_assessment(request, client, char_limit)
        with session_scope() as session:
            written = complete_assessment(session, assessment_id, org_id, result)
            session.commit()
    except Exception as exc:
        log.warning("Assessment %s failed: %s", assessment_id, exc)
        try:
            with session_scope() as session:
                fail_assessment(session, assessment_id, org_id, _error_message(exc))
                session.commit()
        except Exception:
            log.exception("Could not record failure for assessment %s", assessment_id)
        return

    if not written:
        return
    log.info(
        "Assessment %s completed: overall=%d recommendation=%s tokens=%d",
        assessment_id, result.overall_score, result.recommendation.label, result.tokens_used,
    )
    try:
        with session_scope() as session:
            record_usage(session, org_id, assessment_id, request.kind, result.tokens_used)
            session.commit()
    except Exception as exc:
        log.warning("Usage record failed for assessment %s: %s", assessment_id, exc)
    try:
        with session_scope() as session:
            increment_monthly_usage(session, org_id)
            session.commit()
    except Exception as exc:
        log.warning("Monthly usage increment failed for assessment %s: %s", assessment_id, exc)


async def generate_with_client_factory(
    assessment_id: int,
    org_id: int,
    request: AssessmentRequest,
    client_factory: Callable[[], LLMClient],
    char_limit: int | None = None,
) -> None:
    """Build the completion client, then run :func:`run_assessment_generation`.

    A client that cannot be built (missing API key, unknown provider) fails
    the assessment the same way a provider error would.
    """
    try:
        client = client_factory()
    except Exception as exc:
        log.warning("Could not create LLM client for assessment %s: %s", assessment_id, exc)
        try:
            with session_scope() as session:
                fail_assessment(session, assessment_id, org_id, _error_message(exc))
                session.commit()
        except Exception:
            log.exception("Could not record failure for assessment %s", assessment_id)
        return
    await run_assessment_generation(assessment_id, org_id, request, client, char_limit)


# ---------------------------------------------------------------------------
# Assessments: reads and deletion
# ---------------------------------------------------------------------------


def get_assessment(session: Session, identity: Identity, assessment_id: int) -> Assessment:
    assessment = session.execute(
        select(Assessment).where(Assessment.id == assessment_id, Assessment.org_id == identity.org_id)
    ).scalars().first()
    if assessment is None:
        raise NotFoundError("Assessment not found")
    return assessment


def list_assessments(
    session: Session, identity: Identity, *, company_id: int | None = None, status: str | None = None,
) -> list[Assessment]:
    query = select(Assessment).where(Assessment.org_id == identity.org_id)
    if company_id is not None:
        query = query.where(Assessment.company_id == company_id)
    if status:
        query = query.where(Assessment.status == status)
    return list(session.execute(query.order_by(Assessment.id.desc())).scalars().all())


def delete_assessment(session: Session, identity: Identity, assessment_id: int) -> None:
    assessment = get_assessment(session, identity, assessment_id)
    if assessment.created_by != identity.user_id and not identity.is_admin:
        raise PermissionDenied("Only the creator or an admin can delete this assessment")
    session.delete(assessment)
    session.flush()


def assessment_summary(a: Assessment) -> dict[str, Any]:
    return {
        "id": a.id,
        "company_id": a.company_id,
        "company_name": a.company.name if a.company else None,
        "kind": a.kind,
        "status": a.status,
        "recommendation": a.recommendation,
        "overall_score": a.overall_score,
        "processing_time_ms": a.processing_time_ms,
        "created_at": isoformat(a.created_at),
        "completed_at": isoformat(a.completed_at),
    }


def assessment_detail(a: Assessment) -> dict[str, Any]:
    return {
        **assessment_summary(a),
        "content": json_parse(a.content_json, None),
        "scores": json_parse(a.scores_json, None),
        "recommendation_detail": json_parse(a.recommendation_json, None),
        "confidence": a.confidence,
        "tokens_used": a.tokens_used,
        "llm_model": a.llm_model,
        "error_message": a.error_message,
    }


def latest_completed_assessment(session: Session, org_id: int, company_id: int) -> Assessment | None:
    return session.execute(
        select(Assessment)
        .where(
            Assessment.org_id == org_id,
            Assessment.company_id == company_id,
            Assessment.status == "completed",
        )
        .order_by(Assessment.id.desc())
        .limit(1)
    ).scalars().first()


# ---------------------------------------------------------------------------
# Voting rounds
# ---------------------------------------------------------------------------


def create_round(
    session: Session,
    identity: Identity,
    assessment_id: int,
    deadline: datetime,
    participant_ids: list[int],
    quorum_percentage: int = 50,
    title: str | None = None,
) -> VotingRound:
    require_admin(identity, "create voting rounds")
    get_assessment(session, identity, assessment_id)
    if not 1 <= quorum_percentage <= 100:
        raise InvalidRequest("quorum_percentage must be between 1 and 100")
    unique_ids = list(dict.fromkeys(participant_ids))
    if not unique_ids:
        raise InvalidRequest("A voting round needs at least one participant")
    members = set(session.execute(
        select(Membership.user_id).where(
            Membership.org_id == identity.org_id, Membership.user_id.in_(unique_ids),
        )
    ).scalars().all())
    if any(uid not in members for uid in unique_ids):
        raise InvalidRequest("Some participants are not organization members")

    rnd = VotingRound(
        org_id=identity.org_id,
        assessment_id=assessment_id,
        title=title,
        status="open",
        deadline=as_utc(deadline),
        quorum_percentage=quorum_percentage,
        created_by=identity.user_id,
        participants=[RoundParticipant(user_id=uid) for uid in unique_ids],
    )
    session.add(rnd)
    session.flush()
    return rnd


def get_round(session: Session, identity: Identity, round_id: int) -> VotingRound:
    rnd = session.execute(
        select(VotingRound).where(VotingRound.id == round_id, VotingRound.org_id == identity.org_id)
    ).scalars().first()
    if rnd is None:
        raise NotFoundError("Voting round not found")
    return rnd


def update_round(
    session: Session,
    identity: Identity,
    round_id: int,
    *,
    title: str | None = None,
    deadline: datetime | None = None,
    quorum_percentage: int | None = None,
) -> VotingRound:
    """Edit an open round. Participants are fixed once a round is created."""
    require_admin(identity, "update voting rounds")
    rnd = get_round(session, identity, round_id)
    if title is None and deadline is None and quorum_percentage is None:
        raise InvalidRequest("No valid fields to update")
    if rnd.status != "open":
        raise InvalidRequest(f"Cannot update a round that is {rnd.status}")
    if quorum_percentage is not None:
        if not 1 <= quorum_percentage <= 100:
            raise InvalidRequest("quorum_percentage must be between 1 and 100")
        rnd.quorum_percentage = quorum_percentage
    if title is not None:
        rnd.title = title
    if deadline is not None:
        rnd.deadline = as_utc(deadline)
    session.flush()
    return rnd


def list_rounds(
    session: Session, identity: Identity, *, assessment_id: int | None = None, status: str | None = None,
) -> list[VotingRound]:
    query = select(VotingRound).where(VotingRound.org_id == identity.org_id)
    if assessment_id is not None:
        query = query.where(VotingRound.assessment_id == assessment_id)
    if status and status != "all":
        query = query.where(VotingRound.status == status)
    return list(session.execute(query.order_by(VotingRound.id.desc())).scalars().all())


def _participant_ids(rnd: VotingRound) -> list[int]:
    return [p.user_id for p in rnd.participants]


def _ballots(rnd: VotingRound) -> list[voting.Ballot]:
    return [
        voting.Ballot(
            voter_id=v.voter_id, value=v.value, comment=v.comment,
            voter_name=v.voter.name if v.voter else None,
        )
        for v in sorted(rnd.votes, key=lambda v: v.id)
    ]


def submit_vote(
    session: Session,
    identity: Identity,
    round_id: int,
    value: str,
    comment: str | None = None,
    now: datetime | None = None,
) -> tuple[Vote, bool]:
    """Record or overwrite the caller's ballot. Returns ``(vote, created)``."""
    voting.validate_vote_value(value)
    rnd = get_round(session, identity, round_id)
    voting.check_ballot_accepted(
        rnd.status, rnd.deadline, _participant_ids(rnd), identity.user_id, now or utcnow(),
    )
    existing = session.execute(
        select(Vote).where(Vote.round_id == rnd.id, Vote.voter_id == identity.user_id)
    ).scalars().first()
    if existing is not None:
        existing.value = value
        existing.comment = comment or None
        existing.updated_at = utcnow()
        session.flush()
        return existing, False
    vote = Vote(voter_id=identity.user_id, value=value, comment=comment or None)
    rnd.votes.append(vote)
    session.flush()
    return vote, True


def reveal_round(session: Session, identity: Identity, round_id: int) -> VotingRound:
    require_admin(identity, "reveal votes")
    rnd = get_round(session, identity, round_id)
    voting.check_transition(rnd.status, rnd.revealed_at, "reveal")
    rnd.revealed_at = utcnow()
    session.flush()
    return rnd


def close_round(session: Session, identity: Identity, round_id: int) -> VotingRound:
    require_admin(identity, "close voting rounds")
    rnd = get_round(session, identity, round_id)
    voting.check_transition(rnd.status, rnd.revealed_at, "close")
    rnd.status = "closed"
    session.flush()
    return rnd


def cancel_round(session: Session, identity: Identity, round_id: int) -> VotingRound:
    require_admin(identity, "cancel voting rounds")
    rnd = get_round(session, identity, round_id)
    voting.check_transition(rnd.status, rnd.revealed_at, "cancel")
    rnd.status = "cancelled"
    session.flush()
    return rnd


def delete_round(session: Session, identity: Identity, round_id: int) -> None:
    require_admin(identity, "delete voting rounds")
    session.delete(get_round(session, identity, round_id))
    session.flush()


def round_view(rnd: VotingRound, viewer_id: int) -> dict[str, Any]:
    """Round as *viewer_id* may see it; other ballots are masked until reveal."""
    revealed = voting.is_revealed(rnd.status, rnd.revealed_at)
    participants = _participant_ids(rnd)
    return {
        "id": rnd.id,
        "assessment_id": rnd.assessment_id,
        "title": rnd.title,
        "status": rnd.status,
        "deadline": isoformat(rnd.deadline),
        "quorum_percentage": rnd.quorum_percentage,
        "revealed_at": isoformat(rnd.revealed_at),
        "created_by": rnd.created_by,
        "is_revealed": revealed,
        "is_participant": viewer_id in participants,
        "user_has_voted": any(v.voter_id == viewer_id for v in rnd.votes),
        "total_participants": len(participants),
        "votes_submitted": len(rnd.votes),
        "votes": voting.mask_ballots(_ballots(rnd), viewer_id, revealed),
    }


def round_summary(rnd: VotingRound) -> dict[str, Any]:
    """Aggregate view; distribution and consensus only once revealed."""
    revealed = voting.is_revealed(rnd.status, rnd.revealed_at)
    participants = len(rnd.participants)
    submitted = len(rnd.votes)
    base = {
        "round_id": rnd.id,
        "title": rnd.title,
        "status": rnd.status,
        "deadline": isoformat(rnd.deadline),
        "is_revealed": revealed,
        "total_participants": participants,
        "votes_submitted": submitted,
        "quorum_percentage": rnd.quorum_percentage,
        "quorum_met": voting.quorum_met(submitted, participants, rnd.quorum_percentage),
    }
    if not revealed:
        return {**base, "message": "Votes have not been revealed yet"}

    ballots = _ballots(rnd)
    result = voting.tally(b.value for b in ballots)
    return {
        **base,
        "revealed_at": isoformat(rnd.revealed_at),
        "vote_distribution": result.distribution_rows(),
        "average_score": result.average_score,
        "consensus": result.consensus,
        "comments": [
            {"user": b.voter_name or "Unknown", "vote": voting.VOTE_LABELS[b.value], "comment": b.comment}
            for b in ballots if b.comment
        ],
        "voters": [
            {"voter_id": b.voter_id, "name": b.voter_name or "Unknown", "vote": voting.VOTE_LABELS[b.value]}
            for b in ballots
        ],
    }


def vote_summary(vote: Vote) -> dict[str, Any]:
    return {
        "id": vote.id,
        "round_id": vote.round_id,
        "voter_id": vote.voter_id,
        "vote": vote.value,
        "comment": vote.comment,
    }


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


def create_thread(session: Session, identity: Identity, company_id: int, title: str | None = None) -> ChatThread:
    company = get_company(session, identity, company_id)
    thread = ChatThread(
        org_id=identity.org_id, company_id=company.id, user_id=identity.user_id,
        title=title or f"Chat about {company.name}",
    )
    session.add(thread)
    session.flush()
    return thread


def list_threads(session: Session, identity: Identity, company_id: int) -> list[ChatThread]:
    get_company(session, identity, company_id)
    return list(session.execute(
        select(ChatThread)
        .where(
            ChatThread.org_id == identity.org_id,
            ChatThread.company_id == company_id,
            ChatThread.user_id == identity.user_id,
        )
        .order_by(ChatThread.updated_at.desc(), ChatThread.id.desc())
    ).scalars().all())


def get_thread(session: Session, identity: Identity, thread_id: int) -> ChatThread:
    thread = session.execute(
        select(ChatThread).where(
            ChatThread.id == thread_id,
            ChatThread.org_id == identity.org_id,
            ChatThread.user_id == identity.user_id,
        )
    ).scalars().first()
    if thread is None:
        raise NotFoundError("Thread not found")
    return thread


def thread_summary(thread: ChatThread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "company_id": thread.company_id,
        "title": thread.title,
        "message_count": len(thread.messages),
        "created_at": isoformat(thread.created_at),
        "updated_at": isoformat(thread.updated_at),
    }


def message_summary(msg: ChatMessage) -> dict[str, Any]:
    return {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "citations": json_parse(msg.citations_json, []),
        "created_at": isoformat(msg.created_at),
    }


def _assessment_context(assessment: Assessment | None) -> dict[str, Any] | None:
    if assessment is None:
        return None
    return {
        "overall_score": assessment.overall_score,
        "recommendation": assessment.recommendation,
        "scores": json_parse(assessment.scores_json, {}),
    }


async def post_chat_message(
    session: Session,
    identity: Identity,
    thread_id: int,
    content: str,
    client: LLMClient,
    *,
    history_limit: int = 20,
    document_limit: int = 10,
    document_char_limit: int = 3000,
) -> tuple[ChatMessage, ChatMessage]:
    """Store the question, generate a cited answer, store it. Caller commits."""
    if not content or not content.strip():
        raise InvalidRequest("Message content required")
    thread = get_thread(session, identity, thread_id)
    company = get_company(session, identity, thread.company_id)

    history = [{"role": m.role, "content": m.content} for m in thread.messages]
    user_message = ChatMessage(role="user", content=content)
    thread.messages.append(user_message)
    session.flush()

    documents = [
        DocumentExcerpt(
            file_name=d.file_name,
            classification=d.classification or "document",
            extracted_text=d.extracted_text or "",
        ).truncated(document_char_limit)
        for d in extracted_documents(session, company.id, limit=document_limit)
    ]
    answer = await generate_chat_answer(
        content,
        history,
        company_profile(company),
        documents,
        client,
        latest_assessment=_assessment_context(
            latest_completed_assessment(session, identity.org_id, company.id)
        ),
        history_limit=history_limit,
    )
    assistant_message = ChatMessage(
        role="assistant",
        content=answer.text,
        citations_json=json.dumps([c.to_dict() for c in answer.citations]),
    )
    thread.messages.append(assistant_message)
    thread.updated_at = utcnow()
    session.flush()
    return user_message, assistant_message


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def usage_summary(session: Session, identity: Identity) -> dict[str, Any]:
    org = session.execute(
        select(Organization).where(Organization.id == identity.org_id)
    ).scalars().first()
    records, tokens = session.execute(
        select(func.count(UsageRecord.id), func.coalesce(func.sum(UsageRecord.tokens_used), 0))
        .where(UsageRecord.org_id == identity.org_id)
    ).one()
    return {
        "org_id": identity.org_id,
        "assessments_used_this_month": org.assessments_used_this_month if org else 0,
        "usage_records": records,
        "tokens_used": tokens,
    }


def reset_monthly_usage(session: Session) -> int:
    """Zero every org's monthly counter; returns the number of orgs touched."""
    orgs = session.execute(select(Organization)).scalars().all()
    for org in orgs:
        org.assessments_used_this_month = 0
    session.flush()
    return len(orgs)
