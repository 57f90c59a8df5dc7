"""Tests for persistence-bound operations and the background generation task."""
from __future__ import annotations

import json
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import select

from dealflow import services
from dealflow.db import get_session, init_db
from dealflow.errors import InvalidRequest, NotFoundError, PermissionDenied
from dealflow.llm import NoTextResponse
from dealflow.models import Assessment, Membership, Organization, UsageRecord, User
from dealflow.services import Identity
from dealflow.utils import as_utc, utcnow


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    init_db("sqlite://")
    sess = get_session()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def world(session):
    """One org with an admin and two members, a company with two documents."""
    org = Organization(name="Fund I")
    other_org = Organization(name="Fund II")
    admin, alice, bob = User(name="Ada"), User(name="Alice"), User(name="Bob")
    session.add_all([org, other_org, admin, alice, bob])
    session.flush()
    session.add_all([
        Membership(org_id=org.id, user_id=admin.id, role="admin"),
        Membership(org_id=org.id, user_id=alice.id, role="member"),
        Membership(org_id=org.id, user_id=bob.id, role="member"),
    ])
    session.flush()

    ids = SimpleNamespace(
        org=org.id, other_org=other_org.id,
        admin=Identity(org.id, admin.id, "admin"),
        alice=Identity(org.id, alice.id, "member"),
        bob=Identity(org.id, bob.id, "member"),
        outsider=Identity(other_org.id, admin.id, "owner"),
    )
    company = services.create_company(session, ids.admin, name="Acme", stage="seed", sector="fintech")
    services.add_document(session, ids.admin, company.id, "Pitch Deck.pdf",
                          extracted_text="Revenue grew 3x in 2025.", classification="pitch_deck")
    services.add_document(session, ids.admin, company.id, "notes.txt")
    session.commit()
    ids.company = company.id
    return ids


def _fresh(model, entity_id):
    with get_session() as s:
        return s.execute(select(model).where(model.id == entity_id)).scalars().first()


def _completed_assessment(session, world) -> int:
    assessment, _ = services.create_assessment(session, world.admin, world.company, "screening")
    assessment.status = "completed"
    assessment.overall_score = 70
    assessment.recommendation = "proceed"
    assessment.scores_json = json.dumps({"team": {"score": 70}})
    session.commit()
    return assessment.id


def _round(session, world, **kwargs):
    assessment_id = _completed_assessment(session, world)
    params = dict(
        deadline=utcnow() + timedelta(days=2),
        participant_ids=[world.admin.user_id, world.alice.user_id, world.bob.user_id],
    )
    params.update(kwargs)
    rnd = services.create_round(session, world.admin, assessment_id, **params)
    session.commit()
    return rnd


# ---------------------------------------------------------------------------
# Assessment creation
# ---------------------------------------------------------------------------


class TestCreateAssessment:
    def test_inserts_processing_row(self, session, world):
        assessment, request = services.create_assessment(session, world.alice, world.company, "full")
        assert assessment.status == "processing"
        assert assessment.created_by == world.alice.user_id
        assert request.kind == "full"
        assert request.company.name == "Acme"
        # only the extracted document reaches the prompt
        assert [d.file_name for d in request.documents] == ["Pitch Deck.pdf"]

    def test_requires_extracted_document(self, session, world):
        company = services.create_company(session, world.admin, name="Empty Co")
        services.add_document(session, world.admin, company.id, "scan.pdf")
        with pytest.raises(InvalidRequest, match="No processed documents"):
            services.create_assessment(session, world.admin, company.id)

    def test_other_org_company_not_found(self, session, world):
        with pytest.raises(NotFoundError):
            services.create_assessment(session, world.outsider, world.company)

    def test_invalid_kind(self, session, world):
        with pytest.raises(InvalidRequest):
            services.create_assessment(session, world.admin, world.company, "deep")


# ---------------------------------------------------------------------------
# Background generation
# ---------------------------------------------------------------------------


class TestRunAssessmentGeneration:
    async def _run(self, session, world, client):
        assessment, request = services.create_assessment(session, world.admin, world.company)
        session.commit()
        await services.run_assessment_generation(assessment.id, world.org, request, client)
        return assessment.id

    @pytest.mark.asyncio
    async def test_success_writes_everything(self, session, world, fake_llm):
        assessment_id = await self._run(session, world, fake_llm)
        row = _fresh(Assessment, assessment_id)
        assert row.status == "completed"
        assert row.overall_score == 68
        assert row.recommendation == "proceed"
        assert row.confidence == 0.7
        assert row.tokens_used == 1500
        assert row.llm_model == "fake-model"
        assert row.completed_at is not None
        assert row.error_message is None
        assert json.loads(row.content_json)["quickTake"] == "Worth a deeper look."
        assert json.loads(row.scores_json)["traction"]["score"] == 90
        assert json.loads(row.recommendation_json)["primaryReasons"] == ["Traction"]

    @pytest.mark.asyncio
    async def test_success_records_usage(self, session, world, fake_llm):
        assessment_id = await self._run(session, world, fake_llm)
        with get_session() as s:
            records = s.execute(select(UsageRecord)).scalars().all()
            org = s.get(Organization, world.org)
            assert [(r.assessment_id, r.assessment_kind, r.tokens_used) for r in records] == [
                (assessment_id, "screening", 1500),
            ]
            assert org.assessments_used_this_month == 1

    @pytest.mark.asyncio
    async def test_provider_error_marks_failed(self, session, world, make_llm):
        assessment_id = await self._run(session, world, make_llm(error=RuntimeError("rate limited")))
        row = _fresh(Assessment, assessment_id)
        assert row.status == "failed"
        assert row.error_message == "rate limited"
        assert row.overall_score is None
        with get_session() as s:
            assert s.execute(select(UsageRecord)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_no_text_marks_failed(self, session, world, make_llm):
        assessment_id = await self._run(session, world, make_llm(error=NoTextResponse("No text response")))
        row = _fresh(Assessment, assessment_id)
        assert row.status == "failed"
        assert row.error_message == "No text response"

    @pytest.mark.asyncio
    async def test_malformed_text_marks_failed(self, session, world, make_llm):
        assessment_id = await self._run(session, world, make_llm("Sorry, I can't."))
        row = _fresh(Assessment, assessment_id)
        assert row.status == "failed"
        assert "Could not parse JSON" in row.error_message

    @pytest.mark.asyncio
    async def test_missing_keys_mark_failed(self, session, world, make_llm):
        assessment_id = await self._run(session, world, make_llm('{"summary": "only this"}'))
        row = _fresh(Assessment, assessment_id)
        assert row.status == "failed"
        assert "scores" in row.error_message

    @pytest.mark.asyncio
    async def test_deleted_row_is_noop(self, session, world, fake_llm):
        assessment, request = services.create_assessment(session, world.admin, world.company)
        session.commit()
        services.delete_assessment(session, world.admin, assessment.id)
        session.commit()
        await services.run_assessment_generation(assessment.id, world.org, request, fake_llm)
        assert _fresh(Assessment, assessment.id) is None
        with get_session() as s:
            assert s.execute(select(UsageRecord)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_terminal_row_not_overwritten(self, session, world, make_llm):
        assessment, request = services.create_assessment(session, world.admin, world.company)
        assessment.status = "completed"
        assessment.overall_score = 12
        session.commit()
        await services.run_assessment_generation(
            assessment.id, world.org, request, make_llm(error=RuntimeError("late failure")),
        )
        row = _fresh(Assessment, assessment.id)
        assert row.status == "completed"
        assert row.overall_score == 12

    @pytest.mark.asyncio
    async def test_usage_failure_is_best_effort(self, session, world, fake_llm):
        with patch("dealflow.services.record_usage", side_effect=RuntimeError("disk full")):
            assessment_id = await self._run(session, world, fake_llm)
        assert _fresh(Assessment, assessment_id).status == "completed"
        assert _fresh(Organization, world.org).assessments_used_this_month == 1

    @pytest.mark.asyncio
    async def test_client_factory_failure_marks_failed(self, session, world):
        assessment, request = services.create_assessment(session, world.admin, world.company)
        session.commit()

        def no_key():
            raise RuntimeError("OPENAI_API_KEY is not set")

        await services.generate_with_client_factory(assessment.id, world.org, request, no_key)
        row = _fresh(Assessment, assessment.id)
        assert row.status == "failed"
        assert row.error_message == "OPENAI_API_KEY is not set"

    @pytest.mark.asyncio
    async def test_client_factory_success(self, session, world, fake_llm):
        assessment, request = services.create_assessment(session, world.admin, world.company)
        session.commit()
        await services.generate_with_client_factory(assessment.id, world.org, request, lambda: fake_llm)
        assert _fresh(Assessment, assessment.id).status == "completed"

    @pytest.mark.asyncio
    async def test_counter_failure_keeps_usage_record(self, session, world, fake_llm):
        with patch("dealflow.services.increment_monthly_usage", side_effect=RuntimeError("locked")):
            assessment_id = await self._run(session, world, fake_llm)
        with get_session() as s:
            assert [r.assessment_id for r in s.execute(select(UsageRecord)).scalars().all()] == [assessment_id]
        assert _fresh(Organization, world.org).assessments_used_this_month == 0


# ---------------------------------------------------------------------------
# Assessment reads
# ---------------------------------------------------------------------------


class TestAssessmentReads:
    def test_detail_and_list(self, session, world):
        assessment_id = _completed_assessment(session, world)
        detail = services.assessment_detail(services.get_assessment(session, world.alice, assessment_id))
        assert detail["status"] == "completed"
        assert detail["company_name"] == "Acme"
        assert detail["scores"] == {"team": {"score": 70}}
        assert detail["content"] is None
        listed = services.list_assessments(session, world.alice, status="completed")
        assert [a.id for a in listed] == [assessment_id]
        assert services.list_assessments(session, world.alice, status="failed") == []

    def test_other_org_cannot_read(self, session, world):
        assessment_id = _completed_assessment(session, world)
        with pytest.raises(NotFoundError):
            services.get_assessment(session, world.outsider, assessment_id)

    def test_delete_requires_creator_or_admin(self, session, world):
        assessment, _ = services.create_assessment(session, world.alice, world.company)
        session.commit()
        with pytest.raises(PermissionDenied):
            services.delete_assessment(session, world.bob, assessment.id)
        services.delete_assessment(session, world.alice, assessment.id)
        session.commit()
        assert _fresh(Assessment, assessment.id) is None


# ---------------------------------------------------------------------------
# Voting rounds
# ---------------------------------------------------------------------------


class TestRounds:
    def test_create_requires_admin(self, session, world):
        assessment_id = _completed_assessment(session, world)
        with pytest.raises(PermissionDenied):
            services.create_round(session, world.alice, assessment_id, utcnow(), [world.alice.user_id])

    def test_participants_must_be_members(self, session, world):
        assessment_id = _completed_assessment(session, world)
        with pytest.raises(InvalidRequest, match="not organization members"):
            services.create_round(session, world.admin, assessment_id, utcnow(), [world.alice.user_id, 999])

    def test_vote_upsert(self, session, world):
        rnd = _round(session, world)
        vote, created = services.submit_vote(session, world.alice, rnd.id, "yes", "Good team")
        session.commit()
        assert created
        again, created = services.submit_vote(session, world.alice, rnd.id, "strong_no", None)
        session.commit()
        assert not created
        assert again.id == vote.id
        assert again.value == "strong_no"
        assert again.comment is None
        assert len(services.get_round(session, world.alice, rnd.id).votes) == 1

    def test_non_participant_rejected(self, session, world):
        rnd = _round(session, world, participant_ids=[world.alice.user_id])
        with pytest.raises(PermissionDenied):
            services.submit_vote(session, world.bob, rnd.id, "yes")

    def test_deadline_enforced(self, session, world):
        rnd = _round(session, world)
        with pytest.raises(InvalidRequest, match="deadline"):
            services.submit_vote(session, world.alice, rnd.id, "yes", now=utcnow() + timedelta(days=3))

    def test_masked_until_revealed(self, session, world):
        rnd = _round(session, world)
        services.submit_vote(session, world.alice, rnd.id, "yes", "Alice thinks yes")
        services.submit_vote(session, world.bob, rnd.id, "no", "Bob thinks no")
        session.commit()

        view = services.round_view(rnd, world.alice.user_id)
        assert view["is_revealed"] is False
        assert view["user_has_voted"] is True
        own = [v for v in view["votes"] if v["is_own"]]
        hidden = [v for v in view["votes"] if not v["is_own"]]
        assert own[0]["comment"] == "Alice thinks yes"
        assert hidden == [{"voter_id": None, "voter_name": None, "vote": None, "comment": None, "is_own": False}]

        services.reveal_round(session, world.admin, rnd.id)
        session.commit()
        view = services.round_view(rnd, world.alice.user_id)
        assert view["is_revealed"] is True
        assert view["status"] == "open"
        assert {v["vote"] for v in view["votes"]} == {"yes", "no"}

    def test_summary_before_and_after_reveal(self, session, world):
        rnd = _round(session, world)
        services.submit_vote(session, world.alice, rnd.id, "yes", "Strong market")
        services.submit_vote(session, world.bob, rnd.id, "strong_yes")
        session.commit()

        summary = services.round_summary(rnd)
        assert summary["votes_submitted"] == 2
        assert summary["quorum_met"] is True
        assert "vote_distribution" not in summary
        assert "consensus" not in summary

        services.close_round(session, world.admin, rnd.id)
        session.commit()
        summary = services.round_summary(rnd)
        assert summary["is_revealed"] is True
        assert summary["consensus"] == "positive"
        assert summary["average_score"] == 1.5
        assert summary["comments"] == [{"user": "Alice", "vote": "Yes", "comment": "Strong market"}]
        assert {r["vote"]: r["count"] for r in summary["vote_distribution"]}["strong_yes"] == 1

    def test_transitions(self, session, world):
        rnd = _round(session, world)
        with pytest.raises(PermissionDenied):
            services.reveal_round(session, world.alice, rnd.id)
        services.reveal_round(session, world.admin, rnd.id)
        with pytest.raises(InvalidRequest):
            services.reveal_round(session, world.admin, rnd.id)
        services.cancel_round(session, world.admin, rnd.id)
        with pytest.raises(InvalidRequest):
            services.close_round(session, world.admin, rnd.id)
        with pytest.raises(InvalidRequest, match="not open"):
            services.submit_vote(session, world.alice, rnd.id, "yes")

    def test_update_extends_deadline(self, session, world):
        rnd = _round(session, world, title="IC vote")
        later = utcnow() + timedelta(days=10)
        services.update_round(session, world.admin, rnd.id, deadline=later, quorum_percentage=100)
        session.commit()
        rnd = services.get_round(session, world.alice, rnd.id)
        assert as_utc(rnd.deadline) == later
        assert rnd.quorum_percentage == 100
        assert rnd.title == "IC vote"
        assert len(rnd.participants) == 3
        services.submit_vote(session, world.alice, rnd.id, "yes", now=utcnow() + timedelta(days=5))

    def test_update_rules(self, session, world):
        rnd = _round(session, world)
        with pytest.raises(PermissionDenied):
            services.update_round(session, world.alice, rnd.id, title="Mine now")
        with pytest.raises(InvalidRequest, match="No valid fields"):
            services.update_round(session, world.admin, rnd.id)
        with pytest.raises(InvalidRequest, match="between 1 and 100"):
            services.update_round(session, world.admin, rnd.id, quorum_percentage=0)
        services.close_round(session, world.admin, rnd.id)
        with pytest.raises(InvalidRequest, match="closed"):
            services.update_round(session, world.admin, rnd.id, title="Too late")

    def test_list_and_delete(self, session, world):
        rnd = _round(session, world)
        assert [r.id for r in services.list_rounds(session, world.bob, status="open")] == [rnd.id]
        assert services.list_rounds(session, world.bob, status="closed") == []
        services.delete_round(session, world.admin, rnd.id)
        session.commit()
        with pytest.raises(NotFoundError):
            services.get_round(session, world.admin, rnd.id)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_answer_with_citations(self, session, world, make_llm):
        thread = services.create_thread(session, world.alice, world.company)
        client = make_llm("Revenue grew 3x [Source: pitch deck]. Hiring is unclear [Source: HR plan].")
        user_msg, answer = await services.post_chat_message(session, world.alice, thread.id, "How is growth?", client)
        session.commit()

        assert user_msg.role == "user"
        assert answer.role == "assistant"
        assert json.loads(answer.citations_json) == [{"source": "Pitch Deck.pdf", "text": "Revenue grew 3x"}]
        call = client.calls[0]
        assert call["task"] == "chat"
        assert call["messages"] == [{"role": "user", "content": "How is growth?"}]
        assert "Revenue grew 3x in 2025." in call["system"]
        assert [m.role for m in services.get_thread(session, world.alice, thread.id).messages] == [
            "user", "assistant",
        ]

    @pytest.mark.asyncio
    async def test_history_passed_on_followup(self, session, world, make_llm):
        thread = services.create_thread(session, world.alice, world.company)
        await services.post_chat_message(session, world.alice, thread.id, "First?", make_llm("One."))
        client = make_llm("Two.")
        await services.post_chat_message(session, world.alice, thread.id, "Second?", client)
        assert client.calls[0]["messages"] == [
            {"role": "user", "content": "First?"},
            {"role": "assistant", "content": "One."},
            {"role": "user", "content": "Second?"},
        ]

    @pytest.mark.asyncio
    async def test_latest_assessment_in_context(self, session, world, make_llm):
        _completed_assessment(session, world)
        thread = services.create_thread(session, world.alice, world.company)
        client = make_llm("Fine.")
        await services.post_chat_message(session, world.alice, thread.id, "Score?", client)
        assert "- Overall Score: 70/100" in client.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_threads_are_private(self, session, world, make_llm):
        thread = services.create_thread(session, world.alice, world.company)
        session.commit()
        with pytest.raises(NotFoundError):
            await services.post_chat_message(session, world.bob, thread.id, "Peek?", make_llm("x"))
        assert services.list_threads(session, world.bob, world.company) == []

    @pytest.mark.asyncio
    async def test_blank_question_rejected(self, session, world, make_llm):
        thread = services.create_thread(session, world.alice, world.company)
        with pytest.raises(InvalidRequest):
            await services.post_chat_message(session, world.alice, thread.id, "   ", make_llm("x"))


class TestUsage:
    def test_summary_and_reset(self, session, world):
        org = session.get(Organization, world.org)
        org.assessments_used_this_month = 4
        services.record_usage(session, world.org, None, "full", 900)
        session.commit()
        summary = services.usage_summary(session, world.admin)
        assert summary == {
            "org_id": world.org, "assessments_used_this_month": 4,
            "usage_records": 1, "tokens_used": 900,
        }
        assert services.reset_monthly_usage(session) == 2
        assert org.assessments_used_this_month == 0
