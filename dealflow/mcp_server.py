from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from dealflow import services
from dealflow.config import get_settings
from dealflow.db import init_db, session_scope
from dealflow.errors import DealflowError
from dealflow.llm import LLMClient
from dealflow.prompts import RECOMMENDATIONS
from dealflow.scorer import DIMENSION_WEIGHTS
from dealflow.services import Identity
from dealflow.voting import VOTE_VALUES

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def dealflow_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Dealflow",
    instructions=(
        "Dealflow generates investment assessments for companies, runs blind "
        "investment-committee votes and answers questions about company "
        "documents. Start with list_assessments(), then get_assessment(id) for "
        "scores and the recommendation. Use ask(company_id, question) for "
        "document Q&A with citations."
    ),
    lifespan=dealflow_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _identity() -> Identity:
    settings = get_settings()
    return Identity(org_id=settings.mcp_org_id, user_id=settings.mcp_user_id, role=settings.mcp_role)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("dealflow://overview")
def dealflow_overview() -> str:
    """Overview of Dealflow: data model, scoring weights and vote values."""
    return json.dumps({
        "system": "Dealflow: investment assessment and committee voting",
        "data_model": {
            "company": "A company under evaluation, with extracted pitch documents.",
            "assessment": "LLM-generated screening or full assessment with six dimension scores (0-100).",
            "voting_round": "Blind committee vote on an assessment. Ballots stay hidden until reveal.",
            "chat_thread": "Document Q&A about one company. Answers cite [Source: file] markers.",
        },
        "weights": DIMENSION_WEIGHTS,
        "recommendations": list(RECOMMENDATIONS),
        "vote_values": list(VOTE_VALUES),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Assessments
# ---------------------------------------------------------------------------


@mcp.tool()
def list_assessments(company_id: int | None = None, status: str | None = None) -> list[dict]:
    """List assessments, newest first.

    Args:
        company_id: Only assessments for this company.
        status: One of pending, processing, completed, failed.
    """
    with session_scope() as session:
        rows = services.list_assessments(session, _identity(), company_id=company_id, status=status)
        return [services.assessment_summary(a) for a in rows]


@mcp.tool()
def get_assessment(assessment_id: int) -> dict:
    """Full assessment: content, per-dimension scores, recommendation and errors."""
    with session_scope() as session:
        try:
            return services.assessment_detail(services.get_assessment(session, _identity(), assessment_id))
        except DealflowError as exc:
            return {"error": exc.message}


@mcp.tool()
async def create_assessment(company_id: int, kind: str = "screening") -> dict:
    """Generate an assessment and wait for it to finish. Requires an LLM API key.

    Args:
        company_id: Company with at least one extracted document.
        kind: "screening" (quick) or "full" (detailed).
    """
    identity = _identity()
    with session_scope() as session:
        try:
            assessment, request = services.create_assessment(session, identity, company_id, kind)
        except DealflowError as exc:
            return {"error": exc.message}
        session.commit()
        assessment_id = assessment.id

    await services.generate_with_client_factory(
        assessment_id, identity.org_id, request, LLMClient, get_settings().document_char_limit,
    )
    with session_scope() as session:
        return services.assessment_detail(services.get_assessment(session, identity, assessment_id))


# ---------------------------------------------------------------------------
# Tools: Voting
# ---------------------------------------------------------------------------


@mcp.tool()
def get_round(round_id: int) -> dict:
    """A voting round. Other members' ballots are hidden until the round is revealed."""
    identity = _identity()
    with session_scope() as session:
        try:
            return services.round_view(services.get_round(session, identity, round_id), identity.user_id)
        except DealflowError as exc:
            return {"error": exc.message}


@mcp.tool()
def get_round_summary(round_id: int) -> dict:
    """Vote counts and quorum; distribution, average and consensus once revealed."""
    with session_scope() as session:
        try:
            return services.round_summary(services.get_round(session, _identity(), round_id))
        except DealflowError as exc:
            return {"error": exc.message}


# ---------------------------------------------------------------------------
# Tools: Chat
# ---------------------------------------------------------------------------


@mcp.tool()
async def ask(company_id: int, question: str, thread_id: int | None = None) -> dict:
    """Ask a question about a company's documents. Answers carry source citations.

    Args:
        company_id: Company whose documents to consult.
        question: The question.
        thread_id: Continue an existing thread about the same company; a new
            one is started if omitted.
    """
    identity = _identity()
    settings = get_settings()
    with session_scope() as session:
        try:
            if thread_id is None:
                thread_id = services.create_thread(session, identity, company_id).id
            elif services.get_thread(session, identity, thread_id).company_id != company_id:
                return {"error": f"Thread {thread_id} is not about company {company_id}"}
            _user_msg, answer = await services.post_chat_message(
                session, identity, thread_id, question, LLMClient(),
                history_limit=settings.chat_history_limit,
                document_limit=settings.chat_document_limit,
                document_char_limit=settings.chat_document_char_limit,
            )
            session.commit()
        except DealflowError as exc:
            return {"error": exc.message}
        except Exception as exc:
            return {"error": f"Chat failed: {exc}"}
        return {"thread_id": thread_id, **services.message_summary(answer)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Dealflow MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
