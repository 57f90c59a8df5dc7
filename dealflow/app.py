from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable, Generator

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealflow import __version__, services
from dealflow.config import get_settings
from dealflow.db import get_session, init_db
from dealflow.errors import DealflowError
from dealflow.llm import LLMClient
from dealflow.schemas import (
    AssessmentAccepted,
    AssessmentCreate,
    AssessmentDetail,
    AssessmentOut,
    ChatExchangeOut,
    ChatMessageIn,
    ChatMessageOut,
    ChatThreadCreate,
    ChatThreadOut,
    CompanyCreate,
    CompanyOut,
    DocumentCreate,
    DocumentOut,
    RoundCreate,
    RoundOut,
    RoundUpdate,
    UsageOut,
    VoteIn,
    VoteOut,
)
from dealflow.services import Identity

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Dealflow",
    version=__version__,
    description=(
        "Investment assessment API. Generates LLM screening and full "
        "assessments for companies, runs blind investment-committee votes "
        "and answers questions about company documents with citations. "
        "Caller identity comes from the X-Org-Id, X-User-Id and X-User-Role "
        "headers set by the authenticating proxy."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Companies", "description": "Register companies and their extracted documents."},
        {"name": "Assessments", "description": "LLM-generated assessments. Generation runs in the background."},
        {"name": "Voting", "description": "Blind voting rounds with quorum and consensus."},
        {"name": "Chat", "description": "Document Q&A with source citations."},
        {"name": "Usage", "description": "Per-organization usage accounting."},
    ],
)


@app.exception_handler(DealflowError)
async def dealflow_error_handler(request: Request, exc: DealflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_identity(
    x_org_id: int | None = Header(None),
    x_user_id: int | None = Header(None),
    x_user_role: str = Header("member"),
) -> Identity:
    if x_org_id is None or x_user_id is None:
        raise HTTPException(401, "Unauthorized")
    return Identity(org_id=x_org_id, user_id=x_user_id, role=x_user_role.lower())


def llm_client_factory() -> Callable[[], LLMClient]:
    """Clients are built only after a request passes its own checks."""
    return LLMClient


# ---------------------------------------------------------------------------
# Routes: Companies & Documents
# ---------------------------------------------------------------------------


@app.post("/api/companies", response_model=CompanyOut, status_code=201,
          tags=["Companies"], summary="Register a company")
async def create_company(body: CompanyCreate, session: Session = Depends(db_session),
                         identity: Identity = Depends(current_identity)):
    company = services.create_company(session, identity, **body.model_dump())
    session.commit()
    return services.company_summary(company)


@app.post("/api/companies/{company_id}/documents", response_model=DocumentOut, status_code=201,
          tags=["Companies"], summary="Attach a document with its extracted text")
async def add_document(company_id: int, body: DocumentCreate, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    doc = services.add_document(
        session, identity, company_id, body.file_name,
        extracted_text=body.extracted_text, classification=body.classification,
    )
    session.commit()
    return services.document_summary(doc)


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.post("/api/assessments", response_model=AssessmentAccepted, status_code=202,
          tags=["Assessments"], summary="Start generating an assessment (runs in the background)")
async def create_assessment(
    body: AssessmentCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
    client_factory: Callable[[], LLMClient] = Depends(llm_client_factory),
):
    assessment, request = services.create_assessment(session, identity, body.company_id, body.kind)
    session.commit()
    background_tasks.add_task(
        services.generate_with_client_factory,
        assessment.id, identity.org_id, request, client_factory, get_settings().document_char_limit,
    )
    return {
        "id": assessment.id,
        "status": assessment.status,
        "message": "Assessment generation started. Poll GET /api/assessments/{id} for results.",
    }


@app.get("/api/assessments", response_model=list[AssessmentOut],
         tags=["Assessments"], summary="List assessments in the caller's organization")
async def list_assessments(
    company_id: int | None = Query(None),
    status: str | None = Query(None, description="pending, processing, completed or failed"),
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    rows = services.list_assessments(session, identity, company_id=company_id, status=status)
    return [services.assessment_summary(a) for a in rows]


@app.get("/api/assessments/{assessment_id}", response_model=AssessmentDetail,
         tags=["Assessments"], summary="Get an assessment with content, scores and recommendation")
async def get_assessment(assessment_id: int, session: Session = Depends(db_session),
                         identity: Identity = Depends(current_identity)):
    return services.assessment_detail(services.get_assessment(session, identity, assessment_id))


@app.delete("/api/assessments/{assessment_id}", tags=["Assessments"],
            summary="Delete an assessment and its voting rounds")
async def delete_assessment(assessment_id: int, session: Session = Depends(db_session),
                            identity: Identity = Depends(current_identity)):
    services.delete_assessment(session, identity, assessment_id)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Voting
# ---------------------------------------------------------------------------


@app.post("/api/rounds", response_model=RoundOut, status_code=201,
          tags=["Voting"], summary="Open a voting round on an assessment (admins only)")
async def create_round(body: RoundCreate, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    rnd = services.create_round(
        session, identity, body.assessment_id, body.deadline, body.participant_ids,
        quorum_percentage=body.quorum_percentage, title=body.title,
    )
    session.commit()
    return services.round_view(rnd, identity.user_id)


@app.get("/api/rounds", response_model=list[RoundOut],
         tags=["Voting"], summary="List voting rounds (other ballots masked until reveal)")
async def list_rounds(
    assessment_id: int | None = Query(None),
    status: str | None = Query(None, description="open, closed, cancelled or all"),
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    rows = services.list_rounds(session, identity, assessment_id=assessment_id, status=status)
    return [services.round_view(r, identity.user_id) for r in rows]


@app.get("/api/rounds/{round_id}", response_model=RoundOut,
         tags=["Voting"], summary="Get a voting round (other ballots masked until reveal)")
async def get_round(round_id: int, session: Session = Depends(db_session),
                    identity: Identity = Depends(current_identity)):
    return services.round_view(services.get_round(session, identity, round_id), identity.user_id)


@app.patch("/api/rounds/{round_id}", response_model=RoundOut,
           tags=["Voting"], summary="Edit an open round's title, deadline or quorum (admins only)")
async def update_round(round_id: int, body: RoundUpdate, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    rnd = services.update_round(session, identity, round_id, **body.model_dump(exclude_unset=True))
    session.commit()
    return services.round_view(rnd, identity.user_id)


@app.post("/api/rounds/{round_id}/votes", response_model=VoteOut,
          tags=["Voting"], summary="Cast or replace the caller's ballot")
async def submit_vote(round_id: int, body: VoteIn, session: Session = Depends(db_session),
                      identity: Identity = Depends(current_identity)):
    vote, _created = services.submit_vote(session, identity, round_id, body.vote, body.comment)
    session.commit()
    return services.vote_summary(vote)


@app.post("/api/rounds/{round_id}/reveal", response_model=RoundOut,
          tags=["Voting"], summary="Reveal all ballots (admins only)")
async def reveal_round(round_id: int, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    rnd = services.reveal_round(session, identity, round_id)
    session.commit()
    return services.round_view(rnd, identity.user_id)


@app.post("/api/rounds/{round_id}/close", response_model=RoundOut,
          tags=["Voting"], summary="Close an open round (admins only)")
async def close_round(round_id: int, session: Session = Depends(db_session),
                      identity: Identity = Depends(current_identity)):
    rnd = services.close_round(session, identity, round_id)
    session.commit()
    return services.round_view(rnd, identity.user_id)


@app.post("/api/rounds/{round_id}/cancel", response_model=RoundOut,
          tags=["Voting"], summary="Cancel an open round (admins only)")
async def cancel_round(round_id: int, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    rnd = services.cancel_round(session, identity, round_id)
    session.commit()
    return services.round_view(rnd, identity.user_id)


@app.delete("/api/rounds/{round_id}", tags=["Voting"], summary="Delete a round and its ballots (admins only)")
async def delete_round(round_id: int, session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    services.delete_round(session, identity, round_id)
    session.commit()
    return {"ok": True}


@app.get("/api/rounds/{round_id}/summary", tags=["Voting"],
         summary="Vote counts and quorum; distribution and consensus once revealed")
async def round_summary(round_id: int, session: Session = Depends(db_session),
                        identity: Identity = Depends(current_identity)):
    return services.round_summary(services.get_round(session, identity, round_id))


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


@app.post("/api/chat/threads", response_model=ChatThreadOut, status_code=201,
          tags=["Chat"], summary="Start a chat thread about a company")
async def create_thread(body: ChatThreadCreate, session: Session = Depends(db_session),
                        identity: Identity = Depends(current_identity)):
    thread = services.create_thread(session, identity, body.company_id, body.title)
    session.commit()
    return services.thread_summary(thread)


@app.get("/api/chat/threads", response_model=list[ChatThreadOut],
         tags=["Chat"], summary="List the caller's chat threads for a company")
async def list_threads(company_id: int = Query(...), session: Session = Depends(db_session),
                       identity: Identity = Depends(current_identity)):
    return [services.thread_summary(t) for t in services.list_threads(session, identity, company_id)]


@app.get("/api/chat/threads/{thread_id}/messages", response_model=list[ChatMessageOut],
         tags=["Chat"], summary="List messages in a thread, oldest first")
async def list_messages(thread_id: int, session: Session = Depends(db_session),
                        identity: Identity = Depends(current_identity)):
    thread = services.get_thread(session, identity, thread_id)
    return [services.message_summary(m) for m in thread.messages]


@app.post("/api/chat/threads/{thread_id}/messages", response_model=ChatExchangeOut,
          tags=["Chat"], summary="Ask a question; the answer cites the documents it used")
async def post_message(
    thread_id: int,
    body: ChatMessageIn,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
    client_factory: Callable[[], LLMClient] = Depends(llm_client_factory),
):
    settings = get_settings()
    services.get_thread(session, identity, thread_id)
    try:
        user_msg, assistant_msg = await services.post_chat_message(
            session, identity, thread_id, body.content, client_factory(),
            history_limit=settings.chat_history_limit,
            document_limit=settings.chat_document_limit,
            document_char_limit=settings.chat_document_char_limit,
        )
        session.commit()
    except DealflowError:
        raise
    except Exception as exc:
        log.warning("Chat generation failed for thread %s: %s", thread_id, exc)
        raise HTTPException(502, f"Chat generation failed: {exc}") from exc
    return {
        "user_message": services.message_summary(user_msg),
        "assistant_message": services.message_summary(assistant_msg),
    }


# ---------------------------------------------------------------------------
# Routes: Usage
# ---------------------------------------------------------------------------


@app.get("/api/usage", response_model=UsageOut, tags=["Usage"], summary="Assessment usage for the organization")
async def get_usage(session: Session = Depends(db_session), identity: Identity = Depends(current_identity)):
    return services.usage_summary(session, identity)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("dealflow.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
