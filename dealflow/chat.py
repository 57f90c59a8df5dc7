"""Document Q&A: one chat completion over company context, with citations."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from dealflow.citations import Citation, extract_citations
from dealflow.llm import LLMClient
from dealflow.prompts import CompanyProfile, DocumentExcerpt, build_chat_system_prompt

log = logging.getLogger(__name__)

_ROLES = ("user", "assistant")


@dataclass
class ChatAnswer:
    text: str
    citations: list[Citation] = field(default_factory=list)
    tokens_used: int = 0


def _history_messages(history: Sequence[dict[str, str]], limit: int) -> list[dict[str, str]]:
    messages = [
        {"role": m["role"], "content": m["content"]}
        for m in history
        if m.get("role") in _ROLES and m.get("content")
    ]
    if limit:
        messages = messages[-limit:]
    # conversations must open with a user turn
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages


async def generate_chat_answer(
    question: str,
    history: Sequence[dict[str, str]],
    company: CompanyProfile,
    documents: Sequence[DocumentExcerpt],
    client: LLMClient,
    latest_assessment: dict[str, Any] | None = None,
    history_limit: int = 20,
) -> ChatAnswer:
    """Answer *question* in the context of the company's documents.

    ``history`` holds earlier ``{"role", "content"}`` turns, oldest first, and
    must not include *question* itself.
    """
    system = build_chat_system_prompt(company, documents, latest_assessment)
    messages = _history_messages(history, history_limit)
    messages.append({"role": "user", "content": question})
    completion = await client.complete("chat", system=system, messages=messages)
    text, citations = extract_citations(completion.text, documents)
    log.info("Chat answer for %s: %d chars, %d citations", company.name, len(text), len(citations))
    return ChatAnswer(text=text, citations=citations, tokens_used=completion.tokens_used)
