"""Citation extraction for generated chat answers."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from dealflow.prompts import DocumentExcerpt

SOURCE_MARKER_RE = re.compile(r"\[Source:\s*([^\]]+)\]", re.IGNORECASE)
_SENTENCE_END = (".", "!", "?")


@dataclass(frozen=True)
class Citation:
    source: str
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "text": self.text}


def resolve_source(name: str, documents: Sequence[DocumentExcerpt]) -> DocumentExcerpt | None:
    """First document whose name contains the marker text, or is contained by it."""
    needle = name.strip().lower()
    for doc in documents:
        candidate = doc.file_name.lower()
        if needle in candidate or candidate in needle:
            return doc
    return None


def excerpt_before(text: str, position: int) -> str:
    """The sentence fragment between the last terminator and *position*."""
    prefix = text[:position]
    last = max(prefix.rfind(ch) for ch in _SENTENCE_END)
    return prefix[last + 1:].strip()


def extract_citations(
    text: str, documents: Sequence[DocumentExcerpt],
) -> tuple[str, list[Citation]]:
    """Return the text unchanged plus one citation per cited document.

    Unresolvable markers stay in the text and produce no citation.
    """
    citations: list[Citation] = []
    seen: set[str] = set()
    for match in SOURCE_MARKER_RE.finditer(text):
        doc = resolve_source(match.group(1), documents)
        if doc is None or doc.file_name in seen:
            continue
        quoted = excerpt_before(text, match.start())
        if not quoted:
            continue
        seen.add(doc.file_name)
        citations.append(Citation(source=doc.file_name, text=quoted))
    return text, citations
