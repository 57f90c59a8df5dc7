from __future__ import annotations

import json

import pytest

from dealflow.config import get_settings
from dealflow.llm import Completion


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep settings, data dir and database away from the working tree."""
    monkeypatch.setenv("DEALFLOW_HOME", str(tmp_path))
    monkeypatch.setenv("DEALFLOW_DATABASE_URL", "sqlite://")
    monkeypatch.delenv("DEALFLOW_CONFIG", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeLLMClient:
    """Stands in for LLMClient: returns canned text, or raises a canned error."""

    def __init__(self, text: str = "", *, error: Exception | None = None, model: str = "fake-model"):
        self.text = text
        self.error = error
        self.model = model
        self.calls: list[dict] = []

    async def complete(self, task, prompt=None, *, system=None, messages=None) -> Completion:
        self.calls.append({"task": task, "prompt": prompt, "system": system, "messages": messages})
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, input_tokens=1200, output_tokens=300, model=self.model)


def screening_payload(**score_overrides) -> dict:
    scores = {
        "market": 80, "team": 70, "product": 60,
        "traction": 90, "financials": 50, "competitive": 40,
    }
    scores.update(score_overrides)
    return {
        "summary": "Vertical SaaS for dental clinics.",
        "keyHighlights": ["Strong retention"],
        "redFlags": ["Single founder"],
        "quickTake": "Worth a deeper look.",
        "recommendedNextSteps": ["Reference calls"],
        "scores": {
            dim: {"score": value, "reasoning": f"{dim} reasoning", "strengths": [], "concerns": []}
            for dim, value in scores.items()
        },
        "recommendation": {
            "recommendation": "proceed",
            "confidence": 0.7,
            "primaryReasons": ["Traction"],
        },
    }


@pytest.fixture()
def fake_llm():
    return FakeLLMClient(json.dumps(screening_payload()))


@pytest.fixture()
def make_llm():
    return FakeLLMClient


@pytest.fixture()
def make_payload():
    return screening_payload
