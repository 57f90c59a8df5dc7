"""Completion client: one request to the text-generation service per call.

The client owns model selection and output ceilings per task type.  It does
not retry and does not wrap provider errors; the generation orchestrator
decides what a failure means.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from dealflow.config import Settings, get_settings

log = logging.getLogger(__name__)

TASKS = ("screening", "full", "classification", "chat")

_DEFAULT_MODELS: dict[str, dict[str, str]] = {
    "anthropic": {
        "assessment": "claude-sonnet-4-20250514",
        "classification": "claude-3-5-haiku-20241022",
    },
    "openai": {
        "assessment": "gpt-4o",
        "classification": "gpt-4o-mini",
    },
}


class NoTextResponse(Exception):
    """The service answered without a usable text block."""


@dataclass(frozen=True)
class TaskProfile:
    model: str
    max_tokens: int


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def _first_text_block(content: Sequence[Any]) -> str | None:
    for block in content or ():
        if getattr(block, "type", None) == "text":
            return block.text
    return None


class LLMClient:
    """Async client over Anthropic or an OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or self.settings.llm_provider
        self._api_key = api_key
        self._base_url = base_url or self.settings.llm_base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        timeout = self.settings.llm_timeout_seconds
        if self.provider == "anthropic":
            import anthropic
            kwargs: dict[str, Any] = {"timeout": timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            kwargs = {"timeout": timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    def profile(self, task: str) -> TaskProfile:
        if task not in TASKS:
            raise ValueError(f"Unknown completion task: {task!r}")
        defaults = _DEFAULT_MODELS["anthropic" if self.provider == "anthropic" else "openai"]
        if task == "classification":
            model = self.settings.classification_model or defaults["classification"]
        else:
            model = self.settings.assessment_model or defaults["assessment"]
        return TaskProfile(model=model, max_tokens=self.settings.max_tokens_for(task))

    @property
    def model(self) -> str:
        return self.profile("screening").model

    async def complete(
        self,
        task: str,
        prompt: str | None = None,
        *,
        system: str | None = None,
        messages: list[dict[str, str]] | None = None,
    ) -> Completion:
        """Send a single prompt (or a message list) and return the raw text.

        Raises :class:`NoTextResponse` when the service returns no text block.
        Provider exceptions propagate unchanged.
        """
        profile = self.profile(task)
        if messages is None:
            if prompt is None:
                raise ValueError("complete() needs a prompt or messages")
            messages = [{"role": "user", "content": prompt}]

        log.debug("LLM %s call: model=%s max_tokens=%d", task, profile.model, profile.max_tokens)
        if self.provider == "anthropic":
            kwargs: dict[str, Any] = {
                "model": profile.model,
                "max_tokens": profile.max_tokens,
                "messages": messages,
            }
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(**kwargs)
            text = _first_text_block(response.content)
            usage = response.usage
            input_tokens = getattr(usage, "input_tokens", 0) or 0
            output_tokens = getattr(usage, "output_tokens", 0) or 0
        else:
            chat = ([{"role": "system", "content": system}] if system else []) + list(messages)
            response = await self._client.chat.completions.create(
                model=profile.model,
                max_tokens=profile.max_tokens,
                messages=chat,
            )
            text = response.choices[0].message.content if response.choices else None
            usage = response.usage
            input_tokens = getattr(usage, "prompt_tokens", 0) or 0
            output_tokens = getattr(usage, "completion_tokens", 0) or 0

        if not text:
            raise NoTextResponse(f"No text response from {self.provider} ({profile.model})")
        return Completion(
            text=text, input_tokens=input_tokens, output_tokens=output_tokens, model=profile.model,
        )
