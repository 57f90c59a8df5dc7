from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("DEALFLOW_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_path: Path = Field(default_factory=lambda: _resolve_project_root() / "data" / "dealflow.db")
    config_file: Path | None = Field(
        default_factory=lambda: Path(p) if (p := os.getenv("DEALFLOW_CONFIG", "").strip()) else None
    )

    # LLM provider and model selection. Empty model names fall back to the
    # provider defaults in ``dealflow.llm``.
    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    assessment_model: str = Field(default_factory=lambda: os.getenv("DEALFLOW_ASSESSMENT_MODEL", ""))
    classification_model: str = Field(default_factory=lambda: os.getenv("DEALFLOW_CLASSIFICATION_MODEL", ""))
    llm_base_url: str | None = Field(default_factory=lambda: os.getenv("OPENAI_BASE_URL") or None)
    llm_timeout_seconds: float = 600.0

    # Output ceilings per task type
    max_tokens_screening: int = Field(default_factory=lambda: _env_int("DEALFLOW_MAX_TOKENS_SCREENING", 4000))
    max_tokens_full: int = Field(default_factory=lambda: _env_int("DEALFLOW_MAX_TOKENS_FULL", 8000))
    max_tokens_classification: int = 500
    max_tokens_chat: int = 2000

    # Prompt context limits
    document_char_limit: int | None = None
    chat_history_limit: int = 20
    chat_document_limit: int = 10
    chat_document_char_limit: int = 3000

    # Identity the MCP server acts as
    mcp_org_id: int = Field(default_factory=lambda: _env_int("DEALFLOW_MCP_ORG_ID", 1))
    mcp_user_id: int = Field(default_factory=lambda: _env_int("DEALFLOW_MCP_USER_ID", 1))
    mcp_role: str = "admin"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        override = os.getenv("DEALFLOW_DATABASE_URL", "").strip()
        if override:
            return override
        return f"sqlite:///{self.database_path}"

    def max_tokens_for(self, task: str) -> int:
        return {
            "screening": self.max_tokens_screening,
            "full": self.max_tokens_full,
            "classification": self.max_tokens_classification,
            "chat": self.max_tokens_chat,
        }[task]


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(config_file: Path | None = None) -> Settings:
    """Build settings from the environment, then apply YAML overrides if present."""
    base = Settings()
    path = config_file or base.config_file
    if path is None:
        return base
    overrides = load_yaml(Path(path))
    if not overrides:
        return base
    return Settings.model_validate({**base.model_dump(), **overrides})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    settings.ensure_directories()
    return settings
