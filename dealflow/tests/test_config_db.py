"""Tests for settings loading, session helpers and the CLI."""
from __future__ import annotations

import pytest
from sqlalchemy import select
from typer.testing import CliRunner

from dealflow.cli import app as cli_app
from dealflow.config import Settings, get_settings, load_settings
from dealflow.db import get_session, init_db, session_generator, session_scope
from dealflow.models import Organization
from dealflow.utils import json_parse


class TestSettings:
    def test_defaults(self, tmp_path):
        settings = get_settings()
        assert settings.project_root == tmp_path.resolve()
        assert settings.data_dir.is_dir()
        assert settings.database_url == "sqlite://"
        assert settings.chat_history_limit == 20
        assert settings.max_tokens_for("screening") == 4000
        assert settings.max_tokens_for("full") == 8000

    def test_sqlite_path_without_override(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DEALFLOW_DATABASE_URL")
        assert Settings().database_url == f"sqlite:///{tmp_path.resolve() / 'data' / 'dealflow.db'}"

    def test_yaml_overrides(self, tmp_path):
        config = tmp_path / "dealflow.yaml"
        config.write_text("llm_provider: openai\nchat_history_limit: 5\nmax_tokens_chat: 999\n")
        settings = load_settings(config)
        assert settings.llm_provider == "openai"
        assert settings.chat_history_limit == 5
        assert settings.max_tokens_for("chat") == 999

    def test_missing_yaml_is_ignored(self, tmp_path):
        assert load_settings(tmp_path / "nope.yaml").chat_history_limit == 20

    def test_env_token_limits(self, monkeypatch):
        monkeypatch.setenv("DEALFLOW_MAX_TOKENS_FULL", "12000")
        assert Settings().max_tokens_full == 12000

    def test_unknown_task(self):
        with pytest.raises(KeyError):
            Settings().max_tokens_for("poetry")


class TestSessionManagement:
    def test_session_scope_commits(self):
        init_db("sqlite://")
        with session_scope() as session:
            session.add(Organization(name="Fund"))
            session.commit()
        with session_scope() as session:
            names = session.execute(select(Organization.name)).scalars().all()
        assert names == ["Fund"]

    def test_session_scope_rollback(self):
        init_db("sqlite://")
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(Organization(name="Doomed"))
                session.flush()
                raise RuntimeError("boom")
        with session_scope() as session:
            assert session.execute(select(Organization)).scalars().all() == []

    def test_session_generator(self):
        init_db("sqlite://")
        gen = session_generator()
        session = next(gen)
        assert session.execute(select(Organization)).scalars().all() == []
        with pytest.raises(StopIteration):
            next(gen)

    def test_get_session_before_init(self, monkeypatch):
        monkeypatch.setattr("dealflow.db._SessionLocal", None)
        with pytest.raises(RuntimeError):
            get_session()


class TestJsonParse:
    def test_valid(self):
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_default(self):
        assert json_parse("{oops", []) == []

    def test_none_without_default(self):
        assert json_parse(None) == {}


class TestCli:
    def test_init_db(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'cli.db'}"
        result = CliRunner().invoke(cli_app, ["init-db", "--db-url", url])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "cli.db").exists()

    def test_reset_usage(self):
        result = CliRunner().invoke(cli_app, ["reset-usage", "--db-url", "sqlite://"])
        assert result.exit_code == 0, result.output
        assert "Reset monthly usage for 0 organization(s)" in result.output
