"""
Database Session Tests
======================

Tests for engine configuration.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from app.db import session


@pytest.fixture
def fresh_engine(monkeypatch):
    monkeypatch.setattr(session, "_engine", None)
    monkeypatch.setattr(session, "_async_session_factory", None)
    monkeypatch.setattr(
        session,
        "settings",
        SimpleNamespace(
            database_url_async="postgresql+asyncpg://user:pw@db/app",
            DATABASE_POOL_SIZE=4,
            DATABASE_STATEMENT_TIMEOUT_SECONDS=5.0,
            DATABASE_POOL_TIMEOUT_SECONDS=30.0,
        ),
    )


def test_pool_wait_and_statement_timeout_are_separate(fresh_engine):
    with patch("app.db.session.create_async_engine") as create:
        session.get_engine()

    kwargs = create.call_args.kwargs
    assert kwargs["pool_timeout"] == 30.0
    assert kwargs["connect_args"] == {"command_timeout": 5.0}
    assert kwargs["max_overflow"] == 8


def test_missing_database_url(monkeypatch, fresh_engine):
    monkeypatch.setattr(session.settings, "database_url_async", "")

    with pytest.raises(ValueError):
        session.get_engine()
