"""Shared test fixtures."""

from pathlib import Path

import pytest

from taskmesh.queue import LibsqlTaskQueue, LibsqlTimestampStore


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("taskmesh.config.settings.turso_database_url", "")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def queue(db_path: Path, _no_turso) -> LibsqlTaskQueue:
    return LibsqlTaskQueue(db_path=db_path)


@pytest.fixture
def timestamps(db_path: Path, _no_turso) -> LibsqlTimestampStore:
    return LibsqlTimestampStore(db_path=db_path)

