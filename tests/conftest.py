"""Pytest configuration for the querygate test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests._helpers.db import seed_sample_db


@pytest.fixture
def sample_db(tmp_path: Path) -> Path:
    """Provide a DuckDB file seeded with the Employees sample schema.

    Returns
    -------
    Path
        Path to the seeded database file.
    """
    return seed_sample_db(tmp_path)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host configuration out of tests that read the environment."""
    for name in ("DATABASE_URL", "DEBUG"):
        # setenv first so teardown also removes values loaded from a .env file
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
