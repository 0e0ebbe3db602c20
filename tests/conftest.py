"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from tabula_ingestor.models.base import reset_engine
from tabula_ingestor.utils.config import get_service_configuration, get_settings


@pytest.fixture(autouse=True)
def _isolated_database(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    """Point every test at its own SQLite file so stored rows never leak between tests."""

    db_path = tmp_path_factory.mktemp("sqlite-db") / "ingestion.sqlite"
    monkeypatch.setenv("TABULA_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("TABULA_BACKEND_MODE", "direct")

    reset_engine()
    get_settings(reload=True)
    get_service_configuration(reload=True)
    yield
    reset_engine()
    get_settings(reload=True)


@pytest.fixture
def sleeps() -> list[float]:
    """Collects backoff delays instead of sleeping."""

    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def sample_csv(tmp_path: Path) -> Path:
    """Five customer rows with a header line."""

    path = tmp_path / "customers.csv"
    path.write_text(
        "id,name,email,city\n"
        "1,Alice Johnson,alice@example.com,London\n"
        "2,Bob Smith,bob@example.com,Paris\n"
        "3,Carol White,,Rome\n"
        "4,Dan Brown,dan@example.com,Berlin\n"
        "5,Eve Black,eve@example.com,Madrid\n",
        encoding="utf-8",
    )
    return path
