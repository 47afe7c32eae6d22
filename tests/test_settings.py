# tests/test_settings.py
import pytest

import parlor.db as db
from parlor.core.settings import Settings


def test_database_url_used_as_is(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://chat@db/parlor")
    monkeypatch.delenv("USE_TEST_DATABASE", raising=False)

    assert Settings(_env_file=None).effective_database_url == "postgresql+psycopg://chat@db/parlor"


def test_test_database_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./parlor.db")
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("USE_TEST_DATABASE", "true")

    assert Settings(_env_file=None).effective_database_url == "sqlite://"


def test_db_package_exports_only_live_helpers() -> None:
    assert sorted(db.__all__) == ["SessionLocal", "create_tables"]
    assert not hasattr(Settings, "database_url_sync")
