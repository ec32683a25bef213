"""
Tests for engine URL handling and the job session.
"""

import pytest

from thirsty.config.settings import reset_settings
from thirsty.database import session as db_session_module


@pytest.fixture
def database_url(monkeypatch):
    def _set(url):
        if url is None:
            monkeypatch.delenv("DATABASE_URL", raising=False)
        else:
            monkeypatch.setenv("DATABASE_URL", url)
        reset_settings()
        db_session_module.reset_session_factory()
    yield _set
    db_session_module.reset_session_factory()


class TestDatabaseUrl:

    @pytest.mark.parametrize("url", [
        "postgres://u:p@db:5432/thirsty",
        "postgresql://u:p@db:5432/thirsty",
    ])
    def test_postgres_urls_use_psycopg(self, database_url, url):
        database_url(url)

        assert db_session_module._get_database_url() == "postgresql+psycopg://u:p@db:5432/thirsty"

    def test_other_urls_untouched(self, database_url):
        database_url("sqlite:///./thirsty.db")

        assert db_session_module._get_database_url() == "sqlite:///./thirsty.db"

    def test_missing_url(self, database_url):
        database_url(None)

        with pytest.raises(ValueError):
            db_session_module._get_database_url()


class TestJobSession:

    def test_not_configured(self, database_url):
        database_url(None)

        with pytest.raises(RuntimeError, match="Database not configured"):
            with db_session_module.job_session():
                pass

    def test_sqlite_session(self, database_url):
        database_url("sqlite:///:memory:")

        with db_session_module.job_session() as session:
            assert session.bind.dialect.name == "sqlite"
