import pytest
from sqlalchemy.exc import OperationalError

from inventory import crud
from inventory.database import session_scope, storage_retry
from inventory.logging_config import get_log_level
from inventory.models import Warehouse


class TestLogLevel:
    @pytest.mark.parametrize(
        "environment, expected",
        [("production", "INFO"), ("development", "DEBUG"), ("test", "WARNING"), ("unknown", "INFO")],
    )
    def test_level_follows_environment(self, monkeypatch, environment, expected):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.setenv("ENVIRONMENT", environment)

        assert get_log_level() == expected

    def test_explicit_level_wins(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("LOG_LEVEL", "error")

        assert get_log_level() == "ERROR"


class TestSessionScope:
    def test_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as db:
                db.add(Warehouse(id="W9", name="Doomed"))
                db.flush()
                raise RuntimeError("boom")

        with session_scope(session_factory) as db:
            assert crud.get_warehouse(db, "W9") is None


class TestStorageRetry:
    def test_retries_operational_errors(self):
        calls = []

        @storage_retry
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_three_attempts(self):
        calls = []

        @storage_retry
        def down():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(OperationalError):
            down()
        assert len(calls) == 3

    def test_other_errors_are_not_retried(self):
        calls = []

        @storage_retry
        def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            broken()
        assert calls == [1]
