"""
App factory, configuration and structured logging tests.
"""

import json
import logging

import pytest

from discovery.config import ProductionConfig, TestingConfig
from discovery.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord("discovery.services", logging.INFO, __file__, 10,
                               "Lock acquired by %s", ("alice",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLoggingFormatters:

    def test_json_formatter_lifts_extras(self):
        line = JSONFormatter().format(_record(session_id=7, holder_id="alice", unrelated="x"))
        entry = json.loads(line)
        assert entry["message"] == "Lock acquired by alice"
        assert entry["session_id"] == 7
        assert entry["holder_id"] == "alice"
        assert "unrelated" not in entry

    def test_readable_formatter_shows_session(self):
        line = ReadableFormatter().format(_record(session_id=7, duration_ms=12.3))
        assert "(session=7)" in line
        assert "[12ms]" in line


class TestConfig:

    def test_testing_app(self, app):
        assert app.config["TESTING"] is True
        assert app.config["INTERPRETER_MODEL"] == "local-stub"
        assert app.extensions["discovery"] is not None

    def test_testing_config_has_no_backoff(self):
        assert TestingConfig.LLM_RETRY_BACKOFF_SECONDS == 0

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            ProductionConfig()

    def test_production_requires_secret_key(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "postgresql://db/discovery")
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            ProductionConfig()
