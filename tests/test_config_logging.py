"""Tests for config and logging."""

import json
import logging
import sys
from pathlib import Path
from typing import Iterator

import pytest

from sas_financier.config import DEFAULT_APP_NAME, DEV_SECRET_KEY, AppConfig
from sas_financier.exceptions import ConfigurationError
from sas_financier.logging import JsonFormatter, get_logger, setup_logging


class TestAppConfig:
    """Tests for AppConfig."""

    def test_default_values(self) -> None:
        config = AppConfig()

        assert config.db_path == Path("sas_financier.db")
        assert config.upload_dir == Path("uploads")
        assert config.secret_key == DEV_SECRET_KEY
        assert config.default_app_name == DEFAULT_APP_NAME
        assert config.log_level == "INFO"
        assert config.log_format == "standard"
        assert config.min_password_length == 6

    def test_paths_are_converted(self) -> None:
        config = AppConfig(db_path="data/app.db", upload_dir="data/files")

        assert config.db_path == Path("data/app.db")
        assert config.upload_dir == Path("data/files")

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAS_DB", "/tmp/sas.db")
        monkeypatch.setenv("SAS_UPLOAD_DIR", "/tmp/sas-files")
        monkeypatch.setenv("SAS_SECRET_KEY", "s3cr3t")
        monkeypatch.setenv("SAS_APP_NAME", "Amicale ISEP")
        monkeypatch.setenv("SAS_ADMIN_EMAIL", "bureau@asso.sn")
        monkeypatch.setenv("SAS_ADMIN_PASSWORD", "changeme")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_FORMAT", "JSON")

        config = AppConfig.from_env()

        assert config.db_path == Path("/tmp/sas.db")
        assert config.upload_dir == Path("/tmp/sas-files")
        assert config.secret_key == "s3cr3t"
        assert config.default_app_name == "Amicale ISEP"
        assert config.bootstrap_email == "bureau@asso.sn"
        assert config.bootstrap_password == "changeme"
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"

    def test_from_env_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ("SAS_DB", "SAS_SECRET_KEY", "SAS_APP_NAME", "LOG_FORMAT"):
            monkeypatch.delenv(var, raising=False)

        config = AppConfig.from_env()

        assert config.db_path == Path("sas_financier.db")
        assert config.secret_key == DEV_SECRET_KEY
        assert config.log_format == "standard"

    def test_unknown_log_format(self) -> None:
        with pytest.raises(ConfigurationError, match="Format de log inconnu"):
            AppConfig(log_format="xml")

    def test_empty_secret(self) -> None:
        with pytest.raises(ConfigurationError):
            AppConfig(secret_key="")

    def test_min_password_length_must_be_positive(self) -> None:
        with pytest.raises(ConfigurationError):
            AppConfig(min_password_length=0)


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.usefixtures("restore_root_logger")
class TestSetupLogging:
    """Tests for setup_logging."""

    def test_standard_format(self) -> None:
        setup_logging(level="DEBUG", format_type="standard")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("sas_financier").level == logging.DEBUG

    def test_json_format(self) -> None:
        setup_logging(level="INFO", format_type="json")

        root = logging.getLogger()
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_unknown_level_falls_back_to_info(self) -> None:
        setup_logging(level="VERBOSE")

        assert logging.getLogger().level == logging.INFO

    def test_replaces_existing_handlers(self) -> None:
        setup_logging()
        setup_logging()

        assert len(logging.getLogger().handlers) == 1

    def test_quiets_access_log(self) -> None:
        setup_logging(level="DEBUG")

        assert logging.getLogger("uvicorn.access").level == logging.WARNING


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def _record(self, msg: str, exc_info=None) -> logging.LogRecord:
        return logging.LogRecord(
            name="sas_financier.test",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,
        )

    def test_basic_fields(self) -> None:
        data = json.loads(JsonFormatter().format(self._record("Transaction approuvée")))

        assert data["level"] == "WARNING"
        assert data["logger"] == "sas_financier.test"
        assert data["message"] == "Transaction approuvée"
        assert "timestamp" in data

    def test_timestamp_is_event_time(self) -> None:
        record = self._record("x")
        record.created = 1700000000.0

        data = json.loads(JsonFormatter().format(record))

        assert data["timestamp"] == "2023-11-14T22:13:20+00:00"

    def test_only_known_fields(self) -> None:
        data = json.loads(JsonFormatter().format(self._record("x")))

        assert set(data) == {"timestamp", "level", "logger", "message"}

    def test_keeps_accents_readable(self) -> None:
        line = JsonFormatter().format(self._record("Trésorier"))

        assert "Trésorier" in line

    def test_exception_included(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._record("failed", exc_info=sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


def test_get_logger() -> None:
    logger = get_logger("sas_financier.web")

    assert logger.name == "sas_financier.web"
    assert isinstance(logger, logging.Logger)
