"""Tests for logger.py: setup_logging() and JsonFormatter.

Strategy: mock logging.basicConfig to verify setup_logging passes the right
arguments, since pytest's log capture plugin interferes with real
basicConfig calls.
"""

import json
import logging
import sys
from unittest.mock import patch

from discord_archiver.logger import JsonFormatter, setup_logging


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_logs_to_stderr(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging()

        mock_basic.assert_called_once()
        kwargs = mock_basic.call_args[1]
        [handler] = kwargs["handlers"]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr
        assert kwargs["level"] == logging.INFO

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_log_file_adds_file_handler(self, mock_basic, tmp_path):
        log_file = tmp_path / "archiver.log"
        setup_logging(log_file=str(log_file))

        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 2
        assert isinstance(handlers[1], logging.FileHandler)
        assert handlers[1].baseFilename == str(log_file)
        handlers[1].close()

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_debug_overrides_level(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(debug=True)
        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_env_log_level_beats_config_level(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(level="DEBUG")
        assert mock_basic.call_args[1]["level"] == logging.ERROR

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_config_level_used_without_env(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging(level="warning")
        assert mock_basic.call_args[1]["level"] == logging.WARNING

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_unknown_level_falls_back_to_info(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "CHATTY")
        setup_logging()
        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_json_format_uses_json_formatter(self, mock_basic):
        setup_logging(log_format="json")
        [handler] = mock_basic.call_args[1]["handlers"]
        assert isinstance(handler.formatter, JsonFormatter)

    @patch("discord_archiver.logger.logging.basicConfig")
    def test_gateway_loggers_silenced(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging()
        assert logging.getLogger("discord").level == logging.WARNING
        assert logging.getLogger("aiohttp").level == logging.WARNING


class TestJsonFormatter:
    def test_single_line_json(self):
        record = logging.LogRecord(
            name="discord_archiver.sync.engine",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Backfill of %s done",
            args=("100",),
            exc_info=None,
        )
        line = JsonFormatter().format(record)

        assert "\n" not in line
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "discord_archiver.sync.engine"
        assert entry["msg"] == "Backfill of 100 done"
        assert "exc" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", None, exc_info
        )
        entry = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in entry["exc"]
