# tests/unit/core/test_logging.py
"""Tests for structured logging configuration."""

import json
import logging

import pytest


class TestLoggingConfig:
    """Tests for logging configuration."""

    def test_get_logger_returns_bound_logger(self) -> None:
        from tokensim.core.logging import get_logger

        logger = get_logger("test")
        assert hasattr(logger, "info")
        assert hasattr(logger, "bind")

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        """JSON mode renders one parseable object per line."""
        from tokensim.core.logging import configure_logging, get_logger

        configure_logging(json_output=True)
        get_logger("test").info("token_created", token_id="ab12cd34")

        line = capsys.readouterr().out.strip().split("\n")[-1]
        data = json.loads(line)
        assert data["event"] == "token_created"
        assert data["token_id"] == "ab12cd34"
        assert data["level"] == "info"
        assert "_record" not in data
        assert "_from_structlog" not in data

    def test_console_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        from tokensim.core.logging import configure_logging, get_logger

        configure_logging(json_output=False)
        get_logger("test").info("state_transitioned", to_state="processing")

        out = capsys.readouterr().out
        assert "state_transitioned" in out
        assert "processing" in out

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        from tokensim.core.logging import configure_logging, get_logger

        configure_logging(json_output=True, level="INFO")
        get_logger("test").debug("hidden_event")

        assert "hidden_event" not in capsys.readouterr().out

    def test_stdlib_logging_uses_same_renderer(self, capsys: pytest.CaptureFixture[str]) -> None:
        from tokensim.core.logging import configure_logging

        configure_logging(json_output=True)
        logging.getLogger("plain.stdlib").warning("from stdlib")

        line = capsys.readouterr().out.strip().split("\n")[-1]
        assert json.loads(line)["event"] == "from stdlib"

    def test_noisy_loggers_held_at_warning(self) -> None:
        from tokensim.core.logging import configure_logging

        configure_logging(level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING


class TestNodeLogContext:
    def test_binds_node_id_inside_block_only(self, capsys: pytest.CaptureFixture[str]) -> None:
        from tokensim.core.logging import configure_logging, get_logger, node_log_context

        configure_logging(json_output=True)
        logger = get_logger("test")

        with node_log_context("Queue_1", tick=3):
            logger.info("inside")
        logger.info("outside")

        lines = [json.loads(line) for line in capsys.readouterr().out.strip().split("\n")]
        inside = next(line for line in lines if line["event"] == "inside")
        outside = next(line for line in lines if line["event"] == "outside")
        assert inside["node_id"] == "Queue_1"
        assert inside["tick"] == 3
        assert "node_id" not in outside
