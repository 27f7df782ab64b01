"""Tests for loguru sink configuration."""

from __future__ import annotations

from loguru import logger

from recall.logging import configure_logging


def test_file_sink_receives_messages(tmp_path):
    log_file = tmp_path / "logs" / "recall.log"
    configure_logging("DEBUG", log_file)
    try:
        logger.debug("sync started for {}", "memory")
        logger.complete()
        assert "sync started for memory" in log_file.read_text(encoding="utf-8")
    finally:
        configure_logging("WARNING")


def test_level_filters_file_sink(tmp_path):
    log_file = tmp_path / "recall.log"
    configure_logging("WARNING", log_file)
    try:
        logger.info("quiet message")
        logger.warning("loud message")
        text = log_file.read_text(encoding="utf-8")
        assert "loud message" in text
        assert "quiet message" not in text
    finally:
        configure_logging("WARNING")
