"""Tests for hearth.logging_config module."""

import logging

import pytest

from hearth.logging_config import (
    get_hearth_home,
    log_engine_event,
    log_migration,
    log_populate,
    log_sync,
    setup_hearth_logging,
)


@pytest.fixture(autouse=True)
def clean_hearth_logger():
    """Remove all handlers from the hearth logger before/after each test."""
    logger = logging.getLogger("hearth")
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Set HEARTH_DATA_DIR so logs go to a temp directory."""
    monkeypatch.setenv("HEARTH_DATA_DIR", str(tmp_path))
    return tmp_path / "logs"


def _stream_handlers(logger):
    return [
        h
        for h in logger.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]


class TestSetupHearthLogging:
    """Tests for setup_hearth_logging."""

    def test_returns_hearth_logger(self, log_dir):
        logger = setup_hearth_logging("tasks")
        assert logger.name == "hearth"

    def test_home_defaults_to_user_directory(self, monkeypatch):
        monkeypatch.delenv("HEARTH_DATA_DIR", raising=False)
        assert get_hearth_home().name == ".hearth"

    def test_creates_log_file(self, log_dir):
        """Should create local-{date}.log inside the logs directory."""
        assert not log_dir.exists()
        setup_hearth_logging("tasks")
        log_files = list(log_dir.glob("local-*.log"))
        assert len(log_files) == 1

    @pytest.mark.parametrize(
        "level, expected",
        [
            ("INFO", logging.INFO),
            ("debug", logging.DEBUG),
            ("WARNING", logging.WARNING),
            ("INVALID", logging.INFO),
        ],
    )
    def test_levels(self, log_dir, level, expected):
        """Level names are case-insensitive; unknown names fall back to INFO."""
        assert setup_hearth_logging("tasks", level).level == expected

    def test_debug_adds_console_handler(self, log_dir):
        assert len(_stream_handlers(setup_hearth_logging("tasks", "DEBUG"))) == 1

    def test_info_has_no_console_handler(self, log_dir):
        assert _stream_handlers(setup_hearth_logging("tasks", "INFO")) == []

    def test_no_duplicate_handlers(self, log_dir):
        """Calling setup twice should not add duplicate handlers."""
        logger = setup_hearth_logging("tasks")
        setup_hearth_logging("tasks")
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

    def test_module_loggers_reach_the_file(self, log_dir):
        """Records from hearth.* module loggers propagate to the file."""
        logger = setup_hearth_logging("tasks", "INFO")
        logging.getLogger("hearth.sync_engine").info("format check")
        for handler in logger.handlers:
            handler.flush()
        content = next(log_dir.glob("local-*.log")).read_text()
        assert " | INFO | hearth.sync_engine | format check" in content


class TestEngineEvents:
    """Tests for the engine event log."""

    def _lines(self, log_dir):
        files = list(log_dir.glob("engine-events-*.log"))
        assert len(files) == 1
        return files[0].read_text().splitlines()

    def test_event_line_format(self, log_dir):
        log_engine_event("custom", "detail text", "tasks")
        (line,) = self._lines(log_dir)
        parts = line.split(" | ")
        assert parts[1:] == ["custom", "db=tasks", "detail text"]

    def test_helpers_append(self, log_dir):
        log_migration("tasks", 3, 2)
        log_sync("tasks", pushed=4, pulled=1, skipped=2)
        log_populate("tasks", stores=2, rows=10)
        lines = self._lines(log_dir)
        assert lines[0].endswith("migration | db=tasks | ops=3, version=2")
        assert lines[1].endswith("sync | db=tasks | pushed=4, pulled=1, skipped=2")
        assert lines[2].endswith("populate | db=tasks | stores=2, rows=10")

    def test_errors_are_truncated(self, log_dir):
        log_sync("tasks", 0, 0, error="x" * 500)
        (line,) = self._lines(log_dir)
        assert line.endswith("error=" + "x" * 200)

    def test_engine_writes_events_when_enabled(self, log_dir, engine_factory, task_definition):
        engine = engine_factory(stores=[task_definition], event_log=True)
        engine.stores["Task"].create({"id": "a"})
        engine.sync()
        lines = self._lines(log_dir)
        assert "| migration | db=hearth |" in lines[0]
        assert "| sync | db=hearth | pushed=1, pulled=0, skipped=0" in lines[1]

    def test_engine_is_silent_by_default(self, log_dir, engine):
        engine.sync()
        assert not list(log_dir.glob("engine-events-*.log"))
