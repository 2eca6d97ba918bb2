"""Unit tests for trmnl_emulator.emulator_logging module."""

import logging
from collections.abc import Iterator

import pytest

from trmnl_emulator.emulator_logging import (
    EMULATOR_LOGGER,
    NOISY_LOGGERS,
    configure_logging,
    get_logging_status,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def restore_levels() -> Iterator[None]:
    """Put logger levels back after each test."""
    names = ("", EMULATOR_LOGGER, *NOISY_LOGGERS)
    saved = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_configure_logging_when_info_then_third_party_quieted(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test library loggers are held at WARNING."""
        monkeypatch.delenv("TRMNL_DEBUG", raising=False)

        configure_logging("INFO")

        assert logging.getLogger(EMULATOR_LOGGER).level == logging.INFO
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_configure_logging_when_debug_env_set_then_debug(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test TRMNL_DEBUG forces debug output for the emulator only."""
        monkeypatch.setenv("TRMNL_DEBUG", "true")

        configure_logging("WARNING")

        assert logging.getLogger(EMULATOR_LOGGER).level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_configure_logging_when_forced_off_then_env_ignored(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an explicit force_debug wins over the environment."""
        monkeypatch.setenv("TRMNL_DEBUG", "1")

        configure_logging("ERROR", force_debug=False)

        assert logging.getLogger(EMULATOR_LOGGER).level == logging.ERROR

    def test_get_logging_status_when_configured_then_reports_levels(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the status lists the emulator and library loggers."""
        monkeypatch.delenv("TRMNL_DEBUG", raising=False)
        configure_logging("DEBUG")

        status = get_logging_status()

        assert status[EMULATOR_LOGGER] == "DEBUG"
        assert status["PIL"] == "WARNING"
