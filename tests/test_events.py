"""
Tests for the event bus and the cancellation flag.
"""

from __future__ import annotations

import logging

import pytest

from ncentral_migrator.events import CancelToken, EventBus
from ncentral_migrator.models import LogMessage, ProgressUpdate


@pytest.mark.unit
class TestEventBus:
    """Test broadcasting."""

    def test_progress_reaches_every_subscriber(self) -> None:
        """All subscribers receive the update."""
        bus = EventBus()
        first: list[ProgressUpdate] = []
        second: list[ProgressUpdate] = []
        bus.subscribe_progress(first.append)
        bus.subscribe_progress(second.append)

        bus.progress("Customers", "Fetching...", 10.0, 1, 4)

        assert first == second == [ProgressUpdate("Customers", "Fetching...", 10.0, 1, 4)]
        assert bus.last_progress == first[0]

    def test_percent_is_clamped(self) -> None:
        """Out-of-range percentages are clamped."""
        bus = EventBus()
        bus.progress("X", "over", 120.0)
        assert bus.last_progress is not None
        assert bus.last_progress.percent == 100.0

        bus.progress("X", "under", -5.0)
        assert bus.last_progress.percent == 0.0

    def test_failing_subscriber_does_not_break_others(self, caplog: pytest.LogCaptureFixture) -> None:
        """An exception in one handler is logged and the rest still run."""
        bus = EventBus()
        received: list[ProgressUpdate] = []

        def broken(_update: ProgressUpdate) -> None:
            msg = "subscriber bug"
            raise RuntimeError(msg)

        bus.subscribe_progress(broken)
        bus.subscribe_progress(received.append)

        with caplog.at_level(logging.ERROR):
            bus.progress("Users", "Migrating", 50.0)

        assert len(received) == 1
        assert "subscriber bug" in caplog.text

    def test_unsubscribe(self) -> None:
        """The returned callable removes the handler."""
        bus = EventBus()
        received: list[LogMessage] = []
        unsubscribe = bus.subscribe_log(received.append)

        bus.log("info", "one")
        unsubscribe()
        bus.log("info", "two")

        assert received == [LogMessage("info", "one")]

    def test_log_is_mirrored_to_logging(self, caplog: pytest.LogCaptureFixture) -> None:
        """Log events are also written to the given logger at the matching level."""
        bus = EventBus()
        source = logging.getLogger("ncentral_migrator.test_source")

        with caplog.at_level(logging.WARNING, logger="ncentral_migrator.test_source"):
            bus.log("WARN", "site skipped", source)

        assert caplog.records[0].levelno == logging.WARNING
        assert caplog.records[0].name == "ncentral_migrator.test_source"


@pytest.mark.unit
class TestCancelToken:
    """Test the cancellation flag."""

    def test_cancel_and_reset(self) -> None:
        """The flag can be set and cleared."""
        token = CancelToken()
        assert token.cancelled is False

        token.cancel()
        assert token.cancelled is True

        token.reset()
        assert token.cancelled is False
