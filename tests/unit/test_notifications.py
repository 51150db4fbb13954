"""
Unit tests for best-effort notification delivery.
"""
import logging

from conftest import RecordingNotifier

from hollon_orchestrator.notifications import REASSIGNMENT, LoggingNotifier, Notifier, send_notification


class ExplodingNotifier(Notifier):
    async def notify(self, recipient_id, kind, payload):
        raise RuntimeError("smtp down")


class TestSendNotification:

    async def test_delivered(self):
        """A notification reaches the channel unchanged."""
        notifier = RecordingNotifier()
        assert await send_notification(notifier, "m1", REASSIGNMENT, {"task_id": "t"}) is True
        assert notifier.sent == [("m1", REASSIGNMENT, {"task_id": "t"})]

    async def test_missing_channel_or_recipient(self):
        """Nothing is sent without a channel or a recipient."""
        assert await send_notification(None, "m1", REASSIGNMENT, {}) is False
        assert await send_notification(RecordingNotifier(), None, REASSIGNMENT, {}) is False

    async def test_failures_are_swallowed(self, caplog):
        """Delivery errors are logged, never raised."""
        with caplog.at_level(logging.WARNING):
            assert await send_notification(ExplodingNotifier(), "m1", REASSIGNMENT, {}) is False
        assert "smtp down" in caplog.text

    async def test_logging_notifier(self, caplog):
        """The logging channel writes one line per notification."""
        with caplog.at_level(logging.INFO):
            await LoggingNotifier().notify("m1", REASSIGNMENT, {"task_id": "t"})
        assert "[reassignment] -> m1" in caplog.text
