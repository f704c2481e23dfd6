"""
Tests for Notification Engine Module

Tests in-app notification storage, read tracking, channel provider fan-out
and the webhook provider.
"""

import threading

import pytest
from unittest.mock import MagicMock

import requests

from microlend.notifications import (
    NotificationEngine,
    NotificationPriority,
    NotificationType,
    Notification,
    ChannelProvider,
    LogChannelProvider,
    WebhookChannelProvider
)


class MockChannelProvider(ChannelProvider):
    """Mock channel provider for testing"""

    def __init__(self, should_succeed: bool = True, should_raise: bool = False):
        self.should_succeed = should_succeed
        self.should_raise = should_raise
        self.sent_notifications = []

    def send(self, notification: Notification) -> bool:
        if self.should_raise:
            raise RuntimeError("provider down")
        self.sent_notifications.append(notification)
        return self.should_succeed


@pytest.fixture
def provider():
    return MockChannelProvider()


@pytest.fixture
def notification_engine(storage, clock, provider):
    engine = NotificationEngine(storage, clock, [provider])
    yield engine
    engine.close()


def send_funding_confirmed(engine, user_id="lender-1"):
    return engine.notify(
        user_id,
        NotificationType.FUNDING_CONFIRMED,
        "Funding confirmed",
        "You funded loan #loan-1 with LKR 100,000.00.",
        NotificationPriority.HIGH,
        {"loan_id": "loan-1", "amount": "100000.00"},
    )


class TestNotificationEngine:
    """Test the core notification engine functionality"""

    def test_notify_stores_unread_notification(self, notification_engine):
        notification = send_funding_confirmed(notification_engine)

        stored = notification_engine.get_notifications("lender-1")
        assert [n.id for n in stored] == [notification.id]
        assert stored[0].is_read is False
        assert stored[0].loan_id == "loan-1"
        assert stored[0].priority == NotificationPriority.HIGH
        assert stored[0].context["amount"] == "100000.00"

    def test_notify_fans_out_to_providers(self, notification_engine, provider):
        notification = send_funding_confirmed(notification_engine)
        assert notification_engine.flush(timeout=5)
        assert [n.id for n in provider.sent_notifications] == [notification.id]

    def test_provider_failures_are_swallowed(self, storage, clock):
        failing = MockChannelProvider(should_raise=True)
        refusing = MockChannelProvider(should_succeed=False)
        healthy = MockChannelProvider()
        engine = NotificationEngine(storage, clock, [failing, refusing, healthy])

        send_funding_confirmed(engine)
        assert engine.flush(timeout=5)

        assert len(healthy.sent_notifications) == 1
        assert engine.get_unread_count("lender-1") == 1
        engine.close()

    def test_slow_provider_does_not_block_notify(self, storage, clock):
        release = threading.Event()
        started = threading.Event()

        class BlockingProvider(ChannelProvider):
            def send(self, notification):
                started.set()
                return release.wait(timeout=5)

        engine = NotificationEngine(storage, clock, [BlockingProvider()])
        try:
            notification = send_funding_confirmed(engine)

            assert started.wait(timeout=5)
            assert not release.is_set()
            assert engine.get_notifications("lender-1")[0].id == notification.id
            assert not engine.flush(timeout=0.01)
        finally:
            release.set()
            engine.close()

    def test_webhook_delivery_runs_off_the_caller_thread(self, storage, clock):
        callers = []
        session = MagicMock()

        def post(*args, **kwargs):
            callers.append(threading.current_thread())
            return MagicMock(ok=True, status_code=200)

        session.post.side_effect = post
        engine = NotificationEngine(storage, clock,
                                    [WebhookChannelProvider("https://hooks.example.test", session=session)])

        send_funding_confirmed(engine)
        engine.close()

        assert len(callers) == 1
        assert callers[0] is not threading.current_thread()

    def test_notify_after_close_still_stores(self, storage, clock, provider):
        engine = NotificationEngine(storage, clock, [provider])
        engine.close()

        send_funding_confirmed(engine)

        assert engine.get_unread_count("lender-1") == 1
        assert provider.sent_notifications == []

    def test_register_provider(self, notification_engine):
        extra = MockChannelProvider()
        notification_engine.register_provider(extra)

        send_funding_confirmed(notification_engine)
        assert notification_engine.flush(timeout=5)

        assert len(extra.sent_notifications) == 1

    def test_read_tracking(self, notification_engine, clock):
        first = send_funding_confirmed(notification_engine)
        clock.advance(minutes=5)
        second = send_funding_confirmed(notification_engine)

        assert notification_engine.get_unread_count("lender-1") == 2
        assert notification_engine.mark_as_read(first.id)
        assert notification_engine.mark_as_read(first.id)
        assert not notification_engine.mark_as_read("missing")

        unread = notification_engine.get_notifications("lender-1", unread_only=True)
        assert [n.id for n in unread] == [second.id]
        assert notification_engine.get_unread_count("lender-1") == 1

        everything = notification_engine.get_notifications("lender-1")
        assert [n.id for n in everything] == [second.id, first.id]
        assert everything[1].read_at == clock.now()

    def test_recipients_are_separate(self, notification_engine):
        send_funding_confirmed(notification_engine, "lender-1")
        send_funding_confirmed(notification_engine, "lender-2")

        assert notification_engine.get_unread_count("lender-1") == 1
        assert notification_engine.get_notifications("lender-3") == []

    def test_limit(self, notification_engine):
        for _ in range(5):
            send_funding_confirmed(notification_engine)
        assert len(notification_engine.get_notifications("lender-1", limit=3)) == 3


class TestChannelProviders:
    """Test log and webhook providers"""

    def test_log_provider(self, notification_engine, caplog):
        notification = send_funding_confirmed(notification_engine)

        with caplog.at_level("INFO", logger="microlend.notifications.log"):
            assert LogChannelProvider().send(notification)

        assert any("funding_confirmed" in r.getMessage() for r in caplog.records)

    def test_webhook_posts_payload(self, notification_engine):
        notification = send_funding_confirmed(notification_engine)
        session = MagicMock()
        session.post.return_value = MagicMock(ok=True, status_code=200)

        provider = WebhookChannelProvider("https://hooks.example.test/notify", timeout=2.0, session=session)

        assert provider.send(notification)
        args, kwargs = session.post.call_args
        assert args[0] == "https://hooks.example.test/notify"
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["notification_id"] == notification.id
        assert kwargs["json"]["type"] == "funding_confirmed"
        assert kwargs["json"]["recipient_id"] == "lender-1"
        assert kwargs["json"]["loan_id"] == "loan-1"

    def test_webhook_http_error(self, notification_engine):
        notification = send_funding_confirmed(notification_engine)
        session = MagicMock()
        session.post.return_value = MagicMock(ok=False, status_code=503)

        assert not WebhookChannelProvider("https://hooks.example.test", session=session).send(notification)

    def test_webhook_connection_error(self, notification_engine):
        notification = send_funding_confirmed(notification_engine)
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        assert not WebhookChannelProvider("https://hooks.example.test", session=session).send(notification)
