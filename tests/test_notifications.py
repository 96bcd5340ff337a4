"""
Tests for Notification Module

Tests template rendering, provider fan-out and the webhook channel.
"""

import pytest
from unittest.mock import MagicMock, patch

from funds_core.storage import InMemoryStorage
from funds_core.notifications import (
    NotificationService,
    NotificationKind,
    NotificationStatus,
    NotificationError,
    Notification,
    ChannelProvider,
    LogChannelProvider,
    WebhookChannelProvider
)


class MockChannelProvider(ChannelProvider):
    """Mock channel provider for testing"""

    def __init__(self, should_succeed: bool = True, name: str = "mock"):
        self.should_succeed = should_succeed
        self.name = name
        self.sent_notifications = []

    def send(self, notification: Notification) -> bool:
        self.sent_notifications.append(notification)
        return self.should_succeed


@pytest.fixture
def storage():
    return InMemoryStorage()


class TestNotificationService:

    def test_render_fills_placeholders(self, storage):
        service = NotificationService(storage)
        subject, body = service.render(NotificationKind.CREDIT_RECEIVED, {
            "amount": "USD 40.00",
            "account_number": "5000000001",
            "reference_id": "TXN-1-2-CR",
        })
        assert subject == "You received USD 40.00"
        assert "5000000001" in body

    def test_render_keeps_missing_placeholders(self, storage):
        service = NotificationService(storage)
        subject, _ = service.render(NotificationKind.CARD_ISSUED, {})
        assert subject == "Your new card is ready"
        _, body = service.render(NotificationKind.CARD_ISSUED, {"expiry_date": None})
        assert "{last_four}" in body

    def test_notify_sends_to_every_provider(self, storage):
        first, second = MockChannelProvider(name="first"), MockChannelProvider(name="second")
        service = NotificationService(storage, providers=[first, second])

        notification = service.notify("alice@example.com", NotificationKind.WELCOME,
                                      {"full_name": "Alice"}, recipient_id="u1")

        assert notification.status == NotificationStatus.SENT
        assert notification.channel_status == {"first": "sent", "second": "sent"}
        assert len(first.sent_notifications) == 1
        assert len(second.sent_notifications) == 1
        assert service.list_for_recipient("u1")[0]["subject"] == "Welcome to the bank, Alice"

    def test_failed_webhook_fails_notification_despite_log(self, storage):
        webhook = WebhookChannelProvider("https://mail.example.com/hook")
        service = NotificationService(storage, providers=[LogChannelProvider(MagicMock()), webhook])

        with patch("funds_core.notifications.requests.post") as post:
            post.return_value = MagicMock(status_code=502)
            with pytest.raises(NotificationError):
                service.notify("a@example.com", NotificationKind.WELCOME, {}, recipient_id="u1")

        [stored] = service.list_for_recipient("u1")
        assert stored["status"] == "failed"
        assert stored["channel_status"] == {"log": "sent", "webhook": "failed"}
        assert stored["failed_reason"] == "webhook refused"

    def test_all_providers_failing_raises(self, storage):
        service = NotificationService(storage, providers=[MockChannelProvider(False)])

        with pytest.raises(NotificationError):
            service.notify("a@example.com", NotificationKind.WELCOME, {}, recipient_id="u1")

        [stored] = service.list_for_recipient("u1")
        assert stored["status"] == "failed"
        assert "refused" in stored["failed_reason"]

    def test_deliver_resolves_address(self, storage):
        provider = MockChannelProvider()
        service = NotificationService(storage, providers=[provider],
                                      address_resolver={"u1": "alice@example.com"}.get)

        service.deliver({"recipient_id": "u1", "kind": "welcome", "data": {"full_name": "Alice"}})

        assert provider.sent_notifications[0].recipient_address == "alice@example.com"

    def test_deliver_without_address(self, storage):
        service = NotificationService(storage, address_resolver=lambda user_id: None)
        with pytest.raises(NotificationError):
            service.deliver({"recipient_id": "gone", "kind": "welcome", "data": {}})

    def test_log_provider(self, storage):
        logger = MagicMock()
        service = NotificationService(storage, providers=[LogChannelProvider(logger)])
        service.notify("a@example.com", NotificationKind.WELCOME, {"full_name": "Al"})
        assert "a@example.com" in logger.info.call_args[0][0]


class TestWebhookChannelProvider:

    def make_notification(self, storage):
        service = NotificationService(storage, providers=[MockChannelProvider()])
        return service.notify("a@example.com", NotificationKind.WELCOME, {"full_name": "Al"})

    def test_posts_json(self, storage):
        notification = self.make_notification(storage)
        provider = WebhookChannelProvider("https://mail.example.com/hook", timeout=2.0)

        with patch("funds_core.notifications.requests.post") as post:
            post.return_value = MagicMock(status_code=202)
            assert provider.send(notification)

        args, kwargs = post.call_args
        assert args[0] == "https://mail.example.com/hook"
        assert kwargs["json"]["to"] == "a@example.com"
        assert kwargs["json"]["kind"] == "welcome"
        assert kwargs["timeout"] == 2.0

    def test_error_status_is_a_refusal(self, storage):
        notification = self.make_notification(storage)
        provider = WebhookChannelProvider("https://mail.example.com/hook")

        with patch("funds_core.notifications.requests.post") as post:
            post.return_value = MagicMock(status_code=500)
            assert not provider.send(notification)
