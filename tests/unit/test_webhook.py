"""Tests for the Telegram webhook endpoint."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from medbook.bot import webhook
from medbook.bot.webhook import UpdateDeduplicator
from medbook.config import settings

SECRET = "s" * 32

UPDATE = {
    "update_id": 5001,
    "message": {
        "message_id": 1,
        "date": 1768200000,
        "chat": {"id": 100, "type": "private"},
        "from": {"id": 100, "is_bot": False, "first_name": "Anna"},
        "text": "hello",
    },
}


class TestUpdateDeduplicator:
    """Test the redelivery filter."""

    def test_second_delivery_is_seen(self):
        dedup = UpdateDeduplicator(10)

        assert not dedup.seen(1)
        assert dedup.seen(1)

    def test_oldest_ids_are_forgotten(self):
        dedup = UpdateDeduplicator(2)
        for update_id in (1, 2, 3):
            dedup.seen(update_id)

        assert not dedup.seen(1)
        assert dedup.seen(3)

    def test_non_integer_ids_pass(self):
        dedup = UpdateDeduplicator(10)

        assert not dedup.seen("unknown")
        assert not dedup.seen("unknown")


class TestTelegramWebhook:
    """Test webhook request handling."""

    @pytest.fixture
    def dispatcher(self):
        dispatcher = MagicMock()
        dispatcher.feed_update = AsyncMock()
        return dispatcher

    @pytest.fixture
    def client(self, dispatcher):
        app = FastAPI()
        app.include_router(webhook.router)
        with patch.object(settings, "webhook_secret_token", SECRET), patch.object(
            webhook, "deduplicator", UpdateDeduplicator(100)
        ), patch.object(webhook, "get_bot", return_value=MagicMock()), patch.object(
            webhook, "get_dispatcher", return_value=dispatcher
        ):
            yield TestClient(app)

    def post(self, client, body, secret=SECRET):
        headers = {"X-Telegram-Bot-Api-Secret-Token": secret} if secret else {}
        if isinstance(body, (dict, list)):
            return client.post("/telegram/webhook", json=body, headers=headers)
        return client.post("/telegram/webhook", content=body, headers=headers)

    def test_wrong_secret(self, client, dispatcher):
        response = self.post(client, UPDATE, secret="wrong")

        assert response.status_code == 403
        dispatcher.feed_update.assert_not_called()

    def test_missing_secret(self, client):
        assert self.post(client, UPDATE, secret=None).status_code == 403

    def test_update_is_dispatched(self, client, dispatcher):
        response = self.post(client, UPDATE)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        dispatcher.feed_update.assert_awaited_once()

    def test_redelivered_update_is_dropped(self, client, dispatcher):
        self.post(client, UPDATE)
        response = self.post(client, UPDATE)

        assert response.json() == {"ok": True}
        assert dispatcher.feed_update.await_count == 1

    @pytest.mark.parametrize("body", [b"not json", [1, 2, 3], {"update_id": "x", "message": 5}])
    def test_malformed_body_is_acknowledged(self, client, dispatcher, body):
        response = self.post(client, body)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        dispatcher.feed_update.assert_not_called()

    def test_handler_failure_is_acknowledged(self, client, dispatcher):
        dispatcher.feed_update.side_effect = RuntimeError("boom")

        response = self.post(client, UPDATE)

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_missing_bot_is_acknowledged(self, client, dispatcher):
        with patch.object(webhook, "get_bot", return_value=None):
            response = self.post(client, UPDATE)

        assert response.json() == {"ok": True}
        dispatcher.feed_update.assert_not_called()
