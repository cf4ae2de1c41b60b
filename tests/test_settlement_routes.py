"""
HTTP surface tests: webhook authentication and dispatch, admin error mapping
"""

import pytest
from fastapi.testclient import TestClient

from config import Config
from models import Transaction, TransactionStatus
from services.settlement_engine import SettlementEngine
from webhook_server import create_app

WEBHOOK_SECRET = "hook-secret"
ADMIN_TOKEN = "admin-token"


@pytest.fixture
def client(trading_client, session_factory, monkeypatch):
    monkeypatch.setattr(Config, "BYBIT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(Config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    app = create_app(SettlementEngine(trading_client, session_factory), start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


def _event(client, payload, secret=WEBHOOK_SECRET):
    return client.post("/webhooks/bybit/events", json=payload, headers={"X-Webhook-Secret": secret})


class TestWebhook:

    def test_rejects_bad_secret(self, client, seed):
        ids = seed.trade(bybit_ad_id="item-1")

        response = _event(client, {"type": "ORDER_CREATED", "itemId": "item-1", "orderId": "o-1"}, secret="nope")

        assert response.status_code == 401
        assert seed.get(Transaction, ids["transaction_id"]).order_id is None

    def test_order_created_binds(self, client, seed):
        ids = seed.trade(bybit_ad_id="item-1")

        response = _event(client, {"type": "ORDER_CREATED", "itemId": "item-1", "orderId": "o-1"})

        assert response.status_code == 200
        assert response.json() == {"status": "bound", "transaction_id": ids["transaction_id"]}
        assert seed.get(Transaction, ids["transaction_id"]).status == "chat_started"

    def test_unknown_item_deferred_to_poll(self, client):
        response = _event(client, {"type": "ORDER_CREATED", "itemId": "item-x", "orderId": "o-1"})

        assert response.json() == {"status": "deferred"}

    def test_chat_message_stored_and_answered(self, client, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="o-1", chat_step=1)

        response = _event(client, {"type": "chatMessage", "orderId": "o-1", "senderId": "buyer", "content": "да"})

        assert response.json()["status"] == "stored"
        assert seed.get(Transaction, ids["transaction_id"]).status == "waiting_payment"

    def test_malformed_body(self, client):
        response = client.post("/webhooks/bybit/events", content=b"{not json",
                               headers={"X-Webhook-Secret": WEBHOOK_SECRET})

        assert response.status_code == 400

    def test_unknown_event_ignored(self, client):
        response = _event(client, {"type": "PING"})

        assert response.json() == {"status": "ignored", "reason": "unknown_type"}


class TestAdmin:

    headers = {"X-Admin-Token": ADMIN_TOKEN}

    def test_requires_token(self, client):
        assert client.get("/admin/transactions").status_code == 401

    def test_missing_transaction_is_404(self, client):
        response = client.post("/admin/transactions/999/cancel", json={}, headers=self.headers)

        assert response.status_code == 404

    def test_guard_violation_is_409(self, client, seed):
        ids = seed.trade(status=TransactionStatus.COMPLETED, order_id="o-1")

        response = client.post(f"/admin/transactions/{ids['transaction_id']}/confirm-payment", headers=self.headers)

        assert response.status_code == 409

    def test_list_and_cancel(self, client, seed):
        ids = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="o-1")

        cancel = client.post(f"/admin/transactions/{ids['transaction_id']}/cancel",
                             json={"reason": "operator"}, headers=self.headers)
        listing = client.get("/admin/transactions", params={"status": "cancelled"}, headers=self.headers)

        assert cancel.status_code == 200
        assert [row["id"] for row in listing.json()] == [ids["transaction_id"]]

    def test_unknown_status_filter_is_422(self, client):
        response = client.get("/admin/transactions", params={"status": "lost"}, headers=self.headers)

        assert response.status_code == 422


def test_health_reports_ready(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["ready"] is True
