"""
HTTP and WebSocket surface tests.

The app is built with an injected engine (schema created by the fixture,
no Alembic), a MagicMock in place of the stripe module, and no background
loops. Tokens are minted with the app's own verifier.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from stripe import SignatureVerificationError

from creditledger.auth.bearer_auth import create_token
from creditledger.config import Settings
from creditledger.core.errors import StoreUnavailable
from creditledger.main import create_app

from tests.factories import checkout_event

INTERNAL_KEY = "test-internal-key"
TX_HASH = "0x" + "ab" * 32


def _settings(**overrides):
    values = {
        "internal_api_key": INTERNAL_KEY,
        "stripe_webhook_secret": "whsec_test",
        "signup_bonus_credits": 25,
        "daily_bonus_max": 50,
        "credits_bonus_packages": [{"credits": 3000, "price": 250.0, "label": "Studio"}],
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def stripe_client():
    client = MagicMock()
    client.checkout.Session.create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
    client.Event.list.return_value.auto_paging_iter.return_value = []
    return client


@pytest.fixture
def make_client(engine, stripe_client):
    clients = []

    def _make(**kwargs):
        app = create_app(
            config=kwargs.pop("config", None) or _settings(),
            engine=engine,
            stripe_client=stripe_client,
            start_background=False,
            **kwargs,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def auth(client, user_id="alice", **claims):
    token = create_token(client.app.state.token_verifier, user_id, **claims)
    return {"Authorization": f"Bearer {token}"}


# ═══════════════════════════════════════════════════════════════════════
# Auth
# ═══════════════════════════════════════════════════════════════════════

class TestAuth:

    def test_missing_token(self, client):
        assert client.get("/api/credits/balance").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/credits/balance", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_expired_token(self, client):
        token = create_token(client.app.state.token_verifier, "alice", ttl_s=-10)
        response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_internal_key_required(self, client):
        assert client.get("/api/health/ledger").status_code == 403
        assert client.get("/api/health/ledger", headers={"X-Internal-Key": "wrong"}).status_code == 403

    def test_internal_api_disabled_without_key(self, make_client):
        client = make_client(config=_settings(internal_api_key=None))
        response = client.get("/api/health/ledger", headers={"X-Internal-Key": INTERNAL_KEY})
        assert response.status_code == 403


# ═══════════════════════════════════════════════════════════════════════
# Credits
# ═══════════════════════════════════════════════════════════════════════

class TestCredits:

    def test_balance_opens_account_with_signup_bonus_once(self, client):
        assert client.get("/api/credits/balance", headers=auth(client)).json() == {
            "user_id": "alice",
            "balance": 25,
        }
        assert client.get("/api/credits/balance", headers=auth(client)).json()["balance"] == 25

    def test_history_newest_first(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        client.app.state.ledger.debit("alice", 5, "spend")
        rows = client.get("/api/credits/history", headers=auth(client)).json()["transactions"]
        assert [r["amount"] for r in rows] == [-5, 25]

    @pytest.mark.parametrize("limit", [0, 101])
    def test_history_limit_bounds(self, client, limit):
        response = client.get(f"/api/credits/history?limit={limit}", headers=auth(client))
        assert response.status_code == 422

    def test_validate(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        body = client.post("/api/credits/validate", json={"required": 30}, headers=auth(client)).json()
        assert body == {"sufficient": False, "current_balance": 25, "required": 30, "deficit": 5}

    def test_validate_unknown_account(self, client):
        response = client.post("/api/credits/validate", json={"required": 1}, headers=auth(client, "ghost"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CL-LED-002"

    def test_daily_bonus_once_per_day(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        first = client.post("/api/credits/bonus", json={}, headers=auth(client)).json()
        assert first == {"granted": True, "amount": 50, "new_balance": 75}

        second = client.post("/api/credits/bonus", json={"amount": 10}, headers=auth(client)).json()
        assert second["granted"] is False
        assert second["new_balance"] == 75

    def test_daily_bonus_over_max(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        response = client.post("/api/credits/bonus", json={"amount": 51}, headers=auth(client))
        assert response.status_code == 400


# ═══════════════════════════════════════════════════════════════════════
# Payments (fiat)
# ═══════════════════════════════════════════════════════════════════════

class TestStripeWebhook:

    def _post(self, client, body=b"{}"):
        return client.post("/api/payments/webhook", content=body, headers={"Stripe-Signature": "t=1,v1=x"})

    def test_bad_signature(self, client, stripe_client):
        stripe_client.Webhook.construct_event.side_effect = SignatureVerificationError("bad", "t=1,v1=x")
        assert self._post(client).status_code == 400

    def test_bad_payload(self, client, stripe_client):
        stripe_client.Webhook.construct_event.side_effect = ValueError("not json")
        assert self._post(client).status_code == 400

    def test_credits_once(self, client, stripe_client):
        client.get("/api/credits/balance", headers=auth(client))
        stripe_client.Webhook.construct_event.return_value = checkout_event(pi="pi_9")

        assert self._post(client).json() == {"received": True, "outcome": "credited"}
        assert self._post(client).json() == {"received": True, "outcome": "duplicate"}
        assert client.app.state.ledger.get_balance("alice") == 125

        args = stripe_client.Webhook.construct_event.call_args.args
        assert args[1] == "t=1,v1=x"
        assert args[2] == "whsec_test"

    def test_malformed_event_is_acknowledged(self, client, stripe_client):
        stripe_client.Webhook.construct_event.return_value = checkout_event(user_id=None)
        assert self._post(client).json() == {"received": True, "outcome": "skipped"}

    def test_store_outage_asks_for_redelivery(self, client, stripe_client, monkeypatch):
        stripe_client.Webhook.construct_event.return_value = checkout_event()
        monkeypatch.setattr(
            client.app.state.fiat_processor, "process",
            MagicMock(side_effect=StoreUnavailable(detail="database is locked")),
        )
        response = self._post(client)
        assert response.status_code == 503
        assert response.json() == {"received": False, "error": "CL-DB-001"}

    def test_unconfigured_secret(self, make_client):
        client = make_client(config=_settings(stripe_webhook_secret=None))
        assert self._post(client).status_code == 503


class TestCheckout:

    def test_out_of_range(self, client, stripe_client):
        response = client.post("/api/payments/checkout-session", json={"credits": 5}, headers=auth(client))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CL-PAY-007"
        stripe_client.checkout.Session.create.assert_not_called()

    def test_price_is_computed_server_side(self, client, stripe_client):
        response = client.post(
            "/api/payments/checkout-session", json={"credits": 100},
            headers=auth(client, email="alice@example.com"),
        )
        assert response.json() == {
            "checkout_url": "https://checkout.stripe.test/cs_1",
            "session_id": "cs_1",
            "price_usd": 10.0,
        }
        kwargs = stripe_client.checkout.Session.create.call_args.kwargs
        assert kwargs["metadata"] == {"userId": "alice", "credits": "100"}
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 1000
        assert kwargs["customer_email"] == "alice@example.com"

    def test_session_status_hides_other_users(self, client, stripe_client):
        stripe_client.checkout.Session.retrieve.return_value = {
            "status": "complete", "payment_status": "paid",
            "metadata": {"userId": "bob", "credits": "100"},
        }
        assert client.get("/api/payments/session-status/cs_1", headers=auth(client)).status_code == 404

        stripe_client.checkout.Session.retrieve.return_value["metadata"]["userId"] = "alice"
        body = client.get("/api/payments/session-status/cs_1", headers=auth(client)).json()
        assert body == {"status": "complete", "payment_status": "paid", "credits": 100}

    def test_packages(self, client):
        body = client.get("/api/payments/packages").json()
        assert [p["credits"] for p in body["standard_packages"]] == [100, 500, 1000, 2000]
        assert [p["credits"] for p in body["standard_packages"] if p["is_popular"]] == [500]
        assert body["standard_packages"][1]["price"] == 50.0
        assert body["bonus_packages"][0]["label"] == "Studio"


# ═══════════════════════════════════════════════════════════════════════
# Crypto
# ═══════════════════════════════════════════════════════════════════════

class TestCrypto:

    def test_disabled(self, client):
        response = client.post("/api/crypto/quotation", json={"price_usd": 5}, headers=auth(client))
        assert response.status_code == 503

    def test_quotation(self, make_client):
        chain = MagicMock()
        chain.issue_receipt = AsyncMock(return_value=MagicMock(to_dict=lambda: {"nonce": "0x01"}))
        client = make_client(chain_service=chain)
        response = client.post("/api/crypto/quotation", json={"price_usd": 5}, headers=auth(client))
        assert response.json() == {"nonce": "0x01"}
        chain.issue_receipt.assert_awaited_once_with("alice", 5.0)

    def test_transaction_hash_validated(self, make_client):
        chain = MagicMock()
        chain.observe_transaction.return_value = {"status": "credited", "tx_hash": TX_HASH}
        client = make_client(chain_service=chain)

        assert client.get("/api/crypto/transactions/0x1234", headers=auth(client)).status_code == 400
        chain.observe_transaction.assert_not_called()

        response = client.get(f"/api/crypto/transactions/{TX_HASH}", headers=auth(client))
        assert response.json()["status"] == "credited"


# ═══════════════════════════════════════════════════════════════════════
# Sessions
# ═══════════════════════════════════════════════════════════════════════

class TestSessions:

    def test_start_get_end(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        response = client.post("/api/sessions", json={"avatar_id": "fitness-coach"}, headers=auth(client))
        assert response.status_code == 201
        snapshot = response.json()
        assert snapshot["state"] == "active"
        assert snapshot["per_minute_rate"] == 10

        sid = snapshot["session_id"]
        assert client.get(f"/api/sessions/{sid}", headers=auth(client)).json()["session_id"] == sid
        assert client.get("/api/health").json()["active_sessions"] == 1

        ended = client.post(f"/api/sessions/{sid}/end", headers=auth(client)).json()
        assert ended["state"] == "terminated"
        assert ended["end_reason"] == "normal_end"
        assert client.get(f"/api/sessions/{sid}", headers=auth(client)).status_code == 404
        assert client.post(f"/api/sessions/{sid}/end", headers=auth(client)).status_code == 404

    def test_foreign_session_is_not_found(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        sid = client.post("/api/sessions", json={"avatar_id": "assistant"}, headers=auth(client)).json()["session_id"]
        response = client.get(f"/api/sessions/{sid}", headers=auth(client, "mallory"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CL-SES-001"

    def test_insufficient_balance(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        client.app.state.ledger.debit("alice", 20, "spend")
        response = client.post("/api/sessions", json={"avatar_id": "fitness-coach"}, headers=auth(client))
        assert response.status_code == 402
        assert response.json()["error"]["code"] == "CL-LED-001"

    def test_unpriced_persona(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        response = client.post("/api/sessions", json={"avatar_id": "nobody"}, headers=auth(client))
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CL-CFG-001"


class TestSessionEvents:

    def _start(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        return client.post("/api/sessions", json={"avatar_id": "fitness-coach"}, headers=auth(client)).json()["session_id"]

    def test_rejects_missing_token(self, client):
        sid = self._start(client)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/sessions/{sid}/events"):
                pass
        assert exc_info.value.code == 4001

    def test_rejects_foreign_session(self, client):
        sid = self._start(client)
        token = create_token(client.app.state.token_verifier, "mallory")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/sessions/{sid}/events?token={token}"):
                pass
        assert exc_info.value.code == 4004

    def test_streams_state_then_closes_on_end(self, client):
        sid = self._start(client)
        token = create_token(client.app.state.token_verifier, "alice")
        with client.websocket_connect(f"/api/sessions/{sid}/events?token={token}") as ws:
            first = ws.receive_json()
            assert first["event"] == "session-state"
            assert first["session_id"] == sid

            client.post(f"/api/sessions/{sid}/end", headers=auth(client))
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()


# ═══════════════════════════════════════════════════════════════════════
# Health and reconciliation
# ═══════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "running"
        assert body["chain_enabled"] is False

    def test_health_carries_alerts(self, client):
        from creditledger.core.alerting import AlertLevel, send_alert

        send_alert("Minor", "x", level=AlertLevel.LOW)
        send_alert("Major", "y", level=AlertLevel.HIGH)
        response = client.get("/api/health?min_level=high")
        body = response.json()
        assert body["status"] == "ok"
        assert [a["title"] for a in body["alerts"]] == ["Major"]
        assert response.headers["x-request-id"]

    def test_ledger_health_ok(self, client):
        client.get("/api/credits/balance", headers=auth(client))
        response = client.get("/api/health/ledger", headers={"X-Internal-Key": INTERNAL_KEY})
        assert response.status_code == 200
        body = response.json()
        assert body["critical"] is False
        assert {c["name"] for c in body["checks"]} >= {"balance_drift"}

    def test_ledger_health_drift_is_503(self, client, engine):
        client.get("/api/credits/balance", headers=auth(client))
        with engine.begin() as conn:
            conn.exec_driver_sql("UPDATE ledger_accounts SET credits = 999 WHERE id = 'alice'")
        response = client.get("/api/health/ledger", headers={"X-Internal-Key": INTERNAL_KEY})
        assert response.status_code == 503
        assert response.json()["critical"] is True

    def test_reconciliation_run(self, client, stripe_client):
        client.get("/api/credits/balance", headers=auth(client))
        stripe_client.Event.list.return_value.auto_paging_iter.return_value = [checkout_event(pi="pi_missed")]

        response = client.post(
            "/api/reconciliation/run?hours=48&dry_run=true", headers={"X-Internal-Key": INTERNAL_KEY},
        )
        body = response.json()
        assert body["lookback_hours"] == 48
        assert body["dry_run"] is True
        assert body["missed_count"] == 1
        assert client.app.state.ledger.get_balance("alice") == 25
