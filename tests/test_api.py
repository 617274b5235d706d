"""End-to-end tests for the billing HTTP surface."""
from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from conftest import ONE_PLM, OTHER_ACCOUNT, WALLET, WALLET_ACCOUNT, make_hash
from plum_platform import auth
from plum_platform.api import create_platform_app
from plum_platform.models import LedgerTransaction, User
from plum_platform.nonce_store import NonceStore
from plum_platform.payments import PaymentVerifier
from plum_platform.siwe import build_message

TX = make_hash(0xBEEF)


def signed_login(client, account=WALLET_ACCOUNT):
    nonce = client.get("/api/auth/siwe/nonce").json()["nonce"]
    message = build_message("app.plumise.com", account.address, nonce, chain_id=41956)
    sig = Account.sign_message(encode_defunct(text=message), private_key=account.key).signature
    return client.post("/api/auth/siwe/verify", json={
        "message": message,
        "signature": "0x" + bytes(sig).hex(),
    })


@pytest.fixture
def client(session_factory, payment_config, oracle):
    auth.set_secret_key("test-secret")
    app = create_platform_app(
        session_factory=session_factory,
        nonce_store=NonceStore(),
        payment_verifier=PaymentVerifier(session_factory, payment_config, oracle=oracle),
        payment_config=payment_config,
        siwe_enabled=True,
    )
    with TestClient(app) as c:
        yield c
    auth.set_secret_key("")


@pytest.fixture
def token(client):
    resp = signed_login(client)
    assert resp.status_code == 200
    return resp.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestPublicRoutes:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["payments_configured"] is True

    def test_plans(self, client):
        body = client.get("/api/plum/plans").json()
        assert [p["id"] for p in body["plans"]] == ["starter", "pro", "max"]
        assert body["payment"]["chainId"] == 41956
        assert body["payment"]["minConfirmations"] == 1
        assert "chainRpcUrl" not in body["payment"]

    def test_siwe_routes_hidden_when_disabled(self, session_factory, payment_config, oracle):
        app = create_platform_app(
            session_factory=session_factory,
            nonce_store=NonceStore(),
            payment_verifier=PaymentVerifier(session_factory, payment_config, oracle=oracle),
            payment_config=payment_config,
        )
        with TestClient(app) as c:
            assert c.get("/api/auth/siwe/nonce").status_code == 404


class TestSiweLogin:
    def test_login_creates_user_and_session(self, client, session_factory):
        resp = signed_login(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["walletAddress"] == WALLET
        assert body["user"]["role"] == "ADMIN"
        assert auth.verify_token(body["token"]).wallet == WALLET

    def test_second_login_reuses_user(self, client, session_factory):
        first = signed_login(client).json()["user"]["id"]
        second = signed_login(client).json()["user"]["id"]
        assert first == second

    def test_never_issued_nonce_rejected(self, client, session_factory):
        message = build_message("app.plumise.com", WALLET, "0" * 32)
        sig = Account.sign_message(encode_defunct(text=message), private_key=WALLET_ACCOUNT.key).signature
        resp = client.post("/api/auth/siwe/verify", json={
            "message": message, "signature": "0x" + bytes(sig).hex(),
        })
        assert resp.status_code == 401
        assert resp.json()["kind"] == "verification_error"
        db = session_factory()
        assert db.query(User).count() == 0
        db.close()

    def test_wrong_signer_rejected(self, client):
        nonce = client.get("/api/auth/siwe/nonce").json()["nonce"]
        message = build_message("app.plumise.com", WALLET, nonce)
        sig = Account.sign_message(encode_defunct(text=message), private_key=OTHER_ACCOUNT.key).signature
        resp = client.post("/api/auth/siwe/verify", json={
            "message": message, "signature": "0x" + bytes(sig).hex(),
        })
        assert resp.status_code == 401


class TestMe:
    def test_requires_auth(self, client):
        assert client.get("/api/plum/me").status_code == 401
        assert client.get("/api/plum/me", headers=bearer("garbage")).status_code == 401

    def test_paid_user(self, client, token):
        body = client.get("/api/plum/me", headers=bearer(token)).json()
        assert body["walletAddress"] == WALLET
        assert body["billingMode"] == "paid"
        assert body["isAgentFree"] is False
        assert body["balance"] == 0
        assert len(body["plans"]) == 3

    def test_agent_free_user(self, client, token, monkeypatch):
        monkeypatch.setenv("PLUM_AGENT_FREE_WALLETS", WALLET.lower())
        body = client.get("/api/plum/me", headers=bearer(token)).json()
        assert body["billingMode"] == "agent-free"
        assert body["isAgentFree"] is True


class TestVerifyPayment:
    def test_payment_then_replay(self, client, token, oracle):
        oracle.add_payment(TX, value=10 * ONE_PLM)

        resp = client.post("/api/plum/payments/verify", headers=bearer(token),
                           json={"planId": "starter", "txHash": TX})
        assert resp.status_code == 200
        body = resp.json()
        assert body["balance"] == 2_000_000
        assert body["plan"]["id"] == "starter"
        assert body["txHash"] == TX

        replay = client.post("/api/plum/payments/verify", headers=bearer(token),
                             json={"planId": "starter", "txHash": TX})
        assert replay.status_code == 409
        assert replay.json()["kind"] == "conflict"
        assert client.get("/api/plum/me", headers=bearer(token)).json()["balance"] == 2_000_000

    @pytest.mark.parametrize("payload,status,kind", [
        ({"txHash": TX}, 400, "bad_request"),
        ({"planId": "starter"}, 400, "bad_request"),
        ({"planId": "nope", "txHash": TX}, 404, "not_found"),
        ({"planId": "starter", "txHash": TX}, 404, "not_found"),
    ])
    def test_error_statuses(self, client, token, payload, status, kind):
        resp = client.post("/api/plum/payments/verify", headers=bearer(token), json=payload)
        assert resp.status_code == status
        assert resp.json()["kind"] == kind

    def test_spoofed_sender_forbidden(self, client, token, oracle):
        oracle.add_payment(TX, sender=OTHER_ACCOUNT.address)
        resp = client.post("/api/plum/payments/verify", headers=bearer(token),
                           json={"planId": "starter", "txHash": TX})
        assert resp.status_code == 403

    def test_unexpected_error_is_generic_500(self, client, token, oracle):
        oracle.add_payment(TX)
        oracle.error = RuntimeError("db password is hunter2")
        resp = client.post("/api/plum/payments/verify", headers=bearer(token),
                           json={"planId": "starter", "txHash": TX})
        assert resp.status_code == 500
        assert "hunter2" not in resp.text

    def test_requires_auth(self, client):
        resp = client.post("/api/plum/payments/verify", json={"planId": "starter", "txHash": TX})
        assert resp.status_code == 401


class TestUsage:
    def test_usage_summary(self, client, token, session_factory):
        user_id = auth.verify_token(token).user_id
        now = datetime.now(timezone.utc)
        db = session_factory()
        db.add(LedgerTransaction(user_id=user_id, token_type="prompt", raw_amount=-100,
                                 token_value=-30, model="gpt-4o", created_at=now - timedelta(hours=1)))
        db.add(LedgerTransaction(user_id=user_id, token_type="completion", raw_amount=-20,
                                 token_value=-10, model="gpt-4o", created_at=now - timedelta(hours=1)))
        db.add(LedgerTransaction(user_id=user_id, token_type="prompt", raw_amount=-999,
                                 token_value=-999, model="old", created_at=now - timedelta(days=20)))
        db.commit()
        db.close()

        body = client.get("/api/plum/usage", headers=bearer(token)).json()
        assert body["transactionCount"] == 2
        assert body["summary"]["totalTokens"] == 120
        assert body["summary"]["spentCredits"] == 40
        assert body["byModel"][0]["model"] == "gpt-4o"
        assert body["billingMode"] == "paid"

    def test_explicit_range(self, client, token):
        resp = client.get("/api/plum/usage", headers=bearer(token),
                          params={"from": "2024-01-01T00:00:00Z", "to": "2024-02-01"})
        assert resp.status_code == 200
        assert resp.json()["period"]["from"].startswith("2024-01-01T00:00:00")

    def test_invalid_date(self, client, token):
        resp = client.get("/api/plum/usage", headers=bearer(token), params={"from": "last week"})
        assert resp.status_code == 400

    def test_inverted_range(self, client, token):
        resp = client.get("/api/plum/usage", headers=bearer(token),
                          params={"from": "2024-02-01", "to": "2024-01-01"})
        assert resp.status_code == 400

    def test_offset_range_compares_instants(self, client, token, session_factory):
        user_id = auth.verify_token(token).user_id
        now = datetime.now(timezone.utc)
        db = session_factory()
        db.add(LedgerTransaction(user_id=user_id, token_type="prompt", raw_amount=-50,
                                 token_value=-5, model="gpt-4o", created_at=now))
        db.commit()
        db.close()

        tokyo = timezone(timedelta(hours=9))
        resp = client.get("/api/plum/usage", headers=bearer(token), params={
            "from": (now - timedelta(hours=1)).astimezone(tokyo).isoformat(),
            "to": (now + timedelta(hours=1)).astimezone(tokyo).isoformat(),
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["transactionCount"] == 1
        assert body["period"]["from"].endswith("+00:00")
