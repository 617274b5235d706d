"""Tests for session tokens and the wallet user directory."""
import base64
import json

import pytest

from conftest import OTHER_ACCOUNT, WALLET
from plum_platform import auth
from plum_platform.models import User
from plum_platform.users import find_or_create_siwe_user, find_user_by_wallet, get_user


@pytest.fixture(autouse=True)
def secret():
    auth.set_secret_key("test-secret")
    yield
    auth.set_secret_key("")


class TestSessionTokens:
    def test_round_trip(self):
        token = auth.create_token("user-1", WALLET)
        session = auth.verify_token(token)
        assert session.user_id == "user-1"
        assert session.wallet == WALLET
        assert session.expires_at - session.issued_at == auth.DEFAULT_SESSION_TTL

    def test_expired_token_rejected(self):
        token = auth.create_token("user-1", WALLET, ttl_seconds=-1)
        assert auth.verify_token(token) is None

    def test_tampered_payload_rejected(self):
        token = auth.create_token("user-1", WALLET)
        data = json.loads(base64.urlsafe_b64decode(token))
        data["payload"]["sub"] = "admin"
        forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
        assert auth.verify_token(forged) is None

    def test_other_secret_rejected(self):
        token = auth.create_token("user-1", WALLET)
        auth.set_secret_key("another-secret")
        assert auth.verify_token(token) is None

    @pytest.mark.parametrize("token", ["", "not-base64!!", base64.b64encode(b"[]").decode()])
    def test_garbage_rejected(self, token):
        assert auth.verify_token(token) is None


class TestUserDirectory:
    def test_first_user_is_admin(self, db):
        first = find_or_create_siwe_user(db, WALLET.lower())
        second = find_or_create_siwe_user(db, OTHER_ACCOUNT.address)
        assert first.role == "ADMIN"
        assert second.role == "USER"
        assert first.ethereum_address == WALLET
        assert first.provider == "siwe"
        assert first.email_verified is True
        assert first.email == f"{WALLET[2:8].lower()}@wallet.plumise.com"
        assert first.username == f"{WALLET[:6]}...{WALLET[-4:]}"

    def test_existing_user_returned(self, db):
        created = find_or_create_siwe_user(db, WALLET)
        again = find_or_create_siwe_user(db, WALLET.lower())
        assert again.id == created.id
        assert db.query(User).count() == 1

    def test_lookups(self, db):
        created = find_or_create_siwe_user(db, WALLET)
        assert get_user(db, created.id).id == created.id
        assert get_user(db, "") is None
        assert get_user(db, "missing") is None
        assert find_user_by_wallet(db, WALLET.lower()).id == created.id
        assert find_user_by_wallet(db, OTHER_ACCOUNT.address) is None
