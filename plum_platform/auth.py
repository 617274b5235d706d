"""
Session Tokens — Bearer tokens issued after a successful SIWE login.

HMAC-SHA256 over a small JSON payload, base64-wrapped. The payload names
the user id and the wallet that signed in; nothing secret is stored in it.

Flow:
  1. /api/auth/siwe/verify succeeds → create_token(user_id, wallet)
  2. Client sends "Authorization: Bearer <token>" on billing routes
  3. verify_token() checks the HMAC and expiry → AuthToken
"""

import time
import hmac
import json
import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("plum.auth")

DEFAULT_SESSION_TTL = 3600

_SECRET_KEY = ""  # Set at startup from env


def set_secret_key(key: str):
    """Set the HMAC secret key for token signing."""
    global _SECRET_KEY
    _SECRET_KEY = key


@dataclass
class AuthToken:
    """Authenticated session."""
    user_id: str
    wallet: str         # checksummed address that signed in
    issued_at: float
    expires_at: float


def _sign(payload: dict) -> str:
    return hmac.new(
        _SECRET_KEY.encode(),
        json.dumps(payload, sort_keys=True).encode(),
        hashlib.sha256,
    ).hexdigest()


def create_token(user_id: str, wallet: str, ttl_seconds: int = DEFAULT_SESSION_TTL) -> str:
    now = int(time.time())
    payload = {
        "sub": user_id,
        "wallet": wallet,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    token_data = json.dumps({"payload": payload, "sig": _sign(payload)})
    return base64.urlsafe_b64encode(token_data.encode()).decode()


def verify_token(token: str) -> Optional[AuthToken]:
    """AuthToken if the token is authentic and unexpired, else None."""
    try:
        token_data = json.loads(base64.urlsafe_b64decode(token.encode()))
        payload = token_data["payload"]
        sig = token_data["sig"]
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed session token: {type(e).__name__}")
        return None

    if not isinstance(payload, dict) or not isinstance(sig, str):
        return None

    if not hmac.compare_digest(sig, _sign(payload)):
        logger.warning("Session token signature mismatch")
        return None

    try:
        if time.time() > payload["exp"]:
            logger.info(f"Session expired for {payload.get('wallet', '?')}")
            return None
        return AuthToken(
            user_id=payload["sub"],
            wallet=payload["wallet"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
        )
    except (KeyError, TypeError):
        return None
