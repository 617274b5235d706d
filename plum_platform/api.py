"""
Platform API — Wallet login and plan billing endpoints.

Public:
  GET  /health
  GET  /api/plum/plans            Plan catalog + public payment config
  GET  /api/auth/siwe/nonce       Fresh one-time nonce        (ALLOW_SIWE_LOGIN)
  POST /api/auth/siwe/verify      Signed message → session    (ALLOW_SIWE_LOGIN)

Bearer-authenticated:
  GET  /api/plum/me               Entitlement + balance
  GET  /api/plum/usage?from&to    Token / credit usage in a date range
  POST /api/plum/payments/verify  Claim an on-chain plan payment

Billing failures answer {"message", "kind"} with the status of their kind
(400/401/403/404/409/503). Unexpected errors are logged and answered 500
with a generic message.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from plum_platform import ledger
from plum_platform.auth import AuthToken, create_token, verify_token
from plum_platform.db import make_get_db
from plum_platform.entitlements import get_user_wallet_address, resolve_user_entitlement
from plum_platform.errors import BadRequest, PaymentError, VerificationError
from plum_platform.models import User
from plum_platform.nonce_store import NonceStore
from plum_platform.payments import PaymentVerifier
from plum_platform.plans import PaymentConfig, get_plan_catalog
from plum_platform.siwe import SiweVerifier, parse_timestamp
from plum_platform.users import find_or_create_siwe_user, get_user

logger = logging.getLogger("plum.api")

DEFAULT_USAGE_WINDOW = timedelta(days=7)


# ============================================================
# MODELS
# ============================================================

class VerifyPaymentRequest(BaseModel):
    planId: Optional[str] = Field(None, max_length=100)
    txHash: Optional[str] = Field(None, max_length=200)


class SiweVerifyRequest(BaseModel):
    message: str = Field(..., max_length=4000)
    signature: str = Field(..., max_length=500)


class NonceResponse(BaseModel):
    nonce: str


# ============================================================
# HELPERS
# ============================================================

def _get_auth(authorization: Optional[str]) -> AuthToken:
    """Extract and verify the session token from the Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing auth token")
    auth = verify_token(authorization[len("Bearer "):])
    if not auth:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return auth


def parse_range_date(value: Optional[str], fallback: datetime) -> datetime:
    """Query bound → UTC datetime. Stored timestamps are UTC wall time."""
    if not value:
        return fallback
    try:
        return parse_timestamp(value)
    except ValueError:
        raise BadRequest("Invalid date range. Use ISO date strings.")


# ============================================================
# CREATE APP
# ============================================================

def create_platform_app(
    session_factory: sessionmaker,
    nonce_store: NonceStore,
    payment_verifier: PaymentVerifier,
    payment_config: PaymentConfig,
    siwe_enabled: bool = False,
    allowed_origins: Optional[list[str]] = None,
    session_ttl: int = 3600,
) -> FastAPI:
    """Create the billing FastAPI application."""

    app = FastAPI(
        title="Plum Billing",
        description="Wallet login and on-chain plan payments",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["http://localhost:3080"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    get_db = make_get_db(session_factory)
    siwe_verifier = SiweVerifier(nonce_store)

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def current_user(
        authorization: Optional[str] = Header(None),
        db: Session = Depends(get_db),
    ) -> User:
        auth = _get_auth(authorization)
        user = get_user(db, auth.user_id)
        if user is None:
            raise HTTPException(status_code=401, detail="Unknown user")
        return user

    # ── PUBLIC ENDPOINTS ──

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "plum-billing",
            "payments_configured": payment_config.is_configured,
            "siwe_enabled": siwe_enabled,
        }

    @app.get("/api/plum/plans")
    async def get_plans():
        return {
            "plans": [plan.to_dict() for plan in get_plan_catalog()],
            "payment": payment_config.public_dict(),
        }

    if siwe_enabled:
        @app.get("/api/auth/siwe/nonce", response_model=NonceResponse)
        async def siwe_nonce():
            return NonceResponse(nonce=nonce_store.issue())

        @app.post("/api/auth/siwe/verify")
        def siwe_verify(req: SiweVerifyRequest, db: Session = Depends(get_db)):
            result = siwe_verifier.verify(req.message, req.signature)
            user = find_or_create_siwe_user(db, result.address)
            token = create_token(user.id, result.address, ttl_seconds=session_ttl)
            return {
                "token": token,
                "user": {
                    "id": user.id,
                    "walletAddress": user.ethereum_address,
                    "username": user.username,
                    "role": user.role,
                },
            }

    # ── AUTHENTICATED ENDPOINTS ──

    @app.get("/api/plum/me")
    def get_me(user: User = Depends(current_user), db: Session = Depends(get_db)):
        entitlement = resolve_user_entitlement(user)
        return {
            **entitlement.to_dict(),
            "balance": ledger.get_balance(db, user.id),
            "plans": [plan.to_dict() for plan in get_plan_catalog()],
            "payment": payment_config.public_dict(),
        }

    @app.get("/api/plum/usage")
    def get_usage(
        start: Optional[str] = Query(None, alias="from"),
        end: Optional[str] = Query(None, alias="to"),
        user: User = Depends(current_user),
        db: Session = Depends(get_db),
    ):
        now = datetime.now(timezone.utc)
        range_from = parse_range_date(start, now - DEFAULT_USAGE_WINDOW)
        range_to = parse_range_date(end, now)
        if range_from > range_to:
            raise BadRequest("`from` must be earlier than `to`.")

        transactions = ledger.get_transactions(db, user.id, range_from, range_to)
        summary, by_model = ledger.summarize_usage(transactions)
        entitlement = resolve_user_entitlement(user)
        return {
            "period": {"from": range_from.isoformat(), "to": range_to.isoformat()},
            **entitlement.to_dict(),
            "summary": summary,
            "byModel": by_model,
            "balance": ledger.get_balance(db, user.id),
            "transactionCount": len(transactions),
        }

    @app.post("/api/plum/payments/verify")
    async def verify_payment(req: VerifyPaymentRequest, user: User = Depends(current_user)):
        try:
            result = await payment_verifier.verify(
                user_id=user.id,
                wallet_address=get_user_wallet_address(user),
                plan_id=req.planId,
                tx_hash=req.txHash,
            )
        except PaymentError:
            raise
        except Exception as e:
            logger.error(
                f"Payment verification error (user={user.id}, tx={str(req.txHash)[:18]}): {e}",
                exc_info=True,
            )
            raise HTTPException(status_code=500, detail="Failed to verify payment transaction.")
        return result.to_dict()

    return app
