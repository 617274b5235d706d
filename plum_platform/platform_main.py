"""
Billing Server — Entry Point

Runs the Plum billing backend:
  - SIWE wallet login (nonce issue + signed message verification)
  - Plan catalog and wallet entitlements
  - On-chain plan payment verification and credit grants
  - Periodic purge of expired login nonces

Usage:
  python -m plum_platform.platform_main
  # or via uvicorn:
  uvicorn plum_platform.platform_main:app

Environment variables:
  DATABASE_URL                    SQLAlchemy URL (default: sqlite:///data/plum.db)
  PLUM_AUTH_SECRET                Session token signing key (required in production)
  PLUM_SESSION_TTL                Session lifetime in seconds (default: 3600)
  ALLOW_SIWE_LOGIN                Enable /api/auth/siwe/* routes (default: false)
  PLUM_CHAIN_RPC_URL              JSON-RPC endpoint for payment checks
  PLUM_PAYMENT_TREASURY           Wallet that must receive plan payments
  PLUM_CHAIN_ID                   Expected chain id
  PLUM_PAYMENT_MIN_CONFIRMATIONS  Minimum confirmations (default: 1)
  PLUM_CHAIN_RPC_TIMEOUT          RPC timeout in seconds (default: 15)
  PLUM_PLAN_CATALOG_JSON          JSON list of plans (default: built-in)
  PLUM_AGENT_FREE_WALLETS         Comma-separated agent-free wallets
  PLUM_ALLOWED_ORIGINS            Comma-separated CORS origins
  HOST                            Server bind host (default: 0.0.0.0)
  PORT                            Server bind port (default: 8001)
"""

import os
import asyncio
import logging

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from plum_platform.api import create_platform_app
from plum_platform.auth import DEFAULT_SESSION_TTL, set_secret_key
from plum_platform.db import create_db_engine, create_session_factory, init_db
from plum_platform.nonce_store import NonceStore, run_sweep_loop
from plum_platform.payments import PaymentVerifier
from plum_platform.plans import load_payment_config, validate_payment_config_on_boot

load_dotenv()

# ── Logging ────────────────────────────────────────────────────

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s  %(message)s",
)
logger = logging.getLogger("plum.platform.main")

# ── Config ─────────────────────────────────────────────────────

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8001"))


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in ("true", "1", "yes")


# ── App factory ────────────────────────────────────────────────

def create_app() -> FastAPI:
    """Build the billing FastAPI app with all modules initialized."""

    secret = os.getenv("PLUM_AUTH_SECRET", "")
    if not secret:
        logger.warning("PLUM_AUTH_SECRET not set, using an insecure development secret")
        secret = "plum-billing-secret-change-me"
    set_secret_key(secret)

    engine = create_db_engine()
    init_db(engine)
    session_factory = create_session_factory(engine)

    validate_payment_config_on_boot()
    payment_config = load_payment_config()

    nonce_store = NonceStore()
    payment_verifier = PaymentVerifier(session_factory, payment_config)

    origins_env = os.getenv("PLUM_ALLOWED_ORIGINS", "http://localhost:3080")
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]

    siwe_enabled = _env_flag("ALLOW_SIWE_LOGIN")
    try:
        session_ttl = int(os.getenv("PLUM_SESSION_TTL", str(DEFAULT_SESSION_TTL)))
    except ValueError:
        session_ttl = DEFAULT_SESSION_TTL

    app = create_platform_app(
        session_factory=session_factory,
        nonce_store=nonce_store,
        payment_verifier=payment_verifier,
        payment_config=payment_config,
        siwe_enabled=siwe_enabled,
        allowed_origins=origins,
        session_ttl=session_ttl,
    )

    logger.info(
        f"Billing initialized: payments "
        f"{'configured' if payment_config.is_configured else 'DISABLED'}, "
        f"SIWE login {'on' if siwe_enabled else 'off'}"
    )

    @app.on_event("startup")
    async def startup():
        logger.info(f"Billing server starting on {HOST}:{PORT}")
        app.state.nonce_sweep = asyncio.create_task(
            run_sweep_loop(nonce_store), name="nonce_sweep",
        )

    @app.on_event("shutdown")
    async def shutdown():
        logger.info("Billing server shutting down")
        task = getattr(app.state, "nonce_sweep", None)
        if task:
            task.cancel()
        engine.dispose()

    return app


# Module-level app for uvicorn
app = create_app()


# ── Entry point ────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "plum_platform.platform_main:app",
        host=HOST,
        port=PORT,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        reload=os.getenv("DEV", "false").lower() in ("true", "1"),
    )
