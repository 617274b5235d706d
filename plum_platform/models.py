"""
Persistent models — wallet users, credit balances, ledger, plan payments.

PlumPayment.tx_hash is unique: that index, not the pre-check query in the
payment pipeline, is what makes a transaction claimable only once.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String

from plum_platform.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    ethereum_address = Column(String, unique=True, nullable=True, index=True)  # checksummed
    email = Column(String, nullable=True)
    username = Column(String, nullable=True)
    name = Column(String, nullable=True)
    provider = Column(String, nullable=False, default="siwe")
    role = Column(String, nullable=False, default="USER")  # ADMIN / USER
    email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Balance(Base):
    __tablename__ = "balances"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, unique=True, nullable=False, index=True)
    token_credits = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class LedgerTransaction(Base):
    """Append-only credit/usage log. Positive token_value = credits added."""
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    token_type = Column(String, nullable=False)       # credits / prompt / completion
    raw_amount = Column(BigInteger, nullable=False, default=0)
    token_value = Column(BigInteger, nullable=False, default=0)
    model = Column(String, nullable=True)
    context = Column(String, nullable=True)           # "plum-plan:starter", "message:agent-free", ...
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class PlumPayment(Base):
    __tablename__ = "plum_payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    wallet_address = Column(String, nullable=False, index=True)
    tx_hash = Column(String, unique=True, nullable=False, index=True)  # lowercase, trimmed
    chain_id = Column(Integer, nullable=True)
    plan_id = Column(String, nullable=False, index=True)
    plan_label = Column(String, nullable=False)
    paid_plm = Column(String, nullable=False)          # plan price in PLM at purchase time
    paid_wei = Column(String, nullable=False)          # actual tx value in wei
    credits_granted = Column(BigInteger, nullable=False)
    block_number = Column(BigInteger, nullable=True)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
