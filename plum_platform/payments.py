"""
Payment Verifier — Turns a client-reported tx hash into a credit grant.

The client pays a plan by sending native PLM to the treasury wallet, then
reports the transaction hash. Nothing the client says is trusted: every
fact is re-read from the chain, and the hash can be claimed only once.

Gates, evaluated strictly in order (first failure wins):
   1. planId, txHash and a linked wallet are present          BadRequest
   2. planId is in the catalog                                NotFound
   3. RPC URL and treasury are configured                     Unavailable
   4. txHash not already claimed (fast pre-check)             Conflict
   5. transaction and receipt exist (mined)                   NotFound
   6. receipt status == success                               Invalid
   7. sender == authenticated wallet                          Forbidden
   8. receiver == treasury                                    Invalid
   9. chain id matches (only if both sides known)             Invalid
  10. value >= plan price in wei                              Invalid
  11. confirmations >= minimum                                Invalid
  12. insert payment row (unique tx_hash), then credit        Conflict on race

The unique index on plum_payments.tx_hash is the real double-spend guard:
two requests racing past gate 4 both reach gate 12, exactly one insert
commits and the other is answered Conflict. Credits are granted only after
the payment row is committed, so a crash in between leaves a confirmed
payment without a ledger entry (recoverable) and never credits twice.
"""

import re
import asyncio
import logging
import functools
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from plum_platform import ledger
from plum_platform.chain import ChainOracle, ChainReceipt, ChainTransaction, ChainUnavailable
from plum_platform.entitlements import normalize_address
from plum_platform.errors import (
    BadRequest, Conflict, Forbidden, Invalid, NotFound, Unavailable,
)
from plum_platform.models import PaymentStatus, PlumPayment
from plum_platform.plans import PaymentConfig, PlanDefinition, get_plan_by_id

logger = logging.getLogger("plum.payments")

TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")

ALREADY_CLAIMED = "This transaction hash was already claimed."


class Oracle(Protocol):
    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[ChainReceipt]: ...

    async def get_block_number(self) -> int: ...


@dataclass(frozen=True)
class VerifiedPayment:
    plan: PlanDefinition
    tx_hash: str
    balance: int
    confirmations: int

    def to_dict(self) -> dict:
        return {
            "message": "Payment verified and credits added.",
            "plan": self.plan.to_dict(),
            "txHash": self.tx_hash,
            "balance": self.balance,
        }


def normalize_tx_hash(tx_hash) -> str:
    return str(tx_hash or "").strip().lower()


class PaymentVerifier:
    """
    Usage:
        verifier = PaymentVerifier(SessionLocal, load_payment_config())
        result = await verifier.verify(user.id, wallet, "starter", "0xabc...")
        result.balance  # refreshed credit balance

    Raises a PaymentError subclass on every rejection.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: PaymentConfig,
        oracle: Optional[Oracle] = None,
        plan_lookup: Callable[[str], Optional[PlanDefinition]] = get_plan_by_id,
    ):
        self.session_factory = session_factory
        self.config = config
        self._oracle = oracle
        self._plan_lookup = plan_lookup

    @property
    def oracle(self) -> Oracle:
        if self._oracle is None:
            self._oracle = ChainOracle(self.config.chain_rpc_url, timeout=self.config.rpc_timeout)
        return self._oracle

    async def verify(self, user_id: str, wallet_address: Optional[str],
                     plan_id: Optional[str], tx_hash: Optional[str]) -> VerifiedPayment:
        # 1. Input
        if not plan_id or not tx_hash:
            raise BadRequest("`planId` and `txHash` are required.")
        wallet = normalize_address(wallet_address)
        if not wallet:
            raise BadRequest("Wallet account is required for plan payments.")
        normalized_hash = normalize_tx_hash(tx_hash)
        if not TX_HASH_RE.match(normalized_hash):
            raise BadRequest("`txHash` must be a 0x-prefixed 32-byte hex string.")

        # 2. Plan
        plan = self._plan_lookup(plan_id)
        if plan is None:
            raise NotFound(f"Unknown plan: {plan_id}")

        # 3. Config
        if not self.config.is_configured:
            raise Unavailable(
                "Payment verification is not configured. Missing RPC URL or treasury wallet."
            )

        # 4. Fast duplicate check
        if await self._in_thread(self._is_claimed, normalized_hash):
            logger.warning(f"PAYMENT REPLAY: {normalized_hash[:18]}... already claimed (user={user_id})")
            raise Conflict(ALREADY_CLAIMED)

        # 5-11. Chain facts
        tx, receipt, confirmations = await self._check_on_chain(normalized_hash, wallet, plan)

        # 12. Claim, then credit
        balance = await self._in_thread(
            self._claim_and_credit, user_id, wallet, normalized_hash, plan, tx, receipt,
        )

        logger.info(
            f"PAYMENT VERIFIED: {normalized_hash[:18]}... | user={user_id} | plan={plan.id} | "
            f"+{plan.credits_granted} credits | confirmations={confirmations}"
        )
        return VerifiedPayment(
            plan=plan,
            tx_hash=normalized_hash,
            balance=balance,
            confirmations=confirmations,
        )

    # ============================================================
    # CHAIN GATES
    # ============================================================

    async def _check_on_chain(self, tx_hash: str, wallet: str,
                              plan: PlanDefinition) -> tuple[ChainTransaction, ChainReceipt, int]:
        try:
            tx = await self.oracle.get_transaction(tx_hash)
            receipt = await self.oracle.get_transaction_receipt(tx_hash)
        except ChainUnavailable as e:
            raise Unavailable("Chain RPC is unavailable. Try again shortly.") from e

        if tx is None or receipt is None:
            raise NotFound("Transaction not found or not mined yet.")

        if receipt.status != 1:
            self._reject(tx_hash, "receipt status failed")
            raise Invalid("Transaction failed on-chain.")

        sender = normalize_address(tx.sender)
        if not sender or sender != wallet:
            self._reject(tx_hash, f"sender {tx.sender} != wallet {wallet}")
            raise Forbidden("Transaction sender does not match the authenticated wallet.")

        recipient = normalize_address(tx.recipient)
        if not recipient or recipient != self.config.treasury_address:
            self._reject(tx_hash, f"receiver {tx.recipient} != treasury")
            raise Invalid("Transaction receiver does not match the configured treasury wallet.")

        expected_chain = self.config.chain_id
        if expected_chain is not None and tx.chain_id is not None and tx.chain_id != expected_chain:
            self._reject(tx_hash, f"chainId {tx.chain_id} != {expected_chain}")
            raise Invalid(f"Transaction chain mismatch. Expected chainId {expected_chain}.")

        if int(tx.value) < int(plan.amount_wei):
            self._reject(tx_hash, f"value {tx.value} < {plan.amount_wei}")
            raise Invalid(f"Insufficient payment value. Required at least {plan.amount} PLM.")

        # Latest block is read after the receipt: chain growth in between
        # can only undercount confirmations.
        try:
            latest_block = await self.oracle.get_block_number()
        except ChainUnavailable as e:
            raise Unavailable("Chain RPC is unavailable. Try again shortly.") from e

        confirmations = latest_block - receipt.block_number + 1
        if confirmations < self.config.min_confirmations:
            raise Invalid(
                f"Not enough confirmations. Required {self.config.min_confirmations}, "
                f"got {confirmations}."
            )

        return tx, receipt, confirmations

    @staticmethod
    def _reject(tx_hash: str, reason: str):
        logger.warning(f"PAYMENT REJECTED: {tx_hash[:18]}... | {reason}")

    # ============================================================
    # STORE
    # Blocking SQLAlchemy work runs in the default executor, one short-lived
    # session per step, so no connection is held across RPC awaits.
    # ============================================================

    @staticmethod
    async def _in_thread(fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _is_claimed(self, tx_hash: str) -> bool:
        db = self.session_factory()
        try:
            return self._find_payment(db, tx_hash) is not None
        finally:
            db.close()

    def _claim_and_credit(self, user_id: str, wallet: str, tx_hash: str, plan: PlanDefinition,
                          tx: ChainTransaction, receipt: ChainReceipt) -> int:
        db = self.session_factory()
        try:
            self._record_payment(db, user_id, wallet, tx_hash, plan, tx, receipt)
            return ledger.credit(db, user_id, plan.credits_granted, context=f"plum-plan:{plan.id}")
        finally:
            db.close()

    @staticmethod
    def _find_payment(db: Session, tx_hash: str) -> Optional[PlumPayment]:
        return db.query(PlumPayment).filter(PlumPayment.tx_hash == tx_hash).one_or_none()

    def _record_payment(self, db: Session, user_id: str, wallet: str, tx_hash: str,
                        plan: PlanDefinition, tx: ChainTransaction, receipt: ChainReceipt) -> PlumPayment:
        payment = PlumPayment(
            user_id=user_id,
            wallet_address=wallet,
            tx_hash=tx_hash,
            chain_id=tx.chain_id if tx.chain_id is not None else self.config.chain_id,
            plan_id=plan.id,
            plan_label=plan.label,
            paid_plm=plan.amount,
            paid_wei=str(tx.value),
            credits_granted=plan.credits_granted,
            block_number=receipt.block_number,
            status=PaymentStatus.CONFIRMED,
        )
        db.add(payment)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(f"PAYMENT RACE: {tx_hash[:18]}... claimed concurrently (user={user_id})")
            raise Conflict(ALREADY_CLAIMED)
        return payment
