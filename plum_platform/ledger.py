"""
Credit Ledger — Balances, credit grants and usage reports.

Every balance change is an append-only LedgerTransaction row. The balance
itself is bumped with a single `UPDATE ... SET token_credits = token_credits + n`
so concurrent grants never overwrite each other.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from plum_platform.models import Balance, LedgerTransaction

logger = logging.getLogger("plum.ledger")

AGENT_FREE_CONTEXT_MARKER = ":agent-free"


def get_balance(db: Session, user_id: str) -> int:
    row = db.query(Balance.token_credits).filter(Balance.user_id == user_id).one_or_none()
    return int(row[0]) if row else 0


def credit(db: Session, user_id: str, amount: int, context: str) -> int:
    """Add `amount` credits to the user's balance. Returns the new balance."""
    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")

    # A first-ever credit can race another one on the balances.user_id index.
    for attempt in range(2):
        db.add(LedgerTransaction(
            user_id=user_id,
            token_type="credits",
            raw_amount=amount,
            token_value=amount,
            context=context,
        ))
        updated = (
            db.query(Balance)
            .filter(Balance.user_id == user_id)
            .update(
                {Balance.token_credits: Balance.token_credits + amount},
                synchronize_session=False,
            )
        )
        if not updated:
            db.add(Balance(user_id=user_id, token_credits=amount))
        try:
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.info(f"Balance row for {user_id} created concurrently, retrying credit")

    balance = get_balance(db, user_id)
    logger.info(f"CREDIT: user={user_id} +{amount} ({context}) → balance {balance}")
    return balance


# ============================================================
# USAGE REPORT
# ============================================================

def summarize_usage(transactions) -> tuple[dict, list[dict]]:
    """
    Aggregate ledger rows into a summary and a per-model breakdown.

    Negative token_value = credits spent (waived when the context carries
    the agent-free marker); positive = credits added.
    """
    summary = {
        "promptTokens": 0,
        "completionTokens": 0,
        "totalTokens": 0,
        "spentCredits": 0,
        "addedCredits": 0,
        "waivedCredits": 0,
        "netCredits": 0,
    }
    by_model: dict[str, dict] = {}

    for tx in transactions:
        raw_amount = int(tx.raw_amount or 0)
        token_value = int(tx.token_value or 0)
        model_key = tx.model or "unknown"
        is_agent_free = isinstance(tx.context, str) and AGENT_FREE_CONTEXT_MARKER in tx.context

        stats = by_model.setdefault(model_key, {
            "model": model_key,
            "promptTokens": 0,
            "completionTokens": 0,
            "totalTokens": 0,
            "spentCredits": 0,
            "waivedCredits": 0,
        })

        if tx.token_type == "prompt":
            summary["promptTokens"] += abs(raw_amount)
            stats["promptTokens"] += abs(raw_amount)
        elif tx.token_type == "completion":
            summary["completionTokens"] += abs(raw_amount)
            stats["completionTokens"] += abs(raw_amount)

        if token_value < 0:
            summary["spentCredits"] += abs(token_value)
            stats["spentCredits"] += abs(token_value)
            if is_agent_free:
                summary["waivedCredits"] += abs(token_value)
                stats["waivedCredits"] += abs(token_value)
        elif token_value > 0:
            summary["addedCredits"] += token_value

    summary["totalTokens"] = summary["promptTokens"] + summary["completionTokens"]
    summary["netCredits"] = summary["addedCredits"] - summary["spentCredits"]

    rows = []
    for stats in by_model.values():
        stats["totalTokens"] = stats["promptTokens"] + stats["completionTokens"]
        rows.append(stats)
    rows.sort(key=lambda x: x["totalTokens"], reverse=True)
    return summary, rows


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_transactions(db: Session, user_id: str, start: datetime, end: datetime) -> list[LedgerTransaction]:
    """Rows with start <= created_at <= end. Aware bounds are compared as UTC instants."""
    start, end = _as_utc(start), _as_utc(end)
    return (
        db.query(LedgerTransaction)
        .filter(
            LedgerTransaction.user_id == user_id,
            LedgerTransaction.created_at >= start,
            LedgerTransaction.created_at <= end,
        )
        .all()
    )
