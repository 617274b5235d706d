"""
Plan Catalog & Payment Config — What can be bought, and where to pay.

Plans come from PLUM_PLAN_CATALOG_JSON when it holds at least one valid
entry; otherwise the built-in catalog below is served. The catalog is
rebuilt on every call so env changes take effect without a restart.

Prices are in PLM (18 decimals, native coin of the payment chain) and are
compared on-chain in wei, never as floats.

Payment config is read once at startup:
  PLUM_CHAIN_RPC_URL              JSON-RPC endpoint (required for billing)
  PLUM_PAYMENT_TREASURY           Treasury wallet receiving payments (required)
  PLUM_CHAIN_ID                   Expected chain id (optional, checked if known)
  PLUM_PAYMENT_MIN_CONFIRMATIONS  Blocks including the tx's block (default 1)
  PLUM_CHAIN_RPC_TIMEOUT          Seconds per RPC call (default 15)
"""

import os
import json
import math
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from web3 import Web3

from plum_platform.entitlements import normalize_address

logger = logging.getLogger("plum.plans")

PLM_DECIMALS = 18
DEFAULT_RPC_TIMEOUT = 15.0


# ============================================================
# PLANS
# ============================================================

@dataclass(frozen=True)
class PlanDefinition:
    id: str
    label: str
    amount: str          # major units (PLM), decimal string
    amount_wei: str      # minor units, base-10 integer string
    credits_granted: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "plmAmount": self.amount,
            "plmAmountWei": self.amount_wei,
            "creditsGranted": self.credits_granted,
        }


DEFAULT_PLAN_CATALOG = [
    {"id": "starter", "label": "Starter", "plmAmount": "10", "creditsGranted": 2_000_000},
    {"id": "pro", "label": "Pro", "plmAmount": "50", "creditsGranted": 12_000_000},
    {"id": "max", "label": "Max", "plmAmount": "200", "creditsGranted": 60_000_000},
]


def to_wei(amount: str) -> str:
    """
    Convert a PLM decimal string to a wei integer string.

    Raises ValueError for non-numeric, non-finite, non-positive amounts and
    for amounts with more than 18 fractional digits.
    """
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Unparseable amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be a positive number: {amount!r}")
    exponent = value.as_tuple().exponent
    if exponent < -PLM_DECIMALS:
        raise ValueError(f"Amount has more than {PLM_DECIMALS} decimals: {amount!r}")
    return str(Web3.to_wei(value, "ether"))


def _parse_credits(raw) -> Optional[int]:
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        credits = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(credits) or credits <= 0:
        return None
    credits = math.floor(credits)
    return credits if credits >= 1 else None


def normalize_plan(plan) -> Optional[PlanDefinition]:
    """Validate one catalog entry. None if it should be dropped."""
    if not isinstance(plan, dict):
        return None

    plan_id = str(plan.get("id") or "").strip()
    label = str(plan.get("label") or plan_id).strip()
    amount = str(plan.get("plmAmount") or plan.get("amount") or "").strip()
    credits = _parse_credits(plan.get("creditsGranted"))

    if not plan_id or not label or not amount or credits is None:
        return None

    try:
        amount_wei = to_wei(amount)
    except ValueError as e:
        logger.debug(f"Dropping plan {plan_id}: {e}")
        return None

    return PlanDefinition(
        id=plan_id,
        label=label,
        amount=amount,
        amount_wei=amount_wei,
        credits_granted=credits,
    )


def _normalize_all(entries: list) -> list[PlanDefinition]:
    plans = []
    seen = set()
    for entry in entries:
        plan = normalize_plan(entry)
        if plan is None or plan.id in seen:
            continue
        seen.add(plan.id)
        plans.append(plan)
    return plans


def get_default_plans() -> list[PlanDefinition]:
    return _normalize_all(DEFAULT_PLAN_CATALOG)


def get_plan_catalog() -> list[PlanDefinition]:
    """Configured plans in declaration order, or the built-in catalog."""
    raw = os.getenv("PLUM_PLAN_CATALOG_JSON", "")
    if not raw.strip():
        return get_default_plans()

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("PLUM_PLAN_CATALOG_JSON is not valid JSON, using default plans")
        return get_default_plans()

    if not isinstance(parsed, list):
        logger.warning("PLUM_PLAN_CATALOG_JSON must be a JSON list, using default plans")
        return get_default_plans()

    plans = _normalize_all(parsed)
    if not plans:
        logger.warning("PLUM_PLAN_CATALOG_JSON has no valid plans, using default plans")
        return get_default_plans()
    return plans


def get_plan_by_id(plan_id) -> Optional[PlanDefinition]:
    if not plan_id:
        return None
    for plan in get_plan_catalog():
        if plan.id == plan_id:
            return plan
    return None


# ============================================================
# PAYMENT CONFIG
# ============================================================

@dataclass(frozen=True)
class PaymentConfig:
    chain_rpc_url: str = ""
    treasury_address: Optional[str] = None
    chain_id: Optional[int] = None
    min_confirmations: int = 1
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @property
    def is_configured(self) -> bool:
        return bool(self.chain_rpc_url) and bool(self.treasury_address)

    def public_dict(self) -> dict:
        """Client-facing view. The RPC URL may embed an API key and is omitted."""
        return {
            "chainId": self.chain_id,
            "treasuryAddress": self.treasury_address,
            "minConfirmations": self.min_confirmations,
        }


def _parse_int(raw: str) -> Optional[int]:
    try:
        return int(raw.strip())
    except (AttributeError, ValueError):
        return None


def load_payment_config() -> PaymentConfig:
    """Build PaymentConfig from the environment. All values are trimmed."""
    chain_id = _parse_int(os.getenv("PLUM_CHAIN_ID", ""))
    min_confirmations = _parse_int(os.getenv("PLUM_PAYMENT_MIN_CONFIRMATIONS", "1"))
    try:
        rpc_timeout = float(os.getenv("PLUM_CHAIN_RPC_TIMEOUT", str(DEFAULT_RPC_TIMEOUT)))
    except ValueError:
        rpc_timeout = DEFAULT_RPC_TIMEOUT

    return PaymentConfig(
        chain_rpc_url=os.getenv("PLUM_CHAIN_RPC_URL", "").strip(),
        treasury_address=normalize_address(os.getenv("PLUM_PAYMENT_TREASURY", "")),
        chain_id=chain_id,
        min_confirmations=min_confirmations if min_confirmations and min_confirmations > 0 else 1,
        rpc_timeout=rpc_timeout if math.isfinite(rpc_timeout) and rpc_timeout > 0 else DEFAULT_RPC_TIMEOUT,
    )


def validate_payment_config_on_boot() -> list[str]:
    """
    Log the state of the payment env at startup.

    No payment variable set: billing is disabled (warning only).
    Some set: every missing or malformed one is reported as an error.
    Returns the list of problems found.
    """
    rpc = os.getenv("PLUM_CHAIN_RPC_URL", "").strip()
    treasury = os.getenv("PLUM_PAYMENT_TREASURY", "").strip()
    chain_id = os.getenv("PLUM_CHAIN_ID", "").strip()

    if not (rpc or treasury or chain_id):
        logger.warning("No payment env configured, billing endpoint will return 503")
        return []

    errors = []
    if not rpc:
        errors.append("PLUM_CHAIN_RPC_URL is missing")
    if not treasury:
        errors.append("PLUM_PAYMENT_TREASURY is missing")
    elif not normalize_address(treasury):
        errors.append("PLUM_PAYMENT_TREASURY is not a valid Ethereum address")
    if not chain_id:
        errors.append("PLUM_CHAIN_ID is missing")
    elif _parse_int(chain_id) is None:
        errors.append("PLUM_CHAIN_ID is not a valid number")

    if errors:
        logger.error(f"Payment config incomplete: {'; '.join(errors)}")
    else:
        logger.info(
            f"Payment config OK: chainId={chain_id}, treasury={normalize_address(treasury)}"
        )
    return errors
