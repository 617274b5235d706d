"""
Wallet Entitlements — Agent-free allowlist and billing mode.

A user whose linked wallet appears in PLUM_AGENT_FREE_WALLETS is billed in
"agent-free" mode; everyone else is "paid". The allowlist is parsed once per
distinct raw env string and cached process-wide.
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

logger = logging.getLogger("plum.entitlements")

AGENT_FREE_ENV = "PLUM_AGENT_FREE_WALLETS"

BILLING_AGENT_FREE = "agent-free"
BILLING_PAID = "paid"

_cache_lock = threading.Lock()
_cached_allowlist_raw: Optional[str] = None
_cached_allowlist: frozenset[str] = frozenset()


@dataclass(frozen=True)
class WalletEntitlement:
    wallet_address: Optional[str]
    is_agent_free: bool
    billing_mode: str

    def to_dict(self) -> dict:
        return {
            "walletAddress": self.wallet_address,
            "isAgentFree": self.is_agent_free,
            "billingMode": self.billing_mode,
        }


def normalize_address(address) -> Optional[str]:
    """Checksummed form of `address`, or None if empty or malformed."""
    if not isinstance(address, str) or not address.strip():
        return None
    candidate = address.strip()
    if not Web3.is_address(candidate):
        return None
    return Web3.to_checksum_address(candidate)


def parse_address_allowlist(raw: str) -> frozenset[str]:
    addresses = set()
    for value in (raw or "").split(","):
        normalized = normalize_address(value)
        if normalized:
            addresses.add(normalized)
        elif value.strip():
            logger.warning(f"Ignoring malformed agent-free wallet: {value.strip()[:50]}")
    return frozenset(addresses)


def get_agent_free_wallets() -> frozenset[str]:
    """Current allowlist; rebuilt only when the env string changes."""
    global _cached_allowlist_raw, _cached_allowlist

    raw = os.getenv(AGENT_FREE_ENV, "").strip()
    with _cache_lock:
        if raw != _cached_allowlist_raw:
            _cached_allowlist = parse_address_allowlist(raw)
            _cached_allowlist_raw = raw
            logger.info(f"Agent-free allowlist loaded: {len(_cached_allowlist)} wallet(s)")
        return _cached_allowlist


def has_agent_free_wallet_config() -> bool:
    return len(get_agent_free_wallets()) > 0


def is_agent_free_wallet(address) -> bool:
    normalized = normalize_address(address)
    if not normalized:
        return False
    return normalized in get_agent_free_wallets()


def get_user_wallet_address(user) -> Optional[str]:
    """The user's linked wallet, checksummed. None when unset or invalid."""
    if user is None:
        return None
    return normalize_address(getattr(user, "ethereum_address", None))


def resolve_user_entitlement(user) -> WalletEntitlement:
    wallet_address = get_user_wallet_address(user)
    is_agent_free = bool(wallet_address) and is_agent_free_wallet(wallet_address)
    return WalletEntitlement(
        wallet_address=wallet_address,
        is_agent_free=is_agent_free,
        billing_mode=BILLING_AGENT_FREE if is_agent_free else BILLING_PAID,
    )
