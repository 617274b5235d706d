"""
SIWE Verifier — Sign-In-With-Ethereum challenge/response.

Flow:
  1. GET  /api/auth/siwe/nonce   → NonceStore.issue()
  2. Wallet signs an EIP-4361 style message containing that nonce
     (EIP-191 personal_sign, supported by every wallet)
  3. POST /api/auth/siwe/verify  → SiweVerifier.verify(message, signature)
  4. Server finds or creates the wallet user and issues a session token

Message layout (only the parts we read):

    app.example.com wants you to sign in with your Ethereum account:
    0xAbC...123

    Sign in to Plum.

    URI: https://app.example.com
    Version: 1
    Chain ID: 41956
    Nonce: 8f2c...
    Issued At: 2025-01-01T00:00:00.000Z

Checks, in order; the first failure raises VerificationError:
  - signature recovers to an address
  - message names an address and a nonce
  - recovered address == claimed address (case-insensitive)
  - nonce is live (consumed here, so it can never be replayed)
  - Issued At, when present, is at most 10 minutes old
"""

import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from plum_platform.errors import VerificationError
from plum_platform.nonce_store import NonceStore

logger = logging.getLogger("plum.siwe")

MAX_MESSAGE_AGE_SECONDS = 10 * 60

_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class SiweChallenge:
    """Fields parsed out of a signed SIWE message. Never persisted."""
    address: Optional[str] = None
    nonce: Optional[str] = None
    chain_id: Optional[int] = None
    uri: Optional[str] = None
    issued_at: Optional[str] = None


@dataclass(frozen=True)
class SiweResult:
    address: str                  # checksummed
    chain_id: Optional[int] = None


def parse_siwe_message(message: str) -> SiweChallenge:
    lines = message.split("\n")
    fields = {}

    if len(lines) >= 2:
        fields["address"] = lines[1].strip() or None

    for line in lines:
        if line.startswith("Nonce: "):
            fields["nonce"] = line[len("Nonce: "):].strip() or None
        elif line.startswith("Chain ID: "):
            try:
                fields["chain_id"] = int(line[len("Chain ID: "):].strip())
            except ValueError:
                fields["chain_id"] = None
        elif line.startswith("URI: "):
            fields["uri"] = line[len("URI: "):].strip() or None
        elif line.startswith("Issued At: "):
            fields["issued_at"] = line[len("Issued At: "):].strip() or None

    return SiweChallenge(**fields)


def parse_timestamp(value: str) -> datetime:
    """
    ISO-8601 → aware datetime in UTC. Naive timestamps are taken as UTC.

    Fractional seconds of any length are cut or padded to microseconds
    (wallets emit 3, 6 or 9 digits; fromisoformat on 3.10 takes 3 or 6).
    Raises ValueError on anything unparseable.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_message(domain: str, address: str, nonce: str, uri: str = "",
                  chain_id: Optional[int] = None, issued_at: Optional[str] = None,
                  statement: str = "Sign in to Plum.") -> str:
    """Canonical message text, in the layout parse_siwe_message() reads."""
    if issued_at is None:
        issued_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    lines = [
        f"{domain} wants you to sign in with your Ethereum account:",
        address,
        "",
        statement,
        "",
        f"URI: {uri or 'https://' + domain}",
        "Version: 1",
    ]
    if chain_id is not None:
        lines.append(f"Chain ID: {chain_id}")
    lines.append(f"Nonce: {nonce}")
    lines.append(f"Issued At: {issued_at}")
    return "\n".join(lines)


def recover_address(message: str, signature: Union[bytes, str]) -> str:
    """Checksummed signer of an EIP-191 personal_sign signature."""
    signable = encode_defunct(text=message)
    return Account.recover_message(signable, signature=signature)


class SiweVerifier:
    """
    Usage:
        verifier = SiweVerifier(nonce_store)
        result = verifier.verify(message, signature)   # raises VerificationError
        result.address  # "0xAbC..."
    """

    def __init__(self, nonce_store: NonceStore,
                 max_age_seconds: float = MAX_MESSAGE_AGE_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.nonce_store = nonce_store
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def verify(self, message: str, signature: Union[bytes, str]) -> SiweResult:
        try:
            return self._verify(message, signature)
        except VerificationError as e:
            logger.warning(f"SIWE verification failed: {e.reason}")
            raise

    def _verify(self, message: str, signature: Union[bytes, str]) -> SiweResult:
        if not message or not signature:
            raise VerificationError("Message and signature are required")

        try:
            recovered = recover_address(message, signature)
        except Exception as e:
            raise VerificationError("Invalid signature") from e

        challenge = parse_siwe_message(message)
        if not challenge.address:
            raise VerificationError("Could not parse address from SIWE message")
        if not challenge.nonce:
            raise VerificationError("Could not parse nonce from SIWE message")

        if recovered.lower() != challenge.address.lower():
            raise VerificationError("Recovered address does not match claimed address")

        if not self.nonce_store.consume(challenge.nonce):
            raise VerificationError("Invalid or expired nonce")

        if challenge.issued_at:
            try:
                issued_at = parse_timestamp(challenge.issued_at)
            except ValueError:
                raise VerificationError("Invalid Issued At timestamp")
            if self._clock() - issued_at.timestamp() > self.max_age_seconds:
                raise VerificationError("Message too old")

        address = Web3.to_checksum_address(recovered)
        logger.info(f"SIWE verified: {address} (chainId={challenge.chain_id})")
        return SiweResult(address=address, chain_id=challenge.chain_id)
