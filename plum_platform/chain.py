"""
Chain Oracle — Read-only transaction lookups over JSON-RPC.

The payment pipeline only needs three questions answered by the chain:
  - what does this transaction say (sender, receiver, value, chain id)
  - did it execute successfully, and in which block
  - what is the latest block number

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Unmined / unknown hashes return None, never raise
- Network timeouts and refused connections raise ChainUnavailable
- Raw AttributeDicts are flattened into plain dataclasses so nothing
  downstream depends on web3 types
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import requests
from web3 import Web3
from web3.exceptions import TransactionNotFound

logger = logging.getLogger("plum.chain")

DEFAULT_TIMEOUT_SECONDS = 15.0


class ChainUnavailable(Exception):
    """RPC endpoint timed out or could not be reached."""
    pass


@dataclass(frozen=True)
class ChainTransaction:
    hash: str
    sender: Optional[str]
    recipient: Optional[str]      # None for contract creation
    value: int                    # wei
    chain_id: Optional[int] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class ChainReceipt:
    status: int                   # 1 = success, 0 = reverted
    block_number: int


def _hex(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _optional_int(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class ChainOracle:
    """
    Web3-backed oracle for a single RPC endpoint.

    Usage:
        oracle = ChainOracle("https://rpc.example.org")
        tx = await oracle.get_transaction("0xabc...")
        receipt = await oracle.get_transaction_receipt("0xabc...")
        latest = await oracle.get_block_number()
    """

    def __init__(self, rpc_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._w3: Optional[Web3] = None

    @property
    def w3(self) -> Web3:
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(
                self.rpc_url, request_kwargs={"timeout": self.timeout}
            ))
        return self._w3

    async def _run(self, label: str, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except requests.exceptions.RequestException as e:
            logger.warning(f"RPC {label} failed against {self.rpc_url[:40]}: {e}")
            raise ChainUnavailable(f"RPC {label} failed: {type(e).__name__}") from e

    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        def _fetch():
            try:
                return self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return None

        raw = await self._run("eth_getTransactionByHash", _fetch)
        if raw is None:
            return None
        return ChainTransaction(
            hash=_hex(raw.get("hash")) or tx_hash,
            sender=raw.get("from"),
            recipient=raw.get("to"),
            value=int(raw.get("value") or 0),
            chain_id=_optional_int(raw.get("chainId")),
            block_number=_optional_int(raw.get("blockNumber")),
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        def _fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        raw = await self._run("eth_getTransactionReceipt", _fetch)
        if raw is None or raw.get("blockNumber") is None:
            return None
        return ChainReceipt(
            status=int(raw.get("status") or 0),
            block_number=int(raw["blockNumber"]),
        )

    async def get_block_number(self) -> int:
        return int(await self._run("eth_blockNumber", lambda: self.w3.eth.block_number))
