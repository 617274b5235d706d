"""
Nonce Store — One-time challenge tokens for SIWE login.

Each nonce is random, lives for NONCE_TTL_SECONDS and is destroyed the first
time anyone tries to consume it, whether or not the login succeeds.

Process-local: if the API runs as several worker processes, this must be
replaced by a shared store (the class is the seam).
"""

import time
import asyncio
import secrets
import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("plum.nonce_store")

NONCE_TTL_SECONDS = 5 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60


@dataclass(frozen=True)
class NonceRecord:
    value: str
    created_at: float


class NonceStore:
    """
    Thread-safe in-memory nonce map.

    Usage:
        store = NonceStore()
        nonce = store.issue()
        store.consume(nonce)   # True
        store.consume(nonce)   # False
    """

    def __init__(self, ttl_seconds: float = NONCE_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: dict[str, NonceRecord] = {}
        self._lock = threading.Lock()

    def issue(self) -> str:
        """Generate and remember a fresh 128-bit hex nonce."""
        value = secrets.token_hex(16)
        with self._lock:
            self._records[value] = NonceRecord(value=value, created_at=self._clock())
        return value

    def consume(self, value: str) -> bool:
        """Atomic check-and-delete. True only for a known, unexpired nonce."""
        if not value:
            return False
        with self._lock:
            record = self._records.pop(value, None)
        if record is None:
            return False
        if self._clock() - record.created_at > self.ttl_seconds:
            logger.info(f"Expired nonce rejected: {value[:8]}...")
            return False
        return True

    def sweep(self) -> int:
        """Drop every expired nonce. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                value for value, record in self._records.items()
                if now - record.created_at > self.ttl_seconds
            ]
            for value in expired:
                del self._records[value]
        if expired:
            logger.debug(f"Nonce sweep removed {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


async def run_sweep_loop(nonce_store: NonceStore, interval: float = SWEEP_INTERVAL_SECONDS):
    """Purge expired SIWE nonces every `interval` seconds until cancelled."""
    logger.info(f"Nonce sweep started (interval: {interval}s)")
    while True:
        await asyncio.sleep(interval)
        try:
            removed = nonce_store.sweep()
            if removed:
                logger.info(f"Nonce sweep: removed {removed} expired nonce(s)")
        except Exception as e:
            logger.warning(f"Nonce sweep cycle error: {e}")
