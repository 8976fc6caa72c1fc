"""
Blockhash cache for transaction assembly.

Keeps the most recent blockhash in memory so repeated quotes/builds within
the same second don't each pay an RPC round-trip. Every submission attempt
asks for a fresh one (max_age_ms=0) so a retry never reuses an expired head.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from solana.rpc.commitment import Commitment
from solders.hash import Hash

from config import COMMITMENT

logger = logging.getLogger("blockhash_cache")
logger.setLevel(logging.INFO)


class BlockhashCache:
    """Async blockhash cache backed by an AsyncClient."""

    def __init__(self, rpc, clock: Callable[[], float] = time.monotonic):
        self.rpc = rpc
        self._clock = clock

        self._blockhash: Optional[Hash] = None
        self._last_valid_block_height: int = 0
        self._last_update: float = 0
        self._lock = asyncio.Lock()

    async def get_fresh_blockhash(self, max_age_ms: int = 1000) -> Tuple[Hash, int]:
        """
        Return (blockhash, last_valid_block_height), fetching a new head when the
        cached one is at least max_age_ms old. max_age_ms=0 always fetches.
        """
        async with self._lock:
            age = (self._clock() - self._last_update) * 1000
            if age >= max_age_ms or self._blockhash is None:
                await self._refresh_locked()
            return self._blockhash, self._last_valid_block_height

    async def get_block_height(self) -> int:
        """Current block height, compared against a sent transaction's last_valid_block_height."""
        resp = await self.rpc.get_block_height(Commitment(COMMITMENT))
        return resp.value

    async def _refresh_locked(self):
        """Fetch fresh blockhash from RPC (must hold lock). Errors propagate."""
        resp = await self.rpc.get_latest_blockhash(Commitment(COMMITMENT))
        self._blockhash = resp.value.blockhash
        self._last_valid_block_height = resp.value.last_valid_block_height
        self._last_update = self._clock()
        logger.debug(f"Blockhash refreshed: {str(self._blockhash)[:8]}... "
                     f"(valid until {self._last_valid_block_height})")
