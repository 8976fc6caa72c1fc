#!/usr/bin/env python3
"""Token metadata lookup (name, symbol, decimals) with a read-through TTL cache."""
import asyncio
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests
from solana.rpc.commitment import Commitment

from amm.pool_pda import Identity, parse_identity
from config import COMMITMENT, DEFAULT_TOKEN_DECIMALS, DEFAULT_TOKENS, TOKEN_CACHE_TTL, TOKEN_LIST_URL

logger = logging.getLogger("tokens")

# SPL Mint layout: mint_authority option (36) + supply u64 (8) -> decimals u8 at 44
MINT_DECIMALS_OFFSET = 44
MINT_ACCOUNT_SIZE = 82


@dataclass(frozen=True)
class TokenInfo:
    mint: str
    name: str
    symbol: str
    decimals: int
    source: str = "default"

    def to_dict(self) -> dict:
        return {"mint": self.mint, "name": self.name, "symbol": self.symbol, "decimals": self.decimals}


def fetch_token_list(url: str = TOKEN_LIST_URL, timeout: float = 10) -> Dict[str, dict]:
    """Download the public token list and index it by mint."""
    res = requests.get(url, timeout=timeout)
    res.raise_for_status()
    tokens = res.json().get("tokens", [])
    return {t["address"]: t for t in tokens if "address" in t and "decimals" in t}


class TokenDirectory:
    """
    Read-through cache over DEFAULT_TOKENS, the public token list and the
    on-chain mint account, in that order. A miss is cached as None too.
    """

    def __init__(self, rpc=None, ttl: float = TOKEN_CACHE_TTL, list_url: Optional[str] = TOKEN_LIST_URL,
                 clock: Callable[[], float] = time.monotonic):
        self.rpc = rpc
        self.ttl = ttl
        self.list_url = list_url
        self._clock = clock
        self._cache: Dict[str, Tuple[Optional[TokenInfo], float]] = {}
        self._token_list: Optional[Dict[str, dict]] = None
        self._token_list_at: float = 0

    async def lookup(self, token_mint: Identity) -> Optional[TokenInfo]:
        mint = str(parse_identity(token_mint))

        entry = self._cache.get(mint)
        if entry and self._clock() - entry[1] < self.ttl:
            return entry[0]

        try:
            info = await self._resolve(mint)
        except Exception as e:
            # Lookup failures are not a confirmed miss; leave the cache alone
            logger.warning(f"Token lookup failed for {mint[:8]}...: {e}")
            return None

        self._cache[mint] = (info, self._clock())
        return info

    async def get_decimals(self, token_mint: Identity) -> Tuple[int, bool]:
        """Return (decimals, reduced_confidence). Falls back to DEFAULT_TOKEN_DECIMALS."""
        info = await self.lookup(token_mint)
        if info is None:
            logger.warning(f"No metadata for {str(token_mint)[:8]}..., assuming {DEFAULT_TOKEN_DECIMALS} decimals")
            return DEFAULT_TOKEN_DECIMALS, True
        return info.decimals, False

    def invalidate(self, token_mint: Identity):
        self._cache.pop(str(parse_identity(token_mint)), None)

    async def _resolve(self, mint: str) -> Optional[TokenInfo]:
        known = DEFAULT_TOKENS.get(mint)
        if known:
            return TokenInfo(mint, known["name"], known["symbol"], known["decimals"], "default")

        listed = (await self._get_token_list()).get(mint)
        if listed:
            return TokenInfo(mint, listed.get("name", ""), listed.get("symbol", f"{mint[:4]}..."),
                             int(listed["decimals"]), "token_list")

        decimals = await self._fetch_mint_decimals(mint)
        if decimals is not None:
            logger.info(f"Discovered mint {mint[:8]}... on-chain ({decimals} decimals)")
            return TokenInfo(mint, "", f"{mint[:4]}...", decimals, "chain")

        return None

    async def _get_token_list(self) -> Dict[str, dict]:
        if not self.list_url:
            return {}
        if self._token_list is not None and self._clock() - self._token_list_at < self.ttl:
            return self._token_list

        try:
            self._token_list = await asyncio.to_thread(fetch_token_list, self.list_url)
            logger.info(f"Loaded {len(self._token_list)} tokens from token list")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Token list unavailable: {e}")
            self._token_list = self._token_list or {}
        self._token_list_at = self._clock()
        return self._token_list

    async def _fetch_mint_decimals(self, mint: str) -> Optional[int]:
        if self.rpc is None:
            return None
        resp = await self.rpc.get_account_info(parse_identity(mint), commitment=Commitment(COMMITMENT),
                                               encoding="base64")
        account = getattr(resp, "value", None)
        if account is None or len(account.data) < MINT_ACCOUNT_SIZE:
            return None
        return struct.unpack_from('<B', bytes(account.data), MINT_DECIMALS_OFFSET)[0]
