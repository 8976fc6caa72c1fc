#!/usr/bin/env python3
"""
Liquidity pool account decoding and a short-TTL read-through cache.

A pool that does not exist is a valid, cacheable answer (None). Network
failures are never cached so the next read retries the RPC.
"""

import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from amm.errors import AmmError, ErrorCategory
from amm.pool_pda import Identity, derive_pool_addresses, parse_identity
from config import COMMITMENT, POOL_CACHE_TTL

logger = logging.getLogger("pool_state")
logger.setLevel(logging.INFO)

# Anchor account discriminator: sha256("account:LiquidityPool")[:8]
POOL_ACCOUNT_DISCRIMINATOR = bytes.fromhex("42261140bc504481")

POOL_OFFSETS = {
    "discriminator": 0,     # 8 bytes
    "token_mint": 8,        # Pubkey (32 bytes)
    "authority": 40,        # Pubkey (32 bytes)
    "token_reserve": 72,    # u64
    "sol_reserve": 80,      # u64
    "lp_supply": 88,        # u64
    "fee_rate": 96,         # u16 (basis points)
    "bump": 98,             # u8
}
POOL_ACCOUNT_SIZE = 99


@dataclass
class PoolState:
    """Decoded LiquidityPool account. Reserves are raw units from one fetch."""
    address: str
    token_mint: str
    authority: str
    token_reserve: int
    sol_reserve: int
    lp_supply: int
    fee_rate_bps: int
    bump: int
    fetched_at: float = field(default=0.0, compare=False)

    @property
    def has_liquidity(self) -> bool:
        return self.token_reserve > 0 and self.sol_reserve > 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "token_mint": self.token_mint,
            "authority": self.authority,
            "token_reserve": self.token_reserve,
            "sol_reserve": self.sol_reserve,
            "lp_supply": self.lp_supply,
            "fee_rate_bps": self.fee_rate_bps,
        }


def decode_pool_account(address: str, data: bytes) -> PoolState:
    """
    Parse raw LiquidityPool account bytes.

    Raises:
        AmmError: INVALID_POOL_CONFIGURATION if the data is not a pool account
    """
    if len(data) < POOL_ACCOUNT_SIZE:
        raise AmmError(
            ErrorCategory.INVALID_POOL_CONFIGURATION,
            f"Pool account data too short: {len(data)} bytes",
            {"address": address},
        )
    if data[:8] != POOL_ACCOUNT_DISCRIMINATOR:
        raise AmmError(
            ErrorCategory.INVALID_POOL_CONFIGURATION,
            "Account is not a liquidity pool",
            {"address": address, "discriminator": data[:8].hex()},
        )

    def read_pubkey(offset):
        return str(Pubkey.from_bytes(data[offset:offset + 32]))

    def read_u64(offset):
        return struct.unpack_from('<Q', data, offset)[0]

    return PoolState(
        address=address,
        token_mint=read_pubkey(POOL_OFFSETS["token_mint"]),
        authority=read_pubkey(POOL_OFFSETS["authority"]),
        token_reserve=read_u64(POOL_OFFSETS["token_reserve"]),
        sol_reserve=read_u64(POOL_OFFSETS["sol_reserve"]),
        lp_supply=read_u64(POOL_OFFSETS["lp_supply"]),
        fee_rate_bps=struct.unpack_from('<H', data, POOL_OFFSETS["fee_rate"])[0],
        bump=data[POOL_OFFSETS["bump"]],
    )


def encode_pool_account(state: PoolState) -> bytes:
    """Inverse of decode_pool_account."""
    return (
        POOL_ACCOUNT_DISCRIMINATOR
        + bytes(Pubkey.from_string(state.token_mint))
        + bytes(Pubkey.from_string(state.authority))
        + struct.pack('<QQQHB', state.token_reserve, state.sol_reserve,
                      state.lp_supply, state.fee_rate_bps, state.bump)
    )


class PoolStateCache:
    """
    Per-token read-through cache of pool accounts.

    Owned by whoever constructs it; two exchanges never share entries.
    Entries are replaced wholesale (last writer wins).
    """

    def __init__(self, rpc, program_id: Identity, ttl: float = POOL_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.rpc = rpc
        self.program_id = parse_identity(program_id)
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Optional[PoolState], float]] = {}

    def __len__(self):
        return len(self._entries)

    def _fresh_entry(self, key: str) -> Optional[Tuple[Optional[PoolState], float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry[1] >= self.ttl:
            return None
        return entry

    async def get(self, token_mint: Identity, force_refresh: bool = False) -> Optional[PoolState]:
        """
        Return the pool for token_mint, or None if it does not exist.

        Raises:
            AmmError: TRANSIENT_NETWORK on RPC failure (nothing cached),
                      INVALID_POOL_CONFIGURATION if the account is malformed
        """
        mint = parse_identity(token_mint)
        key = str(mint)

        if not force_refresh:
            entry = self._fresh_entry(key)
            if entry is not None:
                return entry[0]

        state = await self._fetch(mint)
        self._entries[key] = (state, self._clock())
        return state

    async def _fetch(self, mint: Pubkey) -> Optional[PoolState]:
        pool_address = derive_pool_addresses(self.program_id, mint).pool

        try:
            resp = await self.rpc.get_account_info(
                pool_address, commitment=Commitment(COMMITMENT), encoding="base64"
            )
        except Exception as e:
            logger.warning(f"Pool fetch failed for {str(mint)[:8]}...: {e}")
            raise AmmError(
                ErrorCategory.TRANSIENT_NETWORK,
                "Could not load pool state, please retry",
                {"token_mint": str(mint), "raw": str(e)},
            ) from e

        account = getattr(resp, "value", None)
        if account is None or not account.data:
            logger.info(f"No pool for {str(mint)[:8]}... at {str(pool_address)[:8]}...")
            return None

        state = decode_pool_account(str(pool_address), bytes(account.data))
        state.fetched_at = self._clock()
        logger.debug(f"Pool {str(mint)[:8]}...: token={state.token_reserve} "
                     f"sol={state.sol_reserve} fee={state.fee_rate_bps}bps")
        return state

    def invalidate(self, token_mint: Identity):
        """Drop the entry for token_mint. Safe to call when nothing is cached."""
        self._entries.pop(str(parse_identity(token_mint)), None)

    def clear(self):
        self._entries.clear()
