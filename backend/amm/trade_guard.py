#!/usr/bin/env python3
"""
Trade Guard - pre-flight validation before anything is signed.

Fails fast, before the wallet is ever asked to sign, on:
- Non-positive amounts
- Slippage outside the configured bounds
- SOL balance below amount + fee buffer
- Token / LP balance below the amount being spent
"""
import logging
import struct
from decimal import Decimal
from typing import Optional

from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from amm.amm_math import Number, SwapDirection
from amm.errors import AmmError, ErrorCategory
from amm.pool_pda import Identity, derive_user_token_account, parse_identity
from config import COMMITMENT, FEE_BUFFER_LAMPORTS, MAX_SLIPPAGE_PERCENT, MIN_SLIPPAGE_PERCENT

logger = logging.getLogger("trade_guard")

# SPL token account: mint (32) + owner (32) -> amount u64 at 64
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64


def validate_amount(amount_raw: int, label: str = "amount"):
    if amount_raw <= 0:
        raise AmmError(
            ErrorCategory.INSUFFICIENT_BALANCE,
            f"Enter a {label} greater than zero",
            {label: amount_raw},
        )


def validate_slippage(slippage_percent: Number):
    slippage = Decimal(str(slippage_percent))
    if slippage < Decimal(str(MIN_SLIPPAGE_PERCENT)) or slippage > Decimal(str(MAX_SLIPPAGE_PERCENT)):
        raise AmmError(
            ErrorCategory.SLIPPAGE_EXCEEDED,
            f"Slippage {slippage}% must be between {MIN_SLIPPAGE_PERCENT}% and {MAX_SLIPPAGE_PERCENT}%",
            {"slippage_percent": str(slippage), "min": MIN_SLIPPAGE_PERCENT, "max": MAX_SLIPPAGE_PERCENT},
        )


class TradeGuard:
    """Balance and parameter checks against the live chain."""

    def __init__(self, rpc, fee_buffer: int = FEE_BUFFER_LAMPORTS):
        self.rpc = rpc
        self.fee_buffer = fee_buffer

    async def get_sol_balance(self, owner: Identity) -> int:
        try:
            resp = await self.rpc.get_balance(parse_identity(owner), commitment=Commitment(COMMITMENT))
        except Exception as e:
            raise AmmError(ErrorCategory.TRANSIENT_NETWORK, "Could not read SOL balance",
                           {"raw": str(e)}) from e
        return resp.value

    async def get_token_balance(self, owner: Identity, mint: Identity) -> int:
        """Raw balance of owner's ATA for mint; 0 if the account does not exist."""
        ata = derive_user_token_account(owner, mint)
        return await self.get_token_account_balance(ata)

    async def get_token_account_balance(self, token_account: Pubkey) -> int:
        try:
            resp = await self.rpc.get_account_info(token_account, commitment=Commitment(COMMITMENT),
                                                   encoding="base64")
        except Exception as e:
            raise AmmError(ErrorCategory.TRANSIENT_NETWORK, "Could not read token balance",
                           {"account": str(token_account), "raw": str(e)}) from e

        account = resp.value
        if account is None or len(account.data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
            return 0
        return struct.unpack_from('<Q', bytes(account.data), TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]

    async def _require_sol(self, owner: Identity, lamports: int):
        balance = await self.get_sol_balance(owner)
        required = lamports + self.fee_buffer
        if balance < required:
            raise AmmError(
                ErrorCategory.INSUFFICIENT_BALANCE,
                f"Insufficient SOL: need {required / 1e9:.6f}, have {balance / 1e9:.6f}",
                {"required": required, "balance": balance},
            )

    async def _require_token(self, owner: Identity, mint: Identity, amount_raw: int, label: str = "token"):
        balance = await self.get_token_balance(owner, mint)
        if balance < amount_raw:
            raise AmmError(
                ErrorCategory.INSUFFICIENT_BALANCE,
                f"Insufficient {label} balance: need {amount_raw}, have {balance}",
                {"required": amount_raw, "balance": balance, "mint": str(mint)},
            )

    async def check_swap(self, owner: Identity, token_mint: Identity, direction: SwapDirection,
                         amount_raw: int, slippage_percent: Optional[Number] = None):
        """
        Validate a swap before signing.

        Raises:
            AmmError: INSUFFICIENT_BALANCE or SLIPPAGE_EXCEEDED
        """
        # 1. Amount and slippage bounds
        validate_amount(amount_raw)
        if slippage_percent is not None:
            validate_slippage(slippage_percent)

        # 2. Balance of whatever is being spent
        if direction == SwapDirection.SOL_TO_TOKEN:
            await self._require_sol(owner, amount_raw)
        else:
            await self._require_token(owner, token_mint, amount_raw)
            await self._require_sol(owner, 0)

        logger.debug(f"Swap pre-flight ok for {str(owner)[:8]}... ({direction.value}, {amount_raw})")

    async def check_liquidity(self, owner: Identity, token_mint: Identity, token_amount: int = 0,
                              sol_amount: int = 0, lp_mint: Optional[Identity] = None, lp_amount: int = 0):
        """Validate a deposit (token_amount + sol_amount) or a withdrawal (lp_amount)."""
        if lp_mint is not None:
            validate_amount(lp_amount, "LP amount")
            await self._require_token(owner, lp_mint, lp_amount, "LP token")
            await self._require_sol(owner, 0)
            return

        validate_amount(token_amount, "token amount")
        validate_amount(sol_amount, "SOL amount")
        await self._require_token(owner, token_mint, token_amount)
        await self._require_sol(owner, sol_amount)
