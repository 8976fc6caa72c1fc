#!/usr/bin/env python3
"""
Exchange facade: quotes, swaps, pool reads and liquidity management.

This is the only surface callers need. Quote and pool reads raise AmmError;
the mutating operations never raise and always hand back an outcome object
whose error (if any) is already categorized.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from amm.amm_math import (
    Number,
    SwapDirection,
    SwapQuote,
    apply_slippage,
    compute_lp_tokens,
    compute_quote,
    compute_withdrawal,
    from_raw,
    to_raw,
    validate_fee_rate,
)
from amm.blockhash_cache import BlockhashCache
from amm.errors import AmmError, ErrorCategory, translate_error
from amm.instructions import OperationKind, TransactionAssembler
from amm.pool_pda import Identity, derive_pool_addresses, parse_identity
from amm.pool_state import PoolState, PoolStateCache
from amm.submission import SubmissionPipeline, SubmissionResult
from amm.tokens import TokenDirectory
from amm.trade_guard import TradeGuard, validate_slippage
from amm.wallet_adapter import normalize_wallet
from config import (
    DEFAULT_FEE_RATE_BPS,
    LIQUIDITY_CONFIRM_TIMEOUT,
    LP_DECIMALS,
    PROGRAM_ID,
    SOL_DECIMALS,
    SWAP_CONFIRM_TIMEOUT,
)

logger = logging.getLogger("exchange")
logger.setLevel(logging.INFO)


@dataclass
class OperationOutcome:
    success: bool
    signature: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_error(cls, error: Any):
        err = translate_error(error)
        return cls(success=False, error_category=err.category, error_message=err.message)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "signature": self.signature,
            "error_category": self.error_category.value if self.error_category else None,
            "error_message": self.error_message,
        }


@dataclass
class SwapOutcome(OperationOutcome):
    amount_received: Optional[Decimal] = None     # human units, measured on-chain
    amount_received_raw: Optional[int] = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["amount_received"] = str(self.amount_received) if self.amount_received is not None else None
        return data


def _to_raw_checked(amount: Number, decimals: int, label: str) -> int:
    try:
        return to_raw(amount, decimals)
    except ValueError as e:
        raise AmmError(ErrorCategory.UNKNOWN, f"Invalid {label}: {e}", {label: str(amount)}) from e


class AmmExchange:
    """
    One client session against one exchange program.

    Every collaborator is injectable; defaults are built around the given
    AsyncClient so caches stay owned by this instance.
    """

    def __init__(
        self,
        rpc,
        program_id: Identity = PROGRAM_ID,
        tokens: Optional[TokenDirectory] = None,
        pool_cache: Optional[PoolStateCache] = None,
        assembler: Optional[TransactionAssembler] = None,
        pipeline: Optional[SubmissionPipeline] = None,
        guard: Optional[TradeGuard] = None,
    ):
        self.rpc = rpc
        self.program_id = parse_identity(program_id)
        self.tokens = tokens or TokenDirectory(rpc)
        self.pool_cache = pool_cache or PoolStateCache(rpc, self.program_id)
        self.assembler = assembler or TransactionAssembler(rpc, self.program_id)
        self.pipeline = pipeline or SubmissionPipeline(rpc, BlockhashCache(rpc))
        self.guard = guard or TradeGuard(rpc)

    # ── Reads ───────────────────────────────────────────────────────

    async def get_pool_state(self, token_mint: Identity, force_refresh: bool = False) -> Optional[PoolState]:
        """Pool for token_mint or None when no pool exists."""
        return await self.pool_cache.get(token_mint, force_refresh=force_refresh)

    async def _require_pool(self, token_mint: Identity, force_refresh: bool = False) -> PoolState:
        pool = await self.get_pool_state(token_mint, force_refresh=force_refresh)
        if pool is None:
            raise AmmError(
                ErrorCategory.POOL_NOT_FOUND,
                "No liquidity pool exists for this token. Create one first",
                {"token_mint": str(token_mint)},
            )
        return pool

    async def get_quote(self, token_mint: Identity, input_amount: Number, direction: SwapDirection,
                        slippage_percent: Number) -> SwapQuote:
        """
        Quote a swap against the cached pool state.

        Raises:
            AmmError: POOL_NOT_FOUND, INSUFFICIENT_LIQUIDITY, INVALID_POOL_CONFIGURATION,
                      SLIPPAGE_EXCEEDED (tolerance out of bounds), TRANSIENT_NETWORK
        """
        validate_slippage(slippage_percent)
        pool = await self._require_pool(token_mint)
        decimals, reduced = await self.tokens.get_decimals(token_mint)

        try:
            quote = compute_quote(
                token_reserve=pool.token_reserve,
                sol_reserve=pool.sol_reserve,
                fee_rate_bps=pool.fee_rate_bps,
                input_amount=input_amount,
                direction=direction,
                slippage_percent=slippage_percent,
                token_decimals=decimals,
                reduced_confidence=reduced,
            )
        except ValueError as e:
            raise AmmError(ErrorCategory.UNKNOWN, f"Invalid quote input: {e}",
                           {"input_amount": str(input_amount)}) from e

        if quote.is_high_impact:
            logger.info(f"High price impact quote for {str(token_mint)[:8]}...: "
                        f"{quote.raw_price_impact_percent:.2f}%")
        return quote

    # ── Swaps ───────────────────────────────────────────────────────

    async def execute_swap(self, token_mint: Identity, input_amount: Number, minimum_output: Number,
                           direction: SwapDirection, signer_provider: Any = None) -> SwapOutcome:
        """
        Sign, send and confirm a swap. Never raises.

        Args:
            token_mint: Token side of the pool
            input_amount: Human amount of the input side
            minimum_output: Human minimum of the output side (from a quote)
            direction: SwapDirection
            signer_provider: Any wallet shape accepted by normalize_wallet()
        """
        try:
            capabilities = normalize_wallet(signer_provider)
            if not capabilities.can_submit:
                return SwapOutcome(success=False, error_category=ErrorCategory.WALLET_UNAVAILABLE,
                                   error_message="Connect a wallet to continue")
            owner = capabilities.public_key
            mint = parse_identity(token_mint)

            await self._require_pool(mint)
            decimals, reduced = await self.tokens.get_decimals(mint)

            if direction == SwapDirection.SOL_TO_TOKEN:
                amount_raw = _to_raw_checked(input_amount, SOL_DECIMALS, "input amount")
                min_raw = _to_raw_checked(minimum_output, decimals, "minimum output")
                kind = OperationKind.SWAP_IN
                params = {"sol_amount": amount_raw, "min_token_amount": min_raw}
                output_decimals = decimals

                async def probe():
                    return await self.guard.get_token_balance(owner, mint)
            else:
                amount_raw = _to_raw_checked(input_amount, decimals, "input amount")
                min_raw = _to_raw_checked(minimum_output, SOL_DECIMALS, "minimum output")
                kind = OperationKind.SWAP_OUT
                params = {"token_amount": amount_raw, "min_sol_amount": min_raw}
                output_decimals = SOL_DECIMALS

                async def probe():
                    return await self.guard.get_sol_balance(owner)

            await self.guard.check_swap(owner, mint, direction, amount_raw)

            assembled = await self.assembler.assemble(kind, owner, mint, reduced_confidence=reduced, **params)
            logger.info(f"Executing {direction.value} on {str(mint)[:8]}...: in={amount_raw} min_out={min_raw}")

            result = await self.pipeline.run(assembled.instructions, capabilities,
                                             confirm_timeout=SWAP_CONFIRM_TIMEOUT, balance_probe=probe)
        except Exception as e:
            logger.warning(f"Swap rejected before submission: {e}")
            return SwapOutcome.from_error(e)

        self._after_submission(mint, result)

        outcome = SwapOutcome(
            success=result.success,
            signature=result.signature,
            attempts=result.attempts,
            amount_received_raw=result.amount_received,
            amount_received=from_raw(result.amount_received, output_decimals)
            if result.amount_received is not None else None,
        )
        if result.error is not None:
            outcome.error_category = result.error.category
            outcome.error_message = result.error.message
        return outcome

    # ── Liquidity ───────────────────────────────────────────────────

    async def initialize_pool(self, token_mint: Identity, token_amount: Number, sol_amount: Number,
                              signer_provider: Any = None,
                              fee_rate_bps: int = DEFAULT_FEE_RATE_BPS) -> OperationOutcome:
        """Create the pool for token_mint with an initial deposit. Never raises."""
        try:
            capabilities = normalize_wallet(signer_provider)
            if not capabilities.can_submit:
                return OperationOutcome(success=False, error_category=ErrorCategory.WALLET_UNAVAILABLE,
                                        error_message="Connect a wallet to continue")
            owner = capabilities.public_key
            mint = parse_identity(token_mint)

            validate_fee_rate(fee_rate_bps)
            if await self.get_pool_state(mint, force_refresh=True) is not None:
                raise AmmError(ErrorCategory.INVALID_POOL_CONFIGURATION,
                               "A pool already exists for this token", {"token_mint": str(mint)})

            decimals, reduced = await self.tokens.get_decimals(mint)
            token_raw = _to_raw_checked(token_amount, decimals, "token amount")
            sol_raw = _to_raw_checked(sol_amount, SOL_DECIMALS, "SOL amount")
            await self.guard.check_liquidity(owner, mint, token_amount=token_raw, sol_amount=sol_raw)

            assembled = await self.assembler.assemble(
                OperationKind.INIT_POOL, owner, mint, reduced_confidence=reduced,
                token_amount=token_raw, sol_amount=sol_raw, fee_rate_bps=fee_rate_bps,
            )
            logger.info(f"Initializing pool for {str(mint)[:8]}...: tokens={token_raw} "
                        f"sol={sol_raw} fee={fee_rate_bps}bps")
            result = await self.pipeline.run(assembled.instructions, capabilities,
                                             confirm_timeout=LIQUIDITY_CONFIRM_TIMEOUT)
        except Exception as e:
            logger.warning(f"Pool initialization rejected: {e}")
            return OperationOutcome.from_error(e)

        self._after_submission(mint, result)
        return self._outcome(result)

    async def add_liquidity(self, token_mint: Identity, token_amount: Number, sol_amount: Number,
                            signer_provider: Any = None, slippage_percent: Number = 1) -> OperationOutcome:
        """Deposit both sides into an existing pool. Never raises."""
        try:
            capabilities = normalize_wallet(signer_provider)
            if not capabilities.can_submit:
                return OperationOutcome(success=False, error_category=ErrorCategory.WALLET_UNAVAILABLE,
                                        error_message="Connect a wallet to continue")
            owner = capabilities.public_key
            mint = parse_identity(token_mint)

            validate_slippage(slippage_percent)
            pool = await self._require_pool(mint, force_refresh=True)
            decimals, reduced = await self.tokens.get_decimals(mint)
            token_raw = _to_raw_checked(token_amount, decimals, "token amount")
            sol_raw = _to_raw_checked(sol_amount, SOL_DECIMALS, "SOL amount")

            expected_lp = compute_lp_tokens(token_raw, sol_raw, pool.token_reserve,
                                            pool.sol_reserve, pool.lp_supply)
            min_lp = apply_slippage(expected_lp, slippage_percent)
            await self.guard.check_liquidity(owner, mint, token_amount=token_raw, sol_amount=sol_raw)

            assembled = await self.assembler.assemble(
                OperationKind.ADD_LIQUIDITY, owner, mint, reduced_confidence=reduced,
                token_amount=token_raw, sol_amount=sol_raw, min_lp_amount=min_lp,
            )
            logger.info(f"Adding liquidity to {str(mint)[:8]}...: tokens={token_raw} sol={sol_raw} "
                        f"min_lp={min_lp}")
            result = await self.pipeline.run(assembled.instructions, capabilities,
                                             confirm_timeout=LIQUIDITY_CONFIRM_TIMEOUT)
        except Exception as e:
            logger.warning(f"Add liquidity rejected: {e}")
            return OperationOutcome.from_error(e)

        self._after_submission(mint, result)
        return self._outcome(result)

    async def remove_liquidity(self, token_mint: Identity, lp_amount: Number,
                               signer_provider: Any = None, slippage_percent: Number = 1) -> OperationOutcome:
        """Burn LP tokens for a pro-rata share of both reserves. Never raises."""
        try:
            capabilities = normalize_wallet(signer_provider)
            if not capabilities.can_submit:
                return OperationOutcome(success=False, error_category=ErrorCategory.WALLET_UNAVAILABLE,
                                        error_message="Connect a wallet to continue")
            owner = capabilities.public_key
            mint = parse_identity(token_mint)

            validate_slippage(slippage_percent)
            pool = await self._require_pool(mint, force_refresh=True)
            lp_raw = _to_raw_checked(lp_amount, LP_DECIMALS, "LP amount")

            token_out, sol_out = compute_withdrawal(lp_raw, pool.token_reserve, pool.sol_reserve, pool.lp_supply)
            min_token = apply_slippage(token_out, slippage_percent)
            min_sol = apply_slippage(sol_out, slippage_percent)

            lp_mint = derive_pool_addresses(self.program_id, mint).lp_mint
            await self.guard.check_liquidity(owner, mint, lp_mint=lp_mint, lp_amount=lp_raw)

            assembled = await self.assembler.assemble(
                OperationKind.REMOVE_LIQUIDITY, owner, mint,
                lp_amount=lp_raw, min_token_amount=min_token, min_sol_amount=min_sol,
            )
            logger.info(f"Removing liquidity from {str(mint)[:8]}...: lp={lp_raw} "
                        f"min_token={min_token} min_sol={min_sol}")
            result = await self.pipeline.run(assembled.instructions, capabilities,
                                             confirm_timeout=LIQUIDITY_CONFIRM_TIMEOUT)
        except Exception as e:
            logger.warning(f"Remove liquidity rejected: {e}")
            return OperationOutcome.from_error(e)

        self._after_submission(mint, result)
        return self._outcome(result)

    # ── Helpers ─────────────────────────────────────────────────────

    def invalidate(self, token_mint: Identity):
        self.pool_cache.invalidate(token_mint)

    def _after_submission(self, mint, result: SubmissionResult):
        # Anything that reached the network may have moved the reserves
        if result.signature is not None:
            self.pool_cache.invalidate(mint)

    @staticmethod
    def _outcome(result: SubmissionResult) -> OperationOutcome:
        outcome = OperationOutcome(success=result.success, signature=result.signature, attempts=result.attempts)
        if result.error is not None:
            outcome.error_category = result.error.category
            outcome.error_message = result.error.message
        return outcome
