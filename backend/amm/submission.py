#!/usr/bin/env python3
"""
Transaction submission pipeline.

    idle -> preparing -> signing -> confirming -> confirmed | failed

One run signs and sends a prepared instruction list through whichever wallet
capability is available, retrying transient failures with a fresh blockhash,
then polls for confirmation against a timeout. A transaction that times out is
watched until its blockhash expires before it is re-sent, so a late landing is
never doubled. A confirmed transaction that carries a program error is a
failure.

The pipeline never raises: every outcome comes back as a SubmissionResult
whose error (if any) has already been through translate_error().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from amm.blockhash_cache import BlockhashCache
from amm.errors import AmmError, ErrorCategory, translate_error
from amm.wallet_adapter import WalletCapabilities
from config import (
    BLOCKHASH_EXPIRY_TIMEOUT,
    COMMITMENT,
    CONFIRM_POLL_INTERVAL,
    CONFIRM_RETRY_TIMEOUT,
    MAX_SEND_ATTEMPTS,
    SEND_RETRY_DELAY,
    SWAP_CONFIRM_TIMEOUT,
)

logger = logging.getLogger("submission")
logger.setLevel(logging.INFO)

_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)

BalanceProbe = Callable[[], Awaitable[int]]


class PipelineState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    SIGNING = "signing"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionAttempt:
    """Immutable retry state; each step returns a new value."""
    number: int = 0
    blockhash: Optional[Hash] = None
    last_valid_block_height: int = 0
    last_error: Optional[AmmError] = None
    max_attempts: int = MAX_SEND_ATTEMPTS

    def next(self) -> "SubmissionAttempt":
        return replace(self, number=self.number + 1, blockhash=None, last_valid_block_height=0)

    def with_head(self, blockhash: Hash, last_valid_block_height: int) -> "SubmissionAttempt":
        return replace(self, blockhash=blockhash, last_valid_block_height=last_valid_block_height)

    def failed(self, error: AmmError) -> "SubmissionAttempt":
        return replace(self, last_error=error)

    @property
    def exhausted(self) -> bool:
        return self.number >= self.max_attempts

    @property
    def skip_preflight(self) -> bool:
        return self.number > 1

    def can_retry(self, error: AmmError) -> bool:
        return error.retryable and not self.exhausted


@dataclass
class SubmissionResult:
    state: PipelineState
    signature: Optional[str] = None
    error: Optional[AmmError] = None
    attempts: int = 0
    pathway: Optional[str] = None
    amount_received: Optional[int] = None
    history: List[PipelineState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == PipelineState.CONFIRMED


def build_message(instructions: Sequence[Instruction], payer: Pubkey, blockhash: Hash) -> MessageV0:
    return MessageV0.try_compile(
        payer=payer,
        instructions=list(instructions),
        address_lookup_table_accounts=[],
        recent_blockhash=blockhash,
    )


def unsigned_transaction(message: MessageV0) -> VersionedTransaction:
    """Transaction with placeholder signatures, ready to hand to a wallet."""
    placeholders = [Signature.default()] * message.header.num_required_signatures
    return VersionedTransaction.populate(message, placeholders)


def coerce_signature(value: Any) -> str:
    """Accept whatever a provider hands back for a sent transaction."""
    if isinstance(value, Signature):
        return str(value)
    if isinstance(value, str):
        return str(Signature.from_string(value))
    if isinstance(value, (bytes, bytearray)) and len(value) == 64:
        return str(Signature.from_bytes(bytes(value)))
    if isinstance(value, dict) and "signature" in value:
        return coerce_signature(value["signature"])
    if hasattr(value, "value"):
        return coerce_signature(value.value)
    raise AmmError(ErrorCategory.UNKNOWN, "Wallet returned no transaction signature", {"raw": repr(value)})


class SubmissionPipeline:
    """Signs, sends and confirms one operation's instructions."""

    def __init__(
        self,
        rpc,
        blockhash_cache: Optional[BlockhashCache] = None,
        max_attempts: int = MAX_SEND_ATTEMPTS,
        retry_delay: float = SEND_RETRY_DELAY,
        poll_interval: float = CONFIRM_POLL_INTERVAL,
        retry_confirm_timeout: float = CONFIRM_RETRY_TIMEOUT,
        expiry_timeout: float = BLOCKHASH_EXPIRY_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.blockhash_cache = blockhash_cache or BlockhashCache(rpc)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.retry_confirm_timeout = retry_confirm_timeout
        self.expiry_timeout = expiry_timeout
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        instructions: Sequence[Instruction],
        capabilities: WalletCapabilities,
        confirm_timeout: float = SWAP_CONFIRM_TIMEOUT,
        balance_probe: Optional[BalanceProbe] = None,
    ) -> SubmissionResult:
        """
        Drive the full state machine for one operation.

        Args:
            instructions: Assembled instruction list (compiled fresh per attempt)
            capabilities: Normalized wallet capabilities
            confirm_timeout: Seconds to wait for the first confirmation
            balance_probe: Optional coroutine returning the destination balance;
                           read before and after to report amount_received
        """
        result = SubmissionResult(state=PipelineState.IDLE, history=[PipelineState.IDLE])

        if not capabilities.can_submit:
            return self._fail(result, AmmError(
                ErrorCategory.WALLET_UNAVAILABLE, "Connect a wallet to continue",
                {"capabilities": capabilities.describe()},
            ))

        balance_before = await self._probe(balance_probe)

        attempt = SubmissionAttempt(max_attempts=self.max_attempts)
        signature = None
        while signature is None:
            attempt = attempt.next()
            result.attempts = attempt.number
            try:
                signature, attempt = await self._send_attempt(instructions, capabilities, attempt, result)
            except Exception as e:
                error = translate_error(e)
                attempt = attempt.failed(error)
                if not attempt.can_retry(error):
                    logger.warning(f"Send attempt {attempt.number} failed terminally: {error}")
                    return self._fail(result, error)
                delay = self.retry_delay * attempt.number
                logger.info(f"Send attempt {attempt.number}/{attempt.max_attempts} failed ({error}), "
                            f"retrying in {delay:.1f}s with a fresh blockhash")
                await self._sleep(delay)

        result.signature = signature
        self._transition(result, PipelineState.CONFIRMING)

        try:
            status = await self._confirm_with_retry(instructions, capabilities, attempt, result, confirm_timeout)
        except Exception as e:
            return self._fail(result, translate_error(e))

        if status.err is not None:
            error = translate_error(status.err)
            logger.warning(f"Transaction {result.signature[:8]}... landed with program error: {error}")
            return self._fail(result, error)

        balance_after = await self._probe(balance_probe)
        if balance_before is not None and balance_after is not None:
            result.amount_received = balance_after - balance_before

        self._transition(result, PipelineState.CONFIRMED)
        logger.info(f"Transaction confirmed: {result.signature[:8]}... via {result.pathway} "
                    f"after {result.attempts} attempt(s)")
        return result

    # ── Send ────────────────────────────────────────────────────────

    async def _send_attempt(self, instructions, capabilities: WalletCapabilities,
                            attempt: SubmissionAttempt, result: SubmissionResult) -> Tuple[str, SubmissionAttempt]:
        self._transition(result, PipelineState.PREPARING)
        # Retries never reuse a head from an earlier attempt
        max_age_ms = 1000 if attempt.number == 1 else 0
        blockhash, last_valid = await self.blockhash_cache.get_fresh_blockhash(max_age_ms=max_age_ms)
        attempt = attempt.with_head(blockhash, last_valid)
        message = build_message(instructions, capabilities.public_key, blockhash)

        self._transition(result, PipelineState.SIGNING)
        signature, pathway = await self._sign_and_send(message, capabilities, attempt)
        result.pathway = pathway
        logger.info(f"Sent {signature[:8]}... (attempt {attempt.number}, {pathway}, "
                    f"skip_preflight={attempt.skip_preflight})")
        return signature, attempt

    async def _sign_and_send(self, message: MessageV0, capabilities: WalletCapabilities,
                             attempt: SubmissionAttempt) -> Tuple[str, str]:
        """
        Try each available pathway in order.

        Only a pathway that malfunctions (uncategorized error) falls through to
        the next one. Network, expiry, rejection and program errors go straight
        back to the retry loop.
        """
        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=attempt.skip_preflight,
            preflight_commitment=Commitment(COMMITMENT),
            last_valid_block_height=attempt.last_valid_block_height or None,
        )

        async def via_send():
            return coerce_signature(await capabilities.send_transaction(unsigned_transaction(message), self.rpc, opts))

        async def via_sign():
            signed = await capabilities.sign_transaction(unsigned_transaction(message))
            return await self._send_raw(signed, opts)

        async def via_sign_all():
            signed = await capabilities.sign_all_transactions([unsigned_transaction(message)])
            return await self._send_raw(signed[0], opts)

        async def via_injected():
            return coerce_signature(await capabilities.sign_and_send_transaction(unsigned_transaction(message), opts))

        pathways = [
            ("send_transaction", capabilities.send_transaction, via_send),
            ("sign_transaction", capabilities.sign_transaction, via_sign),
            ("sign_all_transactions", capabilities.sign_all_transactions, via_sign_all),
            ("sign_and_send_transaction", capabilities.sign_and_send_transaction, via_injected),
        ]

        last_error: Optional[Exception] = None
        for name, capability, call in pathways:
            if capability is None:
                continue
            try:
                return await call(), name
            except Exception as e:
                error = translate_error(e)
                if error.category != ErrorCategory.UNKNOWN:
                    raise error from e
                logger.info(f"Pathway {name} failed: {error}")
                last_error = e

        if last_error is not None:
            raise last_error
        raise AmmError(ErrorCategory.WALLET_UNAVAILABLE, "Wallet cannot sign transactions")

    async def _send_raw(self, signed: VersionedTransaction, opts: TxOpts) -> str:
        resp = await self.rpc.send_raw_transaction(bytes(signed), opts=opts)
        return coerce_signature(resp)

    # ── Confirm ─────────────────────────────────────────────────────

    @staticmethod
    def _first_landed(signatures: Sequence[str], statuses) -> Optional[Tuple[str, Any]]:
        for signature, status in zip(signatures, statuses):
            if status is not None and (status.err is not None or status.confirmation_status in _LANDED):
                return signature, status
        return None

    async def _poll_status(self, signatures: Sequence[str], timeout: float) -> Optional[Tuple[str, Any]]:
        """
        Poll until one of the signatures lands or the timeout elapses.

        Always checks at least once. Returns (signature, status) for the first
        landed signature, or None.
        """
        sigs = [Signature.from_string(s) for s in signatures]
        deadline = self._clock() + timeout
        while True:
            try:
                resp = await self.rpc.get_signature_statuses(sigs)
                landed = self._first_landed(signatures, resp.value)
                if landed is not None:
                    return landed
            except Exception as e:
                logger.debug(f"Status poll for {signatures[0][:8]}... failed: {e}")
            if self._clock() >= deadline:
                return None
            await self._sleep(self.poll_interval)

    async def _lookup_status(self, signatures: Sequence[str]) -> Optional[Tuple[str, Any]]:
        """One-shot status check including transaction history."""
        try:
            resp = await self.rpc.get_signature_statuses(
                [Signature.from_string(s) for s in signatures], search_transaction_history=True
            )
        except Exception as e:
            logger.debug(f"Status lookup for {signatures[0][:8]}... failed: {e}")
            return None
        return self._first_landed(signatures, resp.value)

    async def _watch_until_expired(self, signature: str, last_valid_block_height: int) -> Optional[Tuple[str, Any]]:
        """
        Keep watching a sent transaction until its blockhash can no longer land.

        Returns (signature, status) if it lands first, None once the chain is
        past last_valid_block_height. Raises TRANSACTION_EXPIRED when expiry
        cannot be established within expiry_timeout; nothing is re-sent then.
        """
        deadline = self._clock() + self.expiry_timeout
        while True:
            landed = await self._poll_status([signature], 0)
            if landed is not None:
                return landed
            try:
                height = await self.blockhash_cache.get_block_height()
                if height > last_valid_block_height:
                    logger.info(f"Blockhash of {signature[:8]}... expired at height {height} "
                                f"(last valid {last_valid_block_height})")
                    return None
            except Exception as e:
                logger.debug(f"Block height read failed: {e}")
            if self._clock() >= deadline:
                raise AmmError(
                    ErrorCategory.TRANSACTION_EXPIRED,
                    "Transaction was not confirmed in time. Check your wallet history before retrying",
                    {"signature": signature},
                )
            await self._sleep(self.poll_interval)

    async def _confirm_with_retry(self, instructions, capabilities: WalletCapabilities,
                                  attempt: SubmissionAttempt, result: SubmissionResult, timeout: float):
        landed = await self._poll_status([result.signature], timeout)
        if landed is not None:
            return landed[1]
        logger.warning(f"Confirmation of {result.signature[:8]}... timed out after {timeout}s, "
                       f"watching until its blockhash expires")

        # Re-sending while the original can still land could execute it twice
        landed = await self._watch_until_expired(result.signature, attempt.last_valid_block_height)
        if landed is None:
            landed = await self._lookup_status([result.signature])
        if landed is not None:
            return landed[1]

        if attempt.exhausted:
            raise AmmError(
                ErrorCategory.TRANSACTION_EXPIRED,
                "Transaction expired before confirmation and no attempts remain",
                {"signature": result.signature, "attempts": attempt.number},
            )

        original = result.signature
        attempt = attempt.next()
        result.attempts = attempt.number
        signature, attempt = await self._send_attempt(instructions, capabilities, attempt, result)
        result.signature = signature
        self._transition(result, PipelineState.CONFIRMING)

        watched = [signature, original]
        landed = await self._poll_status(watched, self.retry_confirm_timeout)
        if landed is None:
            landed = await self._lookup_status(watched)
        if landed is None:
            raise AmmError(
                ErrorCategory.TRANSACTION_EXPIRED,
                "Transaction was not confirmed in time. Check your wallet history before retrying",
                {"signature": signature},
            )
        result.signature = landed[0]
        return landed[1]

    # ── Helpers ─────────────────────────────────────────────────────

    async def _probe(self, balance_probe: Optional[BalanceProbe]) -> Optional[int]:
        if balance_probe is None:
            return None
        try:
            return await balance_probe()
        except Exception as e:
            logger.warning(f"Balance probe failed: {e}")
            return None

    def _transition(self, result: SubmissionResult, state: PipelineState):
        result.state = state
        result.history.append(state)
        logger.debug(f"Pipeline -> {state.value}")

    def _fail(self, result: SubmissionResult, error: AmmError) -> SubmissionResult:
        result.error = error
        self._transition(result, PipelineState.FAILED)
        logger.info(f"Pipeline failed: {error}")
        return result
