"""
Tests for the submission pipeline: pathways, retries and confirmation.
"""

from types import SimpleNamespace

import httpx
import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from amm.blockhash_cache import BlockhashCache
from amm.errors import ErrorCategory
from amm.submission import (
    PipelineState,
    SubmissionAttempt,
    SubmissionPipeline,
    coerce_signature,
)
from amm.wallet_adapter import KeypairWallet, normalize_wallet
from conftest import CONFIRMED, FakeClock, confirmed_with_error

SLOT_SECONDS = 0.4


def make_instructions(payer: Pubkey):
    return [Instruction(Pubkey.default(), b"\x02\x00\x00\x00", [AccountMeta(payer, True, True)])]


def make_pipeline(rpc, sleeps=None, clock=None, on_tick=None, **kwargs):
    """Pipeline on a fake clock where every sleep also advances the chain's block height."""
    clock = clock or FakeClock()

    async def chain_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)
        clock.advance(seconds)
        rpc.block_height += int(seconds / SLOT_SECONDS)
        if on_tick is not None:
            on_tick()

    return SubmissionPipeline(rpc, BlockhashCache(rpc, clock=clock), sleep=chain_sleep, clock=clock, **kwargs)


class CamelCaseWallet:
    """Provider exposing only camelCase signTransaction."""

    def __init__(self, keypair):
        self._signer = KeypairWallet(keypair)
        self.publicKey = str(keypair.pubkey())

    async def signTransaction(self, tx):
        return self._signer.sign_transaction(tx)


class TestPathways:

    @pytest.mark.asyncio
    async def test_camel_case_sign_only(self, rpc, keypair):
        """Test a sign-only camelCase wallet confirms via sign then raw send."""
        caps = normalize_wallet(CamelCaseWallet(keypair))
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()), caps, confirm_timeout=1)

        assert result.success
        assert result.pathway == "sign_transaction"
        assert result.attempts == 1
        assert result.signature == str(rpc.sent[0].signatures[0])
        assert result.history == [
            PipelineState.IDLE, PipelineState.PREPARING, PipelineState.SIGNING,
            PipelineState.CONFIRMING, PipelineState.CONFIRMED,
        ]

    @pytest.mark.asyncio
    async def test_send_transaction_preferred(self, rpc, keypair):
        """Test a wallet-level send is used before signing locally."""
        signer = KeypairWallet(keypair)
        used = []

        async def send_transaction(tx, client, opts):
            used.append("send")
            resp = await client.send_raw_transaction(bytes(signer.sign_transaction(tx)), opts=opts)
            return resp.value

        def sign_transaction(tx):
            used.append("sign")
            return signer.sign_transaction(tx)

        provider = SimpleNamespace(public_key=keypair.pubkey(), send_transaction=send_transaction,
                                   sign_transaction=sign_transaction)
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()), normalize_wallet(provider))

        assert result.success
        assert result.pathway == "send_transaction"
        assert used == ["send"]

    @pytest.mark.asyncio
    async def test_failing_pathway_falls_through(self, rpc, keypair):
        """Test a broken send_transaction falls back to sign_transaction."""
        def send_transaction(tx, client, opts):
            raise RuntimeError("method not implemented")

        provider = SimpleNamespace(public_key=keypair.pubkey(), send_transaction=send_transaction,
                                   sign_transaction=KeypairWallet(keypair).sign_transaction)
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()), normalize_wallet(provider))

        assert result.success
        assert result.pathway == "sign_transaction"

    @pytest.mark.asyncio
    async def test_sign_and_send_returns_dict(self, rpc, keypair):
        """Test an injected-style sign-and-send returning {"signature": ...}."""
        signer = KeypairWallet(keypair)

        async def sign_and_send(tx, opts):
            resp = await rpc.send_raw_transaction(bytes(signer.sign_transaction(tx)), opts=opts)
            return {"publicKey": str(keypair.pubkey()), "signature": str(resp.value)}

        provider = SimpleNamespace(publicKey=keypair.pubkey(), signAndSendTransaction=sign_and_send)
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()), normalize_wallet(provider))

        assert result.success
        assert result.pathway == "sign_and_send_transaction"

    @pytest.mark.asyncio
    async def test_wallet_unavailable(self, rpc):
        """Test a read-only wallet fails before any RPC traffic."""
        result = await make_pipeline(rpc).run(make_instructions(Pubkey.default()), normalize_wallet(None))

        assert result.state == PipelineState.FAILED
        assert result.error.category == ErrorCategory.WALLET_UNAVAILABLE
        assert result.attempts == 0
        assert rpc.calls["get_latest_blockhash"] == 0

    @pytest.mark.asyncio
    async def test_user_rejection_is_terminal(self, rpc, keypair):
        """Test a rejection is reported once and never retried."""
        sleeps = []

        def sign_transaction(tx):
            raise Exception("User rejected the request.")

        provider = SimpleNamespace(public_key=keypair.pubkey(), sign_transaction=sign_transaction,
                                   sign_all_transactions=KeypairWallet(keypair).sign_all_transactions)
        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(provider))

        assert result.error.category == ErrorCategory.USER_REJECTED
        assert result.attempts == 1
        assert rpc.sent == []
        assert sleeps == []


class TestRetries:

    @pytest.mark.asyncio
    async def test_network_error_retried_with_fresh_blockhash(self, rpc, keypair):
        """Test a dropped send is retried on a new head with preflight skipped."""
        sleeps = []
        rpc.failures["send_raw_transaction"].append(httpx.ConnectError("connection reset"))

        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(KeypairWallet(keypair)))

        assert result.success
        assert result.attempts == 2
        assert sleeps == [1.0]
        assert len(rpc.blockhashes) == 2
        assert rpc.blockhashes[0] != rpc.blockhashes[1]
        assert rpc.sent[0].message.recent_blockhash == rpc.blockhashes[1]
        assert [opts.skip_preflight for opts in rpc.sent_opts] == [False, True]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, rpc, keypair):
        """Test three transient failures give up with backoff between them."""
        sleeps = []
        rpc.failures["send_raw_transaction"].extend(
            httpx.ConnectError("connection reset") for _ in range(3)
        )

        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(KeypairWallet(keypair)))

        assert result.state == PipelineState.FAILED
        assert result.error.category == ErrorCategory.TRANSIENT_NETWORK
        assert result.attempts == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_program_error_not_retried(self, rpc, keypair):
        """Test a preflight program error fails without a retry."""
        sleeps = []
        rpc.failures["send_raw_transaction"].append(
            Exception("Transaction simulation failed: custom program error: 0x1772")
        )

        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(KeypairWallet(keypair)))

        assert result.error.category == ErrorCategory.SLIPPAGE_EXCEEDED
        assert sleeps == []


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_landed_with_program_error(self, rpc, keypair):
        """Test a confirmed transaction carrying custom error 6002 reports slippage."""
        rpc.status_queue.append(confirmed_with_error({"InstructionError": [2, {"Custom": 6002}]}))

        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)))

        assert result.state == PipelineState.FAILED
        assert result.error.category == ErrorCategory.SLIPPAGE_EXCEEDED
        assert result.signature is not None

    @pytest.mark.asyncio
    async def test_resent_only_after_blockhash_expires(self, rpc, keypair):
        """Test an unconfirmed send is re-sent on a fresh head once the chain passes its last valid height."""
        heights = []
        rpc.on_send = lambda tx: heights.append(rpc.block_height)
        rpc.status_queue.append(None)

        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)))

        assert result.success
        assert result.attempts == 2
        assert len(rpc.sent) == 2
        assert result.signature == str(rpc.sent[1].signatures[0])
        assert heights[1] > heights[0] + 150
        assert rpc.sent_opts[1].skip_preflight

    @pytest.mark.asyncio
    async def test_late_landing_is_not_resent(self, rpc, keypair):
        """Test a transaction landing after the confirm timeout but before expiry is reported as is."""
        clock = FakeClock()
        start = clock.now
        rpc.status_queue.append(None)

        def land_first():
            if clock.now - start >= 40:
                rpc.statuses[str(rpc.sent[0].signatures[0])] = CONFIRMED

        result = await make_pipeline(rpc, clock=clock, on_tick=land_first).run(
            make_instructions(keypair.pubkey()), normalize_wallet(KeypairWallet(keypair)))

        assert result.success
        assert len(rpc.sent) == 1
        assert result.attempts == 1
        assert result.signature == str(rpc.sent[0].signatures[0])
        assert rpc.calls["get_block_height"] > 0

    @pytest.mark.asyncio
    async def test_original_landing_after_resend_wins(self, rpc, keypair):
        """Test both signatures are watched after a re-send and the one that landed is reported."""
        rpc.status_queue.extend([None, None])

        def land_original(tx):
            if len(rpc.sent) == 2:
                rpc.statuses[str(rpc.sent[0].signatures[0])] = CONFIRMED

        rpc.on_send = land_original
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)))

        assert result.success
        assert len(rpc.sent) == 2
        assert result.signature == str(rpc.sent[0].signatures[0])

    @pytest.mark.asyncio
    async def test_expired(self, rpc, keypair):
        """Test two unconfirmed sends end as expired, polling only through the injected sleep."""
        sleeps = []
        rpc.status_queue.extend([None, None])

        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(KeypairWallet(keypair)))

        assert result.error.category == ErrorCategory.TRANSACTION_EXPIRED
        assert len(rpc.sent) == 2
        assert set(sleeps) == {0.5}

    @pytest.mark.asyncio
    async def test_no_resend_when_attempts_used_up(self, rpc, keypair):
        """Test a send that needed every attempt expires instead of going to a fourth attempt."""
        sleeps = []
        rpc.failures["send_raw_transaction"].extend(
            httpx.ConnectError("connection reset") for _ in range(2)
        )
        rpc.status_queue.append(None)

        result = await make_pipeline(rpc, sleeps).run(make_instructions(keypair.pubkey()),
                                                      normalize_wallet(KeypairWallet(keypair)))

        assert result.error.category == ErrorCategory.TRANSACTION_EXPIRED
        assert result.attempts == 3
        assert len(rpc.sent) == 1
        assert sleeps[:2] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unknown_expiry_never_resends(self, rpc, keypair):
        """Test an unreadable block height ends as expired without a second send."""
        rpc.status_queue.append(None)

        async def no_height(commitment=None):
            raise httpx.ConnectError("down")

        rpc.get_block_height = no_height
        result = await make_pipeline(rpc, expiry_timeout=10).run(make_instructions(keypair.pubkey()),
                                                                 normalize_wallet(KeypairWallet(keypair)))

        assert result.error.category == ErrorCategory.TRANSACTION_EXPIRED
        assert len(rpc.sent) == 1

    @pytest.mark.asyncio
    async def test_found_in_history(self, rpc, keypair):
        """Test the history lookup catches a transaction the status poll never reported."""
        rpc.status_queue.append(None)

        async def flaky_statuses(signatures, search_transaction_history=False):
            if search_transaction_history:
                return SimpleNamespace(value=[confirmed_with_error(None) for _ in signatures])
            return SimpleNamespace(value=[None for _ in signatures])

        rpc.get_signature_statuses = flaky_statuses
        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)))

        assert result.success
        assert len(rpc.sent) == 1

    @pytest.mark.asyncio
    async def test_balance_delta(self, rpc, keypair):
        """Test amount_received is the probe difference across the transaction."""
        readings = iter([500, 1_250])

        async def probe():
            return next(readings)

        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)), balance_probe=probe)

        assert result.amount_received == 750

    @pytest.mark.asyncio
    async def test_probe_failure_is_not_fatal(self, rpc, keypair):
        async def probe():
            raise ConnectionError("down")

        result = await make_pipeline(rpc).run(make_instructions(keypair.pubkey()),
                                              normalize_wallet(KeypairWallet(keypair)), balance_probe=probe)

        assert result.success
        assert result.amount_received is None


class TestHelpers:

    def test_attempt_progression(self):
        attempt = SubmissionAttempt(max_attempts=2).next()
        assert attempt.number == 1
        assert not attempt.skip_preflight
        attempt = attempt.next()
        assert attempt.skip_preflight
        assert attempt.exhausted

    def test_coerce_signature(self):
        sig = Signature.new_unique()
        assert coerce_signature(sig) == str(sig)
        assert coerce_signature(str(sig)) == str(sig)
        assert coerce_signature(bytes(sig)) == str(sig)
        assert coerce_signature({"signature": str(sig)}) == str(sig)
        assert coerce_signature(SimpleNamespace(value=sig)) == str(sig)
