"""
Pytest configuration: an in-memory AsyncClient stand-in plus pool fixtures.
"""

import struct
from collections import defaultdict
from types import SimpleNamespace

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from amm import wallet_adapter
from amm.pool_pda import derive_pool_addresses, derive_user_token_account
from amm.pool_state import PoolState, encode_pool_account

PROGRAM_ID = "BLYTnRtrxxyC71eiivaJG7CzARQ9DvC5bPiwssJ98kdm"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

CONFIRMED = SimpleNamespace(err=None, confirmation_status=TransactionConfirmationStatus.Confirmed, slot=1)


def confirmed_with_error(err):
    return SimpleNamespace(err=err, confirmation_status=TransactionConfirmationStatus.Confirmed, slot=1)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRpc:
    """
    In-memory stand-in for solana.rpc.async_api.AsyncClient.

    Sent transactions are confirmed immediately unless `status_queue` holds
    an explicit status (None = never lands) for that send.
    """

    def __init__(self):
        self.accounts = {}
        self.balances = defaultdict(int)
        self.calls = defaultdict(int)
        self.failures = defaultdict(list)
        self.statuses = {}
        self.status_queue = []
        self.sent = []
        self.sent_opts = []
        self.blockhashes = []
        self.block_height = 1000
        self.on_send = None

    def _maybe_fail(self, method):
        self.calls[method] += 1
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def set_account(self, address, data: bytes):
        self.accounts[str(address)] = bytes(data)

    def set_token_balance(self, owner, mint, amount: int):
        ata = derive_user_token_account(owner, mint)
        data = bytes(Pubkey.from_string(str(mint))) + bytes(Pubkey.from_string(str(owner)))
        data += struct.pack('<Q', amount) + bytes(93)
        self.set_account(ata, data)

    async def get_account_info(self, pubkey, commitment=None, encoding="base64", data_slice=None):
        self._maybe_fail("get_account_info")
        data = self.accounts.get(str(pubkey))
        if data is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(data=data, lamports=1, owner=None))

    async def get_balance(self, pubkey, commitment=None):
        self._maybe_fail("get_balance")
        return SimpleNamespace(value=self.balances[str(pubkey)])

    async def get_latest_blockhash(self, commitment=None):
        self._maybe_fail("get_latest_blockhash")
        blockhash = Hash.new_unique()
        self.blockhashes.append(blockhash)
        return SimpleNamespace(value=SimpleNamespace(
            blockhash=blockhash, last_valid_block_height=self.block_height + 150
        ))

    async def get_block_height(self, commitment=None):
        self._maybe_fail("get_block_height")
        return SimpleNamespace(value=self.block_height)

    async def send_raw_transaction(self, txn, opts=None):
        self.sent_opts.append(opts)
        self._maybe_fail("send_raw_transaction")
        tx = VersionedTransaction.from_bytes(bytes(txn))
        signature = tx.signatures[0]
        self.sent.append(tx)
        status = self.status_queue.pop(0) if self.status_queue else CONFIRMED
        self.statuses[str(signature)] = status
        if self.on_send is not None:
            self.on_send(tx)
        return SimpleNamespace(value=signature)

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        self._maybe_fail("get_signature_statuses")
        return SimpleNamespace(value=[self.statuses.get(str(s)) for s in signatures])


def make_pool_state(token_mint=USDC_MINT, token_reserve=1_000_000 * 10**6, sol_reserve=10 * 10**9,
                    lp_supply=10**11, fee_rate_bps=30) -> PoolState:
    addresses = derive_pool_addresses(PROGRAM_ID, token_mint)
    return PoolState(
        address=str(addresses.pool),
        token_mint=str(token_mint),
        authority=str(Pubkey.default()),
        token_reserve=token_reserve,
        sol_reserve=sol_reserve,
        lp_supply=lp_supply,
        fee_rate_bps=fee_rate_bps,
        bump=251,
    )


def install_pool(rpc: FakeRpc, state: PoolState):
    rpc.set_account(state.address, encode_pool_account(state))


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def pool_state():
    return make_pool_state()


@pytest.fixture(autouse=True)
def clean_injected_providers():
    wallet_adapter._INJECTED_PROVIDERS.clear()
    yield
    wallet_adapter._INJECTED_PROVIDERS.clear()


async def no_sleep(seconds):
    return None
