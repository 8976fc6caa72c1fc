#!/usr/bin/env python3
"""
Signer-provider normalization.

Wallet providers come in several shapes: an object exposing the send/sign
methods directly, an object wrapping them under `.adapter`, or nothing at all
(in which case registered injected providers are scanned). normalize_wallet()
turns any of these into one WalletCapabilities value; nothing downstream looks
at the provider object itself.

Capability calling conventions (sync or async callables are both accepted):

    send_transaction(tx, rpc, opts)         -> signature
    sign_transaction(tx)                    -> signed tx
    sign_all_transactions([tx, ...])        -> [signed tx, ...]
    sign_and_send_transaction(tx, opts)     -> signature | {"signature": ...}
"""

import functools
import inspect
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from amm.errors import AmmError
from amm.pool_pda import parse_identity

logger = logging.getLogger("wallet_adapter")
logger.setLevel(logging.INFO)

_METHOD_ALIASES = {
    "send_transaction": ("send_transaction", "sendTransaction"),
    "sign_transaction": ("sign_transaction", "signTransaction"),
    "sign_all_transactions": ("sign_all_transactions", "signAllTransactions"),
    "sign_and_send_transaction": ("sign_and_send_transaction", "signAndSendTransaction"),
}
_PUBLIC_KEY_ALIASES = ("public_key", "publicKey", "pubkey")
_CONNECTED_ALIASES = ("connected", "is_connected", "isConnected")

# Scanned in insertion order when no provider is supplied
_INJECTED_PROVIDERS: "OrderedDict[str, Any]" = OrderedDict()


@dataclass(frozen=True)
class WalletCapabilities:
    """Normalized, read-only view of what a signer provider can do."""
    public_key: Optional[Pubkey] = None
    send_transaction: Optional[Callable] = None
    sign_transaction: Optional[Callable] = None
    sign_all_transactions: Optional[Callable] = None
    sign_and_send_transaction: Optional[Callable] = None
    source: str = "none"

    @property
    def can_submit(self) -> bool:
        return self.public_key is not None and any((
            self.send_transaction,
            self.sign_transaction,
            self.sign_all_transactions,
            self.sign_and_send_transaction,
        ))

    @property
    def is_read_only(self) -> bool:
        return not self.can_submit

    def describe(self) -> List[str]:
        return [name for name in _METHOD_ALIASES if getattr(self, name) is not None]


def register_injected_provider(name: str, provider: Any):
    """Make a globally available provider visible to normalize_wallet(None)."""
    _INJECTED_PROVIDERS[name] = provider
    logger.info(f"Injected wallet provider registered: {name}")


def unregister_injected_provider(name: str):
    _INJECTED_PROVIDERS.pop(name, None)


def _as_async(fn: Callable) -> Callable:
    @functools.wraps(fn)
    async def call(*args, **kwargs):
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
    return call


def _find_method(obj: Any, capability: str) -> Optional[Callable]:
    if obj is None:
        return None
    for name in _METHOD_ALIASES[capability]:
        fn = getattr(obj, name, None)
        if callable(fn):
            return _as_async(fn)
    return None


def _find_public_key(obj: Any) -> Optional[Pubkey]:
    if obj is None:
        return None
    for name in _PUBLIC_KEY_ALIASES:
        value = getattr(obj, name, None)
        if value is None:
            continue
        if callable(value) and not isinstance(value, Pubkey):
            value = value()
        if value is None:
            continue
        try:
            return parse_identity(value if isinstance(value, (Pubkey, bytes, str)) else str(value))
        except AmmError:
            continue
    return None


def _is_disconnected(obj: Any) -> bool:
    for name in _CONNECTED_ALIASES:
        value = getattr(obj, name, None)
        if isinstance(value, bool):
            return not value
    return False


def _capabilities_of(*objs: Any, source: str) -> WalletCapabilities:
    """First object that has a capability wins it."""
    found = {}
    for capability in _METHOD_ALIASES:
        found[capability] = next(
            (fn for fn in (_find_method(o, capability) for o in objs) if fn is not None), None
        )
    public_key = next((pk for pk in (_find_public_key(o) for o in objs) if pk is not None), None)
    return WalletCapabilities(public_key=public_key, source=source, **found)


def _scan_injected() -> Optional[WalletCapabilities]:
    for name, provider in _INJECTED_PROVIDERS.items():
        if provider is None or _is_disconnected(provider):
            continue
        caps = _capabilities_of(provider, source=f"injected:{name}")
        if caps.can_submit:
            return caps
    return None


def normalize_wallet(provider: Any = None) -> WalletCapabilities:
    """
    Normalize any provider shape into WalletCapabilities. Never raises.

    A provider with no usable capabilities yields a read-only result.
    """
    try:
        if provider is None:
            return _scan_injected() or WalletCapabilities()

        if isinstance(provider, WalletCapabilities):
            return provider

        adapter = getattr(provider, "adapter", None)
        if _is_disconnected(provider) or (adapter is not None and _is_disconnected(adapter)):
            logger.info("Wallet provider reports disconnected")
            return WalletCapabilities(source="disconnected")

        caps = _capabilities_of(provider, adapter, source="adapter" if adapter is not None else "direct")

        # Last pathway: injected sign-and-send for the same account
        if caps.sign_and_send_transaction is None:
            injected = _scan_injected()
            if (injected is not None and injected.sign_and_send_transaction is not None
                    and (caps.public_key is None or injected.public_key == caps.public_key)):
                caps = WalletCapabilities(
                    public_key=caps.public_key or injected.public_key,
                    send_transaction=caps.send_transaction,
                    sign_transaction=caps.sign_transaction,
                    sign_all_transactions=caps.sign_all_transactions,
                    sign_and_send_transaction=injected.sign_and_send_transaction,
                    source=caps.source,
                )
        return caps
    except Exception as e:
        logger.warning(f"Wallet normalization failed, treating as read-only: {e}")
        return WalletCapabilities()


class KeypairWallet:
    """Local signer backed by a solders Keypair (scripts and tests)."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def sign_transaction(self, tx: VersionedTransaction) -> VersionedTransaction:
        signature = self.keypair.sign_message(to_bytes_versioned(tx.message))
        return VersionedTransaction.populate(tx.message, [signature])

    def sign_all_transactions(self, txs: List[VersionedTransaction]) -> List[VersionedTransaction]:
        return [self.sign_transaction(tx) for tx in txs]
