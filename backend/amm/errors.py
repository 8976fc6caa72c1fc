#!/usr/bin/env python3
"""
Error taxonomy and translation for exchange operations.

Every failure that reaches a caller is an AmmError carrying one of a small
set of categories. Raw provider exceptions, RPC errors and on-chain program
codes are funnelled through translate_error() so callers never have to
inspect provider-specific shapes.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.core import UnconfirmedTxError

logger = logging.getLogger("amm_errors")
logger.setLevel(logging.INFO)


class ErrorCategory(Enum):
    USER_REJECTED = "UserRejected"
    WALLET_UNAVAILABLE = "WalletUnavailable"
    TRANSIENT_NETWORK = "TransientNetwork"
    TRANSACTION_EXPIRED = "TransactionExpired"
    POOL_NOT_FOUND = "PoolNotFound"
    INVALID_POOL_CONFIGURATION = "InvalidPoolConfiguration"
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    INSUFFICIENT_LIQUIDITY = "InsufficientLiquidity"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INVALID_IDENTITY = "InvalidIdentity"
    UNKNOWN = "Unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.TRANSIENT_NETWORK, ErrorCategory.TRANSACTION_EXPIRED)


@dataclass
class AmmError(Exception):
    """Raised (or returned) when an exchange operation cannot proceed."""
    category: ErrorCategory
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self):
        return f"[{self.category.value}] {self.message}"

    @property
    def retryable(self) -> bool:
        return self.category.retryable


class InvalidIdentity(AmmError):
    """A token identity or program id that is not a valid 32-byte address."""

    def __init__(self, value: Any, reason: str = "not a valid base58 address"):
        super().__init__(
            category=ErrorCategory.INVALID_IDENTITY,
            message=f"Invalid token identity {str(value)[:12]!r}: {reason}",
            details={"value": str(value)},
        )


# Anchor custom errors declared by the on-chain program (start at 6000)
PROGRAM_ERROR_CODES: Dict[int, tuple] = {
    6000: ("InvalidFeeRate", ErrorCategory.INVALID_POOL_CONFIGURATION,
           "Pool fee rate is outside the accepted range"),
    6001: ("InsufficientLiquidity", ErrorCategory.INSUFFICIENT_LIQUIDITY,
           "Pool does not hold enough liquidity for this trade"),
    6002: ("SlippageExceeded", ErrorCategory.SLIPPAGE_EXCEEDED,
           "Price moved beyond your slippage tolerance. Relax tolerance or reduce size"),
    6003: ("InvalidAmount", ErrorCategory.UNKNOWN,
           "Amount rejected by the exchange program"),
    6004: ("MathOverflow", ErrorCategory.UNKNOWN,
           "Amount too large for the exchange program"),
    6005: ("PoolNotInitialized", ErrorCategory.POOL_NOT_FOUND,
           "No liquidity pool exists for this token"),
    # Anchor framework: AccountNotInitialized
    3012: ("AccountNotInitialized", ErrorCategory.POOL_NOT_FOUND,
           "No liquidity pool exists for this token"),
}

_CUSTOM_HEX = re.compile(r"custom program error:\s*0x([0-9a-fA-F]+)")
_CUSTOM_JSON = re.compile(r"['\"]?Custom['\"]?\s*[:(]\s*(\d+)")
_ERROR_NUMBER = re.compile(r"Error Number:\s*(\d+)")

_REJECTION_MARKERS = ("user rejected", "rejected the request", "request rejected", "user denied",
                       "user declined")
_WALLET_MARKERS = ("wallet not connected", "walletnotconnected", "no wallet", "wallet not ready")
_EXPIRY_MARKERS = ("blockhash not found", "block height exceeded", "blockheightexceeded",
                   "transaction expired", "has expired")
_BALANCE_MARKERS = ("insufficient funds", "insufficient lamports", "insufficientfundsforfee",
                    "insufficient balance")
_NETWORK_MARKERS = ("timeout", "timed out", "network", "connection", "too many requests",
                    "service unavailable", "bad gateway", "forbidden", "node is behind", "unexpected error")
# HTTP status codes only as a standalone number, never inside a base58 string
_HTTP_STATUS = re.compile(r"(?<![0-9A-Za-z])(?:403|429|500|502|503|504)(?![0-9A-Za-z])")


def extract_program_error_code(err: Any) -> Optional[int]:
    """
    Pull a custom program error code out of any on-chain error shape.

    Handles solders TransactionErrorInstructionError (err.err.code),
    JSON-RPC dicts ({"InstructionError": [0, {"Custom": 6002}]}),
    bare ints and log/exception strings ("custom program error: 0x1772").
    """
    if err is None:
        return None
    if isinstance(err, bool):
        return None
    if isinstance(err, int):
        return err

    inner = getattr(err, "err", None)
    code = getattr(inner, "code", None)
    if isinstance(code, int):
        return code

    if isinstance(err, dict):
        instruction_error = err.get("InstructionError")
        if isinstance(instruction_error, (list, tuple)) and len(instruction_error) == 2:
            detail = instruction_error[1]
            if isinstance(detail, dict) and isinstance(detail.get("Custom"), int):
                return detail["Custom"]
        if isinstance(err.get("Custom"), int):
            return err["Custom"]

    text = str(err)
    match = _CUSTOM_HEX.search(text)
    if match:
        return int(match.group(1), 16)
    match = _ERROR_NUMBER.search(text)
    if match:
        return int(match.group(1))
    match = _CUSTOM_JSON.search(text)
    if match:
        return int(match.group(1))
    return None


def from_program_code(code: int, details: Optional[Dict[str, Any]] = None) -> AmmError:
    """Map a numeric on-chain failure code to an AmmError."""
    name, category, message = PROGRAM_ERROR_CODES.get(
        code, ("Unknown", ErrorCategory.UNKNOWN, f"Program failed with code {code}")
    )
    merged = {"program_error": name, "code": code}
    merged.update(details or {})
    return AmmError(category=category, message=message, details=merged)


def _is_user_rejection(exc: BaseException, text: str) -> bool:
    if getattr(exc, "code", None) == 4001:
        return True
    name = type(exc).__name__.lower()
    if "reject" in name:
        return True
    return any(marker in text for marker in _REJECTION_MARKERS)


def translate_error(error: Any) -> AmmError:
    """
    Normalize any failure into an AmmError. Never raises.

    Accepts exceptions (provider, RPC, asyncio), on-chain error values,
    JSON error dicts, numeric codes and plain strings.
    """
    if isinstance(error, AmmError):
        return error

    try:
        if isinstance(error, BaseException):
            return _translate_exception(error)

        code = extract_program_error_code(error)
        if code is not None:
            return from_program_code(code, {"raw": str(error)})

        text = str(error)
        return _translate_text(text, {"raw": text})
    except Exception as e:  # translation must never mask the original failure
        logger.error(f"Error translation failed for {type(error).__name__}: {e}", exc_info=True)
        return AmmError(ErrorCategory.UNKNOWN, f"Unexpected {type(error).__name__}")


def _translate_exception(exc: BaseException) -> AmmError:
    text = str(exc).lower()
    details = {"exception": type(exc).__name__, "raw": str(exc)}

    # Wallet-side failures are terminal and never retried
    if _is_user_rejection(exc, text):
        return AmmError(ErrorCategory.USER_REJECTED, "Transaction was rejected in the wallet", details)
    if type(exc).__name__ == "WalletNotConnectedError" or any(m in text for m in _WALLET_MARKERS):
        return AmmError(ErrorCategory.WALLET_UNAVAILABLE, "Connect a wallet to continue", details)

    code = extract_program_error_code(str(exc))
    if code is None:
        code = extract_program_error_code(getattr(exc, "args", [None])[0] if exc.args else None)
    if code is not None:
        return from_program_code(code, details)

    if isinstance(exc, UnconfirmedTxError):
        return AmmError(ErrorCategory.TRANSACTION_EXPIRED, "Transaction expired before confirmation", details)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return AmmError(ErrorCategory.TRANSIENT_NETWORK, "Network request timed out", details)
    if isinstance(exc, (SolanaRpcException, httpx.TransportError, ConnectionError, OSError)):
        return AmmError(ErrorCategory.TRANSIENT_NETWORK, "Network error talking to the RPC node", details)

    return _translate_text(text, details)


def _translate_text(text: str, details: Dict[str, Any]) -> AmmError:
    text = text.lower()
    if any(marker in text for marker in _REJECTION_MARKERS):
        return AmmError(ErrorCategory.USER_REJECTED, "Transaction was rejected in the wallet", details)
    if any(marker in text for marker in _EXPIRY_MARKERS):
        return AmmError(ErrorCategory.TRANSACTION_EXPIRED, "Transaction expired before confirmation", details)
    if any(marker in text for marker in _BALANCE_MARKERS):
        return AmmError(ErrorCategory.INSUFFICIENT_BALANCE, "Insufficient balance for this transaction", details)
    if "account does not exist" in text or "could not find account" in text:
        return AmmError(ErrorCategory.POOL_NOT_FOUND, "No liquidity pool exists for this token", details)
    if any(marker in text for marker in _NETWORK_MARKERS) or _HTTP_STATUS.search(text):
        return AmmError(ErrorCategory.TRANSIENT_NETWORK, "Network error, please retry", details)
    return AmmError(ErrorCategory.UNKNOWN, details.get("raw") or "Unknown error", details)
