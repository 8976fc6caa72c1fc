"""Client core for the flexible token exchange program."""
from amm.amm_math import SwapDirection, SwapQuote, compute_quote
from amm.errors import AmmError, ErrorCategory, InvalidIdentity, translate_error
from amm.exchange import AmmExchange, OperationOutcome, SwapOutcome
from amm.pool_pda import PoolAddresses, derive_pool_addresses
from amm.pool_state import PoolState, PoolStateCache
from amm.submission import PipelineState, SubmissionPipeline, SubmissionResult
from amm.tokens import TokenDirectory, TokenInfo
from amm.wallet_adapter import KeypairWallet, WalletCapabilities, normalize_wallet, register_injected_provider

__all__ = [
    # Quotes
    'SwapDirection',
    'SwapQuote',
    'compute_quote',
    # Errors
    'AmmError',
    'ErrorCategory',
    'InvalidIdentity',
    'translate_error',
    # Facade
    'AmmExchange',
    'OperationOutcome',
    'SwapOutcome',
    # Pools
    'PoolAddresses',
    'derive_pool_addresses',
    'PoolState',
    'PoolStateCache',
    # Submission
    'PipelineState',
    'SubmissionPipeline',
    'SubmissionResult',
    # Wallets / tokens
    'TokenDirectory',
    'TokenInfo',
    'KeypairWallet',
    'WalletCapabilities',
    'normalize_wallet',
    'register_injected_provider',
]
