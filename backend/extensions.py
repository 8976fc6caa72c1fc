#!/usr/bin/env python3
"""Shared client instances for the flexible token exchange."""
import logging
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment

from amm.exchange import AmmExchange
from amm.tokens import TokenDirectory
from amm.wallet_adapter import KeypairWallet, register_injected_provider
from config import COMMITMENT, KEYPAIR, PROGRAM_ID, SOLANA_RPC

logger = logging.getLogger("extensions")

# Solana client (one per process; the exchange caches are per session)
solana_client: Optional[AsyncClient] = None


def get_solana_client() -> AsyncClient:
    global solana_client
    if solana_client is None:
        solana_client = AsyncClient(SOLANA_RPC, commitment=Commitment(COMMITMENT))
    return solana_client


def create_exchange(rpc: Optional[AsyncClient] = None, program_id: str = PROGRAM_ID) -> AmmExchange:
    """Exchange factory. Each call gets its own pool and token caches."""
    rpc = rpc or get_solana_client()

    # Local keypair doubles as an injected provider for scripts
    if KEYPAIR is not None:
        register_injected_provider("local", KeypairWallet(KEYPAIR))

    exchange = AmmExchange(rpc, program_id=program_id, tokens=TokenDirectory(rpc))
    logger.info(f"Exchange ready: program {str(exchange.program_id)[:8]}... on {SOLANA_RPC}")
    return exchange


async def close_solana_client():
    global solana_client
    if solana_client is not None:
        await solana_client.close()
        solana_client = None
