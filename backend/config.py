#!/usr/bin/env python3
"""Configuration module for the flexible token exchange client."""
import os
import json
import logging
from dotenv import load_dotenv
from solders.keypair import Keypair

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

logger = logging.getLogger("config")

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
KEYPAIR_PATH = os.getenv("KEYPAIR_PATH", os.path.join(BASE_DIR, 'keypair.json'))

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# RPC / PROGRAM
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
SOLANA_RPC = os.getenv("SOLANA_RPC", "https://api.devnet.solana.com")
COMMITMENT = os.getenv("SOLANA_COMMITMENT", "confirmed")

# Every PDA is derived from this id. Never hardcode it elsewhere.
PROGRAM_ID = os.getenv("AMM_PROGRAM_ID", "BLYTnRtrxxyC71eiivaJG7CzARQ9DvC5bPiwssJ98kdm")

# Well-known programs
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
RENT_SYSVAR_ID = "SysvarRent111111111111111111111111111111111"
SOL_MINT = "So11111111111111111111111111111111111111112"

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# CACHES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
POOL_CACHE_TTL = float(os.getenv("POOL_CACHE_TTL", "30"))      # seconds
TOKEN_CACHE_TTL = float(os.getenv("TOKEN_CACHE_TTL", "300"))   # seconds
TOKEN_LIST_URL = os.getenv(
    "TOKEN_LIST_URL",
    "https://raw.githubusercontent.com/solana-labs/token-list/main/src/tokens/solana.tokenlist.json"
)

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# TRANSACTIONS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
COMPUTE_UNIT_LIMIT = int(os.getenv("COMPUTE_UNIT_LIMIT", "200000"))
COMPUTE_UNIT_PRICE = int(os.getenv("COMPUTE_UNIT_PRICE", "10000"))  # micro-lamports per CU

MAX_SEND_ATTEMPTS = int(os.getenv("MAX_SEND_ATTEMPTS", "3"))
SEND_RETRY_DELAY = float(os.getenv("SEND_RETRY_DELAY", "1.0"))      # seconds, multiplied by attempt
SWAP_CONFIRM_TIMEOUT = float(os.getenv("SWAP_CONFIRM_TIMEOUT", "30"))
CONFIRM_RETRY_TIMEOUT = float(os.getenv("CONFIRM_RETRY_TIMEOUT", "20"))
LIQUIDITY_CONFIRM_TIMEOUT = float(os.getenv("LIQUIDITY_CONFIRM_TIMEOUT", "60"))
CONFIRM_POLL_INTERVAL = float(os.getenv("CONFIRM_POLL_INTERVAL", "0.5"))
# Upper bound on watching an unconfirmed transaction until its blockhash expires
BLOCKHASH_EXPIRY_TIMEOUT = float(os.getenv("BLOCKHASH_EXPIRY_TIMEOUT", "90"))

FEE_BUFFER_LAMPORTS = 5000

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# QUOTES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
BPS_DENOMINATOR = 10_000
SAFETY_MARGIN_BPS = int(os.getenv("SAFETY_MARGIN_BPS", "9700"))  # 0.97, both directions
MAX_FEE_RATE_BPS = 1000
DEFAULT_FEE_RATE_BPS = 30
PRICE_IMPACT_DISPLAY_CAP = 15
HIGH_PRICE_IMPACT_PERCENT = 10
MIN_SLIPPAGE_PERCENT = float(os.getenv("MIN_SLIPPAGE_PERCENT", "0"))
MAX_SLIPPAGE_PERCENT = float(os.getenv("MAX_SLIPPAGE_PERCENT", "50"))

SOL_DECIMALS = 9
DEFAULT_TOKEN_DECIMALS = 6
LP_DECIMALS = 9

# Default tokens
DEFAULT_TOKENS = {
    SOL_MINT: {
        "name": "Wrapped SOL",
        "symbol": "SOL",
        "decimals": 9,
    },
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": {
        "name": "USD Coin",
        "symbol": "USDC",
        "decimals": 6,
    },
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": {
        "name": "USDT",
        "symbol": "USDT",
        "decimals": 6,
    },
    "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263": {
        "name": "Bonk",
        "symbol": "BONK",
        "decimals": 5,
    },
}

# Keypair Loading (optional local signer for scripts)
KEYPAIR = None
WALLET_ADDRESS = "Unknown"


def _load_keypair():
    """Load a solana-keygen style JSON keypair if one is configured."""
    global KEYPAIR, WALLET_ADDRESS

    if not os.path.exists(KEYPAIR_PATH):
        return

    try:
        with open(KEYPAIR_PATH, 'r') as f:
            kp_data = json.load(f)
        KEYPAIR = Keypair.from_bytes(bytes(kp_data))
        WALLET_ADDRESS = str(KEYPAIR.pubkey())
        logger.info(f"Loaded local wallet: {WALLET_ADDRESS}")
    except (OSError, ValueError) as e:
        logger.error(f"Wallet Error: {e}")


_load_keypair()
