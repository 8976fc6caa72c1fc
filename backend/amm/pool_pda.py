#!/usr/bin/env python3
"""
Pool PDA derivation.

Every account a pool operation touches is a program-derived address built
from a fixed ASCII seed plus the raw 32 bytes of the token mint:

    pool            ["pool",           mint]
    pool_authority  ["pool_authority", mint]
    token_vault     ["token_vault",    mint]
    sol_vault       ["sol_vault",      mint]
    lp_mint         ["lp_mint",        mint]

A wrong program id still yields well-formed addresses, they just point at
accounts the program will reject. Always derive from config.PROGRAM_ID.
"""

from dataclasses import dataclass
from typing import Union

from solders.pubkey import Pubkey

from amm.errors import InvalidIdentity
from config import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

POOL_SEED = b"pool"
POOL_AUTHORITY_SEED = b"pool_authority"
TOKEN_VAULT_SEED = b"token_vault"
SOL_VAULT_SEED = b"sol_vault"
LP_MINT_SEED = b"lp_mint"

TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)
ATA_PROGRAM = Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID)

Identity = Union[str, Pubkey, bytes]


@dataclass(frozen=True)
class PoolAddresses:
    """The five derived accounts of one pool."""
    pool: Pubkey
    pool_authority: Pubkey
    token_vault: Pubkey
    sol_vault: Pubkey
    lp_mint: Pubkey

    def as_dict(self) -> dict:
        return {
            "pool": str(self.pool),
            "pool_authority": str(self.pool_authority),
            "token_vault": str(self.token_vault),
            "sol_vault": str(self.sol_vault),
            "lp_mint": str(self.lp_mint),
        }


def parse_identity(value: Identity) -> Pubkey:
    """Parse a base58 string, raw 32 bytes or Pubkey into a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidIdentity(value.hex(), f"expected 32 bytes, got {len(value)}")
        return Pubkey.from_bytes(bytes(value))
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentity(value, "empty or non-string identity")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise InvalidIdentity(value, str(e)) from e


def _derive(seed: bytes, mint: Pubkey, program_id: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address([seed, bytes(mint)], program_id)
    return address


def derive_pool_addresses(program_id: Identity, token_mint: Identity) -> PoolAddresses:
    """
    Derive pool, pool_authority, token_vault, sol_vault and lp_mint.

    Args:
        program_id: Exchange program id
        token_mint: Token identity (mint address)

    Returns:
        PoolAddresses

    Raises:
        InvalidIdentity: If either argument is not a valid address
    """
    program = parse_identity(program_id)
    mint = parse_identity(token_mint)

    return PoolAddresses(
        pool=_derive(POOL_SEED, mint, program),
        pool_authority=_derive(POOL_AUTHORITY_SEED, mint, program),
        token_vault=_derive(TOKEN_VAULT_SEED, mint, program),
        sol_vault=_derive(SOL_VAULT_SEED, mint, program),
        lp_mint=_derive(LP_MINT_SEED, mint, program),
    )


def derive_user_token_account(owner: Identity, mint: Identity) -> Pubkey:
    """Derive the Associated Token Account address."""
    seeds = [bytes(parse_identity(owner)), bytes(TOKEN_PROGRAM), bytes(parse_identity(mint))]
    ata, _ = Pubkey.find_program_address(seeds, ATA_PROGRAM)
    return ata
