#!/usr/bin/env python3
"""
Instruction building for the exchange program.

Every operation compiles to the same shape:

    [set_compute_unit_limit, set_compute_unit_price,
     (create user ATA, only when the destination account is missing),
     <program instruction>]

Instruction data is the 8-byte Anchor sighash followed by little-endian args.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from solana.rpc.commitment import Commitment
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from spl.token.instructions import create_associated_token_account

from amm.pool_pda import (
    ATA_PROGRAM,
    TOKEN_PROGRAM,
    Identity,
    PoolAddresses,
    derive_pool_addresses,
    derive_user_token_account,
    parse_identity,
)
from config import (
    COMMITMENT,
    COMPUTE_UNIT_LIMIT,
    COMPUTE_UNIT_PRICE,
    DEFAULT_FEE_RATE_BPS,
    PROGRAM_ID,
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
)

logger = logging.getLogger("instructions")
logger.setLevel(logging.INFO)

SYSTEM_PROGRAM = Pubkey.from_string(SYSTEM_PROGRAM_ID)
RENT_SYSVAR = Pubkey.from_string(RENT_SYSVAR_ID)

# sha256("global:<name>")[:8]
DISCRIMINATORS = {
    "initialize_pool": bytes.fromhex("5fb40aac54aee828"),
    "add_liquidity": bytes.fromhex("b59d59438fb63448"),
    "remove_liquidity": bytes.fromhex("5055d14818ceb16c"),
    "swap_sol_to_token": bytes.fromhex("fcac8f4473679e01"),
    "swap_token_to_sol": bytes.fromhex("fe073551cde44b52"),
}


class OperationKind(Enum):
    INIT_POOL = "init-pool"
    ADD_LIQUIDITY = "add-liquidity"
    REMOVE_LIQUIDITY = "remove-liquidity"
    SWAP_IN = "swap-in"      # SOL -> token
    SWAP_OUT = "swap-out"    # token -> SOL


@dataclass
class AssembledOperation:
    """Ordered instruction list plus the accounts it resolved."""
    kind: OperationKind
    instructions: List[Instruction]
    addresses: PoolAddresses
    user_token_account: Pubkey
    user_lp_account: Optional[Pubkey] = None
    created_accounts: List[Pubkey] = field(default_factory=list)
    reduced_confidence: bool = False


# ── Program Instructions ────────────────────────────────────────────

def build_swap_ix(program_id: Pubkey, addresses: PoolAddresses, user: Pubkey, user_token_account: Pubkey,
                  sol_to_token: bool, amount_in: int, min_amount_out: int) -> Instruction:
    """swap_sol_to_token / swap_token_to_sol. Both directions share the account list."""
    name = "swap_sol_to_token" if sol_to_token else "swap_token_to_sol"
    data = DISCRIMINATORS[name] + struct.pack('<QQ', amount_in, min_amount_out)

    accounts = [
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(user, is_signer=True, is_writable=True),
        AccountMeta(user_token_account, is_signer=False, is_writable=True),
        AccountMeta(addresses.token_vault, is_signer=False, is_writable=True),
        AccountMeta(addresses.sol_vault, is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def build_initialize_pool_ix(program_id: Pubkey, addresses: PoolAddresses, token_mint: Pubkey,
                             authority: Pubkey, authority_token_account: Pubkey,
                             token_amount: int, sol_amount: int, fee_rate_bps: int) -> Instruction:
    data = DISCRIMINATORS["initialize_pool"] + struct.pack('<QQH', token_amount, sol_amount, fee_rate_bps)

    accounts = [
        AccountMeta(token_mint, is_signer=False, is_writable=False),
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(addresses.pool_authority, is_signer=False, is_writable=False),
        AccountMeta(addresses.token_vault, is_signer=False, is_writable=True),
        AccountMeta(addresses.sol_vault, is_signer=False, is_writable=True),
        AccountMeta(addresses.lp_mint, is_signer=False, is_writable=True),
        AccountMeta(authority_token_account, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(ATA_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(RENT_SYSVAR, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def _liquidity_accounts(addresses: PoolAddresses, user: Pubkey, user_token_account: Pubkey,
                        user_lp_account: Pubkey) -> List[AccountMeta]:
    return [
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(user, is_signer=True, is_writable=True),
        AccountMeta(addresses.pool_authority, is_signer=False, is_writable=False),
        AccountMeta(user_token_account, is_signer=False, is_writable=True),
        AccountMeta(user_lp_account, is_signer=False, is_writable=True),
        AccountMeta(addresses.token_vault, is_signer=False, is_writable=True),
        AccountMeta(addresses.sol_vault, is_signer=False, is_writable=True),
        AccountMeta(addresses.lp_mint, is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(ATA_PROGRAM, is_signer=False, is_writable=False),
    ]


def build_add_liquidity_ix(program_id: Pubkey, addresses: PoolAddresses, user: Pubkey,
                           user_token_account: Pubkey, user_lp_account: Pubkey,
                           token_amount: int, sol_amount: int, min_lp_amount: int) -> Instruction:
    data = DISCRIMINATORS["add_liquidity"] + struct.pack('<QQQ', token_amount, sol_amount, min_lp_amount)
    return Instruction(program_id, data, _liquidity_accounts(addresses, user, user_token_account, user_lp_account))


def build_remove_liquidity_ix(program_id: Pubkey, addresses: PoolAddresses, user: Pubkey,
                              user_token_account: Pubkey, user_lp_account: Pubkey,
                              lp_amount: int, min_token_amount: int, min_sol_amount: int) -> Instruction:
    data = DISCRIMINATORS["remove_liquidity"] + struct.pack('<QQQ', lp_amount, min_token_amount, min_sol_amount)
    return Instruction(program_id, data, _liquidity_accounts(addresses, user, user_token_account, user_lp_account))


# ── SPL Token Helpers ────────────────────────────────────────────

def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    """createAssociatedTokenAccountIdempotent, used when the existence check itself failed."""
    ata = derive_user_token_account(owner, mint)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
    ]
    # createIdempotent = instruction index 1 in ATA program
    return Instruction(ATA_PROGRAM, bytes([1]), accounts)


class TransactionAssembler:
    """Resolves accounts and orders instructions for one operation."""

    def __init__(self, rpc, program_id: Identity = PROGRAM_ID,
                 compute_unit_limit: int = COMPUTE_UNIT_LIMIT,
                 compute_unit_price: int = COMPUTE_UNIT_PRICE):
        self.rpc = rpc
        self.program_id = parse_identity(program_id)
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price = compute_unit_price

    def compute_budget_ixs(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(self.compute_unit_price),
        ]

    async def _ensure_ata_ix(self, payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Optional[Instruction]:
        """Create-ATA instruction if the account is missing, else None."""
        ata = derive_user_token_account(owner, mint)
        try:
            resp = await self.rpc.get_account_info(ata, commitment=Commitment(COMMITMENT))
        except Exception as e:
            logger.warning(f"ATA check failed for {str(ata)[:8]}..., using idempotent create: {e}")
            return create_ata_idempotent_ix(payer, owner, mint)

        if resp.value is not None:
            return None
        logger.info(f"Destination account {str(ata)[:8]}... missing, creating it")
        return create_associated_token_account(payer=payer, owner=owner, mint=mint)

    async def assemble(self, kind: OperationKind, payer: Identity, token_mint: Identity,
                       reduced_confidence: bool = False, **params) -> AssembledOperation:
        """
        Build the instruction list for one operation. Amounts are raw integers.

        Params by kind:
            INIT_POOL:        token_amount, sol_amount, fee_rate_bps
            ADD_LIQUIDITY:    token_amount, sol_amount, min_lp_amount
            REMOVE_LIQUIDITY: lp_amount, min_token_amount, min_sol_amount
            SWAP_IN:          sol_amount, min_token_amount
            SWAP_OUT:         token_amount, min_sol_amount
        """
        user = parse_identity(payer)
        mint = parse_identity(token_mint)
        addresses = derive_pool_addresses(self.program_id, mint)
        user_token_account = derive_user_token_account(user, mint)
        user_lp_account = None

        instructions = self.compute_budget_ixs()
        created = []

        # Only operations that pay out into an ATA may need to create one
        destination_mint = None
        if kind in (OperationKind.SWAP_IN, OperationKind.REMOVE_LIQUIDITY):
            destination_mint = mint
        elif kind == OperationKind.ADD_LIQUIDITY:
            destination_mint = addresses.lp_mint

        if destination_mint is not None:
            create_ix = await self._ensure_ata_ix(user, user, destination_mint)
            if create_ix is not None:
                instructions.append(create_ix)
                created.append(derive_user_token_account(user, destination_mint))

        if kind == OperationKind.SWAP_IN:
            core = build_swap_ix(self.program_id, addresses, user, user_token_account, True,
                                 params["sol_amount"], params["min_token_amount"])
        elif kind == OperationKind.SWAP_OUT:
            core = build_swap_ix(self.program_id, addresses, user, user_token_account, False,
                                 params["token_amount"], params["min_sol_amount"])
        elif kind == OperationKind.INIT_POOL:
            core = build_initialize_pool_ix(self.program_id, addresses, mint, user, user_token_account,
                                            params["token_amount"], params["sol_amount"],
                                            params.get("fee_rate_bps", DEFAULT_FEE_RATE_BPS))
        elif kind == OperationKind.ADD_LIQUIDITY:
            user_lp_account = derive_user_token_account(user, addresses.lp_mint)
            core = build_add_liquidity_ix(self.program_id, addresses, user, user_token_account, user_lp_account,
                                          params["token_amount"], params["sol_amount"], params["min_lp_amount"])
        elif kind == OperationKind.REMOVE_LIQUIDITY:
            user_lp_account = derive_user_token_account(user, addresses.lp_mint)
            core = build_remove_liquidity_ix(self.program_id, addresses, user, user_token_account,
                                             user_lp_account, params["lp_amount"],
                                             params["min_token_amount"], params["min_sol_amount"])
        else:
            raise ValueError(f"Unsupported operation: {kind}")

        instructions.append(core)
        logger.debug(f"Assembled {kind.value} for {str(mint)[:8]}...: {len(instructions)} instructions")

        return AssembledOperation(
            kind=kind,
            instructions=instructions,
            addresses=addresses,
            user_token_account=user_token_account,
            user_lp_account=user_lp_account,
            created_accounts=created,
            reduced_confidence=reduced_confidence,
        )
