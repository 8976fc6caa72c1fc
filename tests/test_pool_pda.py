"""
Tests for pool PDA derivation.

Vectors are fixed: if any of these change, every client would be talking to
the wrong accounts.
"""

import pytest
from solders.pubkey import Pubkey

from amm.errors import AmmError, ErrorCategory, InvalidIdentity
from amm.pool_pda import (
    POOL_SEED,
    derive_pool_addresses,
    derive_user_token_account,
    parse_identity,
)
from conftest import PROGRAM_ID, USDC_MINT

WSOL_MINT = "So11111111111111111111111111111111111111112"
RAYDIUM_V4 = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"

USDC_VECTORS = {
    "pool": "7sk12LYPADrfpywvPPibGfQzA5GXvKY77JWTSs3xCk6Z",
    "pool_authority": "C9A2is3z2wHKrRnUa6YuYRVTKTAQYGJiTvVfZcRYe9ve",
    "token_vault": "HoY9c1xTXTNatbty19fNV3iJHnGrNrFn7k6KMLMWBEHF",
    "sol_vault": "7izxaFy7CGz7pgtwpD2gQQsDyKzEL7oWuWe4fDhTkfpB",
    "lp_mint": "3BtpAcX1URSmGih13fDPF5xHuug96oXeCRf17DhBSPCL",
}


class TestDerivation:
    """Fixed vectors and determinism."""

    def test_usdc_vectors(self):
        """Test the five USDC pool accounts against known addresses."""
        addresses = derive_pool_addresses(PROGRAM_ID, USDC_MINT)
        assert addresses.as_dict() == USDC_VECTORS

    def test_pool_bump(self):
        """Test the pool PDA bump matches the on-chain bump byte."""
        _, bump = Pubkey.find_program_address(
            [POOL_SEED, bytes(Pubkey.from_string(USDC_MINT))], Pubkey.from_string(PROGRAM_ID)
        )
        assert bump == 251

    def test_other_mint(self):
        """Test a second mint derives a different pool."""
        addresses = derive_pool_addresses(PROGRAM_ID, WSOL_MINT)
        assert str(addresses.pool) == "F2g6b6KH4JDn1FaZWRWouHy1cff85JtF5YSqAsi4yG8R"

    def test_deterministic_across_input_forms(self):
        """Test str, Pubkey and raw bytes inputs agree and repeat."""
        mint = Pubkey.from_string(USDC_MINT)
        first = derive_pool_addresses(PROGRAM_ID, USDC_MINT)
        assert derive_pool_addresses(PROGRAM_ID, USDC_MINT) == first
        assert derive_pool_addresses(Pubkey.from_string(PROGRAM_ID), mint) == first
        assert derive_pool_addresses(PROGRAM_ID, bytes(mint)) == first

    def test_all_five_distinct(self):
        """Test no two seeds collide."""
        addresses = derive_pool_addresses(PROGRAM_ID, USDC_MINT)
        assert len(set(addresses.as_dict().values())) == 5

    def test_mismatched_program_id_derives_wrong_accounts(self):
        """Test a different program id silently yields well-formed but different addresses."""
        wrong = derive_pool_addresses(RAYDIUM_V4, USDC_MINT)
        assert str(wrong.pool) == "CHtFufwPRsCozgCYFzxrp5qiXvYBw5X7EhdjaxUUUZ6B"
        assert str(wrong.pool) != USDC_VECTORS["pool"]

    def test_user_token_account(self):
        """Test associated token account derivation."""
        ata = derive_user_token_account("9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM", USDC_MINT)
        assert str(ata) == "FGETo8T8wMcN2wCjav8VK6eh3dLk63evNDPxzLSJra8B"


class TestInvalidIdentity:
    """Malformed identities fail with InvalidIdentity."""

    @pytest.mark.parametrize("value", [
        "not-a-valid-key",
        "",
        "   ",
        "0OIl" * 8,
        bytes(31),
        12345,
        None,
    ])
    def test_rejected(self, value):
        """Test malformed inputs raise InvalidIdentity."""
        with pytest.raises(InvalidIdentity) as exc_info:
            derive_pool_addresses(PROGRAM_ID, value)
        assert exc_info.value.category == ErrorCategory.INVALID_IDENTITY

    def test_is_amm_error(self):
        """Test InvalidIdentity is catchable as AmmError."""
        with pytest.raises(AmmError):
            parse_identity("xyz")

    def test_invalid_program_id(self):
        """Test a malformed program id is rejected too."""
        with pytest.raises(InvalidIdentity):
            derive_pool_addresses("bogus", USDC_MINT)

    def test_whitespace_trimmed(self):
        """Test surrounding whitespace is ignored."""
        assert parse_identity(f"  {USDC_MINT}\n") == Pubkey.from_string(USDC_MINT)
