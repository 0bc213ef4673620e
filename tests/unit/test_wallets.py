"""Unit tests for wallet address and tx hash validation."""
import pytest

from common.errors import ValidationError
from orchestrator.wallets import normalize_address, normalize_tx_hash, same_address

CHECKSUMMED = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


class TestNormalizeAddress:
    def test_checksummed_address_kept(self):
        assert normalize_address(CHECKSUMMED) == CHECKSUMMED

    def test_lowercase_address_checksummed(self):
        assert normalize_address(CHECKSUMMED.lower()) == CHECKSUMMED

    def test_bad_checksum_rejected(self):
        """Flipping the case of one letter breaks the EIP-55 checksum."""
        tampered = CHECKSUMMED.replace("aAeb", "aaeb")

        with pytest.raises(ValidationError):
            normalize_address(tampered)

    @pytest.mark.parametrize("value", ["0x1234", "5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed", "0xZZ" + "0" * 38])
    def test_malformed_rejected(self, value):
        with pytest.raises(ValidationError):
            normalize_address(value, "tenantWalletAddress")

    def test_empty_means_absent(self):
        assert normalize_address(None) is None
        assert normalize_address("  ") is None

    def test_same_address_ignores_case(self):
        assert same_address(CHECKSUMMED, CHECKSUMMED.lower())
        assert not same_address(CHECKSUMMED, None)


class TestTxHash:
    def test_lowercased(self):
        assert normalize_tx_hash("0x" + "AB" * 32) == "0x" + "ab" * 32

    @pytest.mark.parametrize("value", ["", "0x" + "a" * 63, "ab" * 32, "0x" + "g" * 64])
    def test_malformed(self, value):
        with pytest.raises(ValidationError):
            normalize_tx_hash(value)
