"""Wallet address and transaction hash validation."""
from __future__ import annotations

import re
from typing import Optional

from eth_utils import is_address, is_checksum_address, to_checksum_address

from common.errors import ValidationError

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalize_address(value: Optional[str], field: str = "walletAddress") -> Optional[str]:
    """Return the EIP-55 checksummed form of a 20-byte hex address.

    Mixed-case input must carry a valid checksum; all-lowercase or all-uppercase
    input is accepted and checksummed.
    """
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if not candidate.startswith("0x") or len(candidate) != 42 or not is_address(candidate):
        raise ValidationError(f"{field} is not a valid checksummed 20-byte hex address")
    digits = candidate[2:]
    if digits != digits.lower() and digits != digits.upper() and not is_checksum_address(candidate):
        raise ValidationError(f"{field} has an invalid EIP-55 checksum")
    return to_checksum_address(candidate)


def same_address(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.lower() == right.lower()


def normalize_tx_hash(value: str) -> str:
    candidate = (value or "").strip()
    if not _TX_HASH_RE.match(candidate):
        raise ValidationError("txHash must be a 0x-prefixed 32-byte hex string")
    return candidate.lower()
