"""Wallet address and timestamp helpers shared by the payroll backend."""
from __future__ import annotations

import re
from datetime import datetime, timezone

from eth_utils import is_hex_address, to_checksum_address

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
_ADDRESS_RE = re.compile(ADDRESS_PATTERN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    return datetime.fromisoformat(candidate).astimezone(timezone.utc)


def epoch_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def is_valid_address(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return bool(_ADDRESS_RE.match(value)) and is_hex_address(value)


def normalize_eth_address(value: str) -> str:
    """Return the lower-cased canonical form of ``value``.

    Raises ``ValueError`` when the value is not a 0x-prefixed 20-byte hex string.
    """
    candidate = (value or "").strip()
    if not is_valid_address(candidate):
        raise ValueError("address must be a 0x-prefixed 40-character hex string")
    return candidate.lower()


def checksum_address(value: str) -> str:
    return to_checksum_address(normalize_eth_address(value))
