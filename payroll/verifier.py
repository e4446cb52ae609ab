"""Signature verification for wallet challenges (EIP-191 personal_sign)."""
from __future__ import annotations

import logging
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

from .wallets import normalize_eth_address

logger = logging.getLogger(__name__)

SIGNATURE_HEX_LENGTH = 130


class SignatureVerifier(Protocol):
    def verify(self, wallet_address: str, challenge_text: str, signature: str) -> bool: ...


def normalize_signature(signature: str) -> bytes:
    candidate = (signature or "").strip()
    if candidate.startswith(("0x", "0X")):
        candidate = candidate[2:]
    if len(candidate) != SIGNATURE_HEX_LENGTH:
        raise ValueError("signature must be 65 bytes")
    return bytes.fromhex(candidate)


def recover_signer(challenge_text: str, signature: str) -> str:
    recovered = Account.recover_message(
        encode_defunct(text=challenge_text),
        signature=normalize_signature(signature),
    )
    return recovered.lower()


class EthereumSignatureVerifier:
    """Recovers the signer of ``challenge_text`` and compares it to the claimed address."""

    def verify(self, wallet_address: str, challenge_text: str, signature: str) -> bool:
        try:
            expected = normalize_eth_address(wallet_address)
            return recover_signer(challenge_text, signature) == expected
        except Exception as exc:
            logger.debug("Signature rejected for %s: %s", wallet_address, type(exc).__name__)
            return False
