"""Two-step wallet authentication: request a challenge, then prove key control.

Every verification attempt consumes the stored challenge before anything is
checked, so a challenge can never be used twice whatever the outcome.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .challenges import AuthChallenge, ChallengeIssuer, ChallengeStore
from .errors import ChallengeExpired, InvalidAddress, InvalidSignature
from .tokens import SessionIssuer
from .verifier import SignatureVerifier
from .wallets import is_valid_address, utcnow


class AuthState(str, Enum):
    NO_CHALLENGE = "NoChallenge"
    CHALLENGE_ISSUED = "ChallengeIssued"
    VERIFIED = "Verified"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


@dataclass(frozen=True)
class SessionGrant:
    token: str
    wallet_address: str
    expires_in: int
    expires_at: datetime


class AuthController:
    def __init__(
        self,
        issuer: ChallengeIssuer,
        store: ChallengeStore,
        verifier: SignatureVerifier,
        sessions: SessionIssuer,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.issuer = issuer
        self.store = store
        self.verifier = verifier
        self.sessions = sessions
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def state(self, wallet_address: str) -> AuthState:
        challenge = self.store.peek(wallet_address)
        if challenge is None:
            return AuthState.NO_CHALLENGE
        if challenge.is_expired(self._clock()):
            return AuthState.EXPIRED
        return AuthState.CHALLENGE_ISSUED

    def request_challenge(self, wallet_address: str) -> AuthChallenge:
        challenge = self.issuer.issue(wallet_address)
        self.logger.info("Issued challenge for %s (expires %s)", challenge.wallet_address, challenge.expires_at.isoformat())
        return challenge

    def verify(
        self,
        wallet_address: str,
        signature: str,
        challenge: Optional[str] = None,
    ) -> SessionGrant:
        wallet_address = (wallet_address or "").strip()
        if not is_valid_address(wallet_address):
            raise InvalidAddress()

        stored = self.store.take(wallet_address)
        if stored is None:
            self._transition(wallet_address, AuthState.EXPIRED, "no live challenge")
            raise ChallengeExpired()
        if stored.is_expired(self._clock()):
            self._transition(wallet_address, AuthState.EXPIRED, "challenge past ttl")
            raise ChallengeExpired()
        if challenge is not None and challenge != stored.message:
            self._transition(wallet_address, AuthState.REJECTED, "challenge text mismatch")
            raise InvalidSignature()
        if not self.verifier.verify(wallet_address, stored.message, signature):
            self._transition(wallet_address, AuthState.REJECTED, "signature mismatch")
            raise InvalidSignature()

        self._transition(wallet_address, AuthState.VERIFIED, "signature verified")
        session = self.sessions.mint(stored.wallet_address)
        return SessionGrant(
            token=session.token,
            wallet_address=session.wallet_address,
            expires_in=session.expires_in,
            expires_at=session.expires_at,
        )

    def _transition(self, wallet_address: str, state: AuthState, reason: str) -> None:
        level = logging.INFO if state is AuthState.VERIFIED else logging.WARNING
        self.logger.log(level, "Auth %s -> %s (%s)", wallet_address, state.value, reason)
