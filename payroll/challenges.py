"""Single-use, expiring wallet authentication challenges."""
from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import InvalidAddress
from .wallets import epoch_millis, normalize_eth_address, utcnow

DEFAULT_CHALLENGE_TTL_SECONDS = 300
NONCE_BYTES = 32


@dataclass(frozen=True)
class AuthChallenge:
    wallet_address: str
    nonce: str
    issued_at: datetime
    expires_at: datetime
    message: str

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def expires_in(self, now: datetime) -> int:
        return max(int((self.expires_at - now).total_seconds()), 0)


def challenge_message(domain: str, nonce: str, issued_at: datetime, wallet_address: str) -> str:
    return f"{domain}: {nonce}:{epoch_millis(issued_at)}:{wallet_address}"


class ChallengeStore:
    """At most one live challenge per address; ``take`` removes atomically."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._challenges: Dict[str, AuthChallenge] = {}

    def _sweep(self, now: datetime) -> None:
        expired = [key for key, challenge in self._challenges.items() if challenge.is_expired(now)]
        for key in expired:
            self._challenges.pop(key, None)

    def put(self, challenge: AuthChallenge) -> None:
        key = challenge.wallet_address.lower()
        with self._lock:
            self._sweep(self._clock())
            self._challenges[key] = challenge

    def peek(self, wallet_address: str) -> Optional[AuthChallenge]:
        with self._lock:
            return self._challenges.get(wallet_address.strip().lower())

    def take(self, wallet_address: str) -> Optional[AuthChallenge]:
        with self._lock:
            return self._challenges.pop(wallet_address.strip().lower(), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


class ChallengeIssuer:
    def __init__(
        self,
        store: ChallengeStore,
        *,
        domain: str,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.domain = domain
        self.ttl_seconds = max(int(ttl_seconds), 1)
        self._clock = clock

    def issue(self, wallet_address: str) -> AuthChallenge:
        try:
            normalize_eth_address(wallet_address)
        except ValueError as exc:
            raise InvalidAddress() from exc

        address = wallet_address.strip()
        nonce = secrets.token_bytes(NONCE_BYTES).hex()
        issued_at = self._clock()
        challenge = AuthChallenge(
            wallet_address=address,
            nonce=nonce,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.ttl_seconds),
            message=challenge_message(self.domain, nonce, issued_at, address),
        )
        self.store.put(challenge)
        return challenge
