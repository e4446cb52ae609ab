"""Stateless session tokens (JWT) bound to an authenticated wallet address."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import JWTError, jwt

from .errors import InvalidToken, StorageError
from .secret_store import SecretProvider
from .wallets import normalize_eth_address, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60
SIGNING_KEY_FIELD = "signing_key"


@dataclass(frozen=True)
class SessionToken:
    token: str
    wallet_address: str
    issued_at: datetime
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return int((self.expires_at - self.issued_at).total_seconds())


@dataclass(frozen=True)
class SessionClaims:
    wallet_address: str
    issued_at: datetime
    expires_at: datetime


class SessionIssuer:
    def __init__(
        self,
        secrets: SecretProvider,
        *,
        secret_name: str,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("session lifetime must be positive")
        self.secrets = secrets
        self.secret_name = secret_name
        self.ttl_seconds = int(ttl_seconds)
        self.algorithm = algorithm
        self._clock = clock

    def _signing_key(self) -> str:
        secret = self.secrets.get(self.secret_name)
        key = secret.get(SIGNING_KEY_FIELD)
        if not isinstance(key, str) or not key:
            raise StorageError("session signing key unavailable")
        return key

    def mint(self, wallet_address: str) -> SessionToken:
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=self.ttl_seconds)
        claims = {
            "sub": wallet_address.lower(),
            "walletAddress": wallet_address,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(claims, self._signing_key(), algorithm=self.algorithm)
        logger.info("Issued session token for %s (expires %s)", wallet_address, expires_at.isoformat())
        return SessionToken(token=token, wallet_address=wallet_address, issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: Optional[str]) -> SessionClaims:
        if not token:
            raise InvalidToken()
        key = self._signing_key()
        try:
            payload: Dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise InvalidToken() from exc

        try:
            address = normalize_eth_address(str(payload["walletAddress"]))
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken() from exc
        if str(payload.get("sub") or "") != address:
            raise InvalidToken()
        if self._clock() >= expires_at:
            raise InvalidToken()
        return SessionClaims(wallet_address=str(payload["walletAddress"]), issued_at=issued_at, expires_at=expires_at)
