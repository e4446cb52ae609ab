"""Signing gateway clients that submit one payroll instruction to a custody/payment provider."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import requests

from .batch import format_amount
from .wallets import isoformat, utcnow

logger = logging.getLogger(__name__)

SUBMIT_PATH = "/v1/transactions"
FAILED_PROVIDER_STATUSES = {"failed", "rejected", "cancelled"}


class GatewayErrorKind(str, Enum):
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    INVALID_INSTRUCTION = "InvalidInstruction"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class GatewayError(RuntimeError):
    """Provider rejected or could not be reached for one instruction."""

    def __init__(self, kind: GatewayErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Receipt:
    provider_transaction_id: str
    status: str
    submitted_at: str


class SigningGateway(Protocol):
    def submit(self, wallet_address: str, amount: Decimal, credentials: Dict[str, Any]) -> Receipt: ...


def _status_error(status_code: int) -> GatewayError:
    if status_code in (401, 403):
        return GatewayError(GatewayErrorKind.AUTHENTICATION_FAILED, f"provider rejected credentials (HTTP {status_code})")
    if status_code in (408, 504):
        return GatewayError(GatewayErrorKind.TIMEOUT, f"provider timed out (HTTP {status_code})")
    if status_code in (400, 404, 409, 422):
        return GatewayError(GatewayErrorKind.INVALID_INSTRUCTION, f"provider rejected instruction (HTTP {status_code})")
    if status_code == 429 or status_code >= 500:
        return GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, f"provider unavailable (HTTP {status_code})")
    return GatewayError(GatewayErrorKind.UNKNOWN, f"unexpected provider response (HTTP {status_code})")


class HttpSigningGateway:
    """Submits instructions to a REST signing provider with a bearer API key."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http = session or requests.Session()

    def submit(self, wallet_address: str, amount: Decimal, credentials: Dict[str, Any]) -> Receipt:
        api_key = str(credentials.get("api_key") or "").strip()
        if not api_key:
            raise GatewayError(GatewayErrorKind.AUTHENTICATION_FAILED, "missing provider api key")

        try:
            response = self._http.post(
                f"{self.base_url}{SUBMIT_PATH}",
                json={"walletAddress": wallet_address, "amount": format_amount(amount)},
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {api_key}",
                },
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise GatewayError(GatewayErrorKind.TIMEOUT, "provider did not respond in time") from exc
        except requests.ConnectionError as exc:
            raise GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, "provider connection failed") from exc
        except requests.RequestException as exc:
            raise GatewayError(GatewayErrorKind.UNKNOWN, "provider request failed") from exc

        if response.status_code >= 300:
            raise _status_error(response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(GatewayErrorKind.UNKNOWN, "provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GatewayError(GatewayErrorKind.UNKNOWN, "provider returned invalid response")

        transaction_id = str(payload.get("providerTransactionId") or payload.get("transactionId") or "").strip()
        if not transaction_id:
            raise GatewayError(GatewayErrorKind.UNKNOWN, "provider response missing transaction id")
        status = str(payload.get("status") or "submitted").strip().lower()
        if status in FAILED_PROVIDER_STATUSES:
            raise GatewayError(GatewayErrorKind.INVALID_INSTRUCTION, f"provider reported status {status}")

        logger.info("Provider accepted payout to %s (tx=%s status=%s)", wallet_address, transaction_id, status)
        return Receipt(provider_transaction_id=transaction_id, status=status, submitted_at=isoformat(utcnow()))


class DryRunSigningGateway:
    """Pretends every instruction was signed; used when no provider is configured."""

    def submit(self, wallet_address: str, amount: Decimal, credentials: Dict[str, Any]) -> Receipt:
        transaction_id = str(uuid.uuid4())
        logger.info(
            "Dry-run payout: would send %s to %s (tx=%s)",
            amount,
            wallet_address,
            transaction_id,
        )
        return Receipt(provider_transaction_id=transaction_id, status="completed", submitted_at=isoformat(utcnow()))
