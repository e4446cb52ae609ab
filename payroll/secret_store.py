"""Secret providers for API credentials and the session signing key."""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import SecretNotFound, SecretStoreUnavailable

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"ResourceNotFoundException"}


class SecretProvider(Protocol):
    def get(self, secret_name: str) -> Dict[str, Any]: ...


def _as_secret(secret_name: str, value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise SecretStoreUnavailable(f"secret {secret_name} is not valid JSON") from exc
    if not isinstance(value, dict):
        raise SecretStoreUnavailable(f"secret {secret_name} must be a JSON object")
    return dict(value)


class StaticSecretProvider:
    """Serves secrets from an in-memory mapping."""

    def __init__(self, secrets: Mapping[str, Any]) -> None:
        self._secrets = dict(secrets)

    def get(self, secret_name: str) -> Dict[str, Any]:
        if secret_name not in self._secrets:
            raise SecretNotFound(f"secret {secret_name} not found")
        return _as_secret(secret_name, self._secrets[secret_name])


class FileSecretProvider:
    """Reads ``{name: {...}}`` from a JSON file on every lookup."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def get(self, secret_name: str) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError as exc:
            raise SecretStoreUnavailable("secret file missing") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise SecretStoreUnavailable("secret file unreadable") from exc
        if not isinstance(data, dict) or secret_name not in data:
            raise SecretNotFound(f"secret {secret_name} not found")
        return _as_secret(secret_name, data[secret_name])


class AwsSecretsManagerProvider:
    """AWS Secrets Manager lookups with a short per-name cache."""

    def __init__(
        self,
        *,
        region: Optional[str] = None,
        cache_seconds: int = 300,
        timeout_seconds: float = 10.0,
        client: Any = None,
    ) -> None:
        if client is None:
            client = boto3.client(
                "secretsmanager",
                region_name=region,
                config=BotoConfig(connect_timeout=timeout_seconds, read_timeout=timeout_seconds),
            )
        self._client = client
        self.cache_seconds = max(int(cache_seconds), 0)
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, secret_name: str) -> Dict[str, Any]:
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(secret_name)
            if cached and cached[0] > now:
                return dict(cached[1])

        try:
            response = self._client.get_secret_value(SecretId=secret_name)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code") or "")
            if code in _NOT_FOUND_CODES:
                raise SecretNotFound(f"secret {secret_name} not found") from exc
            logger.error("Error retrieving secret %s: %s", secret_name, code or "unknown error")
            raise SecretStoreUnavailable("secret store unavailable") from exc
        except BotoCoreError as exc:
            logger.error("Error retrieving secret %s: %s", secret_name, type(exc).__name__)
            raise SecretStoreUnavailable("secret store unavailable") from exc

        raw = response.get("SecretString")
        if raw is None:
            raise SecretStoreUnavailable(f"secret {secret_name} has no string value")
        secret = _as_secret(secret_name, raw)
        if self.cache_seconds:
            with self._lock:
                self._cache[secret_name] = (now + self.cache_seconds, secret)
        return dict(secret)
