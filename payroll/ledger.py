"""Append-only transaction ledger stored as one JSON object per record."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .batch import format_amount
from .errors import StorageUnavailable
from .wallets import epoch_millis, isoformat, parse_iso8601, utcnow

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
LIST_PAGE_SIZE = 1000


@dataclass(frozen=True)
class TransactionRecord:
    record_id: str
    wallet_address: str
    amount: Decimal
    status: str
    created_at: datetime
    source_file_name: str
    batch_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        wallet_address: str,
        amount: Decimal,
        status: str,
        source_file_name: str,
        batch_id: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
        error_kind: Optional[str] = None,
        error_reason: Optional[str] = None,
    ) -> "TransactionRecord":
        if status not in (STATUS_SUCCESS, STATUS_FAILED):
            raise ValueError(f"unknown transaction status {status!r}")
        return cls(
            record_id=str(uuid.uuid4()),
            wallet_address=wallet_address,
            amount=amount,
            status=status,
            created_at=utcnow(),
            source_file_name=source_file_name,
            batch_id=batch_id,
            provider_transaction_id=provider_transaction_id,
            error_kind=error_kind,
            error_reason=error_reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "walletAddress": self.wallet_address,
            "amount": format_amount(self.amount),
            "status": self.status,
            "providerTransactionId": self.provider_transaction_id,
            "errorKind": self.error_kind,
            "errorReason": self.error_reason,
            "createdAt": isoformat(self.created_at),
            "sourceFileName": self.source_file_name,
            "batchId": self.batch_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TransactionRecord":
        status = str(payload["status"])
        if status not in (STATUS_SUCCESS, STATUS_FAILED):
            raise ValueError(f"unknown transaction status {status!r}")
        return cls(
            record_id=str(payload["recordId"]),
            wallet_address=str(payload["walletAddress"]),
            amount=Decimal(str(payload["amount"])),
            status=status,
            created_at=parse_iso8601(str(payload["createdAt"])),
            source_file_name=str(payload.get("sourceFileName") or ""),
            batch_id=payload.get("batchId"),
            provider_transaction_id=payload.get("providerTransactionId"),
            error_kind=payload.get("errorKind"),
            error_reason=payload.get("errorReason"),
        )


class ObjectStore(Protocol):
    def put(self, key: str, body: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...

    def list_keys(self, prefix: str) -> List[str]: ...


class LocalObjectStore:
    """Directory-backed object store; each put is fsynced and renamed into place."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        root = self.root.resolve()
        if root != candidate and root not in candidate.parents:
            raise StorageUnavailable("object key escapes ledger root")
        return candidate

    def put(self, key: str, body: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(body)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise StorageUnavailable(f"ledger write failed: {exc.strerror or exc}") from exc

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise StorageUnavailable(f"ledger read failed: {exc.strerror or exc}") from exc

    def list_keys(self, prefix: str) -> List[str]:
        directory, _, name_prefix = prefix.rpartition("/")
        base = self._path(directory) if directory else self.root
        if not base.exists():
            return []
        try:
            names = sorted(
                entry.name
                for entry in base.iterdir()
                if entry.is_file() and not entry.name.startswith(".") and entry.name.startswith(name_prefix)
            )
        except OSError as exc:
            raise StorageUnavailable(f"ledger listing failed: {exc.strerror or exc}") from exc
        return [f"{directory}/{name}" if directory else name for name in names]


class S3ObjectStore:
    """S3-backed object store (server-side encrypted JSON objects)."""

    def __init__(
        self,
        bucket: str,
        *,
        region: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                config=BotoConfig(
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    retries={"max_attempts": 2},
                ),
            )
        self._client = client

    def put(self, key: str, body: bytes) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
                ServerSideEncryption="AES256",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable("ledger write failed") from exc

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable("ledger read failed") from exc

    def list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": LIST_PAGE_SIZE}
        try:
            while True:
                response = self._client.list_objects_v2(**params)
                keys.extend(str(item["Key"]) for item in response.get("Contents") or [])
                token = response.get("NextContinuationToken")
                if not response.get("IsTruncated") or not token:
                    break
                params["ContinuationToken"] = token
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable("ledger listing failed") from exc
        return sorted(keys)


class TransactionLedger:
    """Writes immutable transaction records under ``<namespace>/<epoch-ms>-<record-id>.json``."""

    def __init__(
        self,
        store: ObjectStore,
        namespace: str = "transactions",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.namespace = namespace.strip("/")
        self.logger = logger or logging.getLogger(__name__)

    def key_for(self, record: TransactionRecord) -> str:
        return f"{self.namespace}/{epoch_millis(record.created_at)}-{record.record_id}.json"

    def append(self, record: TransactionRecord) -> str:
        body = json.dumps(record.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        key = self.key_for(record)
        self.store.put(key, body)
        self.logger.info("Recorded %s transaction %s for %s", record.status, record.record_id, record.wallet_address)
        return record.record_id

    def list(
        self,
        prefix: Optional[str] = None,
        limit: int = 100,
        wallet_address: Optional[str] = None,
    ) -> List[TransactionRecord]:
        """Return up to ``limit`` records, newest first.

        Keys are walked from the newest down, so the wallet filter is applied
        before the limit and recent records are never cut off by older ones.
        """
        if limit <= 0:
            return []
        full_prefix = f"{self.namespace}/{(prefix or '').lstrip('/')}"
        wanted = wallet_address.strip().lower() if wallet_address else None
        records: List[TransactionRecord] = []
        for key in reversed(self.store.list_keys(full_prefix)):
            raw = self.store.get(key)
            try:
                record = TransactionRecord.from_dict(json.loads(raw.decode("utf-8")))
            except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
                self.logger.warning("Skipping unreadable ledger object %s: %s", key, exc)
                continue
            if wanted and record.wallet_address.lower() != wanted:
                continue
            records.append(record)
            if len(records) >= limit:
                break
        return records
