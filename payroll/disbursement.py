"""Batch disbursement: parse a payroll upload, pay every entry, record every outcome."""
from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .batch import (
    DelimitedPayrollParser,
    PayloadDecoder,
    PayrollBatch,
    PayrollInstruction,
    PayrollParser,
    format_amount,
    passthrough_decoder,
)
from .config import MAX_GATEWAY_ATTEMPTS, MAX_GATEWAY_CONCURRENCY
from .errors import PayrollValidationError, StorageError
from .gateway import GatewayError, GatewayErrorKind, Receipt, SigningGateway
from .ledger import STATUS_FAILED, STATUS_SUCCESS, TransactionLedger, TransactionRecord
from .secret_store import SecretProvider


@dataclass(frozen=True)
class EntryResult:
    index: int
    wallet_address: str
    amount: Decimal
    status: str
    transaction_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    record_id: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "walletAddress": self.wallet_address,
            "amount": format_amount(self.amount),
            "status": self.status,
            "recordId": self.record_id,
        }
        if self.status == STATUS_SUCCESS:
            payload["transactionId"] = self.transaction_id
        else:
            payload["errorKind"] = self.error_kind
            payload["error"] = self.error_message
        return payload


@dataclass(frozen=True)
class BatchResult:
    batch_id: str
    source_file_name: str
    entries: Tuple[EntryResult, ...]

    @property
    def total_entries(self) -> int:
        return len(self.entries)

    @property
    def success_count(self) -> int:
        return sum(1 for entry in self.entries if entry.status == STATUS_SUCCESS)

    @property
    def failed_count(self) -> int:
        return sum(1 for entry in self.entries if entry.status == STATUS_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "sourceFileName": self.source_file_name,
            "totalEntries": self.total_entries,
            "successful": self.success_count,
            "failed": self.failed_count,
            "results": [entry.to_dict() for entry in self.entries],
        }


class DisbursementEngine:
    """Dispatches each payroll instruction independently.

    A gateway failure only marks its own entry as failed; a ledger failure is
    logged as an operational fault without changing the reported outcome. Results
    are assembled by original index so concurrency never reorders them.
    """

    def __init__(
        self,
        gateway: SigningGateway,
        ledger: TransactionLedger,
        secrets: SecretProvider,
        *,
        credentials_secret_name: str,
        parser: Optional[PayrollParser] = None,
        decoder: PayloadDecoder = passthrough_decoder,
        max_concurrency: int = 8,
        max_attempts: int = 1,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.secrets = secrets
        self.credentials_secret_name = credentials_secret_name
        self.parser = parser or DelimitedPayrollParser()
        self.decoder = decoder
        self.max_concurrency = min(max(int(max_concurrency), 1), MAX_GATEWAY_CONCURRENCY)
        self.max_attempts = min(max(int(max_attempts), 1), MAX_GATEWAY_ATTEMPTS)
        self.retry_backoff_seconds = max(float(retry_backoff_seconds), 0.0)
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def process_batch(self, data: bytes, source_file_name: str) -> BatchResult:
        if not data:
            raise PayrollValidationError("Payroll file is empty")
        batch = self.parser.parse(self.decoder(data), source_file_name)
        self.logger.info("Processing payroll file %s with %s entries", source_file_name, len(batch))
        return self.disburse(batch)

    def disburse(self, batch: PayrollBatch) -> BatchResult:
        batch_id = uuid.uuid4().hex
        if not batch.instructions:
            return BatchResult(batch_id=batch_id, source_file_name=batch.source_file_name, entries=())

        credentials = self._load_credentials()
        slots: List[Optional[EntryResult]] = [None] * len(batch.instructions)
        workers = min(self.max_concurrency, len(batch.instructions))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payroll-gateway") as pool:
            futures = {
                pool.submit(self._execute, batch_id, batch, index, instruction, credentials): index
                for index, instruction in enumerate(batch.instructions)
            }
            for future in as_completed(futures):
                index = futures[future]
                slots[index] = future.result()

        entries = tuple(entry for entry in slots if entry is not None)
        result = BatchResult(batch_id=batch_id, source_file_name=batch.source_file_name, entries=entries)
        self.logger.info(
            "Payroll batch %s (%s) finished: total=%s success=%s failed=%s",
            batch_id,
            batch.source_file_name,
            result.total_entries,
            result.success_count,
            result.failed_count,
        )
        return result

    def _load_credentials(self) -> Dict[str, Any]:
        try:
            return self.secrets.get(self.credentials_secret_name)
        except StorageError:
            self.logger.error("Gateway credentials %s unavailable; batch not dispatched", self.credentials_secret_name)
            raise

    def _execute(
        self,
        batch_id: str,
        batch: PayrollBatch,
        index: int,
        instruction: PayrollInstruction,
        credentials: Dict[str, Any],
    ) -> EntryResult:
        receipt, error, attempts = self._submit(instruction, credentials)
        if receipt is not None:
            record = TransactionRecord.new(
                wallet_address=instruction.wallet_address,
                amount=instruction.amount,
                status=STATUS_SUCCESS,
                source_file_name=batch.source_file_name,
                batch_id=batch_id,
                provider_transaction_id=receipt.provider_transaction_id,
            )
        else:
            assert error is not None
            self.logger.error(
                "Failed to process wallet %s: %s",
                instruction.wallet_address,
                error,
            )
            record = TransactionRecord.new(
                wallet_address=instruction.wallet_address,
                amount=instruction.amount,
                status=STATUS_FAILED,
                source_file_name=batch.source_file_name,
                batch_id=batch_id,
                error_kind=error.kind.value,
                error_reason=error.message,
            )

        return EntryResult(
            index=index,
            wallet_address=instruction.wallet_address,
            amount=instruction.amount,
            status=record.status,
            transaction_id=record.provider_transaction_id,
            error_kind=record.error_kind,
            error_message=record.error_reason,
            record_id=self._record(record),
            attempts=attempts,
        )

    def _submit(
        self,
        instruction: PayrollInstruction,
        credentials: Dict[str, Any],
    ) -> Tuple[Optional[Receipt], Optional[GatewayError], int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                receipt = self.gateway.submit(instruction.wallet_address, instruction.amount, credentials)
                return receipt, None, attempt
            except GatewayError as exc:
                error = exc
            except Exception:
                self.logger.exception("Gateway client raised for wallet %s", instruction.wallet_address)
                error = GatewayError(GatewayErrorKind.UNKNOWN, "gateway client error")

            if error.kind is not GatewayErrorKind.PROVIDER_UNAVAILABLE or attempt >= self.max_attempts:
                return None, error, attempt
            delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
            self.logger.warning(
                "Provider unavailable for wallet %s (attempt %s/%s); retrying in %.2fs",
                instruction.wallet_address,
                attempt,
                self.max_attempts,
                delay,
            )
            self._sleep(delay)

    def _record(self, record: TransactionRecord) -> Optional[str]:
        try:
            return self.ledger.append(record)
        except StorageError as exc:
            self.logger.error(
                "Ledger write failed for %s transaction %s (wallet %s): %s",
                record.status,
                record.record_id,
                record.wallet_address,
                exc,
            )
        except Exception:
            self.logger.exception(
                "Ledger write failed for %s transaction %s (wallet %s)",
                record.status,
                record.record_id,
                record.wallet_address,
            )
        return None
