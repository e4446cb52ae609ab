import threading
import time
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from payroll.disbursement import DisbursementEngine
from payroll.errors import PayrollValidationError, SecretNotFound, StorageUnavailable
from payroll.gateway import GatewayError, GatewayErrorKind, HttpSigningGateway, Receipt
from payroll.ledger import LocalObjectStore, TransactionLedger
from payroll.secret_store import StaticSecretProvider

ADDRESS_A = "0x" + "A" * 39 + "1"
ADDRESS_B = "0x" + "B" * 39 + "2"
SECRET_NAME = "payroll/external-api"


def address(index: int) -> str:
    return "0x" + f"{index + 1:040x}"


def csv_for(entries) -> bytes:
    lines = ["walletAddress,amount"] + [f"{addr},{amount}" for addr, amount in entries]
    return ("\n".join(lines) + "\n").encode()


class FakeGateway:
    """Scripted gateway: per-address outcomes, optional delays, call tracking."""

    def __init__(self, outcomes=None, delays=None):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.calls = []
        self.completed = []
        self.credentials_seen = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def submit(self, wallet_address, amount, credentials):
        with self._lock:
            self.calls.append(wallet_address)
            self.credentials_seen.append(credentials)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(wallet_address, 0)
            if delay:
                time.sleep(delay)
            outcome = self.outcomes.get(wallet_address)
            if isinstance(outcome, list):
                with self._lock:
                    outcome = outcome.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return Receipt(provider_transaction_id=f"tx-{wallet_address[-4:]}", status="completed", submitted_at="now")
        finally:
            with self._lock:
                self.in_flight -= 1
                self.completed.append(wallet_address)


class FlakyLedger:
    """Delegates to a real ledger but refuses writes for some addresses."""

    def __init__(self, inner, refuse):
        self.inner = inner
        self.refuse = set(refuse)

    def append(self, record):
        if record.wallet_address in self.refuse:
            raise StorageUnavailable("ledger write failed")
        return self.inner.append(record)


def build_engine(tmp_path: Path, gateway, ledger=None, **kwargs):
    ledger = ledger or TransactionLedger(LocalObjectStore(tmp_path))
    secrets = kwargs.pop("secrets", StaticSecretProvider({SECRET_NAME: {"api_key": "key-1"}}))
    engine = DisbursementEngine(
        gateway,
        ledger,
        secrets,
        credentials_secret_name=SECRET_NAME,
        **kwargs,
    )
    return engine, ledger


def test_timeout_entry_fails_while_sibling_succeeds(tmp_path: Path):
    gateway = FakeGateway({ADDRESS_B: GatewayError(GatewayErrorKind.TIMEOUT, "provider did not respond in time")})
    engine, ledger = build_engine(tmp_path, gateway)

    result = engine.process_batch(csv_for([(ADDRESS_A, "100.50"), (ADDRESS_B, "250.75")]), "payroll.csv")

    assert (result.total_entries, result.success_count, result.failed_count) == (2, 1, 1)
    first, second = result.entries
    assert first.status == "success"
    assert first.transaction_id is not None
    assert second.status == "failed"
    assert second.error_kind == "Timeout"
    assert second.amount == Decimal("250.75")

    records = {record.wallet_address: record for record in ledger.list()}
    assert records[ADDRESS_A].status == "success"
    assert records[ADDRESS_A].provider_transaction_id == first.transaction_id
    assert records[ADDRESS_B].status == "failed"
    assert records[ADDRESS_B].error_kind == "Timeout"
    assert records[ADDRESS_B].error_reason == "provider did not respond in time"


def test_results_keep_file_order_under_concurrency(tmp_path: Path):
    entries = [(address(i), str(i + 1)) for i in range(6)]
    delays = {addr: 0.05 * (6 - i) for i, (addr, _) in enumerate(entries)}
    gateway = FakeGateway(delays=delays)
    engine, _ = build_engine(tmp_path, gateway, max_concurrency=6)

    result = engine.process_batch(csv_for(entries), "ordered.csv")

    assert [entry.wallet_address for entry in result.entries] == [addr for addr, _ in entries]
    assert [entry.index for entry in result.entries] == list(range(6))
    assert gateway.completed != [addr for addr, _ in entries]


def test_concurrency_is_bounded(tmp_path: Path):
    entries = [(address(i), "1") for i in range(8)]
    gateway = FakeGateway(delays={addr: 0.02 for addr, _ in entries})
    engine, _ = build_engine(tmp_path, gateway, max_concurrency=2)

    result = engine.process_batch(csv_for(entries), "bounded.csv")

    assert result.success_count == 8
    assert gateway.max_in_flight <= 2


def test_failures_are_isolated_per_entry(tmp_path: Path):
    entries = [(address(i), "5") for i in range(5)]
    failing = entries[2][0]
    gateway = FakeGateway({failing: GatewayError(GatewayErrorKind.INVALID_INSTRUCTION, "rejected")})
    engine, ledger = build_engine(tmp_path, gateway)

    result = engine.process_batch(csv_for(entries), "isolated.csv")

    statuses = [entry.status for entry in result.entries]
    assert statuses == ["success", "success", "failed", "success", "success"]
    assert result.success_count + result.failed_count == result.total_entries == 5
    assert len(ledger.list()) == 5


def test_unexpected_gateway_exception_is_recorded_as_unknown(tmp_path: Path):
    gateway = FakeGateway({ADDRESS_A: RuntimeError("bug in client")})
    engine, ledger = build_engine(tmp_path, gateway)

    result = engine.process_batch(csv_for([(ADDRESS_A, "1"), (ADDRESS_B, "2")]), "bug.csv")

    assert result.entries[0].error_kind == "Unknown"
    assert "bug in client" not in (result.entries[0].error_message or "")
    assert result.entries[1].status == "success"
    assert len(ledger.list()) == 2


def test_ledger_failure_keeps_gateway_outcome(tmp_path: Path, caplog):
    gateway = FakeGateway({ADDRESS_B: GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, "provider unavailable (HTTP 503)")})
    inner = TransactionLedger(LocalObjectStore(tmp_path))
    ledger = FlakyLedger(inner, refuse={ADDRESS_A, ADDRESS_B})
    engine, _ = build_engine(tmp_path, gateway, ledger=ledger)

    with caplog.at_level("ERROR"):
        result = engine.process_batch(csv_for([(ADDRESS_A, "1"), (ADDRESS_B, "2")]), "audit.csv")

    first, second = result.entries
    assert first.status == "success" and first.record_id is None
    assert second.status == "failed" and second.record_id is None
    assert second.error_kind == "ProviderUnavailable"
    assert any("Ledger write failed" in message for message in caplog.messages)
    assert inner.list() == []


def test_empty_batch_yields_zero_counts(tmp_path: Path):
    gateway = FakeGateway()
    engine, _ = build_engine(tmp_path, gateway, secrets=StaticSecretProvider({}))

    result = engine.process_batch(b"walletAddress,amount\n", "empty.csv")

    assert (result.total_entries, result.success_count, result.failed_count) == (0, 0, 0)
    assert result.entries == ()
    assert gateway.calls == []


def test_empty_upload_is_a_validation_error(tmp_path: Path):
    engine, _ = build_engine(tmp_path, FakeGateway())

    with pytest.raises(PayrollValidationError):
        engine.process_batch(b"", "nothing.csv")


def test_malformed_file_dispatches_nothing(tmp_path: Path):
    gateway = FakeGateway()
    engine, ledger = build_engine(tmp_path, gateway)

    with pytest.raises(PayrollValidationError):
        engine.process_batch(csv_for([(ADDRESS_A, "1"), ("0xnope", "2")]), "bad.csv")

    assert gateway.calls == []
    assert ledger.list() == []


def test_missing_credentials_fail_whole_batch(tmp_path: Path):
    gateway = FakeGateway()
    engine, ledger = build_engine(tmp_path, gateway, secrets=StaticSecretProvider({}))

    with pytest.raises(SecretNotFound):
        engine.process_batch(csv_for([(ADDRESS_A, "1")]), "payroll.csv")

    assert gateway.calls == []
    assert ledger.list() == []


def test_credentials_are_passed_to_gateway(tmp_path: Path):
    gateway = FakeGateway()
    engine, _ = build_engine(tmp_path, gateway)

    engine.process_batch(csv_for([(ADDRESS_A, "1")]), "payroll.csv")

    assert gateway.credentials_seen == [{"api_key": "key-1"}]


def test_resubmitted_batch_creates_new_records(tmp_path: Path):
    gateway = FakeGateway()
    engine, ledger = build_engine(tmp_path, gateway)
    data = csv_for([(ADDRESS_A, "1"), (ADDRESS_B, "2")])

    first = engine.process_batch(data, "payroll.csv")
    second = engine.process_batch(data, "payroll.csv")

    first_ids = {entry.record_id for entry in first.entries}
    second_ids = {entry.record_id for entry in second.entries}
    assert first_ids.isdisjoint(second_ids)
    assert first.batch_id != second.batch_id
    assert len(ledger.list()) == 4


def test_provider_unavailable_is_retried_with_backoff(tmp_path: Path):
    unavailable = GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, "provider unavailable (HTTP 503)")
    gateway = FakeGateway({ADDRESS_A: [unavailable, unavailable, None]})
    sleeps = []
    engine, ledger = build_engine(
        tmp_path,
        gateway,
        max_attempts=3,
        retry_backoff_seconds=0.1,
        sleep=sleeps.append,
    )

    result = engine.process_batch(csv_for([(ADDRESS_A, "1")]), "retry.csv")

    assert result.entries[0].status == "success"
    assert result.entries[0].attempts == 3
    assert sleeps == [0.1, 0.2]
    assert len(ledger.list()) == 1


def test_timeouts_are_never_retried(tmp_path: Path):
    gateway = FakeGateway({ADDRESS_A: GatewayError(GatewayErrorKind.TIMEOUT, "provider did not respond in time")})
    sleeps = []
    engine, _ = build_engine(tmp_path, gateway, max_attempts=3, sleep=sleeps.append)

    result = engine.process_batch(csv_for([(ADDRESS_A, "1")]), "timeout.csv")

    assert result.entries[0].error_kind == "Timeout"
    assert result.entries[0].attempts == 1
    assert gateway.calls == [ADDRESS_A]
    assert sleeps == []


def test_gateway_timeout_status_is_not_retried(tmp_path: Path):
    response = MagicMock(status_code=504)
    session = MagicMock(spec=requests.Session)
    session.post.return_value = response
    gateway = HttpSigningGateway("https://signer.example", session=session)
    sleeps = []
    engine, _ = build_engine(tmp_path, gateway, max_attempts=3, sleep=sleeps.append)

    result = engine.process_batch(csv_for([(ADDRESS_A, "1")]), "timeout.csv")

    assert result.entries[0].error_kind == "Timeout"
    assert result.entries[0].attempts == 1
    assert session.post.call_count == 1
    assert sleeps == []


def test_batch_result_serialization(tmp_path: Path):
    gateway = FakeGateway({ADDRESS_B: GatewayError(GatewayErrorKind.AUTHENTICATION_FAILED, "provider rejected credentials (HTTP 401)")})
    engine, _ = build_engine(tmp_path, gateway)

    payload = engine.process_batch(csv_for([(ADDRESS_A, "1.5"), (ADDRESS_B, "2")]), "payroll.csv").to_dict()

    assert payload["totalEntries"] == 2
    assert payload["successful"] == 1
    assert payload["failed"] == 1
    assert payload["results"][0]["amount"] == "1.5"
    assert "transactionId" in payload["results"][0]
    assert payload["results"][1]["errorKind"] == "AuthenticationFailed"
    assert payload["results"][1]["error"] == "provider rejected credentials (HTTP 401)"
