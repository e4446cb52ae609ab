"""Payroll batch model and file parsers.

A payroll upload is decoded into an ordered, immutable list of
``PayrollInstruction`` values before anything is dispatched. Any malformed row
rejects the whole file so a partially understood payroll never pays out.
"""
from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Context, Decimal, InvalidOperation
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple

from .errors import PayrollValidationError
from .wallets import is_valid_address, utcnow

MAX_FRACTIONAL_DIGITS = 18
MAX_SIGNIFICANT_DIGITS = 36
WEI_QUANTUM = Decimal(1).scaleb(-MAX_FRACTIONAL_DIGITS)
AMOUNT_CONTEXT = Context(prec=MAX_SIGNIFICANT_DIGITS + MAX_FRACTIONAL_DIGITS)

ADDRESS_COLUMNS = ("walletaddress", "wallet_address", "wallet", "address")
AMOUNT_COLUMNS = ("amount", "amount_eth", "value")


@dataclass(frozen=True)
class PayrollInstruction:
    wallet_address: str
    amount: Decimal


@dataclass(frozen=True)
class PayrollBatch:
    instructions: Tuple[PayrollInstruction, ...]
    source_file_name: str
    received_at: datetime = field(default_factory=utcnow)

    def __len__(self) -> int:
        return len(self.instructions)


class PayrollParser(Protocol):
    def parse(self, data: bytes, source_file_name: str) -> PayrollBatch: ...


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError("amount is required")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"amount {value!r} is not a decimal number") from exc
    if not amount.is_finite():
        raise ValueError("amount must be finite")
    if amount <= 0:
        raise ValueError("amount must be positive")
    _, digits, exponent = amount.as_tuple()
    if not isinstance(exponent, int):
        raise ValueError("amount must be finite")
    if exponent > 0:
        if len(digits) + exponent > MAX_SIGNIFICANT_DIGITS:
            raise ValueError("amount has too many significant digits")
        amount = amount.quantize(Decimal(1), context=AMOUNT_CONTEXT)
    elif exponent < -MAX_FRACTIONAL_DIGITS:
        try:
            quantized = amount.quantize(WEI_QUANTUM, context=AMOUNT_CONTEXT)
        except InvalidOperation as exc:
            raise ValueError("amount has too many significant digits") from exc
        if quantized != amount:
            raise ValueError(f"amount supports at most {MAX_FRACTIONAL_DIGITS} decimal places")
        amount = quantized
    if len(amount.as_tuple().digits) > MAX_SIGNIFICANT_DIGITS:
        raise ValueError("amount has too many significant digits")
    return amount


def format_amount(amount: Decimal) -> str:
    """Plain positional notation; never ``1E+3`` or ``1E-7``."""
    return format(amount, "f")


def build_instruction(wallet_address: Any, amount: Any) -> PayrollInstruction:
    address = wallet_address.strip() if isinstance(wallet_address, str) else wallet_address
    if not is_valid_address(address):
        raise ValueError(f"invalid wallet address {wallet_address!r}")
    return PayrollInstruction(wallet_address=address, amount=parse_amount(amount))


def _pick(row: dict, candidates: Iterable[str]) -> Any:
    lowered = {str(key).strip().lower(): value for key, value in row.items() if key is not None}
    for name in candidates:
        if name in lowered:
            return lowered[name]
    return None


class DelimitedPayrollParser:
    """Parses JSON or CSV payroll files.

    JSON may be a list of ``{"walletAddress", "amount"}`` objects, or an object
    wrapping such a list under ``entries``/``payroll``. CSV may carry a header
    naming the address and amount columns; without one the first two columns are
    used. Blank lines and ``#`` comments are ignored.
    """

    def parse(self, data: bytes, source_file_name: str) -> PayrollBatch:
        if not data:
            raise PayrollValidationError("Payroll file is empty")
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise PayrollValidationError("Payroll file must be UTF-8 encoded text") from exc

        stripped = text.strip()
        if stripped.startswith("[") or stripped.startswith("{"):
            instructions = self._parse_json(stripped)
        else:
            instructions = self._parse_csv(text)
        return PayrollBatch(instructions=tuple(instructions), source_file_name=source_file_name)

    def _parse_json(self, text: str) -> List[PayrollInstruction]:
        try:
            payload = json.loads(text, parse_float=Decimal)
        except json.JSONDecodeError as exc:
            raise PayrollValidationError(f"Payroll file is not valid JSON (line {exc.lineno})") from exc
        if isinstance(payload, dict):
            entries = payload.get("entries", payload.get("payroll"))
        else:
            entries = payload
        if not isinstance(entries, list):
            raise PayrollValidationError("Payroll JSON must be a list of entries")

        instructions: List[PayrollInstruction] = []
        for position, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise PayrollValidationError(f"Entry {position}: expected an object")
            try:
                instructions.append(
                    build_instruction(_pick(entry, ADDRESS_COLUMNS), _pick(entry, AMOUNT_COLUMNS))
                )
            except ValueError as exc:
                raise PayrollValidationError(f"Entry {position}: {exc}") from exc
        return instructions

    def _parse_csv(self, text: str) -> List[PayrollInstruction]:
        rows: List[Tuple[int, List[str]]] = []
        reader = csv.reader(io.StringIO(text))
        try:
            for row in reader:
                cells = [cell.strip() for cell in row]
                if not any(cells) or cells[0].startswith("#"):
                    continue
                rows.append((reader.line_num, cells))
        except csv.Error as exc:
            raise PayrollValidationError(f"Payroll CSV is malformed (line {reader.line_num})") from exc
        if not rows:
            return []

        address_index, amount_index = 0, 1
        header = [cell.lower() for cell in rows[0][1]]
        if not is_valid_address(rows[0][1][0]):
            address_index = self._column(header, ADDRESS_COLUMNS)
            amount_index = self._column(header, AMOUNT_COLUMNS)
            if address_index is None or amount_index is None:
                raise PayrollValidationError(
                    "Payroll CSV header must name a wallet address and an amount column"
                )
            rows = rows[1:]

        instructions: List[PayrollInstruction] = []
        width = max(address_index, amount_index) + 1
        for line_num, cells in rows:
            if len(cells) < width:
                raise PayrollValidationError(f"Line {line_num}: expected at least {width} columns")
            try:
                instructions.append(build_instruction(cells[address_index], cells[amount_index]))
            except ValueError as exc:
                raise PayrollValidationError(f"Line {line_num}: {exc}") from exc
        return instructions

    @staticmethod
    def _column(header: List[str], candidates: Iterable[str]) -> Optional[int]:
        for name in candidates:
            if name in header:
                return header.index(name)
        return None


PayloadDecoder = Callable[[bytes], bytes]


def passthrough_decoder(data: bytes) -> bytes:
    return data
