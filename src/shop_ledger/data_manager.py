"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules (balances, cascades, validation) belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: creating, opening, upgrading and persisting the file.
3. Record operations: add, put (insert-or-replace), delete and full scans for
   each record kind.
4. Index lookups: the ``CustomerID`` index on the transactions sheet used by
   cascading deletes.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    INDEX_KEY_PREFIX,
    META_COLUMNS,
    META_SHEET,
    SCHEMA_HISTORY,
    SCHEMA_VERSION,
    SCHEMA_VERSION_KEY,
    SHEET_COLUMNS,
    SHEET_NAMES,
    RecordKind,
)


CONFIG_FILE_NAME = "config.ini"


class StorageFailure(Exception):
    """Raised when the workbook could not be read from or written to."""


class DuplicateRecordError(KeyError):
    """Raised when an add targets an identifier that is already stored."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    autosave: bool = True
    seed_payment_terms: bool = True


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    email: str
    phone: str
    address: str
    payment_term_id: Optional[str]
    balance: float
    created_at: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    unit: str
    price: float
    created_at: str


@dataclass(frozen=True)
class PaymentTermRow:
    """In-memory view of a row from the ``PaymentTerms`` sheet."""

    payment_term_id: str
    name: str
    days: int


@dataclass(frozen=True)
class TransactionItem:
    """A freeform line item embedded in a transaction row."""

    item_id: str
    name: str
    quantity: float
    price: float


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    customer_id: str
    customer_name: str
    items: Tuple[TransactionItem, ...]
    total_amount: float
    transaction_type: str
    date: str
    created_at: str


Record = Union[CustomerRow, ProductRow, PaymentTermRow, TransactionRow]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME`` and returns the first match.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``System/DataFile`` and ``System/BusinessName`` are required.
    ``System/AutoSave`` and ``Defaults/SeedPaymentTerms`` are optional booleans
    defaulting to ``True``. Relative data file paths are anchored to
    ``base_path`` (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If one of the boolean options cannot be interpreted.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("System", "AutoSave", fallback=True)
    seed_payment_terms = parser.getboolean("Defaults", "SeedPaymentTerms", fallback=True)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        autosave=autosave,
        seed_payment_terms=seed_payment_terms,
    )


def create_workbook() -> Workbook:
    """Return a new in-memory workbook at the current schema version.

    The default sheet generated by ``openpyxl`` is removed, the ``_Meta``
    sheet is created at version ``0`` and :func:`upgrade_schema` then builds
    every record sheet and index in order.
    """

    workbook = openpyxl.Workbook()
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    _ensure_meta_sheet(workbook)
    upgrade_schema(workbook)
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: Workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageFailure: If the file exists but cannot be read as a workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (OSError, KeyError, ValueError, InvalidFileException, zipfile.BadZipFile) as exc:
        log.error("Unable to read workbook '%s': %s", data_file, exc)
        raise StorageFailure(f"Unable to read workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` in a single atomic step.

    The workbook is serialized into a temporary file in the destination folder
    and moved over the target with :func:`os.replace`, so readers only ever
    observe the previous or the new file. Parent directories are created on
    demand.

    Raises:
        StorageFailure: If the workbook could not be written.
    """

    dest = Path(destination).expanduser().resolve()
    tmp_name: Optional[str] = None
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".xlsx", dir=dest.parent)
        os.close(fd)
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
        tmp_name = None
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StorageFailure(f"Unable to save workbook {dest}: {exc}") from exc
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.remove(tmp_name)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _ensure_meta_sheet(workbook: Workbook) -> Worksheet:
    if META_SHEET in workbook.sheetnames:
        return workbook[META_SHEET]
    sheet = workbook.create_sheet(title=META_SHEET)
    _write_header(sheet, META_COLUMNS)
    sheet.append([SCHEMA_VERSION_KEY, 0])
    return sheet


def _write_header(sheet: Worksheet, columns: Sequence[str]) -> None:
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def _meta_row(workbook: Workbook, key: str) -> Optional[int]:
    sheet = workbook[META_SHEET]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=1, values_only=True), start=2):
        if row[0] == key:
            return row_idx
    return None


def _read_meta(workbook: Workbook, key: str) -> Any:
    row_idx = _meta_row(workbook, key)
    if row_idx is None:
        return None
    return workbook[META_SHEET].cell(row=row_idx, column=2).value


def _write_meta(workbook: Workbook, key: str, value: Any) -> None:
    sheet = _ensure_meta_sheet(workbook)
    row_idx = _meta_row(workbook, key)
    if row_idx is None:
        sheet.append([key, value])
    else:
        sheet.cell(row=row_idx, column=2, value=value)


def get_schema_version(workbook: Workbook) -> int:
    """Return the schema version recorded in the workbook (``0`` if none)."""

    if META_SHEET not in workbook.sheetnames:
        return 0
    raw = _read_meta(workbook, SCHEMA_VERSION_KEY)
    return int(raw) if raw is not None else 0


def list_indexes(workbook: Workbook, kind: RecordKind) -> List[str]:
    """Return the columns registered as secondary indexes for ``kind``."""

    if META_SHEET not in workbook.sheetnames:
        return []
    raw = _read_meta(workbook, INDEX_KEY_PREFIX + SHEET_NAMES[kind])
    if not raw:
        return []
    return [column for column in str(raw).split(",") if column]


def _create_kind(workbook: Workbook, kind: RecordKind) -> None:
    sheet_name = SHEET_NAMES[kind]
    if sheet_name in workbook.sheetnames:
        log.debug("Sheet '%s' already present, skipping creation", sheet_name)
        return
    sheet = workbook.create_sheet(title=sheet_name)
    _write_header(sheet, SHEET_COLUMNS[kind])
    log.info("Created sheet '%s'", sheet_name)


def _create_index(workbook: Workbook, kind: RecordKind, column: str) -> None:
    if column not in SHEET_COLUMNS[kind]:
        raise KeyError(f"Unknown column for index: {column}")
    existing = list_indexes(workbook, kind)
    if column in existing:
        log.debug("Index '%s' on '%s' already present", column, SHEET_NAMES[kind])
        return
    _write_meta(workbook, INDEX_KEY_PREFIX + SHEET_NAMES[kind], ",".join([*existing, column]))
    log.info("Created index '%s' on sheet '%s'", column, SHEET_NAMES[kind])


def upgrade_schema(workbook: Workbook, *, target: int = SCHEMA_VERSION) -> int:
    """Bring the workbook layout up to ``target`` one version at a time.

    Each step from version ``N`` to ``N + 1`` creates exactly the sheets and
    indexes listed under ``SCHEMA_HISTORY[N + 1]``. Sheets or indexes that
    already exist are left untouched together with their rows, so applying a
    step twice is harmless.

    Args:
        workbook (Workbook): Workbook to upgrade in place.
        target (int): Version to reach. Defaults to ``SCHEMA_VERSION``.

    Returns:
        int: The schema version recorded after the upgrade.

    Raises:
        StorageFailure: If the workbook is newer than ``target`` supports.
    """

    _ensure_meta_sheet(workbook)
    current = get_schema_version(workbook)
    if current > target:
        raise StorageFailure(
            f"Workbook schema version {current} is newer than supported version {target}"
        )

    for version in range(current + 1, target + 1):
        for kind, indexes in SCHEMA_HISTORY[version].items():
            _create_kind(workbook, kind)
            for column in indexes:
                _create_index(workbook, kind, column)
        _write_meta(workbook, SCHEMA_VERSION_KEY, version)
        log.info("Upgraded workbook schema to version %d", version)

    return get_schema_version(workbook)


def _row_values(kind: RecordKind, record: Record) -> list[object]:
    """Serialize ``record`` and check every cell value before any write.

    Raises:
        StorageFailure: If a text value holds characters a worksheet cannot store.
    """

    values = _SERIALIZERS[kind](record)
    for column, value in zip(SHEET_COLUMNS[kind], values):
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            log.error("Refusing %s row '%s': illegal characters in %s", kind.value, record_key(record), column)
            raise StorageFailure(f"Column {column} of {kind.value} row {record_key(record)} holds illegal characters")
    return values


def _sheet(workbook: Workbook, kind: RecordKind) -> Worksheet:
    sheet_name = SHEET_NAMES[kind]
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise StorageFailure(f"Workbook has no '{sheet_name}' sheet") from exc


def record_key(record: Record) -> str:
    """Return the identifier of any record dataclass."""

    if isinstance(record, CustomerRow):
        return record.customer_id
    if isinstance(record, ProductRow):
        return record.product_id
    if isinstance(record, PaymentTermRow):
        return record.payment_term_id
    if isinstance(record, TransactionRow):
        return record.transaction_id
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def locate_row(workbook: Workbook, kind: RecordKind, key_value: str) -> Optional[int]:
    """Find the 1-based row index holding ``key_value`` in the id column.

    The id column is always the first column of a record sheet. The header row
    is never matched.
    """

    sheet = _sheet(workbook, kind)
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=1, values_only=True), start=2):
        if row[0] is not None and str(row[0]) == key_value:
            return row_idx
    return None


def iter_records(workbook: Workbook, kind: RecordKind) -> Iterable[Record]:
    """Iterate over every record of ``kind`` in sheet order.

    Fully empty rows are skipped; remaining rows are converted with the
    deserializer registered for the kind.
    """

    sheet = _sheet(workbook, kind)
    deserialize = _DESERIALIZERS[kind]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def get_record(workbook: Workbook, kind: RecordKind, key_value: str) -> Optional[Record]:
    """Return the record stored under ``key_value`` or ``None``."""

    row_idx = locate_row(workbook, kind, key_value)
    if row_idx is None:
        return None
    sheet = _sheet(workbook, kind)
    width = len(SHEET_COLUMNS[kind])
    raw = next(sheet.iter_rows(min_row=row_idx, max_row=row_idx, max_col=width, values_only=True))
    return _DESERIALIZERS[kind](raw)


def add_record(workbook: Workbook, kind: RecordKind, record: Record) -> None:
    """Insert a new record, refusing to overwrite an existing identifier.

    Raises:
        DuplicateRecordError: If a record with the same id already exists.
        StorageFailure: If a value cannot be stored; nothing is written.
    """

    key_value = record_key(record)
    if locate_row(workbook, kind, key_value) is not None:
        log.error("Refusing duplicate %s id '%s'", kind.value, key_value)
        raise DuplicateRecordError(f"Duplicate {kind.value} id: {key_value}")
    values = _row_values(kind, record)
    try:
        _sheet(workbook, kind).append(values)
    except ValueError as exc:
        raise StorageFailure(f"Unable to write {kind.value} row {key_value}: {exc}") from exc


def put_record(workbook: Workbook, kind: RecordKind, record: Record) -> Optional[Record]:
    """Insert ``record`` or replace the stored record with the same id.

    Returns:
        Record | None: The record that was replaced, ``None`` for an insert.

    Raises:
        StorageFailure: If a value cannot be stored; the stored row is left
            unchanged.
    """

    key_value = record_key(record)
    row_idx = locate_row(workbook, kind, key_value)
    values = _row_values(kind, record)
    sheet = _sheet(workbook, kind)
    if row_idx is None:
        try:
            sheet.append(values)
        except ValueError as exc:
            raise StorageFailure(f"Unable to write {kind.value} row {key_value}: {exc}") from exc
        return None

    previous = get_record(workbook, kind, key_value)
    try:
        for column, value in enumerate(values, start=1):
            sheet.cell(row=row_idx, column=column, value=value)
    except ValueError as exc:
        for column, value in enumerate(_SERIALIZERS[kind](previous), start=1):
            sheet.cell(row=row_idx, column=column, value=value)
        raise StorageFailure(f"Unable to write {kind.value} row {key_value}: {exc}") from exc
    return previous


def delete_record(workbook: Workbook, kind: RecordKind, key_value: str) -> Optional[Record]:
    """Remove the record stored under ``key_value``.

    Deleting an unknown id is a no-op.

    Returns:
        Record | None: The removed record, or ``None`` when nothing matched.
    """

    row_idx = locate_row(workbook, kind, key_value)
    if row_idx is None:
        return None
    removed = get_record(workbook, kind, key_value)
    _sheet(workbook, kind).delete_rows(row_idx)
    return removed


def iter_by_index(workbook: Workbook, kind: RecordKind, column: str, value: str) -> Iterable[Record]:
    """Yield the records of ``kind`` whose indexed ``column`` equals ``value``.

    Raises:
        KeyError: If ``column`` is not registered as an index for ``kind``.
    """

    if column not in list_indexes(workbook, kind):
        raise KeyError(f"No index '{column}' on {kind.value}")

    column_pos = list(SHEET_COLUMNS[kind]).index(column)
    sheet = _sheet(workbook, kind)
    deserialize = _DESERIALIZERS[kind]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        cell = raw[column_pos] if column_pos < len(raw) else None
        if cell is not None and str(cell) == value:
            yield deserialize(raw)


def _text(value: object) -> str:
    return str(value) if value is not None else ""


def _optional_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _number(value: object) -> float:
    return float(value) if value not in (None, "") else 0.0


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the worksheet column ordering."""

    return [
        record.customer_id,
        record.name,
        record.email,
        record.phone,
        record.address,
        record.payment_term_id,
        record.balance,
        record.created_at,
    ]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [record.product_id, record.name, record.category, record.unit, record.price, record.created_at]


def serialize_payment_term(record: PaymentTermRow) -> list[object]:
    """Convert a payment term dataclass into the worksheet column ordering."""

    return [record.payment_term_id, record.name, record.days]


def serialize_items(items: Iterable[TransactionItem]) -> str:
    """Encode transaction items as the JSON array stored in the ``Items`` cell."""

    return json.dumps(
        [
            {"id": item.item_id, "name": item.name, "quantity": item.quantity, "price": item.price}
            for item in items
        ]
    )


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the worksheet column ordering.

    Line items are embedded as JSON since they are not separately addressable.
    """

    return [
        record.transaction_id,
        record.customer_id,
        record.customer_name,
        serialize_items(record.items),
        record.total_amount,
        record.transaction_type,
        record.date,
        record.created_at,
    ]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a customer record.

    Empty text cells come back from ``openpyxl`` as ``None`` and are mapped to
    empty strings, except the optional payment term reference.
    """

    customer_id, name, email, phone, address, payment_term_id, balance, created_at = raw_row[:8]
    return CustomerRow(
        customer_id=str(customer_id),
        name=_text(name),
        email=_text(email),
        phone=_text(phone),
        address=_text(address),
        payment_term_id=_optional_text(payment_term_id),
        balance=_number(balance),
        created_at=_text(created_at),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a product record."""

    product_id, name, category, unit, price, created_at = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        name=_text(name),
        category=_text(category),
        unit=_text(unit),
        price=_number(price),
        created_at=_text(created_at),
    )


def deserialize_payment_term(raw_row: Sequence[object]) -> PaymentTermRow:
    """Convert a raw worksheet row into a payment term record."""

    payment_term_id, name, days = raw_row[:3]
    return PaymentTermRow(
        payment_term_id=str(payment_term_id),
        name=_text(name),
        days=int(days) if days not in (None, "") else 0,
    )


def deserialize_items(raw: object) -> Tuple[TransactionItem, ...]:
    """Decode the JSON ``Items`` cell into item dataclasses.

    Raises:
        StorageFailure: If the cell does not hold a valid JSON item list.
    """

    if raw in (None, ""):
        return ()
    try:
        payload = json.loads(str(raw))
        return tuple(
            TransactionItem(
                item_id=str(entry["id"]),
                name=str(entry["name"]),
                quantity=float(entry["quantity"]),
                price=float(entry["price"]),
            )
            for entry in payload
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise StorageFailure(f"Corrupt transaction items: {raw!r}") from exc


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a transaction record."""

    (
        transaction_id,
        customer_id,
        customer_name,
        items_raw,
        total_amount,
        transaction_type,
        date,
        created_at,
    ) = raw_row[:8]

    return TransactionRow(
        transaction_id=str(transaction_id),
        customer_id=_text(customer_id),
        customer_name=_text(customer_name),
        items=deserialize_items(items_raw),
        total_amount=_number(total_amount),
        transaction_type=_text(transaction_type),
        date=_text(date),
        created_at=_text(created_at),
    )


_SERIALIZERS: Mapping[RecordKind, Callable[[Any], list[object]]] = {
    RecordKind.CUSTOMERS: serialize_customer,
    RecordKind.PRODUCTS: serialize_product,
    RecordKind.TRANSACTIONS: serialize_transaction,
    RecordKind.PAYMENT_TERMS: serialize_payment_term,
}

_DESERIALIZERS: Dict[RecordKind, Callable[[Sequence[object]], Any]] = {
    RecordKind.CUSTOMERS: deserialize_customer,
    RecordKind.PRODUCTS: deserialize_product,
    RecordKind.TRANSACTIONS: deserialize_transaction,
    RecordKind.PAYMENT_TERMS: deserialize_payment_term,
}
