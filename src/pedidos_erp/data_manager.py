"""Data access layer for Pedidos ERP.

This module provides the low-level helpers that read from and write to the
master workbook. Every worksheet named in :class:`~.constants.TableName` acts
as a record table whose first column is the record ``ID``; the ``Opciones``
sheet lists the allowed values of enum-like fields. Business logic belongs
elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. The record-store contract: reading records, creating single records,
   updating records in capped batches, enumerating allowed values and
   answering permission pre-checks.
4. Typed accessors that turn generic records into row dataclasses.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence
from uuid import uuid4

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    ID_FIELD,
    OPTIONS_SHEET,
    STORE_BATCH_CAP,
    LineField,
    OrderField,
    PaymentField,
    PaymentMethodField,
    TableName,
    WriteOperation,
)


CONFIG_FILE_NAME = "config.ini"
LINK_SEPARATOR = ","

RecordPredicate = Callable[["Record"], bool]


class BatchLimitExceeded(ValueError):
    """Raised when an update call carries more records than the store accepts."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    max_batch_size: int = STORE_BATCH_CAP
    denied_writes: frozenset[tuple[str, str]] = frozenset()
    brand_policies: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Record:
    """Generic record read from a table sheet.

    ``fields`` holds every column of the table except ``ID``. Blank cells are
    ``None``; asking for a column the table does not have raises ``KeyError``
    so callers can tell a missing field apart from an empty one.
    """

    record_id: str
    fields: Mapping[str, Any]

    def get(self, name: str) -> Any:
        key = _field_name(name)
        if key not in self.fields:
            raise KeyError(f"Unknown field: {key}")
        return self.fields[key]


@dataclass(frozen=True)
class OrderLineRow:
    """In-memory view of a row from the ``Líneas de Pedido`` sheet."""

    line_id: str
    status: Optional[str]
    order_number: Optional[str]
    brand: Optional[str]
    model: Optional[str]
    description: Optional[str]
    cost: Optional[Decimal]
    history: Optional[str]


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Pedidos`` sheet."""

    order_id: str
    order_number: Optional[str]
    status: Optional[str]
    order_date: Optional[str]
    brand: Optional[str]
    extra_cost: Decimal
    extra_expenses: Decimal
    history: Optional[str]
    line_ids: tuple[str, ...]


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Pagos`` sheet."""

    record_id: str
    order_id: Optional[str]
    method_id: Optional[str]
    amount: Decimal
    payment_id: Optional[str]
    payment_date: Optional[str]
    description: Optional[str]
    notes: Optional[str]
    payer: Optional[str]
    reference: Optional[str]
    card: Optional[str]


@dataclass(frozen=True)
class PaymentMethodRow:
    """In-memory view of a row from the ``Métodos de Pago Admin`` sheet."""

    method_id: str
    name: str
    type_tag: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
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

    Option names keep their case because brand names under ``[BrandPolicy]``
    are matched exactly against the ``Línea`` column.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile`` and ``SchemaVersion``.
    ``MaxBatchSize`` is optional and never exceeds :data:`STORE_BATCH_CAP`.
    ``[Permissions]`` may list tables under ``DenyCreate`` / ``DenyUpdate`` and
    ``[BrandPolicy]`` maps brand names to their terminal status. Relative data
    file paths are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``MaxBatchSize`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_batch_size = parser.getint("System", "MaxBatchSize", fallback=STORE_BATCH_CAP)
    if max_batch_size < 1:
        raise ValueError(f"MaxBatchSize must be positive, got {max_batch_size}")
    if max_batch_size > STORE_BATCH_CAP:
        log.warning(
            "MaxBatchSize %d exceeds the store cap; using %d",
            max_batch_size,
            STORE_BATCH_CAP,
        )
        max_batch_size = STORE_BATCH_CAP

    denied: set[tuple[str, str]] = set()
    for option, operation in (("DenyCreate", WriteOperation.CREATE), ("DenyUpdate", WriteOperation.UPDATE)):
        raw = parser.get("Permissions", option, fallback="")
        for table in _split_list(raw):
            denied.add((operation.value, table))

    brand_policies: dict[str, str] = {}
    if parser.has_section("BrandPolicy"):
        for brand, status in parser.items("BrandPolicy"):
            brand_policies[brand.strip()] = status.strip()

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        max_batch_size=max_batch_size,
        denied_writes=frozenset(denied),
        brand_policies=brand_policies,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def generate_record_id() -> str:
    """Return a fresh record identifier such as ``rec3f9a0c1d2b7e44``."""

    return f"rec{uuid4().hex[:14]}"


def read_records(workbook: Workbook, table: str, predicate: Optional[RecordPredicate] = None) -> list[Record]:
    """Read every populated row of ``table`` as a :class:`Record`.

    Fully empty rows are skipped. When ``predicate`` is supplied only the
    records for which it returns ``True`` are kept; the sheet order is
    preserved either way.

    Args:
        workbook (Workbook): Workbook holding the table sheet.
        table (str): Table name, usually a :class:`TableName` member.
        predicate (Callable[[Record], bool] | None): Optional filter.

    Returns:
        list[Record]: Matching records in sheet order.

    Raises:
        KeyError: If the workbook has no sheet for ``table`` or the sheet has
            no ``ID`` column.
    """

    sheet = _sheet(workbook, table)
    headers = _headers(sheet)
    id_index = _header_map(sheet)[ID_FIELD] - 1
    records: list[Record] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        values = list(raw) + [None] * (len(headers) - len(raw))
        record = Record(
            record_id=str(values[id_index]),
            fields={name: values[idx] for idx, name in enumerate(headers) if idx != id_index and name},
        )
        if predicate is None or predicate(record):
            records.append(record)
    return records


def create_record(workbook: Workbook, table: str, fields: Mapping[str, Any]) -> str:
    """Append a single record to ``table`` and return its new identifier.

    Args:
        workbook (Workbook): Workbook holding the table sheet.
        table (str): Target table.
        fields (Mapping[str, Any]): Column values keyed by field name. Omitted
            columns stay blank.

    Returns:
        str: Identifier generated for the new record.

    Raises:
        KeyError: If the table or one of the fields does not exist. Nothing is
            written in that case.
    """

    sheet = _sheet(workbook, table)
    header_map = _header_map(sheet)
    row: list[Any] = [None] * len(header_map)
    for name, value in fields.items():
        key = _field_name(name)
        if key not in header_map or key == ID_FIELD:
            raise KeyError(f"Unknown field for {_table_name(table)}: {key}")
        row[header_map[key] - 1] = _to_cell(value)

    record_id = generate_record_id()
    row[header_map[ID_FIELD] - 1] = record_id
    sheet.append(row)
    log.debug("Created record '%s' in '%s'", record_id, _table_name(table))
    return record_id


def update_records(
    workbook: Workbook,
    table: str,
    updates: Sequence[tuple[str, Mapping[str, Any]]],
    *,
    max_batch_size: int = STORE_BATCH_CAP,
) -> int:
    """Update a batch of records in ``table``.

    The call is all-or-nothing from the caller's point of view: the batch size,
    every record id and every field name are validated before the first cell
    is written. Batches larger than ``min(max_batch_size, STORE_BATCH_CAP)``
    are rejected outright, so callers must chunk.

    Args:
        workbook (Workbook): Workbook holding the table sheet.
        table (str): Target table.
        updates (Sequence[tuple[str, Mapping[str, Any]]]): ``(record_id,
            fields)`` pairs.
        max_batch_size (int): Caller's batch limit.

    Returns:
        int: Number of records updated.

    Raises:
        BatchLimitExceeded: If the batch is larger than the allowed limit.
        KeyError: If a record or field cannot be found.
    """

    limit = min(max_batch_size, STORE_BATCH_CAP)
    if len(updates) > limit:
        raise BatchLimitExceeded(
            f"Batch of {len(updates)} records exceeds the limit of {limit}")

    sheet = _sheet(workbook, table)
    header_map = _header_map(sheet)
    id_column = header_map[ID_FIELD]
    row_index: dict[str, int] = {}
    for idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(raw) >= id_column and raw[id_column - 1] is not None:
            row_index.setdefault(str(raw[id_column - 1]), idx)

    planned: list[tuple[int, int, Any]] = []
    for record_id, fields in updates:
        if record_id not in row_index:
            raise KeyError(f"Record not found in {_table_name(table)}: {record_id}")
        for name, value in fields.items():
            key = _field_name(name)
            if key not in header_map or key == ID_FIELD:
                raise KeyError(f"Unknown field for {_table_name(table)}: {key}")
            planned.append((row_index[record_id], header_map[key], _to_cell(value)))

    for row, column, value in planned:
        sheet.cell(row=row, column=column, value=value)
    log.debug("Updated %d record(s) in '%s'", len(updates), _table_name(table))
    return len(updates)


def list_allowed_values(workbook: Workbook, table: str, field_name: str) -> list[str]:
    """Enumerate the allowed values of an enum-like field.

    Values come from the ``Opciones`` sheet in sheet order, without
    duplicates. A workbook without that sheet yields an empty list.
    """

    if OPTIONS_SHEET not in workbook.sheetnames:
        return []
    table_key = _table_name(table)
    field_key = _field_name(field_name)
    values: list[str] = []
    for raw in workbook[OPTIONS_SHEET].iter_rows(min_row=2, values_only=True):
        if len(raw) < 3 or raw[2] is None:
            continue
        if raw[0] == table_key and raw[1] == field_key:
            value = str(raw[2])
            if value not in values:
                values.append(value)
    return values


def can_write(settings: ConfigSettings, operation: str, table: str) -> bool:
    """Answer the permission pre-check for ``operation`` on ``table``."""

    op = operation.value if isinstance(operation, WriteOperation) else str(operation)
    return (op, _table_name(table)) not in settings.denied_writes


def iter_order_lines(workbook: Workbook, predicate: Optional[RecordPredicate] = None) -> Iterator[OrderLineRow]:
    """Yield typed order lines, optionally filtered at the record level."""

    for record in read_records(workbook, TableName.ORDER_LINES, predicate):
        yield deserialize_order_line(record)


def iter_orders(workbook: Workbook, predicate: Optional[RecordPredicate] = None) -> Iterator[OrderRow]:
    """Yield typed orders, optionally filtered at the record level."""

    for record in read_records(workbook, TableName.ORDERS, predicate):
        yield deserialize_order(record)


def iter_payments(workbook: Workbook, predicate: Optional[RecordPredicate] = None) -> Iterator[PaymentRow]:
    """Yield typed payments, optionally filtered at the record level."""

    for record in read_records(workbook, TableName.PAYMENTS, predicate):
        yield deserialize_payment(record)


def iter_payment_methods(workbook: Workbook) -> Iterator[PaymentMethodRow]:
    """Yield the payment-method reference data."""

    for record in read_records(workbook, TableName.PAYMENT_METHODS):
        yield deserialize_payment_method(record)


def deserialize_order_line(record: Record) -> OrderLineRow:
    """Convert a generic record into an :class:`OrderLineRow`.

    A blank ``Costo`` stays ``None`` so aggregations can decide how to treat
    it; every other text column is normalized to ``str`` or ``None``.
    """

    return OrderLineRow(
        line_id=record.record_id,
        status=_text(record.get(LineField.STATUS)),
        order_number=_text(record.get(LineField.ORDER_NUMBER)),
        brand=_text(record.get(LineField.BRAND)),
        model=_text(record.get(LineField.MODEL)),
        description=_text(record.get(LineField.DESCRIPTION)),
        cost=_money(record.get(LineField.COST)),
        history=_text(record.get(LineField.HISTORY)),
    )


def deserialize_order(record: Record) -> OrderRow:
    """Convert a generic record into an :class:`OrderRow`.

    Adjustment columns default to zero when blank and the ``Productos`` link
    column is split into a tuple of line ids.
    """

    return OrderRow(
        order_id=record.record_id,
        order_number=_text(record.get(OrderField.ORDER_NUMBER)),
        status=_text(record.get(OrderField.STATUS)),
        order_date=_text(record.get(OrderField.ORDER_DATE)),
        brand=_text(record.get(OrderField.BRAND)),
        extra_cost=_money(record.get(OrderField.EXTRA_COST)) or Decimal("0"),
        extra_expenses=_money(record.get(OrderField.EXTRA_EXPENSES)) or Decimal("0"),
        history=_text(record.get(OrderField.HISTORY)),
        line_ids=parse_links(record.get(OrderField.LINES)),
    )


def deserialize_payment(record: Record) -> PaymentRow:
    """Convert a generic record into a :class:`PaymentRow`."""

    order_links = parse_links(record.get(PaymentField.ORDER))
    method_links = parse_links(record.get(PaymentField.METHOD))
    return PaymentRow(
        record_id=record.record_id,
        order_id=order_links[0] if order_links else None,
        method_id=method_links[0] if method_links else None,
        amount=_money(record.get(PaymentField.AMOUNT)) or Decimal("0"),
        payment_id=_text(record.get(PaymentField.PAYMENT_ID)),
        payment_date=_text(record.get(PaymentField.PAYMENT_DATE)),
        description=_text(record.get(PaymentField.DESCRIPTION)),
        notes=_text(record.get(PaymentField.NOTES)),
        payer=_text(record.get(PaymentField.PAYER)),
        reference=_text(record.get(PaymentField.REFERENCE)),
        card=_text(record.get(PaymentField.CARD)),
    )


def deserialize_payment_method(record: Record) -> PaymentMethodRow:
    """Convert a generic record into a :class:`PaymentMethodRow`."""

    return PaymentMethodRow(
        method_id=record.record_id,
        name=_text(record.get(PaymentMethodField.NAME)) or record.record_id,
        type_tag=_text(record.get(PaymentMethodField.TYPE)),
    )


def parse_links(value: Any) -> tuple[str, ...]:
    """Split a link cell (``"recA, recB"``) into record ids."""

    if value is None:
        return ()
    return tuple(_split_list(str(value)))


def serialize_links(record_ids: Iterable[str]) -> str:
    """Join record ids into the link cell representation."""

    return f"{LINK_SEPARATOR} ".join(record_ids)


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(LINK_SEPARATOR) if item.strip()]


def _table_name(table: Any) -> str:
    return table.value if isinstance(table, TableName) else str(table)


def _field_name(name: Any) -> str:
    value = getattr(name, "value", name)
    return str(value)


def _sheet(workbook: Workbook, table: Any):
    name = _table_name(table)
    if name not in workbook.sheetnames:
        raise KeyError(f"Unknown table: {name}")
    return workbook[name]


def _headers(sheet) -> list[str]:
    return [str(cell.value) if cell.value is not None else "" for cell in sheet[1]]


def _header_map(sheet) -> dict[str, int]:
    header_map = {name: idx + 1 for idx, name in enumerate(_headers(sheet)) if name}
    if ID_FIELD not in header_map:
        raise KeyError(f"Sheet '{sheet.title}' has no {ID_FIELD} column")
    return header_map


def _to_cell(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return serialize_links(str(item) for item in value)
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    text = str(value).strip()
    return text or None


def _money(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid monetary value: {value!r}") from exc

