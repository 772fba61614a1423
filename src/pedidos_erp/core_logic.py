"""Business logic layer for Pedidos ERP.

This module orchestrates the order workflow on top of the record store:
confirming selected lines, settling a group of lines into an order with
optional payments, and registering further payments against an existing
order. All I/O goes through the Data Access Layer (DAL); monetary maths and
status decisions come from :mod:`.ledger` and :mod:`.status_policy`.

The store offers no cross-table transaction. Each workflow therefore runs its
writes in a fixed order and, when a later write fails, raises
:class:`PartialFailure` describing what already happened instead of trying to
undo it.
"""

from __future__ import annotations

import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, ledger, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    REQUESTED_ORDER_STATUSES,
    LineField,
    OrderField,
    PaymentField,
    PaymentMethodType,
    Status,
    TableName,
    WriteOperation,
)
from .status_policy import StatusPolicy, load_brand_policies


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised when input fails a precondition before any write is attempted."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced line, order, or payment method is unknown."""


class WritePermissionError(BusinessRuleViolation):
    """Raised when the permission pre-check denies a write the workflow needs."""


class TransactionInProgressError(BusinessRuleViolation):
    """Raised when the same workflow is already running for the same target."""


class PartialFailure(BusinessRuleViolation):
    """Raised when a multi-step workflow fails after some writes succeeded.

    Attributes:
        step: Name of the step that failed (``"order"``, ``"payments"``,
            ``"lines"`` or ``"order_status"``).
        succeeded: Units of the failing step that were written before the
            failure.
        attempted: Units the failing step intended to write.
        completed_steps: Steps that finished before the failure.
        order_id: Order created or targeted by the workflow, when known.
        error: First underlying error encountered.

    ``step="order"`` is the one exception to "some writes succeeded": the
    order record itself could not be created, so ``succeeded`` is 0,
    ``completed_steps`` is empty and nothing reached the store.
    """

    def __init__(
        self,
        message: str,
        *,
        step: str,
        succeeded: int,
        attempted: int,
        completed_steps: Sequence[str] = (),
        order_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.succeeded = succeeded
        self.attempted = attempted
        self.completed_steps = tuple(completed_steps)
        self.order_id = order_id
        self.error = error


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and policy used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    policy: StatusPolicy = field(default_factory=StatusPolicy)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _in_flight: Set[Tuple[str, str]] = field(default_factory=set, repr=False, compare=False)


@dataclass(frozen=True)
class ProposedPayment:
    """A payment the user wants to record, before it is written.

    ``payer``, ``reference`` and ``card`` are only stored when the payment
    method's type is cash, voucher or transfer respectively.
    """

    method_id: str
    amount: Decimal
    payment_id: Optional[str] = None
    payment_date: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    payer: Optional[str] = None
    reference: Optional[str] = None
    card: Optional[str] = None


@dataclass(frozen=True)
class SettlementCommand:
    """User intent for turning a line group into an order."""

    order_number: str
    order_date: Optional[date] = None
    extra_cost: Optional[Decimal] = None
    extra_expenses: Optional[Decimal] = None
    payments: Tuple[ProposedPayment, ...] = ()
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentRegistrationCommand:
    """User intent for paying (part of) an existing order."""

    order_id: str
    payments: Tuple[ProposedPayment, ...]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SettlementResult:
    """Summary shown after a successful settlement."""

    order_id: str
    order_number: str
    brand: str
    line_count: int
    total_cost: Decimal
    order_status: str
    line_status: str
    ledger: ledger.LedgerSummary
    payment_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PaymentRegistrationResult:
    """Summary shown after payments were registered against an order."""

    order_id: str
    payment_ids: Tuple[str, ...]
    amount_paid: Decimal
    remaining: Decimal
    status: str


@dataclass(frozen=True)
class SelectionSummary:
    """Eligible and skipped lines of a selection, plus the cost to confirm."""

    confirmed_count: int
    total_cost: Decimal
    skipped_count: int
    confirmed_ids: Tuple[str, ...] = ()
    skipped_ids: Tuple[str, ...] = ()

    @property
    def skip_message(self) -> str:
        if not self.skipped_count:
            return ""
        return (
            f"{self.skipped_count} record(s) skipped because they are not in "
            f"\"{Status.OPEN.value}\"."
        )


@dataclass(frozen=True)
class RequestedOrder:
    """Row of the requested-orders board."""

    order: data_manager.OrderRow
    amount_paid: Decimal
    total_cost: Decimal

    @property
    def needs_payment(self) -> bool:
        return self.order.status != Status.PAID.value and self.total_cost - self.amount_paid > 0


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _ensure_payment_methods_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the payment-method cache bucket on demand.

    Payment methods are read-only reference data, so unlike lines, orders and
    payments they are read once per context.
    """

    bucket = _get_cache_bucket(context, "payment_methods")
    if "all" not in bucket:
        methods = list(data_manager.iter_payment_methods(context.workbook))
        bucket["all"] = methods
        bucket["by_id"] = {method.method_id: method for method in methods}
        log.debug("Populated payment methods cache with %d entries", len(methods))
    return bucket


@contextmanager
def _exclusive(context: RuntimeContext, operation: str, target: str) -> Iterator[None]:
    """Hold the busy flag for ``(operation, target)`` while a workflow runs."""

    key = (operation, target)
    if key in context._in_flight:
        log.warning("Rejected re-entrant %s for '%s'", operation, target)
        raise TransactionInProgressError(f"{operation} already in progress for '{target}'")
    context._in_flight.add(key)
    try:
        yield
    finally:
        context._in_flight.discard(key)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, the live workbook and the status policy.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the workflows.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When a ``[BrandPolicy]`` entry names an unknown status.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    policy = StatusPolicy(load_brand_policies(settings.brand_policies))
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, policy=policy)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def require_write_permission(context: RuntimeContext, *targets: Tuple[WriteOperation, TableName]) -> None:
    """Fail fast when any of the ``(operation, table)`` writes is not allowed.

    Raises:
        WritePermissionError: For the first denied write.
    """
    for operation, table in targets:
        if not data_manager.can_write(context.settings, operation, table):
            log.error("Permission denied: %s on '%s'", operation.value, table.value)
            raise WritePermissionError(
                f"Not allowed to {operation.value} records in '{table.value}'")


def list_payment_methods(context: RuntimeContext) -> List[data_manager.PaymentMethodRow]:
    """Return the payment methods in sheet order."""

    return list(_ensure_payment_methods_cache(context)["all"])


def get_payment_method(context: RuntimeContext, method_id: str) -> data_manager.PaymentMethodRow:
    """Resolve a payment method by id.

    Raises:
        MissingReferenceError: If ``method_id`` is unknown.
    """
    cache = _ensure_payment_methods_cache(context)
    try:
        return cache["by_id"][method_id]
    except KeyError as exc:
        log.warning("Payment method lookup failed for id '%s'", method_id)
        raise MissingReferenceError(f"Unknown payment method id: {method_id}") from exc


def allowed_statuses(context: RuntimeContext, table: TableName) -> List[str]:
    """Read the allowed ``Estatus`` values of ``table`` from the store."""

    status_field = OrderField.STATUS if table == TableName.ORDERS else LineField.STATUS
    return data_manager.list_allowed_values(context.workbook, table, status_field)


def get_order_lines(context: RuntimeContext, line_ids: Sequence[str]) -> List[data_manager.OrderLineRow]:
    """Read the lines named by ``line_ids`` in the order they were given.

    Duplicate ids are collapsed to their first occurrence.

    Raises:
        MissingReferenceError: If any id is not in the lines table.
    """
    wanted = set(line_ids)
    by_id = {
        line.line_id: line
        for line in data_manager.iter_order_lines(context.workbook, lambda record: record.record_id in wanted)
    }
    missing = [line_id for line_id in line_ids if line_id not in by_id]
    if missing:
        log.warning("Order line lookup failed for ids %s", ", ".join(missing))
        raise MissingReferenceError(f"Unknown order line id(s): {', '.join(missing)}")
    return [by_id[line_id] for line_id in dict.fromkeys(line_ids)]


def list_lines_by_status(context: RuntimeContext, status: Status) -> List[data_manager.OrderLineRow]:
    """Read every line whose ``Estatus`` equals ``status``."""

    def _matches(record: data_manager.Record) -> bool:
        return record.get(LineField.STATUS) == status.value

    return list(data_manager.iter_order_lines(context.workbook, _matches))


def list_confirmation_groups(context: RuntimeContext) -> List[ledger.OrderLineGroup]:
    """Group the lines awaiting confirmation by order number and brand.

    The lines are re-read on every call, so the groups always reflect the
    current state of the store.
    """
    lines = list_lines_by_status(context, Status.AWAITING_CONFIRMATION)
    groups = ledger.group_lines(lines)
    log.debug("Found %d confirmation group(s) for %d line(s)", len(groups), len(lines))
    return groups


def find_confirmation_group(context: RuntimeContext, key: str) -> ledger.OrderLineGroup:
    """Return the confirmation group whose key is ``key``.

    Raises:
        MissingReferenceError: If no group currently has that key.
    """
    for group in list_confirmation_groups(context):
        if group.key == key:
            return group
    log.warning("Confirmation group lookup failed for key '%s'", key)
    raise MissingReferenceError(f"Unknown confirmation group: {key}")


def get_order(context: RuntimeContext, order_id: str) -> data_manager.OrderRow:
    """Read one order.

    Raises:
        MissingReferenceError: If ``order_id`` is not in the orders table.
    """
    orders = list(data_manager.iter_orders(context.workbook, lambda record: record.record_id == order_id))
    if not orders:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise MissingReferenceError(f"Unknown order id: {order_id}")
    return orders[0]


def list_order_payments(context: RuntimeContext, order_id: str) -> List[data_manager.PaymentRow]:
    """Read the payments linked to ``order_id``."""

    return [
        payment
        for payment in data_manager.iter_payments(context.workbook)
        if payment.order_id == order_id
    ]


def get_order_balance(context: RuntimeContext, order_id: str) -> ledger.LedgerSummary:
    """Compute the ledger of an existing order from its linked records.

    The base cost is the sum of the linked lines, the adjustments come from the
    order itself and the paid amount aggregates its linked payments, using the
    same :func:`ledger.compute_ledger` as the settlement workflow.
    """
    order = get_order(context, order_id)
    return _order_ledger(context, order)


def _order_ledger(context: RuntimeContext, order: data_manager.OrderRow) -> ledger.LedgerSummary:
    wanted = set(order.line_ids)
    lines = data_manager.iter_order_lines(context.workbook, lambda record: record.record_id in wanted)
    payments = list_order_payments(context, order.order_id)
    return ledger.compute_ledger(
        ledger.sum_line_costs(lines),
        order.extra_cost,
        order.extra_expenses,
        payments,
    )


def list_requested_orders(
    context: RuntimeContext,
    *,
    status: Optional[str] = None,
    month: Optional[str] = None,
    brand: Optional[str] = None,
) -> List[RequestedOrder]:
    """List orders on the requested board with their paid and total amounts.

    Only orders in one of :data:`REQUESTED_ORDER_STATUSES` are considered.
    Optional filters narrow the list by exact status, by month (``YYYY-MM``
    prefix of the order date) and by brand.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        status (str | None): Keep only orders in this status.
        month (str | None): Keep only orders dated in this ``YYYY-MM`` month.
        brand (str | None): Keep only orders of this brand.

    Returns:
        list[RequestedOrder]: Board entries in sheet order.
    """
    board_statuses = {member.value for member in REQUESTED_ORDER_STATUSES}
    entries: List[RequestedOrder] = []
    for order in data_manager.iter_orders(context.workbook):
        if order.status not in board_statuses:
            continue
        if status is not None and order.status != status:
            continue
        if month is not None and (order.order_date or "")[:7] != month:
            continue
        if brand is not None and order.brand != brand:
            continue
        balance = _order_ledger(context, order)
        entries.append(
            RequestedOrder(order=order, amount_paid=balance.total_paid, total_cost=balance.total_due)
        )
    return entries


def append_history(previous: Optional[str], timestamp: datetime, message: str) -> str:
    """Append a ``"{timestamp} - {message}"`` line to a status-history log."""

    entry = f"{timestamp.isoformat()} - {message}"
    return f"{previous}\n{entry}" if previous else entry


def generate_payment_id(*, when: Optional[datetime] = None) -> str:
    """Generate an external payment id such as ``PAY-1718000000000-42``."""

    when = _resolve_timestamp(when)
    return f"PAY-{int(when.timestamp() * 1000)}-{secrets.randbelow(10000)}"


def build_payment_fields(
    order_id: str,
    payment: ProposedPayment,
    method: data_manager.PaymentMethodRow,
) -> Dict[str, Any]:
    """Map a proposed payment onto ``Pagos`` columns.

    Optional metadata is omitted rather than written as blank, and the
    method-specific field is attached only when the method's type matches:
    payer for cash, reference number for vouchers, card for transfers.
    """
    fields: Dict[str, Any] = {
        PaymentField.ORDER.value: [order_id],
        PaymentField.METHOD.value: [method.method_id],
        PaymentField.AMOUNT.value: payment.amount,
    }
    optional = (
        (PaymentField.PAYMENT_ID, payment.payment_id),
        (PaymentField.PAYMENT_DATE, payment.payment_date),
        (PaymentField.DESCRIPTION, payment.description),
        (PaymentField.NOTES, payment.notes),
    )
    for column, value in optional:
        if value:
            fields[column.value] = value

    type_specific = {
        PaymentMethodType.CASH.value: (PaymentField.PAYER, payment.payer),
        PaymentMethodType.VOUCHER.value: (PaymentField.REFERENCE, payment.reference),
        PaymentMethodType.TRANSFER.value: (PaymentField.CARD, payment.card),
    }
    column, value = type_specific.get(method.type_tag or "", (None, None))
    if column is not None and value:
        fields[column.value] = value
    return fields


def prepare_payments(
    context: RuntimeContext,
    payments: Sequence[ProposedPayment],
    remaining: Decimal,
) -> List[ProposedPayment]:
    """Validate proposed payments and clamp each one to the running balance.

    Payments are processed in order; each one is capped to what is still
    outstanding after the previous ones, exactly as if they had been added one
    by one.

    Raises:
        ValidationError: If a method is unknown, an amount is not positive, or
            a payment arrives when nothing is left to pay.
    """
    accepted: List[ProposedPayment] = []
    outstanding = remaining
    for payment in payments:
        try:
            get_payment_method(context, payment.method_id)
            amount = ledger.clamp_payment(payment.amount, outstanding)
        except MissingReferenceError as exc:
            raise ValidationError(str(exc)) from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if amount <= 0:
            log.error("Rejected payment of %s: nothing outstanding", payment.amount)
            raise ValidationError("Nothing outstanding; the payment cannot be added")
        accepted.append(replace(payment, amount=amount))
        outstanding -= amount
    return accepted


def _chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _update_lines_in_batches(
    context: RuntimeContext,
    updates: Sequence[Tuple[str, Dict[str, Any]]],
    *,
    completed_steps: Sequence[str] = (),
    order_id: Optional[str] = None,
) -> int:
    """Write line updates in chunks no larger than the configured batch size.

    Raises:
        PartialFailure: If a chunk fails; ``succeeded`` counts the lines
            written by the earlier chunks.
    """
    batch_size = context.settings.max_batch_size
    written = 0
    for chunk in _chunked(updates, batch_size):
        try:
            written += data_manager.update_records(
                context.workbook,
                TableName.ORDER_LINES,
                chunk,
                max_batch_size=batch_size,
            )
        except Exception as exc:
            log.error("Line update failed after %d of %d line(s): %s", written, len(updates), exc)
            raise PartialFailure(
                f"{_describe_steps(completed_steps)}{written} of {len(updates)} line(s) updated",
                step="lines",
                succeeded=written,
                attempted=len(updates),
                completed_steps=completed_steps,
                order_id=order_id,
                error=exc,
            ) from exc
    return written


def _describe_steps(completed_steps: Sequence[str]) -> str:
    return "".join(f"{step}, " for step in completed_steps)


def settle_group(
    context: RuntimeContext,
    group: ledger.OrderLineGroup,
    command: SettlementCommand,
) -> SettlementResult:
    """Create an order from a line group, record its payments, update its lines.

    Validation happens before any write: the order number must be present,
    every payment must be positive and is capped to the running balance, and a
    balance left open requires a brand that allows pending payment. Statuses
    for the order and for the lines are then resolved and checked against the
    allowed values of their own tables.

    Writes run strictly in this order: create the order, create each payment,
    update the lines in capped batches. The history appended to each line
    starts from the value read when the group was built.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        group (ledger.OrderLineGroup): Lines to consolidate.
        command (SettlementCommand): Order number, date, adjustments and
            proposed payments.

    Returns:
        SettlementResult: Order id, line count and totals for display.

    Raises:
        ValidationError: If a precondition fails; nothing is written.
        WritePermissionError: If a required write is not permitted.
        TransactionInProgressError: If this group is already being settled.
        PartialFailure: If a write fails. With ``step="order"`` the order
            could not be created and nothing was written; any later step
            leaves the earlier writes in place.
    """
    with _exclusive(context, "settle", group.key):
        needed = [
            (WriteOperation.CREATE, TableName.ORDERS),
            (WriteOperation.UPDATE, TableName.ORDER_LINES),
        ]
        if command.payments:
            needed.append((WriteOperation.CREATE, TableName.PAYMENTS))
        require_write_permission(context, *needed)

        order_number = (command.order_number or "").strip()
        if not order_number:
            log.error("Settlement of group '%s' rejected: order number missing", group.key)
            raise ValidationError("order number required")
        if not group.lines:
            raise ValidationError("The group has no order lines")

        extra_cost = max(command.extra_cost or Decimal("0"), Decimal("0"))
        extra_expenses = max(command.extra_expenses or Decimal("0"), Decimal("0"))
        opening = ledger.compute_ledger(group.total_cost, extra_cost, extra_expenses, ())
        payments = prepare_payments(context, command.payments, opening.remaining)
        balance = ledger.compute_ledger(group.total_cost, extra_cost, extra_expenses, payments)
        try:
            context.policy.ensure_settlement_allowed(group.brand, balance.remaining)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        order_status = context.policy.resolve_status(
            group.brand,
            balance.remaining,
            balance.total_paid,
            allowed_statuses(context, TableName.ORDERS),
        ).status
        line_status = context.policy.resolve_line_status(
            group.brand,
            order_status,
            allowed_statuses(context, TableName.ORDER_LINES),
        ).status

        timestamp = _resolve_timestamp(command.timestamp)
        history_snapshot = {line.line_id: line.history for line in group.lines}

        order_fields = {
            OrderField.ORDER_NUMBER.value: order_number,
            OrderField.STATUS.value: order_status,
            OrderField.ORDER_DATE.value: command.order_date,
            OrderField.BRAND.value: group.brand,
            OrderField.EXTRA_COST.value: extra_cost,
            OrderField.EXTRA_EXPENSES.value: extra_expenses,
            OrderField.HISTORY.value: append_history(
                None, timestamp, f"Creado y establecido a {order_status}"),
            OrderField.LINES.value: group.line_ids,
        }
        try:
            order_id = data_manager.create_record(context.workbook, TableName.ORDERS, order_fields)
        except Exception as exc:
            log.error("Order creation failed for group '%s': %s", group.key, exc)
            raise PartialFailure(
                "order not created; payments not recorded; line statuses not updated",
                step="order",
                succeeded=0,
                attempted=1,
                error=exc,
            ) from exc
        log.info("Created order '%s' (%s) for group '%s'", order_id, order_number, group.key)

        payment_ids: List[str] = []
        for payment in payments:
            method = get_payment_method(context, payment.method_id)
            try:
                payment_ids.append(
                    data_manager.create_record(
                        context.workbook,
                        TableName.PAYMENTS,
                        build_payment_fields(order_id, payment, method),
                    )
                )
            except Exception as exc:
                log.error(
                    "Payment creation failed for order '%s' after %d of %d: %s",
                    order_id,
                    len(payment_ids),
                    len(payments),
                    exc,
                )
                raise PartialFailure(
                    f"order created, {len(payment_ids)} of {len(payments)} payments recorded, "
                    "line statuses not updated",
                    step="payments",
                    succeeded=len(payment_ids),
                    attempted=len(payments),
                    completed_steps=("order created",),
                    order_id=order_id,
                    error=exc,
                ) from exc

        updates = [
            (
                line.line_id,
                {
                    LineField.STATUS.value: line_status,
                    LineField.ORDER_NUMBER.value: order_number,
                    LineField.HISTORY.value: append_history(
                        history_snapshot[line.line_id],
                        timestamp,
                        f"Asignado No. de Pedido {order_number} y cambiado a {line_status}",
                    ),
                },
            )
            for line in group.lines
        ]
        _update_lines_in_batches(
            context,
            updates,
            completed_steps=("order created", f"{len(payment_ids)} of {len(payments)} payments recorded"),
            order_id=order_id,
        )

        log.info(
            "Settled order '%s': %d line(s), cost=%s, paid=%s, order status '%s', line status '%s'",
            order_number,
            len(group.lines),
            group.total_cost,
            balance.total_paid,
            order_status,
            line_status,
        )
        return SettlementResult(
            order_id=order_id,
            order_number=order_number,
            brand=group.brand,
            line_count=len(group.lines),
            total_cost=group.total_cost,
            order_status=order_status,
            line_status=line_status,
            ledger=balance,
            payment_ids=tuple(payment_ids),
        )


def register_payments(context: RuntimeContext, command: PaymentRegistrationCommand) -> PaymentRegistrationResult:
    """Record payments against an existing order and refresh its status.

    The outstanding balance starts from the order's total due minus what its
    linked payments already cover; each proposed payment is capped against
    that balance minus the payments accepted before it in the same batch.
    Payments are created one at a time and the first failure stops the batch.
    The order status is then recomputed from the new paid total and written in
    a single update together with a history entry.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (PaymentRegistrationCommand): Target order and payments.

    Returns:
        PaymentRegistrationResult: Created payment ids, paid total, remaining
            balance and the new order status.

    Raises:
        ValidationError: If no payment is given or one fails validation.
        MissingReferenceError: If the order does not exist.
        WritePermissionError: If a required write is not permitted.
        TransactionInProgressError: If payments for this order are already
            being registered.
        PartialFailure: If a payment or the status update fails.
    """
    if not command.payments:
        log.error("Payment registration for order '%s' rejected: no payments", command.order_id)
        raise ValidationError("Add at least one payment")

    with _exclusive(context, "pay", command.order_id):
        order = get_order(context, command.order_id)
        require_write_permission(
            context,
            (WriteOperation.CREATE, TableName.PAYMENTS),
            (WriteOperation.UPDATE, TableName.ORDERS),
        )
        balance = _order_ledger(context, order)
        payments = prepare_payments(context, command.payments, balance.remaining)
        timestamp = _resolve_timestamp(command.timestamp)

        payment_ids: List[str] = []
        for payment in payments:
            method = get_payment_method(context, payment.method_id)
            if not payment.payment_id:
                payment = replace(payment, payment_id=generate_payment_id(when=timestamp))
            try:
                payment_ids.append(
                    data_manager.create_record(
                        context.workbook,
                        TableName.PAYMENTS,
                        build_payment_fields(order.order_id, payment, method),
                    )
                )
            except Exception as exc:
                log.error(
                    "Payment creation failed for order '%s' after %d of %d: %s",
                    order.order_id,
                    len(payment_ids),
                    len(payments),
                    exc,
                )
                raise PartialFailure(
                    f"{len(payment_ids)} of {len(payments)} payments recorded, order status not updated",
                    step="payments",
                    succeeded=len(payment_ids),
                    attempted=len(payments),
                    order_id=order.order_id,
                    error=exc,
                ) from exc

        new_paid = balance.total_paid + sum((payment.amount for payment in payments), Decimal("0"))
        new_remaining = max(balance.total_due - new_paid, Decimal("0"))
        status = context.policy.resolve_order_status(
            new_remaining,
            new_paid,
            allowed_statuses(context, TableName.ORDERS),
        ).status
        history = append_history(
            order.history,
            timestamp,
            f"Registrados {len(payment_ids)} pago(s) y cambiado a {status}",
        )
        try:
            data_manager.update_records(
                context.workbook,
                TableName.ORDERS,
                [(order.order_id, {OrderField.STATUS.value: status, OrderField.HISTORY.value: history})],
                max_batch_size=context.settings.max_batch_size,
            )
        except Exception as exc:
            log.error("Status update failed for order '%s': %s", order.order_id, exc)
            raise PartialFailure(
                f"{len(payment_ids)} of {len(payments)} payments recorded, order status not updated",
                step="order_status",
                succeeded=0,
                attempted=1,
                completed_steps=(f"{len(payment_ids)} payments recorded",),
                order_id=order.order_id,
                error=exc,
            ) from exc

        log.info(
            "Registered %d payment(s) for order '%s': paid=%s remaining=%s status '%s'",
            len(payment_ids),
            order.order_id,
            new_paid,
            new_remaining,
            status,
        )
        return PaymentRegistrationResult(
            order_id=order.order_id,
            payment_ids=tuple(payment_ids),
            amount_paid=new_paid,
            remaining=new_remaining,
            status=status,
        )


def summarize_selection(context: RuntimeContext, line_ids: Sequence[str]) -> SelectionSummary:
    """Preview a selection: which lines would be confirmed and at what cost.

    Nothing is written. Lines outside ``Abierto`` are reported as skipped and
    their cost is excluded from the total.
    """
    lines = get_order_lines(context, line_ids)
    eligible = [line for line in lines if line.status == Status.OPEN.value]
    skipped = [line for line in lines if line.status != Status.OPEN.value]
    return SelectionSummary(
        confirmed_count=len(eligible),
        total_cost=ledger.sum_line_costs(eligible),
        skipped_count=len(skipped),
        confirmed_ids=tuple(line.line_id for line in eligible),
        skipped_ids=tuple(line.line_id for line in skipped),
    )


def confirm_selection(
    context: RuntimeContext,
    line_ids: Sequence[str],
    *,
    timestamp: Optional[datetime] = None,
) -> SelectionSummary:
    """Move the selected ``Abierto`` lines to ``Confirmar y Monitorear``.

    Lines in any other status are skipped and never written. Each confirmed
    line gets a timestamped history entry; updates go out in batches no
    larger than the configured batch size.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        line_ids (Sequence[str]): Selected line ids.
        timestamp (datetime | None): Moment recorded in the history entries.

    Returns:
        SelectionSummary: Confirmed count, cost of the confirmed lines and the
            skipped count.

    Raises:
        ValidationError: If no selected line is in ``Abierto``.
        MissingReferenceError: If a selected id does not exist.
        WritePermissionError: If line updates are not permitted.
        PartialFailure: If a later batch fails after earlier ones were written.
    """
    with _exclusive(context, "confirm", "selection"):
        summary = summarize_selection(context, line_ids)
        if summary.skipped_count:
            log.warning(summary.skip_message)
        if not summary.confirmed_count:
            raise ValidationError(
                f"nothing eligible: no selected line is in \"{Status.OPEN.value}\". "
                f"{summary.skip_message}".strip()
            )
        require_write_permission(context, (WriteOperation.UPDATE, TableName.ORDER_LINES))

        when = _resolve_timestamp(timestamp)
        lines = get_order_lines(context, summary.confirmed_ids)
        updates = [
            (
                line.line_id,
                {
                    LineField.STATUS.value: Status.AWAITING_CONFIRMATION.value,
                    LineField.HISTORY.value: append_history(
                        line.history, when, Status.AWAITING_CONFIRMATION.value),
                },
            )
            for line in lines
        ]
        _update_lines_in_batches(context, updates)
        log.info(
            "Confirmed %d line(s) totalling %s; %d skipped",
            summary.confirmed_count,
            summary.total_cost,
            summary.skipped_count,
        )
        return summary


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, the same
            policy and an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, policy=context.policy)
