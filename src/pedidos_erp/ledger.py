"""Pure monetary and grouping computations for the order workflows.

Nothing in this module touches the workbook. The business logic layer calls
these helpers again every time one of their inputs changes (a payment is
proposed or removed, an adjustment is edited), so they must stay free of
hidden state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from . import log
from .constants import NO_ORDER_NUMBER
from .data_manager import OrderLineRow


ZERO = Decimal("0")

PaymentLike = Union[Decimal, int, Any]


@dataclass(frozen=True)
class LedgerSummary:
    """Due, paid and outstanding amounts for one order."""

    total_due: Decimal
    total_paid: Decimal
    remaining: Decimal

    @property
    def is_settled(self) -> bool:
        return self.remaining <= ZERO


@dataclass
class OrderLineGroup:
    """Lines sharing an order number and brand, with their summed cost."""

    order_number: str
    brand: str
    lines: List[OrderLineRow] = field(default_factory=list)
    total_cost: Decimal = ZERO

    @property
    def key(self) -> str:
        return group_key(self.order_number, self.brand)

    @property
    def line_ids(self) -> List[str]:
        return [line.line_id for line in self.lines]

    @property
    def has_order_number(self) -> bool:
        return self.order_number != NO_ORDER_NUMBER


def compute_ledger(
    base_cost: Decimal,
    extra_cost: Optional[Decimal],
    extra_expenses: Optional[Decimal],
    proposed_payments: Iterable[PaymentLike],
) -> LedgerSummary:
    """Compute the ledger for a base amount, two adjustments and payments.

    Negative or missing adjustments count as zero. ``proposed_payments`` may
    hold plain amounts or any object exposing an ``amount`` attribute, which
    lets callers pass command objects or stored payment rows directly.

    Args:
        base_cost (Decimal): Sum of the order line costs.
        extra_cost (Decimal | None): Additional cost adjustment.
        extra_expenses (Decimal | None): Additional expenses adjustment.
        proposed_payments (Iterable): Payments counted as paid.

    Returns:
        LedgerSummary: ``total_due``, ``total_paid`` and ``remaining`` where
            ``remaining`` is floored at zero.
    """
    total_due = (
        _as_decimal(base_cost)
        + max(_as_decimal(extra_cost), ZERO)
        + max(_as_decimal(extra_expenses), ZERO)
    )
    total_paid = sum((_payment_amount(payment) for payment in proposed_payments), ZERO)
    remaining = max(total_due - total_paid, ZERO)
    return LedgerSummary(total_due=total_due, total_paid=total_paid, remaining=remaining)


def clamp_payment(requested_amount: Decimal, remaining: Decimal) -> Decimal:
    """Cap a proposed payment to the outstanding balance.

    Raises:
        ValueError: If ``requested_amount`` is zero or negative.
    """
    amount = _as_decimal(requested_amount)
    if amount <= ZERO:
        log.error("Payment amount validation failed: %s", requested_amount)
        raise ValueError("Payment amount must be greater than zero")
    outstanding = max(_as_decimal(remaining), ZERO)
    if amount > outstanding:
        log.info("Capping payment of %s to the outstanding %s", amount, outstanding)
        return outstanding
    return amount


def group_key(order_number: Optional[str], brand: Optional[str]) -> str:
    """Build the grouping key, e.g. ``"12345-Andrea"`` or ``"Sin No.-Avon"``."""

    return f"{order_number or NO_ORDER_NUMBER}-{brand or ''}"


def group_lines(lines: Sequence[OrderLineRow]) -> List[OrderLineGroup]:
    """Partition lines into groups keyed by (order number, brand).

    Groups come back in the order their key was first seen. Lines are shared,
    not copied; the input sequence and its rows are left untouched. A line
    without a cost contributes zero to its group total.
    """
    groups: Dict[str, OrderLineGroup] = {}
    for line in lines:
        order_number = line.order_number or NO_ORDER_NUMBER
        brand = line.brand or ""
        key = group_key(order_number, brand)
        group = groups.get(key)
        if group is None:
            group = OrderLineGroup(order_number=order_number, brand=brand)
            groups[key] = group
        group.lines.append(line)
        group.total_cost += line.cost if line.cost is not None else ZERO
    log.debug("Grouped %d line(s) into %d group(s)", len(lines), len(groups))
    return list(groups.values())


def sum_line_costs(lines: Iterable[OrderLineRow]) -> Decimal:
    """Total cost of ``lines`` with missing costs counted as zero."""

    return sum((line.cost for line in lines if line.cost is not None), ZERO)


def _payment_amount(payment: PaymentLike) -> Decimal:
    amount = getattr(payment, "amount", payment)
    return _as_decimal(amount)


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
