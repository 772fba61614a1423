"""Brand-aware status resolution for orders and order lines.

The brand table is injected into :class:`StatusPolicy` instead of living in
module state, so each deployment (and each test) can carry its own policies.
:data:`DEFAULT_BRAND_POLICIES` holds the table shipped with the application.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Sequence

from . import log
from .constants import PAYMENT_STATUSES, Status


@dataclass(frozen=True)
class BrandPolicy:
    """Terminal line status for a brand and whether its orders may stay unpaid."""

    terminal_status: Status
    allows_pending: bool


@dataclass(frozen=True)
class StatusResolution:
    """Outcome of resolving an order status."""

    status: str
    allows_pending: bool
    drifted: bool = False


def policy_from_status(status: Status) -> BrandPolicy:
    """Build a :class:`BrandPolicy` whose pending flag follows the status."""

    return BrandPolicy(terminal_status=status, allows_pending=status != Status.PAID)


_PENDING = policy_from_status(Status.PENDING_PAYMENT)
_PAY_IN_FULL = policy_from_status(Status.PAID)

DEFAULT_BRAND_POLICIES: Mapping[str, BrandPolicy] = {
    "Belcorp": _PENDING,
    "Betterware": _PENDING,
    "Cklass": _PENDING,
    "Andrea": _PAY_IN_FULL,
    "Price Shoes": _PAY_IN_FULL,
    "Bibiana": _PENDING,
    "Andre Badi": _PAY_IN_FULL,
    "Nice": _PENDING,
    "Joyeria": _PENDING,
    "Vianney": _PAY_IN_FULL,
    "Intima": _PAY_IN_FULL,
    "Elefantito": _PAY_IN_FULL,
    "Esquimal": _PAY_IN_FULL,
    "Concord": _PAY_IN_FULL,
    "Avon": _PENDING,
    "Otros": _PENDING,
}


def load_brand_policies(
    overrides: Optional[Mapping[str, str]] = None,
    *,
    base: Mapping[str, BrandPolicy] = DEFAULT_BRAND_POLICIES,
) -> Dict[str, BrandPolicy]:
    """Merge ``Brand = status`` overrides (from ``[BrandPolicy]``) onto ``base``.

    Raises:
        ValueError: If an override names a status outside the payment statuses.
    """
    policies = dict(base)
    for brand, raw_status in (overrides or {}).items():
        try:
            status = Status(raw_status)
        except ValueError as exc:
            raise ValueError(f"Unknown status '{raw_status}' for brand '{brand}'") from exc
        if status not in PAYMENT_STATUSES:
            raise ValueError(f"Status '{raw_status}' cannot be a terminal status for brand '{brand}'")
        policies[brand] = policy_from_status(status)
    return policies


class StatusPolicy:
    """Resolve order and line statuses from the ledger and the brand table."""

    def __init__(self, brand_policies: Optional[Mapping[str, BrandPolicy]] = None) -> None:
        self._policies: Dict[str, BrandPolicy] = dict(
            DEFAULT_BRAND_POLICIES if brand_policies is None else brand_policies
        )

    def policy_for(self, brand: Optional[str]) -> Optional[BrandPolicy]:
        """Return the explicit policy for ``brand`` or ``None`` when unknown."""
        if brand is None:
            return None
        return self._policies.get(brand)

    def allows_pending(self, brand: Optional[str]) -> bool:
        policy = self.policy_for(brand)
        return True if policy is None else policy.allows_pending

    def resolve_order_status(
        self,
        remaining: Decimal,
        total_paid: Decimal,
        allowed: Optional[Sequence[str]] = None,
    ) -> StatusResolution:
        """Map the ledger balance onto Pagado / Pago Incompleto / Pendiente de Pago."""
        if remaining <= 0:
            status = Status.PAID
        elif total_paid > 0:
            status = Status.PARTIALLY_PAID
        else:
            status = Status.PENDING_PAYMENT
        validated, drifted = self.validate(status.value, allowed)
        return StatusResolution(status=validated, allows_pending=True, drifted=drifted)

    def resolve_status(
        self,
        brand: Optional[str],
        remaining: Decimal,
        total_paid: Decimal,
        allowed: Optional[Sequence[str]] = None,
    ) -> StatusResolution:
        """Resolve an order's status and report whether its brand allows pending."""
        resolution = self.resolve_order_status(remaining, total_paid, allowed)
        return StatusResolution(
            status=resolution.status,
            allows_pending=self.allows_pending(brand),
            drifted=resolution.drifted,
        )

    def resolve_line_status(
        self,
        brand: Optional[str],
        order_status: str,
        allowed: Optional[Sequence[str]] = None,
    ) -> StatusResolution:
        """Resolve the status applied to the lines of a settled order.

        The brand's terminal status wins; brands without an explicit entry
        follow the order's own status.
        """
        policy = self.policy_for(brand)
        raw = policy.terminal_status.value if policy is not None else order_status
        validated, drifted = self.validate(raw, allowed)
        return StatusResolution(
            status=validated,
            allows_pending=self.allows_pending(brand),
            drifted=drifted,
        )

    def ensure_settlement_allowed(self, brand: Optional[str], remaining: Decimal) -> None:
        """Reject leaving a balance on a brand that must be paid in full.

        Raises:
            ValueError: If ``remaining`` is positive and the brand's policy
                does not allow a pending balance.
        """
        if remaining > 0 and not self.allows_pending(brand):
            log.error("Brand '%s' requires full payment; %s still outstanding", brand, remaining)
            raise ValueError("full payment required")

    @staticmethod
    def validate(status: str, allowed: Optional[Sequence[str]]) -> tuple[str, bool]:
        """Check ``status`` against the field's allowed values.

        Returns the status to write and whether a fallback was needed. Without
        an allowed set the status is trusted as-is.
        """
        if allowed is None:
            return status, False
        known = {member.value for member in PAYMENT_STATUSES}
        if status in known and status in allowed:
            return status, False
        if Status.PENDING_PAYMENT.value in allowed:
            fallback = Status.PENDING_PAYMENT.value
        elif allowed:
            fallback = next((value for value in allowed if value in known), allowed[0])
        else:
            fallback = Status.PENDING_PAYMENT.value
        log.warning(
            "Status '%s' is not an allowed value (%s); falling back to '%s'",
            status,
            ", ".join(allowed) or "none configured",
            fallback,
        )
        return fallback, True
