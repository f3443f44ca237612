from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from app.core.errors import ValidationError


PENDING = "pending"
RECEIVED = "received"
PARTIALLY_RECEIVED = "partially_received"
CANCELLED = "cancelled"
APPLIED = "applied"

# Only these moves are available through a direct status update. received and
# partially_received are also reached by receiving items.
ALLOWED_STATUS_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {RECEIVED, CANCELLED, APPLIED},
    RECEIVED: set(),
    PARTIALLY_RECEIVED: set(),
    CANCELLED: set(),
    APPLIED: set(),
}

RECEIVABLE_STATUSES = {PENDING, PARTIALLY_RECEIVED}

PURCHASE_RECEIVE = "purchase_receive"
PURCHASE_ORDER_REFERENCE = "purchase_order"

PO_NUMBER_PREFIX = "PO"
PO_SEQUENCE_WIDTH = 5

_CENT = Decimal("0.01")


def allowed_transitions(status: str) -> set[str]:
    return ALLOWED_STATUS_TRANSITIONS.get(status, set())


def is_allowed_transition(old_status: str, new_status: str) -> bool:
    return new_status in allowed_transitions(old_status)


def can_edit(status: str) -> bool:
    return status == PENDING


def can_cancel(status: str) -> bool:
    return status == PENDING


def can_apply(status: str) -> bool:
    return status == PENDING


def can_receive(status: str) -> bool:
    return status in RECEIVABLE_STATUSES


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_order(po, previous_status: str | None = None) -> None:
    """Check header fields of a purchase order.

    ``previous_status`` is the status the order had when it was loaded; when
    given and different from ``po.status`` the change must be an allowed
    transition. All problems are collected into a single ValidationError.
    """
    errors: list[str] = []

    if not po.organization_id:
        errors.append("Organization ID is required")
    if not po.supplier_id:
        errors.append("Supplier ID is required")
    if not po.created_by:
        errors.append("Created by user ID is required")
    if not po.order_date:
        errors.append("Order date is required")

    if _as_decimal(po.tax_amount) < 0:
        errors.append("Tax amount cannot be negative")
    if _as_decimal(po.discount_amount) < 0:
        errors.append("Discount amount cannot be negative")
    if _as_decimal(po.total_amount) < 0:
        errors.append("Total amount cannot be negative")

    if (
        previous_status is not None
        and previous_status != po.status
        and not is_allowed_transition(previous_status, po.status)
    ):
        errors.append(f"Invalid status transition from {previous_status} to {po.status}")

    if errors:
        raise ValidationError(errors)


def validate_items(items: Sequence) -> None:
    if not items:
        raise ValidationError("Purchase order must have at least one item")

    for index, item in enumerate(items, start=1):
        if not item.medicine_id:
            raise ValidationError(f"Item {index}: Medicine ID is required")
        if item.quantity is None or item.quantity <= 0:
            raise ValidationError(f"Item {index}: Quantity must be greater than 0")
        if item.unit_cost is None or _as_decimal(item.unit_cost) < 0:
            raise ValidationError(f"Item {index}: Unit cost must be 0 or greater")


def line_total(unit_cost, quantity: int) -> Decimal:
    return _as_decimal(unit_cost) * int(quantity)


def calculate_totals(po) -> Decimal:
    """Recompute every item's total_cost and the order's total_amount.

    Values are kept exact; rounding happens only when presenting them.
    """
    subtotal = Decimal("0")
    for item in po.items:
        item.total_cost = line_total(item.unit_cost, item.quantity)
        subtotal += item.total_cost

    po.total_amount = subtotal + _as_decimal(po.tax_amount) - _as_decimal(po.discount_amount)
    return po.total_amount


def completion_status(total_ordered: int, total_received: int) -> str:
    if total_received >= total_ordered:
        return RECEIVED
    return PARTIALLY_RECEIVED


def format_po_number(day: date, sequence: int) -> str:
    return f"{PO_NUMBER_PREFIX}-{day.strftime('%Y%m%d')}-{sequence:0{PO_SEQUENCE_WIDTH}d}"


def _po_sequence(po_number: str | None) -> int | None:
    if not po_number or not po_number.startswith(f"{PO_NUMBER_PREFIX}-"):
        return None

    parts = po_number.split("-")
    try:
        if len(parts) >= 3:
            return int(parts[2])
        if len(parts) == 2:
            # Legacy PO-<timestamp> numbers: keep the low digits as the sequence.
            return int(parts[1]) % 10**PO_SEQUENCE_WIDTH
    except ValueError:
        return None
    return None


def next_po_sequence(existing_numbers: Iterable[str | None]) -> int:
    """Return one more than the highest sequence found in existing PO numbers."""
    highest = 0
    for po_number in existing_numbers:
        sequence = _po_sequence(po_number)
        if sequence is not None:
            highest = max(highest, sequence)
    return highest + 1


def to_money(value) -> float:
    return float(_as_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP))
