from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, inspect, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.errors import (
    InvalidStateError,
    InvalidStateTransitionError,
    NotFoundError,
    PurchasingError,
    StoreError,
    ValidationError,
)
from app.core.purchasing import domain
from app.models.models import (
    InventoryTransaction,
    Medicine,
    PurchaseOrder,
    PurchaseOrderItem,
    PurchaseOrderStatusHistory,
    Supplier,
)
from app.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
    ReceivedItem,
    ReceiveResult,
)


logger = logging.getLogger(__name__)


_SORTABLE_COLUMNS = {
    "order_date": PurchaseOrder.order_date,
    "po_number": PurchaseOrder.po_number,
    "status": PurchaseOrder.status,
    "total_amount": PurchaseOrder.total_amount,
    "expected_delivery_date": PurchaseOrder.expected_delivery_date,
}

_NULLABLE_FIELDS = {"notes", "expected_delivery_date"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _paginate(query, page: int, limit: int) -> tuple[list[PurchaseOrder], dict]:
    page = max(page, 1)
    limit = max(limit, 1)
    total = query.count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit),
    }
    return rows, pagination


# --- lookups -----------------------------------------------------------------


def get_purchase_order(
    db: Session,
    order_id: int,
    organization_id: int,
    include_items: bool = True,
) -> PurchaseOrder:
    query = db.query(PurchaseOrder).filter(
        PurchaseOrder.id == order_id,
        PurchaseOrder.organization_id == organization_id,
    )
    if include_items:
        query = query.options(
            selectinload(PurchaseOrder.items).selectinload(PurchaseOrderItem.medicine),
            selectinload(PurchaseOrder.supplier),
        )
    po = query.first()
    if po is None:
        raise NotFoundError("Purchase order", order_id)
    return po


def _filtered_orders(
    db: Session,
    organization_id: int,
    status: str | None = None,
    supplier_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
):
    query = db.query(PurchaseOrder).filter(PurchaseOrder.organization_id == organization_id)
    if status:
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    if start_date:
        query = query.filter(PurchaseOrder.order_date >= start_date)
    if end_date:
        query = query.filter(PurchaseOrder.order_date <= end_date)
    return query


def list_purchase_orders(
    db: Session,
    organization_id: int,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    supplier_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    sort_by: str = "order_date",
    sort_order: str = "desc",
) -> dict:
    """Return one page of an organization's purchase orders.

    Unknown sort columns fall back to order_date; any sort_order other than
    "asc" sorts descending.
    """
    query = _filtered_orders(db, organization_id, status, supplier_id, start_date, end_date)

    sort_column = _SORTABLE_COLUMNS.get(sort_by, PurchaseOrder.order_date)
    if sort_order == "asc":
        query = query.order_by(sort_column.asc(), PurchaseOrder.id.asc())
    else:
        query = query.order_by(sort_column.desc(), PurchaseOrder.id.desc())

    orders, pagination = _paginate(query, page, limit)
    return {"purchase_orders": orders, "pagination": pagination}


def list_overdue_purchase_orders(
    db: Session,
    organization_id: int,
    today: date | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """Pending orders whose expected delivery date has already passed, earliest first."""
    today = today or date.today()
    query = (
        db.query(PurchaseOrder)
        .filter(
            PurchaseOrder.organization_id == organization_id,
            PurchaseOrder.status == domain.PENDING,
            PurchaseOrder.expected_delivery_date.is_not(None),
            PurchaseOrder.expected_delivery_date < today,
        )
        .order_by(PurchaseOrder.expected_delivery_date.asc(), PurchaseOrder.id.asc())
    )
    orders, pagination = _paginate(query, page, limit)
    return {"purchase_orders": orders, "pagination": pagination}


def get_purchase_order_stats(db: Session, organization_id: int) -> dict:
    rows = (
        db.query(
            PurchaseOrder.status,
            func.count(PurchaseOrder.id),
            func.coalesce(func.sum(PurchaseOrder.total_amount), 0),
        )
        .filter(PurchaseOrder.organization_id == organization_id)
        .group_by(PurchaseOrder.status)
        .all()
    )

    stats = {"total": 0, "total_value": Decimal("0"), "status_breakdown": {}}
    for status, count, value in rows:
        stats["total"] += int(count)
        stats["total_value"] += Decimal(str(value))
        stats["status_breakdown"][status] = int(count)
    return stats


def get_purchase_order_report(
    db: Session,
    organization_id: int,
    start_date: date | None,
    end_date: date | None,
    supplier_id: int | None = None,
    status: str | None = None,
) -> dict:
    """All orders placed in [start_date, end_date] plus value breakdowns.

    Suppliers are grouped by name; orders whose supplier row is missing are
    counted under "Unknown".
    """
    if start_date is None or end_date is None:
        raise ValidationError("Start date and end date are required")
    if start_date > end_date:
        raise ValidationError("Start date cannot be after end date")

    orders = (
        _filtered_orders(db, organization_id, status, supplier_id, start_date, end_date)
        .options(selectinload(PurchaseOrder.supplier))
        .order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())
        .all()
    )

    summary = {
        "total_orders": len(orders),
        "total_value": Decimal("0"),
        "status_breakdown": {},
        "supplier_breakdown": {},
    }
    for po in orders:
        summary["total_value"] += po.total_amount
        summary["status_breakdown"][po.status] = summary["status_breakdown"].get(po.status, 0) + 1

        supplier_name = po.supplier.name if po.supplier is not None else "Unknown"
        entry = summary["supplier_breakdown"].setdefault(
            supplier_name, {"count": 0, "total_value": Decimal("0")}
        )
        entry["count"] += 1
        entry["total_value"] += po.total_amount

    logger.info(
        "Purchase order report for organization %s (%s to %s): %s orders",
        organization_id,
        start_date,
        end_date,
        len(orders),
    )
    return {"purchase_orders": orders, "summary": summary}


def get_status_history(db: Session, po: PurchaseOrder) -> list[PurchaseOrderStatusHistory]:
    return (
        db.query(PurchaseOrderStatusHistory)
        .filter(PurchaseOrderStatusHistory.purchase_order_id == po.id)
        .order_by(PurchaseOrderStatusHistory.changed_at.desc(), PurchaseOrderStatusHistory.id.desc())
        .all()
    )


def get_supplier(db: Session, organization_id: int, supplier_id: int) -> Supplier:
    supplier = (
        db.query(Supplier)
        .filter(Supplier.id == supplier_id, Supplier.organization_id == organization_id)
        .first()
    )
    if supplier is None:
        raise NotFoundError("Supplier", supplier_id)
    return supplier


def ensure_active_supplier(db: Session, organization_id: int, supplier_id: int) -> Supplier:
    supplier = get_supplier(db, organization_id, supplier_id)
    if not supplier.is_active:
        raise ValidationError("Cannot use an inactive supplier for a purchase order")
    return supplier


def ensure_medicines_exist(db: Session, organization_id: int, medicine_ids: Sequence[int]) -> None:
    wanted = set(medicine_ids)
    if not wanted:
        return
    found = {
        row.id
        for row in db.query(Medicine.id)
        .filter(Medicine.organization_id == organization_id, Medicine.id.in_(wanted))
        .all()
    }
    missing = sorted(wanted - found)
    if missing:
        raise ValidationError(f"Medicines not found: {', '.join(str(m) for m in missing)}")


# --- PO numbers --------------------------------------------------------------


def generate_po_number(db: Session, organization_id: int, today: date | None = None) -> str:
    """Ask the database for the next PO number, falling back to a local scan.

    The store function runs inside a savepoint so a missing function does not
    poison the surrounding transaction.
    """
    try:
        with db.begin_nested():
            po_number = db.execute(
                text("SELECT generate_po_number(:organization_id)"),
                {"organization_id": organization_id},
            ).scalar()
        if po_number:
            return po_number
    except SQLAlchemyError as exc:
        logger.warning(
            "Store PO number generator unavailable for organization %s, using fallback: %s",
            organization_id,
            exc.__class__.__name__,
        )

    return _generate_po_number_fallback(db, organization_id, today=today)


def _generate_po_number_fallback(db: Session, organization_id: int, today: date | None = None) -> str:
    rows = (
        db.query(PurchaseOrder.po_number)
        .filter(PurchaseOrder.organization_id == organization_id)
        .order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        .limit(settings.PO_NUMBER_SCAN_LIMIT)
        .all()
    )
    sequence = domain.next_po_sequence(row.po_number for row in rows)
    return domain.format_po_number(today or date.today(), sequence)


# --- save --------------------------------------------------------------------


def _persisted_status(po: PurchaseOrder) -> str | None:
    """Status the order had when it was loaded, before any in-memory change."""
    if po.id is None:
        return None
    history = inspect(po).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return po.status


def _replace_items(po: PurchaseOrder) -> None:
    # Rows already in the store are swapped for fresh copies so the whole list
    # is deleted and inserted again.
    fresh: list[PurchaseOrderItem] = []
    for item in po.items:
        if item.id is None:
            fresh.append(item)
            continue
        fresh.append(
            PurchaseOrderItem(
                medicine_id=item.medicine_id,
                quantity=int(item.quantity),
                unit_cost=item.unit_cost,
                total_cost=item.total_cost,
                received_quantity=item.received_quantity or 0,
            )
        )
    for item in fresh:
        if item.received_quantity is None:
            item.received_quantity = 0
    po.items = fresh


def _offset_item_insert_trigger(db: Session, items: Sequence[PurchaseOrderItem]) -> None:
    for item in items:
        db.execute(
            update(Medicine)
            .where(Medicine.id == item.medicine_id)
            .values(quantity=Medicine.quantity - int(item.quantity), updated_at=_now())
            .execution_options(synchronize_session=False)
        )


def save_purchase_order(db: Session, po: PurchaseOrder, user_id: int) -> PurchaseOrder:
    """Validate, total and persist a purchase order together with its items.

    New orders get a PO number (when absent) and start as pending. Existing
    orders may only be saved while their stored status allows editing. Items
    are always replaced as a whole. Ordering never changes medicine stock:
    when the database still runs the legacy insert trigger, the quantity it
    adds is subtracted again in the same transaction.
    """
    previous_status = _persisted_status(po)
    try:
        if po.id is not None and not domain.can_edit(previous_status):
            raise InvalidStateError("Cannot edit purchase order in current status")
        domain.validate_items(po.items)
        # Header checks run on the recomputed total, not the stored one.
        domain.calculate_totals(po)
        domain.validate_order(po, previous_status=previous_status)
    except PurchasingError:
        db.rollback()
        raise

    if po.notes:
        po.notes = po.notes.strip()

    is_new = po.id is None
    now = _now()
    try:
        with db.no_autoflush:
            if is_new:
                if not po.po_number:
                    po.po_number = generate_po_number(db, po.organization_id)
                po.status = domain.PENDING
                po.created_by = user_id
                po.created_at = now
                po.updated_at = now
                _replace_items(po)
                db.add(po)
            else:
                po.updated_at = now
                _replace_items(po)

        db.flush()
        if settings.PO_ITEM_INSERT_TRIGGER:
            _offset_item_insert_trigger(db, po.items)
        db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to save purchase order %s", po.po_number)
        db.rollback()
        raise StoreError(f"Failed to save purchase order: {exc}", operation="save") from exc

    db.refresh(po)
    logger.info(
        "Purchase order %s %s by user %s (id=%s, total=%s)",
        po.po_number,
        "created" if is_new else "updated",
        user_id,
        po.id,
        po.total_amount,
    )
    return po


def create_purchase_order(
    db: Session,
    organization_id: int,
    payload: PurchaseOrderCreate,
    user_id: int,
) -> PurchaseOrder:
    ensure_active_supplier(db, organization_id, payload.supplier_id)
    ensure_medicines_exist(db, organization_id, [item.medicine_id for item in payload.items])

    po = PurchaseOrder(
        organization_id=organization_id,
        po_number=payload.po_number,
        supplier_id=payload.supplier_id,
        status=domain.PENDING,
        order_date=payload.order_date or date.today(),
        expected_delivery_date=payload.expected_delivery_date,
        tax_amount=payload.tax_amount,
        discount_amount=payload.discount_amount,
        notes=payload.notes,
        created_by=user_id,
        items=[
            PurchaseOrderItem(
                medicine_id=item.medicine_id,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
                received_quantity=0,
            )
            for item in payload.items
        ],
    )
    return save_purchase_order(db, po, user_id)


def update_purchase_order(
    db: Session,
    po: PurchaseOrder,
    payload: PurchaseOrderUpdate,
    user_id: int,
) -> PurchaseOrder:
    if not po.can_edit():
        raise InvalidStateError("Cannot edit purchase order in current status")

    data = payload.model_dump(exclude_unset=True)
    items = data.pop("items", None)

    if data.get("supplier_id") and data["supplier_id"] != po.supplier_id:
        ensure_active_supplier(db, po.organization_id, data["supplier_id"])
    if items is not None:
        ensure_medicines_exist(db, po.organization_id, [item["medicine_id"] for item in items])

    with db.no_autoflush:
        for field, value in data.items():
            if value is None and field not in _NULLABLE_FIELDS:
                continue
            setattr(po, field, value)
        if items is not None:
            po.items = [
                PurchaseOrderItem(
                    medicine_id=item["medicine_id"],
                    quantity=item["quantity"],
                    unit_cost=item["unit_cost"],
                    received_quantity=0,
                )
                for item in items
            ]

    return save_purchase_order(db, po, user_id)


# --- status ------------------------------------------------------------------


def _log_status_change(
    db: Session,
    po: PurchaseOrder,
    old_status: str | None,
    new_status: str,
    user_id: int | None,
    notes: str | None = None,
) -> None:
    # Audit trail only: a failed append must not undo the status change.
    try:
        with db.begin_nested():
            db.add(
                PurchaseOrderStatusHistory(
                    purchase_order_id=po.id,
                    old_status=old_status,
                    new_status=new_status,
                    changed_by=user_id,
                    notes=notes,
                    changed_at=_now(),
                )
            )
    except SQLAlchemyError:
        logger.exception(
            "Failed to log status change %s -> %s for purchase order %s",
            old_status,
            new_status,
            po.id,
        )


def update_status(
    db: Session,
    po: PurchaseOrder,
    new_status: str,
    user_id: int,
    notes: str | None = None,
) -> PurchaseOrder:
    old_status = po.status
    if not domain.is_allowed_transition(old_status, new_status):
        raise InvalidStateTransitionError(old_status, new_status)

    now = _now()
    po.status = new_status
    if new_status == domain.RECEIVED:
        po.actual_delivery_date = date.today()
    elif new_status == domain.APPLIED:
        po.applied_at = now
    po.updated_at = now

    try:
        db.flush()
        _log_status_change(db, po, old_status, new_status, user_id, notes)
        db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to update status of purchase order %s", po.id)
        db.rollback()
        raise StoreError(
            f"Failed to update purchase order status: {exc}", operation="update_status"
        ) from exc

    db.refresh(po)
    logger.info(
        "Purchase order %s moved from %s to %s by user %s",
        po.po_number,
        old_status,
        new_status,
        user_id,
    )
    return po


def cancel_purchase_order(
    db: Session,
    po: PurchaseOrder,
    user_id: int,
    reason: str | None = None,
) -> PurchaseOrder:
    if not po.can_cancel():
        raise InvalidStateError("Cannot cancel purchase order in current status")
    return update_status(db, po, domain.CANCELLED, user_id, reason)


def apply_purchase_order(
    db: Session,
    po: PurchaseOrder,
    user_id: int,
    notes: str | None = None,
) -> PurchaseOrder:
    if not po.can_apply():
        raise InvalidStateError("Purchase order cannot be applied in current status")
    return update_status(db, po, domain.APPLIED, user_id, notes)


# --- receiving ---------------------------------------------------------------


def remaining_receipts(po: PurchaseOrder) -> list[ReceivedItem]:
    """Deltas that would bring every item up to its ordered quantity."""
    remaining = []
    for item in po.items:
        outstanding = item.quantity - (item.received_quantity or 0)
        if outstanding > 0:
            remaining.append(ReceivedItem(id=item.id, received_quantity=outstanding))
    return remaining


def _receive_item(
    db: Session,
    po: PurchaseOrder,
    item_id: int,
    quantity: int,
    user_id: int,
    now: datetime,
) -> None:
    item = (
        db.query(PurchaseOrderItem)
        .filter(
            PurchaseOrderItem.id == item_id,
            PurchaseOrderItem.purchase_order_id == po.id,
        )
        .first()
    )
    if item is None:
        raise NotFoundError("Purchase order item", item_id)

    db.execute(
        update(PurchaseOrderItem)
        .where(PurchaseOrderItem.id == item.id)
        .values(received_quantity=PurchaseOrderItem.received_quantity + quantity)
        .execution_options(synchronize_session=False)
    )

    result = db.execute(
        update(Medicine)
        .where(Medicine.id == item.medicine_id)
        .values(quantity=Medicine.quantity + quantity, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Medicine", item.medicine_id)

    db.add(
        InventoryTransaction(
            medicine_id=item.medicine_id,
            organization_id=po.organization_id,
            transaction_type=domain.PURCHASE_RECEIVE,
            quantity=quantity,
            unit_price=item.unit_cost,
            total_amount=domain.line_total(item.unit_cost, quantity),
            reference_id=po.id,
            reference_type=domain.PURCHASE_ORDER_REFERENCE,
            created_by=user_id,
            created_at=now,
        )
    )


def receive_items(
    db: Session,
    po: PurchaseOrder,
    received_items: Sequence[ReceivedItem],
    user_id: int,
    notes: str | None = None,
) -> ReceiveResult:
    """Record delivered quantities and move them into medicine stock.

    Each entry is the amount arriving in this call, not a running total.
    Quantities above the ordered amount are accepted. Stock and received
    counters are incremented in SQL, and the whole call commits or rolls
    back as one transaction.
    """
    if not po.can_receive():
        raise InvalidStateError("Purchase order cannot be received in current status")

    now = _now()
    current_item_id: int | None = None
    try:
        for entry in received_items:
            quantity = int(entry.received_quantity)
            if quantity <= 0:
                continue
            current_item_id = entry.id
            _receive_item(db, po, entry.id, quantity, user_id, now)
        current_item_id = None

        db.flush()
        total_ordered, total_received = (
            db.query(
                func.coalesce(func.sum(PurchaseOrderItem.quantity), 0),
                func.coalesce(func.sum(PurchaseOrderItem.received_quantity), 0),
            )
            .filter(PurchaseOrderItem.purchase_order_id == po.id)
            .one()
        )

        old_status = po.status
        new_status = domain.completion_status(int(total_ordered), int(total_received))
        po.status = new_status
        if new_status == domain.RECEIVED and old_status != domain.RECEIVED:
            po.actual_delivery_date = date.today()
        po.updated_at = now
        db.flush()

        if new_status != old_status or notes:
            _log_status_change(db, po, old_status, new_status, user_id, notes)
        db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Receiving purchase order %s failed", po.id)
        db.rollback()
        if current_item_id is not None:
            message = f"Failed to receive purchase order item {current_item_id}: {exc}"
        else:
            message = f"Failed to receive purchase order items: {exc}"
        raise StoreError(message, operation="receive_items", item_id=current_item_id) from exc
    except PurchasingError:
        db.rollback()
        raise

    db.refresh(po)
    logger.info(
        "Purchase order %s received by user %s: %s of %s units, status %s",
        po.po_number,
        user_id,
        total_received,
        total_ordered,
        po.status,
    )
    return ReceiveResult(success=True, message="Items received successfully")
