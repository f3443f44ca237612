from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, get_request_context
from app.core.config import settings
from app.core.db import get_db
from app.models.models import PurchaseOrder, PurchaseOrderStatusHistory
from app.schemas.purchase_order import (
    ApplyRequest,
    CancelRequest,
    PurchaseOrderCreate,
    PurchaseOrderListResponse,
    PurchaseOrderRead,
    PurchaseOrderReport,
    PurchaseOrderStats,
    PurchaseOrderUpdate,
    ReceiveItemsRequest,
    ReceiveItemsResponse,
    StatusHistoryRead,
    StatusUpdateRequest,
)
from app.services import purchase_order as po_service


router = APIRouter()


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, settings.PAGE_SIZE_MAX))


@router.get("/", response_model=PurchaseOrderListResponse)
def list_purchase_orders(
    page: int = 1,
    limit: int = 10,
    status_filter: str | None = Query(None, alias="status"),
    supplier_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    sort_by: str = "order_date",
    sort_order: str = "desc",
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    return po_service.list_purchase_orders(
        db,
        ctx.organization_id,
        page=page,
        limit=_clamp_limit(limit),
        status=status_filter,
        supplier_id=supplier_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/stats", response_model=PurchaseOrderStats)
def get_stats(
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    return po_service.get_purchase_order_stats(db, ctx.organization_id)


@router.get("/overdue", response_model=PurchaseOrderListResponse)
def list_overdue(
    page: int = 1,
    limit: int = 10,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    return po_service.list_overdue_purchase_orders(
        db, ctx.organization_id, page=page, limit=_clamp_limit(limit)
    )


@router.get("/report", response_model=PurchaseOrderReport)
def get_report(
    start_date: date | None = None,
    end_date: date | None = None,
    supplier_id: int | None = None,
    status_filter: str | None = Query(None, alias="status"),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    return po_service.get_purchase_order_report(
        db,
        ctx.organization_id,
        start_date,
        end_date,
        supplier_id=supplier_id,
        status=status_filter,
    )


@router.get("/supplier/{supplier_id}", response_model=PurchaseOrderListResponse)
def list_by_supplier(
    supplier_id: int,
    page: int = 1,
    limit: int = 10,
    status_filter: str | None = Query(None, alias="status"),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    po_service.get_supplier(db, ctx.organization_id, supplier_id)
    return po_service.list_purchase_orders(
        db,
        ctx.organization_id,
        page=page,
        limit=_clamp_limit(limit),
        status=status_filter,
        supplier_id=supplier_id,
    )


@router.get("/{order_id}", response_model=PurchaseOrderRead)
def get_purchase_order(
    order_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    return po_service.get_purchase_order(db, order_id, ctx.organization_id)


@router.post("/", response_model=PurchaseOrderRead, status_code=status.HTTP_201_CREATED)
def create_purchase_order(
    payload: PurchaseOrderCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    return po_service.create_purchase_order(db, ctx.organization_id, payload, ctx.user_id)


@router.put("/{order_id}", response_model=PurchaseOrderRead)
def update_purchase_order(
    order_id: int,
    payload: PurchaseOrderUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id)
    return po_service.update_purchase_order(db, po, payload, ctx.user_id)


@router.patch("/{order_id}/status", response_model=PurchaseOrderRead)
def update_status(
    order_id: int,
    payload: StatusUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id)
    return po_service.update_status(db, po, payload.status, ctx.user_id, payload.notes)


@router.patch("/{order_id}/receive", response_model=ReceiveItemsResponse)
def receive_items(
    order_id: int,
    payload: ReceiveItemsRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id)

    # An empty list means "everything that is still outstanding".
    items = payload.items or po_service.remaining_receipts(po)
    result = po_service.receive_items(db, po, items, ctx.user_id, notes=payload.notes)
    return {"purchase_order": po, "result": result}


@router.patch("/{order_id}/cancel", response_model=PurchaseOrderRead)
def cancel_purchase_order(
    order_id: int,
    payload: CancelRequest | None = None,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id)
    reason = payload.reason if payload is not None else None
    return po_service.cancel_purchase_order(db, po, ctx.user_id, reason)


@router.patch("/{order_id}/apply", response_model=PurchaseOrderRead)
def apply_purchase_order(
    order_id: int,
    payload: ApplyRequest | None = None,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> PurchaseOrder:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id)
    notes = payload.notes if payload is not None else None
    return po_service.apply_purchase_order(db, po, ctx.user_id, notes)


@router.get("/{order_id}/history", response_model=list[StatusHistoryRead])
def get_status_history(
    order_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> list[PurchaseOrderStatusHistory]:
    po = po_service.get_purchase_order(db, order_id, ctx.organization_id, include_items=False)
    return po_service.get_status_history(db, po)
