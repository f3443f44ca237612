from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from app.core.purchasing.domain import to_money


class SupplierSummary(BaseModel):
    id: int
    name: str
    contact_person: str | None = None
    email: str | None = None

    model_config = ConfigDict(from_attributes=True)


class MedicineSummary(BaseModel):
    id: int
    name: str
    generic_name: str | None = None
    strength: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PurchaseOrderItemCreate(BaseModel):
    medicine_id: int
    quantity: int
    unit_cost: Decimal


class PurchaseOrderItemRead(BaseModel):
    id: int
    purchase_order_id: int
    medicine_id: int
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    received_quantity: int
    medicine: MedicineSummary | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("unit_cost", "total_cost")
    def _serialize_money(self, value: Decimal) -> float:
        return to_money(value)


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    order_date: date | None = None
    expected_delivery_date: date | None = None
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    notes: str | None = None
    po_number: str | None = None
    items: list[PurchaseOrderItemCreate]


class PurchaseOrderUpdate(BaseModel):
    supplier_id: int | None = None
    order_date: date | None = None
    expected_delivery_date: date | None = None
    tax_amount: Decimal | None = None
    discount_amount: Decimal | None = None
    notes: str | None = None
    items: list[PurchaseOrderItemCreate] | None = None


class PurchaseOrderRead(BaseModel):
    id: int
    organization_id: int
    po_number: str
    supplier_id: int
    status: str
    order_date: date
    expected_delivery_date: date | None = None
    actual_delivery_date: date | None = None
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    notes: str | None = None
    created_by: int
    approved_by: int | None = None
    approved_at: datetime | None = None
    applied_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    supplier: SupplierSummary | None = None
    items: list[PurchaseOrderItemRead] = []

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("tax_amount", "discount_amount", "total_amount")
    def _serialize_money(self, value: Decimal) -> float:
        return to_money(value)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PurchaseOrderListResponse(BaseModel):
    purchase_orders: list[PurchaseOrderRead]
    pagination: Pagination


class StatusUpdateRequest(BaseModel):
    status: str
    notes: str | None = None


class ReceivedItem(BaseModel):
    id: int
    received_quantity: int


class ReceiveItemsRequest(BaseModel):
    items: list[ReceivedItem] = Field(default_factory=list)
    notes: str | None = None


class ReceiveResult(BaseModel):
    success: bool
    message: str


class ReceiveItemsResponse(BaseModel):
    purchase_order: PurchaseOrderRead
    result: ReceiveResult


class CancelRequest(BaseModel):
    reason: str | None = None


class ApplyRequest(BaseModel):
    notes: str | None = None


class StatusHistoryRead(BaseModel):
    id: int
    purchase_order_id: int
    old_status: str | None = None
    new_status: str
    changed_by: int | None = None
    notes: str | None = None
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PurchaseOrderStats(BaseModel):
    total: int
    total_value: Decimal
    status_breakdown: dict[str, int]

    @field_serializer("total_value")
    def _serialize_money(self, value: Decimal) -> float:
        return to_money(value)


class SupplierBreakdown(BaseModel):
    count: int
    total_value: Decimal

    @field_serializer("total_value")
    def _serialize_money(self, value: Decimal) -> float:
        return to_money(value)


class PurchaseOrderReportSummary(BaseModel):
    total_orders: int
    total_value: Decimal
    status_breakdown: dict[str, int]
    supplier_breakdown: dict[str, SupplierBreakdown]

    @field_serializer("total_value")
    def _serialize_money(self, value: Decimal) -> float:
        return to_money(value)


class PurchaseOrderReport(BaseModel):
    purchase_orders: list[PurchaseOrderRead]
    summary: PurchaseOrderReportSummary
