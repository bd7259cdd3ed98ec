from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from keyshop.models import KeyStatus, OrderStatus


class OrderCreate(BaseModel):
    product_id: int = Field(..., gt=0)
    email: EmailStr
    payment_method: str = Field(..., min_length=1, max_length=32)
    quantity: int = Field(default=1, ge=1)

    @field_validator("payment_method")
    @classmethod
    def lower_method(cls, v: str) -> str:
        return v.strip().lower()


class PaymentNotice(BaseModel):
    """A gateway notification after adapter-specific parsing and verification."""
    order_no: str = Field(..., min_length=1, max_length=32)
    transaction_id: Optional[str] = Field(default=None, max_length=128)
    status: str
    amount: Decimal


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_no: str
    email: str
    total_amount: Decimal
    currency: str
    country_code: Optional[str] = None
    status: OrderStatus
    payment_method: str
    created_at: Optional[datetime] = None


class OrderDetail(OrderOut):
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    license_key_ids: List[int] = []


class PaymentSessionOut(BaseModel):
    method: str
    redirect_url: Optional[str] = None
    qr_url: Optional[str] = None


class OrderCreatedOut(BaseModel):
    order: OrderOut
    payment: PaymentSessionOut


class DeliveredKey(BaseModel):
    id: int
    product_id: int
    key: str


class CallbackOut(BaseModel):
    success: bool
    message: str
    order_no: str
    status: OrderStatus
    license_key_ids: List[int] = []


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = Field(default="Customer request", max_length=500)


class RefundOut(BaseModel):
    success: bool
    already_processed: bool = False
    refund_amount: Optional[Decimal] = None
    released_key_ids: List[int] = []
    order: OrderOut


class KeyImportRequest(BaseModel):
    product_id: int = Field(..., gt=0)
    keys: List[str] = Field(..., min_length=1, max_length=1000)


class KeyImportOut(BaseModel):
    imported: int
    duplicates: int
    total: int


class KeyRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class LicenseKeyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    status: KeyStatus
    order_id: Optional[UUID] = None
    sold_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None


class ReconcileOut(BaseModel):
    checked: int
    reversed: int
    cleared: int
    errors: int


class RecheckOut(BaseModel):
    checked: int
    low_stock: int
    alerts_sent: int
    products: List[Dict] = []


class SendCodeRequest(BaseModel):
    email: EmailStr
    order_no: Optional[str] = Field(default=None, max_length=32)


class VerifyCodeRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=12)


class BuyerCancelRequest(VerifyCodeRequest):
    pass


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class OrderPage(BaseModel):
    orders: List[OrderOut]
    pagination: Pagination
