from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paybill.models.invoice import InvoiceStatus


class InvoiceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str = Field(alias="customerName", min_length=1, max_length=255)
    customer_phone: str = Field(alias="customerPhone", min_length=1, max_length=20)
    customer_email: str | None = Field(default=None, alias="customerEmail")
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    description: str | None = None
    due_date: datetime | None = Field(default=None, alias="dueDate")


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    user_id: UUID
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    description: str | None = None
    amount: Decimal
    status: InvoiceStatus
    public_id: UUID
    due_date: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PublicInvoiceResponse(BaseModel):
    """What an unauthenticated holder of the share link may see."""

    model_config = ConfigDict(from_attributes=True)

    invoice_number: str
    customer_name: str
    description: str | None = None
    amount: Decimal
    status: InvoiceStatus
    due_date: datetime | None = None
