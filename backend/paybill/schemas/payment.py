"""Payment schemas, including the M-Pesa STK callback envelope."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paybill.models.payment import PaymentStatus


class PaymentInitiate(BaseModel):
    """Schema for initiating an STK push against an invoice."""

    model_config = ConfigDict(populate_by_name=True)

    invoice_id: UUID = Field(alias="invoiceId")
    phone_number: str = Field(alias="phoneNumber", min_length=9, max_length=20)


class PaymentResponse(BaseModel):
    """Schema for payment attempt response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    user_id: UUID
    amount: Decimal
    phone_number: str
    account_reference: str | None = None
    status: PaymentStatus
    checkout_request_id: str | None = None
    merchant_request_id: str | None = None
    result_code: str | None = None
    result_desc: str | None = None
    mpesa_receipt: str | None = None
    confirmed_amount: Decimal | None = None
    confirmed_phone: str | None = None
    transaction_time: datetime | None = None
    created_at: datetime
    updated_at: datetime
    transitioned_at: datetime | None = None


class InitiatePaymentData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment: PaymentResponse
    mpesa_response: dict[str, Any] = Field(alias="mpesaResponse")


class InitiatePaymentResponse(BaseModel):
    success: bool = True
    message: str
    data: InitiatePaymentData


class PaymentStatusData(BaseModel):
    status: PaymentStatus
    payment: PaymentResponse


class PaymentStatusResponse(BaseModel):
    success: bool = True
    message: str
    data: PaymentStatusData


class PaymentListResponse(BaseModel):
    success: bool = True
    data: list[PaymentResponse]


class PaymentDetailResponse(BaseModel):
    success: bool = True
    data: PaymentResponse


class CallbackAck(BaseModel):
    """Acknowledgement returned to the provider. Always sent with HTTP 200."""

    ResultCode: int
    ResultDesc: str


# ===== STK callback envelope =====
#
# {"Body": {"stkCallback": {"MerchantRequestID": ..., "CheckoutRequestID": ...,
#   "ResultCode": 0, "ResultDesc": ..., "CallbackMetadata": {"Item": [
#     {"Name": "Amount", "Value": 500}, {"Name": "MpesaReceiptNumber", "Value": ...},
#     {"Name": "Balance"}, {"Name": "TransactionDate", "Value": 20240101120000},
#     {"Name": "PhoneNumber", "Value": 254712345678}]}}}}


class CallbackItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    Item: list[CallbackItem] = Field(default_factory=list)

    def get(self, name: str) -> Any:
        """Return the value of the first item called ``name``, or None."""
        for item in self.Item:
            if item.Name == name:
                return item.Value
        return None

    def as_dict(self) -> dict[str, Any]:
        return {item.Name: self.get(item.Name) for item in self.Item}


class StkCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    MerchantRequestID: str | None = None
    CheckoutRequestID: str = Field(min_length=1)
    ResultCode: int | str
    ResultDesc: str = ""
    CallbackMetadata: StkCallbackMetadata | None = None


class StkCallbackBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    Body: StkCallbackBody

    @property
    def callback(self) -> StkCallback:
        return self.Body.stkCallback
