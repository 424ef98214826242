from paybill.schemas.invoice import InvoiceCreate, InvoiceResponse, PublicInvoiceResponse
from paybill.schemas.payment import (
    CallbackAck,
    InitiatePaymentResponse,
    PaymentInitiate,
    PaymentResponse,
    PaymentStatusResponse,
    StkCallbackEnvelope,
)

__all__ = [
    "CallbackAck",
    "InitiatePaymentResponse",
    "InvoiceCreate",
    "InvoiceResponse",
    "PaymentInitiate",
    "PaymentResponse",
    "PaymentStatusResponse",
    "PublicInvoiceResponse",
    "StkCallbackEnvelope",
]
