from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.payment import PaymentAttempt, PaymentStatus
from paybill.models.user import User

__all__ = [
    "Invoice",
    "InvoiceStatus",
    "PaymentAttempt",
    "PaymentStatus",
    "User",
]
