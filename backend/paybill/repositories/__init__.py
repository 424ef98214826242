from paybill.repositories.invoice_repository import InvoiceRepository
from paybill.repositories.payment_repository import PaymentRepository
from paybill.repositories.user_repository import UserRepository

__all__ = [
    "InvoiceRepository",
    "PaymentRepository",
    "UserRepository",
]
