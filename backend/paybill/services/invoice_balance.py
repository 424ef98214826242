"""Invoice balance tracking against completed payment attempts."""

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.shared import quantize_amount
from paybill.repositories.invoice_repository import InvoiceRepository
from paybill.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


class InvoiceBalanceTracker:
    def __init__(self, db: Session):
        self.db = db
        self.invoice_repo = InvoiceRepository(db)
        self.payment_repo = PaymentRepository(db)

    def total_paid(self, invoice_id: UUID) -> Decimal:
        return self.payment_repo.sum_completed_for_invoice(invoice_id)

    def outstanding_balance(self, invoice: Invoice) -> Decimal:
        """Amount still due on ``invoice``; never negative."""
        remaining = quantize_amount(invoice.amount) - self.total_paid(invoice.id)  # type: ignore[arg-type]
        return max(remaining, Decimal("0.00"))

    def recompute_status(self, invoice_id: UUID, commit: bool = True) -> Invoice | None:
        """Mark the invoice paid once completed payments cover its amount.

        Never reverts a paid invoice and is safe to call any number of times.
        Overpayment is not reconciled; the invoice simply becomes paid.
        The invoice row stays locked until the caller's transaction ends, so two
        attempts completing at once cannot both read a stale total.
        """
        invoice = self.invoice_repo.get_by_id_for_update(invoice_id)
        if not invoice:
            return None
        if invoice.status == InvoiceStatus.PAID.value:
            return invoice

        paid = self.total_paid(invoice_id)
        if paid >= quantize_amount(invoice.amount):  # type: ignore[arg-type]
            logger.info("Invoice %s fully paid (%s of %s)", invoice_id, paid, invoice.amount)
            return self.invoice_repo.update_invoice_status(
                invoice_id, InvoiceStatus.PAID, commit=commit
            )
        return invoice
