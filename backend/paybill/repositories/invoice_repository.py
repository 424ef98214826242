from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.orm import Session

from paybill.core.errors import ConflictError
from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.payment import PaymentAttempt
from paybill.models.shared import quantize_amount
from paybill.schemas.invoice import InvoiceCreate


class InvoiceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        user_id: UUID,
        skip: int = 0,
        limit: int = 100,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        query = self.db.query(Invoice).filter(Invoice.user_id == user_id)
        if status:
            query = query.filter(Invoice.status == status.value)
        return query.order_by(Invoice.created_at.desc()).offset(skip).limit(limit).all()

    def get_by_id(self, invoice_id: UUID) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def get_by_id_for_update(self, invoice_id: UUID) -> Invoice | None:
        """Fetch and row-lock an invoice for the rest of the current transaction."""
        return (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def find_invoice_by_id(self, invoice_id: UUID, owner_id: UUID) -> Invoice | None:
        """Get an invoice only if it belongs to ``owner_id``."""
        return (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id, Invoice.user_id == owner_id)
            .first()
        )

    def get_owned(self, resource_id: UUID, owner_id: UUID) -> Invoice | None:
        return self.find_invoice_by_id(resource_id, owner_id)

    def get_by_public_id(self, public_id: UUID) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.public_id == public_id).first()

    def create(self, data: InvoiceCreate, user_id: UUID) -> Invoice:
        invoice = Invoice(
            user_id=user_id,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            customer_email=data.customer_email,
            description=data.description,
            amount=quantize_amount(data.amount),
            due_date=data.due_date,
            status=InvoiceStatus.DRAFT.value,
        )
        self.db.add(invoice)
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def update_invoice_status(
        self, invoice_id: UUID, status: InvoiceStatus, commit: bool = True
    ) -> Invoice | None:
        """Set the invoice status, stamping ``paid_at`` on the first move to paid."""
        invoice = self.get_by_id(invoice_id)
        if not invoice:
            return None

        if status == InvoiceStatus.PAID and invoice.paid_at is None:
            invoice.paid_at = datetime.now(UTC)  # type: ignore[assignment]
        invoice.status = status.value  # type: ignore[assignment]

        if commit:
            self.db.commit()
            self.db.refresh(invoice)
        else:
            self.db.flush()
        return invoice

    def mark_sent(self, invoice_id: UUID, owner_id: UUID) -> Invoice | None:
        """Move a draft invoice to sent. Delivery itself is not performed here."""
        invoice = self.find_invoice_by_id(invoice_id, owner_id)
        if not invoice:
            return None
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value):
            raise ConflictError(f"Cannot send an invoice in status '{invoice.status}'")

        return self.update_invoice_status(invoice_id, InvoiceStatus.SENT)

    def delete(self, invoice_id: UUID, owner_id: UUID) -> bool:
        """Delete an invoice. Invoices with payment attempts cannot be deleted."""
        invoice = self.find_invoice_by_id(invoice_id, owner_id)
        if not invoice:
            return False

        attempts = (
            self.db.query(PaymentAttempt).filter(PaymentAttempt.invoice_id == invoice_id).count()
        )
        if attempts:
            raise ConflictError("Cannot delete an invoice that has payment attempts")

        self.db.delete(invoice)
        self.db.commit()
        return True
