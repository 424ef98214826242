"""Invoice endpoints needed around the payment flow."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from paybill.core.auth import get_current_user
from paybill.core.database import get_db
from paybill.core.errors import NotFoundError
from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.user import User
from paybill.repositories.invoice_repository import InvoiceRepository
from paybill.repositories.registry import ResourceKind, find_owned
from paybill.schemas.invoice import InvoiceCreate, InvoiceResponse, PublicInvoiceResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=InvoiceResponse, status_code=201)
def create_invoice(
    data: InvoiceCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Invoice:
    """Create a draft invoice owned by the caller."""
    return InvoiceRepository(db).create(data, user.id)  # type: ignore[arg-type]


@router.get("/", response_model=list[InvoiceResponse])
def list_invoices(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: InvoiceStatus | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[Invoice]:
    return InvoiceRepository(db).get_all(user.id, skip=skip, limit=limit, status=status)  # type: ignore[arg-type]


@router.get("/public/{public_id}", response_model=PublicInvoiceResponse)
def get_public_invoice(public_id: UUID, db: Session = Depends(get_db)) -> Invoice:
    """Unauthenticated read through the invoice's share identifier."""
    invoice = InvoiceRepository(db).get_by_public_id(public_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


@router.get("/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Invoice:
    return find_owned(db, ResourceKind.INVOICE, invoice_id, user.id)  # type: ignore[arg-type, no-any-return]


@router.post("/{invoice_id}/send", response_model=InvoiceResponse)
def send_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Invoice:
    """Mark the invoice as sent. Email/SMS delivery is not wired up."""
    invoice = InvoiceRepository(db).mark_sent(invoice_id, user.id)  # type: ignore[arg-type]
    if not invoice:
        raise NotFoundError("Invoice not found")
    logger.info("Invoice %s marked as sent to %s", invoice.id, invoice.customer_phone)
    return invoice


@router.delete("/{invoice_id}", status_code=204)
def delete_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> None:
    """Delete an invoice that has no payment attempts."""
    if not InvoiceRepository(db).delete(invoice_id, user.id):  # type: ignore[arg-type]
        raise NotFoundError("Invoice not found")
