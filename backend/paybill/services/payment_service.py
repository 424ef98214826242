"""Payment orchestration: starting STK pushes and polling their outcome."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybill.core.config import settings
from paybill.core.errors import ConflictError, NotFoundError, PaybillError, ProviderError
from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.payment import PaymentAttempt, PaymentStatus
from paybill.repositories.invoice_repository import InvoiceRepository
from paybill.repositories.payment_repository import PaymentRepository
from paybill.services.invoice_balance import InvoiceBalanceTracker
from paybill.services.mpesa_gateway import GatewayFailure, MpesaGateway, normalize_phone
from paybill.services.reconciliation import (
    ProviderResult,
    ReconciliationOutcome,
    ReconciliationService,
)

logger = logging.getLogger(__name__)

DUPLICATE_REFERENCE_CODE = "DUPLICATE_REFERENCE"


@dataclass
class InitiatedPayment:
    payment: PaymentAttempt
    provider_response: dict[str, Any]


@dataclass
class StatusCheck:
    payment: PaymentAttempt
    outcome: ReconciliationOutcome | None = None
    queried_provider: bool = False

    @property
    def message(self) -> str:
        if self.payment.status == PaymentStatus.COMPLETED.value:
            return "Payment completed successfully"
        if self.payment.status == PaymentStatus.FAILED.value:
            return "Payment failed"
        return "Payment is still pending"


def account_reference_for(invoice: Invoice) -> str:
    return f"INV-{str(invoice.id)[:8].upper()}"


class PaymentService:
    def __init__(self, db: Session, gateway: MpesaGateway):
        self.db = db
        self.gateway = gateway
        self.invoice_repo = InvoiceRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.balance = InvoiceBalanceTracker(db)
        self.reconciliation = ReconciliationService(db)

    def initiate(self, user_id: UUID, invoice_id: UUID, phone_number: str) -> InitiatedPayment:
        """Create a pending attempt for the invoice's outstanding balance and push it."""
        invoice = self.invoice_repo.find_invoice_by_id(invoice_id, user_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        if invoice.status == InvoiceStatus.PAID.value:
            raise ConflictError("This invoice has already been paid")
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise ConflictError("Cannot pay a cancelled invoice")

        amount = self.balance.outstanding_balance(invoice)
        if amount <= 0:
            # Completed payments already cover the invoice; make the status catch up.
            self.balance.recompute_status(invoice.id)  # type: ignore[arg-type]
            raise ConflictError("This invoice has already been paid")

        phone = normalize_phone(phone_number)
        reference = account_reference_for(invoice)
        payment = self.payment_repo.create(
            invoice_id=invoice.id,  # type: ignore[arg-type]
            user_id=user_id,
            amount=amount,
            phone_number=phone,
            account_reference=reference,
        )

        result = self.gateway.initiate_push(
            phone=phone,
            amount=amount,
            reference=reference,
            description=f"Payment for invoice #{invoice.invoice_number}",
        )

        if isinstance(result, GatewayFailure):
            if result.timed_out:
                # The push may still have reached the payer; leave the attempt pending.
                logger.warning("STK push for payment %s timed out", payment.id)
            else:
                self.payment_repo.mark_failed(
                    payment,
                    result_code=result.error_code or "UNKNOWN_ERROR",
                    result_desc=result.error_message or "Failed to initiate payment",
                )
            raise ProviderError(
                "Failed to initiate payment", details=result.error, timed_out=result.timed_out
            )

        try:
            self.payment_repo.assign_provider_references(
                payment,
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
            )
        except ConflictError:
            self.payment_repo.mark_failed(
                self.payment_repo.get_by_id(payment.id),  # type: ignore[arg-type]
                result_code=DUPLICATE_REFERENCE_CODE,
                result_desc=f"Checkout reference {result.checkout_request_id} already recorded",
            )
            raise

        logger.info(
            "Initiated payment %s for invoice %s (%s)",
            payment.id,
            invoice.id,
            result.checkout_request_id,
        )
        return InitiatedPayment(payment=payment, provider_response=result.raw)

    def check_status(self, checkout_request_id: str) -> StatusCheck:
        """Polling fallback: ask the provider only while the attempt is unresolved."""
        payment = self.payment_repo.get_by_checkout_request_id(checkout_request_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.state.is_terminal:
            return StatusCheck(payment=payment)

        result = self.gateway.query_status(checkout_request_id)
        if isinstance(result, GatewayFailure):
            raise ProviderError(
                "Failed to check payment status", details=result.error, timed_out=result.timed_out
            )

        reconciled = self.reconciliation.apply_result(ProviderResult.from_status_query(result))
        return StatusCheck(
            payment=reconciled.payment or payment,
            outcome=reconciled.outcome,
            queried_provider=True,
        )

    def reconcile_stale(self, older_than: datetime | None = None, limit: int = 100) -> int:
        """Poll pending attempts nobody has heard back about. Returns how many resolved."""
        cutoff = older_than or datetime.now(UTC) - timedelta(minutes=settings.STALE_PENDING_MINUTES)
        resolved = 0
        for payment in self.payment_repo.list_stale_pending(cutoff, limit=limit):
            try:
                check = self.check_status(str(payment.checkout_request_id))
            except PaybillError as exc:
                logger.warning(
                    "Could not reconcile stale payment %s: %s", payment.id, exc.message
                )
                continue
            if check.payment.state.is_terminal:
                resolved += 1
        return resolved
