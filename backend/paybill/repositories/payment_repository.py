"""Payment ledger: create, read and transition payment attempts.

The ledger enforces the attempt invariants at the storage boundary:
a checkout reference is globally unique and immutable once assigned, and
nothing moves an attempt out of a terminal state.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paybill.core.errors import ConflictError, InvalidTransitionError
from paybill.models.invoice import Invoice
from paybill.models.payment import PaymentAttempt, PaymentStatus
from paybill.models.shared import quantize_amount


class PaymentRepository:
    """Repository for PaymentAttempt model."""

    def __init__(self, db: Session):
        self.db = db

    # ===== Reads =====

    def get_by_id(self, payment_id: UUID) -> PaymentAttempt | None:
        return self.db.query(PaymentAttempt).filter(PaymentAttempt.id == payment_id).first()

    def get_owned(self, resource_id: UUID, owner_id: UUID) -> PaymentAttempt | None:
        """Get a payment attempt only if its invoice belongs to ``owner_id``."""
        return (
            self.db.query(PaymentAttempt)
            .join(Invoice, Invoice.id == PaymentAttempt.invoice_id)
            .filter(PaymentAttempt.id == resource_id, Invoice.user_id == owner_id)
            .first()
        )

    def get_by_checkout_request_id(self, checkout_request_id: str) -> PaymentAttempt | None:
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.checkout_request_id == checkout_request_id)
            .first()
        )

    def get_by_checkout_request_id_for_update(
        self, checkout_request_id: str
    ) -> PaymentAttempt | None:
        """Fetch and row-lock an attempt for the rest of the current transaction.

        ``populate_existing`` makes sure a copy already sitting in the identity map
        is overwritten with the row as it is now.
        """
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.checkout_request_id == checkout_request_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def list_for_invoice(self, invoice_id: UUID) -> list[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(PaymentAttempt.invoice_id == invoice_id)
            .order_by(PaymentAttempt.created_at.desc())
            .all()
        )

    def list_completed_for_invoice(self, invoice_id: UUID) -> list[PaymentAttempt]:
        return (
            self.db.query(PaymentAttempt)
            .filter(
                PaymentAttempt.invoice_id == invoice_id,
                PaymentAttempt.status == PaymentStatus.COMPLETED.value,
            )
            .all()
        )

    def sum_completed_for_invoice(self, invoice_id: UUID) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(PaymentAttempt.amount), 0))
            .filter(
                PaymentAttempt.invoice_id == invoice_id,
                PaymentAttempt.status == PaymentStatus.COMPLETED.value,
            )
            .scalar()
        )
        return quantize_amount(total or 0)

    def count_for_invoice(self, invoice_id: UUID) -> int:
        return (
            self.db.query(PaymentAttempt).filter(PaymentAttempt.invoice_id == invoice_id).count()
        )

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[PaymentAttempt]:
        """Pending attempts with a checkout reference created before ``older_than``."""
        return (
            self.db.query(PaymentAttempt)
            .filter(
                PaymentAttempt.status == PaymentStatus.PENDING.value,
                PaymentAttempt.checkout_request_id.isnot(None),
                PaymentAttempt.created_at < older_than,
            )
            .order_by(PaymentAttempt.created_at.asc())
            .limit(limit)
            .all()
        )

    # ===== Writes =====

    def create(
        self,
        invoice_id: UUID,
        user_id: UUID,
        amount: Decimal,
        phone_number: str,
        account_reference: str | None = None,
    ) -> PaymentAttempt:
        """Create a new pending payment attempt."""
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValueError("Payment amount must be positive")

        payment = PaymentAttempt(
            invoice_id=invoice_id,
            user_id=user_id,
            amount=amount,
            phone_number=phone_number,
            account_reference=account_reference,
            status=PaymentStatus.PENDING.value,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def assign_provider_references(
        self,
        payment: PaymentAttempt,
        checkout_request_id: str,
        merchant_request_id: str | None = None,
    ) -> PaymentAttempt:
        """Attach the provider's checkout and merchant references to an attempt."""
        if payment.checkout_request_id:
            if payment.checkout_request_id == checkout_request_id:
                return payment
            raise ConflictError(
                "Payment attempt already has a checkout reference",
                {"checkout_request_id": payment.checkout_request_id},
            )

        existing = self.get_by_checkout_request_id(checkout_request_id)
        if existing is not None and existing.id != payment.id:
            raise ConflictError(
                "Duplicate checkout reference",
                {"checkout_request_id": checkout_request_id},
            )

        payment.checkout_request_id = checkout_request_id  # type: ignore[assignment]
        if merchant_request_id:
            payment.merchant_request_id = merchant_request_id  # type: ignore[assignment]

        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with another attempt claiming the same reference.
            self.db.rollback()
            raise ConflictError(
                "Duplicate checkout reference",
                {"checkout_request_id": checkout_request_id},
            ) from None
        self.db.refresh(payment)
        return payment

    def mark_completed(
        self,
        payment: PaymentAttempt,
        result_code: str,
        result_desc: str | None,
        receipt: str | None = None,
        confirmed_amount: Decimal | None = None,
        confirmed_phone: str | None = None,
        transaction_time: datetime | None = None,
        payload: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> PaymentAttempt:
        """Transition a pending attempt to completed."""
        self._ensure_pending(payment, PaymentStatus.COMPLETED)

        payment.status = PaymentStatus.COMPLETED.value  # type: ignore[assignment]
        payment.result_code = result_code  # type: ignore[assignment]
        payment.result_desc = result_desc  # type: ignore[assignment]
        payment.mpesa_receipt = receipt or None  # type: ignore[assignment]
        payment.confirmed_amount = confirmed_amount  # type: ignore[assignment]
        payment.confirmed_phone = confirmed_phone or None  # type: ignore[assignment]
        payment.transaction_time = transaction_time  # type: ignore[assignment]
        if payload is not None:
            payment.callback_metadata = payload  # type: ignore[assignment]
        payment.transitioned_at = datetime.now(UTC)  # type: ignore[assignment]
        return self._save(payment, commit)

    def mark_failed(
        self,
        payment: PaymentAttempt,
        result_code: str,
        result_desc: str | None,
        payload: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> PaymentAttempt:
        """Transition a pending attempt to failed."""
        self._ensure_pending(payment, PaymentStatus.FAILED)

        payment.status = PaymentStatus.FAILED.value  # type: ignore[assignment]
        payment.result_code = result_code  # type: ignore[assignment]
        payment.result_desc = result_desc  # type: ignore[assignment]
        if payload is not None:
            payment.callback_metadata = payload  # type: ignore[assignment]
        payment.transitioned_at = datetime.now(UTC)  # type: ignore[assignment]
        return self._save(payment, commit)

    def record_provider_payload(
        self, payment: PaymentAttempt, payload: dict[str, Any], commit: bool = True
    ) -> PaymentAttempt:
        """Keep a non-final provider payload on a pending attempt.

        Status, result code and ``transitioned_at`` are left untouched.
        """
        self._ensure_pending(payment, PaymentStatus.PENDING)
        payment.callback_metadata = payload  # type: ignore[assignment]
        return self._save(payment, commit)

    def _ensure_pending(self, payment: PaymentAttempt, target: PaymentStatus) -> None:
        if payment.state.is_terminal:
            raise InvalidTransitionError(
                f"Cannot move payment {payment.id} from {payment.status} to {target.value}"
            )

    def _save(self, payment: PaymentAttempt, commit: bool) -> PaymentAttempt:
        if commit:
            self.db.commit()
            self.db.refresh(payment)
        else:
            self.db.flush()
        return payment
