"""Reconciliation of provider results against the payment ledger.

Callbacks and status polls both end up in :meth:`ReconciliationService.apply_result`,
so there is exactly one place where a payment attempt changes state:

    pending --(ResultCode 0)--------> completed   (invoice balance re-evaluated)
    pending --(ResultCode 1032)-----> pending     (user cancelled / still entering PIN)
    pending --(any other code)------> failed
    completed | failed --(anything)-> unchanged   (duplicate, mismatches are logged)
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paybill.core.errors import InternalError, PaybillError
from paybill.core.locks import KeyedLock, attempt_locks
from paybill.models.payment import PaymentAttempt
from paybill.models.shared import quantize_amount
from paybill.repositories.payment_repository import PaymentRepository
from paybill.schemas.payment import StkCallbackEnvelope
from paybill.services.invoice_balance import InvoiceBalanceTracker
from paybill.services.mpesa_gateway import StatusQueryResult, parse_transaction_time

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = "0"
# "Request cancelled by user": the attempt stays pending and may still resolve.
TRANSIENT_RESULT_CODES = frozenset({"1032"})


class ReconciliationOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STILL_PENDING = "still_pending"
    DUPLICATE = "duplicate"
    NOT_MATCHED = "not_matched"


@dataclass
class ProviderResult:
    """A provider-reported outcome for one checkout reference, whatever channel it came from."""

    checkout_request_id: str
    result_code: str
    result_desc: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None
    source: str = "callback"

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @property
    def is_transient(self) -> bool:
        return self.result_code in TRANSIENT_RESULT_CODES

    @classmethod
    def from_callback(
        cls, envelope: StkCallbackEnvelope, raw: dict[str, Any] | None = None
    ) -> "ProviderResult":
        callback = envelope.callback
        metadata = callback.CallbackMetadata.as_dict() if callback.CallbackMetadata else {}
        return cls(
            checkout_request_id=callback.CheckoutRequestID,
            result_code=str(callback.ResultCode).strip(),
            result_desc=callback.ResultDesc,
            metadata=metadata,
            payload=raw if raw is not None else envelope.model_dump(mode="json"),
            source="callback",
        )

    @classmethod
    def from_status_query(cls, result: StatusQueryResult) -> "ProviderResult":
        return cls(
            checkout_request_id=result.checkout_request_id,
            result_code=result.result_code.strip(),
            result_desc=result.result_desc,
            payload=result.raw,
            source="poll",
        )


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment: PaymentAttempt | None = None

    @property
    def matched(self) -> bool:
        return self.outcome is not ReconciliationOutcome.NOT_MATCHED


def _amount_or_zero(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0.00")
    try:
        return quantize_amount(value)
    except (InvalidOperation, ValueError):
        logger.warning("Unparseable amount in provider metadata: %r", value)
        return Decimal("0.00")


def _text_or_empty(value: Any) -> str:
    return "" if value is None else str(value)


class ReconciliationService:
    """Applies provider results to payment attempts and their invoices."""

    def __init__(self, db: Session, locks: KeyedLock | None = None):
        self.db = db
        self.locks = locks or attempt_locks
        self.payment_repo = PaymentRepository(db)
        self.balance = InvoiceBalanceTracker(db)

    def apply_result(self, result: ProviderResult) -> ReconciliationResult:
        """Apply ``result`` to its payment attempt.

        Runs under the per-attempt lock and a row lock; the attempt update and
        the invoice status update are committed together or not at all.
        """
        with self.locks.hold(result.checkout_request_id):
            try:
                reconciled = self._apply(result)
                self.db.commit()
            except PaybillError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Storage failure reconciling %s", result.checkout_request_id)
                raise InternalError("Failed to record payment result") from exc

        if reconciled.payment is not None:
            self.db.refresh(reconciled.payment)
        return reconciled

    def _apply(self, result: ProviderResult) -> ReconciliationResult:
        payment = self.payment_repo.get_by_checkout_request_id_for_update(
            result.checkout_request_id
        )
        if payment is None:
            logger.warning(
                "No payment attempt matches checkout reference %s (%s)",
                result.checkout_request_id,
                result.source,
            )
            return ReconciliationResult(ReconciliationOutcome.NOT_MATCHED)

        if payment.state.is_terminal:
            if payment.result_code != result.result_code:
                logger.warning(
                    "Conflicting %s result for %s: stored %s/%s, received %s",
                    result.source,
                    result.checkout_request_id,
                    payment.status,
                    payment.result_code,
                    result.result_code,
                )
            else:
                logger.info("Duplicate %s result for %s ignored", result.source, payment.id)
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, payment)

        if result.is_success:
            confirmed_amount = _amount_or_zero(result.metadata.get("Amount"))
            self.payment_repo.mark_completed(
                payment,
                result_code=result.result_code,
                result_desc=result.result_desc,
                receipt=_text_or_empty(result.metadata.get("MpesaReceiptNumber")),
                confirmed_amount=confirmed_amount,
                confirmed_phone=_text_or_empty(result.metadata.get("PhoneNumber")),
                transaction_time=parse_transaction_time(result.metadata.get("TransactionDate")),
                payload=result.payload,
                commit=False,
            )
            if confirmed_amount and confirmed_amount != payment.amount:
                logger.warning(
                    "Payment %s confirmed %s but %s was requested",
                    payment.id,
                    confirmed_amount,
                    payment.amount,
                )
            self.balance.recompute_status(payment.invoice_id, commit=False)  # type: ignore[arg-type]
            logger.info("Payment %s completed via %s", payment.id, result.source)
            return ReconciliationResult(ReconciliationOutcome.COMPLETED, payment)

        if result.is_transient:
            self.payment_repo.record_provider_payload(payment, result.payload, commit=False)
            logger.info(
                "Payment %s still pending via %s (%s: %s) payload=%s",
                payment.id,
                result.source,
                result.result_code,
                result.result_desc,
                result.payload,
            )
            return ReconciliationResult(ReconciliationOutcome.STILL_PENDING, payment)

        self.payment_repo.mark_failed(
            payment,
            result_code=result.result_code,
            result_desc=result.result_desc,
            payload=result.payload,
            commit=False,
        )
        logger.info(
            "Payment %s failed via %s (%s: %s)",
            payment.id,
            result.source,
            result.result_code,
            result.result_desc,
        )
        return ReconciliationResult(ReconciliationOutcome.FAILED, payment)
