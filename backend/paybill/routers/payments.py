"""Payment API endpoints.

Handlers that reach the gateway or the database are plain ``def`` functions so
they run on the worker thread pool and never block the event loop.
"""

import json
import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from paybill.core.auth import get_current_user
from paybill.core.database import get_db
from paybill.core.errors import NotFoundError, PaybillError
from paybill.models.user import User
from paybill.repositories.payment_repository import PaymentRepository
from paybill.repositories.registry import ResourceKind, find_owned
from paybill.schemas.payment import (
    CallbackAck,
    InitiatePaymentData,
    InitiatePaymentResponse,
    PaymentDetailResponse,
    PaymentInitiate,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatusData,
    PaymentStatusResponse,
    StkCallbackEnvelope,
)
from paybill.services.mpesa_gateway import MpesaGateway, get_mpesa_gateway
from paybill.services.payment_service import PaymentService
from paybill.services.reconciliation import ProviderResult, ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter()

CALLBACK_ACCEPTED = CallbackAck(ResultCode=0, ResultDesc="Callback processed successfully")
CALLBACK_REJECTED = CallbackAck(ResultCode=1, ResultDesc="Error processing callback")


def process_callback(db: Session, raw: bytes) -> CallbackAck:
    """Parse and reconcile a provider callback. Never raises."""
    try:
        payload: Any = json.loads(raw)
        envelope = StkCallbackEnvelope.model_validate(payload)
    except (ValueError, PydanticValidationError) as exc:
        logger.warning("Rejected malformed M-Pesa callback: %s", exc)
        return CALLBACK_REJECTED

    try:
        result = ReconciliationService(db).apply_result(
            ProviderResult.from_callback(envelope, raw=payload)
        )
    except PaybillError as exc:
        logger.error(
            "Failed to reconcile callback for %s: %s",
            envelope.callback.CheckoutRequestID,
            exc.message,
        )
        return CALLBACK_REJECTED
    except Exception:
        db.rollback()
        logger.exception(
            "Unexpected error reconciling callback for %s", envelope.callback.CheckoutRequestID
        )
        return CALLBACK_REJECTED

    if not result.matched:
        return CALLBACK_REJECTED
    return CALLBACK_ACCEPTED


@router.post("/callback", response_model=CallbackAck)
async def mpesa_callback(request: Request, db: Session = Depends(get_db)) -> CallbackAck:
    """Receive the asynchronous STK result from M-Pesa.

    Unauthenticated. Always answers HTTP 200 so the provider does not retry;
    ``ResultCode`` is 0 when the result was recorded and 1 otherwise.
    """
    raw = await request.body()
    logger.debug("M-Pesa callback received: %s", raw[:2000])
    return await run_in_threadpool(process_callback, db, raw)


@router.post("/initiate", response_model=InitiatePaymentResponse)
def initiate_payment(
    data: PaymentInitiate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: MpesaGateway = Depends(get_mpesa_gateway),
) -> InitiatePaymentResponse:
    """Start an STK push for the outstanding balance of one of the caller's invoices."""
    initiated = PaymentService(db, gateway).initiate(
        user_id=user.id,  # type: ignore[arg-type]
        invoice_id=data.invoice_id,
        phone_number=data.phone_number,
    )
    return InitiatePaymentResponse(
        message="Payment initiated successfully",
        data=InitiatePaymentData(
            payment=PaymentResponse.model_validate(initiated.payment),
            mpesaResponse=initiated.provider_response,
        ),
    )


@router.get("/status/{checkout_request_id}", response_model=PaymentStatusResponse)
def check_payment_status(
    checkout_request_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: MpesaGateway = Depends(get_mpesa_gateway),
) -> PaymentStatusResponse:
    """Resolve a pending payment by polling the provider."""
    payment = PaymentRepository(db).get_by_checkout_request_id(checkout_request_id)
    if not payment:
        raise NotFoundError("Payment not found")
    find_owned(db, ResourceKind.PAYMENT, payment.id, user.id)  # type: ignore[arg-type]

    check = PaymentService(db, gateway).check_status(checkout_request_id)
    return PaymentStatusResponse(
        message=check.message,
        data=PaymentStatusData(
            status=check.payment.state,
            payment=PaymentResponse.model_validate(check.payment),
        ),
    )


@router.get("/invoice/{invoice_id}", response_model=PaymentListResponse)
def get_payment_history(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PaymentListResponse:
    """List payment attempts for one of the caller's invoices, newest first."""
    find_owned(db, ResourceKind.INVOICE, invoice_id, user.id)  # type: ignore[arg-type]
    payments = PaymentRepository(db).list_for_invoice(invoice_id)
    return PaymentListResponse(data=[PaymentResponse.model_validate(p) for p in payments])


@router.get("/{payment_id}", response_model=PaymentDetailResponse)
def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PaymentDetailResponse:
    """Get a payment attempt by ID."""
    payment = find_owned(db, ResourceKind.PAYMENT, payment_id, user.id)  # type: ignore[arg-type]
    return PaymentDetailResponse(data=PaymentResponse.model_validate(payment))
