"""Payment attempt model - one STK push against an invoice and its outcome."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, Text, func

from paybill.core.database import Base
from paybill.models.shared import UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    """Payment attempt states. ``pending`` is initial, the other two are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentAttempt(Base):
    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    phone_number = Column(String(20), nullable=False, index=True)
    account_reference = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # Provider references
    checkout_request_id = Column(String(255), nullable=True, unique=True)
    merchant_request_id = Column(String(255), nullable=True, index=True)

    # Provider outcome
    result_code = Column(String(20), nullable=True)
    result_desc = Column(Text, nullable=True)
    mpesa_receipt = Column(String(64), nullable=True, index=True)
    confirmed_amount = Column(Numeric(10, 2), nullable=True)
    confirmed_phone = Column(String(20), nullable=True)
    transaction_time = Column(DateTime(timezone=True), nullable=True)
    callback_metadata = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    transitioned_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def state(self) -> PaymentStatus:
        return PaymentStatus(self.status)
