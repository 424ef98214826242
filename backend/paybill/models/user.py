"""User model - the identity that owns invoices and triggers payments."""

from sqlalchemy import Boolean, Column, DateTime, String, func

from paybill.core.database import Base
from paybill.models.shared import UUIDType, generate_uuid


class User(Base):
    __tablename__ = "users"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(20), nullable=True)
    business_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
