"""Shared test fixtures for all test modules."""

import contextlib
import uuid
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import paybill.models  # noqa: F401
from paybill.core import database as db_module
from paybill.core.auth import issue_access_token
from paybill.core.database import Base, get_db
from paybill.main import app
from paybill.models.invoice import Invoice, InvoiceStatus
from paybill.models.payment import PaymentAttempt
from paybill.models.user import User
from paybill.repositories.payment_repository import PaymentRepository
from paybill.services.mpesa_gateway import (
    GatewayFailure,
    PushAccepted,
    PushResult,
    QueryResult,
    get_mpesa_gateway,
)

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Well-known users shared by all tests
DEFAULT_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")


def _seed_users(session: Session) -> None:
    for user_id, email, business in (
        (DEFAULT_USER_ID, "owner@example.com", "Duka Hardware"),
        (OTHER_USER_ID, "other@example.com", "Other Traders"),
    ):
        if session.query(User).filter(User.id == user_id).first() is None:
            session.add(User(id=user_id, email=email, business_name=business, is_active=True))
    session.commit()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    session = _TestSessionLocal()
    try:
        _seed_users(session)
    finally:
        session.close()

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {issue_access_token(DEFAULT_USER_ID)}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {issue_access_token(OTHER_USER_ID)}"}


class FakeGateway:
    """Stands in for MpesaGateway: records calls and replays queued results.

    Without a queued result a push is accepted with a fresh checkout reference
    and a status query reports that the transaction is still being processed.
    """

    def __init__(self) -> None:
        self.push_results: list[PushResult] = []
        self.query_results: list[QueryResult] = []
        self.push_calls: list[dict[str, Any]] = []
        self.query_calls: list[str] = []

    def initiate_push(
        self, phone: str, amount: Decimal, reference: str, description: str
    ) -> PushResult:
        self.push_calls.append(
            {"phone": phone, "amount": amount, "reference": reference, "description": description}
        )
        if self.push_results:
            return self.push_results.pop(0)
        checkout_id = f"ws_CO_{uuid.uuid4().hex[:16]}"
        merchant_id = f"{uuid.uuid4().hex[:5]}-{uuid.uuid4().hex[:8]}-1"
        return PushAccepted(
            checkout_request_id=checkout_id,
            merchant_request_id=merchant_id,
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
            raw={
                "MerchantRequestID": merchant_id,
                "CheckoutRequestID": checkout_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    def query_status(self, checkout_request_id: str) -> QueryResult:
        self.query_calls.append(checkout_request_id)
        if self.query_results:
            return self.query_results.pop(0)
        return GatewayFailure(
            "Status query rejected",
            error={
                "errorCode": "500.001.1001",
                "errorMessage": "The transaction is being processed",
            },
            status_code=500,
        )


@pytest.fixture
def fake_gateway():
    """A FakeGateway wired into the API through the gateway dependency."""
    gateway = FakeGateway()
    app.dependency_overrides[get_mpesa_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_mpesa_gateway, None)


def create_invoice(
    db: Session,
    amount: str | Decimal = "500.00",
    user_id: uuid.UUID = DEFAULT_USER_ID,
    status: InvoiceStatus = InvoiceStatus.SENT,
    customer_phone: str = "0712345678",
) -> Invoice:
    invoice = Invoice(
        user_id=user_id,
        customer_name="Wanjiru Kamau",
        customer_phone=customer_phone,
        description="Hardware supplies",
        amount=Decimal(amount),
        status=status.value,
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    return invoice


def create_pending_payment(
    db: Session,
    invoice: Invoice,
    checkout_request_id: str | None = None,
    amount: str | Decimal | None = None,
    phone_number: str = "254712345678",
) -> PaymentAttempt:
    """Create a pending attempt with a checkout reference, as a successful push would."""
    repo = PaymentRepository(db)
    payment = repo.create(
        invoice_id=invoice.id,  # type: ignore[arg-type]
        user_id=invoice.user_id,  # type: ignore[arg-type]
        amount=Decimal(amount) if amount is not None else invoice.amount,  # type: ignore[arg-type]
        phone_number=phone_number,
        account_reference=f"INV-{str(invoice.id)[:8].upper()}",
    )
    return repo.assign_provider_references(
        payment,
        checkout_request_id=checkout_request_id or f"ws_CO_{uuid.uuid4().hex[:16]}",
        merchant_request_id=f"mr-{uuid.uuid4().hex[:8]}",
    )


def callback_payload(
    checkout_request_id: str,
    result_code: int | str = 0,
    result_desc: str | None = None,
    amount: Any = 500,
    receipt: str = "QWE123RTY4",
    phone: Any = 254712345678,
    transaction_date: Any = 20240101120000,
    include_metadata: bool = True,
) -> dict[str, Any]:
    """Build an STK callback body the way Daraja sends it."""
    if result_desc is None:
        result_desc = (
            "The service request is processed successfully."
            if str(result_code) == "0"
            else "Request failed"
        )
    callback: dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if include_metadata and str(result_code) == "0":
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": transaction_date},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def invoice(db_session):
    """A sent invoice for KES 500 owned by the default user."""
    return create_invoice(db_session)


@pytest.fixture
def other_invoice(db_session):
    """An invoice owned by a different user."""
    return create_invoice(db_session, amount="750.00", user_id=OTHER_USER_ID)


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory over a file-backed SQLite database.

    Each session gets its own connection, which threaded tests need; the
    in-memory StaticPool engine shares a single connection.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'paybill-threads.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = factory()
    try:
        _seed_users(session)
    finally:
        session.close()
    yield factory
    engine.dispose()
