"""Typed lookup of owner-scoped resources.

Routers ask for "the invoice / payment with this id, as seen by this user"
through :func:`find_owned`; each resource kind maps to the repository that
knows how ownership is expressed for it.
"""

from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from paybill.core.errors import NotFoundError
from paybill.repositories.invoice_repository import InvoiceRepository
from paybill.repositories.payment_repository import PaymentRepository


class ResourceKind(str, Enum):
    INVOICE = "invoice"
    PAYMENT = "payment"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class OwnedRepository(Protocol):
    def get_owned(self, resource_id: UUID, owner_id: UUID) -> Any: ...


REPOSITORIES: dict[ResourceKind, type[OwnedRepository]] = {
    ResourceKind.INVOICE: InvoiceRepository,
    ResourceKind.PAYMENT: PaymentRepository,
}


def get_repository(db: Session, kind: ResourceKind) -> OwnedRepository:
    return REPOSITORIES[kind](db)  # type: ignore[call-arg]


def find_owned(db: Session, kind: ResourceKind, resource_id: UUID, owner_id: UUID) -> Any:
    """Return the resource or raise NotFoundError if it is missing or not owned."""
    resource = get_repository(db, kind).get_owned(resource_id, owner_id)
    if resource is None:
        raise NotFoundError(f"{kind.label} not found")
    return resource
