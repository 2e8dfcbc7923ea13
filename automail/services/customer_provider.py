from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from automail.core.timeutils import as_utc_or_none
from automail.models.customer import Customer


@dataclass(frozen=True)
class CustomerSnapshot:
    id: str
    email: str
    name: str
    segment: str
    last_purchase_at: datetime | None
    opted_out: bool


class CustomerProvider(Protocol):
    name: str

    def get_customer(self, customer_id: str) -> CustomerSnapshot | None:
        ...

    def has_purchased_since(self, customer_id: str, since: datetime) -> bool:
        ...

    def current_segment(self, customer_id: str) -> str | None:
        ...


class SqlCustomerProvider:
    """Answers customer questions from the local `customers` mirror.

    Each call opens a short-lived session so lookups can run on worker threads.
    """

    name = "sql"

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _load(self, customer_id: str) -> CustomerSnapshot | None:
        with self._session_factory() as db:
            customer = db.execute(
                select(Customer).where(Customer.id == customer_id)
            ).scalar_one_or_none()
            if not customer:
                return None
            return CustomerSnapshot(
                id=customer.id,
                email=customer.email,
                name=customer.name,
                segment=customer.segment,
                last_purchase_at=as_utc_or_none(customer.last_purchase_at),
                opted_out=customer.marketing_opt_out_at is not None,
            )

    def get_customer(self, customer_id: str) -> CustomerSnapshot | None:
        return self._load(customer_id)

    def has_purchased_since(self, customer_id: str, since: datetime) -> bool:
        snapshot = self._load(customer_id)
        if not snapshot or snapshot.last_purchase_at is None:
            return False
        return snapshot.last_purchase_at > since

    def current_segment(self, customer_id: str) -> str | None:
        snapshot = self._load(customer_id)
        return snapshot.segment if snapshot else None
