"""
Data models for storage layer.

Defines invoice and customer entities shared by the store and the engine.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class Currency(Enum):
    """Currencies invoices can be issued in."""
    EUR = "EUR"
    USD = "USD"
    DKK = "DKK"
    SEK = "SEK"
    GBP = "GBP"


class InvoiceStatus(Enum):
    """Persisted invoice status. PAID and ERROR are terminal."""
    PENDING = "PENDING"
    PAID = "PAID"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Money:
    """A monetary amount tagged with its currency."""
    value: Decimal
    currency: Currency

    def __post_init__(self):
        """Validate amount is not negative."""
        if self.value < 0:
            raise ValueError("money value cannot be negative")


@dataclass(frozen=True)
class Customer:
    """Customer billed by the provider in a single currency."""
    id: int
    currency: Currency


@dataclass(frozen=True)
class Invoice:
    """Invoice owned by the store.

    The billing engine only reads invoices and moves their status through the
    store; amount, customer and currency are never changed by a billing run.
    """
    id: int
    customer_id: int
    amount: Money
    status: InvoiceStatus

    @property
    def is_pending(self) -> bool:
        """True while the invoice still awaits a charge."""
        return self.status == InvoiceStatus.PENDING
