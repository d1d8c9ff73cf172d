"""
Failure taxonomy for payment charges and invoice storage.

Payment providers report failures by raising a ``PaymentError`` subclass.
Each carries a ``FailureKind`` tag which the billing state machine switches
over; anything outside the taxonomy is treated as unclassified.
"""

from enum import Enum, auto
from typing import Optional


class FailureKind(Enum):
    """Classified kinds of payment provider failure."""
    CUSTOMER_NOT_FOUND = auto()  # Terminal: data-integrity error
    CURRENCY_MISMATCH = auto()   # Terminal: configuration error
    NETWORK = auto()             # Transient: retried with backoff
    OTHER = auto()               # Unclassified: propagated


class PaymentError(Exception):
    """Raised by a payment provider when a charge could not be completed."""

    kind: FailureKind = FailureKind.OTHER

    def __init__(self, message: str, invoice_id: Optional[int] = None):
        super().__init__(message)
        self.invoice_id = invoice_id


class CustomerNotFoundError(PaymentError):
    """The provider does not know the customer the invoice belongs to."""

    kind = FailureKind.CUSTOMER_NOT_FOUND

    def __init__(self, invoice_id: int, customer_id: int):
        super().__init__(
            f"Customer {customer_id} on invoice {invoice_id} was not found",
            invoice_id=invoice_id,
        )
        self.customer_id = customer_id


class CurrencyMismatchError(PaymentError):
    """The invoice currency differs from the customer's account currency."""

    kind = FailureKind.CURRENCY_MISMATCH

    def __init__(self, invoice_id: int, customer_id: int):
        super().__init__(
            f"Currency of invoice {invoice_id} does not match customer {customer_id}",
            invoice_id=invoice_id,
        )
        self.customer_id = customer_id


class NetworkError(PaymentError):
    """The provider could not be reached. Safe to retry."""

    kind = FailureKind.NETWORK

    def __init__(self, invoice_id: Optional[int] = None):
        super().__init__("Payment provider unreachable", invoice_id=invoice_id)


class InvoiceNotFoundError(LookupError):
    """Raised by the store when an invoice id does not exist."""

    def __init__(self, invoice_id: int):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id
