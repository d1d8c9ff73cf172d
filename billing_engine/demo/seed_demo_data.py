# billing_engine/demo/seed_demo_data.py

import random
from decimal import Decimal
from typing import Optional

from billing_engine.storage.models import Currency, InvoiceStatus, Money
from billing_engine.storage.repository import InvoiceRepository


def seed_demo_invoices(
    repository: InvoiceRepository,
    customers: int = 100,
    invoices_per_customer: int = 10,
    seed: Optional[int] = None
) -> int:
    """Insert demo customers, each with invoice history and one PENDING invoice.

    The latest invoice of each customer is left PENDING; earlier ones are
    already PAID, matching a store just before a billing day.

    Returns:
        Number of invoices inserted
    """
    if customers < 0 or invoices_per_customer < 1:
        raise ValueError("customers must be >= 0 and invoices_per_customer >= 1")

    rng = random.Random(seed)
    currencies = list(Currency)
    inserted = 0
    for _ in range(customers):
        customer = repository.create_customer(rng.choice(currencies))
        for index in range(invoices_per_customer):
            amount = Money(
                value=Decimal(rng.randint(1000, 50000)) / 100,
                currency=customer.currency
            )
            status = (
                InvoiceStatus.PENDING
                if index == invoices_per_customer - 1
                else InvoiceStatus.PAID
            )
            repository.create_invoice(customer.id, amount, status)
            inserted += 1
    return inserted
