"""
Repository pattern for invoice data access.

Implements the invoice store used by the billing engine on top of SQLite.
Each status change is a single-row UPDATE committed on its own, which gives
the per-invoice atomicity the engine relies on.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from billing_engine.core.exceptions import InvoiceNotFoundError
from .db import DEFAULT_DB_PATH, get_connection
from .models import Currency, Customer, Invoice, InvoiceStatus, Money


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the customer and invoice tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS customer (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                currency TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS invoice (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_id INTEGER NOT NULL REFERENCES customer (id),
                value TEXT NOT NULL,
                currency TEXT NOT NULL,
                status TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_invoice(row) -> Invoice:
    return Invoice(
        id=row[0],
        customer_id=row[1],
        amount=Money(value=Decimal(row[2]), currency=Currency(row[3])),
        status=InvoiceStatus(row[4]),
    )


class InvoiceRepository:
    """SQLite-backed invoice store.

    Satisfies the ``InvoiceStore`` capability consumed by
    :class:`billing_engine.core.billing.BillingService`. Store-level errors
    are never swallowed: they propagate to the caller.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def fetch_invoices(self, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
        """Fetch invoices ordered by id, optionally filtered by status.

        Args:
            status: Optional status filter

        Returns:
            List of invoices
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT id, customer_id, value, currency, status FROM invoice"
            params = []
            if status is not None:
                query += " WHERE status = ?"
                params.append(status.value)
            query += " ORDER BY id"

            cursor = conn.execute(query, params)
            return [_row_to_invoice(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_invoice(self, invoice_id: int) -> Invoice:
        """Fetch a single invoice.

        Raises:
            InvoiceNotFoundError: If no invoice has this id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT id, customer_id, value, currency, status FROM invoice WHERE id = ?",
                (invoice_id,)
            )
            row = cursor.fetchone()
            if row is None:
                raise InvoiceNotFoundError(invoice_id)
            return _row_to_invoice(row)
        finally:
            conn.close()

    def update_status(self, invoice_id: int, status: InvoiceStatus) -> None:
        """Atomically set the status of one invoice.

        Args:
            invoice_id: Invoice to update
            status: New status

        Raises:
            InvoiceNotFoundError: If no row was updated
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE invoice SET status = ? WHERE id = ?",
                (status.value, invoice_id)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise InvoiceNotFoundError(invoice_id)
            conn.commit()
        finally:
            conn.close()

    def count_by_status(self) -> Dict[InvoiceStatus, int]:
        """Count invoices per status. Every status is present in the result."""
        conn = get_connection(self.db_path)
        try:
            counts = {status: 0 for status in InvoiceStatus}
            cursor = conn.execute("SELECT status, COUNT(*) FROM invoice GROUP BY status")
            for status, count in cursor.fetchall():
                counts[InvoiceStatus(status)] = count
            return counts
        finally:
            conn.close()

    def create_customer(self, currency: Currency) -> Customer:
        """Insert a customer billed in ``currency``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO customer (currency) VALUES (?)",
                (currency.value,)
            )
            conn.commit()
            return Customer(id=cursor.lastrowid, currency=currency)
        finally:
            conn.close()

    def fetch_customers(self) -> List[Customer]:
        """Fetch all customers ordered by id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT id, currency FROM customer ORDER BY id")
            return [
                Customer(id=row[0], currency=Currency(row[1]))
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def create_invoice(
        self,
        customer_id: int,
        amount: Money,
        status: InvoiceStatus = InvoiceStatus.PENDING
    ) -> Invoice:
        """Insert an invoice for an existing customer.

        Raises:
            sqlite3.IntegrityError: If the customer does not exist
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO invoice (customer_id, value, currency, status)
                VALUES (?, ?, ?, ?)
            """, (
                customer_id,
                str(amount.value),
                amount.currency.value,
                status.value
            ))
            conn.commit()
            return Invoice(
                id=cursor.lastrowid,
                customer_id=customer_id,
                amount=amount,
                status=status
            )
        finally:
            conn.close()
