"""
Tests for the billing run and its per-invoice charge state machine.
"""
import asyncio
import logging
import sqlite3
import threading
import time
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, call

import pytest

from billing_engine.core.billing import (
    BillingRunSummary,
    BillingService,
    MAX_RETRIES,
    reset_invoices,
    retry_delay_seconds
)
from billing_engine.core.exceptions import (
    CurrencyMismatchError,
    CustomerNotFoundError,
    NetworkError,
    PaymentError
)
from billing_engine.storage.models import Currency, Invoice, InvoiceStatus, Money


def create_invoice(invoice_id=1, customer_id=1, status=InvoiceStatus.PENDING, currency=Currency.EUR):
    """Create a test invoice."""
    return Invoice(
        id=invoice_id,
        customer_id=customer_id,
        amount=Money(value=Decimal("10.00"), currency=currency),
        status=status
    )


class InMemoryInvoiceStore:
    """Invoice store keeping invoices in a dict and recording every update."""

    def __init__(self, invoices):
        self.invoices = {invoice.id: invoice for invoice in invoices}
        self.updates = []
        self._lock = threading.Lock()

    def fetch_invoices(self):
        return list(self.invoices.values())

    def update_status(self, invoice_id, status):
        with self._lock:
            self.updates.append((invoice_id, status))
            self.invoices[invoice_id] = replace(self.invoices[invoice_id], status=status)


class RecordingSleep:
    """Async sleep replacement that records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestChargeOutcomes:
    """Test how each provider outcome resolves a single pending invoice."""

    def setup_method(self):
        """Set up a store with one pending invoice."""
        self.pending_invoice = create_invoice(invoice_id=1, customer_id=1)
        self.paid_invoice = create_invoice(
            invoice_id=2, customer_id=2, status=InvoiceStatus.PAID, currency=Currency.DKK
        )
        self.store = Mock()
        self.store.fetch_invoices.return_value = [self.pending_invoice]
        self.provider = Mock()
        self.provider.charge.return_value = True
        self.sleep = RecordingSleep()
        self.service = BillingService(self.store, self.provider, sleep=self.sleep)

    def test_paid_when_provider_accepts(self):
        """Provider returning True marks the invoice PAID."""
        summary = self.service.run_billing_cycle()

        self.provider.charge.assert_called_once_with(self.pending_invoice)
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.PAID)
        assert summary.paid == 1
        assert summary.errored == 0

    def test_already_paid_invoice_is_not_charged(self):
        """Invoices that are not PENDING at fetch time are left alone."""
        self.store.fetch_invoices.return_value = [self.pending_invoice, self.paid_invoice]

        summary = self.service.run_billing_cycle()

        self.provider.charge.assert_called_once_with(self.pending_invoice)
        assert call(self.paid_invoice) not in self.provider.charge.call_args_list
        updated_ids = [args[0] for args, _ in self.store.update_status.call_args_list]
        assert 2 not in updated_ids
        assert summary.fetched == 2
        assert summary.skipped == 1

    def test_error_invoice_is_not_charged(self):
        """ERROR is terminal too."""
        errored = create_invoice(invoice_id=3, status=InvoiceStatus.ERROR)
        self.store.fetch_invoices.return_value = [errored]

        self.service.run_billing_cycle()

        self.provider.charge.assert_not_called()
        self.store.update_status.assert_not_called()

    def test_error_when_provider_declines(self):
        """A decline is terminal and is not retried."""
        self.provider.charge.return_value = False

        summary = self.service.run_billing_cycle()

        self.provider.charge.assert_called_once_with(self.pending_invoice)
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.ERROR)
        assert call(1, InvoiceStatus.PAID) not in self.store.update_status.call_args_list
        assert self.sleep.delays == []
        assert summary.errored == 1

    def test_error_when_customer_not_found(self):
        """CustomerNotFoundError is terminal and is not retried."""
        self.provider.charge.side_effect = CustomerNotFoundError(1, 1)

        self.service.run_billing_cycle()

        self.provider.charge.assert_called_once_with(self.pending_invoice)
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.ERROR)
        assert self.sleep.delays == []

    def test_error_when_currency_mismatch(self):
        """CurrencyMismatchError is terminal and is not retried."""
        self.provider.charge.side_effect = CurrencyMismatchError(1, 1)

        self.service.run_billing_cycle()

        self.provider.charge.assert_called_once_with(self.pending_invoice)
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.ERROR)
        assert self.sleep.delays == []

    def test_network_failure_exhausts_retries(self):
        """Persistent network failure: initial call plus five retries, then ERROR."""
        self.provider.charge.side_effect = NetworkError()

        summary = self.service.run_billing_cycle()

        assert self.provider.charge.call_count == 1 + MAX_RETRIES == 6
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.ERROR)
        assert call(1, InvoiceStatus.PAID) not in self.store.update_status.call_args_list
        assert summary.errored == 1

    def test_network_retry_delays_grow_linearly(self):
        """First retry is immediate, then each waits one more base step."""
        self.provider.charge.side_effect = NetworkError()

        self.service.run_billing_cycle()

        assert self.sleep.delays == [0.0, 1.0, 2.0, 3.0, 4.0]

    def test_network_failure_recovers_on_retry(self):
        """A transient failure followed by success ends PAID."""
        self.provider.charge.side_effect = [NetworkError(), NetworkError(), True]

        summary = self.service.run_billing_cycle()

        assert self.provider.charge.call_count == 3
        self.store.update_status.assert_called_once_with(1, InvoiceStatus.PAID)
        assert self.sleep.delays == [0.0, 1.0]
        assert summary.paid == 1

    def test_custom_base_timeout(self):
        """Backoff step comes from retry_base_timeout_ms."""
        self.provider.charge.side_effect = NetworkError()
        service = BillingService(
            self.store, self.provider, retry_base_timeout_ms=250, sleep=self.sleep
        )

        service.run_billing_cycle()

        assert self.sleep.delays == [0.0, 0.25, 0.5, 0.75, 1.0]


class TestUnclassifiedFailures:
    """Test failures outside the payment taxonomy."""

    def setup_method(self):
        """Set up two pending invoices."""
        self.first = create_invoice(invoice_id=1, customer_id=1)
        self.second = create_invoice(invoice_id=2, customer_id=2)
        self.store = InMemoryInvoiceStore([self.first, self.second])
        self.sleep = RecordingSleep()

    def _provider_failing_first_with(self, error):
        def charge(invoice):
            if invoice.id == 1:
                raise error
            return True
        provider = Mock()
        provider.charge.side_effect = charge
        return provider

    def test_unknown_exception_does_not_escape_run(self, caplog):
        """Run completes, sibling is PAID, failing invoice stays PENDING."""
        provider = self._provider_failing_first_with(RuntimeError("gateway exploded"))
        service = BillingService(self.store, provider, sleep=self.sleep)

        summary = service.run_billing_cycle()

        assert summary.unresolved == 1
        assert summary.paid == 1
        assert self.store.invoices[1].status == InvoiceStatus.PENDING
        assert self.store.invoices[2].status == InvoiceStatus.PAID
        assert self.store.updates == [(2, InvoiceStatus.PAID)]
        assert "Unclassified failure while charging invoice 1" in caplog.text
        assert "gateway exploded" in caplog.text

    def test_payment_error_without_kind_is_not_downgraded(self):
        """A PaymentError outside the known kinds is not turned into ERROR."""
        provider = self._provider_failing_first_with(PaymentError("card network changed"))
        service = BillingService(self.store, provider, sleep=self.sleep)

        summary = service.run_billing_cycle()

        assert summary.unresolved == 1
        assert (1, InvoiceStatus.ERROR) not in self.store.updates
        assert provider.charge.call_count == 2
        assert self.sleep.delays == []

    def test_store_failure_while_fetching_is_logged(self, caplog):
        """A store that cannot be read fails the run without raising."""
        store = Mock()
        store.fetch_invoices.side_effect = sqlite3.OperationalError("database is locked")
        provider = Mock()
        service = BillingService(store, provider, sleep=self.sleep)

        summary = service.run_billing_cycle()

        assert summary.failed is True
        assert summary.charged == 0
        provider.charge.assert_not_called()
        assert "Billing run failed" in caplog.text

    def test_store_failure_while_updating_one_invoice(self):
        """A failed status update only affects its own invoice."""
        store = InMemoryInvoiceStore([self.first, self.second])
        original_update = store.update_status

        def update_status(invoice_id, status):
            if invoice_id == 1:
                raise sqlite3.OperationalError("disk I/O error")
            original_update(invoice_id, status)

        store.update_status = update_status
        provider = Mock()
        provider.charge.return_value = True
        service = BillingService(store, provider, sleep=self.sleep)

        summary = service.run_billing_cycle()

        assert summary.unresolved == 1
        assert summary.paid == 1
        assert store.invoices[2].status == InvoiceStatus.PAID


class TestBillingRuns:
    """Test whole-run behaviour across many invoices."""

    def test_rerun_without_pending_invoices_does_nothing(self):
        """Second run finds nothing pending: no charges, no updates."""
        store = InMemoryInvoiceStore([create_invoice(i, i) for i in range(1, 4)])
        provider = Mock()
        provider.charge.return_value = True
        service = BillingService(store, provider, sleep=RecordingSleep())

        service.run_billing_cycle()
        charges_after_first = provider.charge.call_count
        updates_after_first = len(store.updates)

        summary = service.run_billing_cycle()

        assert charges_after_first == 3
        assert provider.charge.call_count == charges_after_first
        assert len(store.updates) == updates_after_first
        assert summary.charged == 0
        assert summary.skipped == 3

    def test_every_pending_invoice_reaches_terminal_status(self):
        """Mixed outcomes: nothing is left PENDING after the run."""
        invoices = [create_invoice(i, i) for i in range(1, 6)]
        store = InMemoryInvoiceStore(invoices)
        outcomes = {
            1: True,
            2: False,
            3: CustomerNotFoundError(3, 3),
            4: CurrencyMismatchError(4, 4),
            5: NetworkError(),
        }

        def charge(invoice):
            outcome = outcomes[invoice.id]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        provider = Mock()
        provider.charge.side_effect = charge
        service = BillingService(store, provider, sleep=RecordingSleep())

        summary = service.run_billing_cycle()

        statuses = {i: inv.status for i, inv in store.invoices.items()}
        assert statuses == {
            1: InvoiceStatus.PAID,
            2: InvoiceStatus.ERROR,
            3: InvoiceStatus.ERROR,
            4: InvoiceStatus.ERROR,
            5: InvoiceStatus.ERROR,
        }
        assert len(store.updates) == 5
        assert summary.paid == 1
        assert summary.errored == 4

    def test_charges_run_concurrently(self):
        """All pending invoices are in flight at the same time."""
        invoices = [create_invoice(i, i) for i in range(1, 5)]
        store = InMemoryInvoiceStore(invoices)
        barrier = threading.Barrier(len(invoices), timeout=5)

        def charge(invoice):
            barrier.wait()
            return True

        provider = Mock()
        provider.charge.side_effect = charge
        service = BillingService(store, provider, sleep=RecordingSleep())

        summary = service.run_billing_cycle()

        assert summary.paid == 4

    def test_max_concurrency_bounds_in_flight_charges(self):
        """No more than max_concurrency provider calls run at once."""
        invoices = [create_invoice(i, i) for i in range(1, 7)]
        store = InMemoryInvoiceStore(invoices)
        lock = threading.Lock()
        in_flight = {"now": 0, "max": 0}

        def charge(invoice):
            with lock:
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
            time.sleep(0.02)
            with lock:
                in_flight["now"] -= 1
            return True

        provider = Mock()
        provider.charge.side_effect = charge
        service = BillingService(store, provider, max_concurrency=2, sleep=RecordingSleep())

        summary = service.run_billing_cycle()

        assert summary.paid == 6
        assert in_flight["max"] <= 2

    def test_charge_pending_invoices_inside_event_loop(self):
        """The coroutine form can be awaited by callers owning a loop."""
        store = InMemoryInvoiceStore([create_invoice()])
        provider = Mock()
        provider.charge.return_value = True
        service = BillingService(store, provider, sleep=RecordingSleep())

        summary = asyncio.run(service.charge_pending_invoices())

        assert isinstance(summary, BillingRunSummary)
        assert summary.paid == 1
        assert summary.finished_at is not None

    def test_reset_invoices(self):
        """Reset forces every invoice back to PENDING."""
        store = InMemoryInvoiceStore([
            create_invoice(1, status=InvoiceStatus.PAID),
            create_invoice(2, status=InvoiceStatus.ERROR),
            create_invoice(3, status=InvoiceStatus.PENDING),
        ])
        service = BillingService(store, Mock())

        count = service.reset_invoices()

        assert count == 3
        assert all(inv.status == InvoiceStatus.PENDING for inv in store.invoices.values())

    def test_reset_invoices_without_provider(self):
        """Resetting only needs the store."""
        store = InMemoryInvoiceStore([create_invoice(1, status=InvoiceStatus.PAID)])

        assert reset_invoices(store) == 1
        assert store.updates == [(1, InvoiceStatus.PENDING)]


class TestBillingLogging:
    """Test log output of classified failures."""

    def setup_method(self):
        """Set up a service with an injected logger."""
        self.store = Mock()
        self.store.fetch_invoices.return_value = [create_invoice(invoice_id=7, customer_id=42)]
        self.provider = Mock()
        self.logger = logging.getLogger("tests.billing")

    def test_customer_not_found_logs_identifiers(self, caplog):
        """Error log names both the customer and the invoice."""
        self.provider.charge.side_effect = CustomerNotFoundError(7, 42)
        service = BillingService(self.store, self.provider, logger=self.logger)

        with caplog.at_level(logging.ERROR, logger="tests.billing"):
            service.run_billing_cycle()

        records = [r for r in caplog.records if r.name == "tests.billing"]
        assert any(
            "customer 42" in r.getMessage() and "invoice 7" in r.getMessage()
            for r in records
        )
        assert records[0].invoice_id == 7
        assert records[0].customer_id == 42

    def test_retry_exhaustion_logs_retry_count(self, caplog):
        """Exhaustion is logged at error severity with the final count."""
        self.provider.charge.side_effect = NetworkError()
        service = BillingService(
            self.store, self.provider, sleep=RecordingSleep(), logger=self.logger
        )

        with caplog.at_level(logging.WARNING, logger="tests.billing"):
            service.run_billing_cycle()

        records = [r for r in caplog.records if r.name == "tests.billing"]
        errors = [r for r in records if r.levelno == logging.ERROR]
        warnings = [r for r in records if r.levelno == logging.WARNING]
        assert len(warnings) == 5
        assert len(errors) == 1
        assert "after 5 retries" in errors[0].getMessage()

    def test_currency_mismatch_logs_error(self, caplog):
        """Mismatch is logged once at error severity with invoice context."""
        self.provider.charge.side_effect = CurrencyMismatchError(7, 42)
        service = BillingService(self.store, self.provider, logger=self.logger)

        with caplog.at_level(logging.WARNING, logger="tests.billing"):
            service.run_billing_cycle()

        records = [r for r in caplog.records if r.name == "tests.billing"]
        errors = [r for r in records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "invoice 7" in errors[0].getMessage()
        assert errors[0].invoice_id == 7
        assert errors[0].customer_id == 42

    def test_retry_warning_carries_retry_time(self, caplog):
        """Each retry warning records when the next attempt is due."""
        self.provider.charge.side_effect = [NetworkError(), True]
        service = BillingService(
            self.store, self.provider, sleep=RecordingSleep(), logger=self.logger
        )

        before = datetime.now()
        with caplog.at_level(logging.WARNING, logger="tests.billing"):
            service.run_billing_cycle()

        warnings = [
            r for r in caplog.records
            if r.name == "tests.billing" and r.levelno == logging.WARNING
        ]
        assert len(warnings) == 1
        assert warnings[0].retries == 1
        assert warnings[0].retry_at >= before

    def test_settled_state_logged_after_retries(self, caplog):
        """The final charge state is reported once the invoice settles."""
        self.provider.charge.side_effect = [NetworkError(), NetworkError(), True]
        service = BillingService(
            self.store, self.provider, sleep=RecordingSleep(), logger=self.logger
        )

        with caplog.at_level(logging.DEBUG, logger="tests.billing"):
            service.run_billing_cycle()

        settled = [r for r in caplog.records if getattr(r, "state", None) is not None]
        assert len(settled) == 1
        assert settled[0].state == "PAID"
        assert "after 2 retries" in settled[0].getMessage()


class TestConfiguration:
    """Test constructor validation and backoff helper."""

    def test_retry_delay_seconds(self):
        """Delay is retries times the base step."""
        assert retry_delay_seconds(0, 1000) == 0.0
        assert retry_delay_seconds(1, 1000) == 1.0
        assert retry_delay_seconds(4, 1000) == 4.0
        assert retry_delay_seconds(3, 0) == 0.0

    def test_defaults(self):
        """Defaults: 1000 ms base, 5 retries, unbounded concurrency."""
        service = BillingService(Mock(), Mock())
        assert service.retry_base_timeout_ms == 1000
        assert service.max_retries == 5
        assert service.max_concurrency is None

    @pytest.mark.parametrize("kwargs,message", [
        ({"retry_base_timeout_ms": -1}, "retry_base_timeout_ms"),
        ({"max_retries": -1}, "max_retries"),
        ({"max_concurrency": 0}, "max_concurrency"),
    ])
    def test_invalid_parameters(self, kwargs, message):
        """Out-of-range parameters are rejected."""
        with pytest.raises(ValueError, match=message):
            BillingService(Mock(), Mock(), **kwargs)
