"""
Billing execution engine.

Resolves every pending invoice to a terminal status by charging it through the
payment provider.

Per-invoice state machine:
    PENDING -> CHARGING -> PAID   provider accepted the charge
                        -> ERROR  provider declined, customer not found,
                                  currency mismatch, or network retries exhausted
    CHARGING is re-entered on every retry of a network failure.

Charges run concurrently, one task per invoice, and a run only completes once
every task has resolved. Failures outside the payment taxonomy are not turned
into ERROR: they are reported per invoice and leave the invoice PENDING.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from .exceptions import FailureKind, PaymentError
from billing_engine.storage.models import Invoice, InvoiceStatus

MAX_RETRIES = 5
DEFAULT_RETRY_BASE_TIMEOUT_MS = 1000


class InvoiceStore(Protocol):
    """Persistence operations required by the billing service."""

    def fetch_invoices(self) -> Sequence[Invoice]:
        ...

    def update_status(self, invoice_id: int, status: InvoiceStatus) -> None:
        ...


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def charge(self, invoice: Invoice) -> bool:
        """Charge the customer for ``invoice``.

        Returns True when the charge succeeded and False when the provider
        declined it. Raises a ``PaymentError`` subclass on classified failure.
        """


class ChargeState(Enum):
    """Engine-internal state of one invoice during a run."""
    PENDING = "PENDING"
    CHARGING = "CHARGING"
    PAID = "PAID"
    ERROR = "ERROR"


@dataclass
class ChargeAttempt:
    """In-memory progress of one invoice's charge. Never persisted."""
    invoice: Invoice
    retries: int = 0
    state: ChargeState = ChargeState.PENDING
    retry_at: Optional[datetime] = None


@dataclass
class BillingRunSummary:
    """Outcome counts of one billing run."""
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    fetched: int = 0
    skipped: int = 0
    paid: int = 0
    errored: int = 0
    unresolved: int = 0
    failed: bool = False  # Run aborted before charging finished

    @property
    def charged(self) -> int:
        """Number of invoices a charge task was launched for."""
        return self.paid + self.errored + self.unresolved


def retry_delay_seconds(retries: int, base_timeout_ms: int) -> float:
    """Linear backoff: the first retry is immediate, then grows by one base step."""
    return retries * base_timeout_ms / 1000.0


def reset_invoices(store: InvoiceStore, logger: Optional[logging.Logger] = None) -> int:
    """Force every invoice in ``store`` back to PENDING. Returns the count."""
    logger = logger or logging.getLogger(__name__)
    invoices = store.fetch_invoices()
    for invoice in invoices:
        store.update_status(invoice.id, InvoiceStatus.PENDING)
    logger.info("Reset %d invoices to PENDING", len(invoices))
    return len(invoices)


class BillingService:
    """Charges all pending invoices and records their outcome.

    Args:
        store: Invoice store the run reads from and writes statuses to
        provider: Payment provider used to charge invoices
        retry_base_timeout_ms: Backoff step between network retries
        max_retries: Retries allowed after the first network failure
        max_concurrency: Bound on in-flight provider calls, None for unbounded
        sleep: Coroutine used to wait out backoff delays
        logger: Logger for charge outcomes
    """

    def __init__(
        self,
        store: InvoiceStore,
        provider: PaymentProvider,
        retry_base_timeout_ms: int = DEFAULT_RETRY_BASE_TIMEOUT_MS,
        max_retries: int = MAX_RETRIES,
        max_concurrency: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None
    ):
        if retry_base_timeout_ms < 0:
            raise ValueError("retry_base_timeout_ms must be >= 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.store = store
        self.provider = provider
        self.retry_base_timeout_ms = retry_base_timeout_ms
        self.max_retries = max_retries
        self.max_concurrency = max_concurrency
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def run_billing_cycle(self) -> BillingRunSummary:
        """Charge every pending invoice and wait for all of them to resolve.

        Never raises. A failure that aborts the run, such as the store being
        unavailable, is logged and reported through ``summary.failed``.
        """
        self.logger.info("Starting billing run")
        try:
            summary = asyncio.run(self.charge_pending_invoices())
        except Exception:
            self.logger.exception("Billing run failed")
            summary = BillingRunSummary(failed=True, finished_at=datetime.now())
        return summary

    async def charge_pending_invoices(self) -> BillingRunSummary:
        """Fan out one charge task per pending invoice and join them all.

        Raises:
            Exception: Whatever the store raises while fetching invoices
        """
        summary = BillingRunSummary()
        invoices = await asyncio.to_thread(self.store.fetch_invoices)
        pending = [invoice for invoice in invoices if invoice.is_pending]
        summary.fetched = len(invoices)
        summary.skipped = len(invoices) - len(pending)

        limiter = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        results = await asyncio.gather(
            *(self._charge_invoice(invoice, limiter) for invoice in pending),
            return_exceptions=True
        )

        for invoice, result in zip(pending, results):
            if isinstance(result, Exception):
                summary.unresolved += 1
                self.logger.error(
                    "Unclassified failure while charging invoice %s", invoice.id,
                    exc_info=result,
                    extra={"invoice_id": invoice.id, "customer_id": invoice.customer_id}
                )
            elif isinstance(result, BaseException):
                raise result
            elif result == InvoiceStatus.PAID:
                summary.paid += 1
            else:
                summary.errored += 1

        summary.finished_at = datetime.now()
        self.logger.info(
            "Billing run finished",
            extra={
                "fetched": summary.fetched,
                "skipped": summary.skipped,
                "paid": summary.paid,
                "errored": summary.errored,
                "unresolved": summary.unresolved,
            }
        )
        return summary

    def reset_invoices(self) -> int:
        """Force every invoice in the store back to PENDING.

        Bypasses the charge state machine. Meant for re-running a cycle in
        test harnesses, not for the production charge path.

        Returns:
            Number of invoices reset
        """
        return reset_invoices(self.store, self.logger)

    async def _charge_invoice(
        self,
        invoice: Invoice,
        limiter: Optional[asyncio.Semaphore]
    ) -> InvoiceStatus:
        attempt = ChargeAttempt(invoice=invoice)
        while True:
            attempt.state = ChargeState.CHARGING
            try:
                paid = await self._call_provider(invoice, limiter)
            except PaymentError as exc:
                if exc.kind is FailureKind.NETWORK and attempt.retries < self.max_retries:
                    await self._wait_for_retry(attempt)
                    continue
                status = self._resolve_failure(exc, attempt)
            else:
                status = InvoiceStatus.PAID if paid else InvoiceStatus.ERROR
                if not paid:
                    self.logger.info(
                        "Payment provider declined invoice %s", invoice.id,
                        extra={"invoice_id": invoice.id, "customer_id": invoice.customer_id}
                    )
            break

        attempt.state = ChargeState(status.value)
        await asyncio.to_thread(self.store.update_status, invoice.id, status)
        self.logger.debug(
            "Invoice %s settled as %s after %d retries",
            invoice.id, attempt.state.value, attempt.retries,
            extra={"invoice_id": invoice.id, "state": attempt.state.value}
        )
        return status

    async def _call_provider(
        self,
        invoice: Invoice,
        limiter: Optional[asyncio.Semaphore]
    ) -> bool:
        if limiter is None:
            return await asyncio.to_thread(self.provider.charge, invoice)
        async with limiter:
            return await asyncio.to_thread(self.provider.charge, invoice)

    async def _wait_for_retry(self, attempt: ChargeAttempt) -> None:
        delay = retry_delay_seconds(attempt.retries, self.retry_base_timeout_ms)
        attempt.retries += 1
        attempt.retry_at = datetime.now() + timedelta(seconds=delay)
        self.logger.warning(
            "Network failure charging invoice %s, retry %d of %d in %.1f seconds",
            attempt.invoice.id, attempt.retries, self.max_retries, delay,
            extra={
                "invoice_id": attempt.invoice.id,
                "retries": attempt.retries,
                "retry_at": attempt.retry_at,
            }
        )
        await self.sleep(delay)

    def _resolve_failure(self, exc: PaymentError, attempt: ChargeAttempt) -> InvoiceStatus:
        """Map a classified payment failure to ERROR, re-raising anything else."""
        invoice = attempt.invoice
        context = {"invoice_id": invoice.id, "customer_id": invoice.customer_id}

        if exc.kind is FailureKind.CUSTOMER_NOT_FOUND:
            self.logger.error(
                "Payment provider was not able to identify customer %s on invoice %s",
                invoice.customer_id, invoice.id, extra=context
            )
        elif exc.kind is FailureKind.CURRENCY_MISMATCH:
            self.logger.error(
                "Currency mismatch on invoice %s (%s) for customer %s",
                invoice.id, invoice.amount.currency.value, invoice.customer_id,
                extra=context
            )
        elif exc.kind is FailureKind.NETWORK:
            self.logger.error(
                "Failed to pay invoice %s after %d retries", invoice.id, attempt.retries,
                extra={**context, "retries": attempt.retries}
            )
        else:
            raise exc
        return InvoiceStatus.ERROR
