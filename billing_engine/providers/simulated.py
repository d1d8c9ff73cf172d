"""
Simulated payment provider.

Stands in for a real payment gateway when running the engine locally. It
classifies charges the way a gateway would, with configurable rates of
declines and network failures.
"""

import random
import threading
from typing import Dict, Iterable, Optional

from ..core.exceptions import CurrencyMismatchError, CustomerNotFoundError, NetworkError
from ..storage.models import Currency, Customer, Invoice


class SimulatedPaymentProvider:
    """Payment provider backed by an in-memory customer ledger.

    Charge outcome, checked in order:
    1. Unknown customer - raises CustomerNotFoundError
    2. Invoice currency differs from the customer's - raises CurrencyMismatchError
    3. With probability ``network_failure_rate`` - raises NetworkError
    4. With probability ``decline_rate`` - returns False
    5. Otherwise - returns True
    """

    def __init__(
        self,
        customers: Iterable[Customer],
        decline_rate: float = 0.0,
        network_failure_rate: float = 0.0,
        seed: Optional[int] = None
    ):
        """Initialize the simulated provider.

        Args:
            customers: Customers known to the provider
            decline_rate: Probability a charge is declined
            network_failure_rate: Probability a charge hits a network failure
            seed: Seed for reproducible outcomes. Each invoice draws from its own
                stream derived from the seed, so outcomes do not depend on the
                order concurrent charges reach the provider.

        Raises:
            ValueError: If a rate is outside [0, 1]
        """
        for name, rate in (("decline_rate", decline_rate),
                           ("network_failure_rate", network_failure_rate)):
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")

        self.customers: Dict[int, Currency] = {c.id: c.currency for c in customers}
        self.decline_rate = decline_rate
        self.network_failure_rate = network_failure_rate
        self.seed = seed
        self._streams: Dict[int, random.Random] = {}
        self._lock = threading.Lock()

    def charge(self, invoice: Invoice) -> bool:
        currency = self.customers.get(invoice.customer_id)
        if currency is None:
            raise CustomerNotFoundError(invoice.id, invoice.customer_id)
        if currency != invoice.amount.currency:
            raise CurrencyMismatchError(invoice.id, invoice.customer_id)
        rng = self._stream_for(invoice)
        if rng.random() < self.network_failure_rate:
            raise NetworkError(invoice.id)
        return rng.random() >= self.decline_rate

    def _stream_for(self, invoice: Invoice) -> random.Random:
        with self._lock:
            rng = self._streams.get(invoice.id)
            if rng is None:
                rng = random.Random(None if self.seed is None else f"{self.seed}:{invoice.id}")
                self._streams[invoice.id] = rng
            return rng
