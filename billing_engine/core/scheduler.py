"""
Monthly billing scheduler.

Wakes once per calendar day, at local midnight, and fires the billing trigger
when the day satisfies the billing predicate. Each wait is recomputed as the
time left until the next local midnight, so the cadence stays anchored to the
calendar no matter how long the process has been running.
"""

import calendar
import logging
from datetime import date, datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable, Optional

DayPredicate = Callable[[date], bool]
Trigger = Callable[[], object]


def is_first_day_of_month(day: date) -> bool:
    """Default billing predicate: the first calendar day of the month."""
    return day.day == 1


def billing_day_predicate(day_of_month: int) -> DayPredicate:
    """Build a predicate that holds on ``day_of_month``.

    In months shorter than ``day_of_month`` the predicate holds on the last
    day of the month instead, so no month is skipped.

    Raises:
        ValueError: If day_of_month is outside 1..31
    """
    if not 1 <= day_of_month <= 31:
        raise ValueError("day_of_month must be between 1 and 31")

    def predicate(day: date) -> bool:
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(day_of_month, last_day)

    return predicate


def seconds_until_start_of_tomorrow(now: datetime) -> float:
    """Wall-clock seconds from ``now`` until the next local midnight."""
    tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
    if now.tzinfo is not None:
        tomorrow = tomorrow.replace(tzinfo=now.tzinfo)
    return max((tomorrow - now).total_seconds(), 0.0)


class MonthlyScheduler:
    """Fires a billing trigger at most once per qualifying calendar day.

    Args:
        predicate: Decides whether a date is a billing day
        clock: Returns the current local time
        logger: Logger used for scheduling decisions
    """

    def __init__(
        self,
        predicate: DayPredicate = is_first_day_of_month,
        clock: Callable[[], datetime] = datetime.now,
        logger: Optional[logging.Logger] = None
    ):
        self.predicate = predicate
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._last_fired: Optional[date] = None
        self._tick_lock = Lock()
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def schedule(self, trigger: Trigger) -> None:
        """Start the daily timer on a background thread.

        Raises:
            RuntimeError: If the scheduler was already started
        """
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")

        self.logger.info("Setting up billing schedule")
        self._thread = Thread(
            target=self._run,
            args=(trigger,),
            name="billing-scheduler",
            daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def tick(self, trigger: Trigger) -> bool:
        """Evaluate today's date and fire ``trigger`` if it is a billing day.

        Failures raised by the predicate or the trigger are logged and
        swallowed so that the timer keeps running.

        Returns:
            True if the trigger was invoked on this tick
        """
        with self._tick_lock:
            today = self.clock().date()
            fired = False
            try:
                if not self.predicate(today):
                    self.logger.info(
                        "Today is not a billing day. We are not billing our clients today.",
                        extra={"date": today.isoformat()}
                    )
                    return False
                if self._last_fired == today:
                    self.logger.info(
                        "Billing already triggered today",
                        extra={"date": today.isoformat()}
                    )
                    return False
                self._last_fired = today
                fired = True
                self.logger.info("Triggering billing run", extra={"date": today.isoformat()})
                trigger()
                return True
            except Exception:
                self.logger.exception(
                    "Scheduled billing trigger failed; waiting for next tick",
                    extra={"date": today.isoformat()}
                )
                return fired

    def _run(self, trigger: Trigger) -> None:  # pragma: no cover - thread execution
        while True:
            delay = seconds_until_start_of_tomorrow(self.clock())
            self.logger.info(
                "Schedule check will run in %d seconds", int(delay),
                extra={"delay_seconds": round(delay, 2)}
            )
            if self._stop.wait(delay):
                break
            self.tick(trigger)
        self.logger.info("Billing scheduler stopped")
