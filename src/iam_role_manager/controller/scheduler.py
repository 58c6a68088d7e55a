"""Background loops of the operator.

PeriodicTask runs ``run_once`` on a fixed cadence in a daemon thread until
its stop event fires. RetrySweeper re-attempts failed records once the
retry time persisted in their status has passed, so pending retries
survive an operator restart.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from .state_machine import Trigger
from .store import ResourceStore, StoreError


logger = logging.getLogger(__name__)

RETRY_SWEEP_SECONDS = 30.0
JOIN_TIMEOUT_SECONDS = 10.0

ReconcileCallback = Callable[[str, str, Trigger], object]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicTask:
    """Daemon thread calling ``run_once`` every ``interval`` seconds."""

    name = "periodic-task"

    def __init__(self, stop_event: Optional[threading.Event] = None) -> None:
        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        raise NotImplementedError

    def run_once(self) -> int:
        raise NotImplementedError

    def start(self) -> None:
        """Run the loop in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=JOIN_TIMEOUT_SECONDS)
            self._thread = None

    def run(self) -> None:
        """Tick until the stop event fires; a failing tick does not end the loop."""
        logger.info(f"{self.name} started, interval {self.interval} seconds")
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception(f"{self.name} tick failed")
        logger.info(f"{self.name} stopped")


class RetrySweeper(PeriodicTask):
    """Re-attempts records whose persisted retry time has passed."""

    name = "retry-sweeper"

    def __init__(
        self,
        store: ResourceStore,
        callback: ReconcileCallback,
        interval: float = RETRY_SWEEP_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Initialize sweeper.

        Args:
            store: Resource store holding the declarations
            callback: Called as callback(namespace, name, Trigger.RETRY)
            interval: Seconds between two sweeps
            clock: Returns the current time
            stop_event: Cancellation signal; a private one is created when omitted
        """
        super().__init__(stop_event)
        self.store = store
        self._callback = callback
        self._interval = interval
        self.clock = clock

    @property
    def interval(self) -> float:
        return self._interval

    def run_once(self) -> int:
        """Retry every due record once.

        Returns:
            Number of records retried
        """
        try:
            declarations = self.store.list()
        except StoreError as e:
            logger.error(f"Unable to list Iamroles for retry: {e}")
            return 0

        now = self.clock()
        due = [item for item in declarations if item.status.retry_due(now)]
        if due:
            logger.info(f"Retrying {len(due)} failed Iamroles")

        retried = 0
        for declaration in due:
            if self._stop.is_set():
                break
            try:
                self._callback(declaration.namespace, declaration.name, Trigger.RETRY)
            except Exception:
                logger.exception(f"Retry of Iamrole {declaration.key} failed")
            retried += 1
        return retried
