"""Periodic drift reconciliation of ready roles."""

import logging
import threading
from typing import Optional

from ..core.config import ConfigStore
from .declaration import LifecycleState
from .reconciler import IAMRoleReconciler
from .scheduler import PeriodicTask
from .state_machine import Trigger
from .store import ResourceStore, StoreError


logger = logging.getLogger(__name__)

PACING_SECONDS = 2.0


class PeriodicDriftReconciler(PeriodicTask):
    """Re-checks every Ready declaration on a fixed cadence.

    The interval is read from the configuration before each tick, with the
    configured minimum applied, so a reload takes effect on the next tick.
    """

    name = "drift-reconciler"

    def __init__(
        self,
        store: ResourceStore,
        reconciler: IAMRoleReconciler,
        config_store: ConfigStore,
        pacing: float = PACING_SECONDS,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Initialize drift reconciler.

        Args:
            store: Resource store holding the declarations
            reconciler: Reconciler invoked for each Ready declaration
            config_store: Holder of the current configuration snapshot
            pacing: Seconds to wait between two declarations
            stop_event: Cancellation signal; a private one is created when omitted
        """
        super().__init__(stop_event)
        self.store = store
        self.reconciler = reconciler
        self.config_store = config_store
        self.pacing = pacing

    @property
    def interval(self) -> int:
        return self.config_store.current.effective_desired_frequency

    def run_once(self) -> int:
        """Reconcile every Ready declaration once.

        Returns:
            Number of declarations visited
        """
        try:
            declarations = self.store.list()
        except StoreError as e:
            logger.error(f"Unable to list Iamroles for drift check: {e}")
            return 0

        ready = [
            item for item in declarations
            if item.status.state == LifecycleState.READY and not item.is_deleting
        ]
        logger.info(f"Drift check of {len(ready)} ready Iamroles")

        visited = 0
        for declaration in ready:
            if self._stop.is_set():
                break
            try:
                self.reconciler.reconcile(declaration.namespace, declaration.name, Trigger.RESYNC)
            except Exception:
                logger.exception(f"Drift check of Iamrole {declaration.key} failed")
            visited += 1
            self._stop.wait(self.pacing)
        return visited
