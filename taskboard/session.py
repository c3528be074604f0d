"""Task board session: the owner of one store and everything writing to it.

Opening a session loads the task list from the gateway and starts
listening for pushes. Closing it stops the listener and disposes the
store, so responses that arrive afterwards are dropped quietly.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from taskboard.config import Settings
from taskboard.engine.coordinator import MutationCallback, MutationCoordinator
from taskboard.engine.ordering import is_due_soon, is_overdue, utc_now
from taskboard.engine.reconciler import PushReconciler
from taskboard.engine.store import TaskStore
from taskboard.gateway import RemoteTaskGateway
from taskboard.models import Task
from taskboard.push import PushChannel
from taskboard.references import ReferenceCache

logger = logging.getLogger(__name__)


class TaskBoardSession:
    """Wires store, coordinator and reconciler for one task list view.

    Usage::

        async with TaskBoardSession(gateway, channel) as board:
            await board.coordinator.create({"title": "Write report"})
            tasks = board.store.get_sorted_tasks()
    """

    def __init__(
        self,
        gateway: RemoteTaskGateway,
        channel: PushChannel,
        settings: Optional[Settings] = None,
        references: Optional[ReferenceCache] = None,
        clock: Callable[[], datetime] = utc_now,
        on_success: Optional[MutationCallback] = None,
        on_failure: Optional[MutationCallback] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.references = references or ReferenceCache()
        self._gateway = gateway
        self._clock = clock
        self.store = TaskStore(clock=clock)
        self.coordinator = MutationCoordinator(
            self.store,
            gateway,
            references=self.references,
            clock=clock,
            on_success=on_success,
            on_failure=on_failure,
        )
        self.reconciler = PushReconciler(self.store, channel, references=self.references)
        self._opened = False

    async def __aenter__(self) -> "TaskBoardSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def open(self) -> None:
        """Load the current task list and start applying pushes.

        If loading fails the session is closed before the error propagates.
        """
        if self._opened:
            raise RuntimeError("session already open")
        self._opened = True
        self.reconciler.start()
        try:
            tasks = await self._gateway.list_tasks()
            self.store.load(self.references.denormalize(task) for task in tasks)
        except BaseException:
            logger.warning("Task board session failed to open")
            self.close()
            raise
        logger.info("Task board session opened with %d tasks", len(self.store))

    def close(self) -> None:
        self.reconciler.close()
        self.store.dispose()
        logger.info("Task board session closed")

    # -- views ---------------------------------------------------------------

    def overdue(self, now: Optional[datetime] = None) -> list[Task]:
        now = now or self._clock()
        return self.store.get_sorted_tasks(lambda t: is_overdue(t, now), now)

    def due_soon(self, now: Optional[datetime] = None) -> list[Task]:
        """Open tasks due within the configured horizon."""
        now = now or self._clock()
        days = self.settings.due_soon_days
        return self.store.get_sorted_tasks(lambda t: is_due_soon(t, now, days), now)
