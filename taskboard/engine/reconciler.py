"""Folds server-pushed task events into the store.

Events handled:

- ``task_created``  ``{"task": {...}}``
- ``task_updated``  ``{"action": "created" | "updated", "task": {...}}``
- ``task_updated``  ``{"action": "deleted", "task_id": ...}``

Whether a push lands immediately, waits for an in-flight mutation, or is
dropped as stale is decided by ``TaskStore.merge``. A pushed delete is
recorded as confirmed, so nothing can bring the task back.
"""

import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from taskboard.engine.store import MergeOutcome, TaskStore
from taskboard.errors import StaleContextError
from taskboard.models import Task
from taskboard.push import TASK_CREATED, TASK_UPDATED, PushChannel
from taskboard.references import ReferenceCache

logger = logging.getLogger(__name__)

_MERGED_ACTIONS = frozenset({"created", "updated"})
_DELETED_ACTION = "deleted"


class PushReconciler:
    """Subscribes to a push channel and merges task events into a store."""

    def __init__(
        self,
        store: TaskStore,
        channel: PushChannel,
        references: Optional[ReferenceCache] = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._references = references or ReferenceCache()
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and bool(self._unsubscribers)

    def start(self) -> None:
        """Subscribe to task events. Raises RuntimeError if already started."""
        if self._started:
            raise RuntimeError("push reconciler already started")
        self._started = True
        self._unsubscribers = [
            self._channel.subscribe(TASK_CREATED, self._on_created),
            self._channel.subscribe(TASK_UPDATED, self._on_updated),
        ]
        logger.info("Push reconciler listening")

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        if self._unsubscribers:
            logger.info("Push reconciler stopped")
        self._unsubscribers = []

    # -- handlers ------------------------------------------------------------

    def _on_created(self, payload: dict[str, Any]) -> None:
        self.handle(TASK_CREATED, payload)

    def _on_updated(self, payload: dict[str, Any]) -> None:
        self.handle(TASK_UPDATED, payload)

    def handle(self, event: str, payload: dict[str, Any]) -> Optional[MergeOutcome]:
        """Process one event directly, bypassing the channel."""
        if event not in (TASK_CREATED, TASK_UPDATED):
            logger.debug("Ignoring unknown event %r", event)
            return None
        if not isinstance(payload, dict):
            logger.warning("Dropping %s with a %s payload", event, type(payload).__name__)
            return None
        if event == TASK_CREATED:
            return self._merge(event, payload)
        action = payload.get("action", "updated")
        if action == _DELETED_ACTION:
            return self._remove(event, payload)
        if action not in _MERGED_ACTIONS:
            logger.debug("Ignoring %s action %r", event, action)
            return None
        return self._merge(event, payload)

    def _remove(self, event: str, payload: dict[str, Any]) -> Optional[MergeOutcome]:
        task_id = payload.get("task_id")
        if isinstance(task_id, str) and task_id.isdigit():
            task_id = int(task_id)
        if isinstance(task_id, bool) or not isinstance(task_id, int):
            logger.warning("Dropping %s delete without a task id: %r", event, task_id)
            return None
        try:
            self._store.confirm_removed(task_id)
        except StaleContextError:
            logger.debug("Dropping %s delete of task %s: store disposed", event, task_id)
            return None
        logger.debug("%s deleted task %s", event, task_id)
        return MergeOutcome.applied

    def _merge(self, event: str, payload: dict[str, Any]) -> Optional[MergeOutcome]:
        raw = payload.get("task")
        if raw is None:
            logger.warning("Dropping %s without a task payload", event)
            return None
        try:
            task = Task.model_validate(raw)
        except PydanticValidationError as exc:
            logger.warning("Dropping invalid %s payload: %s", event, exc)
            return None
        if task.is_placeholder:
            logger.warning("Dropping %s for unsaved task %s", event, task.id)
            return None

        try:
            outcome = self._store.merge(self._references.denormalize(task))
        except StaleContextError:
            logger.debug("Dropping %s for task %s: store disposed", event, task.id)
            return None
        logger.debug("%s for task %s: %s", event, task.id, outcome.value)
        return outcome
