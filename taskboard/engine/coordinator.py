"""Mutation coordinator: optimistic create, update, delete and toggle.

Every operation takes the same path:

1. validate the input (REJECTED on failure, nothing is applied),
2. write the optimistic record to the store and hold its id (APPLIED),
3. call the remote gateway (PENDING),
4. commit the server's record, or roll back exactly
   (COMMITTED / ROLLED_BACK).

Overlapping mutations on one id: the last one started wins. An earlier
mutation that resolves while a later one is in flight does not touch the
store. It hands its outcome to the next mutation as that mutation's new
rollback base instead.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from taskboard.engine.mutation import (
    Mutation,
    MutationKind,
    MutationState,
    PlaceholderIds,
)
from taskboard.engine.ordering import utc_now
from taskboard.engine.store import TaskStore, is_newer
from taskboard.errors import (
    StaleContextError,
    TaskBoardError,
    TransportError,
    ValidationError,
)
from taskboard.gateway import RemoteTaskGateway
from taskboard.models import (
    Task,
    TaskChanges,
    TaskDraft,
    TaskId,
    TaskStatus,
    is_placeholder_id,
)
from taskboard.references import ReferenceCache

logger = logging.getLogger(__name__)

MutationCallback = Callable[[Mutation], None]
RemoteCall = Callable[[], Awaitable[Optional[Task]]]

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(p) for p in error["loc"]) or "input"
        parts.append(f"{field}: {error['msg']}")
    return "; ".join(parts)


class MutationCoordinator:
    """Runs user intents as optimistic mutations against a TaskStore.

    Args:
        store: The store the list renders from.
        gateway: Remote side of every mutation.
        references: Project/user cache for display denormalisation.
        clock: Returns the current aware UTC time. Used for placeholder
            ids, creation dates and optimistic completion dates.
        on_success: Called with every COMMITTED mutation.
        on_failure: Called with every ROLLED_BACK or REJECTED mutation;
            ``mutation.error.user_message`` is ready to show.
    """

    def __init__(
        self,
        store: TaskStore,
        gateway: RemoteTaskGateway,
        references: Optional[ReferenceCache] = None,
        clock: Callable[[], datetime] = utc_now,
        on_success: Optional[MutationCallback] = None,
        on_failure: Optional[MutationCallback] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._references = references or ReferenceCache()
        self._clock = clock
        self._on_success = on_success
        self._on_failure = on_failure
        self._placeholders = PlaceholderIds(clock)
        self._sequence = itertools.count(1)
        self._latest: dict[TaskId, int] = {}
        self._inflight: dict[TaskId, list[Mutation]] = {}

    def in_flight(self, task_id: Optional[TaskId] = None) -> list[Mutation]:
        """Return pending mutations, for one id or for all, oldest first."""
        if task_id is not None:
            return list(self._inflight.get(task_id, []))
        pending = [m for ms in self._inflight.values() for m in ms]
        return sorted(pending, key=lambda m: m.sequence)

    # -- entry points --------------------------------------------------------

    async def create(self, draft: Union[TaskDraft, Mapping[str, Any]]) -> Mutation:
        """Create a task under a placeholder id until the server assigns one."""
        mutation = Mutation(MutationKind.create)
        try:
            draft = self._coerce(TaskDraft, draft)
            now = self._clock()
            fields = draft.model_dump()
            if draft.status is TaskStatus.completed:
                fields["completion_date"] = now
            optimistic = self._references.denormalize(
                self._validated(
                    {
                        **fields,
                        "id": self._placeholders.next(),
                        "creation_date": now,
                        "optimistic": True,
                    }
                )
            )
        except ValidationError as exc:
            return self._reject(mutation, exc)
        payload = draft.payload()
        return await self._run(mutation, optimistic, lambda: self._gateway.create_task(payload))

    async def update(
        self, task_id: TaskId, changes: Union[TaskChanges, Mapping[str, Any]]
    ) -> Mutation:
        """Apply a partial change to an existing task."""
        mutation = Mutation(MutationKind.update, task_id)
        try:
            changes = self._coerce(TaskChanges, changes)
            updates = changes.model_dump(exclude_unset=True)
            if not updates:
                raise ValidationError("no changes given", user_message="Nothing to update")
            optimistic = self._build(self._target(task_id), updates)
        except ValidationError as exc:
            return self._reject(mutation, exc)
        payload = changes.payload()
        return await self._run(
            mutation, optimistic, lambda: self._gateway.update_task(task_id, payload)
        )

    async def toggle(self, task_id: TaskId, completed: Optional[bool] = None) -> Mutation:
        """Flip completion, or set it to *completed* when given."""
        mutation = Mutation(MutationKind.toggle, task_id)
        try:
            base = self._target(task_id)
            target = (not base.completed) if completed is None else completed
            optimistic = self._build(
                base,
                {
                    "completed": target,
                    "status": TaskStatus.completed if target else TaskStatus.pending,
                },
            )
        except ValidationError as exc:
            return self._reject(mutation, exc)
        return await self._run(
            mutation, optimistic, lambda: self._gateway.toggle_completion(task_id, target)
        )

    async def remove(self, task_id: TaskId) -> Mutation:
        """Delete a task. Deleting one that is already gone succeeds."""
        mutation = Mutation(MutationKind.delete, task_id)
        if is_placeholder_id(task_id):
            return self._reject(mutation, self._unsaved(task_id))
        return await self._run(mutation, None, lambda: self._gateway.delete_task(task_id))

    # -- lifecycle -----------------------------------------------------------

    async def _run(
        self, mutation: Mutation, optimistic: Optional[Task], remote: RemoteCall
    ) -> Mutation:
        task_id = optimistic.id if optimistic is not None else mutation.task_id
        mutation.task_id = task_id
        try:
            if optimistic is None:
                snapshot = self._store.snapshot()
                self._store.remove(task_id)
            else:
                snapshot = self._store.apply(optimistic)
            self._store.hold(task_id, mutation.id)
        except StaleContextError:
            logger.debug("Store disposed before %s could apply", mutation.kind.value)
            mutation.advance(MutationState.discarded)
            return mutation

        mutation.snapshot = snapshot
        mutation.optimistic = optimistic
        mutation.sequence = next(self._sequence)
        self._latest[task_id] = mutation.sequence
        self._inflight[task_id] = [*self._inflight.get(task_id, []), mutation]
        mutation.advance(MutationState.applied)
        logger.debug("Applied %s on task %s", mutation.kind.value, task_id)

        mutation.advance(MutationState.pending)
        try:
            server_task = await remote()
        except TaskBoardError as exc:
            self._fail(mutation, exc)
        except asyncio.CancelledError:
            self._fail(mutation, TransportError(f"{mutation.kind.value} was cancelled"))
            raise
        except Exception as exc:
            logger.exception("Unexpected gateway failure during %s", mutation.kind.value)
            self._fail(mutation, TransportError(f"{mutation.kind.value} failed: {exc}"))
        else:
            self._succeed(mutation, server_task)
        finally:
            self._finish(mutation)

        self._notify(mutation)
        return mutation

    def _succeed(self, mutation: Mutation, server_task: Optional[Task]) -> None:
        if self._store.disposed:
            self._discard(mutation)
            return
        deleting = mutation.kind is MutationKind.delete
        outcome = None if deleting or server_task is None else self._references.denormalize(server_task)

        if self._superseded(mutation):
            mutation.task = mutation.base() if deleting else outcome
            self._rebase_next(mutation, outcome)
            mutation.advance(MutationState.committed)
            logger.debug(
                "%s on task %s committed behind a later mutation",
                mutation.kind.value,
                mutation.task_id,
            )
            return

        try:
            if deleting:
                self._store.confirm_removed(mutation.task_id)
                mutation.task = mutation.base()
            else:
                mutation.task = self._store.commit(mutation.task_id, outcome)
        except StaleContextError:
            self._discard(mutation)
            return
        mutation.advance(MutationState.committed)
        logger.info("Committed %s on task %s", mutation.kind.value, mutation.task_id)

    def _fail(self, mutation: Mutation, error: TaskBoardError) -> None:
        if self._store.disposed:
            self._discard(mutation)
            return
        mutation.error = error

        if self._superseded(mutation):
            self._rebase_next(mutation, mutation.base())
            mutation.advance(MutationState.rolled_back)
            logger.warning(
                "%s on task %s failed behind a later mutation: %s",
                mutation.kind.value,
                mutation.task_id,
                error,
            )
            return

        try:
            self._store.rollback(mutation.snapshot, ids=[mutation.task_id])
        except StaleContextError:
            self._discard(mutation)
            return
        mutation.advance(MutationState.rolled_back)
        logger.warning(
            "Rolled back %s on task %s: %s", mutation.kind.value, mutation.task_id, error
        )

    def _finish(self, mutation: Mutation) -> None:
        task_id = mutation.task_id
        remaining = [m for m in self._inflight.get(task_id, []) if m is not mutation]
        if remaining:
            self._inflight[task_id] = remaining
        else:
            self._inflight.pop(task_id, None)
            self._latest.pop(task_id, None)
        self._store.release(task_id, mutation.id)

    def _superseded(self, mutation: Mutation) -> bool:
        return self._latest.get(mutation.task_id) != mutation.sequence

    def _rebase_next(self, mutation: Mutation, outcome: Optional[Task]) -> None:
        """Make *outcome* the rollback base of the next in-flight mutation.

        A base that is already a confirmed state is only replaced by a
        newer confirmed one.
        """
        successor = next(
            (m for m in self._inflight.get(mutation.task_id, []) if m.sequence > mutation.sequence),
            None,
        )
        if successor is None:
            return
        current = successor.base()
        if current is not None and not current.optimistic:
            if outcome is None or outcome.optimistic or not is_newer(outcome, current):
                return
        successor.rebase(outcome)

    def _discard(self, mutation: Mutation) -> None:
        mutation.error = None
        mutation.advance(MutationState.discarded)
        logger.debug(
            "Dropped %s response for task %s: store disposed",
            mutation.kind.value,
            mutation.task_id,
        )

    def _reject(self, mutation: Mutation, error: ValidationError) -> Mutation:
        mutation.error = error
        mutation.advance(MutationState.rejected)
        logger.info("Rejected %s: %s", mutation.kind.value, error)
        self._notify(mutation)
        return mutation

    def _notify(self, mutation: Mutation) -> None:
        if mutation.state is MutationState.committed:
            callback = self._on_success
        elif mutation.state in (MutationState.rolled_back, MutationState.rejected):
            callback = self._on_failure
        else:
            return
        if callback is None:
            return
        try:
            callback(mutation)
        except Exception:
            logger.exception("Mutation callback failed for %r", mutation)

    # -- input handling ------------------------------------------------------

    def _coerce(self, model: type[ModelT], value: Any) -> ModelT:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc

    def _target(self, task_id: TaskId) -> Task:
        if is_placeholder_id(task_id):
            raise self._unsaved(task_id)
        task = self._store.get(task_id)
        if task is None:
            raise ValidationError(f"unknown task {task_id!r}", user_message="Task not found")
        return task

    def _unsaved(self, task_id: TaskId) -> ValidationError:
        return ValidationError(
            f"task {task_id!r} has not been saved yet",
            user_message="This task is still being saved",
        )

    def _build(self, base: Task, updates: Mapping[str, Any]) -> Task:
        """Optimistic record: *base* with *updates*, completion date mirrored."""
        fields = dict(updates)
        if "completed" in fields and fields["completed"] != base.completed:
            fields["completion_date"] = self._clock() if fields["completed"] else None
        task = self._validated({**base.model_dump(), **fields, "optimistic": True})
        return self._references.denormalize(task)

    def _validated(self, data: dict[str, Any]) -> Task:
        try:
            return Task.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc
