"""Generic task state machine.

A task is a persisted record with a coarse ``stage`` and an ordered
``substage``. ``TaskEngine.advance`` loads the committed record, runs the
handler registered for its substage and commits the ``StageUpdate`` the
handler returns. Handlers only read the committed record and resolve what
they need from the store, so replaying a step after a crash starts again
from the last committed substage.

Terminal records (COMPLETED or ERROR) notify their caller once and, for
ephemeral engines, delete themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Generic, TypeVar

from sqlmodel import SQLModel

from qalloc.config import get_settings
from qalloc.db.models import SubStage, TaskStage
from qalloc.errors import ConflictError, RemoteCallError, error_info
from qalloc.logging import get_logger, task_context
from qalloc.metrics import record_task_finished, record_transition
from qalloc.schemas import TaskResult
from qalloc.store import RecordStore
from qalloc.tasks.notify import TaskNotifier, WebhookNotifier

logger = get_logger(__name__)

R = TypeVar("R", bound=SQLModel)


@dataclass
class StageUpdate:
    """The next substage and exactly the fields a handler changed."""

    substage: SubStage
    fields: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any], Awaitable[StageUpdate]]


class TaskEngine(ABC, Generic[R]):
    """Drives records of ``model`` through the substages of ``substages``."""

    kind: ClassVar[str]
    model: ClassVar[type[SQLModel]]
    substages: ClassVar[type[SubStage]]

    def __init__(
        self,
        store: RecordStore,
        notifier: TaskNotifier | None = None,
        ephemeral: bool | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.notifier = notifier or WebhookNotifier(timeout=settings.callback_timeout_seconds)
        self.ephemeral = settings.ephemeral_tasks if ephemeral is None else ephemeral
        self._handlers = self.stage_handlers()

    @abstractmethod
    def stage_handlers(self) -> dict[SubStage, Handler]:
        """Map each non-terminal substage to its handler."""

    def build_result(self, record: R) -> TaskResult:
        """Build the payload delivered when ``record`` is terminal."""
        return TaskResult(
            task_id=record.id,
            kind=self.kind,
            stage=record.stage,
            error_info=record.error_info,
        )

    async def start(self, record: R) -> R | None:
        """Persist a new task record.

        A record whose id already exists means the same task is already
        running; the existing record is returned and nothing is created.
        """
        try:
            created = await self.store.create(record)
        except ConflictError:
            logger.info("task_already_exists", task_kind=self.kind, task_id=record.id)
            return await self.store.get(self.model, record.id)

        logger.info("task_created", task_kind=self.kind, task_id=created.id)
        record_transition(self.kind, created.substage.value)
        return created

    async def advance(self, task_id: str) -> R | None:
        """Run one step of the task. Safe to call repeatedly."""
        record = await self.store.get(self.model, task_id)
        if record is None:
            logger.warning("task_not_found", task_kind=self.kind, task_id=task_id)
            return None

        with task_context(self.kind, record.id):
            if record.substage.is_terminal:
                await self._finish(record)
                return record

            handler = self._handlers[record.substage]
            logger.debug("task_step", substage=record.substage.value)
            try:
                update = await handler(record)
            except Exception as exc:
                return await self.fail(record, exc)
            return await self.commit(record, update)

    async def run(self, task_id: str) -> R | None:
        """Advance the task until it reaches a terminal substage."""
        record = await self.advance(task_id)
        while record is not None and not record.substage.is_terminal:
            record = await self.advance(task_id)
        return record

    async def commit(self, record: R, update: StageUpdate) -> R:
        """Persist ``update`` and, if it is terminal, finish the task."""
        current: SubStage = record.substage
        target = update.substage
        if target.name != "ERROR" and target.rank < current.rank:
            raise ValueError(f"Illegal transition {current.value} -> {target.value}")

        fields = dict(update.fields)
        fields["substage"] = target
        if target.name == "COMPLETED":
            fields["stage"] = TaskStage.COMPLETED
        elif target.name == "ERROR":
            fields["stage"] = TaskStage.ERROR

        updated = await self.store.patch(self.model, record.id, **fields)
        logger.info(
            "task_advanced",
            from_substage=current.value,
            to_substage=target.value,
            changed=sorted(update.fields),
        )
        record_transition(self.kind, target.value)

        if target.is_terminal:
            await self._finish(updated)
        return updated

    async def fail(self, record: R, exc: BaseException) -> R:
        """Move the task to ERROR, keeping ``exc`` as the cause."""
        logger.error(
            "task_failed",
            substage=record.substage.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return await self.commit(
            record,
            StageUpdate(self.substages["ERROR"], {"error_info": error_info(exc)}),
        )

    async def _finish(self, record: R) -> None:
        if record.callback_notified:
            if self.ephemeral:
                await self.store.delete(self.model, record.id)
            return

        await self.store.patch(self.model, record.id, callback_notified=True)
        record.callback_notified = True

        try:
            await self.notifier.notify(record.callback_ref, self.build_result(record))
        except RemoteCallError as exc:
            logger.warning("task_callback_failed", error=str(exc))

        record_task_finished(self.kind, record.stage.value, _elapsed(record.created_at))
        logger.info("task_finished", stage=record.stage.value)

        if self.ephemeral:
            await self.store.delete(self.model, record.id)


def _elapsed(created_at: datetime) -> float:
    # SQLite stores naive datetimes, treat as UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return max(0.0, datetime.now(UTC).timestamp() - created_at.timestamp())
