"""Terminal-state notification for task callers.

A task carries an optional ``callback_ref``. When the task reaches
COMPLETED or ERROR the engine hands a ``TaskResult`` to its notifier once.
"""

from __future__ import annotations

from typing import Protocol

import httpx

from qalloc.errors import RemoteCallError
from qalloc.logging import get_logger
from qalloc.schemas import TaskResult

logger = get_logger(__name__)


class TaskNotifier(Protocol):
    """Delivers a terminal ``TaskResult`` to whoever asked for the task."""

    async def notify(self, callback_ref: str | None, result: TaskResult) -> None: ...


class LogNotifier:
    """Notifier that only logs. Used when callers poll instead of listening."""

    async def notify(self, callback_ref: str | None, result: TaskResult) -> None:
        logger.info(
            "task_result",
            task_id=result.task_id,
            kind=result.kind,
            stage=result.stage.value,
            callback_ref=callback_ref,
        )


class WebhookNotifier:
    """POSTs the result as JSON to ``callback_ref``.

    Args:
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    async def notify(self, callback_ref: str | None, result: TaskResult) -> None:
        if not callback_ref:
            logger.debug("task_result_no_callback", task_id=result.task_id)
            return

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(callback_ref, json=result.model_dump(mode="json"))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteCallError(f"Callback to {callback_ref} failed: {exc}") from exc

        logger.info(
            "task_result_delivered",
            task_id=result.task_id,
            callback_ref=callback_ref,
            status_code=response.status_code,
        )
