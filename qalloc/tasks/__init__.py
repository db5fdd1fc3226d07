"""Task state machine, fan-out join and caller notification."""

from qalloc.tasks.engine import StageUpdate, TaskEngine
from qalloc.tasks.join import JoinCounter, join_all
from qalloc.tasks.notify import LogNotifier, TaskNotifier, WebhookNotifier

__all__ = [
    "StageUpdate",
    "TaskEngine",
    "JoinCounter",
    "join_all",
    "LogNotifier",
    "TaskNotifier",
    "WebhookNotifier",
]
