from __future__ import annotations

import logging
from typing import Optional

from django.db import transaction
from django.dispatch import Signal
from django.utils import timezone

from .exceptions import InvalidTransition, NotFound
from .models import Task, User
from .notifications.tasks import notify_task_change

logger = logging.getLogger(__name__)

Status = Task.Status

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    Status.PENDING: frozenset({Status.IN_PROGRESS, Status.COMPLETED, Status.CANCELLED}),
    Status.IN_PROGRESS: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.CANCELLED: frozenset(),
}

# Sent after commit with ``task`` and ``actor`` when a task lands on completed.
task_completed = Signal()


def allowed_targets(status: str) -> frozenset[str]:
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_terminal(status: str) -> bool:
    return status in ALLOWED_TRANSITIONS and not ALLOWED_TRANSITIONS[status]


def transition(task: Task, target_status: str, *, actor: Optional[User] = None) -> Task:
    """Move ``task`` to ``target_status`` along an allowed edge.

    The row is locked and re-read so concurrent callers validate against the
    committed status; only the caller that actually completes the task
    emits ``task_completed``.
    """
    with transaction.atomic():
        locked = Task.objects.select_for_update().filter(pk=task.pk, is_deleted=False).first()
        if locked is None:
            raise NotFound(f"Task {task.pk} does not exist or was deleted.")
        old_status = locked.status
        if target_status not in allowed_targets(old_status):
            raise InvalidTransition(old_status, target_status)

        locked.status = target_status
        update_fields = ['status', 'updated_at']
        if target_status == Status.COMPLETED:
            locked.completed_at = timezone.now()
            update_fields.append('completed_at')
        locked.save(update_fields=update_fields)

        if target_status == Status.COMPLETED:
            transaction.on_commit(lambda: task_completed.send(sender=Task, task=locked, actor=actor))

    logger.info("Task %s moved %s -> %s", locked.pk, old_status, target_status)
    task.status = locked.status
    task.completed_at = locked.completed_at
    notify_task_change(
        locked,
        actor=actor,
        message=f"Task \"{locked.title}\" moved to {locked.get_status_display()}.",
        category='task_status_changed',
    )
    return locked
