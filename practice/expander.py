from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Optional

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .models import Client, Task, TaskSubtask, TaskTemplate, User

logger = logging.getLogger(__name__)


def _task_from_template(template: TaskTemplate, *, due_date: dt.date, client: Optional[Client], actor) -> Task:
    return Task.objects.create(
        title=template.title,
        description=template.description,
        category=template.category,
        priority=template.priority,
        client=client,
        due_date=due_date,
        status=Task.Status.PENDING,
        is_payable=template.is_payable,
        price=template.price,
        template=template,
        created_by=actor,
    )


def _copy_subtasks(template: TaskTemplate, task: Task) -> None:
    TaskSubtask.objects.bulk_create(
        TaskSubtask(task=task, title=sub.title, description=sub.description, order=sub.order)
        for sub in template.subtasks.all()
    )


def _mark_used(template: TaskTemplate) -> None:
    TaskTemplate.objects.filter(pk=template.pk).update(
        usage_count=F('usage_count') + 1, last_used_at=timezone.now()
    )


def expand_due(template: TaskTemplate, as_of: dt.date, lookahead_days: int) -> list[Task]:
    """Create the template's tasks falling due within ``[as_of, as_of + lookahead_days]``.

    Each occurrence is inserted in its own savepoint against the
    ``(template, due_date)`` unique constraint, so re-running over an
    overlapping window, or racing another expander, never duplicates a task.
    """
    if not template.is_recurring or not template.is_active or template.is_deleted:
        return []

    horizon = as_of + dt.timedelta(days=lookahead_days)
    occurrences = template.recurrence_rule.occurrences_between(as_of, horizon)
    if not occurrences:
        return []

    existing = set(
        Task.objects.filter(template=template, due_date__in=occurrences).values_list('due_date', flat=True)
    )
    assignees = list(template.assignees.all())
    created = []
    for due_date in occurrences:
        if due_date in existing:
            continue
        try:
            with transaction.atomic():
                task = _task_from_template(template, due_date=due_date, client=template.client, actor=None)
                _copy_subtasks(template, task)
                if assignees:
                    task.assignees.set(assignees)
        except IntegrityError:
            logger.info("Template %s occurrence %s already materialized", template.pk, due_date)
            continue
        created.append(task)
        logger.info("Created task %s from template %s due %s", task.pk, template.pk, due_date)

    if created:
        _mark_used(template)
    return created


def instantiate_template(
    template: TaskTemplate,
    *,
    due_date: dt.date,
    client: Optional[Client] = None,
    assignees: Optional[Iterable[User]] = None,
    actor: Optional[User] = None,
) -> Task:
    """Create a task from a template on a user's request.

    A template holds at most one task per due date; a clash raises
    ``IntegrityError`` like any other unique-constraint violation.
    """
    with transaction.atomic():
        task = _task_from_template(template, due_date=due_date, client=client or template.client, actor=actor)
        _copy_subtasks(template, task)
        task.assignees.set(list(assignees) if assignees is not None else template.assignees.all())
        _mark_used(template)
    return task
