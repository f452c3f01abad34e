from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from .exceptions import AlreadyInvoiced, NotEligible, NotFound
from .models import AutomationSettings, Invoice, Task, User

logger = logging.getLogger(__name__)

MAX_NUMBER_ATTEMPTS = 5


def _active_invoice_for(task: Task) -> Optional[Invoice]:
    return Invoice.objects.filter(task=task).exclude(status=Invoice.Status.CANCELLED).first()


def _insert_invoice(
    task: Task, *, settings: AutomationSettings, actor: Optional[User], today: dt.date
) -> Optional[Invoice]:
    """Insert the task's invoice, or return None if another generator won the race."""
    last_error = None
    for _ in range(MAX_NUMBER_ATTEMPTS):
        invoice = Invoice(
            task=task,
            client=task.client,
            amount=task.price,
            tax_percent=settings.tax_percent,
            status=Invoice.Status.DRAFT,
            issue_date=today,
            due_date=today + dt.timedelta(days=settings.payment_terms_days),
            description=f"{task.get_category_display()}: {task.title}",
            created_by=actor,
        )
        try:
            with transaction.atomic():
                invoice.save()
            return invoice
        except IntegrityError as exc:
            if _active_invoice_for(task) is not None:
                return None
            last_error = exc
            logger.warning("Invoice number collision for task %s, retrying", task.pk)
    raise last_error


def generate_for_task(
    task_id: int,
    *,
    actor: Optional[User] = None,
    settings: Optional[AutomationSettings] = None,
    now: Optional[dt.datetime] = None,
) -> Invoice:
    """Bill a completed payable task exactly once.

    Raises NotFound, NotEligible, or AlreadyInvoiced (carrying the existing
    invoice). The task row is locked for the duration and the
    active-invoice unique constraint decides any remaining race.
    """
    settings = settings or AutomationSettings.load()
    today = timezone.localdate(now) if now else timezone.localdate()
    existing = None
    with transaction.atomic():
        task = Task.objects.select_for_update().filter(pk=task_id, is_deleted=False).first()
        if task is None:
            raise NotFound(f"Task {task_id} does not exist or was deleted.")
        if not task.is_payable:
            raise NotEligible(f"Task {task_id} is not payable.")
        if task.status != Task.Status.COMPLETED:
            raise NotEligible(f"Task {task_id} is {task.status}, not completed.")

        if task.invoice_id:
            existing = task.invoice
        else:
            existing = _active_invoice_for(task)
            invoice = None
            if existing is None:
                invoice = _insert_invoice(task, settings=settings, actor=actor, today=today)
                if invoice is None:
                    existing = _active_invoice_for(task)
            task.invoice = existing or invoice
            task.save(update_fields=['invoice', 'updated_at'])

    if existing is not None:
        raise AlreadyInvoiced(existing)
    logger.info("Created invoice %s for task %s (total %s)", invoice.invoice_number, task.pk, invoice.total)
    return invoice


def ensure_invoice(task_id: int, **kwargs) -> tuple[Invoice, bool]:
    """Like generate_for_task, but an existing invoice counts as success."""
    try:
        return generate_for_task(task_id, **kwargs), True
    except AlreadyInvoiced as exc:
        return exc.invoice, False
