from __future__ import annotations

import datetime as dt
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from django.db import transaction
from django.utils import timezone

from .exceptions import DeliveryError
from .expander import expand_due
from .invoicing import ensure_invoice
from .models import AutomationRun, AutomationSettings, CommunicationLog, Invoice, Task, TaskTemplate
from .notifications.notifier import Notifier
from .reminders import Channel, Reminder, build_reminders, due_for_reminder

logger = logging.getLogger(__name__)


@dataclass
class TickError:
    stage: str
    entity: str
    entity_id: Optional[int]
    message: str


@dataclass
class TickReport:
    as_of: dt.date
    started_at: dt.datetime
    finished_at: Optional[dt.datetime] = None
    tasks_created: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    invoices_created: int = 0
    invoices_marked_overdue: int = 0
    errors: list[TickError] = field(default_factory=list)
    run_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(self, stage: str, entity: str, entity_id: Optional[int], exc: Exception) -> None:
        self.errors.append(TickError(stage, entity, entity_id, f"{type(exc).__name__}: {exc}"))

    def as_dict(self) -> dict:
        data = asdict(self)
        data['as_of'] = self.as_of.isoformat()
        data['started_at'] = self.started_at.isoformat()
        data['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        return data


def expand_templates(as_of: dt.date, settings: AutomationSettings, report: TickReport) -> None:
    templates = TaskTemplate.objects.filter(is_active=True, is_deleted=False).exclude(
        recurrence_pattern=TaskTemplate.Recurrence.NONE
    )
    for template in templates.prefetch_related('subtasks', 'assignees'):
        try:
            with transaction.atomic():
                created = expand_due(template, as_of, settings.lookahead_days)
            report.tasks_created += len(created)
        except Exception as exc:
            logger.exception("Expanding template %s failed", template.pk)
            report.record_error('expand', 'task_template', template.pk, exc)


def _log_reminder(reminder: Reminder, *, status: str, error: str = '', at: dt.datetime) -> CommunicationLog:
    user = reminder.user
    return CommunicationLog.objects.create(
        client=reminder.client,
        recipient_user=user,
        task=reminder.task,
        communication_type=reminder.channel,
        subject=reminder.subject[:200],
        message=reminder.message,
        recipient_email=user.email if user else (reminder.address if reminder.channel == Channel.EMAIL else ''),
        recipient_phone=user.phone if user else (reminder.address if reminder.channel == Channel.WHATSAPP else ''),
        status=status,
        error=error,
        is_internal=reminder.is_internal,
        created_at=at,
    )


def dispatch_reminders(
    as_of: dt.date, settings: AutomationSettings, report: TickReport, notifier: Notifier, now: dt.datetime
) -> None:
    for task in due_for_reminder(as_of, settings.reminder_lead_days):
        try:
            reminders = build_reminders(task, settings)
        except Exception as exc:
            logger.exception("Building reminders for task %s failed", task.pk)
            report.record_error('remind', 'task', task.pk, exc)
            continue
        for reminder in reminders:
            try:
                with transaction.atomic():
                    notifier.send(reminder.channel, reminder.recipient, reminder.subject, reminder.message)
            except Exception as exc:
                if isinstance(exc, DeliveryError):
                    logger.warning("Reminder for task %s via %s failed: %s", task.pk, reminder.channel, exc)
                else:
                    logger.exception("Reminder for task %s via %s crashed", task.pk, reminder.channel)
                report.reminders_failed += 1
                report.record_error('remind', 'task', task.pk, exc)
                _log_reminder(reminder, status=CommunicationLog.Status.FAILED, error=str(exc), at=now)
                continue
            report.reminders_sent += 1
            _log_reminder(reminder, status=CommunicationLog.Status.SENT, at=now)


def invoice_completed_tasks(settings: AutomationSettings, report: TickReport, now: dt.datetime) -> None:
    """Bill completed payable tasks whose completion event never produced an invoice."""
    pending = Task.objects.filter(
        is_deleted=False, is_payable=True, status=Task.Status.COMPLETED, invoice__isnull=True
    ).values_list('pk', flat=True)
    for task_id in list(pending):
        try:
            _, created = ensure_invoice(task_id, settings=settings, now=now)
        except Exception as exc:
            logger.exception("Invoicing task %s failed", task_id)
            report.record_error('invoice', 'task', task_id, exc)
            continue
        if created:
            report.invoices_created += 1


def refresh_overdue_invoices(as_of: dt.date, report: TickReport) -> None:
    invoices = Invoice.objects.filter(status=Invoice.Status.SENT, due_date__lt=as_of)
    for invoice in invoices:
        try:
            if invoice.refresh_status(today=as_of) == Invoice.Status.OVERDUE:
                report.invoices_marked_overdue += 1
        except Exception as exc:
            logger.exception("Refreshing invoice %s failed", invoice.pk)
            report.record_error('overdue', 'invoice', invoice.pk, exc)


def _save_run(report: TickReport, trigger: str) -> AutomationRun:
    return AutomationRun.objects.create(
        as_of=report.as_of,
        trigger=trigger,
        started_at=report.started_at,
        finished_at=report.finished_at,
        tasks_created=report.tasks_created,
        reminders_sent=report.reminders_sent,
        reminders_failed=report.reminders_failed,
        invoices_created=report.invoices_created,
        invoices_marked_overdue=report.invoices_marked_overdue,
        errors=[asdict(error) for error in report.errors],
    )


def run_tick(
    now: Optional[dt.datetime] = None,
    *,
    notifier: Optional[Notifier] = None,
    trigger: str = AutomationRun.Trigger.SCHEDULE,
) -> TickReport:
    """Run one full automation cycle. Per-entity failures end up in the report."""
    now = now or timezone.now()
    as_of = timezone.localdate(now)
    notifier = notifier or Notifier()
    settings = AutomationSettings.load()
    report = TickReport(as_of=as_of, started_at=now)

    expand_templates(as_of, settings, report)
    dispatch_reminders(as_of, settings, report, notifier, now)
    invoice_completed_tasks(settings, report, now)
    refresh_overdue_invoices(as_of, report)

    report.finished_at = timezone.now()
    report.run_id = _save_run(report, trigger).pk
    logger.info(
        "Automation tick %s: %s tasks, %s reminders (%s failed), %s invoices, %s errors",
        as_of,
        report.tasks_created,
        report.reminders_sent,
        report.reminders_failed,
        report.invoices_created,
        len(report.errors),
    )
    return report


def handle_task_completed(sender, task: Task, actor=None, **kwargs) -> None:
    """Bill a task as soon as it is completed; failures are left for the next tick."""
    if not task.is_payable:
        return
    try:
        invoice, created = ensure_invoice(task.pk, actor=actor)
    except Exception:
        logger.exception("Invoicing completed task %s failed; next tick will retry", task.pk)
        return
    if created:
        logger.info("Invoice %s generated on completion of task %s", invoice.invoice_number, task.pk)
