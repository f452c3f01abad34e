import datetime as dt
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import IntegrityError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from . import expander
from .admin import InvoiceAdmin, InvoiceAdminForm
from .automation import TickReport, dispatch_reminders, run_tick
from .exceptions import AlreadyInvoiced, DeliveryError, InvalidTransition, NotEligible, NotFound
from .expander import expand_due, instantiate_template
from .invoicing import ensure_invoice, generate_for_task
from .lifecycle import allowed_targets, is_terminal, task_completed, transition
from .models import (
    AutomationRun,
    AutomationSettings,
    Category,
    Client,
    CommunicationLog,
    Invoice,
    Notification,
    Task,
    TaskTemplate,
    TemplateSubtask,
    WhatsAppConfig,
)
from .notifications.notifier import Ack, Notifier
from .recurrence import RecurrenceRule, add_months
from .reminders import build_reminders, due_for_reminder

User = get_user_model()

JAN_1 = dt.date(2025, 1, 1)


def at_nine(day):
    return timezone.make_aware(dt.datetime.combine(day, dt.time(hour=9)))


def make_user(username, role=User.Roles.STAFF, **extra):
    return User.objects.create_user(username=username, password='test-pass-123', role=role, **extra)


def make_task(**kwargs):
    defaults = {'title': 'GST return', 'due_date': JAN_1, 'category': Category.GST_FILING}
    defaults.update(kwargs)
    assignees = defaults.pop('assignees', [])
    task = Task.objects.create(**defaults)
    if assignees:
        task.assignees.set(assignees)
    return task


def make_template(**kwargs):
    defaults = {
        'title': 'Monthly GSTR-3B',
        'category': Category.GST_FILING,
        'recurrence_pattern': TaskTemplate.Recurrence.MONTHLY,
        'recurrence_anchor': dt.date(2025, 1, 5),
    }
    defaults.update(kwargs)
    return TaskTemplate.objects.create(**defaults)


class FakeNotifier:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = list(fail_for)

    def send(self, channel, recipient, subject, message):
        if recipient in self.fail_for:
            raise DeliveryError(f"{recipient} is unreachable")
        self.sent.append((channel, recipient, subject))
        return Ack(channel, str(recipient))


class RecurrenceRuleTests(SimpleTestCase):
    def test_monthly_anchor_on_31st_clamps_without_drifting(self):
        rule = RecurrenceRule('monthly', dt.date(2025, 1, 31))
        self.assertEqual(
            rule.occurrences_between(dt.date(2025, 1, 1), dt.date(2025, 5, 31)),
            [
                dt.date(2025, 1, 31),
                dt.date(2025, 2, 28),
                dt.date(2025, 3, 31),
                dt.date(2025, 4, 30),
                dt.date(2025, 5, 31),
            ],
        )

    def test_yearly_leap_day_falls_back_to_28th(self):
        rule = RecurrenceRule('yearly', dt.date(2024, 2, 29))
        self.assertEqual(rule.occurrence(1), dt.date(2025, 2, 28))
        self.assertEqual(rule.occurrence(4), dt.date(2028, 2, 29))
        self.assertEqual(rule.next_after(dt.date(2025, 3, 1)), dt.date(2026, 2, 28))

    def test_weekly_and_daily_windows(self):
        weekly = RecurrenceRule('weekly', dt.date(2025, 1, 6))
        self.assertEqual(
            weekly.occurrences_between(dt.date(2025, 1, 7), dt.date(2025, 1, 31)),
            [dt.date(2025, 1, 13), dt.date(2025, 1, 20), dt.date(2025, 1, 27)],
        )
        daily = RecurrenceRule('daily', dt.date(2025, 1, 30))
        self.assertEqual(
            daily.occurrences_between(dt.date(2025, 1, 1), dt.date(2025, 2, 1)),
            [dt.date(2025, 1, 30), dt.date(2025, 1, 31), dt.date(2025, 2, 1)],
        )

    def test_next_after_is_strict(self):
        rule = RecurrenceRule('monthly', dt.date(2025, 1, 5))
        self.assertEqual(rule.next_after(dt.date(2025, 1, 5)), dt.date(2025, 2, 5))
        self.assertEqual(rule.next_after(dt.date(2024, 12, 1)), dt.date(2025, 1, 5))

    def test_none_pattern_has_no_occurrences(self):
        rule = RecurrenceRule('none')
        self.assertFalse(rule.is_recurring)
        self.assertEqual(rule.occurrences_between(JAN_1, dt.date(2025, 12, 31)), [])
        self.assertIsNone(rule.next_after(JAN_1))

    def test_invalid_rules_are_rejected(self):
        with self.assertRaises(ValueError):
            RecurrenceRule('fortnightly', JAN_1)
        with self.assertRaises(ValueError):
            RecurrenceRule('monthly')

    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(dt.date(2024, 1, 31), 1), dt.date(2024, 2, 29))
        self.assertEqual(add_months(dt.date(2025, 11, 30), 3), dt.date(2026, 2, 28))


class TaskLifecycleTests(TestCase):
    def setUp(self):
        self.partner = make_user('partner', User.Roles.PARTNER)
        self.staff = make_user('staff')

    def test_edge_table(self):
        self.assertEqual(
            allowed_targets(Task.Status.PENDING),
            {Task.Status.IN_PROGRESS, Task.Status.COMPLETED, Task.Status.CANCELLED},
        )
        self.assertTrue(is_terminal(Task.Status.COMPLETED))
        self.assertTrue(is_terminal(Task.Status.CANCELLED))
        self.assertFalse(is_terminal(Task.Status.IN_PROGRESS))

    def test_pending_to_in_progress_to_completed(self):
        task = make_task()
        transition(task, Task.Status.IN_PROGRESS, actor=self.partner)
        task.refresh_from_db()
        self.assertEqual(task.status, Task.Status.IN_PROGRESS)
        self.assertIsNone(task.completed_at)

        transition(task, Task.Status.COMPLETED, actor=self.partner)
        task.refresh_from_db()
        self.assertEqual(task.status, Task.Status.COMPLETED)
        self.assertIsNotNone(task.completed_at)

    def test_terminal_states_cannot_be_left(self):
        for terminal in (Task.Status.COMPLETED, Task.Status.CANCELLED):
            task = make_task(status=terminal)
            for target in Task.Status.values:
                with self.assertRaises(InvalidTransition):
                    transition(task, target)
            task.refresh_from_db()
            self.assertEqual(task.status, terminal)

    def test_self_and_unknown_transitions_are_rejected(self):
        task = make_task()
        with self.assertRaises(InvalidTransition):
            transition(task, Task.Status.PENDING)
        with self.assertRaises(InvalidTransition):
            transition(task, 'archived')

    def test_validates_against_stored_status(self):
        task = make_task()
        Task.objects.filter(pk=task.pk).update(status=Task.Status.CANCELLED)
        with self.assertRaises(InvalidTransition):
            transition(task, Task.Status.COMPLETED)

    def test_deleted_task_is_not_found(self):
        task = make_task()
        task.soft_delete()
        with self.assertRaises(NotFound):
            transition(task, Task.Status.IN_PROGRESS)

    def test_completion_signal_fires_once_after_commit(self):
        received = []

        def receiver(sender, task, actor=None, **kwargs):
            received.append((task.pk, actor))

        task_completed.connect(receiver, weak=False)
        self.addCleanup(task_completed.disconnect, receiver)

        task = make_task()
        with self.captureOnCommitCallbacks(execute=True):
            transition(task, Task.Status.COMPLETED, actor=self.partner)
        self.assertEqual(received, [(task.pk, self.partner)])

        with self.assertRaises(InvalidTransition):
            transition(task, Task.Status.COMPLETED, actor=self.partner)
        self.assertEqual(len(received), 1)

    def test_cancelling_does_not_signal_completion(self):
        task = make_task(is_payable=True, price=Decimal('1000'))
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            transition(task, Task.Status.CANCELLED)
        self.assertEqual(callbacks, [])
        self.assertFalse(Invoice.objects.exists())

    def test_completing_payable_task_bills_it_on_commit(self):
        task = make_task(is_payable=True, price=Decimal('5000'))
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            transition(task, Task.Status.COMPLETED, actor=self.partner)
        self.assertEqual(len(callbacks), 1)
        self.assertFalse(Invoice.objects.exists())

        callbacks[0]()
        task.refresh_from_db()
        self.assertIsNotNone(task.invoice)
        self.assertEqual(task.invoice.total, Decimal('5900.00'))
        self.assertEqual(task.invoice.created_by, self.partner)

    def test_status_change_notifies_other_assignees(self):
        task = make_task(assignees=[self.partner, self.staff])
        transition(task, Task.Status.IN_PROGRESS, actor=self.partner)
        notes = Notification.objects.filter(category='task_status_changed')
        self.assertEqual([n.user for n in notes], [self.staff])
        self.assertEqual(notes[0].related_url, f"/tasks/{task.pk}/")


class TemplateExpanderTests(TestCase):
    def setUp(self):
        self.accountant = make_user('accountant', User.Roles.ACCOUNTANT)
        self.client_obj = Client.objects.create(name='Acme Traders', email='accounts@acme.test')
        self.template = make_template(client=self.client_obj, is_payable=True, price=Decimal('2500'))
        self.template.assignees.set([self.accountant])
        TemplateSubtask.objects.create(template=self.template, title='Collect sales register', order=1)
        TemplateSubtask.objects.create(template=self.template, title='File return', order=2)

    def test_monthly_template_creates_one_task_then_nothing(self):
        created = expand_due(self.template, JAN_1, 10)
        self.assertEqual(len(created), 1)
        task = created[0]
        self.assertEqual(task.due_date, dt.date(2025, 1, 5))
        self.assertEqual(task.status, Task.Status.PENDING)
        self.assertEqual(task.category, Category.GST_FILING)
        self.assertEqual(task.template, self.template)

        self.assertEqual(expand_due(self.template, JAN_1, 10), [])
        self.assertEqual(Task.objects.filter(template=self.template).count(), 1)

    def test_overlapping_windows_never_duplicate(self):
        first = expand_due(self.template, JAN_1, 40)
        self.assertEqual([t.due_date for t in first], [dt.date(2025, 1, 5), dt.date(2025, 2, 5)])
        second = expand_due(self.template, dt.date(2025, 1, 20), 30)
        self.assertEqual(second, [])
        due_dates = list(Task.objects.filter(template=self.template).values_list('due_date', flat=True))
        self.assertEqual(len(due_dates), len(set(due_dates)))

    def test_copies_template_details(self):
        task = expand_due(self.template, JAN_1, 10)[0]
        self.assertEqual(task.client, self.client_obj)
        self.assertTrue(task.is_payable)
        self.assertEqual(task.price, Decimal('2500'))
        self.assertEqual(list(task.assignees.all()), [self.accountant])
        self.assertEqual(
            list(task.subtasks.values_list('title', flat=True)),
            ['Collect sales register', 'File return'],
        )
        self.template.refresh_from_db()
        self.assertEqual(self.template.usage_count, 1)
        self.assertIsNotNone(self.template.last_used_at)

    def test_skips_non_recurring_inactive_and_deleted_templates(self):
        one_off = make_template(title='Audit', recurrence_pattern=TaskTemplate.Recurrence.NONE, recurrence_anchor=None)
        inactive = make_template(title='Old TDS', is_active=False)
        deleted = make_template(title='Old ROC', is_deleted=True)
        for template in (one_off, inactive, deleted):
            self.assertEqual(expand_due(template, JAN_1, 30), [])
        self.assertFalse(Task.objects.exists())

    def test_deleted_instance_keeps_its_slot(self):
        task = expand_due(self.template, JAN_1, 10)[0]
        task.soft_delete()
        self.assertEqual(expand_due(self.template, JAN_1, 10), [])

    def test_lost_insert_race_is_skipped(self):
        with mock.patch('practice.expander._task_from_template', side_effect=IntegrityError('duplicate')):
            self.assertEqual(expand_due(self.template, JAN_1, 10), [])
        self.template.refresh_from_db()
        self.assertEqual(self.template.usage_count, 0)

    def test_instantiate_template_on_request(self):
        other = make_user('other')
        task = instantiate_template(
            self.template, due_date=dt.date(2025, 3, 15), assignees=[other], actor=self.accountant
        )
        self.assertEqual(task.template, self.template)
        self.assertEqual(task.created_by, self.accountant)
        self.assertEqual(list(task.assignees.all()), [other])
        self.assertEqual(task.subtasks.count(), 2)

        with self.assertRaises(IntegrityError):
            instantiate_template(self.template, due_date=dt.date(2025, 3, 15))
        self.assertEqual(Task.objects.filter(template=self.template).count(), 1)


class InvoiceGeneratorTests(TestCase):
    def setUp(self):
        self.partner = make_user('partner', User.Roles.PARTNER)
        self.client_obj = Client.objects.create(name='Acme Traders')
        self.task = make_task(
            client=self.client_obj, is_payable=True, price=Decimal('5000'), status=Task.Status.COMPLETED
        )

    def test_bills_completed_task_once(self):
        invoice = generate_for_task(self.task.pk, actor=self.partner, now=at_nine(JAN_1))
        self.assertEqual(invoice.amount, Decimal('5000'))
        self.assertEqual(invoice.tax_amount, Decimal('900.00'))
        self.assertEqual(invoice.total, Decimal('5900.00'))
        self.assertEqual(invoice.status, Invoice.Status.DRAFT)
        self.assertEqual(invoice.client, self.client_obj)
        self.assertEqual(invoice.issue_date, JAN_1)
        self.assertEqual(invoice.due_date, dt.date(2025, 1, 31))
        self.assertTrue(invoice.invoice_number.startswith('INV-2025-'))
        self.task.refresh_from_db()
        self.assertEqual(self.task.invoice, invoice)

        with self.assertRaises(AlreadyInvoiced) as ctx:
            generate_for_task(self.task.pk)
        self.assertEqual(ctx.exception.invoice, invoice)
        self.assertEqual(Invoice.objects.filter(task=self.task).count(), 1)

    def test_uses_firm_tax_rate(self):
        settings = AutomationSettings.load()
        settings.tax_percent = Decimal('12.00')
        settings.save()
        invoice = generate_for_task(self.task.pk)
        self.assertEqual(invoice.tax_amount, Decimal('600.00'))
        self.assertEqual(invoice.total, Decimal('5600.00'))

    def test_ineligible_tasks(self):
        unpaid = make_task(is_payable=False, status=Task.Status.COMPLETED)
        open_task = make_task(is_payable=True, price=Decimal('100'))
        for task in (unpaid, open_task):
            with self.assertRaises(NotEligible):
                generate_for_task(task.pk)
        self.assertFalse(Invoice.objects.exists())

    def test_missing_or_deleted_task(self):
        with self.assertRaises(NotFound):
            generate_for_task(999999)
        self.task.soft_delete()
        with self.assertRaises(NotFound):
            generate_for_task(self.task.pk)

    def test_repairs_missing_back_reference(self):
        existing = Invoice.objects.create(
            task=self.task, client=self.client_obj, amount=Decimal('5000'), issue_date=JAN_1, due_date=JAN_1
        )
        with self.assertRaises(AlreadyInvoiced) as ctx:
            generate_for_task(self.task.pk)
        self.assertEqual(ctx.exception.invoice, existing)
        self.task.refresh_from_db()
        self.assertEqual(self.task.invoice, existing)

    def test_lost_insert_race_returns_winner(self):
        rival = Invoice.objects.create(
            task=self.task, client=self.client_obj, amount=Decimal('5000'), issue_date=JAN_1, due_date=JAN_1
        )
        # The first lookup misses the rival, as if it committed right after the check.
        with mock.patch('practice.invoicing._active_invoice_for', side_effect=[None, rival, rival]):
            with self.assertRaises(AlreadyInvoiced) as ctx:
                generate_for_task(self.task.pk)
        self.assertEqual(ctx.exception.invoice, rival)
        self.assertEqual(Invoice.objects.filter(task=self.task).count(), 1)
        self.task.refresh_from_db()
        self.assertEqual(self.task.invoice, rival)

    def test_cancelled_invoice_without_back_reference_does_not_block(self):
        old = Invoice.objects.create(
            task=self.task, client=self.client_obj, amount=Decimal('5000'), issue_date=JAN_1, due_date=JAN_1
        )
        old.cancel()
        invoice, created = ensure_invoice(self.task.pk)
        self.assertTrue(created)
        self.assertNotEqual(invoice, old)

    def test_ensure_invoice_treats_existing_as_success(self):
        first, created = ensure_invoice(self.task.pk)
        self.assertTrue(created)
        again, created = ensure_invoice(self.task.pk)
        self.assertFalse(created)
        self.assertEqual(again, first)

    @override_settings(INVOICE_PREFIX='CAF')
    def test_invoice_prefix_from_settings(self):
        invoice = generate_for_task(self.task.pk, now=at_nine(JAN_1))
        self.assertRegex(invoice.invoice_number, r'^CAF-2025-[0-9A-F]{8}$')


class InvoiceStatusTests(TestCase):
    def make_invoice(self, **kwargs):
        defaults = {'amount': Decimal('1000'), 'issue_date': dt.date(2024, 11, 1), 'due_date': dt.date(2024, 12, 1)}
        defaults.update(kwargs)
        return Invoice.objects.create(**defaults)

    def test_sent_invoice_past_due_becomes_overdue(self):
        invoice = self.make_invoice(status=Invoice.Status.SENT)
        self.assertEqual(invoice.refresh_status(today=JAN_1), Invoice.Status.OVERDUE)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.OVERDUE)

    def test_draft_and_paid_invoices_are_left_alone(self):
        for status in (Invoice.Status.DRAFT, Invoice.Status.PAID):
            invoice = self.make_invoice(status=status)
            self.assertEqual(invoice.refresh_status(today=JAN_1), status)

    def test_paid_invoice_cannot_be_cancelled(self):
        invoice = self.make_invoice(status=Invoice.Status.PAID)
        with self.assertRaises(ValidationError):
            invoice.cancel()

    def test_due_date_before_issue_date_is_invalid(self):
        invoice = Invoice(amount=Decimal('10'), issue_date=JAN_1, due_date=dt.date(2024, 12, 31))
        with self.assertRaises(ValidationError):
            invoice.full_clean()


class ReminderScannerTests(TestCase):
    def setUp(self):
        self.staff = make_user('staff', email='staff@firm.test')
        self.manager = make_user('manager', User.Roles.MANAGER)
        self.client_obj = Client.objects.create(name='Acme Traders', email='accounts@acme.test', phone='+919800000000')
        self.settings = AutomationSettings.load()

    def test_window_and_status_filtering(self):
        today = make_task(title='today', due_date=JAN_1)
        edge = make_task(title='edge', due_date=dt.date(2025, 1, 3), status=Task.Status.IN_PROGRESS)
        make_task(title='too far', due_date=dt.date(2025, 1, 4))
        make_task(title='overdue', due_date=dt.date(2024, 12, 31))
        make_task(title='done', due_date=JAN_1, status=Task.Status.COMPLETED)
        make_task(title='deleted', due_date=JAN_1, is_deleted=True)

        first = list(due_for_reminder(JAN_1, 2))
        self.assertEqual(first, [today, edge])
        self.assertEqual(list(due_for_reminder(JAN_1, 2)), first)

    def test_cancelled_task_in_window_is_still_reminded(self):
        cancelled = make_task(title='dropped', due_date=dt.date(2025, 1, 2), status=Task.Status.CANCELLED)
        self.assertIn(cancelled, list(due_for_reminder(JAN_1, 2)))

    def test_assignee_and_client_reminders(self):
        task = make_task(client=self.client_obj, assignees=[self.staff, self.manager])
        self.assertEqual(len(build_reminders(task, self.settings)), 2)

        self.settings.client_notifications_enabled = True
        reminders = build_reminders(task, self.settings)
        self.assertEqual(len(reminders), 3)
        internal = [r for r in reminders if r.is_internal]
        self.assertEqual({r.user for r in internal}, {self.staff, self.manager})
        self.assertTrue(all(r.channel == CommunicationLog.Type.IN_APP for r in internal))
        client_reminder = [r for r in reminders if not r.is_internal][0]
        self.assertEqual(client_reminder.channel, CommunicationLog.Type.EMAIL)
        self.assertEqual(client_reminder.recipient, 'accounts@acme.test')

    def test_client_channel_falls_back(self):
        self.settings.client_notifications_enabled = True
        self.settings.client_reminder_channel = AutomationSettings.ClientChannel.WHATSAPP
        email_only = Client.objects.create(name='Email Only', email='owner@example.test')
        task = make_task(client=email_only)
        [reminder] = build_reminders(task, self.settings)
        self.assertEqual(reminder.channel, CommunicationLog.Type.EMAIL)

        task = make_task(client=self.client_obj)
        [reminder] = build_reminders(task, self.settings)
        self.assertEqual(reminder.channel, CommunicationLog.Type.WHATSAPP)
        self.assertEqual(reminder.recipient, '+919800000000')

    def test_unreachable_client_gets_nothing(self):
        self.settings.client_notifications_enabled = True
        silent = Client.objects.create(name='No Contact')
        task = make_task(client=silent, assignees=[self.staff])
        self.assertEqual([r.user for r in build_reminders(task, self.settings)], [self.staff])


class AutomationTickTests(TestCase):
    def setUp(self):
        self.staff = make_user('staff', email='staff@firm.test')
        self.manager = make_user('manager', User.Roles.MANAGER)
        self.now = at_nine(JAN_1)

    def test_tick_expands_reminds_and_records_run(self):
        template = make_template()
        due_soon = make_task(due_date=dt.date(2025, 1, 2), assignees=[self.staff, self.manager])
        notifier = FakeNotifier(fail_for=[self.manager])

        with self.assertLogs('practice.automation', level='WARNING'):
            report = run_tick(self.now, notifier=notifier)

        self.assertEqual(report.as_of, JAN_1)
        self.assertEqual(report.tasks_created, 1)
        self.assertTrue(Task.objects.filter(template=template, due_date=dt.date(2025, 1, 5)).exists())
        self.assertEqual(report.reminders_sent, 1)
        self.assertEqual(report.reminders_failed, 1)
        self.assertEqual(notifier.sent[0][1], self.staff)
        self.assertFalse(report.ok)
        self.assertEqual(report.errors[0].stage, 'remind')
        self.assertEqual(report.errors[0].entity_id, due_soon.pk)

        logs = CommunicationLog.objects.filter(task=due_soon)
        self.assertEqual(logs.count(), 2)
        self.assertEqual(logs.get(recipient_user=self.staff).status, CommunicationLog.Status.SENT)
        failed = logs.get(recipient_user=self.manager)
        self.assertEqual(failed.status, CommunicationLog.Status.FAILED)
        self.assertIn('unreachable', failed.error)
        self.assertTrue(failed.is_internal)

        run = AutomationRun.objects.get(pk=report.run_id)
        self.assertEqual(run.tasks_created, 1)
        self.assertEqual(run.reminders_failed, 1)
        self.assertEqual(run.errors[0]['stage'], 'remind')
        self.assertEqual(report.as_dict()['as_of'], '2025-01-01')

    def test_tick_is_idempotent_for_templates_and_invoices(self):
        make_template()
        make_task(is_payable=True, price=Decimal('5000'), status=Task.Status.COMPLETED)

        first = run_tick(self.now, notifier=FakeNotifier())
        self.assertEqual(first.tasks_created, 1)
        self.assertEqual(first.invoices_created, 1)
        self.assertTrue(first.ok)

        second = run_tick(self.now, notifier=FakeNotifier())
        self.assertEqual(second.tasks_created, 0)
        self.assertEqual(second.invoices_created, 0)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(AutomationRun.objects.count(), 2)

    def test_failing_template_does_not_stop_the_tick(self):
        bad = make_template(title='Broken')
        good = make_template(title='Working')
        real_expand = expander.expand_due

        def flaky(template, as_of, lookahead_days):
            if template.pk == bad.pk:
                raise RuntimeError('boom')
            return real_expand(template, as_of, lookahead_days)

        with mock.patch('practice.automation.expand_due', side_effect=flaky):
            with self.assertLogs('practice.automation', level='ERROR'):
                report = run_tick(self.now, notifier=FakeNotifier())

        self.assertEqual(report.tasks_created, 1)
        self.assertTrue(Task.objects.filter(template=good).exists())
        self.assertEqual(len(report.errors), 1)
        self.assertEqual((report.errors[0].stage, report.errors[0].entity_id), ('expand', bad.pk))

    def test_tick_marks_sent_invoices_overdue(self):
        Invoice.objects.create(
            amount=Decimal('1000'), status=Invoice.Status.SENT, issue_date=dt.date(2024, 11, 1),
            due_date=dt.date(2024, 12, 1),
        )
        Invoice.objects.create(
            amount=Decimal('1000'), status=Invoice.Status.SENT, issue_date=dt.date(2024, 12, 1),
            due_date=dt.date(2025, 1, 15),
        )
        report = run_tick(self.now, notifier=FakeNotifier())
        self.assertEqual(report.invoices_marked_overdue, 1)
        self.assertEqual(Invoice.objects.filter(status=Invoice.Status.OVERDUE).count(), 1)

    def test_real_notifier_writes_in_app_and_email(self):
        settings = AutomationSettings.load()
        settings.client_notifications_enabled = True
        settings.save()
        client = Client.objects.create(name='Acme Traders', email='accounts@acme.test')
        task = make_task(client=client, due_date=dt.date(2025, 1, 2), assignees=[self.staff])

        report = run_tick(self.now)

        self.assertEqual(report.reminders_sent, 2)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['accounts@acme.test'])
        self.assertTrue(Notification.objects.filter(user=self.staff, category='task_due').exists())
        client_log = CommunicationLog.objects.get(task=task, is_internal=False)
        self.assertEqual(client_log.communication_type, CommunicationLog.Type.EMAIL)
        self.assertEqual(client_log.recipient_email, 'accounts@acme.test')
        self.assertEqual(client_log.client, client)

    def test_reminders_repeat_on_rerun(self):
        make_task(due_date=dt.date(2025, 1, 2), assignees=[self.staff])
        settings = AutomationSettings.load()
        notifier = FakeNotifier()
        for _ in range(2):
            dispatch_reminders(JAN_1, settings, TickReport(as_of=JAN_1, started_at=self.now), notifier, self.now)
        self.assertEqual(len(notifier.sent), 2)
        self.assertEqual(CommunicationLog.objects.count(), 2)


class NotifierTests(TestCase):
    def setUp(self):
        self.notifier = Notifier()

    def test_rejects_unknown_channel_and_empty_recipient(self):
        with self.assertRaises(DeliveryError):
            self.notifier.send('sms', '+911234567890', 'Hi', 'There')
        with self.assertRaises(DeliveryError):
            self.notifier.send('email', '', 'Hi', 'There')

    def test_email_goes_through_django_mail(self):
        ack = self.notifier.send('email', 'owner@example.test', 'GST due', 'Please send invoices.')
        self.assertEqual(ack.channel, 'email')
        self.assertEqual(mail.outbox[0].subject, 'GST due')

    def test_whatsapp_without_configuration_fails(self):
        with self.assertRaises(DeliveryError):
            self.notifier.send('whatsapp', '+919800000000', 'GST due', 'Reminder')

    def test_whatsapp_uses_cloud_api_with_timeout(self):
        WhatsAppConfig.objects.create(enabled=True, phone_number_id='12345', api_token='secret')
        response = mock.Mock(status_code=200)
        response.json.return_value = {'messages': [{'id': 'wamid.1'}]}
        with mock.patch('practice.notifications.whatsapp.requests.post', return_value=response) as post:
            ack = self.notifier.send('whatsapp', '+91 98000 00000', 'GST due', 'Reminder')
        self.assertEqual(ack.reference, 'wamid.1')
        args, kwargs = post.call_args
        self.assertIn('/12345/messages', args[0])
        self.assertEqual(kwargs['json']['to'], '+919800000000')
        self.assertEqual(kwargs['timeout'], 10.0)

    def test_whatsapp_http_error_raises(self):
        WhatsAppConfig.objects.create(enabled=True, phone_number_id='12345', api_token='secret')
        response = mock.Mock(status_code=500, text='upstream error')
        with mock.patch('practice.notifications.whatsapp.requests.post', return_value=response):
            with self.assertRaises(DeliveryError):
                self.notifier.send('whatsapp', '+919800000000', 'GST due', 'Reminder')


class InvoiceAdminTests(TestCase):
    def setUp(self):
        self.task = make_task(is_payable=True, price=Decimal('1000'), status=Task.Status.COMPLETED)
        self.invoice = Invoice.objects.create(
            task=self.task, amount=Decimal('1000'), issue_date=JAN_1, due_date=dt.date(2025, 1, 31)
        )

    def form_data(self, **overrides):
        data = {
            'task': self.task.pk,
            'amount': '1000.00',
            'tax_percent': '18.00',
            'status': Invoice.Status.DRAFT,
            'issue_date': '2025-01-01',
            'due_date': '2025-01-31',
        }
        data.update(overrides)
        return data

    def test_second_active_invoice_is_a_form_error(self):
        form = InvoiceAdminForm(data=self.form_data())
        self.assertFalse(form.is_valid())
        self.assertIn('This task already has an active invoice.', form.non_field_errors())
        self.assertEqual(Invoice.objects.filter(task=self.task).count(), 1)

    def test_cancelled_invoice_can_be_added_alongside(self):
        form = InvoiceAdminForm(data=self.form_data(status=Invoice.Status.CANCELLED))
        self.assertTrue(form.is_valid(), form.errors)

    def test_existing_invoice_can_be_edited(self):
        form = InvoiceAdminForm(data=self.form_data(description='Revised'), instance=self.invoice)
        self.assertTrue(form.is_valid(), form.errors)

    def test_task_is_read_only_on_change(self):
        model_admin = InvoiceAdmin(Invoice, admin.site)
        self.assertIn('task', model_admin.get_readonly_fields(None, self.invoice))
        self.assertNotIn('task', model_admin.get_readonly_fields(None))


class CommunicationLogTests(TestCase):
    def test_entries_are_append_only(self):
        log = CommunicationLog.objects.create(
            communication_type=CommunicationLog.Type.EMAIL,
            subject='Reminder',
            message='Due soon',
            recipient_email='owner@example.test',
            status=CommunicationLog.Status.SENT,
        )
        log.subject = 'Edited'
        with self.assertRaises(ValueError):
            log.save()
        with self.assertRaises(ValueError):
            log.delete()
        self.assertEqual(CommunicationLog.objects.get(pk=log.pk).subject, 'Reminder')


class AutomationSettingsTests(TestCase):
    def test_singleton_seeded_with_defaults(self):
        settings = AutomationSettings.load()
        self.assertEqual(AutomationSettings.objects.count(), 1)
        self.assertEqual(settings.reminder_lead_days, 2)
        self.assertEqual(settings.lookahead_days, 7)
        self.assertFalse(settings.client_notifications_enabled)
        self.assertEqual(settings.tax_percent, Decimal('18.00'))
        self.assertEqual(AutomationSettings.load().pk, settings.pk)


class ApiTests(TestCase):
    def setUp(self):
        self.api = APIClient()
        self.admin = make_user('admin', User.Roles.ADMIN, email='admin@firm.test')
        self.manager = make_user('manager', User.Roles.MANAGER)
        self.accountant = make_user('accountant', User.Roles.ACCOUNTANT)
        self.staff = make_user('staff')
        self.viewer = make_user('viewer', User.Roles.VIEWER)
        self.client_obj = Client.objects.create(name='Acme Traders')

    def login(self, user):
        self.api.force_authenticate(user)

    def test_token_accepts_email_login(self):
        resp = self.api.post(
            reverse('token_obtain_pair'), {'username': 'admin@firm.test', 'password': 'test-pass-123'}, format='json'
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn('access', resp.data)

    def test_requires_authentication(self):
        resp = self.api.get(reverse('task-list'))
        self.assertEqual(resp.status_code, 401)

    def test_task_status_is_not_writable(self):
        self.login(self.manager)
        resp = self.api.post(
            reverse('task-list'),
            {
                'title': 'TDS Q3',
                'category': 'tds_return',
                'due_date': '2025-01-31',
                'status': 'completed',
                'client': self.client_obj.pk,
                'assignees': [self.staff.pk],
            },
            format='json',
        )
        self.assertEqual(resp.status_code, 201, resp.data)
        self.assertEqual(resp.data['status'], 'pending')
        task = Task.objects.get(pk=resp.data['id'])
        self.assertEqual(task.created_by, self.manager)
        self.assertEqual(list(task.assignees.all()), [self.staff])

        resp = self.api.patch(reverse('task-detail', args=[task.pk]), {'status': 'cancelled'}, format='json')
        self.assertEqual(resp.status_code, 200)
        task.refresh_from_db()
        self.assertEqual(task.status, Task.Status.PENDING)

    def test_payable_task_needs_price(self):
        self.login(self.manager)
        resp = self.api.post(
            reverse('task-list'), {'title': 'Audit', 'due_date': '2025-03-31', 'is_payable': True}, format='json'
        )
        self.assertEqual(resp.status_code, 400)
        self.assertIn('price', resp.data)

    def test_transition_action(self):
        task = make_task(assignees=[self.staff], is_payable=True, price=Decimal('5000'))
        self.login(self.staff)
        url = reverse('task-transition', args=[task.pk])

        resp = self.api.post(url, {'status': 'in_progress'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], 'in_progress')

        with self.captureOnCommitCallbacks(execute=True):
            resp = self.api.post(url, {'status': 'completed'}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Invoice.objects.filter(task=task).count(), 1)

        resp = self.api.post(url, {'status': 'pending'}, format='json')
        self.assertEqual(resp.status_code, 409)

    def test_transition_visibility_and_viewer_lockout(self):
        task = make_task()
        self.login(self.staff)
        resp = self.api.post(reverse('task-transition', args=[task.pk]), {'status': 'in_progress'}, format='json')
        self.assertEqual(resp.status_code, 404)

        self.login(self.viewer)
        self.assertEqual(self.api.get(reverse('task-detail', args=[task.pk])).status_code, 200)
        resp = self.api.post(reverse('task-transition', args=[task.pk]), {'status': 'in_progress'}, format='json')
        self.assertEqual(resp.status_code, 403)

    def test_invoice_action(self):
        task = make_task(is_payable=True, price=Decimal('5000'), status=Task.Status.COMPLETED)
        self.login(self.accountant)
        url = reverse('task-invoice', args=[task.pk])

        resp = self.api.post(url)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['total'], '5900.00')
        invoice_id = resp.data['id']

        resp = self.api.post(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['id'], invoice_id)
        self.assertEqual(Invoice.objects.count(), 1)

        open_task = make_task(is_payable=True, price=Decimal('100'))
        resp = self.api.post(reverse('task-invoice', args=[open_task.pk]))
        self.assertEqual(resp.status_code, 400)

        self.login(self.staff)
        self.assertEqual(self.api.post(url).status_code, 403)

    def test_destroy_soft_deletes(self):
        task = make_task()
        self.login(self.manager)
        resp = self.api.delete(reverse('task-detail', args=[task.pk]))
        self.assertEqual(resp.status_code, 204)
        task.refresh_from_db()
        self.assertTrue(task.is_deleted)
        self.assertIsNotNone(task.deleted_at)
        self.assertEqual(self.api.get(reverse('task-list')).data['count'], 0)

    def test_task_filters(self):
        make_task(title='January', due_date=dt.date(2025, 1, 10))
        make_task(title='March', due_date=dt.date(2025, 3, 10))
        self.login(self.manager)
        resp = self.api.get(reverse('task-list'), {'due_date_after': '2025-02-01'})
        self.assertEqual([row['title'] for row in resp.data['results']], ['March'])

    def test_manual_invoice_respects_one_active_invoice_per_task(self):
        task = make_task(client=self.client_obj, is_payable=True, price=Decimal('1000'))
        self.login(self.accountant)
        payload = {
            'task': task.pk,
            'amount': '1000.00',
            'tax_percent': '18.00',
            'issue_date': '2025-01-01',
            'due_date': '2025-01-31',
        }
        resp = self.api.post(reverse('invoice-list'), payload, format='json')
        self.assertEqual(resp.status_code, 201, resp.data)
        self.assertEqual(resp.data['total'], '1180.00')
        self.assertEqual(resp.data['client'], self.client_obj.pk)

        resp = self.api.post(reverse('invoice-list'), payload, format='json')
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(Invoice.objects.filter(task=task).count(), 1)

    def test_reactivating_cancelled_invoice_conflicts_with_active_one(self):
        task = make_task(client=self.client_obj, is_payable=True, price=Decimal('1000'))
        old = Invoice.objects.create(task=task, amount=Decimal('1000'), issue_date=JAN_1, due_date=JAN_1)
        old.cancel()
        Invoice.objects.create(task=task, amount=Decimal('1000'), issue_date=JAN_1, due_date=JAN_1)

        self.login(self.accountant)
        resp = self.api.patch(reverse('invoice-detail', args=[old.pk]), {'status': 'draft'}, format='json')
        self.assertEqual(resp.status_code, 409)
        old.refresh_from_db()
        self.assertEqual(old.status, Invoice.Status.CANCELLED)

    def test_invoices_are_cancelled_not_deleted(self):
        invoice = Invoice.objects.create(amount=Decimal('1000'), issue_date=JAN_1, due_date=dt.date(2025, 1, 31))
        self.login(self.accountant)
        self.assertEqual(self.api.delete(reverse('invoice-detail', args=[invoice.pk])).status_code, 405)

        resp = self.api.patch(reverse('invoice-detail', args=[invoice.pk]), {'status': 'cancelled'}, format='json')
        self.assertEqual(resp.status_code, 400)

        resp = self.api.post(reverse('invoice-cancel', args=[invoice.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['status'], 'cancelled')

    def test_template_expand_and_instantiate(self):
        template = make_template()
        self.login(self.manager)
        url = reverse('task-template-expand', args=[template.pk])

        resp = self.api.post(url, {'as_of': '2025-01-01', 'lookahead_days': 10}, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual([row['due_date'] for row in resp.data['created']], ['2025-01-05'])

        resp = self.api.post(url, {'as_of': '2025-01-01', 'lookahead_days': 10}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['created'], [])

        url = reverse('task-template-instantiate', args=[template.pk])
        resp = self.api.post(url, {'due_date': '2025-01-20', 'assignees': [self.staff.pk]}, format='json')
        self.assertEqual(resp.status_code, 201)
        resp = self.api.post(url, {'due_date': '2025-01-20'}, format='json')
        self.assertEqual(resp.status_code, 409)

    def test_template_shows_next_due_date(self):
        monthly = make_template()
        one_off = make_template(title='Audit', recurrence_pattern=TaskTemplate.Recurrence.NONE, recurrence_anchor=None)
        self.login(self.manager)
        with mock.patch('practice.api.serializers.timezone.localdate', return_value=dt.date(2025, 1, 10)):
            resp = self.api.get(reverse('task-template-detail', args=[monthly.pk]))
            self.assertEqual(resp.data['next_due_date'], dt.date(2025, 2, 5))
        with mock.patch('practice.api.serializers.timezone.localdate', return_value=dt.date(2025, 2, 5)):
            resp = self.api.get(reverse('task-template-detail', args=[monthly.pk]))
            self.assertEqual(resp.data['next_due_date'], dt.date(2025, 2, 5))
        resp = self.api.get(reverse('task-template-detail', args=[one_off.pk]))
        self.assertIsNone(resp.data['next_due_date'])

    def test_template_with_subtasks(self):
        self.login(self.manager)
        resp = self.api.post(
            reverse('task-template-list'),
            {
                'title': 'Annual ROC filing',
                'category': 'roc_filing',
                'recurrence_pattern': 'yearly',
                'recurrence_anchor': '2025-10-30',
                'is_payable': True,
                'price': '15000.00',
                'assignees': [self.accountant.pk],
                'subtasks': [{'title': 'AOC-4', 'order': 1}, {'title': 'MGT-7', 'order': 2}],
            },
            format='json',
        )
        self.assertEqual(resp.status_code, 201, resp.data)
        template = TaskTemplate.objects.get(pk=resp.data['id'])
        self.assertEqual(template.subtasks.count(), 2)
        self.assertEqual(template.created_by, self.manager)

        resp = self.api.post(
            reverse('task-template-list'),
            {'title': 'Broken', 'recurrence_pattern': 'monthly'},
            format='json',
        )
        self.assertEqual(resp.status_code, 400)
        self.assertIn('recurrence_anchor', resp.data)

    def test_automation_settings_singleton(self):
        self.login(self.staff)
        url = reverse('automation-settings')
        resp = self.api.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['reminder_lead_days'], 2)
        self.assertEqual(self.api.patch(url, {'reminder_lead_days': 5}, format='json').status_code, 403)

        self.login(self.admin)
        resp = self.api.patch(url, {'reminder_lead_days': 5}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(AutomationSettings.load().reminder_lead_days, 5)
        self.assertEqual(AutomationSettings.objects.count(), 1)

    def test_manual_automation_run(self):
        make_template()
        self.login(self.manager)
        resp = self.api.post(reverse('automation-run-run'), {'date': '2025-01-01'}, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['trigger'], 'manual')
        self.assertEqual(resp.data['tasks_created'], 1)
        self.assertTrue(resp.data['ok'])

        self.login(self.staff)
        self.assertEqual(self.api.post(reverse('automation-run-run')).status_code, 403)
        self.assertEqual(self.api.get(reverse('automation-run-list')).data['count'], 1)

    def test_communication_logs_are_read_only(self):
        CommunicationLog.objects.create(
            communication_type=CommunicationLog.Type.IN_APP,
            subject='Task due',
            message='Due soon',
            status=CommunicationLog.Status.SENT,
            is_internal=True,
        )
        self.login(self.accountant)
        resp = self.api.get(reverse('communication-log-list'), {'is_internal': 'true'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['count'], 1)
        self.assertEqual(self.api.post(reverse('communication-log-list'), {}).status_code, 405)

        self.login(self.staff)
        self.assertEqual(self.api.get(reverse('communication-log-list')).status_code, 403)

    def test_mark_notification_read(self):
        note = Notification.objects.create(user=self.staff, message='Task due', category='task_due')
        Notification.objects.create(user=self.manager, message='Not yours')
        self.login(self.staff)
        self.assertEqual(self.api.get(reverse('notification-list')).data['count'], 1)
        resp = self.api.post(reverse('notification-mark-read', args=[note.pk]))
        self.assertEqual(resp.status_code, 200)
        note.refresh_from_db()
        self.assertTrue(note.is_read)


class ManagementCommandTests(TestCase):
    def test_run_automation(self):
        make_template()
        out = StringIO()
        call_command('run_automation', '--date', '2025-01-01', stdout=out)
        self.assertIn('Automation tick 2025-01-01: 1 task(s) created', out.getvalue())
        run = AutomationRun.objects.get()
        self.assertEqual(run.trigger, AutomationRun.Trigger.SCHEDULE)

    def test_run_automation_rejects_bad_date(self):
        with self.assertRaises(CommandError):
            call_command('run_automation', '--date', '01/01/2025', stdout=StringIO())

    def test_expand_templates_with_lookahead(self):
        make_template()
        out = StringIO()
        call_command('expand_templates', '--date', '2025-01-01', '--lookahead', '40', stdout=out)
        self.assertIn('Created 2 recurring task(s).', out.getvalue())
        self.assertFalse(AutomationRun.objects.exists())

    def test_send_reminders(self):
        staff = make_user('staff')
        make_task(due_date=dt.date(2025, 1, 2), assignees=[staff])
        out = StringIO()
        call_command('send_reminders', '--date', '2025-01-01', stdout=out)
        self.assertIn('Sent: 1, failed: 0', out.getvalue())
        self.assertEqual(Notification.objects.filter(user=staff, category='task_due').count(), 1)
