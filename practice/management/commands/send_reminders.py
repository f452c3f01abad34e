from django.core.management.base import BaseCommand
from django.utils import timezone

from practice.automation import TickReport, dispatch_reminders
from practice.management.commands.run_automation import _parse_now
from practice.models import AutomationSettings
from practice.notifications.notifier import Notifier


class Command(BaseCommand):
    help = "Send due-date reminders to assignees and clients."

    def add_arguments(self, parser):
        parser.add_argument('--date', help='Scan as of this date (YYYY-MM-DD) instead of today.')

    def handle(self, *args, **options):
        now = _parse_now(options.get('date')) or timezone.now()
        report = TickReport(as_of=timezone.localdate(now), started_at=now)
        dispatch_reminders(report.as_of, AutomationSettings.load(), report, Notifier(), now)
        self.stdout.write(
            self.style.SUCCESS(
                f"Reminders processed. Sent: {report.reminders_sent}, failed: {report.reminders_failed}"
            )
        )
