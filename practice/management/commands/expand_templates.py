from django.core.management.base import BaseCommand
from django.utils import timezone

from practice.automation import TickReport, expand_templates
from practice.management.commands.run_automation import _parse_now
from practice.models import AutomationSettings


class Command(BaseCommand):
    help = "Create tasks for recurring templates falling due within the look-ahead window."

    def add_arguments(self, parser):
        parser.add_argument('--date', help='Expand as of this date (YYYY-MM-DD) instead of today.')
        parser.add_argument('--lookahead', type=int, help='Override the look-ahead window in days.')

    def handle(self, *args, **options):
        now = _parse_now(options.get('date')) or timezone.now()
        settings = AutomationSettings.load()
        if options.get('lookahead') is not None:
            settings.lookahead_days = options['lookahead']
        report = TickReport(as_of=timezone.localdate(now), started_at=now)
        expand_templates(report.as_of, settings, report)
        for error in report.errors:
            self.stderr.write(f"Template #{error.entity_id}: {error.message}")
        self.stdout.write(self.style.SUCCESS(f"Created {report.tasks_created} recurring task(s)."))
