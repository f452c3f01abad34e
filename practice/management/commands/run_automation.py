import datetime as dt

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from practice.automation import run_tick


def _parse_now(raw: str | None) -> dt.datetime | None:
    if not raw:
        return None
    try:
        day = dt.date.fromisoformat(raw)
    except ValueError as exc:
        raise CommandError(f"Invalid --date {raw!r}; expected YYYY-MM-DD.") from exc
    return timezone.make_aware(dt.datetime.combine(day, dt.time(hour=9)))


class Command(BaseCommand):
    help = "Run one automation tick: expand recurring templates, send reminders, bill completed tasks (run via cron)."

    def add_arguments(self, parser):
        parser.add_argument('--date', help='Run as of this date (YYYY-MM-DD) instead of today.')

    def handle(self, *args, **options):
        report = run_tick(_parse_now(options.get('date')))
        summary = (
            f"Automation tick {report.as_of}: {report.tasks_created} task(s) created, "
            f"{report.reminders_sent} reminder(s) sent, {report.reminders_failed} failed, "
            f"{report.invoices_created} invoice(s) created, {report.invoices_marked_overdue} marked overdue."
        )
        if report.ok:
            self.stdout.write(self.style.SUCCESS(summary))
            return
        self.stdout.write(self.style.WARNING(summary))
        for error in report.errors:
            self.stdout.write(f"  [{error.stage}] {error.entity} #{error.entity_id}: {error.message}")
