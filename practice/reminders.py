from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional

from .models import AutomationSettings, Client, CommunicationLog, Task, User

Channel = CommunicationLog.Type


@dataclass(frozen=True)
class Reminder:
    task: Task
    channel: str
    subject: str
    message: str
    user: Optional[User] = None
    client: Optional[Client] = None
    address: str = ''

    @property
    def is_internal(self) -> bool:
        return self.user is not None

    @property
    def recipient(self):
        return self.user if self.channel == Channel.IN_APP else self.address


def due_for_reminder(as_of: dt.date, lead_days: int):
    """Non-deleted, non-completed tasks due within ``[as_of, as_of + lead_days]``. Read-only."""
    horizon = as_of + dt.timedelta(days=lead_days)
    return (
        Task.objects.filter(
            is_deleted=False,
            due_date__gte=as_of,
            due_date__lte=horizon,
        )
        .exclude(status=Task.Status.COMPLETED)
        .select_related('client')
        .prefetch_related('assignees')
        .order_by('due_date', 'id')
    )


def _client_channel(client: Client, settings: AutomationSettings) -> Optional[tuple[str, str]]:
    options = {Channel.EMAIL: client.email, Channel.WHATSAPP: client.phone}
    preferred = settings.client_reminder_channel
    ordered = [preferred] + [channel for channel in options if channel != preferred]
    for channel in ordered:
        if options.get(channel):
            return channel, options[channel]
    return None


def build_reminders(task: Task, settings: AutomationSettings) -> list[Reminder]:
    """One reminder per assignee, plus one for the client when enabled and reachable."""
    due = task.due_date.strftime('%d-%m-%Y')
    reminders = [
        Reminder(
            task=task,
            channel=Channel.IN_APP,
            subject=f"Task due: {task.title}",
            message=f'Task "{task.title}" is due on {due}.',
            user=user,
            client=task.client,
        )
        for user in task.assignees.all()
    ]
    client = task.client
    if settings.client_notifications_enabled and client and client.has_contact_channel:
        channel_address = _client_channel(client, settings)
        if channel_address:
            channel, address = channel_address
            reminders.append(
                Reminder(
                    task=task,
                    channel=channel,
                    subject=f"Reminder: {task.get_category_display()} due {due}",
                    message=(
                        f"Dear {client.name}, this is a reminder that \"{task.title}\" is due on {due}. "
                        "Please share any pending documents with us."
                    ),
                    client=client,
                    address=address,
                )
            )
    return reminders
