from __future__ import annotations

from typing import Iterable, Optional, Set

from practice.models import Notification, Task, User
from practice.notifications.whatsapp import send_text as send_whatsapp_text


def notify_task_change(
    task: Task,
    *,
    actor: Optional[User] = None,
    message: str,
    category: str = 'task_update',
    recipients: Optional[Iterable[User]] = None,
) -> None:
    """Send in-app + WhatsApp notifications for task changes."""
    recips: Set[User] = set(recipients or [])
    recips.update(task.assignees.all())
    if actor:
        recips.discard(actor)

    if not recips:
        return

    url = f"/tasks/{task.pk}/"
    for user in recips:
        Notification.objects.create(user=user, message=message[:500], category=category, related_url=url)
        if getattr(user, 'phone', None):
            send_whatsapp_text(user.phone, message)
