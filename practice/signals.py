from django.db.models.signals import post_migrate
from django.dispatch import receiver

from .automation import handle_task_completed
from .lifecycle import task_completed
from .models import AutomationSettings


@receiver(post_migrate)
def create_default_automation_settings(sender, **kwargs):
    if sender.name != 'practice':
        return
    AutomationSettings.load()


task_completed.connect(handle_task_completed, dispatch_uid='practice.invoice_on_completion')
