from django.apps import AppConfig


class PracticeConfig(AppConfig):
    default_auto_field = 'django.db.models.AutoField'
    name = 'practice'
    verbose_name = 'Practice automation'

    def ready(self):
        from . import signals  # noqa: F401
