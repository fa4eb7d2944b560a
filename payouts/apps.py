from django.apps import AppConfig


class PayoutsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'payouts'

    def ready(self):
        # Celery worker lifecycle hooks (service init/close, schedule install)
        from payouts import signals  # noqa: F401
