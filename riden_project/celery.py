import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'riden_project.settings')

app = Celery('riden_project')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

# Beat schedule lives in the database (django-celery-beat); the weekly
# trigger is installed at worker startup by payouts.scheduler.

app.conf.timezone = 'UTC'
