import logging
import os

from celery import Celery
from celery.signals import task_failure, worker_process_init

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

logger = logging.getLogger(__name__)

app = Celery('rxmarket')

# CELERY_ 前缀的配置（broker、序列化、CELERY_BEAT_SCHEDULE）都在 settings.py
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()


@worker_process_init.connect
def reset_notification_service(**kwargs):
    """prefork 之后每个子进程重新构建自己的 NotificationService（含数据库连接）。"""
    from django.apps import apps

    apps.get_app_config('rxmarket').reset_notification_service()


@task_failure.connect
def log_task_failure(sender=None, task_id=None, exception=None, **kwargs):
    logger.error("[Celery] %s (%s) failed: %s", getattr(sender, 'name', sender), task_id, exception)
