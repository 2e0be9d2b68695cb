import logging
import threading

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class RxMarketConfig(AppConfig):
    """
    Composition root。

    NotificationService 是进程级单例，但由这里显式持有，而不是藏在模块全局变量里：
    第一次有人要用时才构建（构建时要等数据库），构建失败拿到的是
    NullNotificationService，这个替身不缓存，下一次调用会重新尝试。
    """

    name = 'rxmarket'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        self._notification_service = None
        self._lock = threading.Lock()

    def get_notification_service(self):
        from .notifications.factory import build_notification_service

        if self._notification_service is not None:
            return self._notification_service

        with self._lock:
            if self._notification_service is None:
                service = build_notification_service()
                if service.is_degraded:
                    logger.warning("Notification service degraded to no-op (%s)", service.reason)
                    return service
                self._notification_service = service
        return self._notification_service

    def reset_notification_service(self):
        with self._lock:
            self._notification_service = None


def get_notification_service():
    from django.apps import apps

    return apps.get_app_config('rxmarket').get_notification_service()
