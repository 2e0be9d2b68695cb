"""
NotificationService 的 safe factory。

通知失败绝不能让触发它的业务操作失败（比如病人的处方请求已经创建成功，
确认通知发不出去也不该回滚）。所以构建 NotificationService 之前：

  1. 等数据库可连接，最多 NOTIFICATION_DB_WAIT_TIMEOUT 秒
  2. 等不到 → 返回 NullNotificationService：只打日志、假装成功、不写库

进程内只有一个实例，由 RxMarketConfig（composition root）持有，
见 apps.py 的 get_notification_service()。
"""

import logging
import time

from django.conf import settings
from django.db import OperationalError, connections

from .service import NotificationService

logger = logging.getLogger(__name__)


class NullNotificationService:
    """
    只打日志的替身。和 NotificationService 同样的公开方法，全部返回「成功」但不落库。
    """

    is_degraded = True

    def __init__(self, reason=""):
        self.reason = reason

    def _log(self, operation, *args):
        logger.warning("[NullNotificationService] %s skipped (%s)", operation, self.reason or "service unavailable")

    def create_notification(self, data, created_by=None, bypass_preferences=False):
        self._log("create_notification")
        return None

    def send_notification(self, user, notification_type, content, **options):
        self._log("send_notification")
        return None

    def send_bulk_notification(self, users, notification_type, content, **options):
        self._log("send_bulk_notification")
        return None

    def broadcast_notification(self, target_role, notification_type, content, **options):
        self._log("broadcast_notification")
        return None

    def emergency_override(self, user_ids, notification_type, content, override_reason, overridden_by, **options):
        self._log("emergency_override")
        return None

    def retry_notification(self, notification_id, channels=None, recipient_ids=None):
        self._log("retry_notification")
        return {"notification_id": str(notification_id), "retried": 0, "retry_count": 0, "last_retry_at": None}

    def cancel_notification(self, notification_id, reason, cancelled_by=None):
        self._log("cancel_notification")
        return {"notification_id": str(notification_id), "cancelled": 0}

    def process_scheduled_notifications(self, now=None):
        self._log("process_scheduled_notifications")
        return 0

    def auto_retry_failed(self, now=None):
        self._log("auto_retry_failed")
        return 0


def wait_for_database(timeout=None, interval=None, alias="default") -> bool:
    """
    轮询 ensure_connection()，直到成功或超时。

    Returns:
        True : 数据库可用
        False: 超时仍不可用
    """
    timeout = settings.NOTIFICATION_DB_WAIT_TIMEOUT if timeout is None else timeout
    interval = settings.NOTIFICATION_DB_WAIT_INTERVAL if interval is None else interval
    deadline = time.monotonic() + timeout
    attempt = 0

    while True:
        attempt += 1
        try:
            connections[alias].ensure_connection()
            return True
        except OperationalError as exc:
            if time.monotonic() >= deadline:
                logger.error("Database %r still unreachable after %d attempts: %s", alias, attempt, exc)
                return False
            logger.warning("Database %r not ready (attempt %d): %s", alias, attempt, exc)
            time.sleep(interval)


def build_notification_service(timeout=None, interval=None, dispatcher=None):
    """
    composition root 调用的唯一入口。

    数据库不可用或构建失败 → NullNotificationService，调用方不需要 try/except。
    """
    if not wait_for_database(timeout=timeout, interval=interval):
        return NullNotificationService(reason="database unreachable")

    try:
        return NotificationService(dispatcher=dispatcher)
    except Exception as exc:
        logger.exception("NotificationService construction failed, falling back to no-op")
        return NullNotificationService(reason=f"construction failed: {type(exc).__name__}")
