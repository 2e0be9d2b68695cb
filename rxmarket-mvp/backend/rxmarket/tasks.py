import logging

from celery import shared_task
from django.utils import timezone

logger = logging.getLogger(__name__)


def _notification_service():
    from rxmarket.apps import get_notification_service

    return get_notification_service()


def _alerting_service():
    from rxmarket.alerting.service import AlertingService

    return AlertingService(_notification_service())


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def deliver_notification(self, notification_id: str):
    """
    投递一条通知的所有 pending (recipient, channel)。

    单个通道失败由 DeliveryEngine 记成 failed，不会让任务失败；
    这里重试的只是「整个引擎跑不起来」的情况（数据库断开等）：
      - 最多重试 3 次，指数退避 10s → 20s → 40s
      - 耗尽后把剩下的 pending 行标记为 failed，留给 retry / auto retry 处理
    """
    from rxmarket.constants import DeliveryStatus
    from rxmarket.models import ChannelDelivery, Notification
    from rxmarket.notifications.delivery import DeliveryEngine

    logger.info("[Celery][deliver_notification] notification_id=%s (attempt %d/%d)",
                notification_id, self.request.retries + 1, self.max_retries + 1)

    if not Notification.objects.filter(id=notification_id).exists():
        # 可能是派发方的事务还没提交，先按退避重试，耗尽才放弃
        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.warning("[Celery] Notification %s 还不可见，%ds 后重试", notification_id, countdown)
            raise self.retry(countdown=countdown)
        logger.error("[Celery] Notification %s 不存在，跳过", notification_id)
        return None

    try:
        summary = DeliveryEngine().deliver(notification_id)
    except Exception as exc:
        logger.warning("[Celery] notification_id=%s 投递失败 (attempt %d): %s",
                       notification_id, self.request.retries + 1, exc)

        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.info("[Celery] 将在 %ds 后重试 (第 %d 次)...", countdown, self.request.retries + 1)
            raise self.retry(exc=exc, countdown=countdown)

        logger.error("[Celery] notification_id=%s 已达最大重试次数，pending 投递标记为 failed", notification_id)
        ChannelDelivery.objects.filter(
            recipient__notification_id=notification_id, status=DeliveryStatus.PENDING,
        ).update(
            status=DeliveryStatus.FAILED,
            error=f"[重试 {self.max_retries} 次后仍失败] {exc}"[:500],
            updated_at=timezone.now(),
        )
        return None

    logger.info("[Celery] notification_id=%s 完成: delivered=%d failed=%d cancelled=%d",
                notification_id, summary.delivered, summary.failed, summary.cancelled)
    return {
        "notification_id": summary.notification_id,
        "delivered": summary.delivered,
        "failed": summary.failed,
        "cancelled": summary.cancelled,
        "skipped": summary.skipped,
    }


# ── Periodic (beat) tasks ──────────────────────────────────────────────────

@shared_task
def process_scheduled_notifications():
    dispatched = _notification_service().process_scheduled_notifications()
    logger.info("[Celery][process_scheduled_notifications] dispatched=%d", dispatched)
    return dispatched


@shared_task
def retry_failed_notifications():
    retried = _notification_service().auto_retry_failed()
    logger.info("[Celery][retry_failed_notifications] retried=%d", retried)
    return retried


@shared_task
def monitor_delivery_health():
    service = _alerting_service()
    report = service.check_delivery_health()
    report["infrastructure"] = service.check_infrastructure()
    if report["alerts"]:
        logger.warning("[Celery][monitor_delivery_health] raised %d alerts", len(report["alerts"]))
    return report


@shared_task
def process_alert_escalations():
    escalated = _alerting_service().process_escalations()
    if escalated:
        logger.warning("[Celery][process_alert_escalations] escalated=%d", escalated)
    return escalated


@shared_task
def expire_prescription_requests():
    from rxmarket.services import PrescriptionRequestService

    expired = PrescriptionRequestService(_notification_service()).expire_stale_requests()
    logger.info("[Celery][expire_prescription_requests] expired=%d", expired)
    return expired


@shared_task
def cleanup_resolved_alerts(days: int = 30):
    deleted = _alerting_service().cleanup_resolved_alerts(days=days)
    logger.info("[Celery][cleanup_resolved_alerts] deleted=%d", deleted)
    return deleted
