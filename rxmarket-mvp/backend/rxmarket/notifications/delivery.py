"""
DeliveryEngine: 把一条 Notification 的 pending 投递真正发出去。

流程：
  1. 读 pending 的 (recipient, channel) 行，在调用线程里做偏好过滤
  2. 每个 (recipient, channel) 一个 job，丢进线程池并行调用 adapter
  3. 最多等 NOTIFICATION_DELIVERY_TIMEOUT 秒，没回来的记为 failed
  4. 回到调用线程写库：只从 pending 条件更新，
     所以已被 cancel 的行不会被迟到的结果覆盖
  5. 重算 Notification 上的 analytics 计数

任何一个 adapter 抛异常都只影响它自己那一行。
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from ..channels.factory import get_channel_adapters
from ..channels.types import DeliveryResult, NotificationContent, RecipientContact
from ..constants import DeliveryStatus
from ..models import ChannelDelivery, Notification, NotificationPreference
from . import preferences

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


@dataclass
class DeliverySummary:
    notification_id: str
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: bool = False


def build_content(notification: Notification) -> NotificationContent:
    return NotificationContent(
        notification_id=str(notification.id),
        type=notification.type,
        category=notification.category,
        priority=notification.priority,
        title=notification.title,
        message=notification.message,
        action_url=notification.action_url,
        action_text=notification.action_text,
        metadata=dict(notification.metadata or {}),
    )


def build_contact(recipient) -> RecipientContact:
    user = recipient.user
    return RecipientContact(
        user_id=user.id,
        role=recipient.user_role,
        name=user.get_full_name() or user.username,
        email=user.email or "",
        phone=user.phone or "",
    )


def _attempt(adapter, contact, content) -> DeliveryResult:
    try:
        result = adapter.deliver(contact, content)
    except Exception as exc:
        logger.warning("%s delivery to user %s raised: %s", adapter.channel or type(adapter).__name__,
                       contact.user_id, exc)
        return DeliveryResult.failed(f"{type(exc).__name__}: {exc}")
    if not isinstance(result, DeliveryResult):
        return DeliveryResult.failed("Channel adapter returned no result")
    return result


class DeliveryEngine:

    def __init__(self, adapters=None, timeout=None, max_workers=None):
        self.adapters = adapters if adapters is not None else get_channel_adapters()
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_DELIVERY_TIMEOUT
        self.max_workers = max_workers or settings.NOTIFICATION_DELIVERY_WORKERS

    def deliver(self, notification_id) -> DeliverySummary:
        summary = DeliverySummary(notification_id=str(notification_id))

        notification = Notification.objects.filter(id=notification_id).first()
        if notification is None:
            logger.error("Notification %s 不存在，跳过投递", notification_id)
            summary.skipped = True
            return summary

        now = timezone.now()
        if notification.scheduled_for and notification.scheduled_for > now:
            logger.info("Notification %s scheduled for %s, not due yet", notification.id,
                        notification.scheduled_for.isoformat())
            summary.skipped = True
            return summary

        pending = list(
            ChannelDelivery.objects
            .filter(recipient__notification=notification, status=DeliveryStatus.PENDING)
            .select_related("recipient__user")
        )
        if not pending:
            summary.skipped = True
            return summary

        if notification.expires_at and notification.expires_at <= now:
            for delivery in pending:
                if self._finish(delivery, DeliveryStatus.CANCELLED, "Notification expired before delivery"):
                    summary.cancelled += 1
            self._refresh_counters(notification)
            return summary

        prefs = {}
        if not notification.bypass_preferences:
            user_ids = {delivery.recipient.user_id for delivery in pending}
            prefs = {p.user_id: p for p in NotificationPreference.objects.filter(user_id__in=user_ids)}

        content = build_content(notification)
        jobs = []
        for delivery in pending:
            if not notification.bypass_preferences:
                decision = preferences.evaluate(
                    prefs.get(delivery.recipient.user_id), notification, delivery.channel, now,
                )
                if not decision.allowed:
                    if self._finish(delivery, DeliveryStatus.CANCELLED, decision.reason):
                        summary.cancelled += 1
                    continue

            adapter = self.adapters.get(delivery.channel)
            if adapter is None:
                if self._finish(delivery, DeliveryStatus.FAILED, f"No adapter available for channel '{delivery.channel}'",
                                attempted=True):
                    summary.failed += 1
                continue

            jobs.append((delivery, adapter, build_contact(delivery.recipient)))

        for delivery, result in self._run(jobs, content):
            status = DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED
            if self._finish(delivery, status, result.error, attempted=True):
                if result.success:
                    summary.delivered += 1
                else:
                    summary.failed += 1

        self._refresh_counters(notification)
        logger.info("Notification %s (%s): delivered=%d failed=%d cancelled=%d",
                    notification.id, notification.type, summary.delivered, summary.failed, summary.cancelled)
        return summary

    def _run(self, jobs, content):
        if not jobs:
            return []

        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs)), thread_name_prefix="notify")
        futures = {
            pool.submit(_attempt, adapter, contact, content): delivery
            for delivery, adapter, contact in jobs
        }
        done, not_done = wait(futures, timeout=self.timeout)

        results = [(futures[future], future.result()) for future in done]
        for future in not_done:
            future.cancel()
            delivery = futures[future]
            logger.warning("%s delivery %s timed out after %ss", delivery.channel, delivery.id, self.timeout)
            results.append((delivery, DeliveryResult.failed(f"Delivery timed out after {self.timeout}s")))

        # 不等超时的线程结束，它们的结果会被丢弃
        pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _finish(self, delivery, status, error=None, attempted=False) -> bool:
        now = timezone.now()
        changes = {
            "status": status,
            "error": (error or "")[:MAX_ERROR_LENGTH],
            "updated_at": now,
        }
        if status == DeliveryStatus.DELIVERED:
            changes["delivered_at"] = now
        if attempted:
            changes["attempts"] = F("attempts") + 1

        updated = ChannelDelivery.objects.filter(
            id=delivery.id, status=DeliveryStatus.PENDING,
        ).update(**changes)
        if not updated:
            logger.info("Delivery %s no longer pending, %s result dropped", delivery.id, status)
        return bool(updated)

    def _refresh_counters(self, notification):
        delivered = (
            ChannelDelivery.objects
            .filter(recipient__notification=notification, status=DeliveryStatus.DELIVERED)
            .count()
        )
        Notification.objects.filter(id=notification.id).update(delivered_count=delivered, updated_at=timezone.now())
