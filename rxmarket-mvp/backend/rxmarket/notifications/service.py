"""
NotificationService: 通知的创建、发送、重试、取消和查询。

这里只负责「写库 + 派发」：
  - 创建时把每个 (recipient, channel) 持久化为 pending
  - 到期的通知交给 Celery 的 deliver_notification 任务，由 DeliveryEngine 真正投递
  - retry / cancel 只改状态、重新入队，永远不在请求线程里等外部通道

业务层（PrescriptionRequestService、AlertingService）通过构造函数注入拿到实例，
不要在模块级别缓存它，见 notifications/factory.py。
"""

import logging
from datetime import datetime, time, timedelta
from datetime import timezone as dt_timezone
from functools import partial

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime, parse_time

from ..constants import (
    URGENT_PRIORITIES,
    Channel,
    DeliveryStatus,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
    UserRole,
    default_category,
)
from ..exceptions import InvalidStateError, NotFoundError, ValidationError
from ..models import ChannelDelivery, Notification, NotificationPreference, NotificationRecipient
from .payloads import validate_payload

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = [Channel.WEBSOCKET.value, Channel.EMAIL.value]
URGENT_CHANNELS = [Channel.WEBSOCKET.value, Channel.EMAIL.value, Channel.SMS.value]


def channels_for_priority(priority: str) -> list[str]:
    return list(URGENT_CHANNELS if priority in URGENT_PRIORITIES else DEFAULT_CHANNELS)


def enqueue_delivery(notification_id: str):
    """默认的派发方式：交给 Celery。"""
    from rxmarket.tasks import deliver_notification

    deliver_notification.delay(notification_id)


def _parse_when(value, field_name):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            raise ValidationError(
                message=f"'{field_name}' must be an ISO-8601 datetime",
                code="INVALID_DATETIME",
                detail={"field": field_name, "value": str(value)},
            )
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


class NotificationService:

    is_degraded = False

    def __init__(self, dispatcher=None):
        self.dispatcher = dispatcher or enqueue_delivery

    # ── Create / send ──────────────────────────────────────────────────────

    def create_notification(self, data: dict, created_by=None, bypass_preferences: bool = False) -> Notification:
        """
        校验并持久化一条通知，然后立即派发（除非 scheduled_for 在未来）。

        data 结构：
        {
            "type": "prescription_request",
            "recipients": [{"user_id": 1, "user_role": "pharmacy", "delivery_channels": ["websocket", "email"]}],
            "content": {"title": ..., "message": ..., "action_url": ..., "action_text": ..., "metadata": {...}},
            "category": "medical",          // 可选，默认按 type 推断
            "priority": "medium",           // 可选
            "related_entities": [{"entity_type": "prescription_request", "entity_id": "..."}],
            "scheduled_for": "...", "expires_at": "..."   // 可选
        }

        Raises:
            ValidationError: type 不在枚举里、收件人 / 内容缺失、payload 不符合该类型的 schema
        """
        notification_type = data.get("type")
        if notification_type not in NotificationType.values:
            raise ValidationError(
                message=f"Unknown notification type: {notification_type!r}",
                code="INVALID_NOTIFICATION_TYPE",
            )

        priority = data.get("priority") or NotificationPriority.MEDIUM
        if priority not in NotificationPriority.values:
            raise ValidationError(message=f"Unknown priority: {priority!r}", code="INVALID_PRIORITY")

        category = data.get("category") or default_category(notification_type)
        if category not in NotificationCategory.values:
            raise ValidationError(message=f"Unknown category: {category!r}", code="INVALID_CATEGORY")

        content = data.get("content") or {}
        title = (content.get("title") or "").strip()
        message = (content.get("message") or "").strip()
        if not title or not message:
            raise ValidationError(
                message="Notification content requires a title and a message",
                code="INVALID_NOTIFICATION_CONTENT",
            )

        metadata = validate_payload(notification_type, content.get("metadata"))
        recipients = self._validate_recipients(data.get("recipients"), priority)
        related_entities = self._validate_related_entities(data.get("related_entities"))
        scheduled_for = _parse_when(data.get("scheduled_for"), "scheduled_for")
        expires_at = _parse_when(data.get("expires_at"), "expires_at")

        with transaction.atomic():
            notification = Notification.objects.create(
                type=notification_type,
                category=category,
                priority=priority,
                title=title[:200],
                message=message,
                action_url=content.get("action_url") or "",
                action_text=content.get("action_text") or "",
                metadata=metadata,
                related_entities=related_entities,
                scheduled_for=scheduled_for,
                expires_at=expires_at,
                bypass_preferences=bypass_preferences,
                total_recipients=len(recipients),
                created_by=created_by,
            )
            deliveries = []
            for item in recipients:
                recipient = NotificationRecipient.objects.create(
                    notification=notification,
                    user_id=item["user_id"],
                    user_role=item["user_role"],
                    delivery_channels=item["delivery_channels"],
                )
                deliveries.extend(
                    ChannelDelivery(recipient=recipient, channel=channel)
                    for channel in item["delivery_channels"]
                )
            ChannelDelivery.objects.bulk_create(deliveries)

        logger.info("Notification %s created: type=%s recipients=%d deliveries=%d%s",
                    notification.id, notification_type, len(recipients), len(deliveries),
                    f" scheduled_for={scheduled_for.isoformat()}" if scheduled_for else "")

        if scheduled_for is None or scheduled_for <= timezone.now():
            self._dispatch(notification)
        return notification

    def send_notification(self, user, notification_type, content, **options) -> Notification:
        """单个收件人的快捷方式。user 可以是 User 实例或 id。"""
        return self.send_bulk_notification([user], notification_type, content, **options)

    def send_bulk_notification(self, users, notification_type, content, *, channels=None,
                               priority=NotificationPriority.MEDIUM, category=None,
                               related_entities=None, scheduled_for=None, expires_at=None,
                               created_by=None, bypass_preferences=False) -> Notification:
        """
        多个收件人共用一条通知。

        每个 (recipient, channel) 独立投递、独立记录结果，
        某个收件人或某个通道失败不会阻塞其他人，也不会抛给调用方。
        """
        resolved = self._resolve_users(users)
        channels = list(channels) if channels else channels_for_priority(priority)
        data = {
            "type": notification_type,
            "priority": priority,
            "category": category,
            "content": content,
            "related_entities": related_entities or [],
            "scheduled_for": scheduled_for,
            "expires_at": expires_at,
            "recipients": [
                {"user_id": user.id, "user_role": user.role, "delivery_channels": channels}
                for user in resolved
            ],
        }
        return self.create_notification(data, created_by=created_by, bypass_preferences=bypass_preferences)

    def broadcast_notification(self, target_role, notification_type, content, *, exclude_user_ids=None,
                               **options) -> Notification:
        """
        发给某个角色下所有已验证、未停用的用户。

        Raises:
            ValidationError: 未知角色
            NotFoundError: 排除之后没有收件人
        """
        if target_role not in UserRole.values:
            raise ValidationError(
                message=f"Unknown target role: {target_role!r}",
                code="INVALID_TARGET_ROLE",
                detail={"known_roles": UserRole.values},
            )

        users = (
            get_user_model().objects
            .filter(role=target_role, is_verified=True, is_active=True)
            .exclude(id__in=exclude_user_ids or [])
        )
        users = list(users)
        if not users:
            raise NotFoundError(
                message=f"No recipients found for role '{target_role}'",
                code="NO_BROADCAST_RECIPIENTS",
            )

        logger.info("Broadcasting %s to %d %s users", notification_type, len(users), target_role)
        return self.send_bulk_notification(users, notification_type, content, **options)

    def emergency_override(self, user_ids, notification_type, content, override_reason, overridden_by,
                           *, channels=None, priority=NotificationPriority.EMERGENCY, category=None) -> Notification:
        """
        唯一允许无视用户通知偏好的发送路径。

        必须给出 override_reason；谁、什么时候、为什么 override 都写进 metadata 留痕。
        """
        if not override_reason or not str(override_reason).strip():
            raise ValidationError(
                message="Emergency override requires a reason",
                code="OVERRIDE_REASON_REQUIRED",
            )

        content = dict(content or {})
        content["metadata"] = {
            **(content.get("metadata") or {}),
            "emergency_override": True,
            "override_reason": str(override_reason).strip(),
            "overridden_by": getattr(overridden_by, "id", overridden_by),
            "overridden_at": timezone.now().isoformat(),
        }

        logger.warning("Emergency override by user %s for %d users: %s",
                       getattr(overridden_by, "id", overridden_by), len(user_ids or []), override_reason)
        return self.send_bulk_notification(
            user_ids,
            notification_type,
            content,
            channels=channels or URGENT_CHANNELS,
            priority=priority,
            category=category,
            created_by=overridden_by if getattr(overridden_by, "pk", None) else None,
            bypass_preferences=True,
        )

    # ── Retry / cancel ─────────────────────────────────────────────────────

    def retry_notification(self, notification_id, channels=None, recipient_ids=None) -> dict:
        """
        把 failed 的 (recipient, channel) 重置为 pending 并重新入队。

        delivered / cancelled 的行不动。retry_count 每次调用 +1，
        哪怕一行都没重置。
        """
        if channels:
            unknown = [channel for channel in channels if channel not in Channel.values]
            if unknown:
                raise ValidationError(
                    message=f"Unknown delivery channels: {', '.join(map(str, unknown))}",
                    code="UNKNOWN_CHANNEL",
                )

        now = timezone.now()
        with transaction.atomic():
            notification = self._get_for_update(notification_id)

            failed = ChannelDelivery.objects.filter(
                recipient__notification=notification, status=DeliveryStatus.FAILED,
            )
            if channels:
                failed = failed.filter(channel__in=channels)
            if recipient_ids:
                failed = failed.filter(recipient__user_id__in=recipient_ids)

            retried = failed.update(status=DeliveryStatus.PENDING, error="", delivered_at=None, updated_at=now)

            Notification.objects.filter(id=notification.id).update(
                retry_count=F("retry_count") + 1, last_retry_at=now, updated_at=now,
            )
            if retried:
                transaction.on_commit(partial(self._enqueue, notification.id))
        notification.refresh_from_db(fields=["retry_count", "last_retry_at"])

        logger.info("Notification %s retry #%d: %d deliveries reset", notification.id,
                    notification.retry_count, retried)

        return {
            "notification_id": str(notification.id),
            "retried": retried,
            "retry_count": notification.retry_count,
            "last_retry_at": notification.last_retry_at.isoformat(),
        }

    def cancel_notification(self, notification_id, reason, cancelled_by=None) -> dict:
        """
        取消一条还没到期的定时通知。

        只是把 pending 改成 cancelled，已经派发出去的投递不会被中途拦截。

        Raises:
            InvalidStateError: 没有 scheduled_for、已经到期，或没有可取消的 pending 投递
        """
        now = timezone.now()
        with transaction.atomic():
            notification = self._get_for_update(notification_id)

            if notification.scheduled_for is None or notification.scheduled_for <= now:
                raise InvalidStateError(
                    message="Only notifications scheduled for the future can be cancelled",
                    code="NOTIFICATION_NOT_CANCELLABLE",
                    detail={"scheduled_for": notification.scheduled_for.isoformat()
                            if notification.scheduled_for else None},
                )

            reason = (reason or "").strip() or "Cancelled"
            cancelled = ChannelDelivery.objects.filter(
                recipient__notification=notification, status=DeliveryStatus.PENDING,
            ).update(status=DeliveryStatus.CANCELLED, error=reason, updated_at=now)

            if not cancelled:
                raise InvalidStateError(
                    message="Notification has no pending deliveries to cancel",
                    code="NOTIFICATION_ALREADY_CANCELLED",
                )

            notification.metadata = {
                **(notification.metadata or {}),
                "cancelled_by": getattr(cancelled_by, "id", cancelled_by),
                "cancelled_at": now.isoformat(),
                "cancellation_reason": reason,
            }
            notification.save(update_fields=["metadata", "updated_at"])

        logger.info("Notification %s cancelled (%d deliveries): %s", notification.id, cancelled, reason)
        return {"notification_id": str(notification.id), "cancelled": cancelled}

    # ── Inbox ──────────────────────────────────────────────────────────────

    def get_user_notifications(self, user, unread_only=False, limit=20, offset=0):
        receipts = (
            NotificationRecipient.objects
            .filter(user=user)
            .filter(Q(notification__scheduled_for__isnull=True) | Q(notification__scheduled_for__lte=timezone.now()))
            .select_related("notification")
            .order_by("-notification__created_at")
        )
        if unread_only:
            receipts = receipts.filter(read_at__isnull=True)
        return receipts.count(), list(receipts[offset:offset + limit])

    def mark_as_read(self, notification_id, user) -> NotificationRecipient:
        receipt = self._get_receipt(notification_id, user)
        now = timezone.now()
        updated = NotificationRecipient.objects.filter(id=receipt.id, read_at__isnull=True).update(read_at=now)
        if updated:
            Notification.objects.filter(id=notification_id).update(read_count=F("read_count") + 1)
        receipt.refresh_from_db()
        return receipt

    def record_action(self, notification_id, user, action) -> NotificationRecipient:
        action = (action or "").strip()
        if not action:
            raise ValidationError(message="Action is required", code="ACTION_REQUIRED")

        receipt = self._get_receipt(notification_id, user)
        first_action = not receipt.action_taken
        self.mark_as_read(notification_id, user)

        now = timezone.now()
        NotificationRecipient.objects.filter(id=receipt.id).update(action_taken=action[:50], action_taken_at=now)
        if first_action:
            Notification.objects.filter(id=notification_id).update(action_count=F("action_count") + 1)
        receipt.refresh_from_db()
        return receipt

    # ── Preferences ────────────────────────────────────────────────────────

    def get_preferences(self, user_id) -> NotificationPreference:
        user = self._resolve_users([user_id])[0]
        preference, _ = NotificationPreference.objects.get_or_create(user=user)
        return preference

    def update_preferences(self, user_id, data: dict) -> NotificationPreference:
        preference = self.get_preferences(user_id)

        if "enabled" in data:
            preference.enabled = bool(data["enabled"])

        if "channels" in data:
            channels = data["channels"] or {}
            unknown = [key for key in channels if key not in Channel.values]
            if unknown:
                raise ValidationError(message=f"Unknown channels: {', '.join(unknown)}", code="UNKNOWN_CHANNEL")
            preference.channels = {**preference.channels, **{k: bool(v) for k, v in channels.items()}}

        if "categories" in data:
            categories = data["categories"] or {}
            unknown = [key for key in categories if key not in NotificationCategory.values]
            if unknown:
                raise ValidationError(message=f"Unknown categories: {', '.join(unknown)}", code="INVALID_CATEGORY")
            preference.categories = {**preference.categories, **{k: bool(v) for k, v in categories.items()}}

        if "disabled_types" in data:
            disabled = list(data["disabled_types"] or [])
            unknown = [t for t in disabled if t not in NotificationType.values]
            if unknown:
                raise ValidationError(message=f"Unknown notification types: {', '.join(unknown)}",
                                      code="INVALID_NOTIFICATION_TYPE")
            preference.disabled_types = disabled

        quiet = data.get("quiet_hours")
        if quiet is not None:
            preference.quiet_hours_enabled = bool(quiet.get("enabled", preference.quiet_hours_enabled))
            for key, attr in (("start", "quiet_hours_start"), ("end", "quiet_hours_end")):
                if key in quiet:
                    setattr(preference, attr, self._parse_clock(quiet[key], key))
            if quiet.get("timezone"):
                preference.timezone = quiet["timezone"]
            if preference.quiet_hours_enabled and (
                preference.quiet_hours_start is None or preference.quiet_hours_end is None
            ):
                raise ValidationError(message="Quiet hours need both start and end", code="INVALID_QUIET_HOURS")

        preference.save()
        return preference

    # ── Admin queries ──────────────────────────────────────────────────────

    def list_notifications(self, type=None, category=None, priority=None, limit=50, offset=0):
        notifications = Notification.objects.all()
        if type:
            notifications = notifications.filter(type=type)
        if category:
            notifications = notifications.filter(category=category)
        if priority:
            notifications = notifications.filter(priority=priority)
        return notifications.count(), list(notifications[offset:offset + limit])

    def delivery_breakdown(self, notification) -> dict:
        rows = (
            ChannelDelivery.objects
            .filter(recipient__notification=notification)
            .values("status")
            .annotate(count=Count("id"))
        )
        breakdown = {status: 0 for status in DeliveryStatus.values}
        breakdown.update({row["status"]: row["count"] for row in rows})
        return breakdown

    def get_overview(self, hours=24) -> dict:
        since = timezone.now() - timedelta(hours=hours)
        notifications = Notification.objects.filter(created_at__gte=since)

        def counts(field):
            return {row[field]: row["count"] for row in notifications.values(field).annotate(count=Count("id"))}

        by_channel = {channel: {status: 0 for status in DeliveryStatus.values} for channel in Channel.values}
        rows = (
            ChannelDelivery.objects
            .filter(recipient__notification__created_at__gte=since)
            .values("channel", "status")
            .annotate(count=Count("id"))
        )
        for row in rows:
            by_channel.setdefault(row["channel"], {})[row["status"]] = row["count"]

        delivered = sum(c.get(DeliveryStatus.DELIVERED, 0) for c in by_channel.values())
        failed = sum(c.get(DeliveryStatus.FAILED, 0) for c in by_channel.values())
        receipts = NotificationRecipient.objects.filter(notification__created_at__gte=since)
        total_receipts = receipts.count()
        read = receipts.filter(read_at__isnull=False).count()

        return {
            "period_hours": hours,
            "total_notifications": notifications.count(),
            "by_type": counts("type"),
            "by_category": counts("category"),
            "by_priority": counts("priority"),
            "by_channel": by_channel,
            "delivery_rate": round(delivered / (delivered + failed), 4) if delivered + failed else None,
            "read_rate": round(read / total_receipts, 4) if total_receipts else None,
            "retried_notifications": notifications.filter(retry_count__gt=0).count(),
        }

    # ── Periodic work ──────────────────────────────────────────────────────

    def process_scheduled_notifications(self, now=None) -> int:
        """
        派发所有到期但还没派发过的通知。

        也兜底两种情况：
          - 入队失败的通知（_enqueue 会把 dispatched_at 清回 NULL）
          - 派发超过 NOTIFICATION_DISPATCH_STALE_AFTER 秒仍有 pending 投递的通知（任务丢了）
        """
        now = now or timezone.now()
        stale_before = now - timedelta(seconds=settings.NOTIFICATION_DISPATCH_STALE_AFTER)
        due = (
            Notification.objects
            .filter(Q(dispatched_at__isnull=True) | Q(dispatched_at__lte=stale_before))
            .filter(Q(scheduled_for__isnull=True) | Q(scheduled_for__lte=now))
            .filter(recipients__deliveries__status=DeliveryStatus.PENDING)
            .distinct()
        )
        dispatched = 0
        for notification in due:
            if notification.dispatched_at is not None:
                logger.warning("Notification %s still has pending deliveries since %s, re-dispatching",
                               notification.id, notification.dispatched_at.isoformat())
            if self._dispatch(notification):
                dispatched += 1
        if dispatched:
            logger.info("Dispatched %d due notifications", dispatched)
        return dispatched

    def auto_retry_failed(self, now=None) -> int:
        """
        自动重试：指数退避，base * 2^retry_count 秒之后才重试，最多 NOTIFICATION_AUTO_RETRY_LIMIT 次。
        """
        now = now or timezone.now()
        limit = settings.NOTIFICATION_AUTO_RETRY_LIMIT
        base = settings.NOTIFICATION_AUTO_RETRY_BASE_DELAY

        candidates = (
            Notification.objects
            .filter(retry_count__lt=limit, recipients__deliveries__status=DeliveryStatus.FAILED)
            .exclude(expires_at__lte=now)
            .distinct()
        )
        retried = 0
        for notification in candidates:
            reference = notification.last_retry_at or notification.updated_at
            if reference + timedelta(seconds=base * (2 ** notification.retry_count)) > now:
                continue
            result = self.retry_notification(notification.id)
            retried += 1 if result["retried"] else 0
        return retried

    # ── Helpers ────────────────────────────────────────────────────────────

    def _dispatch(self, notification) -> bool:
        """
        认领 dispatched_at（条件是它还是我们读到的值），入队放到外层事务提交之后。

        worker 因此不会读到还没提交的通知；调用方外面没有事务时 on_commit 会立即执行。
        """
        claimed = Notification.objects.filter(
            id=notification.id, dispatched_at=notification.dispatched_at,
        ).update(dispatched_at=timezone.now())
        if not claimed:
            return False
        transaction.on_commit(partial(self._enqueue, notification.id))
        return True

    def _enqueue(self, notification_id) -> bool:
        try:
            self.dispatcher(str(notification_id))
        except Exception:
            logger.exception("Failed to enqueue delivery for notification %s", notification_id)
            # 清回 NULL，process_scheduled_notifications 下一轮会重新派发
            Notification.objects.filter(id=notification_id).update(dispatched_at=None)
            return False
        return True

    def _get_for_update(self, notification_id) -> Notification:
        try:
            return Notification.objects.select_for_update().get(id=notification_id)
        except (Notification.DoesNotExist, ValueError, TypeError):
            raise NotFoundError(
                message="Notification not found",
                code="NOTIFICATION_NOT_FOUND",
                detail={"notification_id": str(notification_id)},
            )

    def _get_receipt(self, notification_id, user) -> NotificationRecipient:
        try:
            return NotificationRecipient.objects.get(notification_id=notification_id, user=user)
        except (NotificationRecipient.DoesNotExist, ValueError, TypeError):
            raise NotFoundError(
                message="Notification not found",
                code="NOTIFICATION_NOT_FOUND",
                detail={"notification_id": str(notification_id)},
            )

    def _resolve_users(self, users) -> list:
        User = get_user_model()
        users = list(users or [])
        if not users:
            raise ValidationError(message="At least one recipient is required", code="NO_RECIPIENTS")

        instances = [u for u in users if isinstance(u, User)]
        ids = []
        for u in users:
            if isinstance(u, User):
                continue
            try:
                ids.append(int(u))
            except (TypeError, ValueError):
                raise ValidationError(message=f"Invalid user id: {u!r}", code="INVALID_RECIPIENT")

        found = {user.id: user for user in User.objects.filter(id__in=ids)}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError(
                message="Some recipients do not exist",
                code="RECIPIENT_NOT_FOUND",
                detail={"user_ids": missing},
            )

        seen = set()
        resolved = []
        for user in instances + [found[i] for i in ids]:
            if user.id not in seen:
                seen.add(user.id)
                resolved.append(user)
        return resolved

    def _validate_recipients(self, recipients, priority) -> list[dict]:
        if not recipients:
            raise ValidationError(message="At least one recipient is required", code="NO_RECIPIENTS")

        cleaned = {}
        for index, item in enumerate(recipients):
            user_id = item.get("user_id") if isinstance(item, dict) else None
            user_role = item.get("user_role") if isinstance(item, dict) else None
            if user_id in (None, "") or not user_role:
                raise ValidationError(
                    message="Each recipient needs user_id and user_role",
                    code="INVALID_RECIPIENT",
                    detail={"index": index},
                )
            if user_role not in UserRole.values:
                raise ValidationError(message=f"Unknown recipient role: {user_role!r}", code="INVALID_RECIPIENT")
            try:
                user_id = int(user_id)
            except (TypeError, ValueError):
                raise ValidationError(message=f"Invalid user id: {user_id!r}", code="INVALID_RECIPIENT")

            channels = list(item.get("delivery_channels") or channels_for_priority(priority))
            unknown = [channel for channel in channels if channel not in Channel.values]
            if unknown:
                raise ValidationError(
                    message=f"Unknown delivery channels: {', '.join(map(str, unknown))}",
                    code="UNKNOWN_CHANNEL",
                )
            # 同一个用户出现多次时合并通道
            entry = cleaned.setdefault(user_id, {"user_id": user_id, "user_role": user_role, "delivery_channels": []})
            for channel in channels:
                if channel not in entry["delivery_channels"]:
                    entry["delivery_channels"].append(channel)

        existing = set(get_user_model().objects.filter(id__in=list(cleaned)).values_list("id", flat=True))
        missing = [user_id for user_id in cleaned if user_id not in existing]
        if missing:
            raise ValidationError(
                message="Some recipients do not exist",
                code="INVALID_RECIPIENT",
                detail={"user_ids": missing},
            )
        return list(cleaned.values())

    def _validate_related_entities(self, entities) -> list[dict]:
        cleaned = []
        for entity in entities or []:
            if not isinstance(entity, dict) or not entity.get("entity_type") or not entity.get("entity_id"):
                raise ValidationError(
                    message="Related entities need entity_type and entity_id",
                    code="INVALID_RELATED_ENTITY",
                )
            cleaned.append({"entity_type": str(entity["entity_type"]), "entity_id": str(entity["entity_id"])})
        return cleaned

    @staticmethod
    def _parse_clock(value, field_name) -> time | None:
        if value in (None, ""):
            return None
        parsed = value if isinstance(value, time) else parse_time(str(value))
        if parsed is None:
            raise ValidationError(message=f"Invalid quiet hours {field_name}: {value!r}", code="INVALID_QUIET_HOURS")
        return parsed
