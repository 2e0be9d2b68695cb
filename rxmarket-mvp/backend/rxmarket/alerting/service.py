"""
AlertingService: 告警的触发、确认、解决和升级。

所有状态都在数据库里（Alert / EscalationRule / EscalationRuleAudit），
进程重启不会丢失活跃告警，也不会重复升级：
升级时用 escalation_level 做条件更新，多个 beat worker 同时跑也只有一个能领到。
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from ..constants import (
    AlertSeverity,
    AlertType,
    DeliveryStatus,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
)
from ..exceptions import InvalidStateError, NotFoundError, ValidationError
from ..models import Alert, ChannelDelivery, EscalationRule, EscalationRuleAudit
from .rules import DEFAULT_ESCALATION_RULES, default_rule, validate_rule

logger = logging.getLogger(__name__)

SEVERITY_RANK = {AlertSeverity.INFO: 0, AlertSeverity.WARNING: 1, AlertSeverity.CRITICAL: 2}


def _rule_to_dict(rule: EscalationRule) -> dict:
    return {
        "threshold": rule.threshold,
        "cooldown_minutes": rule.cooldown_minutes,
        "levels": rule.levels,
        "enabled": rule.enabled,
    }


class AlertingService:

    def __init__(self, notifier):
        self.notifier = notifier

    # ── Escalation rules ───────────────────────────────────────────────────

    def get_rule(self, alert_type: str) -> dict | None:
        row = EscalationRule.objects.filter(alert_type=alert_type).first()
        if row is not None:
            return _rule_to_dict(row)
        rule = default_rule(alert_type)
        if rule is not None:
            rule.setdefault("enabled", True)
        return rule

    def get_escalation_rules(self) -> dict:
        rules = {alert_type: {**rule, "enabled": True} for alert_type, rule in DEFAULT_ESCALATION_RULES.items()}
        for row in EscalationRule.objects.all():
            rules[row.alert_type] = _rule_to_dict(row)
        return rules

    def update_escalation_rule(self, alert_type, rule, changed_by=None) -> dict:
        """
        整条替换某个 alert_type 的升级规则，同一事务里写审计日志（含旧值）。
        """
        cleaned = validate_rule(alert_type, rule)

        with transaction.atomic():
            row = EscalationRule.objects.select_for_update().filter(alert_type=alert_type).first()
            previous = _rule_to_dict(row) if row is not None else default_rule(alert_type)

            if row is None:
                row = EscalationRule(alert_type=alert_type)
            row.threshold = cleaned["threshold"]
            row.cooldown_minutes = cleaned["cooldown_minutes"]
            row.levels = cleaned["levels"]
            row.enabled = cleaned["enabled"]
            row.updated_by = changed_by
            row.save()

            EscalationRuleAudit.objects.create(
                alert_type=alert_type,
                previous=previous,
                current=cleaned,
                changed_by=changed_by,
            )

        logger.info("Escalation rule %s updated by %s", alert_type, getattr(changed_by, "id", None))
        return cleaned

    # ── Alert lifecycle ────────────────────────────────────────────────────

    def raise_alert(self, alert_type, severity, message, data=None, source_key=None, now=None):
        """
        触发一条告警。

        - 同 (alert_type, source_key) 已有活跃告警 → 更新数据，不新建
        - 上一条同类告警解决后仍在冷却期内 → 跳过，返回 None
        - 规则第 0 级 after_minutes == 0 → 立即通知

        Returns:
            Alert 或 None（冷却中）
        """
        if alert_type not in AlertType.values:
            raise ValidationError(message=f"Unknown alert type: {alert_type!r}", code="UNKNOWN_ALERT_TYPE")
        if severity not in AlertSeverity.values:
            raise ValidationError(message=f"Unknown severity: {severity!r}", code="INVALID_SEVERITY")

        now = now or timezone.now()
        source_key = source_key or alert_type
        rule = self.get_rule(alert_type)

        with transaction.atomic():
            active = (
                Alert.objects.select_for_update()
                .filter(alert_type=alert_type, source_key=source_key, resolved_at__isnull=True)
                .first()
            )
            if active is not None:
                active.message = message
                active.data = data or {}
                if SEVERITY_RANK[severity] > SEVERITY_RANK[active.severity]:
                    active.severity = severity
                active.save(update_fields=["message", "data", "severity", "updated_at"])
                return active

            cooldown = timedelta(minutes=(rule or {}).get("cooldown_minutes", 0))
            if cooldown and Alert.objects.filter(
                alert_type=alert_type, source_key=source_key, resolved_at__gte=now - cooldown,
            ).exists():
                logger.info("Alert %s/%s in cooldown, skipping", alert_type, source_key)
                return None

            levels = (rule or {}).get("levels") or []
            escalates = bool(rule and rule.get("enabled") and levels)
            alert = Alert.objects.create(
                alert_type=alert_type,
                severity=severity,
                message=message,
                data=data or {},
                source_key=source_key,
                triggered_at=now,
                next_escalation_at=now + timedelta(minutes=levels[0]["after_minutes"]) if escalates else None,
            )

        logger.warning("[Alert] %s (%s) raised: %s", alert_type, severity, message)
        if escalates and levels[0]["after_minutes"] == 0:
            self._escalate(alert, rule, now)
        return alert

    def acknowledge_alert(self, alert_id, by, notes=""):
        """单向：未确认 → 已确认。确认后停止升级。"""
        alert = self._get(alert_id)
        if alert.resolved_at is not None:
            raise InvalidStateError(message="Alert is already resolved", code="ALERT_ALREADY_RESOLVED")

        now = timezone.now()
        updated = Alert.objects.filter(id=alert.id, acknowledged_at__isnull=True).update(
            acknowledged_by=by,
            acknowledged_at=now,
            acknowledgement_notes=notes or "",
            next_escalation_at=None,
            updated_at=now,
        )
        if not updated:
            raise InvalidStateError(message="Alert is already acknowledged", code="ALERT_ALREADY_ACKNOWLEDGED")

        alert.refresh_from_db()
        logger.info("Alert %s acknowledged by %s", alert.id, getattr(by, "id", by))
        return alert

    def resolve_alert(self, alert_id, by, resolution=""):
        """→ resolved，终态。"""
        alert = self._get(alert_id)
        now = timezone.now()
        updated = Alert.objects.filter(id=alert.id, resolved_at__isnull=True).update(
            resolved_by=by,
            resolved_at=now,
            resolution=resolution or "",
            next_escalation_at=None,
            updated_at=now,
        )
        if not updated:
            raise InvalidStateError(message="Alert is already resolved", code="ALERT_ALREADY_RESOLVED")

        alert.refresh_from_db()
        logger.info("Alert %s resolved by %s", alert.id, getattr(by, "id", by))
        return alert

    def get_active_alerts(self):
        return list(Alert.objects.filter(resolved_at__isnull=True).order_by("-triggered_at"))

    def get_alert_statistics(self, hours=24) -> dict:
        since = timezone.now() - timedelta(hours=hours)
        alerts = Alert.objects.filter(triggered_at__gte=since)

        by_severity = {severity: 0 for severity in AlertSeverity.values}
        by_severity.update({
            row["severity"]: row["count"]
            for row in alerts.values("severity").annotate(count=Count("id"))
        })
        by_type = {row["alert_type"]: row["count"] for row in alerts.values("alert_type").annotate(count=Count("id"))}

        return {
            "period_hours": hours,
            "total": alerts.count(),
            "active": alerts.filter(resolved_at__isnull=True).count(),
            "acknowledged": alerts.filter(acknowledged_at__isnull=False).count(),
            "resolved": alerts.filter(resolved_at__isnull=False).count(),
            "by_severity": by_severity,
            "by_type": by_type,
        }

    # ── Escalation ─────────────────────────────────────────────────────────

    def process_escalations(self, now=None) -> int:
        now = now or timezone.now()
        due = Alert.objects.filter(
            resolved_at__isnull=True, acknowledged_at__isnull=True, next_escalation_at__lte=now,
        )
        escalated = 0
        for alert in due:
            rule = self.get_rule(alert.alert_type)
            if not rule or not rule.get("enabled"):
                Alert.objects.filter(id=alert.id).update(next_escalation_at=None)
                continue
            if self._escalate(alert, rule, now):
                escalated += 1
        return escalated

    def _escalate(self, alert, rule, now) -> bool:
        levels = rule["levels"]
        level_index = alert.escalation_level
        if level_index >= len(levels):
            Alert.objects.filter(id=alert.id).update(next_escalation_at=None)
            return False

        next_at = None
        if level_index + 1 < len(levels):
            next_at = alert.triggered_at + timedelta(minutes=levels[level_index + 1]["after_minutes"])

        claimed = Alert.objects.filter(
            id=alert.id,
            escalation_level=level_index,
            resolved_at__isnull=True,
            acknowledged_at__isnull=True,
        ).update(escalation_level=level_index + 1, last_escalated_at=now, next_escalation_at=next_at)
        if not claimed:
            return False

        level = levels[level_index]
        self._notify_level(alert, level, level_index)
        logger.warning("[Alert] %s escalated to level %d", alert.id, level_index + 1)
        return True

    def _notify_level(self, alert, level, level_index):
        users = list(
            get_user_model().objects.filter(role__in=level["recipient_roles"], is_active=True)
        )
        if not users:
            logger.warning("No recipients for alert %s level %d (roles=%s)",
                           alert.id, level_index, level["recipient_roles"])
            return

        critical = alert.severity == AlertSeverity.CRITICAL
        label = AlertType(alert.alert_type).label
        if level_index == 0:
            notification_type = NotificationType.SYSTEM_ALERT
            priority = NotificationPriority.CRITICAL if critical else NotificationPriority.HIGH
            title = f"[{alert.severity.upper()}] {label}"
        else:
            notification_type = NotificationType.ALERT_ESCALATION
            priority = NotificationPriority.EMERGENCY if critical else NotificationPriority.CRITICAL
            title = f"[ESCALATED L{level_index + 1}] {label}"

        try:
            with transaction.atomic():
                self.notifier.send_bulk_notification(
                    users,
                    notification_type,
                    {
                        "title": title,
                        "message": alert.message,
                        "action_url": f"/admin/alerts/{alert.id}",
                        "action_text": "Acknowledge",
                        "metadata": {
                            "alert_id": str(alert.id),
                            "alert_type": alert.alert_type,
                            "severity": alert.severity,
                            "escalation_level": level_index + 1,
                            "data": alert.data,
                        },
                    },
                    channels=level["channels"],
                    priority=priority,
                    category=NotificationCategory.SYSTEM,
                    related_entities=[{"entity_type": "alert", "entity_id": str(alert.id)}],
                )
        except Exception:
            logger.exception("Failed to send notifications for alert %s level %d", alert.id, level_index)

    # ── Monitoring ─────────────────────────────────────────────────────────

    def delivery_health(self, now=None) -> dict:
        """
        只读的健康报告：窗口内整体 / 各通道的投递率，以及卡在 pending 的投递数。
        """
        now = now or timezone.now()
        config = settings.NOTIFICATION_ALERT_THRESHOLDS
        since = now - timedelta(minutes=config["window_minutes"])

        rows = (
            ChannelDelivery.objects
            .filter(updated_at__gte=since, status__in=[DeliveryStatus.DELIVERED, DeliveryStatus.FAILED])
            .values("channel", "status")
            .annotate(count=Count("id"))
        )
        channels = {}
        for row in rows:
            stats = channels.setdefault(row["channel"], {"delivered": 0, "failed": 0})
            stats[row["status"]] = row["count"]

        delivered = sum(stats["delivered"] for stats in channels.values())
        failed = sum(stats["failed"] for stats in channels.values())
        attempted = delivered + failed

        cutoff = now - timedelta(minutes=config["stuck_after_minutes"])
        stuck = (
            ChannelDelivery.objects
            .filter(status=DeliveryStatus.PENDING, created_at__lte=cutoff)
            .filter(
                Q(recipient__notification__scheduled_for__isnull=True)
                | Q(recipient__notification__scheduled_for__lte=cutoff)
            )
            .count()
        )

        return {
            "window_minutes": config["window_minutes"],
            "attempted": attempted,
            "delivered": delivered,
            "failed": failed,
            "failure_rate": round(failed / attempted, 4) if attempted else None,
            "delivery_rate": round(delivered / attempted, 4) if attempted else None,
            "channels": channels,
            "stuck_deliveries": stuck,
        }

    def check_delivery_health(self, now=None) -> dict:
        """
        在 delivery_health() 的基础上按阈值触发告警，报告里带上新触发的 alert id。
        样本数不足 min_sample 时不判断比率。
        """
        now = now or timezone.now()
        config = settings.NOTIFICATION_ALERT_THRESHOLDS
        report = self.delivery_health(now)
        report["alerts"] = []

        def _raise(*args, **kwargs):
            alert = self.raise_alert(*args, now=now, **kwargs)
            if alert is not None:
                report["alerts"].append(str(alert.id))

        attempted = report["attempted"]
        if attempted >= config["min_sample"]:
            failure_rate = report["failed"] / attempted
            critical_rate = self._threshold(AlertType.CRITICAL_FAILURE_RATE, config["critical_failure_rate"])
            data = {"failure_rate": round(failure_rate, 4), "attempted": attempted, "failed": report["failed"]}
            if failure_rate >= critical_rate:
                _raise(AlertType.CRITICAL_FAILURE_RATE, AlertSeverity.CRITICAL,
                       f"Notification failure rate {failure_rate:.0%} over the last {config['window_minutes']} min",
                       data, source_key="overall")
            elif failure_rate >= config["warning_failure_rate"]:
                _raise(AlertType.CRITICAL_FAILURE_RATE, AlertSeverity.WARNING,
                       f"Notification failure rate elevated at {failure_rate:.0%}",
                       data, source_key="overall")

            min_delivery = self._threshold(AlertType.LOW_DELIVERY_RATE, config["min_delivery_rate"])
            delivery_rate = report["delivered"] / attempted
            if delivery_rate < min_delivery:
                _raise(AlertType.LOW_DELIVERY_RATE, AlertSeverity.WARNING,
                       f"Notification delivery rate dropped to {delivery_rate:.0%}",
                       {"delivery_rate": round(delivery_rate, 4), "attempted": attempted},
                       source_key="overall")

            channel_threshold = self._threshold(AlertType.EXTERNAL_SERVICE_FAILURE, 0.5)
            for channel, stats in report["channels"].items():
                channel_attempted = stats["delivered"] + stats["failed"]
                if channel_attempted < config["min_sample"]:
                    continue
                channel_rate = stats["failed"] / channel_attempted
                if channel_rate >= channel_threshold:
                    _raise(AlertType.EXTERNAL_SERVICE_FAILURE, AlertSeverity.CRITICAL,
                           f"{channel} deliveries failing at {channel_rate:.0%}",
                           {"channel": channel, "failure_rate": round(channel_rate, 4), **stats},
                           source_key=f"channel:{channel}")

        stuck = report["stuck_deliveries"]
        if stuck >= self._threshold(AlertType.STUCK_NOTIFICATIONS, 10):
            _raise(AlertType.STUCK_NOTIFICATIONS, AlertSeverity.WARNING,
                   f"{stuck} deliveries pending for more than {config['stuck_after_minutes']} min",
                   {"stuck_deliveries": stuck}, source_key="overall")

        return report

    def check_infrastructure(self, now=None) -> dict:
        """ping Redis（broker + websocket 总线），不可用时触发 system_health_critical。"""
        import redis

        healthy = True
        error = ""
        try:
            redis.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2).ping()
        except redis.RedisError as exc:
            healthy = False
            error = str(exc)

        if not healthy:
            self.raise_alert(
                AlertType.SYSTEM_HEALTH_CRITICAL, AlertSeverity.CRITICAL,
                f"Redis is unreachable: {error}", {"component": "redis"},
                source_key="redis", now=now,
            )
        return {"redis": "ok" if healthy else "unreachable"}

    def cleanup_resolved_alerts(self, days=30) -> int:
        cutoff = timezone.now() - timedelta(days=days)
        deleted, _ = Alert.objects.filter(resolved_at__lt=cutoff).delete()
        if deleted:
            logger.info("Deleted %d resolved alerts older than %d days", deleted, days)
        return deleted

    # ── Helpers ────────────────────────────────────────────────────────────

    def _threshold(self, alert_type, fallback):
        rule = self.get_rule(alert_type)
        if rule and rule.get("threshold") is not None:
            return rule["threshold"]
        return fallback

    def _get(self, alert_id) -> Alert:
        try:
            return Alert.objects.get(id=alert_id)
        except (Alert.DoesNotExist, ValueError, TypeError):
            raise NotFoundError(message="Alert not found", code="ALERT_NOT_FOUND",
                                detail={"alert_id": str(alert_id)})
