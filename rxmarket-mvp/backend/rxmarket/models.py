import uuid
from datetime import timedelta

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone

from .constants import (
    AlertSeverity,
    Channel,
    DeliveryMethod,
    DeliveryStatus,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
    RequestStatus,
    ResponseStatus,
    Urgency,
    UserRole,
)


# ── 外部协作方：用户 / 药房 ───────────────────────────────────────────────────
# 注册、认证、药房资料 CRUD 不在本项目范围内，这里只保留核心流程要读的字段。

class User(AbstractUser):
    role = models.CharField(max_length=20, choices=UserRole.choices, default=UserRole.PATIENT)
    phone = models.CharField(max_length=20, blank=True, default='')
    is_verified = models.BooleanField(default=False)

    class Meta:
        db_table = 'users'


class Pharmacy(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='pharmacies')
    name = models.CharField(max_length=200)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'pharmacies'

    def __str__(self):
        return self.name


# ── Prescription request ───────────────────────────────────────────────────

def default_request_expiry():
    return timezone.now() + timedelta(days=getattr(settings, 'PRESCRIPTION_REQUEST_TTL_DAYS', 7))


class PrescriptionRequest(models.Model):
    TERMINAL_STATUSES = (RequestStatus.FULFILLED, RequestStatus.CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    request_number = models.CharField(max_length=24, unique=True)
    patient = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='prescription_requests',
    )
    medications = models.JSONField(default=list)
    status = models.CharField(
        max_length=20, choices=RequestStatus.choices, default=RequestStatus.DRAFT, db_index=True,
    )

    delivery_method = models.CharField(max_length=20, choices=DeliveryMethod.choices, default=DeliveryMethod.PICKUP)
    delivery_address = models.JSONField(blank=True, null=True)
    urgency = models.CharField(max_length=20, choices=Urgency.choices, default=Urgency.ROUTINE)
    patient_notes = models.TextField(blank=True, default='')

    selected_pharmacy = models.ForeignKey(
        Pharmacy, on_delete=models.PROTECT, blank=True, null=True, related_name='selected_requests',
    )
    selection_reason = models.TextField(blank=True, default='')
    selected_at = models.DateTimeField(blank=True, null=True)

    submitted_at = models.DateTimeField(blank=True, null=True)
    fulfilled_at = models.DateTimeField(blank=True, null=True)
    cancelled_at = models.DateTimeField(blank=True, null=True)
    cancellation_reason = models.TextField(blank=True, default='')

    expires_at = models.DateTimeField(default=default_request_expiry)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'prescription_requests'
        ordering = ['-created_at']

    def __str__(self):
        return self.request_number

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class TargetPharmacy(models.Model):
    """submit 时冻结的目标药房列表。只在 submit 事务里写入，之后不再新增。"""

    request = models.ForeignKey(PrescriptionRequest, on_delete=models.CASCADE, related_name='targets')
    pharmacy = models.ForeignKey(Pharmacy, on_delete=models.CASCADE, related_name='targeted_requests')
    notified_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'prescription_request_targets'
        constraints = [
            models.UniqueConstraint(fields=['request', 'pharmacy'], name='uniq_target_per_request'),
        ]


class PharmacyResponse(models.Model):
    """
    每个药房对每个请求最多一条 response。

    并发单元是 (request, pharmacy) 这一行，而不是整个 request：
    两家药房同时回复互不覆盖，同一家药房重复回复则 last-write-wins。
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    request = models.ForeignKey(PrescriptionRequest, on_delete=models.CASCADE, related_name='responses')
    pharmacy = models.ForeignKey(Pharmacy, on_delete=models.CASCADE, related_name='responses')
    status = models.CharField(max_length=20, choices=ResponseStatus.choices, default=ResponseStatus.PENDING)
    estimated_fulfillment_time = models.JSONField(blank=True, null=True)
    quoted_price = models.JSONField(blank=True, null=True)
    pharmacist_notes = models.TextField(blank=True, default='')
    substitutions = models.JSONField(default=list, blank=True)
    revision = models.PositiveIntegerField(default=1)
    responded_at = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'pharmacy_responses'
        constraints = [
            models.UniqueConstraint(fields=['request', 'pharmacy'], name='uniq_response_per_pharmacy'),
        ]


class StatusHistory(models.Model):
    request = models.ForeignKey(PrescriptionRequest, on_delete=models.CASCADE, related_name='status_history')
    status = models.CharField(max_length=20, choices=RequestStatus.choices)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    reason = models.CharField(max_length=255, blank=True, default='')
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'prescription_request_status_history'
        ordering = ['created_at', 'id']


# ── Notifications ──────────────────────────────────────────────────────────

class Notification(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    type = models.CharField(max_length=50, choices=NotificationType.choices, db_index=True)
    category = models.CharField(max_length=20, choices=NotificationCategory.choices)
    priority = models.CharField(
        max_length=20, choices=NotificationPriority.choices, default=NotificationPriority.MEDIUM,
    )

    title = models.CharField(max_length=200)
    message = models.TextField()
    action_url = models.CharField(max_length=500, blank=True, default='')
    action_text = models.CharField(max_length=100, blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)
    related_entities = models.JSONField(default=list, blank=True)

    scheduled_for = models.DateTimeField(blank=True, null=True, db_index=True)
    expires_at = models.DateTimeField(blank=True, null=True)
    dispatched_at = models.DateTimeField(blank=True, null=True)
    bypass_preferences = models.BooleanField(default=False)

    # 只有 retry 操作会改这两个字段
    retry_count = models.PositiveIntegerField(default=0)
    last_retry_at = models.DateTimeField(blank=True, null=True)

    total_recipients = models.PositiveIntegerField(default=0)
    delivered_count = models.PositiveIntegerField(default=0)
    read_count = models.PositiveIntegerField(default=0)
    action_count = models.PositiveIntegerField(default=0)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']


class NotificationRecipient(models.Model):
    notification = models.ForeignKey(Notification, on_delete=models.CASCADE, related_name='recipients')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notification_receipts')
    user_role = models.CharField(max_length=20, choices=UserRole.choices)
    delivery_channels = models.JSONField(default=list)
    read_at = models.DateTimeField(blank=True, null=True)
    action_taken = models.CharField(max_length=50, blank=True, default='')
    action_taken_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        db_table = 'notification_recipients'
        constraints = [
            models.UniqueConstraint(fields=['notification', 'user'], name='uniq_recipient_per_notification'),
        ]


class ChannelDelivery(models.Model):
    """
    (recipient, channel) 维度的投递状态。

    状态只允许 pending → delivered | failed | cancelled；
    failed 只能被显式 retry 重置回 pending。
    """

    recipient = models.ForeignKey(NotificationRecipient, on_delete=models.CASCADE, related_name='deliveries')
    channel = models.CharField(max_length=20, choices=Channel.choices)
    status = models.CharField(
        max_length=20, choices=DeliveryStatus.choices, default=DeliveryStatus.PENDING, db_index=True,
    )
    delivered_at = models.DateTimeField(blank=True, null=True)
    error = models.TextField(blank=True, default='')
    attempts = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'notification_channel_deliveries'
        constraints = [
            models.UniqueConstraint(fields=['recipient', 'channel'], name='uniq_delivery_per_channel'),
        ]


def default_channel_preferences():
    return {Channel.WEBSOCKET.value: True, Channel.EMAIL.value: True, Channel.SMS.value: True}


class NotificationPreference(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notification_preference',
    )
    enabled = models.BooleanField(default=True)
    channels = models.JSONField(default=default_channel_preferences)
    categories = models.JSONField(default=dict, blank=True)
    disabled_types = models.JSONField(default=list, blank=True)
    quiet_hours_enabled = models.BooleanField(default=False)
    quiet_hours_start = models.TimeField(blank=True, null=True)
    quiet_hours_end = models.TimeField(blank=True, null=True)
    timezone = models.CharField(max_length=64, default='UTC')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'notification_preferences'


# ── Alerting ───────────────────────────────────────────────────────────────

class Alert(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    alert_type = models.CharField(max_length=50, db_index=True)
    severity = models.CharField(max_length=20, choices=AlertSeverity.choices)
    message = models.TextField()
    data = models.JSONField(default=dict, blank=True)
    source_key = models.CharField(max_length=200, db_index=True)
    triggered_at = models.DateTimeField(default=timezone.now, db_index=True)

    acknowledged_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    acknowledged_at = models.DateTimeField(blank=True, null=True)
    acknowledgement_notes = models.TextField(blank=True, default='')

    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    resolved_at = models.DateTimeField(blank=True, null=True)
    resolution = models.TextField(blank=True, default='')

    escalation_level = models.PositiveSmallIntegerField(default=0)
    last_escalated_at = models.DateTimeField(blank=True, null=True)
    next_escalation_at = models.DateTimeField(blank=True, null=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'alerts'
        ordering = ['-triggered_at']

    @property
    def is_active(self):
        return self.resolved_at is None


class EscalationRule(models.Model):
    alert_type = models.CharField(max_length=50, unique=True)
    threshold = models.FloatField(blank=True, null=True)
    cooldown_minutes = models.PositiveIntegerField(default=30)
    levels = models.JSONField(default=list)
    enabled = models.BooleanField(default=True)
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'escalation_rules'


class EscalationRuleAudit(models.Model):
    alert_type = models.CharField(max_length=50, db_index=True)
    previous = models.JSONField(blank=True, null=True)
    current = models.JSONField()
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, blank=True, null=True, related_name='+',
    )
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'escalation_rule_audit'
        ordering = ['-changed_at', '-id']
