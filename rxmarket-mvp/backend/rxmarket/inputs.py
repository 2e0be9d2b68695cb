"""
请求体 / query string 的形状校验（DRF Serializer）。

这里只管「字段在不在、类型对不对」，is_valid(raise_exception=True) 抛的
DRF ValidationError 由 unified_exception_handler 转成统一的 400。
业务规则（状态机、权限、payload schema）仍然在 service 层校验。
"""

from rest_framework import serializers

from .constants import (
    Channel,
    NotificationCategory,
    NotificationPriority,
    NotificationType,
    RequestStatus,
    Urgency,
    DeliveryMethod,
)


class PaginationInput(serializers.Serializer):
    limit = serializers.IntegerField(min_value=1, max_value=100, default=20)
    offset = serializers.IntegerField(min_value=0, default=0)


# ── Prescription requests ──────────────────────────────────────────────────

class PrescriptionRequestCreateInput(serializers.Serializer):
    medications = serializers.ListField(child=serializers.DictField())
    urgency = serializers.ChoiceField(choices=Urgency.choices, required=False)
    delivery_method = serializers.ChoiceField(choices=DeliveryMethod.choices, required=False)
    delivery_address = serializers.DictField(required=False, allow_null=True)
    patient_notes = serializers.CharField(required=False, allow_blank=True)
    status = serializers.ChoiceField(choices=[RequestStatus.DRAFT, RequestStatus.PENDING], required=False)
    pharmacy_ids = serializers.ListField(child=serializers.UUIDField(), required=False)


class SubmitInput(serializers.Serializer):
    pharmacy_ids = serializers.ListField(child=serializers.UUIDField())


class PharmacyResponseInput(serializers.Serializer):
    action = serializers.ChoiceField(choices=["accept", "decline", "partial"])
    estimated_fulfillment_time = serializers.JSONField(required=False, allow_null=True)
    quoted_price = serializers.DictField(required=False, allow_null=True)
    pharmacist_notes = serializers.CharField(required=False, allow_blank=True)
    substitutions = serializers.ListField(required=False)


class SelectPharmacyInput(serializers.Serializer):
    pharmacy_id = serializers.UUIDField()
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class StatusUpdateInput(serializers.Serializer):
    status = serializers.ChoiceField(choices=RequestStatus.choices)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ReasonInput(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


# ── Notifications ──────────────────────────────────────────────────────────

class NotificationActionInput(serializers.Serializer):
    action = serializers.CharField(max_length=50)


class NotificationContentInput(serializers.Serializer):
    title = serializers.CharField(max_length=200)
    message = serializers.CharField()
    action_url = serializers.CharField(required=False, allow_blank=True)
    action_text = serializers.CharField(required=False, allow_blank=True)
    metadata = serializers.DictField(required=False)


class _SendInput(serializers.Serializer):
    type = serializers.ChoiceField(choices=NotificationType.choices)
    content = NotificationContentInput()
    channels = serializers.ListField(child=serializers.ChoiceField(choices=Channel.choices), required=False)
    priority = serializers.ChoiceField(choices=NotificationPriority.choices, default=NotificationPriority.MEDIUM)
    category = serializers.ChoiceField(choices=NotificationCategory.choices, required=False)


class BulkNotificationInput(_SendInput):
    user_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
    scheduled_for = serializers.DateTimeField(required=False, allow_null=True)
    expires_at = serializers.DateTimeField(required=False, allow_null=True)


class BroadcastInput(_SendInput):
    target_role = serializers.CharField()
    exclude_user_ids = serializers.ListField(child=serializers.IntegerField(), required=False)
    scheduled_for = serializers.DateTimeField(required=False, allow_null=True)
    expires_at = serializers.DateTimeField(required=False, allow_null=True)


class EmergencyOverrideInput(_SendInput):
    user_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
    override_reason = serializers.CharField(required=False, allow_blank=True, default="")
    priority = serializers.ChoiceField(choices=NotificationPriority.choices, default=NotificationPriority.EMERGENCY)


class RetryInput(serializers.Serializer):
    channels = serializers.ListField(child=serializers.ChoiceField(choices=Channel.choices), required=False)
    recipient_ids = serializers.ListField(child=serializers.IntegerField(), required=False)


class QuietHoursInput(serializers.Serializer):
    enabled = serializers.BooleanField(required=False)
    start = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    end = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    timezone = serializers.CharField(required=False)


class PreferencesInput(serializers.Serializer):
    enabled = serializers.BooleanField(required=False)
    channels = serializers.DictField(child=serializers.BooleanField(), required=False)
    categories = serializers.DictField(child=serializers.BooleanField(), required=False)
    disabled_types = serializers.ListField(child=serializers.CharField(), required=False)
    quiet_hours = QuietHoursInput(required=False)


# ── Alerts ─────────────────────────────────────────────────────────────────

class AcknowledgeInput(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ResolveInput(serializers.Serializer):
    resolution = serializers.CharField(required=False, allow_blank=True, default="")


class EscalationLevelInput(serializers.Serializer):
    after_minutes = serializers.IntegerField(min_value=0)
    recipient_roles = serializers.ListField(child=serializers.CharField(), allow_empty=False)
    channels = serializers.ListField(child=serializers.CharField(), allow_empty=False)


class EscalationRuleInput(serializers.Serializer):
    threshold = serializers.FloatField(required=False, allow_null=True)
    cooldown_minutes = serializers.IntegerField(min_value=0, default=30)
    levels = EscalationLevelInput(many=True)
    enabled = serializers.BooleanField(default=True)
