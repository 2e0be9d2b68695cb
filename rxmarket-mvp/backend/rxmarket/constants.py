"""
共享枚举。

生产者（services / alerting / tasks）和 notification 校验器都从这里 import，
不再到处传裸字符串 'order_confirmed'。新增通知类型只需在 NotificationType 加一行，
有专门 payload 的再到 notifications/payloads.py 注册。
"""

from django.db import models


class UserRole(models.TextChoices):
    PATIENT = "patient", "Patient"
    DOCTOR = "doctor", "Doctor"
    PHARMACY = "pharmacy", "Pharmacy"
    ADMIN = "admin", "Admin"


# ── Prescription request ───────────────────────────────────────────────────

class RequestStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    PENDING = "pending", "Pending"
    SUBMITTED = "submitted", "Submitted"
    ACCEPTED = "accepted", "Accepted"
    IN_PREPARATION = "in_preparation", "In preparation"
    READY = "ready", "Ready"
    FULFILLED = "fulfilled", "Fulfilled"
    CANCELLED = "cancelled", "Cancelled"


class ResponseStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    DECLINED = "declined", "Declined"
    PARTIAL = "partial", "Partial"


class Urgency(models.TextChoices):
    ROUTINE = "routine", "Routine"
    URGENT = "urgent", "Urgent"
    EMERGENCY = "emergency", "Emergency"


class DeliveryMethod(models.TextChoices):
    PICKUP = "pickup", "Pickup"
    DELIVERY = "delivery", "Delivery"
    EITHER = "either", "Either"


# ── Notifications ──────────────────────────────────────────────────────────

class NotificationType(models.TextChoices):
    # Prescription workflow
    PRESCRIPTION_CREATED = "prescription_created", "Prescription created"
    PRESCRIPTION_UPDATED = "prescription_updated", "Prescription updated"
    PRESCRIPTION_READY = "prescription_ready", "Prescription ready"
    PRESCRIPTION_REVIEW_REQUIRED = "prescription_review_required", "Prescription review required"
    PRESCRIPTION_REQUEST = "prescription_request", "New prescription request"
    PRESCRIPTION_ACCEPTED = "prescription_accepted", "Pharmacy accepted request"
    PRESCRIPTION_DECLINED = "prescription_declined", "Pharmacy declined request"
    PRESCRIPTION_PARTIAL = "prescription_partial", "Pharmacy partially accepted request"
    PRESCRIPTION_SELECTED = "prescription_selected", "Pharmacy selected"
    PRESCRIPTION_NOT_SELECTED = "prescription_not_selected", "Pharmacy not selected"
    PRESCRIPTION_CANCELLED = "prescription_cancelled", "Prescription request cancelled"
    PRESCRIPTION_EXPIRED = "prescription_expired", "Prescription request expired"
    RESPONSE_REMINDER = "response_reminder", "Waiting for pharmacy responses"

    # Orders
    ORDER_PLACED = "order_placed", "Order placed"
    ORDER_CONFIRMED = "order_confirmed", "Order confirmed"
    ORDER_READY = "order_ready", "Order ready"
    ORDER_DELIVERED = "order_delivered", "Order delivered"
    ORDER_CANCELLED = "order_cancelled", "Order cancelled"

    # Appointments / consultations
    APPOINTMENT_SCHEDULED = "appointment_scheduled", "Appointment scheduled"
    APPOINTMENT_REMINDER = "appointment_reminder", "Appointment reminder"
    APPOINTMENT_CANCELLED = "appointment_cancelled", "Appointment cancelled"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled", "Appointment rescheduled"
    CONSULTATION_REQUEST = "consultation_request", "Consultation request"
    CONSULTATION_COMPLETED = "consultation_completed", "Consultation completed"

    # Payments / inventory
    PAYMENT_SUCCESSFUL = "payment_successful", "Payment successful"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    PAYMENT_REFUNDED = "payment_refunded", "Payment refunded"
    INVENTORY_LOW_STOCK = "inventory_low_stock", "Low stock"
    INVENTORY_OUT_OF_STOCK = "inventory_out_of_stock", "Out of stock"
    INVENTORY_EXPIRED = "inventory_expired", "Inventory expired"

    # Account
    USER_REGISTERED = "user_registered", "User registered"
    USER_VERIFIED = "user_verified", "User verified"
    PASSWORD_RESET = "password_reset", "Password reset"
    PROFILE_UPDATED = "profile_updated", "Profile updated"
    DOCUMENT_UPLOADED = "document_uploaded", "Document uploaded"
    VERIFICATION_REQUIRED = "verification_required", "Verification required"
    SECURITY_ALERT = "security_alert", "Security alert"

    # System
    SYSTEM_MAINTENANCE = "system_maintenance", "System maintenance"
    SYSTEM_UPDATE = "system_update", "System update"
    SYSTEM_ALERT = "system_alert", "System alert"
    ALERT_ESCALATION = "alert_escalation", "Alert escalation"


class NotificationCategory(models.TextChoices):
    MEDICAL = "medical", "Medical"
    ADMINISTRATIVE = "administrative", "Administrative"
    SYSTEM = "system", "System"
    MARKETING = "marketing", "Marketing"


class NotificationPriority(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    CRITICAL = "critical", "Critical"
    EMERGENCY = "emergency", "Emergency"


class Channel(models.TextChoices):
    WEBSOCKET = "websocket", "WebSocket push"
    EMAIL = "email", "Email"
    SMS = "sms", "SMS"


class DeliveryStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    DELIVERED = "delivered", "Delivered"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


URGENT_PRIORITIES = frozenset({
    NotificationPriority.HIGH,
    NotificationPriority.CRITICAL,
    NotificationPriority.EMERGENCY,
})

_TYPE_PREFIX_CATEGORY = {
    "prescription_": NotificationCategory.MEDICAL,
    "response_": NotificationCategory.MEDICAL,
    "appointment_": NotificationCategory.MEDICAL,
    "consultation_": NotificationCategory.MEDICAL,
    "order_": NotificationCategory.ADMINISTRATIVE,
    "payment_": NotificationCategory.ADMINISTRATIVE,
    "inventory_": NotificationCategory.ADMINISTRATIVE,
    "system_": NotificationCategory.SYSTEM,
    "alert_": NotificationCategory.SYSTEM,
    "security_": NotificationCategory.SYSTEM,
}


def default_category(notification_type: str) -> str:
    """按类型前缀推断 category，推断不出来的一律 administrative。"""
    for prefix, category in _TYPE_PREFIX_CATEGORY.items():
        if notification_type.startswith(prefix):
            return category
    return NotificationCategory.ADMINISTRATIVE


# ── Alerting ───────────────────────────────────────────────────────────────

class AlertSeverity(models.TextChoices):
    INFO = "info", "Info"
    WARNING = "warning", "Warning"
    CRITICAL = "critical", "Critical"


class AlertType(models.TextChoices):
    CRITICAL_FAILURE_RATE = "critical_failure_rate", "Delivery failure rate above threshold"
    LOW_DELIVERY_RATE = "low_delivery_rate", "Delivery rate below threshold"
    SYSTEM_HEALTH_CRITICAL = "system_health_critical", "System health critical"
    STUCK_NOTIFICATIONS = "stuck_notifications", "Notifications stuck in pending"
    EXTERNAL_SERVICE_FAILURE = "external_service_failure", "Delivery channel failing"
