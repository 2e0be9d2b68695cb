"""
按 NotificationType 区分的 payload schema（tagged union）。

Notification.metadata 以前是随手拼的 dict，消费方只能猜字段名。
现在每个有业务含义的类型都注册一个 dataclass，create_notification 时按 type 校验：
缺必填字段直接 ValidationError，不会存进库里。

没有注册 schema 的类型（系统公告、营销等）接受任意 metadata。
"""

from dataclasses import MISSING, asdict, dataclass, field, fields
from typing import Any

from ..constants import NotificationType
from ..exceptions import ValidationError


@dataclass
class RequestPayload:
    request_id: str
    request_number: str


@dataclass
class PharmacyRequestPayload(RequestPayload):
    pharmacy_id: str
    pharmacy_name: str = ""


@dataclass
class PharmacyResponsePayload(PharmacyRequestPayload):
    response_status: str = ""
    quoted_total: Any = None


@dataclass
class RequestStatusPayload(RequestPayload):
    status: str
    notes: str = ""


@dataclass
class RequestCancelledPayload(RequestPayload):
    reason: str
    cancelled_by_role: str = ""


@dataclass
class ResponseReminderPayload(RequestPayload):
    urgency: str
    reminder_index: int = 1


@dataclass
class AlertPayload:
    alert_id: str
    alert_type: str
    severity: str
    escalation_level: int = 0
    data: dict = field(default_factory=dict)


PAYLOAD_SCHEMAS: dict[str, type] = {
    NotificationType.PRESCRIPTION_CREATED: RequestPayload,
    NotificationType.PRESCRIPTION_REQUEST: PharmacyRequestPayload,
    NotificationType.PRESCRIPTION_ACCEPTED: PharmacyResponsePayload,
    NotificationType.PRESCRIPTION_DECLINED: PharmacyResponsePayload,
    NotificationType.PRESCRIPTION_PARTIAL: PharmacyResponsePayload,
    NotificationType.PRESCRIPTION_SELECTED: PharmacyRequestPayload,
    NotificationType.PRESCRIPTION_NOT_SELECTED: PharmacyRequestPayload,
    NotificationType.ORDER_CONFIRMED: PharmacyRequestPayload,
    NotificationType.PRESCRIPTION_UPDATED: RequestStatusPayload,
    NotificationType.PRESCRIPTION_READY: RequestStatusPayload,
    NotificationType.ORDER_DELIVERED: RequestStatusPayload,
    NotificationType.PRESCRIPTION_CANCELLED: RequestCancelledPayload,
    NotificationType.PRESCRIPTION_EXPIRED: RequestCancelledPayload,
    NotificationType.RESPONSE_REMINDER: ResponseReminderPayload,
    NotificationType.SYSTEM_ALERT: AlertPayload,
    NotificationType.ALERT_ESCALATION: AlertPayload,
}


def _required_fields(schema) -> list[str]:
    return [
        f.name for f in fields(schema)
        if f.default is MISSING and f.default_factory is MISSING
    ]


def validate_payload(notification_type: str, metadata: dict | None) -> dict:
    """
    按 type 校验 metadata，返回规范化后的 dict（可直接存 JSONField）。

    schema 里声明的字段放在 schema 的位置上，额外字段原样保留，
    比如 emergency override 的审计信息。

    Raises:
        ValidationError: metadata 不是 dict，或缺少该类型的必填字段
    """
    metadata = metadata or {}
    if not isinstance(metadata, dict):
        raise ValidationError(
            message="Notification metadata must be an object",
            code="INVALID_NOTIFICATION_PAYLOAD",
        )

    schema = PAYLOAD_SCHEMAS.get(notification_type)
    if schema is None:
        return dict(metadata)

    missing = [name for name in _required_fields(schema) if metadata.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            message=f"Payload for '{notification_type}' is missing required fields: {', '.join(missing)}",
            code="INVALID_NOTIFICATION_PAYLOAD",
            detail={"type": notification_type, "missing": missing},
        )

    known = {f.name for f in fields(schema)}
    payload = schema(**{name: metadata[name] for name in known if name in metadata})
    extra = {key: value for key, value in metadata.items() if key not in known}
    return {**extra, **asdict(payload)}
