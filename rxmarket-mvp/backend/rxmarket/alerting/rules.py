"""
默认升级规则 + 规则校验。

数据库里的 EscalationRule 行覆盖这里的默认值；没有行的 alert_type 用默认值。
levels[i].after_minutes 是从 alert 触发时刻算起的延迟，第 0 级一般是 0（立即通知）。
"""

from copy import deepcopy

from ..constants import AlertType, Channel, UserRole
from ..exceptions import ValidationError

_BASIC = [Channel.WEBSOCKET.value, Channel.EMAIL.value]
_ALL = [Channel.WEBSOCKET.value, Channel.EMAIL.value, Channel.SMS.value]
_ADMINS = [UserRole.ADMIN.value]

DEFAULT_ESCALATION_RULES = {
    AlertType.CRITICAL_FAILURE_RATE.value: {
        "threshold": 0.25,
        "cooldown_minutes": 30,
        "levels": [
            {"after_minutes": 0, "recipient_roles": _ADMINS, "channels": _BASIC},
            {"after_minutes": 5, "recipient_roles": _ADMINS, "channels": _ALL},
            {"after_minutes": 15, "recipient_roles": _ADMINS, "channels": _ALL},
        ],
    },
    AlertType.LOW_DELIVERY_RATE.value: {
        "threshold": 0.80,
        "cooldown_minutes": 60,
        "levels": [
            {"after_minutes": 0, "recipient_roles": _ADMINS, "channels": _BASIC},
            {"after_minutes": 10, "recipient_roles": _ADMINS, "channels": _ALL},
            {"after_minutes": 30, "recipient_roles": _ADMINS, "channels": _ALL},
        ],
    },
    AlertType.SYSTEM_HEALTH_CRITICAL.value: {
        "threshold": None,
        "cooldown_minutes": 30,
        "levels": [
            {"after_minutes": 0, "recipient_roles": _ADMINS, "channels": _ALL},
            {"after_minutes": 3, "recipient_roles": _ADMINS, "channels": _ALL},
            {"after_minutes": 10, "recipient_roles": _ADMINS, "channels": _ALL},
        ],
    },
    AlertType.STUCK_NOTIFICATIONS.value: {
        "threshold": 10,
        "cooldown_minutes": 60,
        "levels": [
            {"after_minutes": 0, "recipient_roles": _ADMINS, "channels": _BASIC},
            {"after_minutes": 15, "recipient_roles": _ADMINS, "channels": _BASIC},
        ],
    },
    AlertType.EXTERNAL_SERVICE_FAILURE.value: {
        "threshold": 0.50,
        "cooldown_minutes": 30,
        "levels": [
            {"after_minutes": 0, "recipient_roles": _ADMINS, "channels": _BASIC},
            {"after_minutes": 5, "recipient_roles": _ADMINS, "channels": _ALL},
            {"after_minutes": 20, "recipient_roles": _ADMINS, "channels": _ALL},
        ],
    },
}


def default_rule(alert_type: str) -> dict | None:
    rule = DEFAULT_ESCALATION_RULES.get(alert_type)
    return deepcopy(rule) if rule is not None else None


def validate_rule(alert_type: str, rule: dict) -> dict:
    """
    校验并规范化一条升级规则。

    Raises:
        ValidationError: alert_type 未知、levels 为空、延迟不递增、角色 / 通道未知
    """
    if alert_type not in AlertType.values:
        raise ValidationError(
            message=f"Unknown alert type: {alert_type!r}",
            code="UNKNOWN_ALERT_TYPE",
            detail={"known_types": AlertType.values},
        )
    if not isinstance(rule, dict):
        raise ValidationError(message="Escalation rule must be an object", code="INVALID_ESCALATION_RULE")

    levels = rule.get("levels")
    if not isinstance(levels, list) or not levels:
        raise ValidationError(message="Escalation rule needs at least one level", code="INVALID_ESCALATION_RULE")

    cleaned_levels = []
    previous_delay = -1
    for index, level in enumerate(levels):
        try:
            delay = int(level.get("after_minutes", 0))
        except (AttributeError, TypeError, ValueError):
            raise ValidationError(
                message=f"Level {index} has an invalid after_minutes",
                code="INVALID_ESCALATION_RULE",
            )
        if delay < 0 or delay <= previous_delay:
            raise ValidationError(
                message="Escalation delays must be non-negative and strictly increasing",
                code="INVALID_ESCALATION_RULE",
                detail={"level": index},
            )
        previous_delay = delay

        roles = list(level.get("recipient_roles") or [])
        channels = list(level.get("channels") or [])
        if not roles or any(role not in UserRole.values for role in roles):
            raise ValidationError(message=f"Level {index} has invalid recipient_roles", code="INVALID_ESCALATION_RULE")
        if not channels or any(channel not in Channel.values for channel in channels):
            raise ValidationError(message=f"Level {index} has invalid channels", code="INVALID_ESCALATION_RULE")

        cleaned_levels.append({"after_minutes": delay, "recipient_roles": roles, "channels": channels})

    threshold = rule.get("threshold")
    if threshold is not None:
        try:
            threshold = float(threshold)
        except (TypeError, ValueError):
            raise ValidationError(message="Threshold must be a number", code="INVALID_ESCALATION_RULE")

    try:
        cooldown = int(rule.get("cooldown_minutes", 30))
    except (TypeError, ValueError):
        raise ValidationError(message="cooldown_minutes must be an integer", code="INVALID_ESCALATION_RULE")
    if cooldown < 0:
        raise ValidationError(message="cooldown_minutes must be non-negative", code="INVALID_ESCALATION_RULE")

    return {
        "threshold": threshold,
        "cooldown_minutes": cooldown,
        "levels": cleaned_levels,
        "enabled": bool(rule.get("enabled", True)),
    }
