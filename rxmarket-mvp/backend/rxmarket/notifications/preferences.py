"""
用户通知偏好过滤器。

DeliveryEngine 对每个 (recipient, channel) 调一次 evaluate()；
被过滤掉的投递记为 cancelled，原因写进 ChannelDelivery.error。
emergency override 的通知（bypass_preferences=True）完全不走这里。
"""

from dataclasses import dataclass
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..constants import URGENT_PRIORITIES, Channel


@dataclass(frozen=True)
class PreferenceDecision:
    allowed: bool
    reason: str = ""


ALLOW = PreferenceDecision(allowed=True)


def in_quiet_hours(start: time, end: time, current: time) -> bool:
    # 区间可以跨午夜，例如 22:00 → 07:00
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def evaluate(preference, notification, channel: str, now: datetime) -> PreferenceDecision:
    if preference is None:
        return ALLOW

    if not preference.enabled:
        return PreferenceDecision(False, "Recipient has disabled notifications")

    if notification.type in (preference.disabled_types or []):
        return PreferenceDecision(False, f"Recipient has disabled '{notification.type}' notifications")

    if not (preference.categories or {}).get(notification.category, True):
        return PreferenceDecision(False, f"Recipient has disabled the '{notification.category}' category")

    if not (preference.channels or {}).get(channel, True):
        return PreferenceDecision(False, f"Recipient has disabled the {channel} channel")

    # 静默时段只拦 email / sms 的普通优先级通知，站内推送照常
    if (
        preference.quiet_hours_enabled
        and preference.quiet_hours_start is not None
        and preference.quiet_hours_end is not None
        and channel != Channel.WEBSOCKET
        and notification.priority not in URGENT_PRIORITIES
    ):
        try:
            tz = ZoneInfo(preference.timezone or "UTC")
        except ZoneInfoNotFoundError:
            tz = ZoneInfo("UTC")
        local_time = now.astimezone(tz).time()
        if in_quiet_hours(preference.quiet_hours_start, preference.quiet_hours_end, local_time):
            return PreferenceDecision(False, "Suppressed during recipient quiet hours")

    return ALLOW
