"""
通道层的标准输入 / 输出结构。

DeliveryEngine 在调用线程里把 ORM 对象转成这些 dataclass 再交给线程池，
adapter 因此完全不碰数据库。
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RecipientContact:
    user_id: int
    role: str
    name: str = ""
    email: str = ""
    phone: str = ""


@dataclass(frozen=True)
class NotificationContent:
    notification_id: str
    type: str
    category: str
    priority: str
    title: str
    message: str
    action_url: str = ""
    action_text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.notification_id,
            "type": self.type,
            "category": self.category,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "action_url": self.action_url,
            "action_text": self.action_text,
            "metadata": self.metadata,
        }


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None       # 失败原因，写入 ChannelDelivery.error
    provider_ref: str | None = None  # 下游返回的 id（Twilio SID 等），仅用于日志

    @classmethod
    def ok(cls, provider_ref=None):
        return cls(success=True, provider_ref=provider_ref)

    @classmethod
    def failed(cls, error):
        return cls(success=False, error=error)
