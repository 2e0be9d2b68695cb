"""
BaseChannelAdapter: 所有投递通道的抽象基类。

每个新通道只需：
1. 继承 BaseChannelAdapter
2. 实现 deliver()
3. 在 settings.NOTIFICATION_CHANNEL_BACKENDS 注册一行

DeliveryEngine 完全不知道背后用哪家服务。
"""

from abc import ABC, abstractmethod

from .types import DeliveryResult, NotificationContent, RecipientContact


class BaseChannelAdapter(ABC):

    channel: str = ""

    @abstractmethod
    def deliver(self, recipient: RecipientContact, content: NotificationContent) -> DeliveryResult:
        """
        向单个收件人投递一条通知。

        Returns:
            DeliveryResult(success=True) 或 DeliveryResult(success=False, error=...)

        Raises:
            Exception: 允许直接抛出，DeliveryEngine 会按 (recipient, channel) 捕获并记为 failed，
                       不会影响其他通道和其他收件人
        """
