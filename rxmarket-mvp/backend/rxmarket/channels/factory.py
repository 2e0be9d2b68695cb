"""
工厂函数：根据 settings.NOTIFICATION_CHANNEL_BACKENDS 返回对应的 ChannelAdapter 实例。

新增 / 替换通道只需改 settings，不需要修改 DeliveryEngine 或任何业务代码。
测试里用 pytest-django 的 settings fixture 把 sms 换成假的 adapter 即可。
"""

import logging

from django.conf import settings
from django.utils.module_loading import import_string

from ..constants import Channel
from .base import BaseChannelAdapter

logger = logging.getLogger(__name__)

DEFAULT_BACKENDS = {
    Channel.WEBSOCKET.value: "rxmarket.channels.adapters.WebSocketPushAdapter",
    Channel.EMAIL.value:     "rxmarket.channels.adapters.EmailAdapter",
    Channel.SMS.value:       "rxmarket.channels.adapters.TwilioSmsAdapter",
}


def _build_registry() -> dict[str, type[BaseChannelAdapter]]:
    # 延迟导入：settings 里写的是 dotted path。
    # 某个通道的类加载失败只让这个通道缺席，DeliveryEngine 会把它的投递记为 failed。
    backends = {**DEFAULT_BACKENDS, **getattr(settings, "NOTIFICATION_CHANNEL_BACKENDS", {})}
    registry = {}
    for channel, path in backends.items():
        try:
            registry[channel] = import_string(path)
        except ImportError:
            logger.exception("Channel adapter %s for %r could not be loaded", path, channel)
    return registry


def get_channel_adapters() -> dict[str, BaseChannelAdapter]:
    """返回所有可用通道的 {channel: adapter 实例}。"""
    return {channel: adapter_cls() for channel, adapter_cls in _build_registry().items()}
