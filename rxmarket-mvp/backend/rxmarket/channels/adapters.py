"""
具体通道实现。

新增通道：在此文件添加一个类，然后在 settings.NOTIFICATION_CHANNEL_BACKENDS 注册即可。

已注册通道：
  websocket: WebSocketPushAdapter   (Redis pub/sub，由 socket 网关订阅后推给在线用户)
  email    : EmailAdapter           (django.core.mail，后端由 EMAIL_BACKEND 决定)
  sms      : TwilioSmsAdapter       (Twilio REST API)
"""

import json
import logging
import re
import time
from functools import lru_cache

from django.conf import settings
from django.core.mail import send_mail

from .base import BaseChannelAdapter
from .types import DeliveryResult, NotificationContent, RecipientContact

logger = logging.getLogger(__name__)


# ── WebSocketPushAdapter ───────────────────────────────────────────────────
#
# 发布到 notifications:user:<id>，socket 网关订阅这个前缀后推给对应连接。
# 环境变量：REDIS_URL

@lru_cache(maxsize=4)
def _get_redis_client(url: str):
    import redis

    return redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)


class WebSocketPushAdapter(BaseChannelAdapter):

    channel = "websocket"
    CHANNEL_PREFIX = "notifications:user:"

    def deliver(self, recipient: RecipientContact, content: NotificationContent) -> DeliveryResult:
        client = _get_redis_client(settings.REDIS_URL)
        receivers = client.publish(
            f"{self.CHANNEL_PREFIX}{recipient.user_id}",
            json.dumps(content.as_payload(), default=str),
        )
        logger.debug("websocket push %s → user %s (%d receivers)",
                     content.notification_id, recipient.user_id, receivers)
        return DeliveryResult.ok(provider_ref=f"receivers={receivers}")


# ── EmailAdapter ───────────────────────────────────────────────────────────
#
# 使用 Django 自带的邮件层。
# 环境变量：EMAIL_BACKEND / DEFAULT_FROM_EMAIL

class EmailAdapter(BaseChannelAdapter):

    channel = "email"

    def deliver(self, recipient: RecipientContact, content: NotificationContent) -> DeliveryResult:
        if not recipient.email:
            return DeliveryResult.failed("Recipient has no email address")

        body = content.message
        if content.action_url:
            body = f"{body}\n\n{content.action_text or 'Open'}: {content.action_url}"

        sent = send_mail(
            subject=content.title,
            message=body,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[recipient.email],
            fail_silently=False,
        )
        if not sent:
            return DeliveryResult.failed("Email backend accepted no messages")
        return DeliveryResult.ok()


# ── TwilioSmsAdapter ───────────────────────────────────────────────────────
#
# 使用 Twilio SDK。
# 环境变量：TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_NUMBER
# 429 和 5xx 视为瞬时错误，指数退避重试（1s → 2s）；其余 4xx 直接失败。

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


@lru_cache(maxsize=16)
def _get_twilio_client(account_sid: str, auth_token: str):
    from twilio.rest import Client

    return Client(account_sid, auth_token)


class TwilioSmsAdapter(BaseChannelAdapter):

    channel = "sms"
    MAX_ATTEMPTS = 3
    BACKOFF_BASE = 1.0
    MAX_LENGTH = 320

    def deliver(self, recipient: RecipientContact, content: NotificationContent) -> DeliveryResult:
        account_sid = settings.TWILIO_ACCOUNT_SID
        auth_token = settings.TWILIO_AUTH_TOKEN
        from_number = settings.TWILIO_FROM_NUMBER
        if not (account_sid and auth_token and from_number):
            return DeliveryResult.failed("SMS transport is not configured")

        if not recipient.phone or not E164_RE.match(recipient.phone):
            return DeliveryResult.failed(f"Invalid phone number for user {recipient.user_id}")

        from twilio.base.exceptions import TwilioRestException

        client = _get_twilio_client(account_sid, auth_token)
        body = f"{content.title}: {content.message}"[:self.MAX_LENGTH]
        last_error = ""

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                message = client.messages.create(to=recipient.phone, from_=from_number, body=body)
                return DeliveryResult.ok(provider_ref=message.sid)
            except TwilioRestException as exc:
                last_error = f"Twilio error {exc.status}: {exc.msg}"
                if exc.status != 429 and 400 <= (exc.status or 0) < 500:
                    logger.error("SMS to user %s rejected: %s", recipient.user_id, last_error)
                    return DeliveryResult.failed(last_error)
                logger.warning("SMS to user %s failed (attempt %d/%d): %s",
                               recipient.user_id, attempt, self.MAX_ATTEMPTS, last_error)

            if attempt < self.MAX_ATTEMPTS:
                time.sleep(self.BACKOFF_BASE * (2 ** (attempt - 1)))

        return DeliveryResult.failed(last_error)
