"""
Unit tests for NotificationService + DeliveryEngine.

Celery 是 eager 的，on_commit 回调当场执行（见 conftest.py），所以 create_notification 返回时投递已经跑完，
可以直接断言 ChannelDelivery 的最终状态。

覆盖：
- 创建时的校验（type / content / payload / recipients / channels）
- 每个 (recipient, channel) 独立投递、独立失败
- 定时通知、取消、重试、自动重试
- 偏好过滤、emergency override、广播
- 收件箱：已读 / 操作计数
"""
import pytest
from datetime import timedelta

from django.core import mail
from django.db import connection, transaction
from django.utils import timezone

from rxmarket.constants import NotificationType
from rxmarket.exceptions import InvalidStateError, NotFoundError, ValidationError
from rxmarket.models import ChannelDelivery, Notification, NotificationPreference
from rxmarket.notifications.delivery import DeliveryEngine
from rxmarket.notifications.service import NotificationService
from rxmarket.services import PrescriptionRequestService
from tests.conftest import AdminFactory, PatientFactory, PharmacistFactory
from tests.fakes import RecordingSmsAdapter, RecordingWebSocketAdapter, SlowAdapter


ANNOUNCEMENT = {'title': 'Scheduled maintenance', 'message': 'The app is offline at 02:00 UTC.'}


def _deliveries(notification, **filters):
    return ChannelDelivery.objects.filter(recipient__notification=notification, **filters)


def _statuses(notification):
    return dict(_deliveries(notification).values_list('channel', 'status'))


def _use_raising_sms(settings):
    settings.NOTIFICATION_CHANNEL_BACKENDS = {
        **settings.NOTIFICATION_CHANNEL_BACKENDS, 'sms': 'tests.fakes.RaisingSmsAdapter',
    }


# -------------------------------------------------------------------
# create_notification validation
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCreateNotificationValidation:

    def _data(self, user, **overrides):
        data = {
            'type': NotificationType.SYSTEM_MAINTENANCE,
            'recipients': [{'user_id': user.id, 'user_role': user.role}],
            'content': dict(ANNOUNCEMENT),
        }
        data.update(overrides)
        return data

    def test_unknown_type(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, type='party_invite'))
        assert exc_info.value.code == 'INVALID_NOTIFICATION_TYPE'
        assert not Notification.objects.exists()

    def test_missing_title(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, content={'message': 'hi'}))
        assert exc_info.value.code == 'INVALID_NOTIFICATION_CONTENT'

    def test_unknown_priority(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, priority='whenever'))
        assert exc_info.value.code == 'INVALID_PRIORITY'

    def test_no_recipients(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, recipients=[]))
        assert exc_info.value.code == 'NO_RECIPIENTS'

    def test_unknown_recipient(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, recipients=[{'user_id': 999999, 'user_role': 'patient'}]))
        assert exc_info.value.code == 'INVALID_RECIPIENT'
        assert exc_info.value.detail == {'user_ids': [999999]}

    def test_unknown_channel(self, notifier, patient):
        recipients = [{'user_id': patient.id, 'user_role': 'patient', 'delivery_channels': ['pigeon']}]
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, recipients=recipients))
        assert exc_info.value.code == 'UNKNOWN_CHANNEL'

    def test_typed_payload_missing_fields(self, notifier, patient):
        data = self._data(
            patient,
            type=NotificationType.PRESCRIPTION_REQUEST,
            content={**ANNOUNCEMENT, 'metadata': {'request_id': 'abc', 'request_number': 'PR1'}},
        )
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(data)
        assert exc_info.value.code == 'INVALID_NOTIFICATION_PAYLOAD'
        assert exc_info.value.detail['missing'] == ['pharmacy_id']

    def test_invalid_datetime(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.create_notification(self._data(patient, scheduled_for='next tuesday'))
        assert exc_info.value.code == 'INVALID_DATETIME'

    def test_duplicate_recipients_merged(self, notifier, patient):
        recipients = [
            {'user_id': patient.id, 'user_role': 'patient', 'delivery_channels': ['websocket']},
            {'user_id': patient.id, 'user_role': 'patient', 'delivery_channels': ['email']},
        ]
        notification = notifier.create_notification(self._data(patient, recipients=recipients))

        assert notification.total_recipients == 1
        assert set(_statuses(notification)) == {'websocket', 'email'}

    def test_category_inferred_from_type(self, notifier, patient):
        notification = notifier.create_notification(self._data(patient))
        assert notification.category == 'system'


# -------------------------------------------------------------------
# Delivery
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestDelivery:

    def test_medium_priority_goes_to_websocket_and_email(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        assert _statuses(notification) == {'websocket': 'delivered', 'email': 'delivered'}
        notification.refresh_from_db()
        assert notification.delivered_count == 2
        assert notification.dispatched_at is not None
        assert mail.outbox[0].subject == 'Scheduled maintenance'

    def test_explicit_channels(self, notifier, patient):
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )
        assert _statuses(notification) == {'sms': 'delivered'}
        assert RecordingSmsAdapter.sent == [(patient.id, str(notification.id), 'Scheduled maintenance')]

    def test_bulk_with_failing_sms_is_isolated(self, notifier, settings):
        """50 个收件人，HIGH 优先级，SMS 全挂：websocket / email 不受影响。"""
        _use_raising_sms(settings)
        users = PatientFactory.create_batch(50)

        notification = notifier.send_bulk_notification(
            users, NotificationType.SYSTEM_ALERT,
            {**ANNOUNCEMENT, 'metadata': {'alert_id': 'a1', 'alert_type': 'x', 'severity': 'warning'}},
            priority='high',
        )

        assert _deliveries(notification, channel='websocket', status='delivered').count() == 50
        assert _deliveries(notification, channel='email', status='delivered').count() == 50
        failed = _deliveries(notification, channel='sms', status='failed')
        assert failed.count() == 50
        assert failed.first().error == 'ConnectionError: SMS gateway unreachable'
        assert failed.first().attempts == 1

        notification.refresh_from_db()
        assert notification.total_recipients == 50
        assert notification.delivered_count == 100
        assert len(mail.outbox) == 50

    def test_user_without_email_fails_only_email(self, notifier):
        user = PatientFactory(email='')
        notification = notifier.send_notification(user, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        assert _statuses(notification) == {'websocket': 'delivered', 'email': 'failed'}
        assert _deliveries(notification, channel='email').get().error == 'Recipient has no email address'

    def test_missing_adapter_marks_failed(self, notifier, patient):
        engine = DeliveryEngine(adapters={'websocket': RecordingWebSocketAdapter()})
        service = NotificationService(dispatcher=lambda notification_id: None)
        notification = service.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        summary = engine.deliver(notification.id)

        assert (summary.delivered, summary.failed) == (1, 1)
        assert "No adapter available for channel 'email'" in _deliveries(notification, channel='email').get().error

    def test_timeout_marks_failed(self, patient):
        service = NotificationService(dispatcher=lambda notification_id: None)
        notification = service.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )
        adapter = SlowAdapter()
        adapter.delay = 1.0

        summary = DeliveryEngine(adapters={'sms': adapter}, timeout=0.1).deliver(notification.id)

        assert summary.failed == 1
        assert _deliveries(notification).get().error == 'Delivery timed out after 0.1s'

    def test_expired_notification_cancelled(self, notifier, patient):
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT,
            expires_at=timezone.now() - timedelta(minutes=5),
        )
        assert set(_statuses(notification).values()) == {'cancelled'}
        assert RecordingWebSocketAdapter.sent == []

    def test_second_delivery_run_is_noop(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        summary = DeliveryEngine().deliver(notification.id)

        assert summary.skipped is True
        assert len(RecordingWebSocketAdapter.sent) == 1

    def test_unknown_notification_skipped(self):
        summary = DeliveryEngine(adapters={}).deliver('00000000-0000-0000-0000-000000000000')
        assert summary.skipped is True


# -------------------------------------------------------------------
# Scheduling / cancel
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestScheduledNotifications:

    def test_future_notification_not_dispatched(self, notifier, patient):
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT,
            scheduled_for=timezone.now() + timedelta(hours=1),
        )
        notification.refresh_from_db()

        assert notification.dispatched_at is None
        assert set(_statuses(notification).values()) == {'pending'}
        assert RecordingWebSocketAdapter.sent == []

    def test_process_scheduled_dispatches_due(self, notifier, patient):
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT,
            scheduled_for=timezone.now() + timedelta(hours=1),
        )
        Notification.objects.filter(id=notification.id).update(scheduled_for=timezone.now() - timedelta(seconds=1))

        assert notifier.process_scheduled_notifications() == 1
        assert set(_statuses(notification).values()) == {'delivered'}
        # 已派发过的不会再派发
        assert notifier.process_scheduled_notifications() == 0

    def test_failed_enqueue_picked_up_by_sweep(self, patient):
        def broken(notification_id):
            raise ConnectionError('broker down')

        notification = NotificationService(dispatcher=broken).send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT,
        )
        notification.refresh_from_db()
        assert notification.dispatched_at is None

        assert NotificationService().process_scheduled_notifications() == 1
        assert set(_statuses(notification).values()) == {'delivered'}

    def test_lost_delivery_task_redispatched_when_stale(self, patient, settings):
        settings.NOTIFICATION_DISPATCH_STALE_AFTER = 600
        # 入队成功但任务丢了：dispatched_at 有值，投递一直 pending
        notification = NotificationService(dispatcher=lambda notification_id: None).send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT,
        )
        notifier = NotificationService()
        assert notifier.process_scheduled_notifications() == 0

        Notification.objects.filter(id=notification.id).update(dispatched_at=timezone.now() - timedelta(minutes=11))

        assert notifier.process_scheduled_notifications() == 1
        assert set(_statuses(notification).values()) == {'delivered'}
        assert notifier.process_scheduled_notifications() == 0

    def test_cancel_scheduled(self, notifier, patient):
        admin = AdminFactory()
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT,
            scheduled_for=timezone.now() + timedelta(hours=1),
        )

        result = notifier.cancel_notification(notification.id, 'Maintenance postponed', cancelled_by=admin)

        assert result == {'notification_id': str(notification.id), 'cancelled': 2}
        assert set(_statuses(notification).values()) == {'cancelled'}
        notification.refresh_from_db()
        assert notification.metadata['cancelled_by'] == admin.id
        assert notification.metadata['cancellation_reason'] == 'Maintenance postponed'

    def test_double_cancel_rejected(self, notifier, patient):
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT,
            scheduled_for=timezone.now() + timedelta(hours=1),
        )
        notifier.cancel_notification(notification.id, 'first')

        with pytest.raises(InvalidStateError) as exc_info:
            notifier.cancel_notification(notification.id, 'second')
        assert exc_info.value.code == 'NOTIFICATION_ALREADY_CANCELLED'

    def test_immediate_notification_not_cancellable(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        with pytest.raises(InvalidStateError) as exc_info:
            notifier.cancel_notification(notification.id, 'too late')
        assert exc_info.value.code == 'NOTIFICATION_NOT_CANCELLABLE'

    def test_cancel_unknown(self, notifier):
        with pytest.raises(NotFoundError) as exc_info:
            notifier.cancel_notification('00000000-0000-0000-0000-000000000000', 'x')
        assert exc_info.value.code == 'NOTIFICATION_NOT_FOUND'


# -------------------------------------------------------------------
# Retry
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestRetry:

    def test_retry_resets_only_failed_rows(self, notifier, patient, settings):
        _use_raising_sms(settings)
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, priority='high',
        )
        assert _statuses(notification)['sms'] == 'failed'

        # SMS 网关恢复
        settings.NOTIFICATION_CHANNEL_BACKENDS = {
            **settings.NOTIFICATION_CHANNEL_BACKENDS, 'sms': 'tests.fakes.RecordingSmsAdapter',
        }
        result = notifier.retry_notification(notification.id)

        assert result['retried'] == 1
        assert result['retry_count'] == 1
        assert _statuses(notification) == {'websocket': 'delivered', 'email': 'delivered', 'sms': 'delivered'}
        # delivered 的行没有被重新投递
        assert len(RecordingWebSocketAdapter.sent) == 1
        assert _deliveries(notification, channel='sms').get().attempts == 2

    def test_retry_still_failing(self, notifier, patient, settings):
        _use_raising_sms(settings)
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )

        notifier.retry_notification(notification.id)
        result = notifier.retry_notification(notification.id)

        assert result['retry_count'] == 2
        assert _deliveries(notification).get().status == 'failed'
        assert _deliveries(notification).get().attempts == 3

    def test_failed_retry_enqueue_picked_up_by_sweep(self, patient, settings):
        _use_raising_sms(settings)
        notification = NotificationService().send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )

        def broken(notification_id):
            raise ConnectionError('broker down')

        assert NotificationService(dispatcher=broken).retry_notification(notification.id)['retried'] == 1
        notification.refresh_from_db()
        assert notification.dispatched_at is None
        assert _deliveries(notification).get().status == 'pending'

        settings.NOTIFICATION_CHANNEL_BACKENDS = {
            **settings.NOTIFICATION_CHANNEL_BACKENDS, 'sms': 'tests.fakes.RecordingSmsAdapter',
        }
        assert NotificationService().process_scheduled_notifications() == 1
        assert _deliveries(notification).get().status == 'delivered'

    def test_retry_without_failures_still_counts(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        result = notifier.retry_notification(notification.id)

        assert result['retried'] == 0
        assert result['retry_count'] == 1
        assert result['last_retry_at'] is not None

    def test_retry_channel_filter(self, notifier, patient, settings):
        _use_raising_sms(settings)
        user = PatientFactory(email='')
        notification = notifier.send_bulk_notification(
            [patient, user], NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, priority='high',
        )
        assert _deliveries(notification, status='failed').count() == 3

        result = notifier.retry_notification(notification.id, channels=['email'])
        assert result['retried'] == 1

    def test_retry_unknown_channel(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        with pytest.raises(ValidationError) as exc_info:
            notifier.retry_notification(notification.id, channels=['fax'])
        assert exc_info.value.code == 'UNKNOWN_CHANNEL'

    def test_auto_retry_respects_backoff_and_limit(self, notifier, patient, settings):
        _use_raising_sms(settings)
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )

        settings.NOTIFICATION_AUTO_RETRY_BASE_DELAY = 3600
        assert notifier.auto_retry_failed() == 0

        settings.NOTIFICATION_AUTO_RETRY_BASE_DELAY = 0
        assert notifier.auto_retry_failed() == 1
        notification.refresh_from_db()
        assert notification.retry_count == 1

        Notification.objects.filter(id=notification.id).update(retry_count=settings.NOTIFICATION_AUTO_RETRY_LIMIT)
        assert notifier.auto_retry_failed() == 0


# -------------------------------------------------------------------
# Preferences / override / broadcast
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPreferencesAndOverride:

    def test_disabled_user_suppressed(self, notifier, patient):
        NotificationPreference.objects.create(user=patient, enabled=False)

        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        assert set(_statuses(notification).values()) == {'cancelled'}
        assert _deliveries(notification).first().error == 'Recipient has disabled notifications'

    def test_disabled_channel(self, notifier, patient):
        notifier.update_preferences(patient.id, {'channels': {'email': False}})

        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        assert _statuses(notification) == {'websocket': 'delivered', 'email': 'cancelled'}

    def test_disabled_type_and_category(self, notifier, patient):
        notifier.update_preferences(patient.id, {
            'disabled_types': [NotificationType.SYSTEM_UPDATE],
            'categories': {'marketing': False},
        })

        blocked = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        promo = notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT, category='marketing',
        )
        allowed = notifier.send_notification(patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT)

        assert set(_statuses(blocked).values()) == {'cancelled'}
        assert set(_statuses(promo).values()) == {'cancelled'}
        assert set(_statuses(allowed).values()) == {'delivered'}

    def test_quiet_hours_only_hold_back_non_urgent_email_and_sms(self, notifier, patient):
        now = timezone.now()
        notifier.update_preferences(patient.id, {'quiet_hours': {
            'enabled': True,
            'start': (now - timedelta(hours=1)).strftime('%H:%M'),
            'end': (now + timedelta(hours=1)).strftime('%H:%M'),
            'timezone': 'UTC',
        }})

        routine = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        urgent = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, priority='high')

        assert _statuses(routine) == {'websocket': 'delivered', 'email': 'cancelled'}
        assert _deliveries(routine, channel='email').get().error == 'Suppressed during recipient quiet hours'
        assert set(_statuses(urgent).values()) == {'delivered'}

    def test_emergency_override_bypasses_preferences(self, notifier, patient):
        admin = AdminFactory()
        NotificationPreference.objects.create(user=patient, enabled=False)

        notification = notifier.emergency_override(
            [patient.id], NotificationType.SECURITY_ALERT, ANNOUNCEMENT, 'Credential leak', admin,
        )

        assert notification.bypass_preferences is True
        assert notification.priority == 'emergency'
        assert notification.metadata['emergency_override'] is True
        assert notification.metadata['overridden_by'] == admin.id
        assert set(_statuses(notification).values()) == {'delivered'}
        assert set(_statuses(notification)) == {'websocket', 'email', 'sms'}

    def test_emergency_override_requires_reason(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.emergency_override([patient.id], NotificationType.SECURITY_ALERT, ANNOUNCEMENT, '  ', None)
        assert exc_info.value.code == 'OVERRIDE_REASON_REQUIRED'

    def test_broadcast_targets_verified_active_role(self, notifier):
        included = PharmacistFactory.create_batch(2)
        excluded = PharmacistFactory()
        PharmacistFactory(is_verified=False)
        PharmacistFactory(is_active=False)
        PatientFactory()

        notification = notifier.broadcast_notification(
            'pharmacy', NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT, exclude_user_ids=[excluded.id],
        )

        recipients = set(notification.recipients.values_list('user_id', flat=True))
        assert recipients == {u.id for u in included}

    def test_broadcast_unknown_role(self, notifier):
        with pytest.raises(ValidationError) as exc_info:
            notifier.broadcast_notification('martian', NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT)
        assert exc_info.value.code == 'INVALID_TARGET_ROLE'

    def test_broadcast_without_recipients(self, notifier):
        with pytest.raises(NotFoundError) as exc_info:
            notifier.broadcast_notification('doctor', NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT)
        assert exc_info.value.code == 'NO_BROADCAST_RECIPIENTS'

    def test_update_preferences_validation(self, notifier, patient):
        with pytest.raises(ValidationError) as exc_info:
            notifier.update_preferences(patient.id, {'channels': {'fax': True}})
        assert exc_info.value.code == 'UNKNOWN_CHANNEL'

        with pytest.raises(ValidationError) as exc_info:
            notifier.update_preferences(patient.id, {'quiet_hours': {'enabled': True, 'start': '22:00'}})
        assert exc_info.value.code == 'INVALID_QUIET_HOURS'

    def test_preferences_for_unknown_user(self, notifier):
        with pytest.raises(NotFoundError) as exc_info:
            notifier.get_preferences(999999)
        assert exc_info.value.code == 'RECIPIENT_NOT_FOUND'


# -------------------------------------------------------------------
# Inbox / admin queries
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestInboxAndQueries:

    def test_inbox_hides_future_notifications(self, notifier, patient):
        notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        notifier.send_notification(
            patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT,
            scheduled_for=timezone.now() + timedelta(days=1),
        )

        total, receipts = notifier.get_user_notifications(patient)

        assert total == 1
        assert receipts[0].notification.type == NotificationType.SYSTEM_UPDATE

    def test_mark_as_read_counts_once(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        notifier.mark_as_read(notification.id, patient)
        notifier.mark_as_read(notification.id, patient)

        notification.refresh_from_db()
        assert notification.read_count == 1
        assert notifier.get_user_notifications(patient, unread_only=True)[0] == 0

    def test_record_action(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)

        receipt = notifier.record_action(notification.id, patient, 'dismissed')
        notifier.record_action(notification.id, patient, 'opened')

        notification.refresh_from_db()
        assert receipt.action_taken == 'dismissed'
        assert receipt.read_at is not None
        assert notification.action_count == 1
        assert notification.read_count == 1

    def test_other_users_cannot_read(self, notifier, patient):
        notification = notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        with pytest.raises(NotFoundError):
            notifier.mark_as_read(notification.id, PatientFactory())

    def test_overview_and_breakdown(self, notifier, patient, settings):
        _use_raising_sms(settings)
        notification = notifier.send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, priority='high',
        )

        breakdown = notifier.delivery_breakdown(notification)
        assert breakdown == {'pending': 0, 'delivered': 2, 'failed': 1, 'cancelled': 0}

        overview = notifier.get_overview()
        assert overview['total_notifications'] == 1
        assert overview['by_priority'] == {'high': 1}
        assert overview['by_channel']['sms']['failed'] == 1
        assert overview['delivery_rate'] == round(2 / 3, 4)

    def test_list_notifications_filters(self, notifier, patient):
        notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
        notifier.send_notification(patient, NotificationType.SYSTEM_MAINTENANCE, ANNOUNCEMENT, priority='low')

        assert notifier.list_notifications()[0] == 2
        total, items = notifier.list_notifications(priority='low')
        assert total == 1
        assert items[0].type == NotificationType.SYSTEM_MAINTENANCE


# -------------------------------------------------------------------
# 入队时机：外层事务提交之后
# -------------------------------------------------------------------

@pytest.mark.django_db(transaction=True)
class TestDispatchAfterCommit:
    """这里走真实提交，on_commit 不打补丁。"""

    def _recording_dispatcher(self, seen):
        def dispatcher(notification_id):
            seen.append((notification_id, connection.in_atomic_block))
        return dispatcher

    def test_business_operation_enqueues_after_commit(self, patient):
        seen = []
        service = PrescriptionRequestService(NotificationService(dispatcher=self._recording_dispatcher(seen)))

        service.create_request({'medications': [{'name': 'Atorvastatin'}]}, patient)

        notification = Notification.objects.get(type=NotificationType.PRESCRIPTION_CREATED)
        assert seen == [(str(notification.id), False)]
        assert notification.dispatched_at is not None

    def test_nothing_enqueued_until_outer_transaction_commits(self, patient):
        seen = []
        notifier = NotificationService(dispatcher=self._recording_dispatcher(seen))

        with transaction.atomic():
            notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
            assert seen == []

        assert len(seen) == 1

    def test_rolled_back_notification_never_enqueued(self, patient):
        seen = []
        notifier = NotificationService(dispatcher=self._recording_dispatcher(seen))

        with pytest.raises(RuntimeError):
            with transaction.atomic():
                notifier.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)
                raise RuntimeError('request aborted')

        assert seen == []
        assert not Notification.objects.exists()

    def test_retry_enqueues_after_commit(self, patient):
        notification = NotificationService(dispatcher=lambda notification_id: None).send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )
        ChannelDelivery.objects.filter(recipient__notification=notification).update(status='failed')
        seen = []

        NotificationService(dispatcher=self._recording_dispatcher(seen)).retry_notification(notification.id)

        assert seen == [(str(notification.id), False)]
