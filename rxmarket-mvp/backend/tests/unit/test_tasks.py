"""
Unit tests for Celery tasks.

deliver_notification 的重试逻辑直接调 task.run()，用 push_request 模拟第几次执行，
不依赖 broker。beat 任务只验证它们把活交给了对应的 service。
"""
import pytest
from datetime import timedelta
from unittest.mock import patch

from celery.exceptions import Retry
from django.utils import timezone

from rxmarket.constants import NotificationType, RequestStatus
from rxmarket.models import Alert, ChannelDelivery, Notification
from rxmarket.notifications.service import NotificationService
from rxmarket.tasks import (
    cleanup_resolved_alerts,
    deliver_notification,
    expire_prescription_requests,
    monitor_delivery_health,
    process_alert_escalations,
    process_scheduled_notifications,
    retry_failed_notifications,
)
from tests.conftest import PrescriptionRequestFactory
from tests.fakes import RecordingWebSocketAdapter


ANNOUNCEMENT = {'title': 'Heads up', 'message': 'Something happened.'}
MISSING_ID = '00000000-0000-0000-0000-000000000000'


@pytest.fixture
def undispatched(patient):
    """写好但还没投递的通知。"""
    service = NotificationService(dispatcher=lambda notification_id: None)
    return service.send_notification(patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT)


def _run(task, notification_id, retries):
    task.push_request(retries=retries)
    try:
        return task.run(str(notification_id))
    finally:
        task.pop_request()


# -------------------------------------------------------------------
# deliver_notification
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestDeliverNotification:

    def test_delivers_pending(self, undispatched):
        result = deliver_notification.delay(str(undispatched.id)).get()

        assert result == {
            'notification_id': str(undispatched.id),
            'delivered': 2,
            'failed': 0,
            'cancelled': 0,
            'skipped': False,
        }
        assert len(RecordingWebSocketAdapter.sent) == 1

    def test_missing_notification_retried(self):
        task = deliver_notification._get_current_object()

        with patch.object(task, 'retry', side_effect=Retry()) as mock_retry:
            with pytest.raises(Retry):
                _run(task, MISSING_ID, retries=0)

        assert mock_retry.call_args.kwargs['countdown'] == 10

    def test_missing_notification_given_up_after_retries(self):
        task = deliver_notification._get_current_object()

        with patch.object(task, 'retry') as mock_retry:
            assert _run(task, MISSING_ID, retries=3) is None

        mock_retry.assert_not_called()

    @patch('rxmarket.notifications.delivery.DeliveryEngine')
    def test_engine_failure_retries_with_backoff(self, mock_engine, undispatched):
        mock_engine.return_value.deliver.side_effect = RuntimeError('database connection lost')
        task = deliver_notification._get_current_object()

        with patch.object(task, 'retry', side_effect=Retry()) as mock_retry:
            with pytest.raises(Retry):
                _run(task, undispatched.id, retries=1)

        assert mock_retry.call_args.kwargs['countdown'] == 20
        assert ChannelDelivery.objects.filter(status='pending').count() == 2

    @patch('rxmarket.notifications.delivery.DeliveryEngine')
    def test_exhausted_retries_mark_pending_failed(self, mock_engine, undispatched):
        mock_engine.return_value.deliver.side_effect = RuntimeError('database connection lost')
        task = deliver_notification._get_current_object()

        with patch.object(task, 'retry') as mock_retry:
            assert _run(task, undispatched.id, retries=3) is None

        mock_retry.assert_not_called()
        errors = set(ChannelDelivery.objects.values_list('status', 'error'))
        assert errors == {('failed', '[重试 3 次后仍失败] database connection lost')}


# -------------------------------------------------------------------
# Beat tasks
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPeriodicTasks:

    def test_process_scheduled(self, undispatched):
        Notification.objects.filter(id=undispatched.id).update(dispatched_at=None)

        assert process_scheduled_notifications.delay().get() == 1
        assert set(ChannelDelivery.objects.values_list('status', flat=True)) == {'delivered'}

    def test_retry_failed(self, patient, settings):
        settings.NOTIFICATION_CHANNEL_BACKENDS = {
            **settings.NOTIFICATION_CHANNEL_BACKENDS, 'sms': 'tests.fakes.RaisingSmsAdapter',
        }
        settings.NOTIFICATION_AUTO_RETRY_BASE_DELAY = 0
        NotificationService().send_notification(
            patient, NotificationType.SYSTEM_UPDATE, ANNOUNCEMENT, channels=['sms'],
        )

        assert retry_failed_notifications.delay().get() == 1
        assert Notification.objects.get().retry_count == 1

    def test_monitor_delivery_health_includes_infrastructure(self):
        with patch('redis.Redis.from_url') as mock_from_url:
            mock_from_url.return_value.ping.return_value = True
            report = monitor_delivery_health.delay().get()

        assert report['infrastructure'] == {'redis': 'ok'}
        assert report['alerts'] == []
        assert report['attempted'] == 0

    def test_process_alert_escalations(self, admin_user):
        from rxmarket.alerting.service import AlertingService

        alert = AlertingService(NotificationService()).raise_alert(
            'critical_failure_rate', 'critical', 'failure rate 40%',
        )
        Alert.objects.filter(id=alert.id).update(next_escalation_at=timezone.now() - timedelta(seconds=1))

        assert process_alert_escalations.delay().get() == 1

    def test_expire_prescription_requests(self):
        stale = PrescriptionRequestFactory(
            status=RequestStatus.SUBMITTED, expires_at=timezone.now() - timedelta(hours=1),
        )
        PrescriptionRequestFactory(status=RequestStatus.SUBMITTED)

        assert expire_prescription_requests.delay().get() == 1
        stale.refresh_from_db()
        assert stale.status == RequestStatus.CANCELLED

    def test_cleanup_resolved_alerts(self):
        old = Alert.objects.create(
            alert_type='stuck_notifications', severity='warning', message='old', source_key='overall',
            resolved_at=timezone.now() - timedelta(days=45),
        )
        Alert.objects.create(
            alert_type='stuck_notifications', severity='warning', message='new', source_key='overall',
            resolved_at=timezone.now() - timedelta(days=2),
        )

        assert cleanup_resolved_alerts.delay().get() == 1
        assert not Alert.objects.filter(id=old.id).exists()
