"""
HTTP 层：解析输入 → 调 service → 用 serializers.py 格式化输出。

View 只 raise 不 catch，错误格式统一由 exception_handler 处理。
成功响应统一为 {"success": true, "message": ..., "data": ...}。
"""

import logging

from rest_framework import status as http_status
from rest_framework.response import Response
from rest_framework.views import APIView

from .alerting.service import AlertingService
from .apps import get_notification_service
from .constants import RequestStatus, UserRole
from .exceptions import AuthorizationError, ExternalServiceError
from .inputs import (
    AcknowledgeInput,
    BroadcastInput,
    BulkNotificationInput,
    EmergencyOverrideInput,
    EscalationRuleInput,
    NotificationActionInput,
    PaginationInput,
    PharmacyResponseInput,
    PreferencesInput,
    PrescriptionRequestCreateInput,
    ReasonInput,
    ResolveInput,
    RetryInput,
    SelectPharmacyInput,
    StatusUpdateInput,
    SubmitInput,
)
from .permissions import IsAdminRole
from .serializers import (
    serialize_alert,
    serialize_notification,
    serialize_page,
    serialize_pharmacy_response,
    serialize_preferences,
    serialize_receipt,
    serialize_request,
    serialize_request_detail,
    serialize_submit_result,
)
from .services import PrescriptionRequestService, resolve_pharmacy_for_user

logger = logging.getLogger(__name__)


def ok(data=None, message='', status=http_status.HTTP_200_OK):
    return Response({'success': True, 'message': message, 'data': data}, status=status)


def _validated(serializer_class, data):
    serializer = serializer_class(data=data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


def _page(request):
    params = _validated(PaginationInput, request.query_params)
    return params['limit'], params['offset']


def _request_service():
    return PrescriptionRequestService(get_notification_service())


def _notifier():
    """管理端 / 收件箱需要真正的 NotificationService，降级的替身查不到任何东西。"""
    service = get_notification_service()
    if service.is_degraded:
        raise ExternalServiceError(
            message='Notification service is temporarily unavailable',
            code='NOTIFICATION_SERVICE_UNAVAILABLE',
        )
    return service


def _alerting():
    # 告警表不依赖通知服务；降级时升级通知只会被替身记日志跳过
    return AlertingService(get_notification_service())


# ── Prescription requests ──────────────────────────────────────────────────

class PrescriptionRequestListCreateView(APIView):
    """
    GET  /api/prescription-requests/  : 按角色过滤的列表
    POST /api/prescription-requests/  : 病人创建请求
    """

    def get(self, request):
        limit, offset = _page(request)
        total, items = _request_service().list_requests(
            request.user, status=request.query_params.get('status') or None, limit=limit, offset=offset,
        )
        return ok(serialize_page(total, [serialize_request(r) for r in items], limit, offset))

    def post(self, request):
        data = dict(_validated(PrescriptionRequestCreateInput, request.data))
        if data.get('pharmacy_ids'):
            data['pharmacy_ids'] = [str(pid) for pid in data['pharmacy_ids']]
        created = _request_service().create_request(data, request.user)
        return ok(serialize_request(created), 'Prescription request created', http_status.HTTP_201_CREATED)


class PharmacyQueueView(APIView):
    """GET /api/prescription-requests/pharmacy/queue?status=pending,submitted"""

    def get(self, request):
        pharmacy = resolve_pharmacy_for_user(request.user)
        limit, offset = _page(request)
        raw = request.query_params.get('status') or ''
        statuses = [s.strip() for s in raw.split(',') if s.strip()] or None
        total, items = _request_service().get_pharmacy_queue(pharmacy, statuses=statuses, limit=limit, offset=offset)
        return ok(serialize_page(total, [serialize_request(r) for r in items], limit, offset))


class PharmacyStatsView(APIView):

    def get(self, request):
        pharmacy = resolve_pharmacy_for_user(request.user)
        return ok(_request_service().get_pharmacy_statistics(pharmacy))


class RequestStatsView(APIView):
    """病人看自己的统计，管理员看全局统计。"""

    def get(self, request):
        service = _request_service()
        if request.user.role == UserRole.ADMIN:
            return ok(service.get_statistics())
        if request.user.role == UserRole.PATIENT:
            return ok(service.get_patient_statistics(request.user))
        raise AuthorizationError(message='Statistics are available to patients and administrators',
                                 code='STATISTICS_ACCESS_DENIED')


class PrescriptionRequestDetailView(APIView):
    """
    GET    /api/prescription-requests/<id>/ : 详情
    DELETE /api/prescription-requests/<id>/ : 取消
    """

    def get(self, request, request_id):
        prescription_request, responses = _request_service().get_request_details(request_id, request.user)
        return ok(serialize_request_detail(prescription_request, responses))

    def delete(self, request, request_id):
        reason = _validated(ReasonInput, request.data or request.query_params)['reason']
        cancelled = _request_service().cancel_request(request_id, reason, request.user)
        return ok(serialize_request(cancelled), 'Prescription request cancelled')


class SubmitRequestView(APIView):

    def post(self, request, request_id):
        data = _validated(SubmitInput, request.data)
        result = _request_service().submit_request(
            request_id, [str(pid) for pid in data['pharmacy_ids']], request.user,
        )
        return ok(serialize_submit_result(result), 'Prescription request submitted')


class PharmacyRespondView(APIView):

    def post(self, request, request_id):
        pharmacy = resolve_pharmacy_for_user(request.user)
        data = dict(_validated(PharmacyResponseInput, request.data))
        action = data.pop('action')
        response = _request_service().handle_pharmacy_response(request_id, pharmacy, action, data)
        return ok(serialize_pharmacy_response(response), 'Response recorded')


class SelectPharmacyView(APIView):

    def post(self, request, request_id):
        data = _validated(SelectPharmacyInput, request.data)
        selected = _request_service().select_pharmacy(
            request_id, str(data['pharmacy_id']), data['reason'], request.user,
        )
        return ok(serialize_request(selected), 'Pharmacy selected')


class RequestStatusView(APIView):

    def put(self, request, request_id):
        data = _validated(StatusUpdateInput, request.data)
        updated = _request_service().update_status(request_id, data['status'], request.user, data['notes'])
        message = 'Prescription request cancelled' if data['status'] == RequestStatus.CANCELLED else 'Status updated'
        return ok(serialize_request(updated), message)


class RequestResponsesView(APIView):

    def get(self, request, request_id):
        responses = _request_service().get_request_responses(request_id, request.user)
        return ok([serialize_pharmacy_response(r) for r in responses])


# ── Inbox ──────────────────────────────────────────────────────────────────

class NotificationInboxView(APIView):
    """GET /api/notifications/?unread=true"""

    def get(self, request):
        limit, offset = _page(request)
        unread_only = (request.query_params.get('unread') or '').lower() in ('1', 'true', 'yes')
        total, receipts = _notifier().get_user_notifications(
            request.user, unread_only=unread_only, limit=limit, offset=offset,
        )
        return ok(serialize_page(total, [serialize_receipt(r) for r in receipts], limit, offset))


class NotificationReadView(APIView):

    def post(self, request, notification_id):
        receipt = _notifier().mark_as_read(notification_id, request.user)
        return ok(serialize_receipt(receipt), 'Marked as read')


class NotificationActionView(APIView):

    def post(self, request, notification_id):
        data = _validated(NotificationActionInput, request.data)
        receipt = _notifier().record_action(notification_id, request.user, data['action'])
        return ok(serialize_receipt(receipt), 'Action recorded')


# ── Admin: notifications ───────────────────────────────────────────────────

class AdminNotificationListView(APIView):
    permission_classes = [IsAdminRole]

    def get(self, request):
        limit, offset = _page(request)
        service = _notifier()
        params = request.query_params
        total, items = service.list_notifications(
            type=params.get('type') or None,
            category=params.get('category') or None,
            priority=params.get('priority') or None,
            limit=limit,
            offset=offset,
        )
        data = [serialize_notification(n, service.delivery_breakdown(n)) for n in items]
        return ok(serialize_page(total, data, limit, offset))


class AdminOverviewView(APIView):
    permission_classes = [IsAdminRole]

    def get(self, request):
        try:
            hours = max(1, min(int(request.query_params.get('hours', 24)), 24 * 30))
        except ValueError:
            hours = 24
        service = _notifier()
        alerting = AlertingService(service)
        return ok({
            'notifications': service.get_overview(hours=hours),
            'alerts': alerting.get_alert_statistics(hours=hours),
            'health': alerting.delivery_health(),
        })


class AdminBulkNotificationView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request):
        data = _validated(BulkNotificationInput, request.data)
        notification = _notifier().send_bulk_notification(
            data['user_ids'],
            data['type'],
            data['content'],
            channels=data.get('channels'),
            priority=data['priority'],
            category=data.get('category'),
            scheduled_for=data.get('scheduled_for'),
            expires_at=data.get('expires_at'),
            created_by=request.user,
        )
        return ok(serialize_notification(notification), 'Notification created', http_status.HTTP_201_CREATED)


class AdminBroadcastView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request):
        data = _validated(BroadcastInput, request.data)
        notification = _notifier().broadcast_notification(
            data['target_role'],
            data['type'],
            data['content'],
            exclude_user_ids=data.get('exclude_user_ids'),
            channels=data.get('channels'),
            priority=data['priority'],
            category=data.get('category'),
            scheduled_for=data.get('scheduled_for'),
            expires_at=data.get('expires_at'),
            created_by=request.user,
        )
        return ok(serialize_notification(notification), 'Broadcast created', http_status.HTTP_201_CREATED)


class AdminEmergencyOverrideView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request):
        data = _validated(EmergencyOverrideInput, request.data)
        notification = _notifier().emergency_override(
            data['user_ids'],
            data['type'],
            data['content'],
            data['override_reason'],
            request.user,
            channels=data.get('channels'),
            priority=data['priority'],
            category=data.get('category'),
        )
        return ok(serialize_notification(notification), 'Emergency notification sent', http_status.HTTP_201_CREATED)


class AdminRetryNotificationView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request, notification_id):
        data = _validated(RetryInput, request.data)
        result = _notifier().retry_notification(
            notification_id, channels=data.get('channels'), recipient_ids=data.get('recipient_ids'),
        )
        return ok(result, f"{result['retried']} deliveries queued for retry")


class AdminCancelNotificationView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request, notification_id):
        data = _validated(ReasonInput, request.data)
        result = _notifier().cancel_notification(notification_id, data['reason'], cancelled_by=request.user)
        return ok(result, 'Notification cancelled')


class AdminPreferencesView(APIView):
    permission_classes = [IsAdminRole]

    def get(self, request, user_id):
        return ok(serialize_preferences(_notifier().get_preferences(user_id)))

    def put(self, request, user_id):
        data = _validated(PreferencesInput, request.data)
        preference = _notifier().update_preferences(user_id, data)
        return ok(serialize_preferences(preference), 'Preferences updated')


# ── Admin: alerts ──────────────────────────────────────────────────────────

class AlertListView(APIView):
    permission_classes = [IsAdminRole]

    def get(self, request):
        alerting = _alerting()
        return ok({
            'active': [serialize_alert(a) for a in alerting.get_active_alerts()],
            'statistics': alerting.get_alert_statistics(),
        })


class AlertAcknowledgeView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request, alert_id):
        data = _validated(AcknowledgeInput, request.data)
        alert = _alerting().acknowledge_alert(alert_id, request.user, data['notes'])
        return ok(serialize_alert(alert), 'Alert acknowledged')


class AlertResolveView(APIView):
    permission_classes = [IsAdminRole]

    def post(self, request, alert_id):
        data = _validated(ResolveInput, request.data)
        alert = _alerting().resolve_alert(alert_id, request.user, data['resolution'])
        return ok(serialize_alert(alert), 'Alert resolved')


class EscalationRuleListView(APIView):
    permission_classes = [IsAdminRole]

    def get(self, request):
        return ok(_alerting().get_escalation_rules())


class EscalationRuleUpdateView(APIView):
    permission_classes = [IsAdminRole]

    def put(self, request, alert_type):
        data = _validated(EscalationRuleInput, request.data)
        rule = {**data, 'levels': [dict(level) for level in data['levels']]}
        updated = _alerting().update_escalation_rule(alert_type, rule, changed_by=request.user)
        return ok(updated, 'Escalation rule updated')
