from django.urls import path

from .views import (
    AdminBroadcastView,
    AdminBulkNotificationView,
    AdminCancelNotificationView,
    AdminEmergencyOverrideView,
    AdminNotificationListView,
    AdminOverviewView,
    AdminPreferencesView,
    AdminRetryNotificationView,
    AlertAcknowledgeView,
    AlertListView,
    AlertResolveView,
    EscalationRuleListView,
    EscalationRuleUpdateView,
    NotificationActionView,
    NotificationInboxView,
    NotificationReadView,
    PharmacyQueueView,
    PharmacyRespondView,
    PharmacyStatsView,
    PrescriptionRequestDetailView,
    PrescriptionRequestListCreateView,
    RequestResponsesView,
    RequestStatsView,
    RequestStatusView,
    SelectPharmacyView,
    SubmitRequestView,
)

urlpatterns = [
    # Prescription requests
    path('prescription-requests/', PrescriptionRequestListCreateView.as_view(), name='request-list'),
    path('prescription-requests/pharmacy/queue', PharmacyQueueView.as_view(), name='pharmacy-queue'),
    path('prescription-requests/pharmacy/stats', PharmacyStatsView.as_view(), name='pharmacy-stats'),
    path('prescription-requests/stats', RequestStatsView.as_view(), name='request-stats'),
    path('prescription-requests/<uuid:request_id>/', PrescriptionRequestDetailView.as_view(), name='request-detail'),
    path('prescription-requests/<uuid:request_id>/submit', SubmitRequestView.as_view(), name='request-submit'),
    path('prescription-requests/<uuid:request_id>/respond', PharmacyRespondView.as_view(), name='request-respond'),
    path('prescription-requests/<uuid:request_id>/select-pharmacy', SelectPharmacyView.as_view(),
         name='request-select-pharmacy'),
    path('prescription-requests/<uuid:request_id>/status', RequestStatusView.as_view(), name='request-status'),
    path('prescription-requests/<uuid:request_id>/responses', RequestResponsesView.as_view(),
         name='request-responses'),

    # Inbox
    path('notifications/', NotificationInboxView.as_view(), name='notification-inbox'),
    path('notifications/<uuid:notification_id>/read', NotificationReadView.as_view(), name='notification-read'),
    path('notifications/<uuid:notification_id>/action', NotificationActionView.as_view(),
         name='notification-action'),

    # Admin: notifications
    path('admin/notifications/', AdminNotificationListView.as_view(), name='admin-notification-list'),
    path('admin/notifications/overview', AdminOverviewView.as_view(), name='admin-notification-overview'),
    path('admin/notifications/bulk', AdminBulkNotificationView.as_view(), name='admin-notification-bulk'),
    path('admin/notifications/broadcast', AdminBroadcastView.as_view(), name='admin-notification-broadcast'),
    path('admin/notifications/emergency-override', AdminEmergencyOverrideView.as_view(),
         name='admin-notification-emergency-override'),
    path('admin/notifications/<uuid:notification_id>/retry', AdminRetryNotificationView.as_view(),
         name='admin-notification-retry'),
    path('admin/notifications/<uuid:notification_id>/cancel', AdminCancelNotificationView.as_view(),
         name='admin-notification-cancel'),
    path('admin/notifications/preferences/<int:user_id>', AdminPreferencesView.as_view(),
         name='admin-notification-preferences'),

    # Admin: alerts
    path('admin/alerts/', AlertListView.as_view(), name='alert-list'),
    path('admin/alerts/escalation-rules', EscalationRuleListView.as_view(), name='escalation-rule-list'),
    path('admin/alerts/escalation-rules/<str:alert_type>', EscalationRuleUpdateView.as_view(),
         name='escalation-rule-update'),
    path('admin/alerts/<uuid:alert_id>/acknowledge', AlertAcknowledgeView.as_view(), name='alert-acknowledge'),
    path('admin/alerts/<uuid:alert_id>/resolve', AlertResolveView.as_view(), name='alert-resolve'),
]
