"""
Response serializers: ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入的形状校验在 rxmarket/inputs.py，业务校验在 service 层。
"""


def _iso(value):
    return value.isoformat() if value else None


def serialize_page(total, items, limit, offset):
    return {
        'total': total,
        'limit': limit,
        'offset': offset,
        'has_more': offset + len(items) < total,
        'items': items,
    }


# ── Prescription requests ──────────────────────────────────────────────────

def serialize_request(request):
    """列表 / 创建返回的精简视图。"""
    selected = request.selected_pharmacy
    return {
        'id': str(request.id),
        'request_number': request.request_number,
        'patient_id': request.patient_id,
        'status': request.status,
        'urgency': request.urgency,
        'delivery_method': request.delivery_method,
        'medications': request.medications,
        'selected_pharmacy': (
            {'id': str(selected.id), 'name': selected.name} if selected is not None else None
        ),
        'submitted_at': _iso(request.submitted_at),
        'selected_at': _iso(request.selected_at),
        'expires_at': _iso(request.expires_at),
        'is_active': request.is_active,
        'created_at': _iso(request.created_at),
        'updated_at': _iso(request.updated_at),
    }


def serialize_pharmacy_response(response):
    return {
        'id': str(response.id),
        'pharmacy': {'id': str(response.pharmacy_id), 'name': response.pharmacy.name},
        'status': response.status,
        'estimated_fulfillment_time': response.estimated_fulfillment_time,
        'quoted_price': response.quoted_price,
        'pharmacist_notes': response.pharmacist_notes,
        'substitutions': response.substitutions,
        'revision': response.revision,
        'responded_at': _iso(response.responded_at),
    }


def serialize_request_detail(request, responses):
    """详情：基本信息 + 状态历史 + 调用者能看到的 responses。"""
    data = serialize_request(request)
    data.update({
        'delivery_address': request.delivery_address,
        'patient_notes': request.patient_notes,
        'selection_reason': request.selection_reason,
        'fulfilled_at': _iso(request.fulfilled_at),
        'cancelled_at': _iso(request.cancelled_at),
        'cancellation_reason': request.cancellation_reason,
        'target_pharmacies': [
            {
                'id': str(target.pharmacy_id),
                'name': target.pharmacy.name,
                'notified_at': _iso(target.notified_at),
            }
            for target in request.targets.select_related('pharmacy')
        ],
        'responses': [serialize_pharmacy_response(r) for r in responses],
        'status_history': [
            {
                'status': entry.status,
                'changed_by': entry.changed_by_id,
                'reason': entry.reason,
                'notes': entry.notes,
                'created_at': _iso(entry.created_at),
            }
            for entry in request.status_history.all()
        ],
    })
    return data


def serialize_submit_result(result):
    return {
        'request': serialize_request(result['request']),
        'notified_pharmacies': result['notified_pharmacies'],
        'notification_results': result['notification_results'],
    }


# ── Notifications ──────────────────────────────────────────────────────────

def serialize_notification(notification, breakdown=None):
    data = {
        'id': str(notification.id),
        'type': notification.type,
        'category': notification.category,
        'priority': notification.priority,
        'title': notification.title,
        'message': notification.message,
        'action_url': notification.action_url,
        'action_text': notification.action_text,
        'metadata': notification.metadata,
        'related_entities': notification.related_entities,
        'scheduled_for': _iso(notification.scheduled_for),
        'expires_at': _iso(notification.expires_at),
        'bypass_preferences': notification.bypass_preferences,
        'retry_count': notification.retry_count,
        'last_retry_at': _iso(notification.last_retry_at),
        'analytics': {
            'total_recipients': notification.total_recipients,
            'delivered': notification.delivered_count,
            'read': notification.read_count,
            'actions': notification.action_count,
        },
        'created_at': _iso(notification.created_at),
    }
    if breakdown is not None:
        data['deliveries'] = breakdown
    return data


def serialize_receipt(receipt):
    """收件箱里的一条：通知内容 + 本人的已读 / 操作状态。"""
    notification = receipt.notification
    return {
        'id': str(notification.id),
        'type': notification.type,
        'category': notification.category,
        'priority': notification.priority,
        'title': notification.title,
        'message': notification.message,
        'action_url': notification.action_url,
        'action_text': notification.action_text,
        'metadata': notification.metadata,
        'read_at': _iso(receipt.read_at),
        'action_taken': receipt.action_taken or None,
        'action_taken_at': _iso(receipt.action_taken_at),
        'created_at': _iso(notification.created_at),
    }


def serialize_preferences(preference):
    return {
        'user_id': preference.user_id,
        'enabled': preference.enabled,
        'channels': preference.channels,
        'categories': preference.categories,
        'disabled_types': preference.disabled_types,
        'quiet_hours': {
            'enabled': preference.quiet_hours_enabled,
            'start': preference.quiet_hours_start.strftime('%H:%M') if preference.quiet_hours_start else None,
            'end': preference.quiet_hours_end.strftime('%H:%M') if preference.quiet_hours_end else None,
            'timezone': preference.timezone,
        },
        'updated_at': _iso(preference.updated_at),
    }


# ── Alerts ─────────────────────────────────────────────────────────────────

def serialize_alert(alert):
    return {
        'id': str(alert.id),
        'alert_type': alert.alert_type,
        'severity': alert.severity,
        'message': alert.message,
        'data': alert.data,
        'source_key': alert.source_key,
        'triggered_at': _iso(alert.triggered_at),
        'escalation_level': alert.escalation_level,
        'last_escalated_at': _iso(alert.last_escalated_at),
        'next_escalation_at': _iso(alert.next_escalation_at),
        'acknowledged': {
            'by': alert.acknowledged_by_id,
            'at': _iso(alert.acknowledged_at),
            'notes': alert.acknowledgement_notes,
        } if alert.acknowledged_at else None,
        'resolved': {
            'by': alert.resolved_by_id,
            'at': _iso(alert.resolved_at),
            'resolution': alert.resolution,
        } if alert.resolved_at else None,
        'is_active': alert.is_active,
    }
