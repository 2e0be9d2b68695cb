"""
处方请求的状态机 + 药房 fan-out / 应答协议。

状态只能单调前进：
    draft → pending → submitted → accepted → in_preparation → ready → fulfilled
任何非终态都可以 → cancelled。fulfilled / cancelled 是终态。

submitted 只能经 submit_request 进入，accepted 只能经 select_pharmacy 进入，
两者都用「带状态条件的 UPDATE」实现，并发时只有一个调用者能改成功。

通知一律经 _notify() 发出：在 savepoint 里调用，任何异常只记日志，
业务操作本身不会因为通知失败而回滚。
"""

import logging
import uuid
from datetime import timedelta

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Case, Count, F, IntegerField, Value, When
from django.utils import timezone

from .constants import (
    DeliveryStatus,
    DeliveryMethod,
    NotificationPriority,
    NotificationType,
    RequestStatus,
    ResponseStatus,
    Urgency,
    UserRole,
)
from .exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .models import Notification, Pharmacy, PharmacyResponse, PrescriptionRequest, StatusHistory, TargetPharmacy

logger = logging.getLogger(__name__)

# 单调顺序，cancelled 不在里面（它是旁路终态）
STATUS_ORDER = [
    RequestStatus.DRAFT,
    RequestStatus.PENDING,
    RequestStatus.SUBMITTED,
    RequestStatus.ACCEPTED,
    RequestStatus.IN_PREPARATION,
    RequestStatus.READY,
    RequestStatus.FULFILLED,
]
OPEN_STATUSES = [RequestStatus.PENDING, RequestStatus.SUBMITTED]
SUBMITTABLE_STATUSES = [RequestStatus.DRAFT, RequestStatus.PENDING]
NON_TERMINAL_STATUSES = [s for s in RequestStatus.values if s not in PrescriptionRequest.TERMINAL_STATUSES]
PHARMACY_STATUSES = [RequestStatus.IN_PREPARATION, RequestStatus.READY, RequestStatus.FULFILLED]
WORKFLOW_ONLY_STATUSES = [RequestStatus.SUBMITTED, RequestStatus.ACCEPTED]
DEFAULT_QUEUE_STATUSES = [RequestStatus.DRAFT, RequestStatus.PENDING, RequestStatus.SUBMITTED]

RESPONSE_ACTIONS = {
    "accept": ResponseStatus.ACCEPTED,
    "decline": ResponseStatus.DECLINED,
    "partial": ResponseStatus.PARTIAL,
}
RESPONSE_NOTIFICATION_TYPES = {
    ResponseStatus.ACCEPTED: NotificationType.PRESCRIPTION_ACCEPTED,
    ResponseStatus.DECLINED: NotificationType.PRESCRIPTION_DECLINED,
    ResponseStatus.PARTIAL: NotificationType.PRESCRIPTION_PARTIAL,
}

URGENCY_PRIORITY = {
    Urgency.ROUTINE: NotificationPriority.MEDIUM,
    Urgency.URGENT: NotificationPriority.HIGH,
    Urgency.EMERGENCY: NotificationPriority.CRITICAL,
}

# 提交后提醒病人查看药房回复（分钟）
REMINDER_SCHEDULE = {
    Urgency.EMERGENCY: [15, 30],
    Urgency.URGENT: [60, 120],
    Urgency.ROUTINE: [360, 720],
}

EXPIRED_REASON = "expired"
RECENT_DAYS = 30


def generate_request_number(now=None) -> str:
    now = now or timezone.now()
    return f"PR{now:%y%m%d%H%M%S}{uuid.uuid4().hex[:4].upper()}"


def validate_medications(medications) -> list[dict]:
    """
    medications 必须是非空列表，每项至少有 name。

    quantity 可以是正数，也可以是 {"prescribed": >0, "unit": "..."}；
    dosage 可以是字符串或 dict。
    """
    if not isinstance(medications, list) or not medications:
        raise ValidationError(
            message="At least one medication is required",
            code="MEDICATIONS_REQUIRED",
        )

    cleaned = []
    for index, item in enumerate(medications):
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            raise ValidationError(
                message=f"Medication #{index + 1} needs a name",
                code="INVALID_MEDICATION",
                detail={"index": index},
            )

        quantity = item.get("quantity")
        if quantity is not None:
            if isinstance(quantity, dict):
                prescribed = quantity.get("prescribed")
                valid = isinstance(prescribed, (int, float)) and not isinstance(prescribed, bool) and prescribed > 0
            else:
                valid = isinstance(quantity, (int, float)) and not isinstance(quantity, bool) and quantity > 0
            if not valid:
                raise ValidationError(
                    message=f"Medication #{index + 1} has an invalid quantity",
                    code="INVALID_MEDICATION",
                    detail={"index": index, "field": "quantity"},
                )

        dosage = item.get("dosage")
        if dosage is not None and not isinstance(dosage, (str, dict)):
            raise ValidationError(
                message=f"Medication #{index + 1} has an invalid dosage",
                code="INVALID_MEDICATION",
                detail={"index": index, "field": "dosage"},
            )

        cleaned.append({**item, "name": str(item["name"]).strip()})
    return cleaned


def resolve_pharmacy_for_user(user) -> Pharmacy:
    """当前用户名下的药房。没有就 403。"""
    pharmacy = None
    if user is not None and getattr(user, "role", None) == UserRole.PHARMACY:
        pharmacy = Pharmacy.objects.filter(owner=user, is_active=True).order_by("created_at").first()
    if pharmacy is None:
        raise AuthorizationError(
            message="This account is not linked to an active pharmacy",
            code="PHARMACY_ACCOUNT_REQUIRED",
        )
    return pharmacy


class PrescriptionRequestService:

    def __init__(self, notifier):
        self.notifier = notifier

    # ── State machine ──────────────────────────────────────────────────────

    def create_request(self, data: dict, patient) -> PrescriptionRequest:
        """
        创建处方请求（draft，或 data["status"] == "pending" 时为 pending）。

        带 pharmacy_ids 时立即 submit。

        Raises:
            AuthorizationError: 不是病人（或管理员）
            ValidationError: 药品列表 / urgency / delivery_method 不合法
        """
        if patient.role not in (UserRole.PATIENT, UserRole.ADMIN):
            raise AuthorizationError(
                message="Only patients can create prescription requests",
                code="PATIENT_ROLE_REQUIRED",
            )

        medications = validate_medications(data.get("medications"))

        urgency = data.get("urgency") or Urgency.ROUTINE
        if urgency not in Urgency.values:
            raise ValidationError(message=f"Unknown urgency: {urgency!r}", code="INVALID_URGENCY")

        delivery_method = data.get("delivery_method") or DeliveryMethod.PICKUP
        if delivery_method not in DeliveryMethod.values:
            raise ValidationError(
                message=f"Unknown delivery method: {delivery_method!r}",
                code="INVALID_DELIVERY_METHOD",
            )
        delivery_address = data.get("delivery_address") or None
        if delivery_method == DeliveryMethod.DELIVERY and not delivery_address:
            raise ValidationError(
                message="A delivery address is required for home delivery",
                code="DELIVERY_ADDRESS_REQUIRED",
            )

        status = RequestStatus.PENDING if data.get("status") == RequestStatus.PENDING else RequestStatus.DRAFT

        with transaction.atomic():
            request = PrescriptionRequest.objects.create(
                request_number=generate_request_number(),
                patient=patient,
                medications=medications,
                status=status,
                urgency=urgency,
                delivery_method=delivery_method,
                delivery_address=delivery_address,
                patient_notes=(data.get("patient_notes") or "").strip(),
            )
            self._record(request, status, patient, reason="created")

        logger.info("Prescription request %s created by user %s (%s)", request.request_number, patient.id, status)

        self._notify(
            self.notifier.send_notification,
            patient,
            NotificationType.PRESCRIPTION_CREATED,
            {
                "title": "Prescription request created",
                "message": f"Your prescription request {request.request_number} has been created.",
                "action_url": f"/prescription-requests/{request.id}",
                "action_text": "View request",
                "metadata": {"request_id": str(request.id), "request_number": request.request_number},
            },
            related_entities=self._entities(request),
        )

        pharmacy_ids = data.get("pharmacy_ids")
        if pharmacy_ids:
            self.submit_request(request.id, pharmacy_ids, patient)
            request.refresh_from_db()
        return request

    def submit_request(self, request_id, pharmacy_ids, actor) -> dict:
        """
        冻结目标药房并 → submitted，然后逐个通知药房。

        每个药房的通知独立发送，失败只记在 notification_results 里。

        Returns:
            {"request": PrescriptionRequest, "notified_pharmacies": int, "notification_results": [...]}
        """
        request = self._get_request(request_id)
        self._require_owner(request, actor)

        if request.status not in SUBMITTABLE_STATUSES:
            raise InvalidStateError(
                message=f"Request cannot be submitted from status '{request.status}'",
                code="REQUEST_NOT_SUBMITTABLE",
                detail={"status": request.status},
            )

        pharmacies = self._active_pharmacies(pharmacy_ids)

        now = timezone.now()
        with transaction.atomic():
            updated = PrescriptionRequest.objects.filter(
                id=request.id, status__in=SUBMITTABLE_STATUSES,
            ).update(status=RequestStatus.SUBMITTED, submitted_at=now, updated_at=now)
            if not updated:
                raise InvalidStateError(message="Request has already been submitted", code="REQUEST_NOT_SUBMITTABLE")

            TargetPharmacy.objects.bulk_create(
                [TargetPharmacy(request=request, pharmacy=pharmacy) for pharmacy in pharmacies]
            )
            self._record(request, RequestStatus.SUBMITTED, actor, reason="submitted",
                         notes=f"Sent to {len(pharmacies)} pharmacies")

        request.refresh_from_db()
        logger.info("Prescription request %s submitted to %d pharmacies", request.request_number, len(pharmacies))

        results = []
        for pharmacy in pharmacies:
            ok, notification, error = self._notify(
                self.notifier.send_notification,
                pharmacy.owner,
                NotificationType.PRESCRIPTION_REQUEST,
                {
                    "title": "New prescription request",
                    "message": (
                        f"Request {request.request_number} needs a response "
                        f"({len(request.medications)} medication(s), {request.urgency})."
                    ),
                    "action_url": f"/pharmacy/requests/{request.id}",
                    "action_text": "Respond",
                    "metadata": {
                        "request_id": str(request.id),
                        "request_number": request.request_number,
                        "pharmacy_id": str(pharmacy.id),
                        "pharmacy_name": pharmacy.name,
                    },
                },
                priority=URGENCY_PRIORITY[request.urgency],
                related_entities=self._entities(request),
            )
            if ok:
                TargetPharmacy.objects.filter(request=request, pharmacy=pharmacy).update(notified_at=now)
            results.append({
                "pharmacy_id": str(pharmacy.id),
                "pharmacy_name": pharmacy.name,
                "success": ok,
                "notification_id": str(notification.id) if notification is not None else None,
                "error": error,
            })

        self._schedule_reminders(request, now)

        return {
            "request": request,
            "notified_pharmacies": sum(1 for r in results if r["success"]),
            "notification_results": results,
        }

    def handle_pharmacy_response(self, request_id, pharmacy, action, response_data=None) -> PharmacyResponse:
        """
        药房回复（accept / decline / partial）。

        每个药房对每个请求只有一条 response：重复回复覆盖旧值，revision + 1。
        选定药房之后不再接受任何回复。请求本身的 status 不变。
        """
        status = RESPONSE_ACTIONS.get(action)
        if status is None:
            raise ValidationError(
                message=f"Unknown response action: {action!r}",
                code="INVALID_RESPONSE_ACTION",
                detail={"allowed": list(RESPONSE_ACTIONS)},
            )

        response_data = response_data or {}
        quoted_price = response_data.get("quoted_price")
        if quoted_price is not None and not isinstance(quoted_price, dict):
            raise ValidationError(message="quoted_price must be an object", code="INVALID_QUOTED_PRICE")

        request = self._get_request(request_id)

        now = timezone.now()
        with transaction.atomic():
            # 只锁 (request, pharmacy) 这一行：同一药房的并发回复排队，不同药房互不阻塞
            target = (
                TargetPharmacy.objects.select_for_update()
                .filter(request=request, pharmacy=pharmacy)
                .first()
            )
            if target is None:
                raise AuthorizationError(
                    message="This pharmacy was not asked to respond to the request",
                    code="PHARMACY_NOT_TARGETED",
                )

            is_open = PrescriptionRequest.objects.filter(
                id=request.id, status__in=OPEN_STATUSES, selected_pharmacy__isnull=True,
            ).exists()
            if not is_open:
                request.refresh_from_db(fields=["status", "selected_pharmacy"])
                raise InvalidStateError(
                    message="Request is no longer accepting responses",
                    code="REQUEST_NOT_OPEN",
                    detail={"status": request.status},
                )

            response, created = PharmacyResponse.objects.update_or_create(
                request=request,
                pharmacy=pharmacy,
                defaults={
                    "status": status,
                    "estimated_fulfillment_time": response_data.get("estimated_fulfillment_time"),
                    "quoted_price": quoted_price,
                    "pharmacist_notes": (response_data.get("pharmacist_notes") or "").strip(),
                    "substitutions": list(response_data.get("substitutions") or []),
                    "responded_at": now,
                },
            )
            if not created:
                PharmacyResponse.objects.filter(id=response.id).update(revision=F("revision") + 1)
                response.refresh_from_db()

        logger.info("Pharmacy %s %s request %s (revision %d)",
                    pharmacy.id, status, request.request_number, response.revision)

        verb = {"accepted": "accepted", "declined": "declined", "partial": "partially accepted"}[status]
        self._notify(
            self.notifier.send_notification,
            request.patient,
            RESPONSE_NOTIFICATION_TYPES[status],
            {
                "title": f"{pharmacy.name} responded",
                "message": f"{pharmacy.name} {verb} your request {request.request_number}.",
                "action_url": f"/prescription-requests/{request.id}/responses",
                "action_text": "View responses",
                "metadata": {
                    "request_id": str(request.id),
                    "request_number": request.request_number,
                    "pharmacy_id": str(pharmacy.id),
                    "pharmacy_name": pharmacy.name,
                    "response_status": status,
                    "quoted_total": (quoted_price or {}).get("total"),
                },
            },
            related_entities=self._entities(request),
        )
        return response

    def select_pharmacy(self, request_id, pharmacy_id, reason, actor) -> PrescriptionRequest:
        """
        病人从已 accept 的药房中选一家 → accepted。

        条件更新：status ∈ {pending, submitted} 且 selected_pharmacy IS NULL，
        两个并发 select 只有一个能改到行，另一个 InvalidStateError。
        """
        request = self._get_request(request_id)
        self._require_owner(request, actor)
        pharmacy = self._get_pharmacy(pharmacy_id)

        if not PharmacyResponse.objects.filter(
            request=request, pharmacy=pharmacy, status=ResponseStatus.ACCEPTED,
        ).exists():
            raise InvalidStateError(
                message="Only a pharmacy that accepted the request can be selected",
                code="PHARMACY_NOT_ACCEPTED",
                detail={"pharmacy_id": str(pharmacy.id)},
            )

        now = timezone.now()
        reason = (reason or "").strip()
        with transaction.atomic():
            updated = PrescriptionRequest.objects.filter(
                id=request.id, status__in=OPEN_STATUSES, selected_pharmacy__isnull=True,
            ).update(
                status=RequestStatus.ACCEPTED,
                selected_pharmacy=pharmacy,
                selection_reason=reason,
                selected_at=now,
                updated_at=now,
            )
            if not updated:
                raise InvalidStateError(
                    message="A pharmacy has already been selected or the request is closed",
                    code="PHARMACY_ALREADY_SELECTED",
                )
            self._record(request, RequestStatus.ACCEPTED, actor, reason="pharmacy_selected",
                         notes=f"Selected {pharmacy.name}")

        request.refresh_from_db()
        logger.info("Request %s: pharmacy %s selected", request.request_number, pharmacy.id)

        base = {"request_id": str(request.id), "request_number": request.request_number}
        self._notify(
            self.notifier.send_notification,
            pharmacy.owner,
            NotificationType.PRESCRIPTION_SELECTED,
            {
                "title": "You were selected",
                "message": f"The patient selected {pharmacy.name} for request {request.request_number}.",
                "action_url": f"/pharmacy/requests/{request.id}",
                "action_text": "Start preparing",
                "metadata": {**base, "pharmacy_id": str(pharmacy.id), "pharmacy_name": pharmacy.name},
            },
            priority=URGENCY_PRIORITY[request.urgency],
            related_entities=self._entities(request),
        )

        others = (
            PharmacyResponse.objects
            .filter(request=request, status=ResponseStatus.ACCEPTED)
            .exclude(pharmacy=pharmacy)
            .select_related("pharmacy__owner")
        )
        for response in others:
            self._notify(
                self.notifier.send_notification,
                response.pharmacy.owner,
                NotificationType.PRESCRIPTION_NOT_SELECTED,
                {
                    "title": "Request filled elsewhere",
                    "message": f"Request {request.request_number} was assigned to another pharmacy.",
                    "metadata": {
                        **base, "pharmacy_id": str(response.pharmacy.id), "pharmacy_name": response.pharmacy.name,
                    },
                },
                priority=NotificationPriority.LOW,
                related_entities=self._entities(request),
            )

        self._notify(
            self.notifier.send_notification,
            request.patient,
            NotificationType.ORDER_CONFIRMED,
            {
                "title": "Order confirmed",
                "message": f"{pharmacy.name} will fill your request {request.request_number}.",
                "action_url": f"/prescription-requests/{request.id}",
                "action_text": "Track order",
                "metadata": {**base, "pharmacy_id": str(pharmacy.id), "pharmacy_name": pharmacy.name},
            },
            related_entities=self._entities(request),
        )

        self._cancel_reminders(request, actor, "Pharmacy selected")
        return request

    def update_status(self, request_id, new_status, actor, notes="") -> PrescriptionRequest:
        """
        权限：
          patient : 只能取消（转给 cancel_request）
          pharmacy: 只能 in_preparation / ready / fulfilled，且必须是被选中的药房
          admin   : 任意状态
        所有人都受单调性约束；submitted / accepted 只能走 submit / select。
        """
        if new_status not in RequestStatus.values:
            raise ValidationError(message=f"Unknown status: {new_status!r}", code="INVALID_STATUS")
        if new_status == RequestStatus.CANCELLED:
            return self.cancel_request(request_id, notes, actor)

        request = self._get_request(request_id)

        if new_status in WORKFLOW_ONLY_STATUSES:
            raise InvalidStateError(
                message=f"'{new_status}' can only be reached by submitting or selecting a pharmacy",
                code="STATUS_REQUIRES_WORKFLOW",
            )

        role = getattr(actor, "role", None)
        if role == UserRole.PHARMACY:
            if new_status not in PHARMACY_STATUSES:
                raise AuthorizationError(
                    message=f"Pharmacies cannot set status '{new_status}'",
                    code="STATUS_NOT_ALLOWED",
                )
            if request.selected_pharmacy is None or request.selected_pharmacy.owner_id != actor.id:
                raise AuthorizationError(
                    message="Only the selected pharmacy can update this request",
                    code="NOT_SELECTED_PHARMACY",
                )
        elif role != UserRole.ADMIN:
            raise AuthorizationError(
                message="Patients can only cancel their requests",
                code="STATUS_NOT_ALLOWED",
            )

        current = request.status
        if request.is_terminal or STATUS_ORDER.index(new_status) <= STATUS_ORDER.index(current):
            raise InvalidStateError(
                message=f"Cannot move request from '{current}' to '{new_status}'",
                code="INVALID_STATUS_TRANSITION",
                detail={"from": current, "to": new_status},
            )

        now = timezone.now()
        changes = {"status": new_status, "updated_at": now}
        if new_status == RequestStatus.FULFILLED:
            changes.update(fulfilled_at=now, is_active=False)

        with transaction.atomic():
            updated = PrescriptionRequest.objects.filter(id=request.id, status=current).update(**changes)
            if not updated:
                raise InvalidStateError(
                    message="Request was modified concurrently, reload and try again",
                    code="CONCURRENT_MODIFICATION",
                )
            self._record(request, new_status, actor, reason="status_update", notes=notes or "")

        request.refresh_from_db()
        logger.info("Request %s: %s → %s by user %s", request.request_number, current, new_status, actor.id)

        if new_status == RequestStatus.READY:
            notification_type = NotificationType.PRESCRIPTION_READY
            title = "Prescription ready"
        elif new_status == RequestStatus.FULFILLED:
            notification_type = NotificationType.ORDER_DELIVERED
            title = "Order fulfilled"
        else:
            notification_type = NotificationType.PRESCRIPTION_UPDATED
            title = "Prescription request updated"

        self._notify(
            self.notifier.send_notification,
            request.patient,
            notification_type,
            {
                "title": title,
                "message": f"Request {request.request_number} is now {request.get_status_display().lower()}.",
                "action_url": f"/prescription-requests/{request.id}",
                "action_text": "View request",
                "metadata": {
                    "request_id": str(request.id),
                    "request_number": request.request_number,
                    "status": new_status,
                    "notes": notes or "",
                },
            },
            priority=NotificationPriority.HIGH if new_status == RequestStatus.READY else NotificationPriority.MEDIUM,
            related_entities=self._entities(request),
        )
        return request

    def cancel_request(self, request_id, reason, actor) -> PrescriptionRequest:
        """
        任意非终态 → cancelled。只有请求的病人本人或管理员可以取消。

        条件更新保证不会覆盖并发发生的 fulfilled。
        """
        request = self._get_request(request_id)
        if getattr(actor, "role", None) != UserRole.ADMIN and request.patient_id != getattr(actor, "id", None):
            raise AuthorizationError(
                message="Only the patient or an administrator can cancel this request",
                code="NOT_REQUEST_OWNER",
            )
        if request.is_terminal:
            raise InvalidStateError(
                message=f"Request is already {request.status}",
                code="REQUEST_NOT_CANCELLABLE",
                detail={"status": request.status},
            )

        reason = (reason or "").strip() or "Cancelled by user"
        now = timezone.now()
        with transaction.atomic():
            updated = PrescriptionRequest.objects.filter(
                id=request.id, status__in=NON_TERMINAL_STATUSES,
            ).update(
                status=RequestStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                is_active=False,
                updated_at=now,
            )
            if not updated:
                raise InvalidStateError(message="Request is no longer cancellable", code="REQUEST_NOT_CANCELLABLE")
            self._record(request, RequestStatus.CANCELLED, actor, reason="cancelled", notes=reason)

        request.refresh_from_db()
        logger.info("Request %s cancelled by user %s: %s", request.request_number, actor.id, reason)

        owners = list({target.pharmacy.owner_id: target.pharmacy.owner
                       for target in request.targets.select_related("pharmacy__owner")}.values())
        if owners:
            self._notify(
                self.notifier.send_bulk_notification,
                owners,
                NotificationType.PRESCRIPTION_CANCELLED,
                {
                    "title": "Prescription request cancelled",
                    "message": f"Request {request.request_number} was cancelled: {reason}",
                    "metadata": {
                        "request_id": str(request.id),
                        "request_number": request.request_number,
                        "reason": reason,
                        "cancelled_by_role": actor.role,
                    },
                },
                related_entities=self._entities(request),
            )

        self._cancel_reminders(request, actor, "Request cancelled")
        return request

    # ── Queries ────────────────────────────────────────────────────────────

    def get_request_details(self, request_id, user):
        """
        Returns:
            (request, responses): 药房只能看到自己的 response

        Raises:
            NotFoundError / AuthorizationError
        """
        request = self._get_request(request_id)
        responses = request.responses.select_related("pharmacy").order_by("responded_at")

        if user.role == UserRole.ADMIN or request.patient_id == user.id:
            return request, list(responses)

        owned = Pharmacy.objects.filter(owner=user)
        if user.role == UserRole.PHARMACY and request.targets.filter(pharmacy__in=owned).exists():
            return request, list(responses.filter(pharmacy__in=owned))

        raise AuthorizationError(message="You cannot view this request", code="REQUEST_ACCESS_DENIED")

    def get_request_responses(self, request_id, user) -> list:
        request = self._get_request(request_id)
        if user.role != UserRole.ADMIN and request.patient_id != user.id:
            raise AuthorizationError(
                message="Only the patient can review pharmacy responses",
                code="REQUEST_ACCESS_DENIED",
            )
        return list(request.responses.select_related("pharmacy").order_by("responded_at"))

    def get_patient_requests(self, patient, status=None, limit=20, offset=0):
        requests = PrescriptionRequest.objects.filter(patient=patient).select_related("selected_pharmacy")
        if status:
            requests = requests.filter(status=status)
        return requests.count(), list(requests[offset:offset + limit])

    def list_requests(self, user, status=None, limit=20, offset=0):
        """按角色过滤：病人看自己的，药房看发给自己的，管理员看全部。"""
        if user.role == UserRole.PATIENT:
            return self.get_patient_requests(user, status=status, limit=limit, offset=offset)

        requests = PrescriptionRequest.objects.select_related("selected_pharmacy")
        if user.role == UserRole.PHARMACY:
            requests = requests.filter(targets__pharmacy__owner=user).distinct()
        elif user.role != UserRole.ADMIN:
            raise AuthorizationError(message="You cannot list prescription requests", code="REQUEST_ACCESS_DENIED")

        if status:
            requests = requests.filter(status=status)
        return requests.count(), list(requests[offset:offset + limit])

    def get_pharmacy_queue(self, pharmacy, statuses=None, limit=20, offset=0):
        """发给该药房、仍在进行中的请求。emergency > urgent > routine，同级按最新。"""
        statuses = list(statuses or DEFAULT_QUEUE_STATUSES)
        unknown = [s for s in statuses if s not in RequestStatus.values]
        if unknown:
            raise ValidationError(message=f"Unknown status filter: {', '.join(unknown)}", code="INVALID_STATUS")

        queue = (
            PrescriptionRequest.objects
            .filter(targets__pharmacy=pharmacy, is_active=True, status__in=statuses)
            .annotate(urgency_rank=Case(
                When(urgency=Urgency.EMERGENCY, then=Value(0)),
                When(urgency=Urgency.URGENT, then=Value(1)),
                default=Value(2),
                output_field=IntegerField(),
            ))
            .order_by("urgency_rank", "-created_at")
        )
        return queue.count(), list(queue[offset:offset + limit])

    def get_pharmacy_statistics(self, pharmacy) -> dict:
        targeted = TargetPharmacy.objects.filter(pharmacy=pharmacy).count()
        responses = PharmacyResponse.objects.filter(pharmacy=pharmacy)
        by_status = {status: 0 for status in ResponseStatus.values}
        by_status.update({row["status"]: row["count"] for row in responses.values("status").annotate(count=Count("id"))})

        accepted = by_status[ResponseStatus.ACCEPTED]
        selected = PrescriptionRequest.objects.filter(selected_pharmacy=pharmacy)
        fulfilled = selected.filter(status=RequestStatus.FULFILLED).count()

        latencies = [
            (responded_at - created_at).total_seconds() / 60
            for responded_at, created_at in responses.values_list("responded_at", "request__created_at")
        ]

        return {
            "pharmacy_id": str(pharmacy.id),
            "total_requests": targeted,
            "responses": by_status,
            "pending_responses": targeted - responses.count(),
            "selected": selected.count(),
            "fulfilled": fulfilled,
            "acceptance_rate": round(accepted / targeted, 4) if targeted else 0.0,
            "fulfillment_rate": round(fulfilled / accepted, 4) if accepted else 0.0,
            "average_response_minutes": round(sum(latencies) / len(latencies), 1) if latencies else None,
        }

    def get_patient_statistics(self, patient) -> dict:
        requests = PrescriptionRequest.objects.filter(patient=patient)
        by_status = {status: 0 for status in RequestStatus.values}
        by_status.update({row["status"]: row["count"] for row in requests.values("status").annotate(count=Count("id"))})
        since = timezone.now() - timedelta(days=RECENT_DAYS)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active": requests.filter(status__in=NON_TERMINAL_STATUSES).count(),
            "fulfilled": by_status[RequestStatus.FULFILLED],
            "recent": requests.filter(created_at__gte=since).count(),
        }

    def get_statistics(self) -> dict:
        requests = PrescriptionRequest.objects.all()
        by_status = {status: 0 for status in RequestStatus.values}
        by_status.update({row["status"]: row["count"] for row in requests.values("status").annotate(count=Count("id"))})
        by_urgency = {urgency: 0 for urgency in Urgency.values}
        by_urgency.update({row["urgency"]: row["count"] for row in requests.values("urgency").annotate(count=Count("id"))})

        submitted = requests.filter(submitted_at__isnull=False).count()
        responses = PharmacyResponse.objects.count()
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_urgency": by_urgency,
            "submitted": submitted,
            "selected": requests.filter(selected_pharmacy__isnull=False).count(),
            "total_responses": responses,
            "average_responses_per_request": round(responses / submitted, 2) if submitted else 0.0,
        }

    # ── Periodic work ──────────────────────────────────────────────────────

    def expire_stale_requests(self, now=None) -> int:
        """过了 expires_at 还没选定药房的请求 → cancelled（reason=expired），通知病人。"""
        now = now or timezone.now()
        stale = (
            PrescriptionRequest.objects
            .filter(expires_at__lte=now, status__in=SUBMITTABLE_STATUSES + [RequestStatus.SUBMITTED],
                    selected_pharmacy__isnull=True)
            .select_related("patient")
        )

        expired = 0
        for request in stale:
            with transaction.atomic():
                updated = PrescriptionRequest.objects.filter(
                    id=request.id, status=request.status, selected_pharmacy__isnull=True,
                ).update(
                    status=RequestStatus.CANCELLED,
                    cancelled_at=now,
                    cancellation_reason=EXPIRED_REASON,
                    is_active=False,
                    updated_at=now,
                )
                if not updated:
                    continue
                self._record(request, RequestStatus.CANCELLED, None, reason=EXPIRED_REASON)
            expired += 1

            self._notify(
                self.notifier.send_notification,
                request.patient,
                NotificationType.PRESCRIPTION_EXPIRED,
                {
                    "title": "Prescription request expired",
                    "message": f"Request {request.request_number} expired before a pharmacy was selected.",
                    "action_url": "/prescription-requests/new",
                    "action_text": "Create a new request",
                    "metadata": {
                        "request_id": str(request.id),
                        "request_number": request.request_number,
                        "reason": EXPIRED_REASON,
                        "cancelled_by_role": "system",
                    },
                },
                related_entities=self._entities(request),
            )
            self._cancel_reminders(request, None, "Request expired")

        if expired:
            logger.info("Expired %d stale prescription requests", expired)
        return expired

    # ── Helpers ────────────────────────────────────────────────────────────

    def _notify(self, send, *args, **kwargs):
        """
        Returns:
            (ok, notification, error)
        """
        try:
            with transaction.atomic():
                notification = send(*args, **kwargs)
        except Exception as exc:
            logger.exception("Notification via %s failed", getattr(send, "__name__", send))
            return False, None, f"{type(exc).__name__}: {exc}"
        return True, notification, None

    def _schedule_reminders(self, request, now):
        for index, minutes in enumerate(REMINDER_SCHEDULE[request.urgency], start=1):
            self._notify(
                self.notifier.send_notification,
                request.patient,
                NotificationType.RESPONSE_REMINDER,
                {
                    "title": "Check pharmacy responses",
                    "message": f"Pharmacies may have responded to your request {request.request_number}.",
                    "action_url": f"/prescription-requests/{request.id}/responses",
                    "action_text": "Review responses",
                    "metadata": {
                        "request_id": str(request.id),
                        "request_number": request.request_number,
                        "urgency": request.urgency,
                        "reminder_index": index,
                    },
                },
                scheduled_for=now + timedelta(minutes=minutes),
                related_entities=self._entities(request),
            )

    def _cancel_reminders(self, request, actor, reason):
        reminders = (
            Notification.objects
            .filter(
                type=NotificationType.RESPONSE_REMINDER,
                metadata__request_id=str(request.id),
                scheduled_for__gt=timezone.now(),
                recipients__deliveries__status=DeliveryStatus.PENDING,
            )
            .distinct()
            .values_list("id", flat=True)
        )
        for notification_id in list(reminders):
            try:
                self.notifier.cancel_notification(notification_id, reason, cancelled_by=actor)
            except InvalidStateError as exc:
                logger.info("Reminder %s not cancelled: %s", notification_id, exc.message)
            except Exception:
                logger.exception("Failed to cancel reminder %s", notification_id)

    def _record(self, request, status, actor, reason="", notes=""):
        StatusHistory.objects.create(
            request=request,
            status=status,
            changed_by=actor if getattr(actor, "pk", None) else None,
            reason=reason[:255],
            notes=notes,
        )

    def _require_owner(self, request, actor):
        if request.patient_id != getattr(actor, "id", None):
            raise AuthorizationError(
                message="Only the patient who created the request can do this",
                code="NOT_REQUEST_OWNER",
            )

    def _active_pharmacies(self, pharmacy_ids) -> list:
        if not isinstance(pharmacy_ids, (list, tuple)) or not pharmacy_ids:
            raise ValidationError(message="Select at least one pharmacy", code="PHARMACY_IDS_REQUIRED")

        ids = []
        for value in pharmacy_ids:
            try:
                ids.append(uuid.UUID(str(value)))
            except ValueError:
                raise ValidationError(message=f"Invalid pharmacy id: {value!r}", code="INVALID_PHARMACY_ID")

        pharmacies = list(
            Pharmacy.objects.filter(id__in=ids, is_active=True).select_related("owner").order_by("name")
        )
        if not pharmacies:
            raise ValidationError(
                message="None of the selected pharmacies are available",
                code="NO_ACTIVE_PHARMACIES",
                detail={"pharmacy_ids": [str(i) for i in ids]},
            )
        return pharmacies

    def _get_request(self, request_id) -> PrescriptionRequest:
        try:
            return PrescriptionRequest.objects.select_related("patient", "selected_pharmacy").get(id=request_id)
        except (PrescriptionRequest.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(
                message="Prescription request not found",
                code="REQUEST_NOT_FOUND",
                detail={"request_id": str(request_id)},
            )

    def _get_pharmacy(self, pharmacy_id) -> Pharmacy:
        try:
            return Pharmacy.objects.select_related("owner").get(id=pharmacy_id)
        except (Pharmacy.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(
                message="Pharmacy not found",
                code="PHARMACY_NOT_FOUND",
                detail={"pharmacy_id": str(pharmacy_id)},
            )

    @staticmethod
    def _entities(request) -> list[dict]:
        return [{"entity_type": "prescription_request", "entity_id": str(request.id)}]
