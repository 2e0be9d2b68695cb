"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.

每个测试默认：
  - Celery eager 执行，on_commit 回调当场执行，create_notification 之后投递已经同步跑完
  - websocket / sms 换成 tests/fakes.py 里的记录型 adapter
  - email 走 Django 的 locmem backend，结果在 mail.outbox
"""
import pytest
import uuid
from datetime import timedelta

import factory
from django.apps import apps
from django.db import transaction
from django.utils import timezone
from rest_framework.test import APIClient

from config.celery import app as celery_app
from rxmarket.constants import RequestStatus, UserRole, Urgency
from rxmarket.models import Pharmacy, PrescriptionRequest, User
from rxmarket.notifications.service import NotificationService
from rxmarket.services import PrescriptionRequestService
from tests.fakes import RecordingSmsAdapter, RecordingWebSocketAdapter


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.Sequence(lambda n: f'user{n}-{uuid.uuid4().hex[:6]}')
    email = factory.LazyAttribute(lambda u: f'{u.username}@example.com')
    phone = factory.Sequence(lambda n: f'+1555{1000000 + n}')
    role = UserRole.PATIENT
    is_verified = True
    password = factory.django.Password('secret-pass')


class PatientFactory(UserFactory):
    role = UserRole.PATIENT


class PharmacistFactory(UserFactory):
    role = UserRole.PHARMACY


class AdminFactory(UserFactory):
    role = UserRole.ADMIN


class PharmacyFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Pharmacy

    owner = factory.SubFactory(PharmacistFactory)
    name = factory.Sequence(lambda n: f'Pharmacy {n}')
    is_active = True


class PrescriptionRequestFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PrescriptionRequest

    request_number = factory.Sequence(lambda n: f'PR{n:016d}')
    patient = factory.SubFactory(PatientFactory)
    medications = factory.LazyFunction(lambda: [{'name': 'Amoxicillin', 'quantity': 30, 'dosage': '500mg'}])
    status = RequestStatus.DRAFT
    urgency = Urgency.ROUTINE


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def notification_stack(settings):
    """eager Celery + 假通道。"""
    settings.NOTIFICATION_CHANNEL_BACKENDS = {
        'websocket': 'tests.fakes.RecordingWebSocketAdapter',
        'email': 'rxmarket.channels.adapters.EmailAdapter',
        'sms': 'tests.fakes.RecordingSmsAdapter',
    }
    settings.EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
    settings.NOTIFICATION_DELIVERY_TIMEOUT = 5
    settings.NOTIFICATION_DB_WAIT_TIMEOUT = 0
    settings.NOTIFICATION_DB_WAIT_INTERVAL = 0

    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True

    RecordingWebSocketAdapter.reset()
    RecordingSmsAdapter.reset()
    apps.get_app_config('rxmarket').reset_notification_service()
    yield
    apps.get_app_config('rxmarket').reset_notification_service()


@pytest.fixture(autouse=True)
def on_commit_runs_immediately(request, monkeypatch):
    """
    普通 django_db 测试包在一个最后回滚的事务里，on_commit 回调永远等不到提交。
    这里让回调当场执行，效果和 autocommit 下跑完一次请求一样。
    django_db(transaction=True) 的测试走真实提交，不打补丁。
    """
    marker = request.node.get_closest_marker('django_db')
    if marker and marker.kwargs.get('transaction'):
        return
    monkeypatch.setattr(transaction, 'on_commit', lambda func, using=None, robust=False: func())


@pytest.fixture
def notifier():
    return NotificationService()


@pytest.fixture
def request_service(notifier):
    return PrescriptionRequestService(notifier)


@pytest.fixture
def patient(db):
    return PatientFactory()


@pytest.fixture
def admin_user(db):
    return AdminFactory()


@pytest.fixture
def pharmacies(db):
    """三家药房，各自一个 owner。"""
    return [PharmacyFactory(name=name) for name in ('Alpha Pharmacy', 'Beta Pharmacy', 'Gamma Pharmacy')]


@pytest.fixture
def submitted_request(request_service, patient, pharmacies):
    """已提交给三家药房的请求。"""
    created = request_service.create_request(
        {'medications': [{'name': 'Lisinopril', 'quantity': 30, 'dosage': '10mg'}]}, patient,
    )
    request_service.submit_request(created.id, [str(p.id) for p in pharmacies], patient)
    created.refresh_from_db()
    return created


@pytest.fixture
def api_client():
    """DRF test client，用 force_authenticate 模拟登录。"""
    return APIClient()


@pytest.fixture
def client_for(api_client):
    def _client(user):
        api_client.force_authenticate(user=user)
        return api_client
    return _client


@pytest.fixture
def past():
    return timezone.now() - timedelta(minutes=1)
