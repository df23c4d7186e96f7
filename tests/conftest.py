from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from flexifee_system.calculator import PlanTerms
from flexifee_system.models import Guardian, Institution, Student, User
from flexifee_system.permissions import Actor
from flexifee_system.services import ApplicationService

from .factories import make_documents, verify_documents


@pytest.fixture(autouse=True)
def in_memory_storage(settings):
    settings.STORAGES = {
        'default': {'BACKEND': 'django.core.files.storage.InMemoryStorage'},
        'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
    }
    settings.BNPL_MOCK_GATEWAY_DELAY = 0
    settings.BNPL_GATEWAY_TIMEOUT = 5
    settings.BNPL_STORAGE_TIMEOUT = 5


@pytest.fixture
def terms():
    return PlanTerms()


@pytest.fixture
def institution(db):
    return Institution.objects.create(name='The City School', city='Lahore')


@pytest.fixture
def other_institution(db):
    return Institution.objects.create(name='Allied School', city='Multan')


@pytest.fixture
def parent_user(db):
    user = User.objects.create_user(username='parent', password='secret-pass-123', user_type='parent')
    Guardian.objects.create(user=user, name='Ayesha Khan', email='ayesha@example.com')
    return user


@pytest.fixture
def guardian(parent_user):
    return parent_user.guardian_profile


@pytest.fixture
def other_parent_user(db):
    user = User.objects.create_user(username='other-parent', password='secret-pass-123', user_type='parent')
    Guardian.objects.create(user=user, name='Bilal Ahmed')
    return user


@pytest.fixture
def school_user(institution):
    return User.objects.create_user(
        username='school', password='secret-pass-123', user_type='school', institution=institution
    )


@pytest.fixture
def other_school_user(other_institution):
    return User.objects.create_user(
        username='other-school', password='secret-pass-123', user_type='school',
        institution=other_institution
    )


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(username='admin', password='secret-pass-123', user_type='admin')


@pytest.fixture
def parent_actor(parent_user):
    return Actor.from_user(parent_user)


@pytest.fixture
def school_actor(school_user):
    return Actor.from_user(school_user)


@pytest.fixture
def admin_actor(admin_user):
    return Actor.from_user(admin_user)


@pytest.fixture
def student(institution, guardian):
    return Student.objects.create(
        institution=institution, guardian=guardian, name='Hamza Khan',
        class_grade='Grade 5', roll_number='R-101', annual_fee=Decimal('100000'),
    )


@pytest.fixture
def application(parent_actor, student, terms):
    return ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)


@pytest.fixture
def approved_application(application, school_actor):
    verify_documents(application, school_actor)
    return ApplicationService.approve(school_actor, application)


@pytest.fixture
def yesterday():
    return timezone.localdate() - timedelta(days=1)
