from decimal import Decimal
from io import StringIO

import pytest
from django.core.exceptions import PermissionDenied
from django.core.management import call_command
from django.contrib.auth.models import AnonymousUser

from flexifee_system.exceptions import ValidationError
from flexifee_system.models import AuditLog, Guardian, Institution, User
from flexifee_system.permissions import Actor
from flexifee_system.services import EnrollmentService

pytestmark = pytest.mark.django_db


def enrollment(**overrides):
    data = {
        'name': 'Usman Ali',
        'class_grade': 'Grade 3',
        'roll_number': 'R-300',
        'annual_fee': Decimal('72000'),
        'guardian_name': '',
        'guardian_email': '',
        'guardian_phone': '',
    }
    data.update(overrides)
    return data


def test_school_enrolls_into_its_own_institution(school_actor, institution):
    student = EnrollmentService.enroll_student(school_actor, enrollment())

    assert student.institution == institution
    assert student.guardian is None
    assert student.status == 'active'
    assert AuditLog.objects.filter(action='create', table_affected='Student').exists()


def test_admin_must_name_the_institution(admin_actor, other_institution):
    with pytest.raises(PermissionDenied):
        EnrollmentService.enroll_student(admin_actor, enrollment())

    student = EnrollmentService.enroll_student(admin_actor, enrollment(), institution=other_institution)
    assert student.institution == other_institution


def test_parent_cannot_enroll(parent_actor):
    with pytest.raises(PermissionDenied):
        EnrollmentService.enroll_student(parent_actor, enrollment())


def test_roll_numbers_are_unique_per_school(school_actor, student, other_school_user):
    with pytest.raises(ValidationError) as exc:
        EnrollmentService.enroll_student(school_actor, enrollment(roll_number=student.roll_number))
    assert exc.value.field == 'roll_number'

    other = EnrollmentService.enroll_student(
        Actor.from_user(other_school_user), enrollment(roll_number=student.roll_number)
    )
    assert other.roll_number == student.roll_number


def test_guardian_matched_by_email_then_phone(school_actor, guardian):
    guardian.phone_number = '03001234567'
    guardian.save()

    by_email = EnrollmentService.enroll_student(
        school_actor, enrollment(roll_number='R-301', guardian_name='A. Khan', guardian_email='Ayesha@Example.com')
    )
    by_phone = EnrollmentService.enroll_student(
        school_actor, enrollment(roll_number='R-302', guardian_name='Ayesha', guardian_phone='03001234567')
    )

    assert by_email.guardian == guardian
    assert by_phone.guardian == guardian
    assert Guardian.objects.count() == 1


def test_new_guardian_created_when_unknown(school_actor):
    student = EnrollmentService.enroll_student(
        school_actor, enrollment(guardian_name='Farah Malik', guardian_phone='03111234567')
    )

    assert student.guardian.name == 'Farah Malik'
    assert student.guardian.email is None
    assert student.guardian.user is None


# =============================================================================
# ACTORS
# =============================================================================

def test_actor_from_user_roles(parent_user, school_user, admin_user, guardian, institution):
    assert Actor.from_user(parent_user).guardian_id == guardian.pk
    assert Actor.from_user(school_user).institution_id == institution.pk
    assert Actor.from_user(admin_user).is_admin


def test_superuser_is_admin(db):
    user = User.objects.create_superuser(username='root', password='secret-pass-123', email='root@example.com')
    assert Actor.from_user(user).is_admin


def test_unusable_accounts_are_denied(db):
    school = User.objects.create_user(username='lost-school', password='secret-pass-123', user_type='school')

    with pytest.raises(PermissionDenied):
        Actor.from_user(AnonymousUser())
    with pytest.raises(PermissionDenied):
        Actor.from_user(school)


# =============================================================================
# SEEDING
# =============================================================================

def test_seed_schools_is_idempotent(db):
    out = StringIO()
    call_command('seed_schools', '--city', 'Karachi', stdout=out)

    assert Institution.objects.count() == 8
    assert set(Institution.objects.values_list('city', flat=True)) == {'Karachi'}
    assert 'Added The City School' in out.getvalue()

    out = StringIO()
    call_command('seed_schools', stdout=out)
    assert Institution.objects.count() == 8
    assert 'Skipped The City School' in out.getvalue()
