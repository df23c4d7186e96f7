from decimal import Decimal

import pytest
from django.core.exceptions import PermissionDenied

from flexifee_system.calculator import PlanTerms
from flexifee_system.exceptions import ConcurrencyConflict, DependencyError, PreconditionError, ValidationError
from flexifee_system.gateways import DocumentStorage
from flexifee_system.models import AuditLog, BNPLApplication, BNPLSettings, PaymentRecord, Student
from flexifee_system.permissions import Actor
from flexifee_system.services import ApplicationService

from .factories import FlakyStorage, make_documents, verify_documents

pytestmark = pytest.mark.django_db


# =============================================================================
# SUBMIT
# =============================================================================

def test_submit_creates_pending_application_with_full_checklist(application, student, guardian):
    assert application.status == 'pending'
    assert application.reference.startswith('BNPL-')
    assert application.guardian == guardian
    assert application.institution == student.institution
    assert application.total_fee == Decimal('100000')
    assert application.down_payment == Decimal('25000')
    assert application.installment_amount == Decimal('12500')
    assert application.installment_count == 6
    assert application.approved_at is None
    assert application.rejection_reason is None

    documents = {d.document_type: d for d in application.documents.all()}
    assert len(documents) == 6
    for doc_type in ('cnic_front', 'cnic_back', 'bank_statement', 'salary_slip'):
        assert documents[doc_type].status == 'uploaded'
        assert documents[doc_type].uploaded_at is not None
        assert documents[doc_type].file.name.startswith(
            f"bnpl_documents/{application.reference}/{doc_type}/"
        )
    assert documents['utility_bills'].status == 'pending'
    assert documents['fee_voucher'].status == 'pending'
    assert not documents['fee_voucher'].file

    assert AuditLog.objects.filter(action='submit', record_id=str(application.pk)).exists()


def test_submit_requires_minimum_documents(parent_actor, student, terms):
    with pytest.raises(ValidationError) as exc:
        ApplicationService.submit(parent_actor, student, make_documents(('cnic_front', 'cnic_back', 'fee_voucher')), terms=terms)

    assert exc.value.field == 'documents'
    assert not BNPLApplication.objects.exists()


def test_submit_rejects_document_types_outside_checklist(parent_actor, student, terms):
    documents = make_documents()
    documents['passport'] = documents.pop('salary_slip')

    with pytest.raises(ValidationError):
        ApplicationService.submit(parent_actor, student, documents, terms=terms)


@pytest.mark.parametrize('fee', [0, -100])
def test_submit_rejects_non_positive_fee(parent_actor, student, terms, fee):
    with pytest.raises(ValidationError) as exc:
        ApplicationService.submit(parent_actor, student, make_documents(), total_fee=fee, terms=terms)
    assert exc.value.field == 'total_fee'


def test_submit_uses_settings_when_no_terms_given(parent_actor, student):
    student.annual_fee = Decimal('150000')
    student.save()

    # Default cap is 100000
    with pytest.raises(ValidationError):
        ApplicationService.submit(parent_actor, student, make_documents())

    application = ApplicationService.submit(parent_actor, student, make_documents(), total_fee=80000)
    assert application.down_payment == Decimal('20000')
    assert application.installment_amount == Decimal('10000')


def test_submit_snapshots_terms(parent_actor, student):
    terms = PlanTerms(down_payment_ratio='0.30', installment_count=4)
    application = ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)

    settings = BNPLSettings.get_instance()
    settings.down_payment_percentage = 10
    settings.installment_count = 12
    settings.save()

    application.refresh_from_db()
    assert application.down_payment_percentage == Decimal('30.00')
    assert application.down_payment == Decimal('30000')
    assert application.installment_count == 4
    assert application.installment_amount == Decimal('17500')


def test_only_one_active_application_per_student(application, parent_actor, student, terms):
    with pytest.raises(PreconditionError):
        ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)


def test_new_application_allowed_after_rejection(application, parent_actor, school_actor, student, terms):
    ApplicationService.reject(school_actor, application, 'Income insufficient')

    second = ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)
    assert second.pk != application.pk
    assert second.status == 'pending'


def test_inactive_student_cannot_apply(parent_actor, student, terms):
    student.status = 'inactive'
    student.save()

    with pytest.raises(PreconditionError):
        ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)


def test_only_the_owning_guardian_can_submit(other_parent_user, school_actor, admin_actor, student, terms):
    for actor in (Actor.from_user(other_parent_user), school_actor, admin_actor):
        with pytest.raises(PermissionDenied):
            ApplicationService.submit(actor, student, make_documents(), terms=terms)


# =============================================================================
# APPROVE
# =============================================================================

def test_approve_after_all_documents_verified(application, school_actor):
    """Fee 100000 -> 25000 down, 6 x 12500, seven dues summing to the fee"""
    verify_documents(application, school_actor)
    assert ApplicationService.is_approvable(application)

    ApplicationService.approve(school_actor, application)

    application.refresh_from_db()
    assert application.status == 'approved'
    assert application.approved_at is not None
    assert application.decided_by == school_actor.user
    assert application.version == 1

    payments = list(application.payments.all())
    assert len(payments) == 7
    assert sum(p.amount for p in payments) == Decimal('100000')
    assert payments[0].kind == 'down_payment'
    assert payments[0].amount == Decimal('25000')
    assert [p.installment_index for p in payments[1:]] == [1, 2, 3, 4, 5, 6]
    assert all(p.amount == Decimal('12500') for p in payments[1:])
    assert all(p.status == 'pending' for p in payments)


def test_approve_fails_while_a_document_is_unverified(application, school_actor):
    verify_documents(application, school_actor, leave=1)

    with pytest.raises(PreconditionError):
        ApplicationService.approve(school_actor, application)

    application.refresh_from_db()
    assert application.status == 'pending'
    assert application.approved_at is None
    assert not PaymentRecord.objects.filter(application=application).exists()


def test_approve_fails_with_nothing_verified(application, admin_actor):
    with pytest.raises(PreconditionError):
        ApplicationService.approve(admin_actor, application)


def test_admin_can_approve_any_school(application, admin_actor):
    verify_documents(application, admin_actor)
    ApplicationService.approve(admin_actor, application)
    assert application.status == 'approved'


def test_other_school_and_parent_cannot_approve(application, school_actor, parent_actor, other_school_user):
    verify_documents(application, school_actor)

    for actor in (parent_actor, Actor.from_user(other_school_user)):
        with pytest.raises(PermissionDenied):
            ApplicationService.approve(actor, application)

    application.refresh_from_db()
    assert application.status == 'pending'


# =============================================================================
# REJECT
# =============================================================================

@pytest.mark.parametrize('reason', ['', '   ', None, '\n\t'])
def test_reject_requires_reason(application, school_actor, reason):
    with pytest.raises(ValidationError):
        ApplicationService.reject(school_actor, application, reason)

    application.refresh_from_db()
    assert application.status == 'pending'


def test_reject_stores_exact_reason(application, school_actor):
    with pytest.raises(ValidationError):
        ApplicationService.reject(school_actor, application, '')

    ApplicationService.reject(school_actor, application, 'Income insufficient')

    application.refresh_from_db()
    assert application.status == 'rejected'
    assert application.rejection_reason == 'Income insufficient'
    assert application.approved_at is None
    assert AuditLog.objects.filter(action='reject', table_affected='BNPLApplication').exists()


# =============================================================================
# TERMINAL STATES AND CONCURRENCY
# =============================================================================

def test_terminal_states_are_final(approved_application, school_actor, parent_actor, student, terms):
    with pytest.raises(PreconditionError):
        ApplicationService.reject(school_actor, approved_application, 'Changed our mind')
    with pytest.raises(PreconditionError):
        ApplicationService.approve(school_actor, approved_application)

    other = Student.objects.create(
        institution=student.institution, guardian=student.guardian, name='Sara Khan',
        class_grade='Grade 2', roll_number='R-102', annual_fee=Decimal('60000'),
    )
    rejected = ApplicationService.submit(parent_actor, other, make_documents(), terms=terms)
    ApplicationService.reject(school_actor, rejected, 'Incomplete income proof')

    with pytest.raises(PreconditionError):
        ApplicationService.approve(school_actor, rejected)
    with pytest.raises(PreconditionError):
        ApplicationService.reject(school_actor, rejected, 'Again')


def test_stale_copy_cannot_overwrite_a_decision(application, school_actor, admin_actor):
    verify_documents(application, school_actor)
    stale = BNPLApplication.objects.get(pk=application.pk)

    ApplicationService.approve(school_actor, application)

    with pytest.raises(ConcurrencyConflict):
        ApplicationService.reject(admin_actor, stale, 'Too late')

    stale.refresh_from_db()
    assert stale.status == 'approved'
    assert stale.rejection_reason is None


def test_double_approve_with_stale_copy_creates_one_schedule(application, school_actor):
    verify_documents(application, school_actor)
    first = BNPLApplication.objects.get(pk=application.pk)
    second = BNPLApplication.objects.get(pk=application.pk)

    ApplicationService.approve(school_actor, first)
    with pytest.raises(ConcurrencyConflict):
        ApplicationService.approve(school_actor, second)

    assert PaymentRecord.objects.filter(application=application).count() == 7


def test_visible_to_scopes_by_role(application, parent_actor, school_actor, admin_actor,
                                   other_school_user, other_parent_user):
    assert list(ApplicationService.visible_to(admin_actor)) == [application]
    assert list(ApplicationService.visible_to(school_actor)) == [application]
    assert list(ApplicationService.visible_to(parent_actor)) == [application]
    assert not ApplicationService.visible_to(Actor.from_user(other_school_user)).exists()
    assert not ApplicationService.visible_to(Actor.from_user(other_parent_user)).exists()


def test_fractional_fee_is_rejected_not_rounded(parent_actor, student, terms):
    student.annual_fee = Decimal('50000.50')
    student.save()

    with pytest.raises(ValidationError) as exc:
        ApplicationService.submit(parent_actor, student, make_documents(), terms=terms)

    assert exc.value.field == 'total_fee'
    assert not BNPLApplication.objects.exists()


def test_storage_failure_midway_removes_files_already_stored(parent_actor, student, terms):
    backend = FlakyStorage(allowed=2)

    with pytest.raises(DependencyError):
        ApplicationService.submit(
            parent_actor, student, make_documents(), terms=terms, storage=DocumentStorage(backend)
        )

    assert len(backend.saved) == 2
    assert not any(backend.exists(name) for name in backend.saved)
    assert not BNPLApplication.objects.exists()


def test_failed_commit_removes_stored_files(parent_actor, student, terms, monkeypatch):
    backend = FlakyStorage()

    def already_applied(*args, **kwargs):
        raise PreconditionError(f"Student {student} already has an active application")

    monkeypatch.setattr(ApplicationService, '_create', already_applied)
    with pytest.raises(PreconditionError):
        ApplicationService.submit(
            parent_actor, student, make_documents(), terms=terms, storage=DocumentStorage(backend)
        )

    assert len(backend.saved) == 4
    assert not any(backend.exists(name) for name in backend.saved)
