# flexifee_system/services.py

"""
BNPL Lifecycle Services

Applications, document checklists and payment records move through their
states only through the services below. Every transition:

- checks the actor's authorization against the entity it touches
- validates input, then checks the current state
- talks to storage or the payment gateway (if needed) before committing
- commits with a conditional update on (pk, version), so a stale read raises
  ConcurrencyConflict instead of overwriting someone else's decision
- writes an AuditLog row
"""

from datetime import timedelta

from django.core.exceptions import PermissionDenied
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
import logging

from .calculator import FeeBreakdown, calculate_breakdown, validate_total_fee
from .exceptions import ConcurrencyConflict, PreconditionError, ValidationError
from .gateways import DocumentStorage, charge, get_payment_gateway, new_transaction_reference
from .models import (
    AuditLog, BNPLApplication, BNPLSettings, Guardian, Institution, PaymentRecord,
    RequiredDocument, Student, User,
)
from .permissions import Actor, require
from .schedule import build_schedule, derive_status

logger = logging.getLogger(__name__)


def _transition(instance, expected, **changes):
    """
    Apply ``changes`` only if the row still matches ``expected`` and the
    version we read. Bumps the version on success.
    """
    model = type(instance)
    updated = model.objects.filter(
        pk=instance.pk, version=instance.version, **expected
    ).update(version=F('version') + 1, **changes)

    if not updated:
        logger.warning(f"Concurrent change detected on {model.__name__} {instance.pk}")
        raise ConcurrencyConflict(
            f"{model.__name__} {instance.pk} was changed by someone else. Reload it and try again."
        )

    for field, value in changes.items():
        setattr(instance, field, value)
    instance.version += 1
    return instance


def _audit(actor, action, instance, description):
    AuditLog.objects.create(
        user=getattr(actor, 'user', None),
        action=action,
        table_affected=type(instance).__name__,
        record_id=str(instance.pk),
        description=description,
        ip_address=getattr(actor, 'ip_address', None),
    )


def _clean_reason(reason, what):
    if reason is None or not str(reason).strip():
        raise ValidationError(f"A rejection reason is required to reject {what}", field='reason')
    return reason


def _current_terms(terms):
    return terms or BNPLSettings.get_instance().terms()


# =============================================================================
# APPLICATION SERVICE
# =============================================================================

class ApplicationService:
    """
    pending -> approved | rejected. Both outcomes are final.
    """

    @staticmethod
    def submit(actor, student, documents, total_fee=None, terms=None, now=None, storage=None):
        """
        File a new application for ``student``.

        Args:
            actor: parent Actor owning the student
            student: Student instance
            documents (dict): document_type -> uploaded file, for the
                documents attached at submission
            total_fee: defaults to the student's annual fee
            terms: PlanTerms, defaults to the current BNPL settings

        Returns:
            BNPLApplication in ``pending``
        """
        require(actor.owns_student(student), "Only the student's guardian can apply for a plan")

        terms = _current_terms(terms)
        now = now or timezone.now()
        documents = {doc_type: f for doc_type, f in (documents or {}).items() if f}

        unknown = [t for t in documents if t not in terms.required_document_types]
        if unknown:
            raise ValidationError(
                f"Unknown document type(s): {', '.join(sorted(unknown))}", field='documents'
            )
        if len(documents) < terms.minimum_documents:
            raise ValidationError(
                f"Please upload at least {terms.minimum_documents} required documents "
                f"({len(documents)} attached)",
                field='documents'
            )

        amount = validate_total_fee(student.annual_fee if total_fee is None else total_fee, terms)

        if student.status != 'active':
            raise PreconditionError(f"Student {student} is not active")
        existing = student.active_application
        if existing:
            raise PreconditionError(
                f"Student {student} already has an active application ({existing.reference})"
            )

        breakdown = calculate_breakdown(amount, terms)
        reference = BNPLApplication.generate_reference(now)

        storage = storage or DocumentStorage()
        stored = {}
        try:
            for doc_type, f in documents.items():
                stored[doc_type] = storage.save(reference, doc_type, f)
            application = ApplicationService._create(
                actor, student, reference, breakdown, terms, stored, now
            )
        except Exception:
            # Nothing was committed, so the files stored so far belong to no one
            for name in stored.values():
                storage.delete(name)
            raise

        logger.info(
            f"Application {application.reference} submitted: total {breakdown.total_fee}, "
            f"down {breakdown.down_payment}, {breakdown.installment_count} x {breakdown.installment_amount}"
        )
        return application

    @staticmethod
    def _create(actor, student, reference, breakdown, terms, stored, now):
        with transaction.atomic():
            # Serializes concurrent submissions for the same student
            Student.objects.select_for_update().filter(pk=student.pk).first()
            if student.active_application:
                raise PreconditionError(f"Student {student} already has an active application")

            application = BNPLApplication.objects.create(
                reference=reference,
                student=student,
                guardian_id=student.guardian_id,
                institution_id=student.institution_id,
                status='pending',
                total_fee=breakdown.total_fee,
                down_payment=breakdown.down_payment,
                installment_amount=breakdown.installment_amount,
                installment_count=breakdown.installment_count,
                down_payment_percentage=terms.down_payment_percentage,
                applied_at=now,
            )

            RequiredDocument.objects.bulk_create([
                RequiredDocument(
                    application=application,
                    document_type=doc_type,
                    status='uploaded' if doc_type in stored else 'pending',
                    file=stored.get(doc_type),
                    uploaded_at=now if doc_type in stored else None,
                )
                for doc_type in terms.required_document_types
            ])

            _audit(actor, 'submit', application,
                   f"Application {application.reference} submitted for {student} "
                   f"with {len(stored)} document(s)")
        return application

    @staticmethod
    def is_approvable(application):
        if application.status != 'pending':
            return False
        statuses = list(application.documents.values_list('status', flat=True))
        return bool(statuses) and all(s == 'verified' for s in statuses)

    @staticmethod
    def approve(actor, application, now=None):
        """
        Approve a pending application whose documents are all verified and
        generate its payment schedule.
        """
        require(actor.can_review(application), "Only the school or an administrator can approve")
        now = now or timezone.now()

        if application.status != 'pending':
            raise PreconditionError(
                f"Application {application.reference} is already {application.status}"
            )

        with transaction.atomic():
            documents = list(application.documents.select_for_update())
            unverified = [d.get_document_type_display() for d in documents if d.status != 'verified']
            if not documents or unverified:
                raise PreconditionError(
                    "All documents must be verified before approval. "
                    f"Not verified: {', '.join(unverified) or 'no documents on file'}"
                )

            _transition(
                application, {'status': 'pending'},
                status='approved', approved_at=now, decided_by=getattr(actor, 'user', None),
                last_updated=now,
            )

            breakdown = FeeBreakdown(
                application.total_fee, application.down_payment,
                application.installment_amount, application.installment_count,
            )
            PaymentRecord.objects.bulk_create([
                PaymentRecord(
                    application=application,
                    kind=due.kind,
                    installment_index=due.installment_index,
                    amount=due.amount,
                    due_date=due.due_date,
                    status='pending',
                )
                for due in build_schedule(breakdown, now)
            ])

            _audit(actor, 'approve', application, f"Application {application.reference} approved")

        logger.info(f"Application {application.reference} approved by {actor}")
        return application

    @staticmethod
    def reject(actor, application, reason, now=None):
        require(actor.can_review(application), "Only the school or an administrator can reject")
        reason = _clean_reason(reason, 'an application')
        now = now or timezone.now()

        if application.status != 'pending':
            raise PreconditionError(
                f"Application {application.reference} is already {application.status}"
            )

        with transaction.atomic():
            _transition(
                application, {'status': 'pending'},
                status='rejected', rejection_reason=reason,
                decided_by=getattr(actor, 'user', None), last_updated=now,
            )
            _audit(actor, 'reject', application,
                   f"Application {application.reference} rejected: {reason}")

        logger.info(f"Application {application.reference} rejected by {actor}")
        return application

    @staticmethod
    def visible_to(actor):
        applications = BNPLApplication.objects.select_related('student', 'guardian', 'institution')
        if actor.is_admin:
            return applications
        if actor.is_school:
            return applications.filter(institution_id=actor.institution_id)
        return applications.filter(guardian_id=actor.guardian_id)


# =============================================================================
# DOCUMENT SERVICE
# =============================================================================

class DocumentService:
    """
    pending -> uploaded -> verified | rejected, and rejected -> uploaded on
    re-upload. Documents are frozen once the application is decided.
    """

    @staticmethod
    def _check_open(document):
        application = document.application
        if application.status != 'pending':
            raise PreconditionError(
                f"Documents of {application.status} application {application.reference} cannot change"
            )
        return application

    @staticmethod
    def upload(actor, document, file, now=None, storage=None):
        application = document.application
        require(actor.can_upload(application), "You cannot upload documents for this application")
        if not file:
            raise ValidationError("A file is required", field='file')

        DocumentService._check_open(document)
        if document.status not in ('pending', 'rejected'):
            raise PreconditionError(
                f"{document.get_document_type_display()} is already {document.status}"
            )

        now = now or timezone.now()
        storage = storage or DocumentStorage()
        previous = document.file.name if document.file else None
        stored = storage.save(application.reference, document.document_type, file)

        try:
            with transaction.atomic():
                _transition(
                    document, {'status': document.status},
                    status='uploaded', file=stored, uploaded_at=now,
                    rejection_reason=None, verified_at=None,
                )
                _audit(actor, 'upload', document,
                       f"{document.get_document_type_display()} uploaded for {application.reference}")
                if previous and previous != stored:
                    # The replaced file stays on disk until the new one is on record
                    transaction.on_commit(lambda: storage.delete(previous))
        except Exception:
            storage.delete(stored)
            raise

        logger.info(f"{document.document_type} uploaded for {application.reference}")
        return document

    @staticmethod
    def verify(actor, document, now=None):
        application = document.application
        require(actor.can_review(application), "Only the school or an administrator can verify documents")
        DocumentService._check_open(document)
        if document.status != 'uploaded':
            raise PreconditionError(
                f"Only uploaded documents can be verified; "
                f"{document.get_document_type_display()} is {document.status}"
            )

        now = now or timezone.now()
        with transaction.atomic():
            _transition(document, {'status': 'uploaded'}, status='verified', verified_at=now)
            _audit(actor, 'verify', document,
                   f"{document.get_document_type_display()} verified for {application.reference}")

        logger.info(f"{document.document_type} verified for {application.reference}")
        return document

    @staticmethod
    def reject(actor, document, reason, now=None):
        application = document.application
        require(actor.can_review(application), "Only the school or an administrator can reject documents")
        reason = _clean_reason(reason, 'a document')
        DocumentService._check_open(document)
        if document.status != 'uploaded':
            raise PreconditionError(
                f"Only uploaded documents can be rejected; "
                f"{document.get_document_type_display()} is {document.status}"
            )

        with transaction.atomic():
            _transition(document, {'status': 'uploaded'}, status='rejected', rejection_reason=reason)
            _audit(actor, 'reject', document,
                   f"{document.get_document_type_display()} rejected for {application.reference}: {reason}")

        logger.info(f"{document.document_type} rejected for {application.reference}")
        return document

    @staticmethod
    def checklist_progress(application):
        documents = list(application.documents.all())
        counts = {status: 0 for status, _ in RequiredDocument.DOCUMENT_STATUS}
        for document in documents:
            counts[document.status] += 1
        total = len(documents)
        return {
            'total': total,
            'counts': counts,
            'verified_percentage': round(counts['verified'] * 100 / total, 1) if total else 0,
            'approvable': ApplicationService.is_approvable(application),
        }


# =============================================================================
# PAYMENT SERVICE
# =============================================================================

class PaymentService:
    """
    pending -> paid. overdue is derived from due_date, never written by a
    payer; the stored column is only a cache refreshed by reconcile_overdue.
    """

    @staticmethod
    def _check_payable(actor, record, method, now):
        application = record.application
        require(actor.can_pay(application), "Only the guardian on the plan can pay it")
        if method not in dict(PaymentRecord.PAYMENT_METHODS):
            raise ValidationError(f"Unsupported payment method '{method}'", field='payment_method')
        if application.status != 'approved':
            raise PreconditionError(f"Application {application.reference} is not approved")
        if derive_status(record, now) == 'paid':
            raise PreconditionError(
                f"{record.label} was already paid (transaction {record.transaction_reference})"
            )

    @staticmethod
    def pay(actor, record, method, reference, now=None):
        """
        Record a payment confirmed by the gateway. Call only after the money
        has moved.
        """
        now = now or timezone.now()
        PaymentService._check_payable(actor, record, method, now)
        if reference is None or not str(reference).strip():
            raise ValidationError("A transaction reference is required", field='transaction_reference')

        if PaymentRecord.objects.filter(transaction_reference=reference).exclude(pk=record.pk).exists():
            raise PreconditionError(f"Transaction reference {reference} was already used")

        try:
            with transaction.atomic():
                _transition(
                    record, {'paid_date__isnull': True},
                    status='paid', paid_date=now, payment_method=method,
                    transaction_reference=reference,
                )
                _audit(actor, 'pay', record,
                       f"{record.label} of {record.amount} paid for "
                       f"{record.application.reference} via {method} ({reference})")
        except IntegrityError:
            raise PreconditionError(f"Transaction reference {reference} was already used")
        except ConcurrencyConflict:
            # A double submit that lost the race sees the winner's payment
            current = PaymentRecord.objects.get(pk=record.pk)
            if current.paid_date is not None:
                raise PreconditionError(
                    f"{record.label} was already paid (transaction {current.transaction_reference})"
                )
            raise

        logger.info(f"{record.label} paid for {record.application.reference} ({reference})")
        return record

    @staticmethod
    def collect(actor, record, method, credentials=None, reference=None, now=None, gateway=None):
        """
        Charge through the payment gateway and record the outcome. A gateway
        failure raises DependencyError and leaves the record unpaid; retry
        with the same ``reference``.
        """
        now = now or timezone.now()
        PaymentService._check_payable(actor, record, method, now)

        reference = reference or new_transaction_reference()
        gateway = gateway or get_payment_gateway()
        confirmed = charge(gateway, record.amount, method, reference, credentials)
        return PaymentService.pay(actor, record, method, confirmed, now=now)

    @staticmethod
    def reconcile_overdue(now=None):
        """Refresh the cached status column. Returns the number of records changed."""
        now = now or timezone.now()
        today = timezone.localdate(now) if timezone.is_aware(now) else now.date()
        unpaid = PaymentRecord.objects.filter(paid_date__isnull=True)

        with transaction.atomic():
            overdue = unpaid.filter(due_date__lt=today).exclude(status='overdue').update(status='overdue')
            current = unpaid.filter(due_date__gte=today, status='overdue').update(status='pending')
            if overdue or current:
                AuditLog.objects.create(
                    action='reconcile',
                    table_affected='PaymentRecord',
                    description=f"{overdue} payment(s) marked overdue, {current} back to pending",
                )

        if overdue or current:
            logger.info(f"Reconciled payments: {overdue} overdue, {current} pending")
        return overdue + current

    @staticmethod
    def reminders_due(now=None, days=None):
        """
        Unpaid dues of approved plans falling within the reminder window:
        from today up to ``days`` ahead (BNPL settings by default).
        """
        now = now or timezone.now()
        if days is None:
            days = BNPLSettings.get_instance().payment_reminder_days
        today = timezone.localdate(now) if timezone.is_aware(now) else now.date()
        return PaymentRecord.objects.filter(
            application__status='approved',
            paid_date__isnull=True,
            due_date__gte=today,
            due_date__lte=today + timedelta(days=days),
        ).select_related('application__guardian', 'application__student').order_by('due_date', 'pk')

    @staticmethod
    def upcoming_for_guardian(guardian, now=None):
        now = now or timezone.now()
        records = PaymentRecord.objects.filter(
            application__guardian=guardian,
            application__status='approved',
            paid_date__isnull=True,
        ).select_related('application__student').order_by('due_date', 'pk')
        return [(record, derive_status(record, now)) for record in records]

    @staticmethod
    def history_for_guardian(guardian):
        return PaymentRecord.objects.filter(
            application__guardian=guardian, paid_date__isnull=False
        ).select_related('application__student').order_by('-paid_date')


# =============================================================================
# ENROLLMENT
# =============================================================================

class EnrollmentService:

    @staticmethod
    @transaction.atomic
    def enroll_student(actor, data, institution=None):
        """
        Add a student to a school. Guardian details, when given, are matched
        to an existing guardian by email or phone, or a new guardian is created.
        """
        if actor.is_school:
            institution_id = actor.institution_id
        elif actor.is_admin and institution is not None:
            institution_id = institution.pk
        else:
            raise PermissionDenied("Only a school or an administrator can enroll students")

        if Student.objects.filter(institution_id=institution_id, roll_number=data['roll_number']).exists():
            raise ValidationError(
                f"Roll number {data['roll_number']} is already used in this school", field='roll_number'
            )

        guardian = None
        guardian_email = data.get('guardian_email')
        guardian_phone = data.get('guardian_phone')
        if data.get('guardian_name'):
            if guardian_email:
                guardian = Guardian.objects.filter(email__iexact=guardian_email).first()
            if guardian is None and guardian_phone:
                guardian = Guardian.objects.filter(phone_number=guardian_phone).first()
            if guardian is None:
                guardian = Guardian.objects.create(
                    name=data['guardian_name'],
                    email=guardian_email or None,
                    phone_number=guardian_phone or None,
                )
                logger.info(f"Created guardian {guardian.name} while enrolling {data['name']}")

        student = Student.objects.create(
            institution_id=institution_id,
            guardian=guardian,
            name=data['name'],
            class_grade=data['class_grade'],
            roll_number=data['roll_number'],
            annual_fee=data['annual_fee'],
        )
        _audit(actor, 'create', student, f"Student {student} enrolled")
        return student


# =============================================================================
# ACCOUNTS
# =============================================================================

class AccountService:

    @staticmethod
    @transaction.atomic
    def register(data, ip_address=None):
        """
        Create a school or parent account from validated registration data.

        A school gets a new active Institution with the registrant as
        principal. A parent is linked to the guardian record a school already
        created for their email, or gets a new one.
        """
        first_name, _, last_name = data['name'].strip().partition(' ')
        user = User.objects.create_user(
            username=data['username'],
            email=data['email'],
            password=data['password'],
            first_name=first_name,
            last_name=last_name,
            user_type=data['user_type'],
            phone_number=data.get('phone_number') or '',
        )

        if data['user_type'] == 'school':
            institution = Institution.objects.create(
                name=data.get('school_name') or data['name'],
                email=data['email'],
                phone_number=data.get('phone_number') or None,
                address=data.get('address') or None,
                city=data.get('city') or None,
                principal_name=data['name'],
                status='active',
            )
            user.institution = institution
            user.save(update_fields=['institution'])
            profile = institution
        else:
            profile = Guardian.objects.filter(user__isnull=True, email__iexact=data['email']).first()
            if profile is None:
                profile = Guardian.objects.create(
                    user=user,
                    name=data['name'],
                    email=data['email'],
                    phone_number=data.get('phone_number') or None,
                )
            else:
                profile.user = user
                profile.save(update_fields=['user'])
                logger.info(f"Linked new account {user.username} to guardian {profile.name}")

        actor = Actor.from_user(user)
        actor.ip_address = ip_address
        _audit(actor, 'create', profile, f"{user.get_user_type_display()} account {user.username} registered")
        logger.info(f"Registered {user.user_type} account {user.username}")
        return user

    @staticmethod
    def update_profile(actor, form):
        """Save a GuardianProfileForm for the parent's own guardian record"""
        guardian = form.instance
        require(actor.is_parent and guardian.pk == actor.guardian_id, "You can only edit your own profile")

        with transaction.atomic():
            guardian = form.save()
            user = guardian.user
            if user is not None:
                user.email = guardian.email or ''
                user.phone_number = guardian.phone_number or user.phone_number
                user.save(update_fields=['email', 'phone_number'])
            _audit(actor, 'update', guardian, "Updated profile information")

        logger.info(f"Guardian {guardian.pk} updated their profile")
        return guardian
