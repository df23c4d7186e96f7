from django.contrib.auth import login
from django.contrib.auth.decorators import login_required, user_passes_test
from django.core.exceptions import PermissionDenied
from django.core.paginator import Paginator
from django.db.models import Q
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from functools import wraps
import json
import logging

from .calculator import calculate_breakdown, validate_total_fee
from .exceptions import BNPLError
from .forms import (
    ApplicationSubmitForm, BNPLSettingsForm, DocumentUploadForm, EnrollmentForm, GuardianProfileForm,
    InstitutionForm, PaymentForm, RegistrationForm, RejectionForm, StudentForm,
)
from .models import (
    AuditLog, BNPLApplication, BNPLSettings, Guardian, Institution, PaymentRecord, RequiredDocument,
    Student,
)
from .permissions import Actor, is_admin, is_admin_or_school, is_parent
from .schedule import derive_status
from .services import (
    AccountService, ApplicationService, DocumentService, EnrollmentService, PaymentService,
)
from .stats import get_dashboard_statistics

logger = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def get_client_ip(request):
    """Get client IP address"""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR')
    return ip or None


def api_view(view):
    """
    Resolve the caller's Actor and turn domain errors into JSON responses.
    Anything else propagates to Django's error handling.
    """
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            actor = Actor.from_user(request.user)
            actor.ip_address = get_client_ip(request)
            return view(request, actor, *args, **kwargs)
        except BNPLError as e:
            logger.warning(f"{view.__name__} rejected: {e.message}")
            payload = {'success': False, 'error': e.message, 'retryable': e.retryable}
            if getattr(e, 'field', None):
                payload['field'] = e.field
            return JsonResponse(payload, status=e.status_code)
        except PermissionDenied as e:
            return JsonResponse({'success': False, 'error': str(e) or 'Permission denied'}, status=403)
        except json.JSONDecodeError:
            return JsonResponse({'success': False, 'error': 'Invalid JSON data'}, status=400)
    return wrapper


def request_data(request):
    if request.content_type == 'application/json':
        return json.loads(request.body or b'{}')
    return request.POST


def form_errors(form):
    return JsonResponse({'success': False, 'errors': form.errors.get_json_data()}, status=400)


def serialize_institution(institution):
    return {
        'id': institution.id,
        'name': institution.name,
        'email': institution.email or '',
        'phone_number': institution.phone_number or '',
        'address': institution.address or '',
        'city': institution.city or '',
        'principal_name': institution.principal_name or '',
        'status': institution.status,
    }


def serialize_student(student):
    return {
        'id': student.id,
        'name': student.name,
        'class_grade': student.class_grade,
        'roll_number': student.roll_number,
        'annual_fee': str(student.annual_fee),
        'status': student.status,
        'institution': student.institution_id,
        'guardian': student.guardian.name if student.guardian else None,
    }


def serialize_document(document):
    return {
        'id': document.id,
        'type': document.document_type,
        'name': document.get_document_type_display(),
        'status': document.status,
        'file': document.file.name if document.file else None,
        'uploaded_at': document.uploaded_at.isoformat() if document.uploaded_at else None,
        'verified_at': document.verified_at.isoformat() if document.verified_at else None,
        'rejection_reason': document.rejection_reason,
        'version': document.version,
    }


def serialize_payment(record, now=None):
    return {
        'id': record.id,
        'label': record.label,
        'kind': record.kind,
        'installment_index': record.installment_index,
        'amount': str(record.amount),
        'due_date': record.due_date.isoformat(),
        'status': derive_status(record, now or timezone.now()),
        'paid_date': record.paid_date.isoformat() if record.paid_date else None,
        'payment_method': record.payment_method,
        'transaction_reference': record.transaction_reference,
    }


def serialize_application(application, detail=False):
    data = {
        'id': application.id,
        'reference': application.reference,
        'student': application.student.name,
        'guardian': application.guardian.name,
        'institution': application.institution.name,
        'status': application.status,
        'total_fee': str(application.total_fee),
        'down_payment': str(application.down_payment),
        'installment_amount': str(application.installment_amount),
        'installment_count': application.installment_count,
        'applied_at': application.applied_at.isoformat(),
        'approved_at': application.approved_at.isoformat() if application.approved_at else None,
        'rejection_reason': application.rejection_reason,
        'version': application.version,
    }
    if detail:
        now = timezone.now()
        data['documents'] = [serialize_document(d) for d in application.documents.all()]
        data['payments'] = [serialize_payment(p, now) for p in application.payments.all()]
        data['progress'] = DocumentService.checklist_progress(application)
    return data


def get_visible_application(actor, application_id):
    application = get_object_or_404(BNPLApplication, pk=application_id)
    if not actor.can_view_application(application):
        raise PermissionDenied("You cannot view this application")
    return application


# =============================================================================
# DASHBOARD & CALCULATOR
# =============================================================================

@login_required
@api_view
def dashboard(request, actor):
    return JsonResponse({'success': True, 'role': actor.role, 'stats': get_dashboard_statistics(actor)})


@login_required
@api_view
def fee_calculator(request, actor):
    """Preview the plan for a fee amount under the current terms"""
    terms = BNPLSettings.get_instance().terms()
    amount = validate_total_fee(request.GET.get('total_fee'), terms)
    breakdown = calculate_breakdown(amount, terms)
    return JsonResponse({'success': True, 'breakdown': breakdown.as_dict()})


# =============================================================================
# APPLICATIONS
# =============================================================================

@login_required
@api_view
def application_list(request, actor):
    applications = ApplicationService.visible_to(actor)

    status = request.GET.get('status')
    if status:
        applications = applications.filter(status=status)
    search = request.GET.get('search')
    if search:
        applications = applications.filter(
            Q(reference__icontains=search) |
            Q(student__name__icontains=search) |
            Q(guardian__name__icontains=search)
        )

    paginator = Paginator(applications, 25)
    page_obj = paginator.get_page(request.GET.get('page'))
    return JsonResponse({
        'success': True,
        'count': paginator.count,
        'page': page_obj.number,
        'num_pages': paginator.num_pages,
        'results': [serialize_application(a) for a in page_obj],
    })


@login_required
@api_view
def application_detail(request, actor, application_id):
    application = get_visible_application(actor, application_id)
    return JsonResponse({'success': True, 'application': serialize_application(application, detail=True)})


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def application_submit(request, actor):
    if not actor.is_parent:
        raise PermissionDenied("Only parents can apply for an installment plan")

    terms = BNPLSettings.get_instance().terms()
    form = ApplicationSubmitForm(
        request.POST, request.FILES,
        guardian=actor.guardian_id, document_types=terms.required_document_types
    )
    if not form.is_valid():
        return form_errors(form)

    application = ApplicationService.submit(
        actor, form.cleaned_data['student'], form.documents(),
        total_fee=form.cleaned_data.get('total_fee'), terms=terms
    )
    return JsonResponse({
        'success': True,
        'message': f'Application {application.reference} submitted successfully',
        'application': serialize_application(application, detail=True),
    }, status=201)


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def application_approve(request, actor, application_id):
    application = get_visible_application(actor, application_id)
    ApplicationService.approve(actor, application)
    return JsonResponse({
        'success': True,
        'message': f'Application {application.reference} approved successfully',
        'application': serialize_application(application, detail=True),
    })


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def application_reject(request, actor, application_id):
    application = get_visible_application(actor, application_id)
    form = RejectionForm(request_data(request))
    form.is_valid()
    ApplicationService.reject(actor, application, form.cleaned_data.get('reason'))
    return JsonResponse({
        'success': True,
        'message': f'Application {application.reference} rejected',
        'application': serialize_application(application),
    })


# =============================================================================
# DOCUMENTS
# =============================================================================

def get_visible_document(actor, document_id):
    document = get_object_or_404(RequiredDocument.objects.select_related('application'), pk=document_id)
    if not actor.can_view_application(document.application):
        raise PermissionDenied("You cannot access this document")
    return document


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def document_upload(request, actor, document_id):
    document = get_visible_document(actor, document_id)
    form = DocumentUploadForm(request.POST, request.FILES)
    if not form.is_valid():
        return form_errors(form)

    DocumentService.upload(actor, document, form.cleaned_data['file'])
    return JsonResponse({
        'success': True,
        'message': f'{document.get_document_type_display()} uploaded successfully!',
        'document': serialize_document(document),
    })


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def document_verify(request, actor, document_id):
    document = get_visible_document(actor, document_id)
    DocumentService.verify(actor, document)
    return JsonResponse({
        'success': True,
        'message': f'{document.get_document_type_display()} verified successfully!',
        'document': serialize_document(document),
        'progress': DocumentService.checklist_progress(document.application),
    })


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def document_reject(request, actor, document_id):
    document = get_visible_document(actor, document_id)
    form = RejectionForm(request_data(request))
    form.is_valid()
    DocumentService.reject(actor, document, form.cleaned_data.get('reason'))
    return JsonResponse({
        'success': True,
        'message': f'{document.get_document_type_display()} rejected',
        'document': serialize_document(document),
    })


# =============================================================================
# PAYMENTS
# =============================================================================

@login_required
@api_view
def payment_list(request, actor):
    """Unpaid dues: the parent's own, or every due in the school's/admin's scope"""
    now = timezone.now()
    if actor.is_parent:
        rows = PaymentService.upcoming_for_guardian(actor.guardian_id, now=now)
        records = [record for record, _ in rows]
    else:
        applications = ApplicationService.visible_to(actor).filter(status='approved')
        records = PaymentRecord.objects.filter(
            application__in=applications, paid_date__isnull=True
        ).select_related('application').order_by('due_date', 'pk')

    status = request.GET.get('status')
    due_soon = set(PaymentService.reminders_due(now=now).values_list('pk', flat=True))
    results = []
    for record in records:
        data = serialize_payment(record, now)
        data['application'] = record.application.reference
        data['due_soon'] = record.pk in due_soon
        if status and data['status'] != status:
            continue
        results.append(data)
    return JsonResponse({'success': True, 'results': results})


@login_required
@api_view
def payment_history(request, actor):
    if actor.is_parent:
        records = PaymentService.history_for_guardian(actor.guardian_id)
    else:
        applications = ApplicationService.visible_to(actor)
        records = PaymentRecord.objects.filter(
            application__in=applications, paid_date__isnull=False
        ).select_related('application').order_by('-paid_date')

    results = []
    for record in records:
        data = serialize_payment(record)
        data['application'] = record.application.reference
        results.append(data)
    return JsonResponse({'success': True, 'results': results})


@login_required
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def payment_pay(request, actor, payment_id):
    record = get_object_or_404(PaymentRecord.objects.select_related('application'), pk=payment_id)
    if not actor.can_view_application(record.application):
        raise PermissionDenied("You cannot access this payment")

    form = PaymentForm(request_data(request))
    if not form.is_valid():
        return form_errors(form)

    PaymentService.collect(
        actor, record, form.cleaned_data['payment_method'],
        credentials=form.credentials(),
        reference=form.cleaned_data.get('transaction_reference') or None,
    )
    return JsonResponse({
        'success': True,
        'message': f'Payment of {record.amount} successful',
        'payment': serialize_payment(record),
    })


# =============================================================================
# INSTITUTIONS (admin)
# =============================================================================

@login_required
@user_passes_test(is_admin)
def institution_list(request):
    institutions = Institution.objects.all().order_by('name')

    search = request.GET.get('search', '')
    if search:
        institutions = institutions.filter(
            Q(name__icontains=search) | Q(city__icontains=search) | Q(email__icontains=search)
        )
    status = request.GET.get('status', '')
    if status:
        institutions = institutions.filter(status=status)

    paginator = Paginator(institutions, 10)
    page_obj = paginator.get_page(request.GET.get('page'))
    return JsonResponse({
        'success': True,
        'count': paginator.count,
        'results': [serialize_institution(i) for i in page_obj],
    })


@login_required
@user_passes_test(is_admin)
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def institution_create(request, actor):
    form = InstitutionForm(request_data(request))
    if not form.is_valid():
        return form_errors(form)

    if Institution.objects.filter(name__iexact=form.cleaned_data['name']).exists():
        return JsonResponse({
            'success': False,
            'error': 'A school with this name already exists'
        }, status=400)

    institution = form.save()
    logger.info(f"School {institution.name} created by {request.user.username}")
    return JsonResponse({
        'success': True,
        'message': 'School created successfully',
        'institution': serialize_institution(institution),
    }, status=201)


@login_required
@user_passes_test(is_admin)
def institution_detail(request, pk):
    institution = get_object_or_404(Institution, pk=pk)
    data = serialize_institution(institution)
    data['students'] = institution.students.count()
    data['applications'] = institution.applications.count()
    return JsonResponse({'success': True, 'institution': data})


@login_required
@user_passes_test(is_admin)
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def institution_update(request, actor, pk):
    institution = get_object_or_404(Institution, pk=pk)
    form = InstitutionForm(request_data(request), instance=institution)
    if not form.is_valid():
        return form_errors(form)

    if Institution.objects.filter(name__iexact=form.cleaned_data['name']).exclude(pk=pk).exists():
        return JsonResponse({
            'success': False,
            'error': 'Another school with this name already exists'
        }, status=400)

    institution = form.save()
    return JsonResponse({
        'success': True,
        'message': 'School updated successfully',
        'institution': serialize_institution(institution),
    })


@login_required
@user_passes_test(is_admin)
@require_http_methods(["POST"])
@csrf_exempt
def institution_delete(request, pk):
    institution = get_object_or_404(Institution, pk=pk)

    if institution.applications.filter(status__in=['pending', 'approved']).exists():
        return JsonResponse({
            'success': False,
            'error': 'Cannot delete a school with pending or approved applications'
        }, status=409)

    institution_name = institution.name
    institution.delete()
    logger.info(f"School {institution_name} deleted by {request.user.username}")
    return JsonResponse({
        'success': True,
        'message': f'School "{institution_name}" deleted successfully'
    })


# =============================================================================
# STUDENTS (school / admin)
# =============================================================================

@login_required
@user_passes_test(is_admin_or_school)
@api_view
def student_list(request, actor):
    students = Student.objects.select_related('guardian')
    if actor.is_school:
        students = students.filter(institution_id=actor.institution_id)
    elif request.GET.get('institution'):
        students = students.filter(institution_id=request.GET['institution'])

    search = request.GET.get('search', '')
    if search:
        students = students.filter(Q(name__icontains=search) | Q(roll_number__icontains=search))

    paginator = Paginator(students, 25)
    page_obj = paginator.get_page(request.GET.get('page'))
    return JsonResponse({
        'success': True,
        'count': paginator.count,
        'results': [serialize_student(s) for s in page_obj],
    })


@login_required
@user_passes_test(is_admin_or_school)
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def student_enroll(request, actor):
    data = request_data(request)
    form = EnrollmentForm(data)
    if not form.is_valid():
        return form_errors(form)

    institution = None
    if actor.is_admin:
        institution = get_object_or_404(Institution, pk=data.get('institution'))

    student = EnrollmentService.enroll_student(actor, form.cleaned_data, institution=institution)
    return JsonResponse({
        'success': True,
        'message': 'Student enrolled successfully',
        'student': serialize_student(student),
    }, status=201)


@login_required
@user_passes_test(is_admin_or_school)
@require_http_methods(["POST"])
@csrf_exempt
@api_view
def student_update(request, actor, pk):
    student = get_object_or_404(Student, pk=pk)
    if actor.is_school and student.institution_id != actor.institution_id:
        raise PermissionDenied("This student belongs to another school")

    form = StudentForm(request_data(request), instance=student)
    if not form.is_valid():
        return form_errors(form)
    student = form.save()
    return JsonResponse({
        'success': True,
        'message': 'Student updated successfully',
        'student': serialize_student(student),
    })


# =============================================================================
# SETTINGS (admin)
# =============================================================================

@login_required
@user_passes_test(is_admin)
@csrf_exempt
@api_view
def bnpl_settings(request, actor):
    instance = BNPLSettings.get_instance()

    if request.method == 'POST':
        form = BNPLSettingsForm(request_data(request), instance=instance)
        if not form.is_valid():
            return form_errors(form)
        instance = form.save(commit=False)
        instance.updated_by = request.user
        instance.save()
        AuditLog.objects.create(
            user=request.user,
            action='update',
            table_affected='BNPLSettings',
            record_id=str(instance.pk),
            description=f"BNPL settings updated: {instance}",
            ip_address=actor.ip_address,
        )
        logger.info(f"BNPL settings updated by {request.user.username}: {instance}")

    terms = instance.terms()
    return JsonResponse({
        'success': True,
        'settings': {
            'down_payment_percentage': str(instance.down_payment_percentage),
            'installment_count': instance.installment_count,
            'minimum_documents': instance.minimum_documents,
            'max_application_amount': (
                str(instance.max_application_amount) if instance.max_application_amount is not None else None
            ),
            'required_document_types': list(terms.required_document_types),
            'payment_reminder_days': instance.payment_reminder_days,
        },
    })


# =============================================================================
# ACCOUNTS
# =============================================================================

def serialize_guardian(guardian):
    return {
        'id': guardian.id,
        'name': guardian.name,
        'email': guardian.email or '',
        'phone_number': guardian.phone_number or '',
        'cnic': guardian.cnic or '',
        'occupation': guardian.occupation or '',
        'monthly_income': str(guardian.monthly_income) if guardian.monthly_income is not None else None,
        'address': guardian.address or '',
    }


@csrf_exempt
@require_http_methods(["POST"])
def register(request):
    """Sign up as a school or a parent and start a session"""
    try:
        data = request_data(request)
    except json.JSONDecodeError:
        return JsonResponse({'success': False, 'error': 'Invalid JSON data'}, status=400)

    form = RegistrationForm(data)
    if not form.is_valid():
        return form_errors(form)

    user = AccountService.register(form.cleaned_data, ip_address=get_client_ip(request))
    login(request, user)

    payload = {'id': user.id, 'username': user.username, 'user_type': user.user_type}
    if user.user_type == 'school':
        payload['institution'] = serialize_institution(user.institution)
    else:
        payload['guardian'] = serialize_guardian(user.guardian_profile)
    return JsonResponse({'success': True, 'user': payload}, status=201)


@login_required
@user_passes_test(is_parent)
@csrf_exempt
@api_view
def guardian_profile(request, actor):
    guardian = get_object_or_404(Guardian, pk=actor.guardian_id)

    if request.method == 'POST':
        form = GuardianProfileForm(request_data(request), instance=guardian)
        if not form.is_valid():
            return form_errors(form)
        guardian = AccountService.update_profile(actor, form)

    recent_activity = AuditLog.objects.filter(user=request.user).order_by('-timestamp')[:10]
    return JsonResponse({
        'success': True,
        'profile': serialize_guardian(guardian),
        'recent_activity': [
            {'action': log.action, 'description': log.description, 'timestamp': log.timestamp.isoformat()}
            for log in recent_activity
        ],
    })
