# flexifee_system/stats.py

"""
Dashboard and report figures for the admin, school and parent views.
Payment figures use due dates, not the cached status column, to decide what
is overdue.
"""

from django.db.models import Count, Q, Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone
from dateutil.relativedelta import relativedelta
from decimal import Decimal
import logging

from .models import BNPLApplication, Institution, PaymentRecord, Student

logger = logging.getLogger(__name__)


def _scoped(actor):
    applications = BNPLApplication.objects.all()
    students = Student.objects.all()
    if actor.is_school:
        applications = applications.filter(institution_id=actor.institution_id)
        students = students.filter(institution_id=actor.institution_id)
    elif actor.is_parent:
        applications = applications.filter(guardian_id=actor.guardian_id)
        students = students.filter(guardian_id=actor.guardian_id)
    payments = PaymentRecord.objects.filter(application__in=applications)
    return applications, students, payments


# =============================================================================
# APPLICATION STATISTICS
# =============================================================================

def get_application_statistics(actor):
    applications, _, _ = _scoped(actor)
    counts = applications.aggregate(
        total=Count('id'),
        pending=Count('id', filter=Q(status='pending')),
        approved=Count('id', filter=Q(status='approved')),
        rejected=Count('id', filter=Q(status='rejected')),
        financed=Sum('total_fee', filter=Q(status='approved')),
    )
    total = counts['total']
    decided = counts['approved'] + counts['rejected']
    return {
        'total': total,
        'pending': counts['pending'],
        'approved': counts['approved'],
        'rejected': counts['rejected'],
        'approval_rate': round(counts['approved'] * 100 / total, 1) if total else 0,
        'decision_rate': round(decided * 100 / total, 1) if total else 0,
        'financed_amount': counts['financed'] or Decimal('0'),
    }


# =============================================================================
# PAYMENT STATISTICS
# =============================================================================

def get_payment_statistics(actor, now=None):
    now = now or timezone.now()
    today = timezone.localdate(now)
    _, _, payments = _scoped(actor)

    paid = Q(paid_date__isnull=False)
    unpaid = Q(paid_date__isnull=True)
    overdue = unpaid & Q(due_date__lt=today)
    pending = unpaid & Q(due_date__gte=today)

    figures = payments.aggregate(
        paid_count=Count('id', filter=paid),
        paid_amount=Sum('amount', filter=paid),
        pending_count=Count('id', filter=pending),
        pending_amount=Sum('amount', filter=pending),
        overdue_count=Count('id', filter=overdue),
        overdue_amount=Sum('amount', filter=overdue),
    )
    by_method = {
        row['payment_method']: {'count': row['count'], 'amount': row['amount']}
        for row in payments.filter(paid).values('payment_method').annotate(
            count=Count('id'), amount=Sum('amount')
        ).order_by('payment_method')
    }
    return {
        'paid': {'count': figures['paid_count'], 'amount': figures['paid_amount'] or Decimal('0')},
        'pending': {'count': figures['pending_count'], 'amount': figures['pending_amount'] or Decimal('0')},
        'overdue': {'count': figures['overdue_count'], 'amount': figures['overdue_amount'] or Decimal('0')},
        'total_collections': figures['paid_amount'] or Decimal('0'),
        'by_method': by_method,
    }


def get_monthly_application_trend(actor, months=6, now=None):
    """Applications filed and approved per month, oldest first"""
    now = now or timezone.now()
    applications, _, _ = _scoped(actor)
    start = timezone.localtime(now).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    start = start - relativedelta(months=months - 1)

    rows = applications.filter(applied_at__gte=start).annotate(
        month=TruncMonth('applied_at')
    ).values('month').annotate(
        applications=Count('id'),
        approved=Count('id', filter=Q(status='approved')),
    )
    by_month = {row['month'].strftime('%Y-%m'): row for row in rows}

    trend = []
    for offset in range(months):
        key = (start + relativedelta(months=offset)).strftime('%Y-%m')
        row = by_month.get(key, {})
        trend.append({
            'month': key,
            'applications': row.get('applications', 0),
            'approved': row.get('approved', 0),
        })
    return trend


def get_dashboard_statistics(actor, now=None):
    _, students, _ = _scoped(actor)
    stats = {
        'applications': get_application_statistics(actor),
        'payments': get_payment_statistics(actor, now=now),
        'students': students.count(),
        'trend': get_monthly_application_trend(actor, now=now),
    }
    if actor.is_admin:
        stats['schools'] = Institution.objects.count()
        stats['active_schools'] = Institution.objects.filter(status='active').count()
    return stats
