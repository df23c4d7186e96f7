from decimal import Decimal

import pytest
from django.utils import timezone

from flexifee_system.models import PaymentRecord
from flexifee_system.permissions import Actor
from flexifee_system.services import ApplicationService, PaymentService
from flexifee_system.stats import (
    get_application_statistics, get_dashboard_statistics, get_monthly_application_trend,
    get_payment_statistics,
)

pytestmark = pytest.mark.django_db


def test_application_statistics(approved_application, school_actor, admin_actor, other_school_user):
    stats = get_application_statistics(school_actor)

    assert stats['total'] == 1
    assert stats['approved'] == 1
    assert stats['pending'] == 0
    assert stats['approval_rate'] == 100.0
    assert stats['financed_amount'] == Decimal('100000')

    assert get_application_statistics(admin_actor)['total'] == 1
    assert get_application_statistics(Actor.from_user(other_school_user))['total'] == 0


def test_payment_statistics_use_due_dates(approved_application, parent_actor, yesterday):
    PaymentService.pay(parent_actor, approved_application.payments.get(kind='down_payment'), 'card', 'TXN1')
    PaymentRecord.objects.filter(application=approved_application, installment_index=1).update(due_date=yesterday)

    stats = get_payment_statistics(parent_actor)

    assert stats['paid'] == {'count': 1, 'amount': Decimal('25000')}
    assert stats['overdue'] == {'count': 1, 'amount': Decimal('12500')}
    assert stats['pending'] == {'count': 5, 'amount': Decimal('62500')}
    assert stats['total_collections'] == Decimal('25000')
    assert stats['by_method'] == {'card': {'count': 1, 'amount': Decimal('25000')}}


def test_empty_statistics(admin_actor):
    stats = get_payment_statistics(admin_actor)
    assert stats['paid'] == {'count': 0, 'amount': Decimal('0')}
    assert stats['by_method'] == {}
    assert get_application_statistics(admin_actor)['approval_rate'] == 0


def test_monthly_trend_covers_requested_months(application, school_actor):
    ApplicationService.reject(school_actor, application, 'Income insufficient')

    trend = get_monthly_application_trend(school_actor, months=3)

    assert len(trend) == 3
    assert trend[-1] == {
        'month': timezone.localtime().strftime('%Y-%m'),
        'applications': 1,
        'approved': 0,
    }
    assert all(row['applications'] == 0 for row in trend[:-1])


def test_dashboard_adds_school_counts_for_admin(approved_application, admin_actor, school_actor, other_institution):
    admin_stats = get_dashboard_statistics(admin_actor)
    assert admin_stats['schools'] == 2
    assert admin_stats['active_schools'] == 2
    assert admin_stats['students'] == 1

    school_stats = get_dashboard_statistics(school_actor)
    assert 'schools' not in school_stats
    assert school_stats['payments']['pending']['count'] == 7
