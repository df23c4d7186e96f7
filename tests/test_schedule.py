from datetime import date, datetime, timedelta
from decimal import Decimal

from django.utils import timezone

from flexifee_system.calculator import PlanTerms, calculate_breakdown
from flexifee_system.models import PaymentRecord
from flexifee_system.schedule import build_schedule, derive_status


def test_schedule_has_down_payment_then_monthly_installments():
    dues = build_schedule(calculate_breakdown(100000), date(2025, 3, 15))

    assert len(dues) == 7
    assert dues[0].kind == 'down_payment'
    assert dues[0].due_date == date(2025, 3, 15)
    assert dues[0].installment_index is None
    assert [d.installment_index for d in dues[1:]] == [1, 2, 3, 4, 5, 6]
    assert [d.due_date for d in dues[1:]] == [
        date(2025, 4, 15), date(2025, 5, 15), date(2025, 6, 15),
        date(2025, 7, 15), date(2025, 8, 15), date(2025, 9, 15),
    ]
    assert sum(d.amount for d in dues) == Decimal('100000')


def test_last_installment_absorbs_residual():
    breakdown = calculate_breakdown(100005)
    dues = build_schedule(breakdown, date(2025, 1, 1))

    assert sum(d.amount for d in dues) == Decimal('100005')
    assert dues[-1].amount == breakdown.installment_amount + breakdown.residual
    assert all(d.amount == breakdown.installment_amount for d in dues[1:-1])


def test_month_end_start_is_clamped():
    dues = build_schedule(calculate_breakdown(60000, PlanTerms(installment_count=3)), date(2025, 1, 31))
    assert [d.due_date for d in dues[1:]] == [date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)]


def test_schedule_accepts_aware_datetimes():
    start = timezone.make_aware(datetime(2025, 6, 1, 10, 30))
    dues = build_schedule(calculate_breakdown(100000), start)
    assert dues[0].due_date == date(2025, 6, 1)


def test_derive_status_pending_overdue_paid():
    today = timezone.localdate()
    now = timezone.now()

    assert derive_status(PaymentRecord(due_date=today), now) == 'pending'
    assert derive_status(PaymentRecord(due_date=today + timedelta(days=3)), now) == 'pending'
    assert derive_status(PaymentRecord(due_date=today - timedelta(days=1)), now) == 'overdue'


def test_derive_status_paid_wins_regardless_of_due_date():
    now = timezone.now()
    late = PaymentRecord(due_date=timezone.localdate() - timedelta(days=30), paid_date=now)
    early = PaymentRecord(due_date=timezone.localdate() + timedelta(days=30), paid_date=now)

    assert derive_status(late, now) == 'paid'
    assert derive_status(early, now) == 'paid'


def test_derive_status_accepts_plain_dates():
    record = PaymentRecord(due_date=date(2025, 5, 1))
    assert derive_status(record, date(2025, 5, 1)) == 'pending'
    assert derive_status(record, date(2025, 5, 2)) == 'overdue'
