from datetime import datetime

from dateutil.relativedelta import relativedelta
from django.utils import timezone


class ScheduledDue:
    def __init__(self, kind, amount, due_date, installment_index=None):
        self.kind = kind
        self.amount = amount
        self.due_date = due_date
        self.installment_index = installment_index

    def __repr__(self):
        return f"ScheduledDue({self.kind}, {self.installment_index}, {self.amount}, {self.due_date})"


def _as_date(value):
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            value = timezone.localtime(value)
        return value.date()
    return value


def build_schedule(breakdown, start):
    """
    Down payment due on ``start``, then one installment per calendar month.

    relativedelta clamps to the end of shorter months (Jan 31 -> Feb 28).
    The final installment carries the rounding residual so the schedule sums
    to the total fee.
    """
    start = _as_date(start)
    dues = [ScheduledDue('down_payment', breakdown.down_payment, start)]
    for index in range(1, breakdown.installment_count + 1):
        amount = breakdown.installment_amount
        if index == breakdown.installment_count:
            amount += breakdown.residual
        dues.append(ScheduledDue(
            'installment', amount, start + relativedelta(months=index), installment_index=index
        ))
    return dues


def derive_status(record, now):
    """paid, overdue or pending, computed from the record and the clock"""
    if record.paid_date is not None:
        return 'paid'
    if record.due_date < _as_date(now):
        return 'overdue'
    return 'pending'
