"""
Fee breakdown for an installment plan.

Down payment is rounded half-up to a whole currency unit. The installment
amount is rounded down, so a plan never bills more than the fee and the
residual left over (0 to installment_count - 1 units) is added to the final
installment by the schedule builder.
"""
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

from .exceptions import ValidationError

UNIT = Decimal('1')

DEFAULT_DOCUMENT_TYPES = (
    'cnic_front',
    'cnic_back',
    'bank_statement',
    'salary_slip',
    'utility_bills',
    'fee_voucher',
)


def to_amount(value):
    """Coerce ints, floats, strings and Decimals to a Decimal amount"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_half_up(value):
    return to_amount(value).quantize(UNIT, rounding=ROUND_HALF_UP)


class PlanTerms:
    """
    Terms an application is created under. Passed in explicitly so that a
    change to the admin settings never reaches an application already filed.
    """

    def __init__(self, down_payment_ratio=Decimal('0.25'), installment_count=6,
                 minimum_documents=4, max_application_amount=None,
                 required_document_types=None):
        self.down_payment_ratio = to_amount(down_payment_ratio)
        self.installment_count = int(installment_count)
        self.minimum_documents = int(minimum_documents)
        self.max_application_amount = (
            to_amount(max_application_amount) if max_application_amount is not None else None
        )
        self.required_document_types = tuple(required_document_types or DEFAULT_DOCUMENT_TYPES)

        if not Decimal('0') < self.down_payment_ratio < Decimal('1'):
            raise ValueError("down_payment_ratio must be between 0 and 1")
        if self.installment_count < 1:
            raise ValueError("installment_count must be at least 1")

    @property
    def down_payment_percentage(self):
        return (self.down_payment_ratio * 100).quantize(Decimal('0.01'))

    def __repr__(self):
        return (
            f"PlanTerms(down_payment_ratio={self.down_payment_ratio}, "
            f"installment_count={self.installment_count})"
        )


class FeeBreakdown:
    def __init__(self, total_fee, down_payment, installment_amount, installment_count):
        self.total_fee = total_fee
        self.down_payment = down_payment
        self.installment_amount = installment_amount
        self.installment_count = installment_count

    @property
    def residual(self):
        """Units the flat installments fall short of the fee"""
        return self.total_fee - self.down_payment - self.installment_amount * self.installment_count

    @property
    def schedule_total(self):
        return self.down_payment + self.installment_amount * self.installment_count

    def as_dict(self):
        return {
            'total_fee': str(self.total_fee),
            'down_payment': str(self.down_payment),
            'installment_amount': str(self.installment_amount),
            'installment_count': self.installment_count,
        }

    def __eq__(self, other):
        if not isinstance(other, FeeBreakdown):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self):
        return f"FeeBreakdown({self.as_dict()})"


def calculate_breakdown(total_fee, terms=None):
    """
    Split ``total_fee`` into a down payment and equal installments.

    Precondition: total_fee > 0. Callers validate it (see validate_total_fee).
    The fee itself is never rounded; any fraction ends up in the residual.
    """
    terms = terms or PlanTerms()
    total_fee = to_amount(total_fee)
    down_payment = round_half_up(total_fee * terms.down_payment_ratio)
    remaining = total_fee - down_payment
    installment_amount = (remaining / terms.installment_count).quantize(UNIT, rounding=ROUND_DOWN)
    return FeeBreakdown(total_fee, down_payment, installment_amount, terms.installment_count)


def validate_total_fee(total_fee, terms=None):
    """Return the fee as a Decimal or raise ValidationError"""
    terms = terms or PlanTerms()
    try:
        amount = to_amount(total_fee)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError("Total fee must be a number", field='total_fee')

    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Total fee must be greater than zero", field='total_fee')
    # Plans are billed in whole currency units
    if amount != amount.to_integral_value():
        raise ValidationError("Total fee must be a whole amount", field='total_fee')
    if terms.max_application_amount is not None and amount > terms.max_application_amount:
        raise ValidationError(
            f"Total fee exceeds the maximum application amount of {terms.max_application_amount}",
            field='total_fee'
        )
    return amount
