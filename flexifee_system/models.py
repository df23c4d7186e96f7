from django.db import models
from django.contrib.auth.models import AbstractUser
from django.core.validators import MinValueValidator, MaxValueValidator, RegexValidator
from django.utils import timezone
import uuid


class User(AbstractUser):
    """
    Extended User model for authentication
    """
    USER_TYPES = (
        ('admin', 'Administrator'),
        ('school', 'School'),
        ('parent', 'Parent'),
    )

    user_type = models.CharField(max_length=20, choices=USER_TYPES, default='parent')
    institution = models.ForeignKey(
        'Institution', on_delete=models.SET_NULL, null=True, blank=True, related_name='staff'
    )
    phone_regex = RegexValidator(
        regex=r'^\+?\d{10,15}$',
        message="Phone number must contain 10 to 15 digits, optionally prefixed with '+'."
    )
    phone_number = models.CharField(validators=[phone_regex], max_length=17, blank=True)

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.user_type})"


class Institution(models.Model):
    """
    Schools enrolled on the BNPL programme
    """
    STATUS_CHOICES = (
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    )

    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, null=True)
    phone_number = models.CharField(max_length=20, blank=True, null=True)
    address = models.TextField(blank=True, null=True)
    city = models.CharField(max_length=100, blank=True, null=True)
    principal_name = models.CharField(max_length=200, blank=True, null=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class Guardian(models.Model):
    """
    Parent/Guardian who applies for and pays the installment plan
    """
    user = models.OneToOneField(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='guardian_profile'
    )
    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, null=True)
    phone_number = models.CharField(max_length=20, blank=True, null=True)
    cnic = models.CharField(max_length=20, blank=True, null=True)
    address = models.TextField(blank=True, null=True)
    occupation = models.CharField(max_length=200, blank=True, null=True)
    monthly_income = models.DecimalField(max_digits=12, decimal_places=2, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class Student(models.Model):
    STATUS_CHOICES = (
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    )

    institution = models.ForeignKey(Institution, on_delete=models.CASCADE, related_name='students')
    guardian = models.ForeignKey(
        Guardian, on_delete=models.SET_NULL, null=True, blank=True, related_name='students'
    )
    name = models.CharField(max_length=200)
    class_grade = models.CharField(max_length=50)
    roll_number = models.CharField(max_length=50)
    annual_fee = models.DecimalField(
        max_digits=12, decimal_places=2, validators=[MinValueValidator(0)]
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ('institution', 'roll_number')
        ordering = ['name']

    @property
    def active_application(self):
        """
        The pending application, or an approved one that still has unpaid dues
        """
        pending = self.applications.filter(status='pending').first()
        if pending:
            return pending
        return self.applications.filter(
            status='approved', payments__paid_date__isnull=True
        ).distinct().first()

    def __str__(self):
        return f"{self.name} ({self.roll_number})"


class BNPLSettings(models.Model):
    """
    Admin-configurable installment plan terms. A single row is used.
    """
    down_payment_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=25,
        validators=[MinValueValidator(10), MaxValueValidator(50)]
    )
    installment_count = models.PositiveIntegerField(
        default=6, validators=[MinValueValidator(3), MaxValueValidator(24)]
    )
    minimum_documents = models.PositiveIntegerField(default=4, validators=[MinValueValidator(1)])
    max_application_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=100000, blank=True, null=True
    )
    required_document_types = models.JSONField(default=list, blank=True)
    payment_reminder_days = models.PositiveIntegerField(
        default=3, validators=[MinValueValidator(1), MaxValueValidator(30)]
    )
    last_updated = models.DateTimeField(auto_now=True)
    updated_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)

    class Meta:
        verbose_name = 'BNPL settings'
        verbose_name_plural = 'BNPL settings'

    @classmethod
    def get_instance(cls):
        instance = cls.objects.order_by('pk').first()
        if instance is None:
            instance = cls.objects.create()
        return instance

    def terms(self):
        from .calculator import PlanTerms
        from decimal import Decimal

        return PlanTerms(
            down_payment_ratio=Decimal(self.down_payment_percentage) / 100,
            installment_count=self.installment_count,
            minimum_documents=self.minimum_documents,
            max_application_amount=self.max_application_amount,
            required_document_types=self.required_document_types or None,
        )

    def __str__(self):
        return f"{self.down_payment_percentage}% down, {self.installment_count} installments"


class BNPLApplication(models.Model):
    """
    Installment plan application for one student's fee
    """
    APPLICATION_STATUS = (
        ('pending', 'Pending'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
    )

    reference = models.CharField(max_length=20, unique=True, editable=False)
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='applications')
    guardian = models.ForeignKey(Guardian, on_delete=models.CASCADE, related_name='applications')
    institution = models.ForeignKey(Institution, on_delete=models.CASCADE, related_name='applications')
    status = models.CharField(max_length=20, choices=APPLICATION_STATUS, default='pending')

    # Plan breakdown, snapshotted from the terms in force at submission
    total_fee = models.DecimalField(max_digits=12, decimal_places=2)
    down_payment = models.DecimalField(max_digits=12, decimal_places=2)
    installment_amount = models.DecimalField(max_digits=12, decimal_places=2)
    installment_count = models.PositiveIntegerField(default=6)
    down_payment_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=25)

    applied_at = models.DateTimeField(default=timezone.now)
    approved_at = models.DateTimeField(blank=True, null=True)
    rejection_reason = models.TextField(blank=True, null=True)
    decided_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='decisions'
    )
    version = models.PositiveIntegerField(default=0)
    last_updated = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-applied_at']

    @staticmethod
    def generate_reference(when=None):
        year = (when or timezone.now()).year
        return f"BNPL-{year}-{uuid.uuid4().hex[:6].upper()}"

    def save(self, *args, **kwargs):
        if not self.reference:
            self.reference = self.generate_reference(self.applied_at)
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.reference} - {self.student}"


class RequiredDocument(models.Model):
    """
    One item of the verification checklist attached to an application
    """
    DOCUMENT_TYPES = (
        ('cnic_front', 'CNIC Front'),
        ('cnic_back', 'CNIC Back'),
        ('education_registration', 'Educational Registration'),
        ('bank_statement', 'Bank Statement'),
        ('salary_slip', 'Salary Slip/Business Proof'),
        ('residence_proof', 'Proof of Residence'),
        ('utility_bills', 'Utility Bills'),
        ('fee_voucher', 'Fee Voucher/Challan'),
    )

    DOCUMENT_STATUS = (
        ('pending', 'Pending'),
        ('uploaded', 'Uploaded'),
        ('verified', 'Verified'),
        ('rejected', 'Rejected'),
    )

    application = models.ForeignKey(BNPLApplication, on_delete=models.CASCADE, related_name='documents')
    document_type = models.CharField(max_length=30, choices=DOCUMENT_TYPES)
    status = models.CharField(max_length=20, choices=DOCUMENT_STATUS, default='pending')
    file = models.FileField(upload_to='bnpl_documents/', blank=True, null=True, max_length=255)
    uploaded_at = models.DateTimeField(blank=True, null=True)
    verified_at = models.DateTimeField(blank=True, null=True)
    rejection_reason = models.TextField(blank=True, null=True)
    version = models.PositiveIntegerField(default=0)

    class Meta:
        unique_together = ('application', 'document_type')
        ordering = ['pk']

    def __str__(self):
        return f"{self.get_document_type_display()} - {self.application.reference}"


class PaymentRecord(models.Model):
    """
    One scheduled due of an approved plan: the down payment or an installment
    """
    KIND_CHOICES = (
        ('down_payment', 'Down Payment'),
        ('installment', 'Installment'),
    )

    PAYMENT_STATUS = (
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
    )

    PAYMENT_METHODS = (
        ('card', 'Credit/Debit Card'),
        ('bank_transfer', 'Bank Transfer'),
        ('easypaisa', 'EasyPaisa'),
        ('jazzcash', 'JazzCash'),
    )

    application = models.ForeignKey(BNPLApplication, on_delete=models.CASCADE, related_name='payments')
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    installment_index = models.PositiveIntegerField(blank=True, null=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    due_date = models.DateField()

    # Cached for querying; the authoritative value is current_status
    status = models.CharField(max_length=20, choices=PAYMENT_STATUS, default='pending')
    paid_date = models.DateTimeField(blank=True, null=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHODS, blank=True, null=True)
    transaction_reference = models.CharField(max_length=64, unique=True, blank=True, null=True)
    version = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['due_date', 'pk']

    @property
    def current_status(self):
        from .schedule import derive_status
        return derive_status(self, timezone.now())

    @property
    def label(self):
        if self.kind == 'down_payment':
            return 'Down Payment'
        return f"Installment {self.installment_index} of {self.application.installment_count}"

    def __str__(self):
        return f"{self.label} - {self.application.reference}"


class AuditLog(models.Model):
    """
    System audit trail
    """
    ACTION_TYPES = (
        ('create', 'Create'),
        ('update', 'Update'),
        ('delete', 'Delete'),
        ('submit', 'Submit'),
        ('upload', 'Upload'),
        ('verify', 'Verify'),
        ('reject', 'Reject'),
        ('approve', 'Approve'),
        ('pay', 'Pay'),
        ('reconcile', 'Reconcile'),
    )

    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='audit_logs')
    action = models.CharField(max_length=20, choices=ACTION_TYPES)
    table_affected = models.CharField(max_length=100)
    record_id = models.CharField(max_length=100, blank=True, null=True)
    description = models.TextField()
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']

    def __str__(self):
        return f"{self.action} by {self.user} on {self.timestamp}"
