from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import (
    AuditLog, BNPLApplication, BNPLSettings, Guardian, Institution,
    PaymentRecord, RequiredDocument, Student, User,
)


@admin.register(User)
class CustomUserAdmin(BaseUserAdmin):
    """Custom user admin to handle the extended User model"""
    list_display = ('username', 'email', 'first_name', 'last_name', 'user_type', 'institution', 'is_staff')
    list_filter = ('user_type', 'is_staff', 'is_superuser', 'is_active', 'date_joined')
    search_fields = ('username', 'email', 'first_name', 'last_name', 'phone_number')
    ordering = ('username',)

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Additional Info', {
            'fields': ('user_type', 'institution', 'phone_number')
        }),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Additional Info', {
            'fields': ('user_type', 'institution', 'phone_number')
        }),
    )


class StudentInline(admin.TabularInline):
    model = Student
    extra = 0
    fields = ('name', 'class_grade', 'roll_number', 'annual_fee', 'status')


@admin.register(Institution)
class InstitutionAdmin(admin.ModelAdmin):
    list_display = ('name', 'city', 'phone_number', 'email', 'status', 'student_count')
    list_filter = ('status', 'city')
    search_fields = ('name', 'city', 'email')
    inlines = [StudentInline]

    def student_count(self, obj):
        return obj.students.count()
    student_count.short_description = 'Students'


@admin.register(Guardian)
class GuardianAdmin(admin.ModelAdmin):
    list_display = ('name', 'email', 'phone_number', 'occupation', 'monthly_income')
    search_fields = ('name', 'email', 'phone_number', 'cnic')


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ('name', 'roll_number', 'class_grade', 'institution', 'guardian', 'annual_fee', 'status')
    list_filter = ('status', 'institution')
    search_fields = ('name', 'roll_number', 'guardian__name')


class RequiredDocumentInline(admin.TabularInline):
    model = RequiredDocument
    extra = 0
    fields = ('document_type', 'status', 'file', 'uploaded_at', 'verified_at', 'rejection_reason')
    readonly_fields = fields
    can_delete = False


class PaymentRecordInline(admin.TabularInline):
    model = PaymentRecord
    extra = 0
    fields = ('kind', 'installment_index', 'amount', 'due_date', 'status', 'paid_date', 'transaction_reference')
    readonly_fields = fields
    can_delete = False


@admin.register(BNPLApplication)
class BNPLApplicationAdmin(admin.ModelAdmin):
    """
    Status is read-only here: approvals and rejections go through the
    application service so documents are checked and payments scheduled.
    """
    list_display = ('reference', 'student_name', 'institution', 'status', 'total_fee', 'applied_at')
    list_filter = ('status', 'institution')
    search_fields = ('reference', 'student__name', 'guardian__name')
    readonly_fields = (
        'reference', 'status', 'total_fee', 'down_payment', 'installment_amount',
        'installment_count', 'down_payment_percentage', 'applied_at', 'approved_at',
        'rejection_reason', 'decided_by', 'version', 'last_updated',
    )
    inlines = [RequiredDocumentInline, PaymentRecordInline]

    fieldsets = (
        ('Basic Information', {
            'fields': ('reference', 'student', 'guardian', 'institution', 'status')
        }),
        ('Plan', {
            'fields': ('total_fee', 'down_payment', 'installment_amount', 'installment_count',
                       'down_payment_percentage')
        }),
        ('Decision', {
            'fields': ('approved_at', 'rejection_reason', 'decided_by')
        }),
        ('Timestamps', {
            'fields': ('applied_at', 'last_updated', 'version'),
            'classes': ('collapse',)
        })
    )

    def student_name(self, obj):
        return obj.student.name
    student_name.short_description = 'Student'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('student', 'guardian', 'institution')


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    """
    Payment state changes go through the payment service; records are
    created by approval only.
    """
    list_display = ('application_reference', 'kind', 'installment_index', 'amount', 'due_date', 'status', 'paid_date')
    list_filter = ('kind', 'status', 'payment_method')
    search_fields = ('application__reference', 'transaction_reference')
    readonly_fields = (
        'application', 'kind', 'installment_index', 'amount', 'due_date', 'status',
        'paid_date', 'payment_method', 'transaction_reference', 'version',
    )

    def has_add_permission(self, request):
        return False

    def application_reference(self, obj):
        return obj.application.reference
    application_reference.short_description = 'Application'


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('user', 'action', 'table_affected', 'record_id', 'ip_address', 'timestamp')
    list_filter = ('action', 'table_affected', 'timestamp')
    search_fields = ('user__username', 'description', 'record_id')
    readonly_fields = ('timestamp',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(BNPLSettings)
class BNPLSettingsAdmin(admin.ModelAdmin):
    list_display = ('__str__', 'minimum_documents', 'max_application_amount', 'last_updated', 'updated_by')
    readonly_fields = ('last_updated',)

    def has_add_permission(self, request):
        return not BNPLSettings.objects.exists()
