from django import forms
from django.contrib.auth.password_validation import validate_password
from .models import BNPLSettings, Guardian, Institution, PaymentRecord, RequiredDocument, Student, User


class BootstrapModelForm(forms.ModelForm):
    """
    Base form to add Bootstrap 'form-control' class to all fields
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        for field_name, field in self.fields.items():
            if not isinstance(field.widget, forms.CheckboxInput):  # don't override checkboxes
                field.widget.attrs.update({'class': 'form-control'})


class InstitutionForm(BootstrapModelForm):
    class Meta:
        model = Institution
        fields = ['name', 'email', 'phone_number', 'address', 'city', 'principal_name', 'status']
        widgets = {
            'address': forms.Textarea(attrs={'rows': 2}),
        }


class StudentForm(BootstrapModelForm):
    class Meta:
        model = Student
        fields = ['name', 'class_grade', 'roll_number', 'annual_fee', 'status']


class EnrollmentForm(forms.Form):
    """Student details plus optional parent details, as filled in by a school"""
    name = forms.CharField(max_length=200)
    class_grade = forms.CharField(max_length=50)
    roll_number = forms.CharField(max_length=50)
    annual_fee = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    guardian_name = forms.CharField(max_length=200, required=False)
    guardian_email = forms.EmailField(required=False)
    guardian_phone = forms.CharField(max_length=20, required=False)

    def clean(self):
        cleaned_data = super().clean()
        if (cleaned_data.get('guardian_email') or cleaned_data.get('guardian_phone')) \
                and not cleaned_data.get('guardian_name'):
            self.add_error('guardian_name', 'Parent name is required when contact details are given.')
        return cleaned_data


class ApplicationSubmitForm(forms.Form):
    """
    One optional file field per checklist document. The minimum number of
    attachments is checked by the application service against current terms.
    """
    student = forms.ModelChoiceField(queryset=Student.objects.none())
    total_fee = forms.DecimalField(max_digits=12, decimal_places=2, required=False)

    def __init__(self, *args, guardian=None, document_types=None, **kwargs):
        super().__init__(*args, **kwargs)
        if guardian is not None:
            self.fields['student'].queryset = Student.objects.filter(guardian=guardian, status='active')
        labels = dict(RequiredDocument.DOCUMENT_TYPES)
        self.document_types = list(document_types or [])
        for doc_type in self.document_types:
            self.fields[doc_type] = forms.FileField(required=False, label=labels.get(doc_type, doc_type))

    def documents(self):
        return {t: self.cleaned_data.get(t) for t in self.document_types if self.cleaned_data.get(t)}


class DocumentUploadForm(forms.Form):
    file = forms.FileField()


class RejectionForm(forms.Form):
    # Blank reasons are rejected by the services, which own that rule
    reason = forms.CharField(required=False, widget=forms.Textarea(attrs={'rows': 3}))


class PaymentForm(forms.Form):
    payment_method = forms.ChoiceField(choices=PaymentRecord.PAYMENT_METHODS)
    transaction_reference = forms.CharField(max_length=64, required=False)

    # Card details are passed straight to the gateway and never stored
    card_number = forms.CharField(max_length=19, required=False)
    account_number = forms.CharField(max_length=34, required=False)
    mobile_number = forms.CharField(max_length=15, required=False)

    def clean(self):
        cleaned_data = super().clean()
        method = cleaned_data.get('payment_method')

        if method == 'card' and not cleaned_data.get('card_number'):
            self.add_error('card_number', 'Card number is required for card payments.')
        if method == 'bank_transfer' and not cleaned_data.get('account_number'):
            self.add_error('account_number', 'Account number is required for bank transfers.')
        if method in ('easypaisa', 'jazzcash') and not cleaned_data.get('mobile_number'):
            self.add_error('mobile_number', 'Mobile number is required for wallet payments.')

        return cleaned_data

    def credentials(self):
        return {
            key: self.cleaned_data[key]
            for key in ('card_number', 'account_number', 'mobile_number')
            if self.cleaned_data.get(key)
        }


class BNPLSettingsForm(BootstrapModelForm):
    """Form for installment plan settings"""
    required_document_types = forms.MultipleChoiceField(
        choices=RequiredDocument.DOCUMENT_TYPES, required=False,
        widget=forms.CheckboxSelectMultiple
    )

    class Meta:
        model = BNPLSettings
        fields = [
            'down_payment_percentage', 'installment_count', 'minimum_documents',
            'max_application_amount', 'required_document_types', 'payment_reminder_days',
        ]

    def clean(self):
        cleaned_data = super().clean()
        doc_types = cleaned_data.get('required_document_types')
        minimum = cleaned_data.get('minimum_documents')
        if doc_types and minimum and minimum > len(doc_types):
            self.add_error(
                'minimum_documents',
                'Minimum documents cannot exceed the number of required document types.'
            )
        return cleaned_data


class RegistrationForm(forms.Form):
    """Self sign-up for schools and parents"""
    ROLE_CHOICES = (
        ('school', 'School'),
        ('parent', 'Parent'),
    )

    user_type = forms.ChoiceField(choices=ROLE_CHOICES)
    username = forms.CharField(max_length=150)
    name = forms.CharField(max_length=200)
    email = forms.EmailField()
    phone_number = forms.CharField(max_length=17, required=False)
    password = forms.CharField(widget=forms.PasswordInput)
    confirm_password = forms.CharField(widget=forms.PasswordInput)

    # School accounts only
    school_name = forms.CharField(max_length=200, required=False)
    address = forms.CharField(required=False, widget=forms.Textarea(attrs={'rows': 2}))
    city = forms.CharField(max_length=100, required=False)

    def clean_username(self):
        username = self.cleaned_data['username']
        if User.objects.filter(username__iexact=username).exists():
            raise forms.ValidationError('This username is already taken.')
        return username

    def clean_email(self):
        email = self.cleaned_data['email']
        if User.objects.filter(email__iexact=email).exists():
            raise forms.ValidationError('An account with this email already exists.')
        return email

    def clean(self):
        cleaned_data = super().clean()
        password = cleaned_data.get('password')
        confirm_password = cleaned_data.get('confirm_password')

        if password and confirm_password and password != confirm_password:
            self.add_error('confirm_password', 'Passwords do not match.')
        elif password:
            try:
                validate_password(password)
            except forms.ValidationError as e:
                self.add_error('password', e)
        return cleaned_data


class GuardianProfileForm(BootstrapModelForm):
    """Parent's own profile details"""
    class Meta:
        model = Guardian
        fields = ['name', 'email', 'phone_number', 'cnic', 'occupation', 'monthly_income', 'address']
        widgets = {
            'address': forms.Textarea(attrs={'rows': 2}),
        }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['email'].required = True

    def clean_monthly_income(self):
        monthly_income = self.cleaned_data.get('monthly_income')
        if monthly_income is not None and monthly_income < 0:
            raise forms.ValidationError('Monthly income cannot be negative.')
        return monthly_income

    def clean_email(self):
        email = self.cleaned_data['email']
        users = User.objects.filter(email__iexact=email)
        if self.instance.user_id:
            users = users.exclude(pk=self.instance.user_id)
        if users.exists():
            raise forms.ValidationError('An account with this email already exists.')
        return email
