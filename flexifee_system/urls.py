from django.urls import path
from . import views

urlpatterns = [
    # Accounts
    path('api/register/', views.register, name='register'),
    path('api/profile/', views.guardian_profile, name='guardian_profile'),

    # Dashboards
    path('api/dashboard/', views.dashboard, name='dashboard'),
    path('api/calculator/', views.fee_calculator, name='fee_calculator'),

    # Applications
    path('api/applications/', views.application_list, name='application_list'),
    path('api/applications/submit/', views.application_submit, name='application_submit'),
    path('api/applications/<int:application_id>/', views.application_detail, name='application_detail'),
    path('api/applications/<int:application_id>/approve/', views.application_approve, name='application_approve'),
    path('api/applications/<int:application_id>/reject/', views.application_reject, name='application_reject'),

    # Documents
    path('api/documents/<int:document_id>/upload/', views.document_upload, name='document_upload'),
    path('api/documents/<int:document_id>/verify/', views.document_verify, name='document_verify'),
    path('api/documents/<int:document_id>/reject/', views.document_reject, name='document_reject'),

    # Payments
    path('api/payments/', views.payment_list, name='payment_list'),
    path('api/payments/history/', views.payment_history, name='payment_history'),
    path('api/payments/<int:payment_id>/pay/', views.payment_pay, name='payment_pay'),

    # Schools
    path('api/institutions/', views.institution_list, name='institution_list'),
    path('api/institutions/create/', views.institution_create, name='institution_create'),
    path('api/institutions/<int:pk>/', views.institution_detail, name='institution_detail'),
    path('api/institutions/<int:pk>/update/', views.institution_update, name='institution_update'),
    path('api/institutions/<int:pk>/delete/', views.institution_delete, name='institution_delete'),

    # Students
    path('api/students/', views.student_list, name='student_list'),
    path('api/students/enroll/', views.student_enroll, name='student_enroll'),
    path('api/students/<int:pk>/update/', views.student_update, name='student_update'),

    # Settings
    path('api/settings/', views.bnpl_settings, name='bnpl_settings'),
]
