from django.apps import AppConfig


class FlexifeeSystemConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'flexifee_system'
    verbose_name = 'FlexiFee BNPL'
