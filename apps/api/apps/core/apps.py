"""Core app configuration."""
from django.apps import AppConfig


class CoreConfig(AppConfig):
    """Observability, health checks and authentication endpoints."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'
