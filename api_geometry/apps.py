from django.apps import AppConfig


class ApiGeometryConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'api_geometry'
    verbose_name = 'Moteur géométrique'
