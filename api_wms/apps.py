from django.apps import AppConfig


class ApiWmsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'api_wms'
    verbose_name = 'Serveur WMS'
