import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class ApiProjectsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'api_projects'
    verbose_name = 'Projets'

    def ready(self):
        from django.db.models.signals import post_save, post_delete
        from api_projects.models import ProjectFile
        from api_projects.signals import (
            project_read, project_saved, project_cleared,
            invalidate_project_cache, invalidate_project_file_cache,
        )

        # Invalidation du cache : document projet
        for signal in (project_read, project_saved, project_cleared):
            signal.connect(invalidate_project_cache, dispatch_uid=f'cartosig_{id(signal)}')

        # Invalidation du cache : fichiers projet enregistrés
        post_save.connect(invalidate_project_file_cache, sender=ProjectFile)
        post_delete.connect(invalidate_project_file_cache, sender=ProjectFile)

        logger.debug("Signals projet + invalidation du cache connectés")
