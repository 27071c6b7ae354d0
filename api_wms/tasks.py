"""
Celery tasks for api_wms.

Async tasks for:
- GetPrint rendering (PDF, SVG, PNG, JPG) written to CARTOSIG_PRINT_DIR
"""

import logging
import os
from celery import shared_task
from django.conf import settings

logger = logging.getLogger(__name__)


PRINT_EXTENSIONS = {
    'application/pdf': 'pdf',
    'image/svg+xml': 'svg',
    'image/png': 'png',
    'image/jpeg': 'jpg',
}


# ==============================================================================
# PRINT TASKS
# ==============================================================================

@shared_task(bind=True, name='api_wms.tasks.render_print_async')
def render_print_async(self, project_path, parameters, version='1.3.0'):
    """
    Rendu GetPrint en arrière-plan.

    Args:
        project_path: Chemin du fichier projet
        parameters: Paramètres de la requête GetPrint (dict)
        version: Version WMS de la requête

    Returns:
        dict: Fichier produit ou message d'erreur
    """
    from api_projects.project_cache import ProjectNotFound, get_project
    from .config import WmsConfig
    from .exceptions import ServiceException
    from .getmap import MapRequest
    from .parameters import WmsParameters
    from .printing import get_print

    try:
        project = get_project(project_path)
        request = MapRequest(WmsParameters(parameters), project, WmsConfig(project), version)
        content, content_type = get_print(request)
    except ProjectNotFound as e:
        logger.error(f"Projet introuvable pour GetPrint : {e}")
        return {'success': False, 'error': str(e)}
    except ServiceException as e:
        logger.warning(f"GetPrint asynchrone refusé : {e.code} - {e.message}")
        return {'success': False, 'error': e.message, 'code': e.code}

    print_dir = str(settings.CARTOSIG_PRINT_DIR)
    os.makedirs(print_dir, exist_ok=True)
    filename = f"print_{self.request.id}.{PRINT_EXTENSIONS.get(content_type, 'bin')}"
    filepath = os.path.join(print_dir, filename)
    with open(filepath, 'wb') as f:
        f.write(content)

    logger.info(f"GetPrint terminé : {filepath}")
    return {
        'success': True,
        'file_path': filepath,
        'filename': filename,
        'content_type': content_type,
    }
