"""
Signals émis par le document projet (api_projects.project.Project).

Le sender est toujours l'instance Project concernée. Les récepteurs
d'invalidation du cache sont connectés dans apps.py.
"""

import logging

from django.dispatch import Signal

logger = logging.getLogger(__name__)

project_read = Signal()          # file_name
project_saved = Signal()         # file_name
project_cleared = Signal()
dirty_changed = Signal()         # dirty
layers_added = Signal()          # layers
layers_removed = Signal()        # layer_ids


# ==============================================================================
# INVALIDATION DU CACHE
# ==============================================================================

def invalidate_project_cache(sender, **kwargs):
    """Invalide CAPABILITIES + PROJECTS après lecture ou sauvegarde d'un projet."""
    from cartosig_web.cache_utils import invalidate_on_project_change
    invalidate_on_project_change()


def invalidate_project_file_cache(sender, instance, **kwargs):
    """Invalide PROJECTS après mutation d'un ProjectFile."""
    from cartosig_web.cache_utils import invalidate_on_project_file_mutation
    invalidate_on_project_file_mutation()
