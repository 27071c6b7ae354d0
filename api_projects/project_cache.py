# api_projects/project_cache.py
"""
Cache des projets chargés, par fichier.

Un projet est relu quand la date de modification du fichier change. Le nombre
de projets gardés en mémoire est borné (CARTOSIG_PROJECT_CACHE_SIZE), le moins
récemment utilisé est évincé.
"""

from collections import OrderedDict
from pathlib import Path
from threading import Lock
from typing import Optional
import logging

from django.conf import settings

from .project import Project

logger = logging.getLogger(__name__)

_projects: 'OrderedDict[str, tuple]' = OrderedDict()
_lock = Lock()


class ProjectNotFound(Exception):
    pass


def resolve_project_path(map_parameter: Optional[str] = None) -> str:
    """
    Chemin du fichier projet désigné par MAP.

    MAP peut être le nom d'un ProjectFile actif ou un chemin situé sous
    CARTOSIG_PROJECT_ROOT. Sans MAP, le projet par défaut
    CARTOSIG_PROJECT_FILE est utilisé.

    Raises:
        ProjectNotFound: aucun projet, ou chemin hors du répertoire autorisé
    """
    from .models import ProjectFile

    if not map_parameter:
        default = getattr(settings, 'CARTOSIG_PROJECT_FILE', '')
        if not default:
            raise ProjectNotFound('Aucun projet indiqué (paramètre MAP) et aucun projet par défaut configuré')
        return default

    registered = ProjectFile.objects.filter(nom=map_parameter, actif=True).first()
    if registered is not None:
        return registered.chemin

    root = getattr(settings, 'CARTOSIG_PROJECT_ROOT', '')
    if not root:
        raise ProjectNotFound(f"Projet non enregistré : {map_parameter}")
    root_path = Path(root).resolve()
    candidate = Path(map_parameter)
    if not candidate.is_absolute():
        candidate = root_path / candidate
    candidate = candidate.resolve()
    if candidate != root_path and root_path not in candidate.parents:
        logger.warning(f"MAP hors de CARTOSIG_PROJECT_ROOT refusé : {map_parameter}")
        raise ProjectNotFound(f"Projet non enregistré : {map_parameter}")
    return str(candidate)


def get_project(path: str) -> Project:
    """Projet lu depuis path, relu si le fichier a changé."""
    file_path = Path(path)
    try:
        mtime = file_path.stat().st_mtime
    except OSError:
        raise ProjectNotFound(f"Fichier projet introuvable : {path}")

    key = str(file_path.resolve())
    with _lock:
        cached = _projects.get(key)
        if cached is not None and cached[0] == mtime:
            _projects.move_to_end(key)
            return cached[1]

        project = Project()
        if not project.read(key):
            raise ProjectNotFound(project.error)

        _projects[key] = (mtime, project)
        _projects.move_to_end(key)
        max_size = getattr(settings, 'CARTOSIG_PROJECT_CACHE_SIZE', 20)
        while len(_projects) > max_size:
            evicted, _ = _projects.popitem(last=False)
            logger.debug(f"Projet évincé du cache : {evicted}")

    logger.info(f"Projet chargé : {key}")
    return project


def clear():
    with _lock:
        _projects.clear()
