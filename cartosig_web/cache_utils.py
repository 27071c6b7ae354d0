"""
Gestion centralisée du cache.

Utilise un système de **compteurs de version** pour l'invalidation,
compatible avec tous les backends Django (mémoire locale et Redis).

Principe :
  - Chaque domaine de cache a un compteur de version (clé sans expiration).
  - Les clés de cache incluent la version courante du domaine.
  - Invalider = incrémenter le compteur → les anciennes clés deviennent orphelines
    et expirent naturellement après leur TTL.

Domaines :
  - CAPABILITIES : documents GetCapabilities / GetProjectSettings
  - PROJECTS     : résumés de projets exposés par l'API REST
"""

import hashlib
import json
import logging

from django.core.cache import cache

logger = logging.getLogger(__name__)

# ==============================================================================
# CLÉS DE VERSION PAR DOMAINE
# ==============================================================================

VERSION_KEYS = {
    'CAPABILITIES': 'cache_version:capabilities',
    'PROJECTS': 'cache_version:projects',
}

# ==============================================================================
# TTL PAR DOMAINE (secondes)
# ==============================================================================

CACHE_TTL = {
    'CAPABILITIES': 3600,   # 1 heure, invalidé à chaque relecture du projet
    'PROJECTS': 300,        # 5 minutes
}


# ==============================================================================
# API PUBLIQUE
# ==============================================================================

def get_cache_version(domain: str) -> int:
    """Retourne la version courante d'un domaine de cache."""
    key = VERSION_KEYS.get(domain)
    if not key:
        raise ValueError(f"Domaine de cache inconnu : {domain}")
    version = cache.get(key)
    if version is None:
        # timeout=None : la clé de version n'expire jamais
        cache.set(key, 0, timeout=None)
        return 0
    return version


def make_cache_key(domain: str, *parts) -> str:
    """Construit une clé de cache versionnée.

    Exemple:
        make_cache_key('CAPABILITIES', '/srv/demo.qgs', '1.3.0', 'localhost')
        → 'capabilities:v2:/srv/demo.qgs:1.3.0:localhost'
    """
    version = get_cache_version(domain)
    parts_str = ':'.join(str(p) for p in parts)
    return f'{domain.lower()}:v{version}:{parts_str}'


def get_cache_ttl(domain: str) -> int:
    """Retourne le TTL configuré pour un domaine."""
    return CACHE_TTL.get(domain, 300)


def cache_get(domain: str, *parts):
    """Récupère une valeur du cache (versionnée)."""
    return cache.get(make_cache_key(domain, *parts))


def cache_set(domain: str, *parts, data, ttl: int | None = None):
    """Stocke une valeur dans le cache (versionnée).

    Args:
        domain: Le domaine de cache
        *parts: Les parties de la clé (après le domaine et la version)
        data: Les données à stocker
        ttl: TTL en secondes (TTL du domaine par défaut)
    """
    timeout = ttl if ttl is not None else get_cache_ttl(domain)
    cache.set(make_cache_key(domain, *parts), data, timeout)


def invalidate(*domains: str):
    """Invalide un ou plusieurs domaines de cache.

    Exemples:
        invalidate('CAPABILITIES')
        invalidate('CAPABILITIES', 'PROJECTS')
    """
    for domain in domains:
        key = VERSION_KEYS.get(domain)
        if not key:
            logger.warning(f"Domaine de cache inconnu : {domain}")
            continue
        # Pas de cache.incr() : RedisCache sérialise les valeurs (pickle)
        version = cache.get(key)
        cache.set(key, (version or 0) + 1, timeout=None)


def hash_params(params: dict) -> str:
    """Hash un dictionnaire de paramètres pour l'inclure dans une clé de cache."""
    params_str = json.dumps(params, sort_keys=True, default=str)
    return hashlib.md5(params_str.encode()).hexdigest()[:8]


# ==============================================================================
# GRAPHE DE DÉPENDANCES : événements projet → domaines à invalider
# ==============================================================================

def invalidate_on_project_change():
    """Appelé après lecture, écriture ou effacement d'un projet."""
    invalidate('CAPABILITIES', 'PROJECTS')


def invalidate_on_project_file_mutation():
    """Appelé après create/update/delete d'un ProjectFile enregistré."""
    invalidate('PROJECTS', 'CAPABILITIES')
