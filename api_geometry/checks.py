# api_geometry/checks.py
"""
Vérification des géométries en double dans une couche.

Deux entités sont considérées comme doublons quand la différence symétrique
de leurs géométries a une aire inférieure à la tolérance. Chaque paire n'est
signalée qu'une fois, sur l'entité d'identifiant le plus grand.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import logging

from django.contrib.gis.geos import GEOSGeometry, Point

from .engine import create_geometry_engine

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-8


def _bbox_intersects(a: Tuple[float, ...], b: Tuple[float, ...]) -> bool:
    return not (a[2] < b[0] or b[2] < a[0] or a[3] < b[1] or b[3] < a[1])


class FeaturePool:
    """Ensemble d'entités en mémoire indexées par identifiant."""

    def __init__(self, features: Optional[Dict[int, GEOSGeometry]] = None):
        self._features: Dict[int, GEOSGeometry] = dict(features or {})

    @classmethod
    def from_layer(cls, layer) -> 'FeaturePool':
        return cls({f.id: f.geometry for f in layer.get_features() if f.geometry is not None})

    def get(self, feature_id: int) -> Optional[GEOSGeometry]:
        return self._features.get(feature_id)

    def feature_ids(self) -> List[int]:
        return sorted(self._features)

    def get_intersects(self, extent: Tuple[float, float, float, float]) -> List[int]:
        return [
            fid for fid, geom in sorted(self._features.items())
            if not geom.empty and _bbox_intersects(geom.extent, extent)
        ]

    def delete_feature(self, feature_id: int):
        self._features.pop(feature_id, None)

    def __len__(self):
        return len(self._features)


class CheckError:
    """Erreur détectée par une vérification, avec son état de correction."""

    PENDING = 'pending'
    FIXED = 'fixed'
    FIX_FAILED = 'fix_failed'
    OBSOLETE = 'obsolete'

    def __init__(self, feature_id: int, location: Optional[Point], duplicates: List[int]):
        self.feature_id = feature_id
        self.location = location
        self.duplicates = sorted(duplicates)
        self.status = self.PENDING
        self.resolution_method = None
        self.resolution_message = ''

    def set_fixed(self, method: int):
        self.status = self.FIXED
        self.resolution_method = method

    def set_fix_failed(self, message: str):
        self.status = self.FIX_FAILED
        self.resolution_message = message

    def set_obsolete(self):
        self.status = self.OBSOLETE

    def to_dict(self) -> dict:
        return {
            'feature_id': self.feature_id,
            'location': [self.location.x, self.location.y] if self.location else None,
            'duplicates': self.duplicates,
            'status': self.status,
            'resolution_message': self.resolution_message,
        }

    def __repr__(self):
        return f'<CheckError {self.feature_id} duplicates={self.duplicates} {self.status}>'


class GeometryDuplicateCheck:
    NO_CHANGE = 0
    REMOVE_DUPLICATES = 1

    def __init__(self, feature_pool: FeaturePool, tolerance: float = DEFAULT_TOLERANCE):
        self.feature_pool = feature_pool
        self.tolerance = tolerance

    def _is_duplicate(self, engine, other: GEOSGeometry) -> Tuple[bool, Optional[GEOSGeometry]]:
        diff = engine.sym_difference(other)
        return diff is not None and diff.area < self.tolerance, diff

    def collect_errors(self, ids: Optional[Iterable[int]] = None) -> Tuple[List[CheckError], List[str]]:
        """
        Parcourt les entités et retourne (erreurs, messages).

        Les messages signalent les comparaisons que GEOS n'a pas pu effectuer.
        """
        errors: List[CheckError] = []
        messages: List[str] = []
        feature_ids = list(ids) if ids else self.feature_pool.feature_ids()

        for feature_id in feature_ids:
            geometry = self.feature_pool.get(feature_id)
            if geometry is None:
                continue
            engine = create_geometry_engine(geometry, self.tolerance)

            duplicates = []
            for other_id in self.feature_pool.get_intersects(geometry.extent):
                if other_id >= feature_id:
                    continue
                other = self.feature_pool.get(other_id)
                if other is None:
                    continue
                is_duplicate, diff = self._is_duplicate(engine, other)
                if is_duplicate:
                    duplicates.append(other_id)
                elif diff is None:
                    messages.append(
                        f"Duplicate check between features {feature_id} and {other_id}: {engine.last_error}"
                    )

            if duplicates:
                errors.append(CheckError(feature_id, engine.centroid(), duplicates))

        logger.info(f"Vérification doublons : {len(errors)} erreur(s) sur {len(feature_ids)} entité(s)")
        return errors, messages

    def fix_error(self, error: CheckError, method: int) -> Dict[int, List[str]]:
        """Applique une méthode de correction ; retourne le journal des changements."""
        changes: Dict[int, List[str]] = {}
        geometry = self.feature_pool.get(error.feature_id)
        if geometry is None:
            error.set_obsolete()
            return changes

        if method == self.NO_CHANGE:
            error.set_fixed(method)
        elif method == self.REMOVE_DUPLICATES:
            engine = create_geometry_engine(geometry, self.tolerance)
            for other_id in error.duplicates:
                other = self.feature_pool.get(other_id)
                if other is None:
                    continue
                is_duplicate, _ = self._is_duplicate(engine, other)
                if is_duplicate:
                    self.feature_pool.delete_feature(other_id)
                    changes.setdefault(other_id, []).append('removed')
            error.set_fixed(method)
        else:
            error.set_fix_failed('Unknown method')
        return changes

    @staticmethod
    def resolution_methods() -> List[str]:
        return ['No action', 'Remove duplicates']
