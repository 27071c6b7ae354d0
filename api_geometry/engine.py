# api_geometry/engine.py
"""
Moteur géométrique CartoSIG.

Toutes les opérations (prédicats, overlays, buffers, simplifications) sont
déléguées à GEOS via GeoDjango. Le moteur ajoute trois choses :

  - l'accrochage des coordonnées sur une grille de précision avant chaque appel,
  - une géométrie préparée (PreparedGeometry) pour les prédicats répétés,
  - une gestion d'erreur uniforme : une exception GEOS est journalisée,
    son message est conservé dans ``last_error`` et la méthode retourne
    sa valeur d'échec (None, False, -1.0 ou '').
"""

from ctypes import c_double, c_int
from enum import Enum
from functools import wraps
from typing import Iterable, List, Optional
import logging

from django.contrib.gis.geos import (
    GEOSGeometry, GEOSException, Point, LineString, LinearRing, Polygon,
    MultiPoint, MultiLineString, MultiPolygon, GeometryCollection,
)
from django.contrib.gis.geos import prototypes as capi
from django.contrib.gis.geos.libgeos import GEOM_PTR
from django.contrib.gis.geos.prototypes.coordseq import CsOutput
from django.contrib.gis.geos.prototypes.topology import Topology

logger = logging.getLogger(__name__)


# =============================================================================
# FONCTIONS GEOS NON EXPOSÉES PAR GEODJANGO
# =============================================================================

geos_offset_curve = Topology(
    'GEOSOffsetCurve', argtypes=[GEOM_PTR, c_double, c_int, c_int, c_double]
)
geos_nearest_points = CsOutput('GEOSNearestPoints', argtypes=[GEOM_PTR, GEOM_PTR])


class Overlay(Enum):
    INTERSECTION = 'intersection'
    DIFFERENCE = 'difference'
    UNION = 'union'
    SYMDIFFERENCE = 'symdifference'


class Relation(Enum):
    INTERSECTS = 'intersects'
    TOUCHES = 'touches'
    CROSSES = 'crosses'
    WITHIN = 'within'
    OVERLAPS = 'overlaps'
    CONTAINS = 'contains'
    DISJOINT = 'disjoint'


# Styles GEOS (valeurs de l'API C)
CAP_ROUND, CAP_FLAT, CAP_SQUARE = 1, 2, 3
JOIN_ROUND, JOIN_MITRE, JOIN_BEVEL = 1, 2, 3


# =============================================================================
# GRILLE DE PRÉCISION
# =============================================================================

def _round(value: float, precision: float) -> float:
    return round(value / precision) * precision


def _snap_coords(coords, precision):
    return tuple(tuple(_round(c, precision) for c in xy) for xy in coords)


def snap_to_grid(geometry: GEOSGeometry, precision: float) -> GEOSGeometry:
    """Retourne une copie de la géométrie avec ses coordonnées arrondies sur la grille."""
    if precision <= 0 or geometry.empty:
        return geometry

    srid = geometry.srid
    geom_type = geometry.geom_type

    if geom_type == 'Point':
        result = Point(*(_round(c, precision) for c in geometry.coords))
    elif geom_type == 'LineString':
        result = LineString(_snap_coords(geometry.coords, precision))
    elif geom_type == 'LinearRing':
        result = LinearRing(_snap_coords(geometry.coords, precision))
    elif geom_type == 'Polygon':
        result = Polygon(*[_snap_coords(ring, precision) for ring in geometry.coords])
    elif geom_type == 'MultiPoint':
        result = MultiPoint(*[snap_to_grid(g, precision) for g in geometry])
    elif geom_type == 'MultiLineString':
        result = MultiLineString(*[snap_to_grid(g, precision) for g in geometry])
    elif geom_type == 'MultiPolygon':
        result = MultiPolygon(*[snap_to_grid(g, precision) for g in geometry])
    else:
        result = GeometryCollection(*[snap_to_grid(g, precision) for g in geometry])

    result.srid = srid
    return result


def _catch_geos(default):
    """Décorateur : une erreur GEOS est journalisée et la valeur d'échec retournée."""
    def decorator(method):
        @wraps(method)
        def wrapper(self, *args, **kwargs):
            self.last_error = ''
            try:
                return method(self, *args, **kwargs)
            except (GEOSException, TypeError, ValueError) as e:
                self.last_error = str(e)
                logger.warning(f"GEOS {method.__name__} : {e}")
                return default
        return wrapper
    return decorator


# =============================================================================
# MOTEURS
# =============================================================================

class SimpleFeatureGeometryEngine:
    """
    Base commune des moteurs : une géométrie de référence et une précision.

    Toute affectation de ``geometry`` déclenche ``geometry_changed()``.
    """

    def __init__(self, geometry: Optional[GEOSGeometry], precision: float = 0.0):
        self.precision = precision
        self.last_error = ''
        self._geometry = geometry

    @property
    def geometry(self) -> Optional[GEOSGeometry]:
        return self._geometry

    @geometry.setter
    def geometry(self, value: Optional[GEOSGeometry]):
        self._geometry = value
        self.geometry_changed()

    def geometry_changed(self):
        pass

    def prepare_geometry(self):
        pass


class GeosGeometryEngine(SimpleFeatureGeometryEngine):
    """
    Moteur géométrique GEOS.

    Exemple:
        engine = GeosGeometryEngine(parcelle, precision=1e-8)
        engine.prepare_geometry()
        if engine.intersects(route):
            troncon = engine.intersection(route)
    """

    def __init__(self, geometry: Optional[GEOSGeometry], precision: float = 0.0):
        super().__init__(geometry, precision)
        self._geos = self._as_geos(geometry)
        self._prepared = None

    def geometry_changed(self):
        self._geos = self._as_geos(self._geometry)
        if self._prepared is not None:
            self._prepared = None
            self.prepare_geometry()

    def prepare_geometry(self):
        self._prepared = None
        if self._geos is not None:
            self._prepared = self._geos.prepared

    @property
    def is_prepared(self) -> bool:
        return self._prepared is not None

    def _as_geos(self, geometry) -> Optional[GEOSGeometry]:
        if geometry is None:
            return None
        if not isinstance(geometry, GEOSGeometry):
            geometry = GEOSGeometry(geometry)
        return snap_to_grid(geometry, self.precision)

    # -------------------------------------------------------------------------
    # Overlay
    # -------------------------------------------------------------------------

    def intersection(self, other: GEOSGeometry) -> Optional[GEOSGeometry]:
        return self.overlay(other, Overlay.INTERSECTION)

    def difference(self, other: GEOSGeometry) -> Optional[GEOSGeometry]:
        return self.overlay(other, Overlay.DIFFERENCE)

    def combine(self, other: GEOSGeometry) -> Optional[GEOSGeometry]:
        return self.overlay(other, Overlay.UNION)

    def sym_difference(self, other: GEOSGeometry) -> Optional[GEOSGeometry]:
        return self.overlay(other, Overlay.SYMDIFFERENCE)

    @_catch_geos(None)
    def overlay(self, other: GEOSGeometry, op: Overlay) -> Optional[GEOSGeometry]:
        if self._geos is None or other is None:
            return None
        other_geos = self._as_geos(other)

        if op == Overlay.INTERSECTION:
            return self._geos.intersection(other_geos)
        if op == Overlay.DIFFERENCE:
            return self._geos.difference(other_geos)
        if op == Overlay.UNION:
            result = self._geos.union(other_geos)
            # Recoller les segments d'une union de lignes
            if result.geom_type == 'MultiLineString':
                result = result.merged
            return result
        if op == Overlay.SYMDIFFERENCE:
            return self._geos.sym_difference(other_geos)
        return None

    @_catch_geos(None)
    def combine_all(self, geometries: Iterable[Optional[GEOSGeometry]]) -> Optional[GEOSGeometry]:
        """Union d'une liste de géométries (la géométrie du moteur n'y participe pas)."""
        geometries = list(geometries)
        if not geometries:
            return None
        if len(geometries) == 1:
            return geometries[0]
        collection = self.create_geos_collection(self._as_geos(g) for g in geometries)
        if collection is None:
            return None
        return collection.unary_union

    # -------------------------------------------------------------------------
    # Constructions
    # -------------------------------------------------------------------------

    @_catch_geos(None)
    def buffer(self, distance: float, segments: int = 8) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        return self._geos.buffer(distance, quadsegs=segments)

    @_catch_geos(None)
    def buffer_with_style(
        self,
        distance: float,
        segments: int = 8,
        end_cap_style: int = CAP_ROUND,
        join_style: int = JOIN_ROUND,
        mitre_limit: float = 5.0,
    ) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        return self._geos.buffer_with_style(
            distance, quadsegs=segments, end_cap_style=end_cap_style,
            join_style=join_style, mitre_limit=mitre_limit,
        )

    @_catch_geos(None)
    def simplify(self, tolerance: float, preserving_topology: bool = True) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        return self._geos.simplify(tolerance, preserve_topology=preserving_topology)

    @_catch_geos(None)
    def interpolate(self, distance: float) -> Optional[Point]:
        if self._geos is None:
            return None
        if self._geos.geom_type not in ('LineString', 'MultiLineString'):
            raise TypeError(f'interpolate not supported on {self._geos.geom_type}')
        return self._geos.interpolate(distance)

    @_catch_geos(None)
    def envelope(self) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        return self._geos.envelope

    @_catch_geos(None)
    def centroid(self) -> Optional[Point]:
        if self._geos is None:
            return None
        return self._geos.centroid

    @_catch_geos(None)
    def point_on_surface(self) -> Optional[Point]:
        if self._geos is None:
            return None
        point = self._geos.point_on_surface
        if point is None or point.empty:
            return None
        return point

    @_catch_geos(None)
    def convex_hull(self) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        return self._geos.convex_hull

    @_catch_geos(None)
    def offset_curve(
        self,
        distance: float,
        segments: int = 8,
        join_style: int = JOIN_ROUND,
        mitre_limit: float = 5.0,
    ) -> Optional[GEOSGeometry]:
        if self._geos is None:
            return None
        ptr = geos_offset_curve(self._geos.ptr, distance, segments, join_style, mitre_limit)
        return GEOSGeometry(ptr, srid=self._geos.srid)

    # -------------------------------------------------------------------------
    # Mesures
    # -------------------------------------------------------------------------

    @_catch_geos(-1.0)
    def distance(self, other: GEOSGeometry) -> float:
        if self._geos is None or other is None:
            return -1.0
        return self._geos.distance(self._as_geos(other))

    @_catch_geos(-1.0)
    def area(self) -> float:
        if self._geos is None:
            return -1.0
        return self._geos.area

    @_catch_geos(-1.0)
    def length(self) -> float:
        if self._geos is None:
            return -1.0
        return self._geos.length

    @_catch_geos(None)
    def closest_point(self, other: GEOSGeometry) -> Optional[Point]:
        """Point de la géométrie du moteur le plus proche de ``other``."""
        line = self._nearest_points(other)
        if line is None:
            return None
        return Point(line[0], srid=line.srid)

    @_catch_geos(None)
    def shortest_line(self, other: GEOSGeometry) -> Optional[LineString]:
        """Segment le plus court reliant la géométrie du moteur à ``other``."""
        return self._nearest_points(other)

    def _nearest_points(self, other) -> Optional[LineString]:
        if self._geos is None or other is None:
            return None
        other_geos = self._as_geos(other)
        if self._geos.empty or other_geos.empty:
            return None
        cs_ptr = geos_nearest_points(self._geos.ptr, other_geos.ptr)
        return GEOSGeometry(capi.create_linestring(cs_ptr), srid=self._geos.srid)

    # -------------------------------------------------------------------------
    # Prédicats
    # -------------------------------------------------------------------------

    def intersects(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.INTERSECTS)

    def touches(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.TOUCHES)

    def crosses(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.CROSSES)

    def within(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.WITHIN)

    def overlaps(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.OVERLAPS)

    def contains(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.CONTAINS)

    def disjoint(self, other: GEOSGeometry) -> bool:
        return self.relation(other, Relation.DISJOINT)

    @_catch_geos(False)
    def relation(self, other: GEOSGeometry, relation: Relation) -> bool:
        if self._geos is None or other is None:
            return False
        try:
            relation = Relation(relation)
        except ValueError:
            return False

        other_geos = self._as_geos(other)
        subject = self._prepared if self._prepared is not None else self._geos
        return bool(getattr(subject, relation.value)(other_geos))

    @_catch_geos('')
    def relate(self, other: GEOSGeometry) -> str:
        """Matrice DE-9IM entre la géométrie du moteur et ``other``."""
        if self._geos is None or other is None:
            return ''
        return self._geos.relate(self._as_geos(other))

    @_catch_geos(False)
    def relate_pattern(self, other: GEOSGeometry, pattern: str) -> bool:
        if self._geos is None or other is None or not pattern:
            return False
        return self._geos.relate_pattern(self._as_geos(other), pattern)

    # -------------------------------------------------------------------------
    # Tests
    # -------------------------------------------------------------------------

    @_catch_geos(False)
    def is_valid(self) -> bool:
        if self._geos is None:
            return False
        return self._geos.valid

    @_catch_geos(False)
    def is_equal(self, other: GEOSGeometry) -> bool:
        if self._geos is None or other is None:
            return False
        return self._geos.equals(self._as_geos(other))

    @_catch_geos(False)
    def is_empty(self) -> bool:
        if self._geos is None:
            return False
        return self._geos.empty

    # -------------------------------------------------------------------------
    # Utilitaires
    # -------------------------------------------------------------------------

    @staticmethod
    def create_geos_collection(geometries: Iterable[Optional[GEOSGeometry]]) -> Optional[GeometryCollection]:
        """Collection GEOS des géométries non nulles (None si aucune)."""
        parts: List[GEOSGeometry] = [g for g in geometries if g is not None]
        if not parts:
            return None
        collection = GeometryCollection(*parts)
        collection.srid = parts[0].srid
        return collection


def create_geometry_engine(geometry: GEOSGeometry, precision: float = 0.0) -> GeosGeometryEngine:
    """Fabrique utilisée par les services et les vérifications."""
    return GeosGeometryEngine(geometry, precision)
