# api_projects/crs.py
"""
Systèmes de coordonnées de référence (SCR).

Accepte les identifiants ``EPSG:4326``, ``CRS:84`` et les URN OGC
(``urn:ogc:def:crs:EPSG::4326``). La description du SCR (géographique ou
projeté, unités) est lue dans la base PROJ via GDAL.
"""

from functools import lru_cache
import logging
import math
import re

from django.contrib.gis.gdal import CoordTransform, GDALException, SpatialReference
from django.contrib.gis.geos import GEOSException, Polygon

logger = logging.getLogger(__name__)

_AUTHID_RE = re.compile(r'^(?:urn:ogc:def:crs:)?(EPSG|CRS|OGC)(?::[\d.]*)?:+(\w+)$', re.IGNORECASE)

# Longueur d'un degré à l'équateur (m)
METERS_PER_DEGREE = 111319.49079327357


@lru_cache(maxsize=64)
def _spatial_reference(srid: int):
    try:
        return SpatialReference(srid)
    except GDALException as e:
        logger.warning(f"SCR EPSG:{srid} inconnu : {e}")
        return None


class CoordinateReferenceSystem:
    """SCR identifié par son code d'autorité."""

    def __init__(self, definition: str = ''):
        self.authid = ''
        self.srid = None
        self._lon_lat_order = False
        self._parse(definition or '')

    def _parse(self, definition: str):
        match = _AUTHID_RE.match(definition.strip())
        if not match:
            return
        authority, code = match.group(1).upper(), match.group(2).upper()

        if code in ('84', 'CRS84') and authority in ('CRS', 'OGC'):
            # WGS84 toujours en ordre longitude/latitude
            self.authid = 'CRS:84'
            self.srid = 4326
            self._lon_lat_order = True
        elif authority == 'EPSG' and code.isdigit():
            self.authid = f'EPSG:{int(code)}'
            self.srid = int(code)

    @classmethod
    def from_srid(cls, srid: int) -> 'CoordinateReferenceSystem':
        return cls(f'EPSG:{srid}')

    @property
    def srs(self):
        if self.srid is None:
            return None
        return _spatial_reference(self.srid)

    def is_valid(self) -> bool:
        return self.srs is not None

    @property
    def geographic(self) -> bool:
        srs = self.srs
        return bool(srs is not None and srs.geographic)

    @property
    def map_units(self) -> str:
        return 'degrees' if self.geographic else 'meters'

    @property
    def description(self) -> str:
        srs = self.srs
        return srs.name if srs is not None else ''

    def has_axis_inverted(self) -> bool:
        """Vrai pour les SCR géographiques EPSG (latitude en premier en WMS 1.3.0)."""
        return self.geographic and not self._lon_lat_order

    def units_to_meters(self, latitude: float = 0.0) -> float:
        """Facteur unités de carte → mètres (à la latitude donnée pour les degrés)."""
        if self.geographic:
            return METERS_PER_DEGREE * max(math.cos(math.radians(latitude)), 1e-6)
        srs = self.srs
        if srs is not None and srs.linear_units:
            return srs.linear_units
        return 1.0

    def transform_extent(self, extent, destination: 'CoordinateReferenceSystem'):
        """Reprojette une emprise (xmin, ymin, xmax, ymax) ; None en cas d'échec."""
        if destination.srid == self.srid:
            return tuple(extent)
        if not self.is_valid() or not destination.is_valid():
            return None
        try:
            polygon = Polygon.from_bbox(extent)
            polygon.srid = self.srid
            polygon.transform(CoordTransform(self.srs, destination.srs))
            return polygon.extent
        except (GDALException, GEOSException) as e:
            logger.warning(f"Reprojection {self.authid} → {destination.authid} impossible : {e}")
            return None

    def transform_geometry(self, geometry, destination: 'CoordinateReferenceSystem'):
        if geometry is None or destination.srid == self.srid or destination.srid is None:
            return geometry
        clone = geometry.clone()
        clone.srid = self.srid
        clone.transform(destination.srid)
        return clone

    def __eq__(self, other):
        return isinstance(other, CoordinateReferenceSystem) and other.srid == self.srid

    def __hash__(self):
        return hash(self.srid)

    def __bool__(self):
        return self.srid is not None

    def __repr__(self):
        return f'<CoordinateReferenceSystem {self.authid or "invalid"}>'
