# api_geometry/services/validation.py
"""
Service de validation topologique et opérations géométriques pour CartoSIG.
Toutes les opérations passent par le moteur GEOS (api_geometry.engine).

Les géométries sans SRID sont supposées en WGS84 (degrés) ; les conversions
en mètres sont alors des approximations à la latitude du centroïde.
"""

from typing import Dict, List, Any, Optional, Tuple
import math
import logging

from django.contrib.gis.geos import GEOSGeometry, Point, LineString, Polygon

from ..engine import CAP_ROUND, JOIN_ROUND, GeosGeometryEngine, create_geometry_engine

logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111000


def _is_geographic(geometry: GEOSGeometry) -> bool:
    if not geometry.srid:
        return True
    srs = geometry.srs
    return srs is None or srs.geographic


# =============================================================================
# VALIDATION TOPOLOGIQUE
# =============================================================================

def validate_geometry(geometry: GEOSGeometry) -> Dict[str, Any]:
    """
    Valide une géométrie et retourne un rapport détaillé.

    Args:
        geometry: Géométrie GEOS à valider

    Returns:
        Dict avec is_valid, errors, warnings, suggestions
    """
    engine = create_geometry_engine(geometry)
    result = {
        'is_valid': True,
        'errors': [],
        'warnings': [],
        'suggestions': [],
        'geometry_type': geometry.geom_type,
        'num_coords': geometry.num_coords,
        'num_geoms': geometry.num_geom,
    }

    if engine.is_empty():
        result['is_valid'] = False
        result['errors'].append({
            'code': 'EMPTY_GEOMETRY',
            'message': 'La géométrie est vide'
        })
        return result

    if not engine.is_valid():
        result['is_valid'] = False
        result['errors'].append({
            'code': 'INVALID_GEOMETRY',
            'message': f'Géométrie invalide: {geometry.valid_reason}',
            'reason': geometry.valid_reason
        })
        result['suggestions'].append('Un buffer de distance nulle corrige la plupart des polygones invalides')

    if geometry.geom_type == 'Polygon':
        _validate_polygon(geometry, result)
    elif geometry.geom_type == 'MultiPolygon':
        for i, poly in enumerate(geometry):
            _merge_sub_result(result, _validate_polygon(poly, _empty_result()), 'polygon_index', i)
    elif geometry.geom_type == 'LineString':
        _validate_linestring(geometry, result)
    elif geometry.geom_type == 'MultiLineString':
        for i, line in enumerate(geometry):
            _merge_sub_result(result, _validate_linestring(line, _empty_result()), 'line_index', i)
    elif geometry.geom_type == 'Point':
        _validate_point(geometry, result)

    if result['errors']:
        result['is_valid'] = False
    return result


def _empty_result() -> Dict[str, List]:
    return {'errors': [], 'warnings': [], 'suggestions': []}


def _merge_sub_result(result: Dict, sub_result: Dict, index_key: str, index: int):
    for error in sub_result['errors']:
        error[index_key] = index
        result['errors'].append(error)
    for warning in sub_result['warnings']:
        warning[index_key] = index
        result['warnings'].append(warning)


def _validate_polygon(polygon: Polygon, result: Dict) -> Dict:
    """Validations spécifiques aux polygones."""
    engine = create_geometry_engine(polygon)

    area = engine.area()
    if 0 <= area < 1e-10:
        result['warnings'].append({
            'code': 'TINY_AREA',
            'message': 'Polygone avec une aire très petite',
            'area': area
        })

    if not polygon.exterior_ring.simple:
        result['errors'].append({
            'code': 'SELF_INTERSECTION',
            'message': 'Le polygone présente des auto-intersections'
        })

    # Orientation du ring extérieur (anti-horaire en GeoJSON)
    coords = list(polygon.exterior_ring.coords)
    if len(coords) >= 4:
        signed_area = sum(
            (coords[i + 1][0] - coords[i][0]) * (coords[i + 1][1] + coords[i][1])
            for i in range(len(coords) - 1)
        )
        if signed_area > 0:
            result['warnings'].append({
                'code': 'CLOCKWISE_EXTERIOR',
                'message': 'Le ring extérieur est orienté dans le sens horaire (convention GeoJSON: anti-horaire)'
            })

    num_holes = polygon.num_interior_rings
    if num_holes > 0:
        result['warnings'].append({
            'code': 'HAS_HOLES',
            'message': f'Le polygone contient {num_holes} trou(s)',
            'num_holes': num_holes
        })
        shell = Polygon(polygon.exterior_ring)
        shell_engine = create_geometry_engine(shell)
        for i in range(num_holes):
            if not shell_engine.contains(Polygon(polygon[i + 1])):
                result['errors'].append({
                    'code': 'HOLE_OUTSIDE',
                    'message': f'Le trou {i} dépasse du polygone extérieur',
                    'hole_index': i
                })

    # -2 : le dernier sommet ferme l'anneau
    for i in range(len(coords) - 2):
        if coords[i] == coords[i + 1]:
            result['warnings'].append({
                'code': 'DUPLICATE_VERTEX',
                'message': f'Sommet dupliqué à l\'index {i}',
                'index': i,
                'coordinate': coords[i]
            })

    return result


def _validate_linestring(line: LineString, result: Dict) -> Dict:
    """Validations spécifiques aux lignes."""
    length = create_geometry_engine(line).length()
    if 0 <= length < 1e-10:
        result['warnings'].append({
            'code': 'TINY_LENGTH',
            'message': 'Ligne avec une longueur très petite',
            'length': length
        })

    if line.num_points < 2:
        result['errors'].append({
            'code': 'INSUFFICIENT_POINTS',
            'message': 'Une ligne doit avoir au moins 2 points',
            'num_points': line.num_points
        })

    if not line.simple:
        result['warnings'].append({
            'code': 'SELF_INTERSECTION',
            'message': 'La ligne présente des auto-intersections'
        })

    return result


def _validate_point(point: Point, result: Dict) -> Dict:
    if not _is_geographic(point):
        return result

    lon, lat = point.x, point.y
    if not (-180 <= lon <= 180):
        result['errors'].append({
            'code': 'INVALID_LONGITUDE',
            'message': f'Longitude hors limites: {lon}',
            'value': lon
        })
    if not (-90 <= lat <= 90):
        result['errors'].append({
            'code': 'INVALID_LATITUDE',
            'message': f'Latitude hors limites: {lat}',
            'value': lat
        })
    return result


def check_within_boundary(geometry: GEOSGeometry, boundary: GEOSGeometry) -> Dict[str, Any]:
    """
    Vérifie si une géométrie est contenue dans une emprise.

    Returns:
        Dict avec is_within, percentage_inside, warnings
    """
    result = {
        'is_within': True,
        'percentage_inside': 100.0,
        'warnings': [],
    }

    engine = create_geometry_engine(boundary)
    if engine.contains(geometry):
        return result

    inside = engine.intersection(geometry)
    if inside is None:
        result['is_within'] = False
        result['warnings'].append({'code': 'CALCULATION_ERROR', 'message': engine.last_error})
        return result

    if geometry.area > 0:
        percentage = inside.area / geometry.area * 100
    elif geometry.length > 0:
        percentage = inside.length / geometry.length * 100
    else:
        percentage = 0.0

    result['percentage_inside'] = round(percentage, 2)
    if percentage < 100:
        result['is_within'] = False
        result['warnings'].append({
            'code': 'OUTSIDE_BOUNDARY',
            'message': f'{100 - percentage:.1f}% de l\'objet est hors de l\'emprise',
            'percentage_outside': round(100 - percentage, 2)
        })
    if percentage == 0:
        result['warnings'].append({
            'code': 'COMPLETELY_OUTSIDE',
            'message': 'L\'objet est entièrement hors de l\'emprise'
        })
    return result


# =============================================================================
# OPÉRATIONS GÉOMÉTRIQUES
# =============================================================================

def simplify_geometry(
    geometry: GEOSGeometry,
    tolerance: float = 0.0001,
    preserve_topology: bool = True
) -> Tuple[Optional[GEOSGeometry], Dict[str, Any]]:
    """
    Simplifie une géométrie en réduisant le nombre de sommets.

    Returns:
        Tuple (géométrie simplifiée, statistiques)
    """
    engine = create_geometry_engine(geometry)
    original_coords = geometry.num_coords
    simplified = engine.simplify(tolerance, preserving_topology=preserve_topology)

    stats = {
        'original_coords': original_coords,
        'tolerance_used': tolerance,
        'topology_preserved': preserve_topology,
        'errors': [],
    }
    if simplified is None:
        stats['errors'].append(engine.last_error)
        return None, stats

    stats.update({
        'simplified_coords': simplified.num_coords,
        'reduction_percent': round((1 - simplified.num_coords / original_coords) * 100, 2) if original_coords > 0 else 0,
        'is_valid': simplified.valid,
    })
    return simplified, stats


def split_polygon(
    polygon: GEOSGeometry,
    split_line: LineString
) -> Tuple[List[GEOSGeometry], Dict[str, Any]]:
    """
    Divise un polygone avec une ligne de coupe.

    La ligne est épaissie d'un buffer infime puis retranchée du polygone ;
    les fragments de moins de 0,1 % de l'aire d'origine sont écartés.
    """
    result_polygons = []
    stats = {
        'success': False,
        'num_parts': 0,
        'errors': []
    }

    if polygon.geom_type not in ('Polygon', 'MultiPolygon'):
        stats['errors'].append('La géométrie doit être un Polygon ou MultiPolygon')
        return result_polygons, stats

    engine = create_geometry_engine(polygon)
    if not engine.intersects(split_line):
        stats['errors'].append('La ligne de coupe ne traverse pas le polygone')
        return result_polygons, stats

    line_buffer = create_geometry_engine(split_line).buffer(1e-9)
    result = engine.difference(line_buffer)
    if result is None:
        stats['errors'].append(engine.last_error)
        logger.error(f"Erreur split_polygon: {engine.last_error}")
        return result_polygons, stats

    if result.geom_type == 'Polygon':
        result_polygons = [result]
    elif result.geom_type in ('MultiPolygon', 'GeometryCollection'):
        result_polygons = [g for g in result if g.geom_type == 'Polygon']

    min_area = polygon.area * 0.001
    result_polygons = [p for p in result_polygons if p.area > min_area]

    stats['success'] = len(result_polygons) > 1
    stats['num_parts'] = len(result_polygons)
    stats['areas'] = [p.area for p in result_polygons]
    return result_polygons, stats


def merge_polygons(
    polygons: List[GEOSGeometry]
) -> Tuple[Optional[GEOSGeometry], Dict[str, Any]]:
    """
    Fusionne plusieurs polygones en un seul (union GEOS en cascade).

    Returns:
        Tuple (polygone fusionné ou None, statistiques)
    """
    stats = {
        'success': False,
        'input_count': len(polygons),
        'output_type': None,
        'total_area_before': 0,
        'total_area_after': 0,
        'errors': []
    }

    if len(polygons) < 2:
        stats['errors'].append('Au moins 2 polygones sont nécessaires pour une fusion')
        return None, stats

    stats['total_area_before'] = sum(p.area for p in polygons)

    engine = GeosGeometryEngine(polygons[0])
    result = engine.combine_all(polygons)
    if result is None:
        stats['errors'].append(engine.last_error)
        logger.error(f"Erreur merge_polygons: {engine.last_error}")
        return None, stats

    stats['success'] = True
    stats['output_type'] = result.geom_type
    stats['total_area_after'] = result.area
    stats['is_valid'] = result.valid

    if result.geom_type == 'MultiPolygon':
        stats['warnings'] = ['Les polygones ne sont pas tous adjacents, résultat en MultiPolygon']
        stats['num_parts'] = result.num_geom

    return result, stats


def calculate_geometry_metrics(geometry: GEOSGeometry) -> Dict[str, Any]:
    """
    Calcule les métriques d'une géométrie (aire, longueur, périmètre, centroïde).
    """
    engine = create_geometry_engine(geometry)
    geographic = _is_geographic(geometry)
    centroid = engine.centroid()
    extent = geometry.extent

    metrics = {
        'geometry_type': geometry.geom_type,
        'srid': geometry.srid,
        'num_coords': geometry.num_coords,
        'is_valid': engine.is_valid(),
        'centroid': {'x': centroid.x, 'y': centroid.y} if centroid else None,
        'bbox': {'xmin': extent[0], 'ymin': extent[1], 'xmax': extent[2], 'ymax': extent[3]},
    }

    # Facteur unités de carte → mètres
    if geographic and centroid is not None:
        cos_lat = math.cos(math.radians(centroid.y))
        to_meters = METERS_PER_DEGREE * cos_lat
    else:
        to_meters = 1.0

    if geometry.geom_type in ('Polygon', 'MultiPolygon'):
        area = engine.area()
        metrics['area'] = area
        area_m2 = area * METERS_PER_DEGREE * to_meters if geographic else area
        metrics['area_m2'] = round(area_m2, 2)
        metrics['area_hectares'] = round(area_m2 / 10000, 4)

        polygons = [geometry] if geometry.geom_type == 'Polygon' else list(geometry)
        perimeter = sum(p.exterior_ring.length for p in polygons)
        metrics['perimeter'] = perimeter
        metrics['perimeter_m'] = round(perimeter * to_meters, 2)

    elif geometry.geom_type in ('LineString', 'MultiLineString'):
        length = engine.length()
        metrics['length'] = length
        metrics['length_m'] = round(length * to_meters, 2)
        metrics['length_km'] = round(length * to_meters / 1000, 4)

    elif geometry.geom_type == 'MultiPoint':
        metrics['num_points'] = geometry.num_geom

    return metrics


def buffer_geometry(
    geometry: GEOSGeometry,
    distance_meters: float,
    quad_segs: int = 8,
    end_cap_style: Optional[int] = None,
    join_style: Optional[int] = None,
    mitre_limit: float = 5.0
) -> Tuple[Optional[GEOSGeometry], Dict[str, Any]]:
    """
    Crée un buffer autour d'une géométrie.

    Args:
        geometry: Géométrie source
        distance_meters: Distance du buffer en mètres
        quad_segs: Nombre de segments par quart de cercle
        end_cap_style: 1 rond, 2 plat, 3 carré (buffer stylé si renseigné)
        join_style: 1 rond, 2 mitre, 3 biseau
        mitre_limit: Limite des jointures en mitre

    Returns:
        Tuple (géométrie bufferisée, statistiques)
    """
    engine = create_geometry_engine(geometry)
    if _is_geographic(geometry):
        cos_lat = math.cos(math.radians(geometry.centroid.y))
        distance = distance_meters / (METERS_PER_DEGREE * cos_lat)
    else:
        distance = distance_meters

    if end_cap_style is None and join_style is None:
        buffered = engine.buffer(distance, quad_segs)
    else:
        buffered = engine.buffer_with_style(
            distance, quad_segs,
            end_cap_style=end_cap_style or CAP_ROUND,
            join_style=join_style or JOIN_ROUND,
            mitre_limit=mitre_limit,
        )
    stats = {
        'input_type': geometry.geom_type,
        'distance_meters': distance_meters,
        'distance_map_units': distance,
        'errors': [],
    }
    if buffered is None:
        stats['errors'].append(engine.last_error)
        return None, stats

    stats['output_type'] = buffered.geom_type
    stats['area_increase'] = buffered.area - geometry.area
    return buffered, stats
