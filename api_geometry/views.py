# api_geometry/views.py
from rest_framework import permissions
from rest_framework.views import APIView
from rest_framework.response import Response
from django.contrib.gis.gdal import GDALException
from django.contrib.gis.geos import GEOSGeometry, GEOSException
import json

from .checks import FeaturePool, GeometryDuplicateCheck, DEFAULT_TOLERANCE
from .engine import GeosGeometryEngine, Overlay, Relation
from .services.validation import (
    validate_geometry,
    check_within_boundary,
    simplify_geometry,
    split_polygon,
    merge_polygons,
    calculate_geometry_metrics,
    buffer_geometry,
)


def _parse_geometry(data):
    """GeoJSON (dict ou texte) ou WKT → GEOSGeometry."""
    if isinstance(data, dict):
        return GEOSGeometry(json.dumps(data))
    return GEOSGeometry(str(data))


def _to_geojson(geometry):
    if geometry is None:
        return None
    return json.loads(geometry.geojson)


def _required_geometries(request, *keys):
    """Lit les géométries obligatoires ; lève ValueError avec un message explicite."""
    geometries = []
    for key in keys:
        value = request.data.get(key)
        if not value:
            raise ValueError(f'{key} is required')
        geometries.append(_parse_geometry(value))
    return geometries


GEOMETRY_ERRORS = (ValueError, TypeError, GEOSException, GDALException)


class GeometryOverlayView(APIView):
    """
    POST /api/geometry/overlay/
    Intersection, différence, union ou différence symétrique de deux géométries.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "other": { GeoJSON geometry },
        "operation": "intersection",  // intersection | difference | union | symdifference
        "precision": 0  // Optional, grille d'accrochage des coordonnées
    }

    Response:
    {
        "geometry": { GeoJSON geometry } | null,
        "error": ""  // message GEOS si l'opération a échoué
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, other = _required_geometries(request, 'geometry', 'other')
            operation = Overlay(request.data.get('operation', 'intersection'))
            precision = float(request.data.get('precision', 0))
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        engine = GeosGeometryEngine(geometry, precision)
        result = engine.overlay(other, operation)

        return Response({
            'operation': operation.value,
            'geometry': _to_geojson(result),
            'error': engine.last_error,
        })


class GeometryPredicateView(APIView):
    """
    POST /api/geometry/predicate/
    Évalue un prédicat spatial (ou tous) entre deux géométries.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "other": { GeoJSON geometry },
        "predicate": "intersects",  // Optional, tous les prédicats si absent
        "prepared": true  // Optional, utilise une géométrie préparée
    }

    Response:
    {
        "results": { "intersects": true, "touches": false, ... }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, other = _required_geometries(request, 'geometry', 'other')
            predicate = request.data.get('predicate')
            relations = [Relation(predicate)] if predicate else list(Relation)
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        engine = GeosGeometryEngine(geometry)
        if request.data.get('prepared', True):
            engine.prepare_geometry()

        results = {relation.value: engine.relation(other, relation) for relation in relations}
        return Response({'results': results, 'prepared': engine.is_prepared})


class GeometryRelateView(APIView):
    """
    POST /api/geometry/relate/
    Matrice DE-9IM entre deux géométries, avec test de motif optionnel.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "other": { GeoJSON geometry },
        "pattern": "T*F**FFF*"  // Optional
    }

    Response:
    {
        "matrix": "2FFF1FFF2",
        "matches": true  // uniquement si pattern est fourni
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, other = _required_geometries(request, 'geometry', 'other')
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        engine = GeosGeometryEngine(geometry)
        response_data = {'matrix': engine.relate(other)}

        pattern = request.data.get('pattern')
        if pattern:
            response_data['matches'] = engine.relate_pattern(other, pattern)
        if engine.last_error:
            response_data['error'] = engine.last_error
        return Response(response_data)


class GeometryMeasureView(APIView):
    """
    POST /api/geometry/measure/
    Mesures et constructions simples d'une géométrie, et par rapport à une autre.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "other": { GeoJSON geometry },  // Optional : distance, point le plus proche...
        "interpolate": 12.5  // Optional : point à cette distance le long d'une ligne
    }

    Response:
    {
        "area": 1.0, "length": 4.0, "is_valid": true, "is_empty": false,
        "centroid": {...}, "point_on_surface": {...}, "envelope": {...}, "convex_hull": {...},
        "distance": 3.0, "closest_point": {...}, "shortest_line": {...}, "is_equal": false
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, = _required_geometries(request, 'geometry')
            other_data = request.data.get('other')
            other = _parse_geometry(other_data) if other_data else None
            along = request.data.get('interpolate')
            along = float(along) if along is not None else None
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        engine = GeosGeometryEngine(geometry)
        response_data = {
            'area': engine.area(),
            'length': engine.length(),
            'is_valid': engine.is_valid(),
            'is_empty': engine.is_empty(),
            'centroid': _to_geojson(engine.centroid()),
            'point_on_surface': _to_geojson(engine.point_on_surface()),
            'envelope': _to_geojson(engine.envelope()),
            'convex_hull': _to_geojson(engine.convex_hull()),
        }

        if other is not None:
            response_data.update({
                'distance': engine.distance(other),
                'closest_point': _to_geojson(engine.closest_point(other)),
                'shortest_line': _to_geojson(engine.shortest_line(other)),
                'is_equal': engine.is_equal(other),
            })

        if along is not None:
            response_data['interpolated'] = _to_geojson(engine.interpolate(along))
            if engine.last_error:
                response_data['error'] = engine.last_error

        return Response(response_data)


class GeometrySimplifyView(APIView):
    """
    POST /api/geometry/simplify/
    Simplifie une géométrie en réduisant le nombre de sommets.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "tolerance": 0.0001,  // Optional, default 0.0001 (unités de carte)
        "preserve_topology": true  // Optional, default true
    }

    Response:
    {
        "geometry": { simplified GeoJSON geometry },
        "stats": {
            "original_coords": 150,
            "simplified_coords": 45,
            "reduction_percent": 70.0,
            ...
        }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, = _required_geometries(request, 'geometry')
            tolerance = float(request.data.get('tolerance', 0.0001))
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        simplified, stats = simplify_geometry(
            geometry,
            tolerance=tolerance,
            preserve_topology=bool(request.data.get('preserve_topology', True))
        )
        if simplified is None:
            return Response({'geometry': None, 'stats': stats}, status=400)

        return Response({
            'geometry': _to_geojson(simplified),
            'stats': stats
        })


class GeometrySplitView(APIView):
    """
    POST /api/geometry/split/
    Divise un polygone avec une ligne de coupe.

    Request body:
    {
        "polygon": { GeoJSON Polygon },
        "split_line": { GeoJSON LineString }
    }

    Response:
    {
        "geometries": [ { GeoJSON Polygon }, ... ],
        "stats": {
            "success": true,
            "num_parts": 2,
            "areas": [0.001, 0.002]
        }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            polygon, split_line = _required_geometries(request, 'polygon', 'split_line')
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        if polygon.geom_type not in ('Polygon', 'MultiPolygon'):
            return Response({'error': 'First geometry must be a Polygon'}, status=400)
        if split_line.geom_type != 'LineString':
            return Response({'error': 'Split line must be a LineString'}, status=400)

        result_polygons, stats = split_polygon(polygon, split_line)

        return Response({
            'geometries': [_to_geojson(p) for p in result_polygons],
            'stats': stats
        })


class GeometryMergeView(APIView):
    """
    POST /api/geometry/merge/
    Fusionne plusieurs polygones en un seul.

    Request body:
    {
        "polygons": [ { GeoJSON Polygon }, { GeoJSON Polygon }, ... ]
    }

    Response:
    {
        "geometry": { GeoJSON Polygon or MultiPolygon },
        "stats": {
            "success": true,
            "input_count": 3,
            "output_type": "Polygon",
            ...
        }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        polygons_data = request.data.get('polygons', [])

        if not polygons_data or len(polygons_data) < 2:
            return Response({'error': 'At least 2 polygons are required'}, status=400)

        polygons = []
        for i, poly_data in enumerate(polygons_data):
            try:
                poly = _parse_geometry(poly_data)
            except GEOMETRY_ERRORS as e:
                return Response({'error': f'Geometry at index {i}: {e}'}, status=400)
            if poly.geom_type not in ('Polygon', 'MultiPolygon'):
                return Response({
                    'error': f'Geometry at index {i} must be a Polygon'
                }, status=400)
            polygons.append(poly)

        result, stats = merge_polygons(polygons)

        if result is None:
            return Response({
                'geometry': None,
                'stats': stats
            }, status=400)

        return Response({
            'geometry': _to_geojson(result),
            'stats': stats
        })


class GeometryValidateView(APIView):
    """
    POST /api/geometry/validate/
    Valide une géométrie et, en option, vérifie qu'elle reste dans une emprise.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "boundary": { GeoJSON Polygon }  // Optional
    }

    Response:
    {
        "validation": {
            "is_valid": true,
            "errors": [],
            "warnings": []
        },
        "within_boundary": {...}  // Si boundary est fourni
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, = _required_geometries(request, 'geometry')
            boundary_data = request.data.get('boundary')
            boundary = _parse_geometry(boundary_data) if boundary_data else None
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        response_data = {'validation': validate_geometry(geometry)}
        if boundary is not None:
            response_data['within_boundary'] = check_within_boundary(geometry, boundary)

        return Response(response_data)


class GeometryCalculateView(APIView):
    """
    POST /api/geometry/metrics/
    Calcule les métriques d'une géométrie (aire, longueur, périmètre, etc.).

    Request body:
    {
        "geometry": { GeoJSON geometry }
    }

    Response:
    {
        "metrics": {
            "geometry_type": "Polygon",
            "area_m2": 1234.56,
            "area_hectares": 0.1234,
            "perimeter_m": 456.78,
            "centroid": { "x": -7.5, "y": 33.5 },
            "bbox": { "xmin": ..., ... }
        }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, = _required_geometries(request, 'geometry')
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        return Response({'metrics': calculate_geometry_metrics(geometry)})


class GeometryBufferView(APIView):
    """
    POST /api/geometry/buffer/
    Crée un buffer (zone tampon) autour d'une géométrie.

    Request body:
    {
        "geometry": { GeoJSON geometry },
        "distance": 10,  // Distance en mètres
        "quad_segs": 8,  // Optional, segments par quart de cercle (default 8)
        "end_cap_style": 2,  // Optional : 1 rond, 2 plat, 3 carré
        "join_style": 2,  // Optional : 1 rond, 2 mitre, 3 biseau
        "mitre_limit": 5.0  // Optional
    }

    Response:
    {
        "geometry": { GeoJSON Polygon },
        "stats": {
            "input_type": "Point",
            "output_type": "Polygon",
            "distance_meters": 10
        }
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        distance = request.data.get('distance')
        if distance is None:
            return Response({'error': 'distance (in meters) is required'}, status=400)

        try:
            geometry, = _required_geometries(request, 'geometry')
            end_cap_style = request.data.get('end_cap_style')
            join_style = request.data.get('join_style')
            buffered, stats = buffer_geometry(
                geometry,
                float(distance),
                int(request.data.get('quad_segs', 8)),
                end_cap_style=int(end_cap_style) if end_cap_style is not None else None,
                join_style=int(join_style) if join_style is not None else None,
                mitre_limit=float(request.data.get('mitre_limit', 5.0)),
            )
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        if buffered is None:
            return Response({'geometry': None, 'stats': stats}, status=400)

        return Response({
            'geometry': _to_geojson(buffered),
            'stats': stats
        })


class GeometryOffsetView(APIView):
    """
    POST /api/geometry/offset/
    Courbe décalée d'une ligne (à gauche pour une distance positive).

    Request body:
    {
        "geometry": { GeoJSON LineString },
        "distance": 2.0,  // Unités de carte
        "segments": 8,  // Optional
        "join_style": 1,  // Optional : 1 rond, 2 mitre, 3 biseau
        "mitre_limit": 5.0  // Optional
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        try:
            geometry, = _required_geometries(request, 'geometry')
            distance = float(request.data['distance'])
            segments = int(request.data.get('segments', 8))
            join_style = int(request.data.get('join_style', 1))
            mitre_limit = float(request.data.get('mitre_limit', 5.0))
        except KeyError:
            return Response({'error': 'distance is required'}, status=400)
        except GEOMETRY_ERRORS as e:
            return Response({'error': str(e)}, status=400)

        engine = GeosGeometryEngine(geometry)
        result = engine.offset_curve(distance, segments, join_style, mitre_limit)
        if result is None:
            return Response({'geometry': None, 'error': engine.last_error}, status=400)
        return Response({'geometry': _to_geojson(result)})


class GeometryDuplicatesView(APIView):
    """
    POST /api/geometry/duplicates/
    Détecte (et supprime en option) les géométries en double d'un jeu d'entités.

    Request body:
    {
        "features": [ { "id": 1, "geometry": { GeoJSON } }, ... ]  // ou une FeatureCollection
        "tolerance": 1e-8,  // Optional
        "fix": "remove"  // Optional : "none" | "remove"
    }

    Response:
    {
        "errors": [ { "feature_id": 3, "duplicates": [1], "location": [x, y], "status": "pending" } ],
        "messages": [],
        "remaining_ids": [1, 2]  // si fix = remove
    }
    """
    permission_classes = [permissions.IsAuthenticated]

    FIX_METHODS = {
        'none': GeometryDuplicateCheck.NO_CHANGE,
        'remove': GeometryDuplicateCheck.REMOVE_DUPLICATES,
    }

    def post(self, request):
        features = request.data.get('features')
        if isinstance(features, dict) and features.get('type') == 'FeatureCollection':
            features = features.get('features')
        if not features:
            return Response({'error': 'features is required'}, status=400)

        pool_data = {}
        for i, feature in enumerate(features):
            try:
                feature_id = int(feature.get('id', i))
                pool_data[feature_id] = _parse_geometry(feature['geometry'])
            except (KeyError, AttributeError):
                return Response({'error': f'Feature at index {i} has no geometry'}, status=400)
            except GEOMETRY_ERRORS as e:
                return Response({'error': f'Feature at index {i}: {e}'}, status=400)

        fix = request.data.get('fix')
        if fix and fix not in self.FIX_METHODS:
            return Response({'error': f'Unknown fix method: {fix}'}, status=400)

        pool = FeaturePool(pool_data)
        check = GeometryDuplicateCheck(pool, float(request.data.get('tolerance', DEFAULT_TOLERANCE)))
        errors, messages = check.collect_errors()

        response_data = {
            'resolution_methods': check.resolution_methods(),
            'messages': messages,
        }
        if fix:
            for error in errors:
                check.fix_error(error, self.FIX_METHODS[fix])
            response_data['remaining_ids'] = pool.feature_ids()

        response_data['errors'] = [error.to_dict() for error in errors]
        return Response(response_data)
