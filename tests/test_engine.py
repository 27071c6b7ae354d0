"""
Tests du moteur géométrique GEOS (api_geometry.engine).
"""
import pytest
from django.contrib.gis.geos import GEOSGeometry, LineString, MultiLineString, Point, Polygon

from api_geometry.engine import (
    CAP_FLAT,
    GeosGeometryEngine,
    Overlay,
    Relation,
    create_geometry_engine,
    snap_to_grid,
)


def square(xmin, ymin, xmax, ymax):
    return Polygon.from_bbox((xmin, ymin, xmax, ymax))


@pytest.fixture
def engine():
    return GeosGeometryEngine(square(0, 0, 10, 10))


# ==============================================================================
# OVERLAY
# ==============================================================================

class TestOverlay:
    """Intersection, différence, union et différence symétrique."""

    def test_intersection(self, engine):
        result = engine.intersection(square(5, 5, 15, 15))
        assert result.area == pytest.approx(25)

    def test_difference(self, engine):
        result = engine.difference(square(5, 5, 15, 15))
        assert result.area == pytest.approx(75)

    def test_sym_difference(self, engine):
        result = engine.sym_difference(square(5, 5, 15, 15))
        assert result.area == pytest.approx(150)

    def test_combine_polygons(self, engine):
        result = engine.combine(square(10, 0, 20, 10))
        assert result.geom_type == 'Polygon'
        assert result.area == pytest.approx(200)

    def test_combine_lines_is_merged(self):
        engine = GeosGeometryEngine(LineString((0, 0), (5, 0)))
        result = engine.combine(LineString((5, 0), (10, 0)))
        assert result.geom_type == 'LineString'
        assert result.length == pytest.approx(10)

    def test_overlay_by_enum(self, engine):
        result = engine.overlay(square(5, 5, 15, 15), Overlay.INTERSECTION)
        assert result.area == pytest.approx(25)

    def test_unknown_operation_returns_none(self, engine):
        assert engine.overlay(square(5, 5, 15, 15), 'buffer') is None

    def test_null_geometry(self):
        engine = GeosGeometryEngine(None)
        assert engine.intersection(square(0, 0, 1, 1)) is None
        assert engine.intersection(None) is None

    def test_combine_all(self, engine):
        result = engine.combine_all([square(0, 0, 1, 1), square(1, 0, 2, 1), None])
        assert result.area == pytest.approx(2)

    def test_combine_all_trivial_inputs(self, engine):
        single = square(0, 0, 1, 1)
        assert engine.combine_all([]) is None
        assert engine.combine_all([single]) is single


# ==============================================================================
# CONSTRUCTIONS
# ==============================================================================

class TestConstructions:

    def test_buffer_point(self):
        result = GeosGeometryEngine(Point(0, 0)).buffer(1, 32)
        assert result.area == pytest.approx(3.14, abs=0.01)

    def test_buffer_with_flat_caps(self):
        engine = GeosGeometryEngine(LineString((0, 0), (10, 0)))
        result = engine.buffer_with_style(1, end_cap_style=CAP_FLAT)
        assert result.area == pytest.approx(20)

    def test_simplify(self):
        line = LineString((0, 0), (1, 0.01), (2, 0), (3, 0.01), (4, 0))
        result = GeosGeometryEngine(line).simplify(0.1)
        assert result.num_coords == 2

    def test_interpolate(self):
        result = GeosGeometryEngine(LineString((0, 0), (10, 0))).interpolate(4)
        assert result.coords == pytest.approx((4, 0))

    def test_interpolate_on_polygon_sets_error(self, engine):
        assert engine.interpolate(4) is None
        assert engine.last_error

    def test_envelope_and_hull(self):
        triangle = Polygon(((0, 0), (4, 0), (0, 4), (0, 0)))
        engine = GeosGeometryEngine(triangle)
        assert engine.envelope().area == pytest.approx(16)
        assert engine.convex_hull().area == pytest.approx(8)

    def test_centroid_and_point_on_surface(self, engine):
        assert engine.centroid().coords == pytest.approx((5, 5))
        assert engine.point_on_surface().within(square(0, 0, 10, 10))

    def test_offset_curve(self):
        engine = GeosGeometryEngine(LineString((0, 0), (10, 0)))
        result = engine.offset_curve(2)
        assert result.geom_type == 'LineString'
        assert all(y == pytest.approx(2) for _, y in result.coords)


# ==============================================================================
# MESURES
# ==============================================================================

class TestMeasures:

    def test_distance(self):
        assert GeosGeometryEngine(Point(0, 0)).distance(Point(3, 4)) == pytest.approx(5)

    def test_area_and_length(self, engine):
        assert engine.area() == pytest.approx(100)
        assert engine.length() == pytest.approx(40)

    def test_failure_value_without_geometry(self):
        engine = GeosGeometryEngine(None)
        assert engine.area() == -1.0
        assert engine.length() == -1.0
        assert engine.distance(Point(0, 0)) == -1.0

    def test_closest_point(self, engine):
        point = engine.closest_point(Point(20, 5))
        assert point.coords == pytest.approx((10, 5))

    def test_shortest_line(self, engine):
        line = engine.shortest_line(Point(20, 5))
        assert line.coords[0] == pytest.approx((10, 5))
        assert line.coords[1] == pytest.approx((20, 5))

    def test_closest_point_with_empty_geometry(self, engine):
        assert engine.closest_point(GEOSGeometry('POINT EMPTY')) is None


# ==============================================================================
# PRÉDICATS
# ==============================================================================

class TestPredicates:

    @pytest.mark.parametrize('prepared', [False, True])
    def test_spatial_predicates(self, engine, prepared):
        if prepared:
            engine.prepare_geometry()
        assert engine.is_prepared is prepared
        assert engine.intersects(square(5, 5, 15, 15))
        assert engine.overlaps(square(5, 5, 15, 15))
        assert engine.touches(square(10, 0, 20, 10))
        assert engine.contains(Point(5, 5))
        assert engine.disjoint(square(20, 20, 30, 30))
        assert not engine.within(square(2, 2, 4, 4))
        assert engine.crosses(LineString((-5, 5), (15, 5)))

    def test_relation_by_value(self, engine):
        assert engine.relation(Point(5, 5), 'contains')
        assert engine.relation(Point(5, 5), Relation.INTERSECTS)
        assert not engine.relation(Point(5, 5), 'covers_everything')

    def test_relate(self, engine):
        assert engine.relate(square(5, 5, 15, 15)) == '212101212'

    def test_relate_pattern(self, engine):
        assert engine.relate_pattern(square(5, 5, 15, 15), 'T*T***T**')
        assert not engine.relate_pattern(square(20, 20, 30, 30), 'T********')

    def test_relate_pattern_invalid(self, engine):
        assert engine.relate_pattern(square(5, 5, 15, 15), 'T*T***T**X') is False
        assert engine.last_error

    def test_error_is_reset_by_next_call(self, engine):
        engine.relate_pattern(square(5, 5, 15, 15), 'T*T***T**X')
        engine.area()
        assert engine.last_error == ''

    def test_validity_and_equality(self):
        bowtie = Polygon(((0, 0), (10, 10), (10, 0), (0, 10), (0, 0)))
        assert not GeosGeometryEngine(bowtie).is_valid()
        engine = GeosGeometryEngine(square(0, 0, 10, 10))
        assert engine.is_valid()
        assert engine.is_equal(Polygon(((10, 10), (10, 0), (0, 0), (0, 10), (10, 10))))
        assert GeosGeometryEngine(GEOSGeometry('POLYGON EMPTY')).is_empty()

    def test_geometry_change_keeps_preparation(self, engine):
        engine.prepare_geometry()
        engine.geometry = square(100, 100, 110, 110)
        assert engine.is_prepared
        assert engine.contains(Point(105, 105))
        assert not engine.contains(Point(5, 5))


# ==============================================================================
# PRÉCISION ET UTILITAIRES
# ==============================================================================

class TestPrecision:

    def test_snap_to_grid(self):
        snapped = snap_to_grid(Point(1.26, 2.74, srid=3857), 0.5)
        assert snapped.coords == pytest.approx((1.5, 2.5))
        assert snapped.srid == 3857

    def test_snap_without_precision_is_identity(self):
        point = Point(1.26, 2.74)
        assert snap_to_grid(point, 0) is point

    def test_engine_applies_precision(self):
        engine = create_geometry_engine(Point(1.26, 2.74), precision=0.5)
        assert engine.centroid().coords == pytest.approx((1.5, 2.5))

    def test_snap_multi_geometry(self):
        lines = MultiLineString(LineString((0.1, 0.1), (0.9, 0.9)), LineString((2.2, 2.2), (3.1, 3.1)))
        snapped = snap_to_grid(lines, 1)
        assert snapped[0].coords == ((0, 0), (1, 1))
        assert snapped[1].coords == ((2, 2), (3, 3))

    def test_create_geos_collection(self):
        collection = GeosGeometryEngine.create_geos_collection([None, Point(0, 0, srid=3857)])
        assert len(collection) == 1
        assert collection.srid == 3857
        assert GeosGeometryEngine.create_geos_collection([None]) is None
