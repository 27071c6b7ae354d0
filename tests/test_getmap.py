"""
Tests de GetMap : rendu Pillow, filtres, sélection, opacité et erreurs.

Emprise 0,0,100,100 sur une image 100x100 : le pixel (i, j) correspond au
point (i, 100 - j). Parcelle 1 (R, rouge) en bas à gauche, parcelle 2 (A,
vert) en bas à droite, parcelle 3 (X, sans catégorie) en haut à gauche.
"""
import io
import threading

import pytest
from PIL import Image

from api_wms.config import WmsConfig
from api_wms.exceptions import ServiceException
from api_wms.getmap import MapRequest, get_map, parse_background, render_map
from api_wms.parameters import WmsParameters
from api_wms.rendering import LayerRenderJob, MapRenderer, MapSettings, encode_image, image_format

from .conftest import PARCELS_ID

RED = (255, 0, 0)
GREEN = (0, 255, 0)
WHITE = (255, 255, 255)


def map_request(project, version='1.3.0', **params):
    values = {
        'LAYERS': 'parcels',
        'CRS': 'EPSG:3857',
        'BBOX': '0,0,100,100',
        'WIDTH': '100',
        'HEIGHT': '100',
        'FORMAT': 'image/png',
    }
    values.update(params)
    values = {key: value for key, value in values.items() if value is not None}
    return MapRequest(WmsParameters(values), project, WmsConfig(project), version)


def render(project, **params):
    content, content_type = get_map(map_request(project, **params))
    assert content_type == 'image/png'
    return Image.open(io.BytesIO(content)).convert('RGB')


# =============================================================================
# RENDU
# =============================================================================

class TestRender:

    def test_categorized_symbols(self, project):
        image = render(project)
        assert image.size == (100, 100)
        assert image.getpixel((25, 75)) == RED
        assert image.getpixel((65, 85)) == GREEN

    def test_feature_without_category_is_not_drawn(self, project):
        assert render(project).getpixel((25, 10)) == WHITE

    def test_named_style(self, project):
        image = render(project, STYLES='simple')
        assert image.getpixel((25, 75)) == (0, 0, 255)
        assert image.getpixel((25, 10)) == (0, 0, 255)

    def test_line_layer(self, project):
        image = render(project, LAYERS='roads')
        # Route 2 : x = 75
        assert image.getpixel((75, 90)) != WHITE
        assert image.getpixel((25, 75)) == WHITE

    def test_out_of_scale_layer_is_skipped(self, project):
        # échelle ~1:3571, puits visibles jusqu'au 1:1000
        image = render(project, LAYERS='wells')
        assert image.getpixel((10, 90)) == WHITE

    def test_layer_visible_at_large_scale(self, project):
        image = render(project, LAYERS='wells', BBOX='0,0,20,20')
        assert image.getpixel((50, 50)) == (0, 0, 255)

    def test_background_color(self, project):
        image = render(project, BGCOLOR='0x0000FF')
        assert image.getpixel((25, 10)) == (0, 0, 255)

    def test_transparent(self, project):
        content, _ = get_map(map_request(project, TRANSPARENT='TRUE'))
        image = Image.open(io.BytesIO(content))
        assert image.mode == 'RGBA'
        assert image.getpixel((25, 10))[3] == 0
        assert image.getpixel((25, 75)) == RED + (255,)

    def test_jpeg(self, project):
        content, content_type = get_map(map_request(project, FORMAT='image/jpeg'))
        assert content_type == 'image/jpeg'
        assert content.startswith(b'\xff\xd8')

    def test_highlight(self, project):
        image = render(project, HIGHLIGHT_GEOM='POLYGON((0 50, 50 50, 50 100, 0 100, 0 50))',
                       HIGHLIGHT_SYMBOL='#0000ff')
        r, g, b = image.getpixel((25, 25))
        assert b == 255 and r < 255

    def test_invalid_highlight_is_ignored(self, project):
        image = render(project, HIGHLIGHT_GEOM='POLYGON((0 0')
        assert image.getpixel((25, 75)) == RED


# =============================================================================
# FILTRE, SÉLECTION, OPACITÉ
# =============================================================================

class TestLayerState:

    def test_filter(self, project):
        image = render(project, FILTER='parcels:"type" = \'A\'')
        assert image.getpixel((25, 75)) == WHITE
        assert image.getpixel((65, 85)) == GREEN

    def test_filter_is_combined_with_subset(self, project):
        project.map_layer(PARCELS_ID).subset_string = '"surface" > 3000'
        image = render(project, FILTER='parcels:"type" = \'A\'')
        assert image.getpixel((65, 85)) == WHITE

    def test_state_is_restored(self, project):
        layer = project.map_layer(PARCELS_ID)
        render(project, FILTER='parcels:"type" = \'A\'', SELECTION='parcels:1', OPACITIES='128')
        assert layer.subset_string == ''
        assert layer.selected_ids == set()
        assert layer.opacity == 1.0

    def test_rejected_filter_leaves_layers_untouched(self, project):
        layer = project.map_layer(PARCELS_ID)
        with pytest.raises(ServiceException):
            get_map(map_request(project, FILTER='parcels:"type" = \'A\';roads:"x"=1'))
        assert layer.subset_string == ''

    def test_rejected_filter(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, FILTER='parcels:"type"=\'A\''))
        assert exc.value.code == 'Filter string rejected'

    def test_selection(self, project):
        image = render(project, SELECTION='parcels:1')
        assert image.getpixel((25, 75)) == (255, 255, 0)
        assert image.getpixel((65, 85)) == GREEN

    def test_opacity(self, project):
        r, g, b = render(project, OPACITIES='128').getpixel((25, 75))
        assert r == 255
        assert g == pytest.approx(127, abs=2)

    def test_empty_bbox_uses_filtered_extent(self, project):
        image = render(project, BBOX='0,0,0,0', FILTER='parcels:"type" = \'A\'')
        # emprise de la parcelle 2 : toute l'image est verte
        assert image.getpixel((50, 50)) == GREEN


# =============================================================================
# ERREURS
# =============================================================================

class TestErrors:

    def test_size_error(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, WIDTH='5000'))
        assert exc.value.code == 'Size error'

    def test_invalid_crs(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, CRS='EPSG:999999'))
        assert exc.value.code == 'InvalidCRS'

    def test_unknown_layer(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, LAYERS='inconnue'))
        assert exc.value.code == 'LayerNotDefined'

    def test_restricted_layer(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, LAYERS='cadastre_prive'))
        assert exc.value.code == 'LayerNotDefined'

    def test_unknown_style(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, STYLES='inconnu'))
        assert exc.value.message == "Layer 'parcels' and/or style 'inconnu' not defined"

    def test_invalid_format(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, FORMAT='image/gif'))
        assert exc.value.code == 'InvalidFormat'

    def test_invalid_bbox(self, project):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, BBOX='0,0,100'))
        assert exc.value.code == 'InvalidParameterValue'

    @pytest.mark.parametrize('size', [
        {'WIDTH': '-5'},
        {'HEIGHT': '0'},
        {'WIDTH': None, 'HEIGHT': None},
        {'WIDTH': 'large'},
    ])
    def test_size_must_be_positive(self, project, size):
        with pytest.raises(ServiceException) as exc:
            get_map(map_request(project, **size))
        assert exc.value.code == 'InvalidParameterValue'


class TestDegenerateExtent:
    """Emprise sans surface : image vide plutôt qu'une erreur."""

    def test_point_bbox_over_feature(self, project):
        # le point 10,10 est dans la parcelle 1
        image = render(project, BBOX='10,10,10,10')
        assert image.size == (100, 100)
        assert set(image.getdata()) == {WHITE}

    def test_point_bbox_over_wells(self, project):
        image = render(project, LAYERS='wells', BBOX='10,10,10,10')
        assert set(image.getdata()) == {WHITE}

    def test_highlight_without_bbox(self, project):
        image = render(project, BBOX=None, HIGHLIGHT_GEOM='POINT(0 0)')
        assert set(image.getdata()) == {WHITE}

    def test_renderer_returns_background(self, project):
        settings = MapSettings((10, 10, 10, 20), 20, 10, project.crs)
        assert settings.is_degenerate()
        layer = project.map_layer(PARCELS_ID)
        image = MapRenderer(settings).render([LayerRenderJob(layer)])
        assert image.size == (20, 10)
        assert image.getpixel((5, 5)) == (255, 255, 255, 255)


# =============================================================================
# PARAMÈTRES DE CARTE
# =============================================================================

class TestMapSettings:

    def test_scale(self, project):
        settings = map_request(project).map_settings()
        assert settings.scale() == pytest.approx(100 / (100 * 0.00028))

    def test_pixel_conversions(self, project):
        settings = MapSettings((0, 0, 100, 100), 100, 100, project.crs)
        assert settings.to_pixel(25, 25) == (25, 75)
        assert settings.to_map(25, 75) == (25, 25)

    def test_axis_order_1_3_0(self, project):
        request = map_request(project, CRS='EPSG:4326', BBOX='10,1,20,2')
        assert request.extent(request.output_crs()) == (1, 10, 2, 20)

    def test_axis_order_1_1_1(self, project):
        request = map_request(project, '1.1.1', SRS='EPSG:4326', CRS='', BBOX='10,1,20,2')
        assert request.extent(request.output_crs()) == (10, 1, 20, 2)

    def test_default_crs_is_project_crs(self, project):
        request = map_request(project, CRS='')
        assert request.output_crs() == project.crs

    def test_reprojected_render(self, project):
        # emprise des parcelles en degrés (EPSG:3857 → EPSG:4326, axes latitude/longitude)
        image, settings = render_map(map_request(project, CRS='EPSG:4326', BBOX='0,0,0.0009,0.0009'))
        assert settings.crs.authid == 'EPSG:4326'
        assert image.getpixel((25, 75))[:3] == RED


class TestEncoding:

    @pytest.mark.parametrize('value, expected', [
        ('image/png', ('PNG', '', 'image/png')),
        ('image/png; mode=8bit', ('PNG', '8bit', 'image/png')),
        ('IMAGE/JPEG', ('JPEG', '', 'image/jpeg')),
    ])
    def test_image_format(self, value, expected):
        assert image_format(value) == expected

    @pytest.mark.parametrize('mode', ['8bit', '1bit', '16bit'])
    def test_png_modes(self, mode):
        image = Image.new('RGBA', (4, 4), RED + (255,))
        content, content_type = encode_image(image, f'image/png; mode={mode}')
        assert content_type == 'image/png'
        assert content.startswith(b'\x89PNG')

    def test_parse_background(self):
        assert parse_background('0xFF0000') == (255, 0, 0, 255)
        assert parse_background('#00ff00') == (0, 255, 0, 255)
        assert parse_background(None) == (255, 255, 255, 255)


# =============================================================================
# REQUÊTES CONCURRENTES
# =============================================================================

class TestConcurrentRequests:
    """Le projet en cache est partagé : l'état d'une requête ne déborde pas sur une autre."""

    def test_filter_is_not_seen_by_concurrent_request(self, project):
        entered = threading.Event()
        release = threading.Event()
        results = {}

        def filtered_request():
            request = map_request(project, FILTER='parcels:"type" = \'R\'')
            with request.layer_state():
                entered.set()
                release.wait(5)

        def plain_request():
            results['image'] = render(project)
            results['subset'] = project.map_layer(PARCELS_ID).subset_string

        first = threading.Thread(target=filtered_request)
        first.start()
        assert entered.wait(5)

        second = threading.Thread(target=plain_request)
        second.start()
        second.join(0.2)
        # la seconde requête attend la restauration des couches
        assert second.is_alive()

        release.set()
        first.join(5)
        second.join(5)
        assert results['subset'] == ''
        assert results['image'].getpixel((25, 75)) == RED
        assert results['image'].getpixel((65, 85)) == GREEN

    def test_lock_is_released_after_rejected_filter(self, project):
        with pytest.raises(ServiceException):
            get_map(map_request(project, FILTER='parcels:"type"=\'A\''))
        acquired = []

        def other_request():
            if project.lock.acquire(blocking=False):
                acquired.append(True)
                project.lock.release()

        thread = threading.Thread(target=other_request)
        thread.start()
        thread.join(5)
        assert acquired == [True]
