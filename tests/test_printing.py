"""
Tests de GetPrint (mise en page « A4 paysage » du projet de test).
"""
import io

import pytest
from PIL import Image

from api_wms.config import WmsConfig
from api_wms.exceptions import ServiceException
from api_wms.getmap import MapRequest
from api_wms.parameters import WmsParameters
from api_wms.printing import PrintJob, get_print, print_format

TEMPLATE = 'A4 paysage'


def print_request(project, **params):
    values = {'TEMPLATE': TEMPLATE, 'FORMAT': 'pdf', 'CRS': 'EPSG:3857'}
    values.update(params)
    values = {key: value for key, value in values.items() if value is not None}
    return MapRequest(WmsParameters(values), project, WmsConfig(project))


def print_job(project, **params):
    return PrintJob(print_request(project, **params), project.print_layout(TEMPLATE))


class TestOutputs:

    def test_pdf(self, project):
        content, content_type = get_print(print_request(project))
        assert content_type == 'application/pdf'
        assert content.startswith(b'%PDF')

    def test_png_page_size(self, project):
        content, content_type = get_print(print_request(project, FORMAT='png', DPI='50'))
        assert content_type == 'image/png'
        image = Image.open(io.BytesIO(content))
        assert image.size == (round(297 * 50 / 25.4), round(210 * 50 / 25.4))

    def test_jpeg(self, project):
        content, content_type = get_print(print_request(project, FORMAT='image/jpeg', DPI='50'))
        assert content_type == 'image/jpeg'
        assert content.startswith(b'\xff\xd8')

    def test_svg(self, project):
        content, content_type = get_print(print_request(project, FORMAT='svg', DPI='50'))
        assert content_type == 'image/svg+xml'
        assert b'<svg' in content

    def test_map_is_drawn_in_frame(self, project):
        content, _ = get_print(print_request(project, FORMAT='png', DPI='50', LAYERS='parcels'))
        page = Image.open(io.BytesIO(content)).convert('RGB')
        # cadre : x 10-210 mm, y 20-170 mm ; parcelle 1 (rouge) en bas à gauche de l'emprise
        x = round((10 + 200 * (25 + 16.67) / 133.33) * 50 / 25.4)
        y = round((20 + 150 * 0.75) * 50 / 25.4)
        assert page.getpixel((x, y)) == (255, 0, 0)

    @pytest.mark.parametrize('value, expected', [
        ('pdf', 'pdf'),
        ('application/pdf', 'pdf'),
        ('image/svg+xml', 'svg'),
        ('JPEG', 'jpg'),
    ])
    def test_print_format(self, value, expected):
        assert print_format(value) == expected


class TestPrintJob:

    def test_default_dpi(self, project):
        assert print_job(project).dpi == 150

    def test_extent_is_fitted_to_frame(self, project):
        layout = project.print_layout(TEMPLATE)
        extent = print_job(project).map_extent(0, layout.maps[0], project.crs)
        assert extent == pytest.approx((-16.6667, 0, 116.6667, 100), abs=1e-3)

    def test_requested_extent(self, project):
        layout = project.print_layout(TEMPLATE)
        job = print_job(project, **{'MAP0:EXTENT': '0,0,40,30'})
        assert job.map_extent(0, layout.maps[0], project.crs) == pytest.approx((0, 0, 40, 30))

    def test_requested_scale(self, project):
        layout = project.print_layout(TEMPLATE)
        job = print_job(project, **{'MAP0:SCALE': '1000'})
        # cadre de 200 x 150 mm au 1:1000, centré sur 50,50
        assert job.map_extent(0, layout.maps[0], project.crs) == pytest.approx((-50, -25, 150, 125))

    def test_map_layers(self, project):
        layout = project.print_layout(TEMPLATE)
        layers = print_job(project, **{'MAP0:LAYERS': 'roads,parcels'}).map_layers(0, layout.maps[0])
        assert [layer.name for layer, _ in layers] == ['roads', 'parcels']

    def test_default_layers_are_published_layers(self, project):
        layout = project.print_layout(TEMPLATE)
        layers = print_job(project).map_layers(0, layout.maps[0])
        assert [layer.name for layer, _ in layers] == ['parcels', 'wells', 'roads']

    def test_label_override(self, project):
        labels = print_job(project, TITRE='Plan de la commune').labels()
        assert [text for _, text in labels] == ['Plan de la commune']

    def test_label_default_text(self, project):
        labels = print_job(project).labels()
        assert [text for _, text in labels] == ['Plan parcellaire']


class TestErrors:

    def test_template_required(self, project):
        with pytest.raises(ServiceException) as exc:
            get_print(print_request(project, TEMPLATE=None))
        assert exc.value.code == 'ParameterMissing'

    def test_unknown_template(self, project):
        with pytest.raises(ServiceException) as exc:
            get_print(print_request(project, TEMPLATE='A0'))
        assert exc.value.code == 'InvalidParameterValue'

    def test_invalid_format(self, project):
        with pytest.raises(ServiceException) as exc:
            get_print(print_request(project, FORMAT='docx'))
        assert exc.value.code == 'InvalidFormat'

    def test_invalid_extent(self, project):
        with pytest.raises(ServiceException) as exc:
            get_print(print_request(project, **{'MAP0:EXTENT': '0,0,a,b'}))
        assert exc.value.code == 'InvalidParameterValue'

    def test_unknown_layer(self, project):
        with pytest.raises(ServiceException) as exc:
            get_print(print_request(project, **{'MAP0:LAYERS': 'inconnue'}))
        assert exc.value.code == 'LayerNotDefined'
