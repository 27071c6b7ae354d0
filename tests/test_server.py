"""
Tests de la répartition des requêtes WMS (WmsServer).
"""
import xml.etree.ElementTree as ET

import pytest
from django.test import RequestFactory

from api_wms.config import WmsConfig
from api_wms.server import XML_CONTENT_TYPE, WmsServer, build_service_url

from .conftest import PARCELS_ID, WELLS_ID

SERVICE_URL = 'http://testserver/wms/?'
OGC_NS = '{http://www.opengis.net/ogc}'


def execute(project, **params):
    return WmsServer(params, project, SERVICE_URL).execute_request()


def exception_code(response):
    """Code du ServiceException d'une réponse d'erreur (1.3.0 ou 1.1.1)."""
    root = ET.fromstring(response.content)
    exception = root.find(f'{OGC_NS}ServiceException')
    if exception is None:
        exception = root.find('ServiceException')
    return exception.get('code'), exception.text


class TestDispatch:

    def test_missing_request(self, project):
        response = execute(project, SERVICE='WMS')
        assert response.status == 200
        assert response.content_type == XML_CONTENT_TYPE
        assert exception_code(response) == (
            'OperationNotSupported', 'Please check the value of the REQUEST parameter')

    def test_unknown_request(self, project):
        response = execute(project, REQUEST='GetCoverage')
        assert exception_code(response) == ('OperationNotSupported', 'Operation GetCoverage not supported')

    def test_request_name_is_case_insensitive(self, project):
        response = execute(project, request='getcapabilities')
        assert response.content_type == XML_CONTENT_TYPE
        assert b'WMS_Capabilities' in response.content

    def test_exception_report_follows_version(self, project):
        response = execute(project, REQUEST='GetMap', VERSION='1.1.1', LAYERS='inconnue',
                           BBOX='0,0,100,100', WIDTH='10', HEIGHT='10')
        root = ET.fromstring(response.content)
        assert root.tag == 'ServiceExceptionReport'
        assert root.get('version') == '1.1.1'

    @pytest.mark.parametrize('size', [{'WIDTH': '-5', 'HEIGHT': '10'}, {}])
    def test_invalid_map_size_is_reported(self, project, size):
        response = execute(project, REQUEST='GetMap', LAYERS='parcels', CRS='EPSG:3857',
                           BBOX='0,0,100,100', **size)
        assert response.content_type == XML_CONTENT_TYPE
        assert exception_code(response)[0] == 'InvalidParameterValue'

    @pytest.mark.parametrize('params', [
        {'LAYERS': 'wells', 'BBOX': '10,10,10,10'},
        {'LAYERS': 'parcels', 'HIGHLIGHT_GEOM': 'POINT(0 0)'},
    ])
    def test_degenerate_extent_gives_blank_map(self, project, params):
        response = execute(project, REQUEST='GetMap', CRS='EPSG:3857', WIDTH='10', HEIGHT='10',
                           FORMAT='image/png', **params)
        assert response.content_type == 'image/png'
        assert response.content.startswith(b'\x89PNG')

    def test_capabilities_1_1_1_content_type(self, project):
        response = execute(project, REQUEST='GetCapabilities', VERSION='1.1.1')
        assert response.content_type == 'application/vnd.ogc.wms_xml'


class TestSldRequests:

    def test_get_style_requires_style(self, project):
        response = execute(project, REQUEST='GetStyle', LAYER='parcels')
        assert exception_code(response)[0] == 'StyleNotSpecified'

    def test_get_style_requires_layer(self, project):
        response = execute(project, REQUEST='GetStyle', STYLE='default')
        assert exception_code(response) == ('LayerNotSpecified', 'Layer is mandatory for GetStyle operation')

    def test_get_styles_requires_layers(self, project):
        response = execute(project, REQUEST='GetStyles')
        assert exception_code(response) == ('LayerNotSpecified', 'Layers is mandatory for GetStyles operation')

    @pytest.mark.parametrize('params, expected', [
        ({'LAYERS': 'parcels'}, ('MissingParameterValue', None)),
        ({'SLD_VERSION': '1.0.0', 'LAYERS': 'parcels'},
         ('InvalidParameterValue', 'SLD_VERSION = 1.0.0 is not supported')),
        ({'SLD_VERSION': '1.1.0'}, ('MissingParameterValue', None)),
        ({'SLD_VERSION': '1.1.0', 'LAYERS': ''}, ('InvalidParameterValue', 'Layers is empty')),
    ])
    def test_describe_layer_errors(self, project, params, expected):
        code, message = exception_code(execute(project, REQUEST='DescribeLayer', **params))
        assert code == expected[0]
        if expected[1]:
            assert message == expected[1]


class TestConfig:

    def test_project_settings(self, project):
        config = WmsConfig(project)
        assert config.service_title == 'Plan communal'
        assert config.keywords == ['cadastre', 'réseau']
        assert config.max_image_size() == (2000, 2000)
        assert config.precision == 2
        assert config.add_wkt_geometry is True
        assert config.crs_list() == ['EPSG:3857', 'EPSG:4326']
        assert config.wfs_layer_names() == ['parcels']

    def test_published_layers_skip_restricted_and_invalid(self, project):
        names = [layer.name for layer in WmsConfig(project).published_layers()]
        assert names == ['roads', 'wells', 'parcels']

    def test_identifiable(self, project):
        config = WmsConfig(project)
        assert config.is_identifiable(project.map_layer(PARCELS_ID))
        assert not config.is_identifiable(project.map_layer(WELLS_ID))

    def test_group_expands_to_layers(self, project):
        layers = WmsConfig(project).map_layers_from_name('Reseau')
        assert [layer.name for layer in layers] == ['roads', 'wells']

    def test_root_name_designates_whole_tree(self, project):
        project.write_entry('WMSRootName', '/', 'commune')
        layers = WmsConfig(project).map_layers_from_name('commune')
        assert [layer.name for layer in layers] == ['roads', 'wells', 'parcels']

    def test_max_image_size_fallback(self, project, settings):
        settings.CARTOSIG_MAX_IMAGE_SIZE = 512
        project.remove_entry('WMSMaxWidth', '/')
        assert WmsConfig(project).max_image_size() == (512, 2000)


class TestServiceUrl:

    def test_request_parameters_are_removed(self):
        request = RequestFactory().get('/wms/', {'MAP': 'commune', 'REQUEST': 'GetCapabilities', 'service': 'WMS'})
        assert build_service_url(request) == 'http://testserver/wms/?MAP=commune&'

    def test_without_parameters(self):
        request = RequestFactory().get('/wms/', {'REQUEST': 'GetCapabilities'})
        assert build_service_url(request) == 'http://testserver/wms/?'
