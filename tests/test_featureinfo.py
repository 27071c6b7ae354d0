"""
Tests de GetFeatureInfo.
"""
import xml.etree.ElementTree as ET

import pytest

from api_wms.config import WmsConfig
from api_wms.exceptions import ServiceException
from api_wms.featureinfo import get_feature_info
from api_wms.getmap import MapRequest
from api_wms.parameters import WmsParameters

GML_NS = '{http://www.opengis.net/gml}'
QGS_NS = '{http://qgis.org/gml}'


def feature_info(project, **params):
    values = {
        'LAYERS': 'parcels',
        'QUERY_LAYERS': 'parcels',
        'CRS': 'EPSG:3857',
        'BBOX': '0,0,100,100',
        'WIDTH': '100',
        'HEIGHT': '100',
        'INFO_FORMAT': 'text/xml',
        'I': '25',
        'J': '75',
    }
    values.update(params)
    values = {key: value for key, value in values.items() if value is not None}
    request = MapRequest(WmsParameters(values), project, WmsConfig(project))
    return get_feature_info(request)


def attributes(feature):
    return {a.get('name'): a.get('value') for a in feature.findall('Attribute')}


class TestXmlOutput:

    def test_feature_at_point(self, project):
        content, content_type = feature_info(project)
        assert content_type == 'text/xml; charset=utf-8'
        root = ET.fromstring(content)
        assert root.tag == 'GetFeatureInfoResponse'
        layer = root.find('Layer')
        assert layer.get('name') == 'parcels'
        features = layer.findall('Feature')
        assert [f.get('id') for f in features] == ['1']

        values = attributes(features[0])
        assert values['name'] == 'Les Prés'
        assert values['type'] == 'Résidentiel'
        assert values['Surface (m2)'] == '2500'
        assert 'owner' not in values
        assert values['maptip'] == 'Parcelle Les Prés'
        assert values['geometry'].startswith('POLYGON')

    def test_bounding_box_uses_precision(self, project):
        content, _ = feature_info(project)
        box = ET.fromstring(content).find('Layer/Feature/BoundingBox')
        assert box.get('CRS') == 'EPSG:3857'
        assert (box.get('minx'), box.get('maxx'), box.get('miny'), box.get('maxy')) == ('0', '50', '0', '50')

    def test_srs_attribute_in_1_1_1(self, project):
        values = {
            'LAYERS': 'parcels', 'QUERY_LAYERS': 'parcels', 'SRS': 'EPSG:3857', 'BBOX': '0,0,100,100',
            'WIDTH': '100', 'HEIGHT': '100', 'INFO_FORMAT': 'text/xml', 'X': '25', 'Y': '75',
        }
        request = MapRequest(WmsParameters(values), project, WmsConfig(project), '1.1.1')
        content, _ = get_feature_info(request)
        box = ET.fromstring(content).find('Layer/Feature/BoundingBox')
        assert box.get('SRS') == 'EPSG:3857'

    def test_no_wkt_geometry_when_disabled(self, project):
        project.write_entry('WMSAddWktGeometry', '/', False)
        content, _ = feature_info(project)
        assert 'geometry' not in attributes(ET.fromstring(content).find('Layer/Feature'))

    def test_feature_without_symbol_is_skipped(self, project):
        # parcelle 3 : type X, sans catégorie
        content, _ = feature_info(project, I='25', J='25')
        assert ET.fromstring(content).find('Layer/Feature') is None

    def test_non_identifiable_layer(self, project):
        content, _ = feature_info(project, LAYERS='wells', QUERY_LAYERS='wells', BBOX='0,0,20,20', I='50', J='50')
        assert ET.fromstring(content).find('Layer') is None

    def test_feature_count(self, project):
        # limite des parcelles 1 et 2, tolérance de 2 pixels
        content, _ = feature_info(project, I='50', J='75', FI_POLYGON_TOLERANCE='2', FEATURE_COUNT='5')
        ids = [f.get('id') for f in ET.fromstring(content).findall('Layer/Feature')]
        assert ids == ['1', '2']

        content, _ = feature_info(project, I='50', J='75', FI_POLYGON_TOLERANCE='2')
        assert len(ET.fromstring(content).findall('Layer/Feature')) == 1


class TestFilter:

    def test_filter_without_point(self, project):
        content, _ = feature_info(project, I=None, J=None, FILTER='parcels:"type" = \'A\'')
        root = ET.fromstring(content)
        assert [f.get('id') for f in root.findall('Layer/Feature')] == ['2']
        # emprise des entités trouvées en premier
        box = root[0]
        assert box.tag == 'BoundingBox'
        assert (box.get('minx'), box.get('maxx')) == ('50', '100')

    def test_filter_restricts_point_query(self, project):
        content, _ = feature_info(project, FILTER='parcels:"type" = \'A\'')
        assert ET.fromstring(content).find('Layer/Feature') is None

    def test_filter_state_is_restored(self, project):
        feature_info(project, I=None, J=None, FILTER='parcels:"type" = \'A\'')
        assert project.map_layer('parcels_1').subset_string == ''


class TestOtherFormats:

    def test_plain_text(self, project):
        content, content_type = feature_info(project, INFO_FORMAT='text/plain')
        assert content_type == 'text/plain; charset=utf-8'
        text = content.decode('utf-8')
        assert "Layer 'parcels'" in text
        assert 'Feature 1' in text
        assert "type = 'Résidentiel'" in text

    def test_html(self, project):
        content, content_type = feature_info(project, INFO_FORMAT='text/html')
        assert content_type == 'text/html; charset=utf-8'
        assert '<TD>Les Prés</TD>' in content.decode('utf-8')

    def test_gml2(self, project):
        content, content_type = feature_info(project, INFO_FORMAT='application/vnd.ogc.gml')
        assert content_type == 'application/vnd.ogc.gml; charset=utf-8'
        root = ET.fromstring(content)
        assert root.tag == '{http://www.opengis.net/wfs}FeatureCollection'
        member = root.find(f'{GML_NS}featureMember')
        feature = member.find(f'{QGS_NS}parcels')
        assert feature.get('fid') == 'parcels.1'
        assert feature.find(f'{QGS_NS}name').text == 'Les Prés'
        assert feature.find(f'{QGS_NS}owner') is None
        assert feature.find(f'{GML_NS}boundedBy/{GML_NS}Box') is not None
        assert feature.find(f'{QGS_NS}geometry/{GML_NS}Polygon') is not None

    def test_gml3_uses_envelope(self, project):
        content, _ = feature_info(project, INFO_FORMAT='application/vnd.ogc.gml/3.1.1')
        envelope = ET.fromstring(content).find(f'.//{GML_NS}Envelope')
        assert envelope.get('srsName') == 'EPSG:3857'
        assert envelope.find(f'{GML_NS}lowerCorner').text == '0 0'
        assert envelope.find(f'{GML_NS}upperCorner').text == '50 50'


class TestErrors:

    def test_query_layers_required(self, project):
        with pytest.raises(ServiceException) as exc:
            feature_info(project, QUERY_LAYERS=None)
        assert exc.value.code == 'ParameterMissing'

    def test_point_required_without_filter(self, project):
        with pytest.raises(ServiceException) as exc:
            feature_info(project, I=None, J=None)
        assert exc.value.code == 'ParameterMissing'

    def test_unknown_query_layer(self, project):
        with pytest.raises(ServiceException) as exc:
            feature_info(project, QUERY_LAYERS='inconnue')
        assert exc.value.code == 'LayerNotDefined'
