"""
Tests de la lecture des paramètres WMS et des rapports d'exception.
"""
import xml.etree.ElementTree as ET

import pytest

from api_wms.exceptions import ServiceException
from api_wms.parameters import (
    WmsParameters,
    group_string_list,
    is_empty_extent,
    is_filter_string_safe,
    parse_bbox,
    parse_layer_filters,
    parse_opacities,
    parse_selection,
)


# =============================================================================
# PARAMÈTRES
# =============================================================================

class TestWmsParameters:

    def test_case_insensitive_keys(self):
        parameters = WmsParameters({'request': 'GetMap', 'Width': '256'})
        assert parameters.get('REQUEST') == 'GetMap'
        assert parameters['width'] == '256'
        assert 'WIDTH' in parameters
        assert parameters.to_dict() == {'REQUEST': 'GetMap', 'WIDTH': '256'}

    def test_typed_getters(self):
        parameters = WmsParameters({'WIDTH': '256', 'DPI': 'abc', 'SCALE': '1.5e3', 'TRANSPARENT': 'TRUE'})
        assert parameters.get_int('WIDTH', 0) == 256
        assert parameters.get_int('DPI', 96) == 96
        assert parameters.get_int('HEIGHT', -1) == -1
        assert parameters.get_float('SCALE', 0.0) == 1500.0
        assert parameters.get_bool('TRANSPARENT') is True
        assert parameters.get_bool('ASYNC') is False
        assert parameters.get_bool('ASYNC', True) is True

    def test_lists_skip_empty_items(self):
        parameters = WmsParameters({'LAYERS': 'roads,,parcels', 'HIGHLIGHT_GEOM': 'POINT(0 0);;POINT(1 1)'})
        assert parameters.get_list('LAYERS') == ['roads', 'parcels']
        assert parameters.get_list('HIGHLIGHT_GEOM', ';') == ['POINT(0 0)', 'POINT(1 1)']
        assert parameters.get_list('STYLES') == []

    def test_layer_and_layers_are_combined(self):
        parameters = WmsParameters({'LAYER': 'roads', 'LAYERS': 'parcels', 'STYLES': 'simple'})
        assert parameters.layers_and_styles() == (['roads', 'parcels'], ['simple'])


class TestBbox:

    @pytest.mark.parametrize('value, expected', [
        ('0,0,100,100', (0.0, 0.0, 100.0, 100.0)),
        (' -1.5, 2 ,3,4 ', (-1.5, 2.0, 3.0, 4.0)),
        ('1e 06,0,2e 06,1', (1e6, 0.0, 2e6, 1.0)),
    ])
    def test_parse(self, value, expected):
        assert parse_bbox(value) == expected

    @pytest.mark.parametrize('value', [None, '', '0,0,100', '0,0,a,100', '0,0,1,2,3'])
    def test_invalid(self, value):
        assert parse_bbox(value) is None

    def test_empty_extent(self):
        assert is_empty_extent((0, 0, 0, 0))
        assert is_empty_extent((10, 0, 5, 10))
        assert is_empty_extent(None)
        assert not is_empty_extent((0, 0, 1, 1))


# =============================================================================
# FILTRES
# =============================================================================

class TestFilterSafety:

    def test_group_string_list(self):
        assert group_string_list(["'saint", "jean'", '=', 'x'], "'") == ["'saint jean'", '=', 'x']

    @pytest.mark.parametrize('text', [
        '"type" = \'A\'',
        '"name" = \'Le Moulin\'',
        '"type" IN ( \'A\' , \'R\' )',
        '"surface" >= 1000 AND "surface" < 3000',
        '"surface" > 1.5e3',
        '"name" ILIKE \'%moulin%\'',
        'SOUNDEX ( "owner" ) = SOUNDEX ( \'Martin\' )',
        '"type" != \'\'',
    ])
    def test_accepted(self, text):
        assert is_filter_string_safe(text)

    @pytest.mark.parametrize('text', [
        '"type"=\'A\'',
        '"type" = \'A\'; DROP TABLE parcels',
        '"type" = A',
        '"surface" > nan',
        '"type" = \'A\' UNION SELECT',
    ])
    def test_rejected(self, text):
        assert not is_filter_string_safe(text)

    def test_parse_layer_filters(self):
        filters = parse_layer_filters('parcels:"type" = \'A\';roads:"lanes" > 1;sans_separateur')
        assert filters == [('parcels', '"type" = \'A\''), ('roads', '"lanes" > 1')]

    def test_expression_may_contain_colon(self):
        assert parse_layer_filters('parcels:"name" = \'a:b\'') == [('parcels', '"name" = \'a:b\'')]

    def test_rejected_filter_raises(self):
        with pytest.raises(ServiceException) as exc:
            parse_layer_filters('parcels:"type"=\'A\'')
        assert exc.value.code == 'Filter string rejected'
        assert 'security reasons' in exc.value.message


class TestSelectionAndOpacities:

    def test_selection(self):
        assert parse_selection('parcels:1,x,3;roads:2') == [('parcels', [1, 3]), ('roads', [2])]
        assert parse_selection('') == []

    def test_opacities(self):
        assert parse_opacities('255,128,300,abc', ['a', 'b', 'c', 'd']) == [('a', 255), ('b', 128)]
        assert parse_opacities('0', ['a', 'b']) == [('a', 0)]


# =============================================================================
# EXCEPTIONS
# =============================================================================

class TestServiceException:

    def test_report_1_3_0(self):
        root = ET.fromstring(ServiceException('LayerNotDefined', 'Layer x').to_xml('1.3.0'))
        assert root.tag == '{http://www.opengis.net/ogc}ServiceExceptionReport'
        assert root.get('version') == '1.3.0'
        exception = root.find('{http://www.opengis.net/ogc}ServiceException')
        assert exception.get('code') == 'LayerNotDefined'
        assert exception.text == 'Layer x'

    def test_report_1_1_1_has_no_namespace(self):
        root = ET.fromstring(ServiceException('InvalidCRS', 'x').to_xml('1.1.1'))
        assert root.tag == 'ServiceExceptionReport'
        assert root.find('ServiceException').get('code') == 'InvalidCRS'
