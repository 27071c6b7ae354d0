# api_wms/styles.py
"""
Extension SLD du service : GetStyle, GetStyles et DescribeLayer.

Les styles sont exportés en SLD 1.1.0 / Symbology Encoding à partir des
rendus des couches (symbole unique ou catégorisé).
"""

from typing import List
import xml.etree.ElementTree as ET

from .exceptions import ServiceException
from .xml_utils import format_number, online_resource, text_element, to_bytes

SLD_NAMESPACES = {
    'xmlns': 'http://www.opengis.net/sld',
    'xmlns:ogc': 'http://www.opengis.net/ogc',
    'xmlns:se': 'http://www.opengis.net/se',
    'xmlns:xlink': 'http://www.w3.org/1999/xlink',
    'xmlns:xsi': 'http://www.w3.org/2001/XMLSchema-instance',
}

# Millimètres → pixels (0.28 mm par pixel)
MM_TO_PIXEL = 1 / 0.28


def _hex(color) -> str:
    return '#{:02x}{:02x}{:02x}'.format(*color[:3])


def _svg_parameter(parent: ET.Element, name: str, value: str):
    text_element(parent, 'se:SvgParameter', value, {'name': name})


def _fill(parent: ET.Element, color):
    fill = ET.SubElement(parent, 'se:Fill')
    _svg_parameter(fill, 'fill', _hex(color))
    if len(color) > 3 and color[3] < 255:
        _svg_parameter(fill, 'fill-opacity', format_number(color[3] / 255.0, 2))


def _stroke(parent: ET.Element, color, width_mm: float):
    stroke = ET.SubElement(parent, 'se:Stroke')
    _svg_parameter(stroke, 'stroke', _hex(color))
    _svg_parameter(stroke, 'stroke-width', format_number(width_mm * MM_TO_PIXEL, 2))


def _symbolizer(rule: ET.Element, symbol):
    if symbol.kind == 'line':
        element = ET.SubElement(rule, 'se:LineSymbolizer')
        _stroke(element, symbol.outline_color, symbol.outline_width)
    elif symbol.kind == 'marker':
        element = ET.SubElement(rule, 'se:PointSymbolizer')
        graphic = ET.SubElement(element, 'se:Graphic')
        mark = ET.SubElement(graphic, 'se:Mark')
        text_element(mark, 'se:WellKnownName', symbol.shape)
        _fill(mark, symbol.color)
        _stroke(mark, symbol.outline_color, symbol.outline_width)
        text_element(graphic, 'se:Size', format_number(symbol.size * MM_TO_PIXEL, 2))
    else:
        element = ET.SubElement(rule, 'se:PolygonSymbolizer')
        _fill(element, symbol.color)
        _stroke(element, symbol.outline_color, symbol.outline_width)


def _user_style(parent: ET.Element, style):
    user_style = ET.SubElement(parent, 'UserStyle')
    text_element(user_style, 'se:Name', style.name)
    feature_type_style = ET.SubElement(user_style, 'se:FeatureTypeStyle')
    renderer = style.renderer

    if renderer.type == renderer.CATEGORIZED:
        for category in renderer.categories:
            rule = ET.SubElement(feature_type_style, 'se:Rule')
            text_element(rule, 'se:Name', category.label)
            description = ET.SubElement(rule, 'se:Description')
            text_element(description, 'se:Title', category.label)
            ogc_filter = ET.SubElement(rule, 'ogc:Filter')
            equal = ET.SubElement(ogc_filter, 'ogc:PropertyIsEqualTo')
            text_element(equal, 'ogc:PropertyName', renderer.attribute)
            text_element(equal, 'ogc:Literal', category.value)
            _symbolizer(rule, category.symbol)
    else:
        rule = ET.SubElement(feature_type_style, 'se:Rule')
        text_element(rule, 'se:Name', 'Single symbol')
        _symbolizer(rule, renderer.symbol)


def _sld_document(named_layers: List) -> bytes:
    """named_layers : [(nom publié, [styles])]"""
    root = ET.Element('StyledLayerDescriptor', dict(
        SLD_NAMESPACES,
        version='1.1.0',
        **{'xsi:schemaLocation': 'http://www.opengis.net/sld '
                                 'http://schemas.opengis.net/sld/1.1.0/StyledLayerDescriptor.xsd'},
    ))
    for name, styles in named_layers:
        named_layer = ET.SubElement(root, 'NamedLayer')
        text_element(named_layer, 'se:Name', name)
        for style in styles:
            _user_style(named_layer, style)
    return to_bytes(root)


def get_style(config, layer_name: str, style_name: str) -> bytes:
    """
    Raises:
        ServiceException: LayerNotDefined, StyleNotDefined
    """
    layer = config.layer_by_name(layer_name)
    if layer is None:
        raise ServiceException('LayerNotDefined', f"Layer '{layer_name}' not found")
    style = layer.style(style_name)
    if style is None:
        raise ServiceException('StyleNotDefined', f"Style '{style_name}' not found for layer '{layer_name}'")
    return _sld_document([(layer_name, [style])])


def get_styles(config, layer_names: List[str]) -> bytes:
    """Tous les styles des couches demandées ; un groupe est développé en ses couches."""
    named_layers = []
    for name in layer_names:
        for layer in config.map_layers_from_name(name):
            named_layers.append((config.layer_name(layer), list(layer.styles.values())))
    return _sld_document(named_layers)


def describe_layer(config, layer_names: List[str], href: str) -> bytes:
    root = ET.Element('DescribeLayerResponse', {
        'xmlns': 'http://www.opengis.net/sld',
        'xmlns:ows': 'http://www.opengis.net/ows',
        'xmlns:se': 'http://www.opengis.net/se',
        'xmlns:xlink': 'http://www.w3.org/1999/xlink',
        'xmlns:xsi': 'http://www.w3.org/2001/XMLSchema-instance',
        'xsi:schemaLocation': 'http://www.opengis.net/sld '
                              'http://schemas.opengis.net/sld/1.1.0/DescribeLayer.xsd',
    })
    text_element(root, 'Version', '1.1.0')

    for name in layer_names:
        for layer in config.map_layers_from_name(name):
            description = ET.SubElement(root, 'LayerDescription')
            # couches vectorielles uniquement : publiées en WFS
            text_element(description, 'owsType', 'wfs')
            online_resource(description, href, tag='se:OnlineResource')
            type_name = ET.SubElement(description, 'TypeName')
            text_element(type_name, 'se:FeatureTypeName', config.layer_name(layer))

    return to_bytes(root)
