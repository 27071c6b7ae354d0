# api_wms/featureinfo.py
"""
GetFeatureInfo : interrogation des couches au point cliqué (I/J) ou par
filtre attributaire (FILTER sans I/J).

Le document XML GetFeatureInfoResponse est la forme de référence ; les
sorties text/html et text/plain en sont dérivées. Les formats GML produisent
une wfs:FeatureCollection.
"""

from html import escape
from typing import Optional, Tuple
import logging
import xml.etree.ElementTree as ET

from django.contrib.gis.gdal import GDALException
from django.contrib.gis.geos import GEOSException

from api_projects.expressions import replace_expression_text

from .exceptions import ServiceException
from .getmap import MapRequest
from .xml_utils import format_number, to_bytes

logger = logging.getLogger(__name__)

GML_FORMATS = ('application/vnd.ogc.gml', 'application/vnd.ogc.gml/3.1.1')
INFO_FORMATS = ('text/xml', 'text/html', 'text/plain') + GML_FORMATS

GML_NAMESPACES = {
    'xmlns:wfs': 'http://www.opengis.net/wfs',
    'xmlns:ogc': 'http://www.opengis.net/ogc',
    'xmlns:gml': 'http://www.opengis.net/gml',
    'xmlns:ows': 'http://www.opengis.net/ows',
    'xmlns:xlink': 'http://www.w3.org/1999/xlink',
    'xmlns:qgs': 'http://qgis.org/gml',
    'xmlns:xsi': 'http://www.w3.org/2001/XMLSchema-instance',
    'xsi:schemaLocation': 'http://www.opengis.net/wfs http://schemas.opengis.net/wfs/1.0.0/wfs.xsd http://qgis.org/gml',
}

# Tolérances par défaut : fraction de la largeur de l'emprise
TOLERANCE_DIVISORS = {'Polygon': 400.0, 'Line': 200.0, 'Point': 100.0}
TOLERANCE_PARAMETERS = {'Polygon': 'FI_POLYGON_TOLERANCE', 'Line': 'FI_LINE_TOLERANCE', 'Point': 'FI_POINT_TOLERANCE'}


def _gml_geometry(geometry) -> ET.Element:
    """Géométrie GML 2 (OGR) avec le préfixe gml: écrit littéralement."""
    wrapper = ET.fromstring(f'<wrapper xmlns:gml="{GML_NAMESPACES["xmlns:gml"]}">{geometry.ogr.gml}</wrapper>')
    element = wrapper[0]
    for node in element.iter():
        if node.tag.startswith('{'):
            node.tag = 'gml:' + node.tag.split('}', 1)[1]
    return element


def _combine(extent, other):
    if extent is None:
        return tuple(other)
    return (min(extent[0], other[0]), min(extent[1], other[1]),
            max(extent[2], other[2]), max(extent[3], other[3]))


class FeatureInfoBuilder:
    """Construit la réponse GetFeatureInfo d'une requête."""

    def __init__(self, request: MapRequest, info_format: str):
        self.request = request
        self.parameters = request.parameters
        self.config = request.config
        self.info_format = info_format
        self.gml = info_format.startswith('application/vnd.ogc.gml')
        self.gml3 = info_format.startswith('application/vnd.ogc.gml/3')
        self.precision = self.parameters.get_int('WMS_PRECISION', self.config.precision)
        if self.precision < 0:
            self.precision = self.config.precision

    # -------------------------------------------------------------------------
    # Point d'interrogation
    # -------------------------------------------------------------------------

    def info_point(self, settings) -> Optional[Tuple[float, float]]:
        """
        Centre du pixel I/J (X/Y en 1.1.1) en coordonnées carte ; None sans I/J
        quand FILTER est présent.

        Raises:
            ServiceException: ParameterMissing
        """
        i = self.parameters.get_int('I', self.parameters.get_int('X', -1))
        j = self.parameters.get_int('J', self.parameters.get_int('Y', -1))
        if i == -1 or j == -1:
            if 'FILTER' in self.parameters:
                return None
            raise ServiceException('ParameterMissing', 'I/J parameters are required for GetFeatureInfo')

        xres, yres = settings.map_units_per_pixel
        return (
            settings.extent[0] + i * xres + xres / 2.0,
            settings.extent[3] - j * yres - yres / 2.0,
        )

    def search_rect(self, layer, settings, point):
        """Rectangle de recherche autour du point, dans le SCR de la couche."""
        geometry_type = layer.geometry_type if layer.geometry_type in TOLERANCE_DIVISORS else 'Point'
        parameter = TOLERANCE_PARAMETERS[geometry_type]
        width = settings.extent[2] - settings.extent[0]
        if parameter in self.parameters:
            tolerance = self.parameters.get_int(parameter, 0) * settings.map_units_per_pixel[0]
        else:
            tolerance = width / TOLERANCE_DIVISORS[geometry_type]

        rect = (point[0] - tolerance, point[1] - tolerance, point[0] + tolerance, point[1] + tolerance)
        if settings.crs and layer.crs and layer.crs != settings.crs:
            return settings.crs.transform_extent(rect, layer.crs)
        return rect

    # -------------------------------------------------------------------------
    # Document
    # -------------------------------------------------------------------------

    def build(self) -> ET.Element:
        settings = self.request.map_settings()
        feature_count = self.parameters.get_int('FEATURE_COUNT', 1)
        point = self.info_point(settings)
        query_layers = self.request.layers('QUERY_LAYERS')

        if self.gml:
            root = ET.Element('wfs:FeatureCollection', GML_NAMESPACES)
        else:
            root = ET.Element('GetFeatureInfoResponse')

        with self.request.layer_state():
            scale = settings.scale()
            features_rect = None
            # ordre des paramètres, pas l'ordre de dessin
            for layer, _ in reversed(query_layers):
                if not self.config.is_identifiable(layer):
                    continue
                if not layer.is_in_scale_range(scale):
                    continue
                extent = self._layer_info(root, layer, settings, point, feature_count)
                if extent is not None:
                    features_rect = _combine(features_rect, extent)

        if point is None:
            self._insert_features_bbox(root, features_rect, settings)
        return root

    def _layer_info(self, root: ET.Element, layer, settings, point, feature_count: int):
        """Ajoute les entités trouvées ; retourne leur emprise (SCR de sortie)."""
        if point is not None:
            rect = self.search_rect(layer, settings, point)
            if rect is None:
                return None
            features = layer.get_features(rect=rect, exact=True)
        elif 'BBOX' in self.parameters:
            features = layer.get_features(rect=settings.extent_in(layer.crs))
        else:
            features = layer.get_features()

        layer_name = self.config.layer_name(layer)
        if self.gml:
            layer_element = root
        else:
            layer_element = ET.SubElement(root, 'Layer', {'name': layer_name})

        renderer = layer.renderer
        output_crs = settings.crs if settings.crs else layer.crs
        extent = None
        count = 0
        for feature in features:
            if feature.geometry is not None and renderer.symbol_for_feature(feature) is None:
                continue
            count += 1
            if count > feature_count:
                break

            geometry = self._output_geometry(feature.geometry, layer.crs, output_crs)
            box = geometry.extent if geometry is not None and not geometry.empty else None
            if box is not None:
                extent = _combine(extent, box)

            if self.gml:
                member = ET.SubElement(layer_element, 'gml:featureMember')
                self._feature_gml(member, layer, layer_name, feature, geometry, box, output_crs)
            else:
                self._feature_xml(layer_element, layer, feature, geometry, box, output_crs)

        logger.debug(f"GetFeatureInfo {layer_name} : {min(count, feature_count)} entité(s)")
        return extent

    def _output_geometry(self, geometry, layer_crs, output_crs):
        if geometry is None:
            return None
        try:
            return layer_crs.transform_geometry(geometry, output_crs) if layer_crs else geometry
        except (GDALException, GEOSException) as e:
            logger.warning(f"Reprojection de l'entité impossible : {e}")
            return geometry

    def _attribute_value(self, layer, field, value) -> str:
        if value is None:
            return ''
        return field.represent_value(value)

    def _feature_xml(self, parent: ET.Element, layer, feature, geometry, box, output_crs):
        element = ET.SubElement(parent, 'Feature', {'id': str(feature.id)})
        for field in layer.fields:
            if field.name in layer.excluded_wms_attributes:
                continue
            ET.SubElement(element, 'Attribute', {
                'name': field.display_name(),
                'value': self._attribute_value(layer, field, feature.attribute(field.name)),
            })

        if layer.map_tip:
            ET.SubElement(element, 'Attribute', {
                'name': 'maptip',
                'value': replace_expression_text(layer.map_tip, feature),
            })

        if box is not None:
            ET.SubElement(element, 'BoundingBox', {
                'SRS' if self.request.version == '1.1.1' else 'CRS': output_crs.authid,
                'minx': format_number(box[0], self.precision),
                'maxx': format_number(box[2], self.precision),
                'miny': format_number(box[1], self.precision),
                'maxy': format_number(box[3], self.precision),
            })

        if self.config.add_wkt_geometry and geometry is not None and not geometry.empty:
            ET.SubElement(element, 'Attribute', {
                'name': 'geometry',
                'value': geometry.wkt,
                'type': 'derived',
            })

    def _feature_gml(self, parent: ET.Element, layer, type_name: str, feature, geometry, box, output_crs):
        element = ET.SubElement(parent, f'qgs:{type_name}', {'fid': f'{type_name}.{feature.id}'})

        if box is not None:
            bounded = ET.SubElement(element, 'gml:boundedBy')
            self._gml_box(bounded, box, output_crs)

        if self.config.add_wkt_geometry and geometry is not None and not geometry.empty:
            geometry_element = ET.SubElement(element, 'qgs:geometry')
            geometry_element.append(_gml_geometry(geometry))

        for field in layer.fields:
            if field.name in layer.excluded_wms_attributes:
                continue
            attribute = ET.SubElement(element, f"qgs:{field.name.replace(' ', '_')}")
            attribute.text = self._attribute_value(layer, field, feature.attribute(field.name))

        if layer.map_tip:
            maptip = ET.SubElement(element, 'qgs:maptip')
            maptip.text = replace_expression_text(layer.map_tip, feature)

    def _gml_box(self, parent: ET.Element, box, crs):
        if self.gml3:
            envelope = ET.SubElement(parent, 'gml:Envelope')
            if crs:
                envelope.set('srsName', crs.authid)
            lower = ET.SubElement(envelope, 'gml:lowerCorner')
            lower.text = f'{format_number(box[0], self.precision)} {format_number(box[1], self.precision)}'
            upper = ET.SubElement(envelope, 'gml:upperCorner')
            upper.text = f'{format_number(box[2], self.precision)} {format_number(box[3], self.precision)}'
        else:
            gml_box = ET.SubElement(parent, 'gml:Box')
            if crs:
                gml_box.set('srsName', crs.authid)
            coordinates = ET.SubElement(gml_box, 'gml:coordinates', {'cs': ',', 'ts': ' '})
            coordinates.text = (
                f'{format_number(box[0], self.precision)},{format_number(box[1], self.precision)} '
                f'{format_number(box[2], self.precision)},{format_number(box[3], self.precision)}'
            )

    def _insert_features_bbox(self, root: ET.Element, rect, settings):
        """Emprise des entités trouvées, en premier enfant (requête par FILTER)."""
        if rect is None:
            return
        if self.gml:
            bounded = ET.Element('gml:boundedBy')
            self._gml_box(bounded, rect, settings.crs)
            root.insert(0, bounded)
        else:
            root.insert(0, ET.Element('BoundingBox', {
                'CRS': settings.crs.authid,
                'minx': format_number(rect[0], 8),
                'maxx': format_number(rect[2], 8),
                'miny': format_number(rect[1], 8),
                'maxy': format_number(rect[3], 8),
            }))


# =============================================================================
# SORTIES
# =============================================================================

def to_html(root: ET.Element) -> bytes:
    lines = [
        '<HEAD>',
        '<TITLE> GetFeatureInfo results </TITLE>',
        '<META http-equiv="Content-Type" content="text/html;charset=utf-8"/>',
        '</HEAD>',
        '<BODY>',
    ]
    for layer in root.findall('Layer'):
        lines.append('<TABLE border=1 width=100%>')
        lines.append(f'<TR><TH width=25%>Layer</TH><TD>{escape(layer.get("name", ""))}</TD></TR>')
        lines.append('</BR>')
        for feature in layer.findall('Feature'):
            lines.append('<TABLE border=1 width=100%>')
            lines.append(f'<TR><TH>Feature</TH><TD>{escape(feature.get("id", ""))}</TD></TR>')
            for attribute in feature.findall('Attribute'):
                lines.append(
                    f'<TR><TH>{escape(attribute.get("name", ""))}</TH>'
                    f'<TD>{escape(attribute.get("value", ""))}</TD></TR>'
                )
            lines.append('</TABLE>')
            lines.append('</BR>')
        lines.append('</TABLE>')
        lines.append('<BR></BR>')
    lines.append('</BODY>')
    return '\n'.join(lines).encode('utf-8')


def to_plain_text(root: ET.Element) -> bytes:
    lines = ['GetFeatureInfo results', '']
    for layer in root.findall('Layer'):
        lines.append(f"Layer '{layer.get('name', '')}'")
        for feature in layer.findall('Feature'):
            lines.append(f"Feature {feature.get('id', '')}")
            for attribute in feature.findall('Attribute'):
                lines.append(f"{attribute.get('name', '')} = '{attribute.get('value', '')}'")
        lines.append('')
    return '\n'.join(lines).encode('utf-8')


def get_feature_info(request: MapRequest) -> Tuple[bytes, str]:
    """
    Raises:
        ServiceException: ParameterMissing, LayerNotDefined, InvalidParameterValue, InvalidCRS,
            Filter string rejected
    """
    if not request.parameters.get_list('QUERY_LAYERS'):
        raise ServiceException('ParameterMissing', 'QUERY_LAYERS parameter is required for GetFeatureInfo')

    info_format = request.parameters.get('INFO_FORMAT', 'text/plain')
    builder = FeatureInfoBuilder(request, info_format)
    root = builder.build()

    if info_format == 'text/html':
        return to_html(root), 'text/html; charset=utf-8'
    if info_format == 'text/plain':
        return to_plain_text(root), 'text/plain; charset=utf-8'
    if builder.gml:
        return to_bytes(root), 'application/vnd.ogc.gml; charset=utf-8'
    return to_bytes(root), 'text/xml; charset=utf-8'
