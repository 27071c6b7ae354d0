# api_wms/capabilities.py
"""
Documents de description du service.

- GetCapabilities (WMS 1.1.1 et 1.3.0) et GetProjectSettings
- GetContext (contexte OWS)
- GetSchemaExtension (schéma XSD des extensions qgs:)
"""

from pathlib import Path
from typing import List, Optional
import logging
import math
import xml.etree.ElementTree as ET

from api_projects.crs import CoordinateReferenceSystem
from api_projects.layer_tree import LayerTreeGroup
from cartosig_web.cache_utils import cache_get, cache_set, hash_params

from .xml_utils import format_number, online_resource, text_element, to_bytes

logger = logging.getLogger(__name__)

DOCTYPE_1_1_1 = "WMT_MS_Capabilities SYSTEM 'http://schemas.opengis.net/wms/1.1.1/WMS_MS_Capabilities.dtd'"

SCHEMA_EXTENSION_PATH = Path(__file__).resolve().parent / 'resources' / 'schemaExtension.xsd'

GETMAP_FORMATS = [
    'image/jpeg', 'image/png', 'image/png; mode=16bit', 'image/png; mode=8bit', 'image/png; mode=1bit',
]
FEATURE_INFO_FORMATS = [
    'text/plain', 'text/html', 'text/xml', 'application/vnd.ogc.gml', 'application/vnd.ogc.gml/3.1.1',
]
LEGEND_FORMATS = ['image/jpeg', 'image/png']
PRINT_FORMATS = ['svg', 'png', 'pdf']

# Taille d'un pixel (m) utilisée pour les ScaleHint WMS 1.1.1
PIXEL_SIZE = 0.00028


# =============================================================================
# GETCAPABILITIES / GETPROJECTSETTINGS
# =============================================================================

def get_capabilities(project, config, service_url: str, version: str = '1.3.0',
                     project_settings: bool = False, service: str = 'WMS') -> bytes:
    """
    Document de capacités, mis en cache par projet, version, type de document
    et URL du service (domaine CAPABILITIES).
    """
    key = hash_params({
        'project': project.file_name,
        'version': version,
        'settings': project_settings,
        'url': service_url,
        'service': service.upper(),
    })
    cached = cache_get('CAPABILITIES', key)
    if cached is not None:
        return cached

    document = build_capabilities(project, config, service_url, version, project_settings, service)
    cache_set('CAPABILITIES', key, data=document)
    logger.debug(f"Capacités {version} générées pour {project.file_name}")
    return document


def build_capabilities(project, config, service_url: str, version: str = '1.3.0',
                       project_settings: bool = False, service: str = 'WMS') -> bytes:
    href = config.online_resource or service_url

    if version == '1.1.1':
        root = ET.Element('WMT_MS_Capabilities')
    else:
        root = ET.Element('WMS_Capabilities', {
            'xmlns': 'http://www.opengis.net/wms',
            'xmlns:sld': 'http://www.opengis.net/sld',
            'xmlns:qgs': 'http://www.qgis.org/wms',
            'xmlns:xsi': 'http://www.w3.org/2001/XMLSchema-instance',
            'xsi:schemaLocation': (
                'http://www.opengis.net/wms http://schemas.opengis.net/wms/1.3.0/capabilities_1_3_0.xsd '
                'http://www.opengis.net/sld http://schemas.opengis.net/sld/1.1.0/sld_capabilities.xsd '
                f'http://www.qgis.org/wms {service_url}SERVICE=WMS&REQUEST=GetSchemaExtension'
            ),
        })
    root.set('version', version)

    _service_element(root, config, href, version)

    capability = ET.SubElement(root, 'Capability')
    _request_element(capability, href, version, project_settings, service)

    exception = ET.SubElement(capability, 'Exception')
    text_element(exception, 'Format', 'application/vnd.ogc.se_xml' if version == '1.1.1' else 'text/xml')

    if version != '1.1.1':
        ET.SubElement(capability, 'sld:UserDefinedSymbolization', {
            'SupportSLD': '1',
            'UserLayer': '0',
            'UserStyle': '1',
            'RemoteWFS': '0',
            'InlineFeature': '0',
            'RemoteWCS': '0',
        })

    if project_settings:
        _composer_templates(capability, project)
        wfs_names = config.wfs_layer_names()
        if wfs_names:
            wfs_layers = ET.SubElement(capability, 'WFSLayers')
            for name in wfs_names:
                ET.SubElement(wfs_layers, 'WFSLayer', {'name': name})

    LayerCapabilitiesWriter(project, config, service_url, version, project_settings).write(capability)

    return to_bytes(root, DOCTYPE_1_1_1 if version == '1.1.1' else None)


def _service_element(root: ET.Element, config, href: str, version: str):
    service = ET.SubElement(root, 'Service')
    text_element(service, 'Name', 'OGC:WMS' if version == '1.1.1' else 'WMS')
    text_element(service, 'Title', config.service_title)
    if config.service_abstract:
        text_element(service, 'Abstract', config.service_abstract)
    if config.keywords:
        keyword_list = ET.SubElement(service, 'KeywordList')
        for keyword in config.keywords:
            text_element(keyword_list, 'Keyword', keyword)
    online_resource(service, href)

    if config.contact_person or config.contact_organization or config.contact_mail or config.contact_phone:
        contact = ET.SubElement(service, 'ContactInformation')
        primary = ET.SubElement(contact, 'ContactPersonPrimary')
        text_element(primary, 'ContactPerson', config.contact_person)
        text_element(primary, 'ContactOrganization', config.contact_organization)
        if config.contact_position:
            text_element(contact, 'ContactPosition', config.contact_position)
        if config.contact_phone:
            text_element(contact, 'ContactVoiceTelephone', config.contact_phone)
        if config.contact_mail:
            text_element(contact, 'ContactElectronicMailAddress', config.contact_mail)

    text_element(service, 'Fees', config.fees or 'conditions unknown')
    text_element(service, 'AccessConstraints', config.access_constraints or 'None')

    if version != '1.1.1':
        if config.max_width > 0:
            text_element(service, 'MaxWidth', config.max_width)
        if config.max_height > 0:
            text_element(service, 'MaxHeight', config.max_height)


def _request_element(capability: ET.Element, href: str, version: str, project_settings: bool, service: str):
    request = ET.SubElement(capability, 'Request')

    def operation(tag: str, formats: List[str]):
        element = ET.SubElement(request, tag)
        for output_format in formats:
            text_element(element, 'Format', output_format)
        http = ET.SubElement(ET.SubElement(element, 'DCPType'), 'HTTP')
        if service.upper() != 'WMS':
            online_resource(ET.SubElement(http, 'SOAP'), href)
        online_resource(ET.SubElement(http, 'Get'), href)

    legacy = version == '1.1.1'
    operation('GetCapabilities', ['application/vnd.ogc.wms_xml' if legacy else 'text/xml'])
    operation('GetMap', GETMAP_FORMATS)
    operation('GetFeatureInfo', FEATURE_INFO_FORMATS)
    operation('GetLegendGraphic' if legacy else 'sld:GetLegendGraphic', LEGEND_FORMATS)
    operation('DescribeLayer' if legacy else 'sld:DescribeLayer', ['text/xml'])
    operation('GetStyles' if legacy else 'qgs:GetStyles', ['text/xml'])
    if project_settings:
        operation('GetPrint', PRINT_FORMATS)


def _composer_templates(capability: ET.Element, project):
    if not project.print_layouts:
        return
    templates = ET.SubElement(capability, 'ComposerTemplates')
    for layout in project.print_layouts:
        template = ET.SubElement(templates, 'ComposerTemplate', {
            'name': layout.name,
            'width': format_number(layout.paper_width),
            'height': format_number(layout.paper_height),
        })
        for index, layout_map in enumerate(layout.maps):
            ET.SubElement(template, 'ComposerMap', {
                'name': f'map{index}',
                'width': format_number(layout_map.width),
                'height': format_number(layout_map.height),
            })
        for label in layout.labels:
            if label.id:
                ET.SubElement(template, 'ComposerLabel', {'name': label.id})


# =============================================================================
# ARBRE DES COUCHES
# =============================================================================

def project_extent(project, config):
    """Union des emprises des couches publiées, dans le SCR du projet."""
    extent = None
    for layer in config.published_layers():
        layer_extent = layer.extent()
        if layer_extent is None:
            continue
        if project.crs:
            layer_extent = layer.crs.transform_extent(layer_extent, project.crs)
            if layer_extent is None:
                continue
        if extent is None:
            extent = layer_extent
        else:
            extent = (min(extent[0], layer_extent[0]), min(extent[1], layer_extent[1]),
                      max(extent[2], layer_extent[2]), max(extent[3], layer_extent[3]))
    return extent


class LayerCapabilitiesWriter:
    """Écrit l'élément Layer racine et ses descendants (groupes et couches)."""

    def __init__(self, project, config, service_url: str, version: str, project_settings: bool):
        self.project = project
        self.config = config
        self.service_url = service_url
        self.version = version
        self.project_settings = project_settings
        self.crs_list = config.crs_list()
        self.wgs84 = CoordinateReferenceSystem('EPSG:4326')

    @property
    def legacy(self) -> bool:
        return self.version == '1.1.1'

    def write(self, capability: ET.Element):
        root = ET.SubElement(capability, 'Layer')
        name = self.config.root_name or self.project.title
        if name:
            text_element(root, 'Name', name)
        text_element(root, 'Title', self.config.service_title)
        if self.config.service_abstract:
            text_element(root, 'Abstract', self.config.service_abstract)
        self._crs_elements(root)

        extent = self.config.extent or project_extent(self.project, self.config)
        if extent is not None:
            self._bbox_elements(root, extent, self.project.crs)

        for child in self.config.wms_tree():
            self._write_node(root, child)

    def _write_node(self, parent: ET.Element, node):
        if isinstance(node, LayerTreeGroup):
            self._write_group(parent, node)
        else:
            layer = self.project.map_layer(node.layer_id)
            self._write_layer(parent, layer, node.visible)

    def _write_group(self, parent: ET.Element, group: LayerTreeGroup):
        element = ET.SubElement(parent, 'Layer')
        children = self.config.published_children(group)
        queryable = any(
            self.config.is_identifiable(layer) for layer in self.config.tree_layers(group)
        )
        element.set('queryable', '1' if queryable else '0')
        if self.project_settings:
            element.set('visible', '1' if group.visible else '0')
            element.set('mutuallyExclusive', '1' if group.mutually_exclusive else '0')

        text_element(element, 'Name', group.wms_name())
        text_element(element, 'Title', group.title or group.name)
        if group.abstract:
            text_element(element, 'Abstract', group.abstract)
        self._crs_elements(element)

        extent = None
        for layer in self.config.tree_layers(group):
            layer_extent = self._extent_in(layer, self.wgs84)
            if layer_extent is None:
                continue
            extent = layer_extent if extent is None else (
                min(extent[0], layer_extent[0]), min(extent[1], layer_extent[1]),
                max(extent[2], layer_extent[2]), max(extent[3], layer_extent[3]),
            )
        if extent is not None:
            self._bbox_elements(element, extent, self.wgs84)

        for child in children:
            self._write_node(element, child)

    def _write_layer(self, parent: ET.Element, layer, visible: bool = True):
        element = ET.SubElement(parent, 'Layer')
        element.set('queryable', '1' if self.config.is_identifiable(layer) else '0')
        if self.project_settings:
            element.set('visible', '1' if visible else '0')
            if layer.display_field:
                element.set('displayField', layer.display_field)
            element.set('geometryType', layer.geometry_type or 'NoGeometry')

        name = self.config.layer_name(layer)
        text_element(element, 'Name', name)
        text_element(element, 'Title', layer.title or layer.name)
        if layer.abstract:
            text_element(element, 'Abstract', layer.abstract)
        if layer.keywords:
            keyword_list = ET.SubElement(element, 'KeywordList')
            for keyword in layer.keywords:
                text_element(keyword_list, 'Keyword', keyword)
        self._crs_elements(element)

        extent = layer.extent()
        if extent is not None:
            self._bbox_elements(element, extent, layer.crs)

        if layer.attribution:
            attribution = ET.SubElement(element, 'Attribution')
            text_element(attribution, 'Title', layer.attribution)
            if layer.attribution_url:
                online_resource(attribution, layer.attribution_url)
        if layer.metadata_url:
            metadata = ET.SubElement(element, 'MetadataURL', {'type': 'FGDC'})
            text_element(metadata, 'Format', 'text/xml')
            online_resource(metadata, layer.metadata_url)
        if layer.data_url:
            data = ET.SubElement(element, 'DataURL')
            text_element(data, 'Format', 'text/html')
            online_resource(data, layer.data_url)

        for style in layer.styles.values():
            self._style_element(element, name, style)

        if layer.has_scale_based_visibility:
            self._scale_elements(element, layer)

        if self.project_settings:
            self._attributes_element(element, layer)

    def _style_element(self, parent: ET.Element, layer_name: str, style):
        element = ET.SubElement(parent, 'Style')
        text_element(element, 'Name', style.name)
        text_element(element, 'Title', style.title)
        if style.abstract:
            text_element(element, 'Abstract', style.abstract)
        legend = ET.SubElement(element, 'LegendURL')
        text_element(legend, 'Format', 'image/png')
        href = (
            f'{self.service_url}SERVICE=WMS&VERSION={self.version}&REQUEST=GetLegendGraphic'
            f'&LAYER={layer_name}&FORMAT=image/png&STYLE={style.name}'
        )
        online_resource(legend, href)

    def _scale_elements(self, parent: ET.Element, layer):
        if self.legacy:
            # ScaleHint : diagonale d'un pixel au sol
            ET.SubElement(parent, 'ScaleHint', {
                'min': format_number(layer.min_scale * PIXEL_SIZE * math.sqrt(2), 8),
                'max': format_number(layer.max_scale * PIXEL_SIZE * math.sqrt(2), 8),
            })
        else:
            text_element(parent, 'MinScaleDenominator', format_number(layer.min_scale))
            text_element(parent, 'MaxScaleDenominator', format_number(layer.max_scale))

    def _attributes_element(self, parent: ET.Element, layer):
        attributes = ET.SubElement(parent, 'Attributes')
        for field in layer.fields:
            if field.name in layer.excluded_wms_attributes:
                continue
            attribute = ET.SubElement(attributes, 'Attribute', {
                'name': field.name,
                'type': field.type_name,
                'typeName': field.type_name,
                'precision': '0',
                'length': '0',
            })
            if field.alias:
                attribute.set('alias', field.alias)

    def _crs_elements(self, parent: ET.Element):
        tag = 'SRS' if self.legacy else 'CRS'
        for authid in self.crs_list:
            text_element(parent, tag, authid)

    def _extent_in(self, layer, crs):
        extent = layer.extent()
        if extent is None:
            return None
        return layer.crs.transform_extent(extent, crs)

    def _bbox_elements(self, parent: ET.Element, extent, crs: CoordinateReferenceSystem):
        """Emprise géographique puis une BoundingBox par SCR publié."""
        geographic = crs.transform_extent(extent, self.wgs84) if crs else None
        if geographic is not None:
            if self.legacy:
                ET.SubElement(parent, 'LatLonBoundingBox', {
                    'minx': format_number(geographic[0]),
                    'miny': format_number(geographic[1]),
                    'maxx': format_number(geographic[2]),
                    'maxy': format_number(geographic[3]),
                })
            else:
                bbox = ET.SubElement(parent, 'EX_GeographicBoundingBox')
                text_element(bbox, 'westBoundLongitude', format_number(geographic[0]))
                text_element(bbox, 'eastBoundLongitude', format_number(geographic[2]))
                text_element(bbox, 'southBoundLatitude', format_number(geographic[1]))
                text_element(bbox, 'northBoundLatitude', format_number(geographic[3]))

        for authid in self.crs_list:
            target = CoordinateReferenceSystem(authid)
            if not target:
                continue
            target_extent = crs.transform_extent(extent, target) if crs else None
            if target_extent is None:
                continue
            if not self.legacy and target.has_axis_inverted():
                target_extent = (target_extent[1], target_extent[0], target_extent[3], target_extent[2])
            ET.SubElement(parent, 'BoundingBox', {
                'SRS' if self.legacy else 'CRS': authid,
                'minx': format_number(target_extent[0]),
                'miny': format_number(target_extent[1]),
                'maxx': format_number(target_extent[2]),
                'maxy': format_number(target_extent[3]),
            })


# =============================================================================
# GETCONTEXT
# =============================================================================

OWS_CONTEXT_NAMESPACES = {
    'xmlns': 'http://www.opengis.net/ows-context',
    'xmlns:ows-context': 'http://www.opengis.net/ows-context',
    'xmlns:context': 'http://www.opengis.net/context',
    'xmlns:ows': 'http://www.opengis.net/ows',
    'xmlns:sld': 'http://www.opengis.net/sld',
    'xmlns:ogc': 'http://www.opengis.net/ogc',
    'xmlns:gml': 'http://www.opengis.net/gml',
    'xmlns:kml': 'http://www.opengis.net/kml/2.2',
    'xmlns:xlink': 'http://www.w3.org/1999/xlink',
    'xmlns:ns9': 'http://www.w3.org/2005/Atom',
    'xmlns:xal': 'urn:oasis:names:tc:ciq:xsdschema:xAL:2.0',
    'xmlns:ins': 'http://www.inspire.org',
}


def get_context(project, config, service_url: str) -> bytes:
    """Contexte OWS : informations générales et une ressource WMS par couche publiée."""
    href = config.online_resource or service_url
    root = ET.Element('OWSContext', dict(OWS_CONTEXT_NAMESPACES, version='0.3.1'))

    general = ET.SubElement(root, 'General')
    text_element(general, 'ows:Title', config.service_title)
    if config.service_abstract:
        text_element(general, 'ows:Abstract', config.service_abstract)

    extent = config.extent
    if extent is None:
        extent = project_extent(project, config)
    if extent is not None:
        bbox = ET.SubElement(general, 'ows:BoundingBox', {'crs': project.crs.authid or 'EPSG:4326'})
        text_element(bbox, 'ows:LowerCorner', f'{format_number(extent[0])} {format_number(extent[1])}')
        text_element(bbox, 'ows:UpperCorner', f'{format_number(extent[2])} {format_number(extent[3])}')

    resources = ET.SubElement(root, 'ResourceList')
    visibility = {node.layer_id: node.visible for node in project.layer_tree_root.find_layers()}
    # ordre de dessin : du bas vers le haut de l'arbre
    for layer in reversed(config.published_layers()):
        name = config.layer_name(layer)
        element = ET.SubElement(resources, 'Layer', {
            'name': name,
            'queryable': 'true' if config.is_identifiable(layer) else 'false',
            'hidden': 'false' if visibility.get(layer.id, True) else 'true',
            'opacity': format_number(layer.opacity, 2),
        })
        text_element(element, 'ows:Title', layer.title or layer.name)
        if layer.abstract:
            text_element(element, 'ows:Abstract', layer.abstract)
        text_element(element, 'ows:OutputFormat', 'image/png')
        server = ET.SubElement(element, 'Server', {
            'service': 'urn:ogc:serviceType:WMS',
            'version': '1.3.0',
            'default': 'true',
        })
        online_resource(server, href)
        layer_extent = layer.extent()
        if layer_extent is not None:
            bbox = ET.SubElement(element, 'ows:BoundingBox', {'crs': layer.crs.authid})
            text_element(bbox, 'ows:LowerCorner', f'{format_number(layer_extent[0])} {format_number(layer_extent[1])}')
            text_element(bbox, 'ows:UpperCorner', f'{format_number(layer_extent[2])} {format_number(layer_extent[3])}')

    return to_bytes(root)


# =============================================================================
# GETSCHEMAEXTENSION
# =============================================================================

def get_schema_extension() -> Optional[bytes]:
    try:
        return SCHEMA_EXTENSION_PATH.read_bytes()
    except OSError as e:
        logger.error(f"Schéma d'extension illisible : {e}")
        return None
