# api_projects/layers.py
"""
Couches vectorielles d'un projet.

Une couche décrit une source de données (GeoJSON ou Shapefile), ses champs,
ses styles de rendu, son étiquetage et les réglages de publication WMS
(nom court, titre, attributs exclus, échelles de visibilité, infobulle).

Les entités sont chargées en mémoire à la première lecture.
"""

from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import json
import logging
import xml.etree.ElementTree as ET

from django.contrib.gis.gdal import GDALException
from django.contrib.gis.geos import GEOSGeometry, GEOSException, Polygon

from .crs import CoordinateReferenceSystem
from .expressions import FilterExpression

logger = logging.getLogger(__name__)

GEOMETRY_TYPES = {
    'Point': 'Point', 'MultiPoint': 'Point',
    'LineString': 'Line', 'MultiLineString': 'Line',
    'Polygon': 'Polygon', 'MultiPolygon': 'Polygon',
}

DEFAULT_COLORS = {
    'Point': (255, 127, 0, 255),
    'Line': (31, 120, 180, 255),
    'Polygon': (166, 206, 227, 255),
}


def parse_color(value: Optional[str], default=(0, 0, 0, 255)) -> Tuple[int, int, int, int]:
    """'255,0,0,255' ou '#ff0000' → (r, g, b, a)"""
    if not value:
        return default
    value = value.strip()
    try:
        if value.startswith('#') or value.lower().startswith('0x'):
            hexa = value[1:] if value.startswith('#') else value[2:]
            r, g, b = int(hexa[0:2], 16), int(hexa[2:4], 16), int(hexa[4:6], 16)
            a = int(hexa[6:8], 16) if len(hexa) >= 8 else 255
            return r, g, b, a
        parts = [int(float(p)) for p in value.split(',')]
    except ValueError:
        return default
    if len(parts) == 3:
        parts.append(255)
    if len(parts) != 4:
        return default
    return tuple(max(0, min(255, p)) for p in parts)


def format_color(color: Tuple[int, ...]) -> str:
    return ','.join(str(c) for c in color)


# =============================================================================
# CHAMPS ET ENTITÉS
# =============================================================================

class Field:
    def __init__(self, name: str, type_name: str = 'String', alias: str = ''):
        self.name = name
        self.type_name = type_name
        self.alias = alias
        self.value_map: Dict[str, str] = {}

    def display_name(self) -> str:
        return self.alias or self.name

    def represent_value(self, value) -> str:
        """Libellé d'une valeur codée (liste de valeurs), la valeur brute sinon."""
        if value is None:
            return ''
        if self.value_map:
            return self.value_map.get(str(value), str(value))
        return str(value)

    def __repr__(self):
        return f'<Field {self.name}:{self.type_name}>'


class Feature:
    def __init__(self, feature_id: int, attributes: Optional[Dict] = None, geometry: Optional[GEOSGeometry] = None):
        self.id = feature_id
        self.attributes = OrderedDict(attributes or {})
        self.geometry = geometry

    def attribute(self, name: str):
        return self.attributes.get(name)

    def __repr__(self):
        return f'<Feature {self.id}>'


# =============================================================================
# SYMBOLOGIE
# =============================================================================

class Symbol:
    """Symbole simple : remplissage, ligne ou marqueur. Largeurs et tailles en mm."""

    def __init__(self, kind: str = 'fill', color=(166, 206, 227, 255), outline_color=(0, 0, 0, 255),
                 outline_width: float = 0.26, size: float = 2.0, shape: str = 'circle'):
        self.kind = kind
        self.color = tuple(color)
        self.outline_color = tuple(outline_color)
        self.outline_width = outline_width
        self.size = size
        self.shape = shape

    @classmethod
    def default_for(cls, geometry_type: str) -> 'Symbol':
        kind = {'Point': 'marker', 'Line': 'line'}.get(geometry_type, 'fill')
        color = DEFAULT_COLORS.get(geometry_type, DEFAULT_COLORS['Polygon'])
        if kind == 'line':
            return cls(kind, color=color, outline_color=color, outline_width=0.5)
        return cls(kind, color=color)

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Symbol':
        props = {p.get('k'): p.get('v') for p in element.iter('prop')}
        kind = element.get('type', 'fill')
        color = parse_color(props.get('color'), (166, 206, 227, 255))
        default_outline = color if kind == 'line' else (0, 0, 0, 255)
        return cls(
            kind=kind,
            color=color,
            outline_color=parse_color(props.get('outline_color'), default_outline),
            outline_width=float(props.get('outline_width', props.get('line_width', 0.26))),
            size=float(props.get('size', 2.0)),
            shape=props.get('name', 'circle'),
        )

    def to_xml(self, parent: ET.Element, name: str) -> ET.Element:
        element = ET.SubElement(parent, 'symbol', {'name': name, 'type': self.kind, 'alpha': '1'})
        layer = ET.SubElement(element, 'layer')
        for key, value in (
            ('color', format_color(self.color)),
            ('outline_color', format_color(self.outline_color)),
            ('outline_width', str(self.outline_width)),
            ('size', str(self.size)),
            ('name', self.shape),
        ):
            ET.SubElement(layer, 'prop', {'k': key, 'v': value})
        return element

    def __repr__(self):
        return f'<Symbol {self.kind} {self.color}>'


class RendererCategory:
    def __init__(self, value: str, symbol: Symbol, label: str = ''):
        self.value = value
        self.symbol = symbol
        self.label = label or value


class Renderer:
    """Rendu à symbole unique ou catégorisé sur un attribut."""

    SINGLE = 'singleSymbol'
    CATEGORIZED = 'categorizedSymbol'

    def __init__(self, renderer_type: str = SINGLE, symbol: Optional[Symbol] = None,
                 attribute: str = '', categories: Optional[List[RendererCategory]] = None):
        self.type = renderer_type
        self.symbol = symbol or Symbol()
        self.attribute = attribute
        self.categories = categories or []

    def symbol_for_feature(self, feature: Feature) -> Optional[Symbol]:
        if self.type != self.CATEGORIZED:
            return self.symbol
        value = feature.attribute(self.attribute)
        for category in self.categories:
            if str(value) == category.value:
                return category.symbol
        return None

    def legend_items(self) -> List[Tuple[str, Symbol]]:
        if self.type == self.CATEGORIZED:
            return [(c.label, c.symbol) for c in self.categories]
        return [('', self.symbol)]

    @classmethod
    def from_xml(cls, element: Optional[ET.Element], geometry_type: str) -> 'Renderer':
        if element is None:
            return cls(symbol=Symbol.default_for(geometry_type))

        symbols = {}
        symbols_element = element.find('symbols')
        if symbols_element is not None:
            for symbol_element in symbols_element.findall('symbol'):
                symbols[symbol_element.get('name')] = Symbol.from_xml(symbol_element)

        renderer_type = element.get('type', cls.SINGLE)
        if renderer_type == cls.CATEGORIZED:
            categories = [
                RendererCategory(
                    c.get('value', ''),
                    symbols.get(c.get('symbol')) or Symbol.default_for(geometry_type),
                    c.get('label', ''),
                )
                for c in element.iter('category')
            ]
            return cls(cls.CATEGORIZED, attribute=element.get('attr', ''), categories=categories,
                       symbol=Symbol.default_for(geometry_type))

        if renderer_type != cls.SINGLE:
            logger.warning(f"Rendu {renderer_type} non pris en charge, symbole unique utilisé")
        symbol = symbols.get('0') or next(iter(symbols.values()), None) or Symbol.default_for(geometry_type)
        return cls(cls.SINGLE, symbol=symbol)

    def to_xml(self, parent: ET.Element) -> ET.Element:
        element = ET.SubElement(parent, 'renderer-v2', {'type': self.type})
        symbols = ET.SubElement(element, 'symbols')
        if self.type == self.CATEGORIZED:
            element.set('attr', self.attribute)
            categories = ET.SubElement(element, 'categories')
            for index, category in enumerate(self.categories):
                ET.SubElement(categories, 'category', {
                    'value': category.value, 'symbol': str(index), 'label': category.label,
                })
                category.symbol.to_xml(symbols, str(index))
        else:
            self.symbol.to_xml(symbols, '0')
        return element


class Style:
    def __init__(self, name: str, renderer: Renderer, title: str = '', abstract: str = ''):
        self.name = name
        self.renderer = renderer
        self.title = title or name
        self.abstract = abstract


class LabelSettings:
    """Étiquetage simple : un champ, une taille (pt) et une couleur."""

    def __init__(self, field_name: str = '', font_size: float = 10.0, color=(0, 0, 0, 255), enabled: bool = False):
        self.field_name = field_name
        self.font_size = font_size
        self.color = tuple(color)
        self.enabled = enabled and bool(field_name)

    @classmethod
    def from_xml(cls, element: Optional[ET.Element]) -> 'LabelSettings':
        if element is None:
            return cls()
        settings = element.find('settings')
        if settings is None:
            return cls()
        return cls(
            field_name=settings.get('fieldName', ''),
            font_size=float(settings.get('fontSize', 10)),
            color=parse_color(settings.get('color')),
            enabled=element.get('type', 'simple') != 'none',
        )

    def to_xml(self, parent: ET.Element):
        element = ET.SubElement(parent, 'labeling', {'type': 'simple' if self.enabled else 'none'})
        ET.SubElement(element, 'settings', {
            'fieldName': self.field_name,
            'fontSize': str(self.font_size),
            'color': format_color(self.color),
        })


# =============================================================================
# SOURCES DE DONNÉES
# =============================================================================

def _geometry_from_dict(data: Optional[dict], srid: Optional[int]) -> Optional[GEOSGeometry]:
    if not data:
        return None
    geometry = GEOSGeometry(json.dumps(data))
    geometry.srid = srid
    return geometry


def load_geojson(path: Path, srid: Optional[int]) -> List[Feature]:
    with open(path, encoding='utf-8') as f:
        data = json.load(f)

    if data.get('type') == 'FeatureCollection':
        items = data.get('features', [])
    elif data.get('type') == 'Feature':
        items = [data]
    else:
        items = [{'type': 'Feature', 'geometry': data, 'properties': {}}]

    features = []
    for index, item in enumerate(items):
        feature_id = item.get('id')
        if not isinstance(feature_id, int):
            feature_id = index
        features.append(Feature(
            feature_id,
            item.get('properties') or {},
            _geometry_from_dict(item.get('geometry'), srid),
        ))
    return features


def load_shapefile(path: Path, srid: Optional[int]) -> List[Feature]:
    import fiona
    from fiona.model import to_dict

    features = []
    with fiona.open(str(path), 'r') as src:
        for index, record in enumerate(src):
            feature_id = record.id
            features.append(Feature(
                int(feature_id) if str(feature_id).isdigit() else index,
                to_dict(record.properties),
                _geometry_from_dict(to_dict(record.geometry) if record.geometry else None, srid),
            ))
    return features


DATA_LOADERS = {
    '.geojson': load_geojson,
    '.json': load_geojson,
    '.shp': load_shapefile,
}


def _infer_field_type(value) -> str:
    if isinstance(value, bool):
        return 'Boolean'
    if isinstance(value, int):
        return 'Integer'
    if isinstance(value, float):
        return 'Real'
    return 'String'


# =============================================================================
# COUCHE VECTORIELLE
# =============================================================================

class VectorLayer:
    """Couche vectorielle d'un projet (type="vector" dans le fichier .qgs)."""

    def __init__(self, layer_id: str, name: str, source: str = '', geometry_type: str = '',
                 crs: Optional[CoordinateReferenceSystem] = None):
        self.id = layer_id
        self.name = name
        self.source = source
        self.provider = 'ogr'
        self.geometry_type = geometry_type
        self.crs = crs or CoordinateReferenceSystem()

        # Publication
        self.short_name = ''
        self.title = ''
        self.abstract = ''
        self.keywords: List[str] = []
        self.attribution = ''
        self.attribution_url = ''
        self.metadata_url = ''
        self.data_url = ''

        self.min_scale = 0.0
        self.max_scale = 1e8
        self.has_scale_based_visibility = False

        self.fields: List[Field] = []
        self.excluded_wms_attributes: set = set()
        self.map_tip = ''
        self.display_field = ''

        self.subset_string = ''
        self.selected_ids: set = set()
        self.opacity = 1.0

        self.styles: Dict[str, Style] = {}
        self.current_style = 'default'
        self.labeling = LabelSettings()

        self.is_valid = False
        self.error = ''
        self._features: Optional[List[Feature]] = None
        self._absolute_source: Optional[Path] = None

    # -------------------------------------------------------------------------
    # Données
    # -------------------------------------------------------------------------

    def load(self, absolute_source: str) -> bool:
        """Charge les entités de la source ; retourne False (et renseigne error) en cas d'échec."""
        path = Path(absolute_source)
        self._absolute_source = path
        loader = DATA_LOADERS.get(path.suffix.lower())
        if loader is None:
            self.error = f"Format de source non pris en charge : {path.suffix}"
            self.is_valid = False
            return False
        if not path.exists():
            self.error = f"Source introuvable : {path}"
            self.is_valid = False
            return False

        try:
            self._features = loader(path, self.crs.srid)
        except (OSError, ValueError, GEOSException, GDALException) as e:
            self.error = f"Lecture de {path.name} impossible : {e}"
            logger.warning(f"Couche {self.name} : {self.error}")
            self.is_valid = False
            return False

        self._sync_fields()
        if not self.geometry_type:
            self.geometry_type = next(
                (GEOMETRY_TYPES.get(f.geometry.geom_type, '') for f in self._features if f.geometry is not None),
                '',
            )
        if not self.styles:
            self.styles['default'] = Style('default', Renderer(symbol=Symbol.default_for(self.geometry_type)))
        self.is_valid = True
        self.error = ''
        logger.debug(f"Couche {self.name} : {len(self._features)} entité(s) chargée(s)")
        return True

    def set_features(self, features: Iterable[Feature]):
        """Alimente la couche directement (couche mémoire)."""
        self._features = list(features)
        self._sync_fields()
        if not self.geometry_type:
            self.geometry_type = next(
                (GEOMETRY_TYPES.get(f.geometry.geom_type, '') for f in self._features if f.geometry is not None),
                '',
            )
        if not self.styles:
            self.styles['default'] = Style('default', Renderer(symbol=Symbol.default_for(self.geometry_type)))
        self.is_valid = True

    def _sync_fields(self):
        known = {f.name for f in self.fields}
        for feature in self._features or []:
            for name, value in feature.attributes.items():
                if name not in known:
                    self.fields.append(Field(name, _infer_field_type(value)))
                    known.add(name)

    def field(self, name: str) -> Optional[Field]:
        return next((f for f in self.fields if f.name == name), None)

    def field_index(self, name: str) -> int:
        return next((i for i, f in enumerate(self.fields) if f.name == name), -1)

    def all_features(self) -> List[Feature]:
        return list(self._features or [])

    def get_features(self, rect: Optional[Tuple[float, float, float, float]] = None,
                     expression: Optional[str] = None, fids: Optional[Iterable[int]] = None,
                     exact: bool = False, limit: Optional[int] = None) -> List[Feature]:
        """
        Entités de la couche filtrées par le sous-ensemble courant, puis par
        emprise (intersection des bbox, ou des géométries si exact), expression
        et identifiants.
        """
        subset = FilterExpression(self.subset_string)
        extra = FilterExpression(expression) if expression else None
        wanted = set(fids) if fids is not None else None
        rect_geometry = Polygon.from_bbox(rect) if rect and exact else None
        if rect_geometry is not None:
            rect_geometry.srid = self.crs.srid

        result = []
        for feature in self._features or []:
            if wanted is not None and feature.id not in wanted:
                continue
            if not subset.matches(feature):
                continue
            if extra is not None and not extra.matches(feature):
                continue
            if rect is not None:
                if feature.geometry is None or feature.geometry.empty:
                    continue
                if not _bbox_intersects(feature.geometry.extent, rect):
                    continue
                if rect_geometry is not None and not rect_geometry.intersects(feature.geometry):
                    continue
            result.append(feature)
            if limit is not None and len(result) >= limit:
                break
        return result

    def extent(self) -> Optional[Tuple[float, float, float, float]]:
        """Emprise des entités visibles (sous-ensemble appliqué)."""
        extent = None
        for feature in self.get_features():
            if feature.geometry is None or feature.geometry.empty:
                continue
            extent = _combine_extent(extent, feature.geometry.extent)
        return extent

    def feature_count(self) -> int:
        return len(self.get_features())

    # -------------------------------------------------------------------------
    # Publication
    # -------------------------------------------------------------------------

    def wms_name(self, use_layer_ids: bool = False) -> str:
        if use_layer_ids:
            return self.id
        return self.short_name or self.name

    def is_in_scale_range(self, scale: float) -> bool:
        """Bornes incluses ; une échelle nulle ou négative ne filtre rien."""
        if not self.has_scale_based_visibility or scale <= 0:
            return True
        return self.min_scale <= scale <= self.max_scale

    def style(self, name: str = '') -> Optional[Style]:
        if not name or name == 'default':
            return self.styles.get(self.current_style) or self.styles.get('default') or next(
                iter(self.styles.values()), None)
        return self.styles.get(name)

    @property
    def renderer(self) -> Renderer:
        style = self.style()
        if style is None:
            return Renderer(symbol=Symbol.default_for(self.geometry_type))
        return style.renderer

    def save_state(self) -> dict:
        return {
            'subset_string': self.subset_string,
            'selected_ids': set(self.selected_ids),
            'opacity': self.opacity,
            'current_style': self.current_style,
        }

    def restore_state(self, state: dict):
        for key, value in state.items():
            setattr(self, key, value)

    # -------------------------------------------------------------------------
    # XML
    # -------------------------------------------------------------------------

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'VectorLayer':
        def text(tag, default=''):
            child = element.find(tag)
            return child.text or default if child is not None and child.text else default

        crs_element = element.find('srs/spatialrefsys/authid')
        layer = cls(
            text('id'),
            text('layername'),
            text('datasource'),
            element.get('geometry', ''),
            CoordinateReferenceSystem(crs_element.text if crs_element is not None else ''),
        )
        layer.provider = text('provider', 'ogr')
        layer.short_name = text('shortname')
        layer.title = text('title')
        layer.abstract = text('abstract')
        layer.keywords = [k.text for k in element.findall('keywordList/value') if k.text]
        layer.attribution = text('attribution')
        attribution = element.find('attribution')
        if attribution is not None:
            layer.attribution_url = attribution.get('href', '')
        layer.metadata_url = text('metadataUrl')
        layer.data_url = text('dataUrl')

        layer.has_scale_based_visibility = element.get('hasScaleBasedVisibilityFlag', '0') == '1'
        layer.min_scale = float(element.get('minimumScale', element.get('minScale', 0)) or 0)
        layer.max_scale = float(element.get('maximumScale', element.get('maxScale', 1e8)) or 1e8)

        layer.subset_string = text('subsetString')
        layer.map_tip = text('mapTip')
        layer.display_field = text('previewExpression').strip('"')
        layer.excluded_wms_attributes = {a.text for a in element.findall('excludeAttributesWMS/attribute') if a.text}

        try:
            layer.opacity = float(text('layerOpacity', '1'))
        except ValueError:
            layer.opacity = 1.0

        for field_element in element.findall('fields/field'):
            field = Field(field_element.get('name', ''), field_element.get('type', 'String'))
            layer.fields.append(field)
        for alias in element.findall('aliases/alias'):
            field = layer.field(alias.get('field', ''))
            if field is None:
                field = Field(alias.get('field', ''))
                layer.fields.append(field)
            field.alias = alias.get('name', '')
        for value_map in element.findall('valueMaps/valueMap'):
            field = layer.field(value_map.get('field', ''))
            if field is None:
                field = Field(value_map.get('field', ''))
                layer.fields.append(field)
            field.value_map = {e.get('key', ''): e.get('value', '') for e in value_map.findall('entry')}

        style_manager = element.find('map-layer-style-manager')
        if style_manager is not None and style_manager.findall('map-layer-style'):
            layer.current_style = style_manager.get('current', 'default')
            for style_element in style_manager.findall('map-layer-style'):
                name = style_element.get('name', 'default')
                layer.styles[name] = Style(
                    name,
                    Renderer.from_xml(style_element.find('renderer-v2'), layer.geometry_type),
                    style_element.get('title', ''),
                    style_element.get('abstract', ''),
                )
        else:
            layer.styles['default'] = Style('default', Renderer.from_xml(element.find('renderer-v2'), layer.geometry_type))

        layer.labeling = LabelSettings.from_xml(element.find('labeling'))
        return layer

    def to_xml(self, parent: ET.Element, source: str) -> ET.Element:
        element = ET.SubElement(parent, 'maplayer', {
            'type': 'vector',
            'geometry': self.geometry_type,
            'hasScaleBasedVisibilityFlag': '1' if self.has_scale_based_visibility else '0',
            'minimumScale': repr(self.min_scale),
            'maximumScale': repr(self.max_scale),
        })
        for tag, value in (
            ('id', self.id), ('datasource', source), ('layername', self.name),
            ('shortname', self.short_name), ('title', self.title), ('abstract', self.abstract),
            ('provider', self.provider), ('subsetString', self.subset_string),
            ('mapTip', self.map_tip), ('layerOpacity', repr(self.opacity)),
            ('metadataUrl', self.metadata_url), ('dataUrl', self.data_url),
        ):
            if value:
                ET.SubElement(element, tag).text = value
        if self.display_field:
            ET.SubElement(element, 'previewExpression').text = f'"{self.display_field}"'
        if self.attribution:
            ET.SubElement(element, 'attribution', {'href': self.attribution_url}).text = self.attribution

        srs = ET.SubElement(ET.SubElement(element, 'srs'), 'spatialrefsys')
        ET.SubElement(srs, 'authid').text = self.crs.authid

        if self.keywords:
            keywords = ET.SubElement(element, 'keywordList')
            for keyword in self.keywords:
                ET.SubElement(keywords, 'value').text = keyword

        fields = ET.SubElement(element, 'fields')
        aliases = ET.SubElement(element, 'aliases')
        value_maps = ET.SubElement(element, 'valueMaps')
        for field in self.fields:
            ET.SubElement(fields, 'field', {'name': field.name, 'type': field.type_name})
            if field.alias:
                ET.SubElement(aliases, 'alias', {'field': field.name, 'name': field.alias})
            if field.value_map:
                value_map = ET.SubElement(value_maps, 'valueMap', {'field': field.name})
                for key, value in field.value_map.items():
                    ET.SubElement(value_map, 'entry', {'key': key, 'value': value})

        if self.excluded_wms_attributes:
            excluded = ET.SubElement(element, 'excludeAttributesWMS')
            for name in sorted(self.excluded_wms_attributes):
                ET.SubElement(excluded, 'attribute').text = name

        manager = ET.SubElement(element, 'map-layer-style-manager', {'current': self.current_style})
        for style in self.styles.values():
            style_element = ET.SubElement(manager, 'map-layer-style', {'name': style.name})
            if style.title != style.name:
                style_element.set('title', style.title)
            if style.abstract:
                style_element.set('abstract', style.abstract)
            style.renderer.to_xml(style_element)

        self.labeling.to_xml(element)
        return element

    def __repr__(self):
        return f'<VectorLayer {self.id} ({self.name})>'


def _bbox_intersects(a, b) -> bool:
    return not (a[2] < b[0] or b[2] < a[0] or a[3] < b[1] or b[3] < a[1])


def _combine_extent(extent, other):
    if extent is None:
        return tuple(other)
    return (min(extent[0], other[0]), min(extent[1], other[1]),
            max(extent[2], other[2]), max(extent[3], other[3]))
