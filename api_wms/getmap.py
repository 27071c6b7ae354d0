# api_wms/getmap.py
"""
Préparation d'un rendu à partir des paramètres de requête (GetMap,
GetFeatureInfo, GetPrint) et requête GetMap.

Les filtres (FILTER), sélections (SELECTION) et opacités (OPACITIES) modifient
temporairement les couches du projet en cache ; leur état est restauré à la
fin de la requête, y compris en cas d'erreur.
"""

from contextlib import contextmanager
from typing import List, Optional, Tuple
import logging

from django.contrib.gis.geos import GEOSException, GEOSGeometry

from api_projects.crs import CoordinateReferenceSystem
from api_projects.layers import parse_color

from .exceptions import ServiceException
from .parameters import is_empty_extent, parse_bbox, parse_layer_filters, parse_opacities, parse_selection
from .rendering import (
    DEFAULT_DPI,
    HIGHLIGHT_COLOR,
    Highlight,
    LayerRenderJob,
    MapRenderer,
    MapSettings,
    encode_image,
    image_format,
)

logger = logging.getLogger(__name__)


def parse_background(value: Optional[str]):
    """BGCOLOR=0xRRGGBB ou #RRGGBB ; blanc par défaut."""
    if not value:
        return 255, 255, 255, 255
    value = value.strip()
    if value.lower().startswith('0x'):
        value = '#' + value[2:]
    return parse_color(value, (255, 255, 255, 255))


class MapRequest:
    """Paramètres de rendu communs aux requêtes cartographiques."""

    def __init__(self, parameters, project, config, version: str = '1.3.0'):
        self.parameters = parameters
        self.project = project
        self.config = config
        self.version = version

    # -------------------------------------------------------------------------
    # Taille, SCR, emprise
    # -------------------------------------------------------------------------

    def size(self) -> Tuple[int, int]:
        return self.parameters.get_int('WIDTH', 0), self.parameters.get_int('HEIGHT', 0)

    def check_size(self):
        width, height = self.size()
        if width <= 0 or height <= 0:
            raise ServiceException(
                'InvalidParameterValue', 'The WIDTH and HEIGHT parameters must be positive integers',
            )
        max_width, max_height = self.config.max_image_size()
        if width > max_width or height > max_height:
            raise ServiceException('Size error', 'The requested map size is too large')

    def output_crs(self) -> CoordinateReferenceSystem:
        """CRS (1.3.0) ou SRS (1.1.1) ; à défaut le SCR du projet (pas de reprojection)."""
        value = self.parameters.get('CRS') or self.parameters.get('SRS')
        if not value:
            return self.project.crs
        return self.config.output_crs(value)

    def extent(self, crs: CoordinateReferenceSystem) -> Tuple[float, float, float, float]:
        bbox = parse_bbox(self.parameters.get('BBOX', '0,0,0,0'))
        if bbox is None:
            raise ServiceException('InvalidParameterValue', 'Invalid BBOX parameter')
        if self.version != '1.1.1' and crs and crs.has_axis_inverted():
            bbox = (bbox[1], bbox[0], bbox[3], bbox[2])
        return bbox

    def dpi(self) -> float:
        dpi = self.parameters.get_int('DPI', 0)
        return float(dpi) if dpi > 0 else DEFAULT_DPI

    def map_settings(self) -> MapSettings:
        crs = self.output_crs()
        width, height = self.size()
        return MapSettings(self.extent(crs), width, height, crs, self.dpi())

    # -------------------------------------------------------------------------
    # Couches
    # -------------------------------------------------------------------------

    def layers(self, key: str = '') -> List[Tuple[object, str]]:
        """
        [(couche, style)] dans l'ordre de dessin (la première en dessous).

        Sans key : LAYER + LAYERS et STYLE + STYLES ; sinon la liste key
        (QUERY_LAYERS) sans style.
        """
        if key:
            names, styles = self.parameters.get_list(key), []
        else:
            names, styles = self.parameters.layers_and_styles()

        result = []
        for index, name in enumerate(names):
            style = styles[index] if index < len(styles) else ''
            # un groupe est listé du haut vers le bas de l'arbre
            for layer in reversed(self.config.map_layers_from_name(name, style)):
                result.append((layer, style if style and layer.style(style) is not None else ''))
        return result

    def _layers_named(self, name: str) -> List:
        return [layer for layer in self.project.layers.values() if self.config.layer_name(layer) == name]

    @contextmanager
    def layer_state(self):
        """
        Applique FILTER, SELECTION et OPACITIES puis restaure l'état des couches.

        Produit la liste des couches filtrées. Le verrou du projet est tenu
        jusqu'à la restauration : les couches sont partagées entre requêtes.
        """
        with self.project.lock:
            with self._altered_layers() as filtered:
                yield filtered

    @contextmanager
    def _altered_layers(self):
        saved = {layer.id: layer.save_state() for layer in self.project.layers.values()}
        filtered = []
        try:
            for name, expression in parse_layer_filters(self.parameters.get('FILTER')):
                for layer in self._layers_named(name):
                    if layer.subset_string:
                        layer.subset_string = f'({layer.subset_string}) AND ({expression})'
                    else:
                        layer.subset_string = expression
                    filtered.append(layer)

            for name, feature_ids in parse_selection(self.parameters.get('SELECTION')):
                for layer in self._layers_named(name):
                    layer.selected_ids = set(feature_ids)

            requested, _ = self.parameters.layers_and_styles()
            for name, opacity in parse_opacities(self.parameters.get('OPACITIES'), requested):
                if opacity == 255:
                    continue
                for layer in self.config.map_layers_from_name(name):
                    layer.opacity = layer.opacity * opacity / 255.0

            yield filtered
        finally:
            for layer in self.project.layers.values():
                if layer.id in saved:
                    layer.restore_state(saved[layer.id])

    def filtered_extent(self, layers: List, crs: CoordinateReferenceSystem):
        """Union des emprises des couches filtrées, dans le SCR de sortie."""
        extent = None
        for layer in layers:
            layer_extent = layer.extent()
            if layer_extent is None:
                continue
            if crs and layer.crs:
                layer_extent = layer.crs.transform_extent(layer_extent, crs)
                if layer_extent is None:
                    continue
            if extent is None:
                extent = layer_extent
            else:
                extent = (min(extent[0], layer_extent[0]), min(extent[1], layer_extent[1]),
                          max(extent[2], layer_extent[2]), max(extent[3], layer_extent[3]))
        return extent

    # -------------------------------------------------------------------------
    # Surbrillance
    # -------------------------------------------------------------------------

    def highlights(self, crs: CoordinateReferenceSystem) -> List[Highlight]:
        """HIGHLIGHT_GEOM (WKT séparés par ';') et leurs couleurs / étiquettes."""
        geometries = self.parameters.get_list('HIGHLIGHT_GEOM', ';')
        if not geometries:
            return []
        colors = self.parameters.get_list('HIGHLIGHT_SYMBOL', ';')
        labels = self.parameters.get('HIGHLIGHT_LABELSTRING', '').split(';')
        sizes = self.parameters.get('HIGHLIGHT_LABELSIZE', '').split(';')
        label_colors = self.parameters.get('HIGHLIGHT_LABELCOLOR', '').split(';')

        def item(values, index, default=''):
            return values[index] if index < len(values) and values[index] else default

        result = []
        for index, wkt in enumerate(geometries):
            try:
                geometry = GEOSGeometry(wkt, srid=crs.srid)
            except (GEOSException, ValueError) as e:
                logger.warning(f"HIGHLIGHT_GEOM ignorée ({wkt[:50]}) : {e}")
                continue
            try:
                label_size = float(item(sizes, index, '10'))
            except ValueError:
                label_size = 10.0
            result.append(Highlight(
                geometry,
                color=parse_color(item(colors, index), HIGHLIGHT_COLOR),
                label=item(labels, index),
                label_size=label_size,
                label_color=parse_color(item(label_colors, index), (0, 0, 0, 255)),
            ))
        return result


# =============================================================================
# GETMAP
# =============================================================================

def render_map(request: MapRequest, transparent: bool = False):
    """
    Image RGBA des couches demandées.

    Returns:
        (image, settings)
    """
    settings = request.map_settings()
    layers = request.layers()
    background = parse_background(request.parameters.get('BGCOLOR'))

    with request.layer_state() as filtered:
        if is_empty_extent(settings.extent) and filtered:
            extent = request.filtered_extent(filtered, settings.crs)
            if extent is not None:
                settings.extent = extent

        scale = settings.scale()
        jobs = [
            LayerRenderJob(layer, style)
            for layer, style in layers
            if layer.is_in_scale_range(scale)
        ]
        renderer = MapRenderer(settings, background, transparent)
        image = renderer.render(jobs, request.highlights(settings.crs))

    for error in renderer.errors:
        logger.warning(f"Rendu : {error}")
    return image, settings


def get_map(request: MapRequest) -> Tuple[bytes, str]:
    """
    Raises:
        ServiceException: Size error, InvalidParameterValue, InvalidCRS,
            LayerNotDefined, Filter string rejected, InvalidFormat
    """
    request.check_size()
    output_format = request.parameters.get('FORMAT', 'image/png')
    pillow_format, _, _ = image_format(output_format)
    transparent = request.parameters.get_bool('TRANSPARENT') and pillow_format != 'JPEG'

    image, settings = render_map(request, transparent)
    quality = request.parameters.get_int('IMAGE_QUALITY', request.config.image_quality)
    logger.info(f"GetMap {settings.width}x{settings.height} à l'échelle 1:{settings.scale():.0f}")
    return encode_image(
        image, output_format, quality, transparent, parse_background(request.parameters.get('BGCOLOR')),
    )
