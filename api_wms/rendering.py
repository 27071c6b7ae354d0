# api_wms/rendering.py
"""
Rendu cartographique avec Pillow.

MapSettings porte l'emprise, la taille de l'image, le SCR de sortie et la
résolution ; MapRenderer dessine les couches (symboles, étiquettes,
sélection, géométries de surbrillance) dans une image RGBA ; encode_image
produit le PNG ou le JPEG demandé.
"""

from typing import Iterable, List, Optional, Sequence, Tuple
import io
import logging

from django.contrib.gis.gdal import GDALException
from django.contrib.gis.geos import GEOSException
from PIL import Image, ImageDraw, ImageFont

from api_projects.crs import CoordinateReferenceSystem
from api_projects.layers import GEOMETRY_TYPES, Symbol

from .exceptions import ServiceException

logger = logging.getLogger(__name__)

# 0.28 mm par pixel (OGC)
DEFAULT_DPI = 25.4 / 0.28
INCHES_PER_METER = 1 / 0.0254

SELECTION_COLOR = (255, 255, 0, 255)
HIGHLIGHT_COLOR = (255, 0, 0, 255)

Color = Tuple[int, int, int, int]


# =============================================================================
# POLICES
# =============================================================================

def load_font(size: float, family: str = '', bold: bool = False, italic: bool = False):
    """Police TrueType si elle est installée, sinon police par défaut de Pillow."""
    size = max(int(round(size)), 1)
    candidates = []
    if family:
        suffix = {(True, True): '-BoldOblique', (True, False): '-Bold', (False, True): '-Oblique'}.get((bold, italic), '')
        candidates += [f'{family}{suffix}.ttf', f'{family}.ttf', family]
    candidates.append('DejaVuSans-Bold.ttf' if bold else 'DejaVuSans.ttf')
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def text_size(draw: ImageDraw.ImageDraw, text: str, font) -> Tuple[int, int]:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    return right - left, bottom - top


# =============================================================================
# PARAMÈTRES DE CARTE
# =============================================================================

class MapSettings:
    """Emprise, taille (px), SCR et résolution d'un rendu."""

    def __init__(self, extent: Sequence[float], width: int, height: int,
                 crs: Optional[CoordinateReferenceSystem] = None, dpi: float = DEFAULT_DPI):
        self.extent = tuple(float(v) for v in extent)
        self.width = int(width)
        self.height = int(height)
        self.crs = crs or CoordinateReferenceSystem()
        self.dpi = dpi or DEFAULT_DPI

    @property
    def map_units_per_pixel(self) -> Tuple[float, float]:
        xmin, ymin, xmax, ymax = self.extent
        return (xmax - xmin) / max(self.width, 1), (ymax - ymin) / max(self.height, 1)

    def scale(self) -> float:
        """Dénominateur d'échelle : largeur terrain (m) / largeur de l'image (m)."""
        xmin, ymin, xmax, ymax = self.extent
        latitude = (ymin + ymax) / 2 if self.crs.geographic else 0.0
        ground = (xmax - xmin) * self.crs.units_to_meters(latitude)
        paper = self.width / self.dpi / INCHES_PER_METER
        if paper <= 0:
            return 0.0
        return ground / paper

    def is_degenerate(self) -> bool:
        """Emprise sans surface ou image vide : rien ne peut être projeté."""
        xmin, ymin, xmax, ymax = self.extent
        return xmax <= xmin or ymax <= ymin or self.width <= 0 or self.height <= 0

    def to_pixel(self, x: float, y: float) -> Tuple[float, float]:
        mupp_x, mupp_y = self.map_units_per_pixel
        return (x - self.extent[0]) / mupp_x, (self.extent[3] - y) / mupp_y

    def to_map(self, i: float, j: float) -> Tuple[float, float]:
        mupp_x, mupp_y = self.map_units_per_pixel
        return self.extent[0] + i * mupp_x, self.extent[3] - j * mupp_y

    def mm_to_pixels(self, mm: float) -> float:
        return mm * self.dpi / 25.4

    def extent_in(self, crs: CoordinateReferenceSystem):
        """Emprise dans le SCR d'une couche ; None si la reprojection échoue."""
        if not self.crs or not crs or crs == self.crs:
            return self.extent
        return self.crs.transform_extent(self.extent, crs)

    def __repr__(self):
        return f'<MapSettings {self.extent} {self.width}x{self.height} {self.crs.authid}>'


# =============================================================================
# RENDU
# =============================================================================

class LayerRenderJob:
    """Une couche à dessiner : style, opacité (0-1), étiquettes."""

    def __init__(self, layer, style_name: str = '', opacity: Optional[float] = None, expression: Optional[str] = None):
        self.layer = layer
        self.style_name = style_name
        self.opacity = layer.opacity if opacity is None else opacity
        self.expression = expression


class Highlight:
    """Géométrie de surbrillance (HIGHLIGHT_GEOM) et son étiquette éventuelle."""

    def __init__(self, geometry, color: Color = HIGHLIGHT_COLOR, label: str = '',
                 label_size: float = 10.0, label_color: Color = (0, 0, 0, 255)):
        self.geometry = geometry
        self.color = color
        self.label = label
        self.label_size = label_size
        self.label_color = label_color


class MapRenderer:
    def __init__(self, settings: MapSettings, background: Color = (255, 255, 255, 255), transparent: bool = False):
        self.settings = settings
        self.background = (0, 0, 0, 0) if transparent else background
        self.errors: List[str] = []

    def render(self, jobs: Iterable[LayerRenderJob], highlights: Iterable[Highlight] = ()) -> Image.Image:
        """Dessine les couches dans l'ordre (la première en dessous)."""
        size = (self.settings.width, self.settings.height)
        image = Image.new('RGBA', size, self.background)
        if self.settings.is_degenerate():
            logger.debug(f"Emprise dégénérée {self.settings.extent} : image vide")
            return image

        for job in jobs:
            layer_image = self.render_layer(job)
            if layer_image is not None:
                image.alpha_composite(layer_image)

        highlight_list = list(highlights)
        if highlight_list:
            overlay = Image.new('RGBA', size, (0, 0, 0, 0))
            draw = ImageDraw.Draw(overlay)
            for highlight in highlight_list:
                self._draw_highlight(overlay, draw, highlight)
            image.alpha_composite(overlay)
        return image

    def render_layer(self, job: LayerRenderJob) -> Optional[Image.Image]:
        layer = job.layer
        rect = self.settings.extent_in(layer.crs)
        if rect is None:
            self.errors.append(f"Emprise non reprojetable pour la couche {layer.name}")
            return None

        size = (self.settings.width, self.settings.height)
        layer_image = Image.new('RGBA', size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer_image)
        style = layer.style(job.style_name)
        renderer = style.renderer if style is not None else layer.renderer

        features = layer.get_features(rect=rect, expression=job.expression)
        for feature in features:
            symbol = renderer.symbol_for_feature(feature)
            if symbol is None or feature.geometry is None:
                continue
            geometry = self._project(feature.geometry, layer.crs)
            if geometry is None:
                continue
            self.draw_geometry(layer_image, draw, geometry, symbol)
            if feature.id in layer.selected_ids:
                self._draw_selection(layer_image, draw, geometry, symbol)

        if layer.labeling.enabled:
            self._draw_labels(draw, layer, features)

        if job.opacity < 1.0:
            alpha = layer_image.getchannel('A').point(lambda a: int(a * max(job.opacity, 0.0)))
            layer_image.putalpha(alpha)
        logger.debug(f"Couche {layer.name} : {len(features)} entité(s) dessinée(s)")
        return layer_image

    def _project(self, geometry, crs: CoordinateReferenceSystem):
        if not self.settings.crs or not crs or crs == self.settings.crs:
            return geometry
        try:
            return crs.transform_geometry(geometry, self.settings.crs)
        except (GDALException, GEOSException) as e:
            self.errors.append(str(e))
            return None

    # -------------------------------------------------------------------------
    # Géométries
    # -------------------------------------------------------------------------

    def _pixels(self, coords) -> List[Tuple[float, float]]:
        return [self.settings.to_pixel(c[0], c[1]) for c in coords]

    def draw_geometry(self, image: Image.Image, draw: ImageDraw.ImageDraw, geometry, symbol):
        geom_type = geometry.geom_type
        if geom_type in ('MultiPolygon', 'MultiLineString', 'MultiPoint', 'GeometryCollection'):
            for part in geometry:
                self.draw_geometry(image, draw, part, symbol)
        elif geom_type == 'Polygon':
            self._draw_polygon(image, draw, geometry, symbol.color, symbol.outline_color, symbol.outline_width)
        elif geom_type in ('LineString', 'LinearRing'):
            width = max(int(round(self.settings.mm_to_pixels(symbol.outline_width))), 1)
            draw.line(self._pixels(geometry.coords), fill=symbol.outline_color, width=width, joint='curve')
        elif geom_type == 'Point':
            self._draw_marker(draw, geometry.coords, symbol)

    def _draw_polygon(self, image, draw, polygon, fill: Color, outline: Color, outline_width: float):
        if polygon.empty:
            return
        rings = [self._pixels(ring.coords) for ring in polygon]
        exterior, holes = rings[0], rings[1:]
        if len(exterior) < 3:
            return

        if holes:
            mask = Image.new('L', image.size, 0)
            mask_draw = ImageDraw.Draw(mask)
            mask_draw.polygon(exterior, fill=fill[3])
            for hole in holes:
                mask_draw.polygon(hole, fill=0)
            fill_image = Image.new('RGBA', image.size, fill[:3] + (0,))
            fill_image.putalpha(mask)
            image.alpha_composite(fill_image)
        else:
            draw.polygon(exterior, fill=fill)

        width = int(round(self.settings.mm_to_pixels(outline_width)))
        if width > 0:
            for ring in rings:
                draw.line(ring + ring[:1], fill=outline, width=width, joint='curve')

    def _draw_marker(self, draw, coords, symbol):
        x, y = self.settings.to_pixel(coords[0], coords[1])
        radius = max(self.settings.mm_to_pixels(symbol.size) / 2, 1)
        width = int(round(self.settings.mm_to_pixels(symbol.outline_width)))
        box = [x - radius, y - radius, x + radius, y + radius]
        if symbol.shape == 'square':
            draw.rectangle(box, fill=symbol.color, outline=symbol.outline_color, width=width)
        elif symbol.shape == 'triangle':
            draw.polygon([(x, y - radius), (x + radius, y + radius), (x - radius, y + radius)],
                         fill=symbol.color, outline=symbol.outline_color, width=width)
        else:
            draw.ellipse(box, fill=symbol.color, outline=symbol.outline_color, width=width)

    def _draw_selection(self, image, draw, geometry, symbol):
        selection = Symbol(symbol.kind, color=SELECTION_COLOR, outline_color=SELECTION_COLOR,
                           outline_width=max(symbol.outline_width, 0.5), size=symbol.size, shape=symbol.shape)
        self.draw_geometry(image, draw, geometry, selection)

    def _draw_highlight(self, image, draw, highlight: Highlight):
        geometry_type = GEOMETRY_TYPES.get(highlight.geometry.geom_type, 'Polygon')
        kind = {'Point': 'marker', 'Line': 'line'}.get(geometry_type, 'fill')
        fill = highlight.color[:3] + (128,) if kind == 'fill' else highlight.color
        symbol = Symbol(kind, color=fill, outline_color=highlight.color, outline_width=0.8, size=3.0)
        self.draw_geometry(image, draw, highlight.geometry, symbol)

        if highlight.label:
            anchor = highlight.geometry.point_on_surface
            x, y = self.settings.to_pixel(anchor.x, anchor.y)
            font = load_font(self.settings.mm_to_pixels(highlight.label_size * 0.3528))
            draw.text((x, y), highlight.label, fill=highlight.label_color, font=font, anchor='mm')

    # -------------------------------------------------------------------------
    # Étiquettes
    # -------------------------------------------------------------------------

    def _draw_labels(self, draw, layer, features):
        settings = layer.labeling
        field = layer.field(settings.field_name)
        # taille en points → mm → pixels
        font = load_font(self.settings.mm_to_pixels(settings.font_size * 0.3528))
        for feature in features:
            if feature.geometry is None or feature.geometry.empty:
                continue
            value = feature.attribute(settings.field_name)
            if value is None:
                continue
            text = field.represent_value(value) if field is not None else str(value)
            geometry = self._project(feature.geometry, layer.crs)
            if geometry is None:
                continue
            try:
                anchor = geometry.point_on_surface
            except GEOSException:
                continue
            x, y = self.settings.to_pixel(anchor.x, anchor.y)
            draw.text((x, y), text, fill=settings.color, font=font, anchor='mm')


# =============================================================================
# ENCODAGE
# =============================================================================

_PNG_TYPES = {'image/png', 'png', 'image/png; mode=16bit', 'image/png; mode=8bit', 'image/png; mode=1bit'}
_JPEG_TYPES = {'image/jpeg', 'image/jpg', 'jpeg', 'jpg'}


def image_format(value: str) -> Tuple[str, str, str]:
    """
    FORMAT → (format Pillow, mode png, content type).

    Raises:
        ServiceException: InvalidFormat
    """
    normalized = (value or 'image/png').strip().lower().replace(' ', '')
    normalized = normalized.replace(';mode=', '; mode=')
    if normalized in _JPEG_TYPES:
        return 'JPEG', '', 'image/jpeg'
    if normalized in _PNG_TYPES:
        mode = normalized.split('mode=')[1] if 'mode=' in normalized else ''
        return 'PNG', mode, 'image/png'
    raise ServiceException('InvalidFormat', f"Output format '{value}' is not supported in the GetMap request")


def encode_image(image: Image.Image, output_format: str, quality: int = -1, transparent: bool = False,
                 background: Color = (255, 255, 255, 255)) -> Tuple[bytes, str]:
    pillow_format, mode, content_type = image_format(output_format)
    buffer = io.BytesIO()

    if pillow_format == 'JPEG':
        flat = Image.new('RGBA', image.size, background[:3] + (255,))
        flat.alpha_composite(image)
        options = {'quality': quality} if 0 <= quality <= 100 else {}
        flat.convert('RGB').save(buffer, 'JPEG', **options)
        return buffer.getvalue(), content_type

    if not transparent:
        flat = Image.new('RGBA', image.size, background[:3] + (255,))
        flat.alpha_composite(image)
        image = flat.convert('RGB')

    if mode == '8bit':
        image = image.quantize(colors=256) if image.mode == 'RGB' else image.quantize(
            colors=256, method=Image.Quantize.FASTOCTREE)
    elif mode == '1bit':
        image = image.convert('RGB').quantize(colors=2)
    elif mode == '16bit':
        # 4 bits par canal
        image = image.point(lambda v: v & 0xF0)

    image.save(buffer, 'PNG')
    return buffer.getvalue(), content_type
