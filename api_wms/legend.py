# api_wms/legend.py
"""
GetLegendGraphic : légende des couches dessinée avec Pillow.

Les espacements et tailles de symbole sont exprimés en millimètres et
convertis en pixels à la résolution du rendu (0.28 mm par pixel par défaut).
"""

from typing import List, Optional, Tuple
import logging

from PIL import Image, ImageColor, ImageDraw

from .exceptions import ServiceException
from .getmap import MapRequest
from .parameters import is_empty_extent, parse_bbox
from .rendering import DEFAULT_DPI, encode_image, load_font, text_size

logger = logging.getLogger(__name__)

# Valeurs par défaut (mm / points)
DEFAULT_BOX_SPACE = 2.0
DEFAULT_LAYER_SPACE = 3.0
DEFAULT_LAYER_TITLE_SPACE = 3.0
DEFAULT_SYMBOL_SPACE = 2.0
DEFAULT_ICON_LABEL_SPACE = 2.0
DEFAULT_SYMBOL_WIDTH = 7.0
DEFAULT_SYMBOL_HEIGHT = 4.0
DEFAULT_LAYER_FONT_SIZE = 12.0
DEFAULT_ITEM_FONT_SIZE = 10.0

POINT_TO_MM = 0.3528


def _font_color(value: Optional[str]):
    """Couleur nommée ou #rrggbb ; noir par défaut."""
    if not value:
        return 0, 0, 0, 255
    try:
        color = ImageColor.getrgb(value)
    except ValueError:
        logger.warning(f"Couleur de police invalide : {value}")
        return 0, 0, 0, 255
    return tuple(color) + (255,) if len(color) == 3 else tuple(color)


class LegendSettings:
    """Espacements, symboles et polices lus dans les paramètres de la requête."""

    def __init__(self, parameters):
        self.box_space = parameters.get_float('BOXSPACE', DEFAULT_BOX_SPACE)
        self.layer_space = parameters.get_float('LAYERSPACE', DEFAULT_LAYER_SPACE)
        self.layer_title_space = parameters.get_float('LAYERTITLESPACE', DEFAULT_LAYER_TITLE_SPACE)
        self.symbol_space = parameters.get_float('SYMBOLSPACE', DEFAULT_SYMBOL_SPACE)
        self.icon_label_space = parameters.get_float('ICONLABELSPACE', DEFAULT_ICON_LABEL_SPACE)
        self.symbol_width = parameters.get_float('SYMBOLWIDTH', DEFAULT_SYMBOL_WIDTH)
        self.symbol_height = parameters.get_float('SYMBOLHEIGHT', DEFAULT_SYMBOL_HEIGHT)

        self.layer_font_family = parameters.get('LAYERFONTFAMILY', '')
        self.layer_font_bold = parameters.get_bool('LAYERFONTBOLD', True)
        self.layer_font_italic = parameters.get_bool('LAYERFONTITALIC', False)
        self.layer_font_size = parameters.get_float('LAYERFONTSIZE', DEFAULT_LAYER_FONT_SIZE)
        self.layer_font_color = _font_color(parameters.get('LAYERFONTCOLOR'))

        self.item_font_family = parameters.get('ITEMFONTFAMILY', '')
        self.item_font_bold = parameters.get_bool('ITEMFONTBOLD', False)
        self.item_font_italic = parameters.get_bool('ITEMFONTITALIC', False)
        self.item_font_size = parameters.get_float('ITEMFONTSIZE', DEFAULT_ITEM_FONT_SIZE)
        self.item_font_color = _font_color(parameters.get('ITEMFONTCOLOR'))

        self.layer_title = parameters.get_bool('LAYERTITLE', True)
        self.rule_label = parameters.get_bool('RULELABEL', True)
        self.show_feature_count = parameters.get_bool('SHOWFEATURECOUNT', False)

        dpi = parameters.get_int('DPI', 0)
        self.dpmm = (dpi if dpi > 0 else DEFAULT_DPI) / 25.4

    def px(self, mm: float) -> int:
        return int(round(mm * self.dpmm))

    def layer_font(self):
        return load_font(self.px(self.layer_font_size * POINT_TO_MM), self.layer_font_family,
                         self.layer_font_bold, self.layer_font_italic)

    def item_font(self):
        return load_font(self.px(self.item_font_size * POINT_TO_MM), self.item_font_family,
                         self.item_font_bold, self.item_font_italic)


def draw_symbol(draw: ImageDraw.ImageDraw, box: Tuple[int, int, int, int], symbol, dpmm: float):
    """Dessine un symbole de légende dans la boîte (x0, y0, x1, y1) en pixels."""
    x0, y0, x1, y1 = box
    outline_width = max(int(round(symbol.outline_width * dpmm)), 1)
    if symbol.kind == 'line':
        middle = (y0 + y1) / 2
        draw.line([(x0, middle), (x1, middle)], fill=symbol.outline_color, width=outline_width)
    elif symbol.kind == 'marker':
        cx, cy = (x0 + x1) / 2, (y0 + y1) / 2
        radius = min(max(symbol.size * dpmm / 2, 1), (x1 - x0) / 2, (y1 - y0) / 2)
        marker = [cx - radius, cy - radius, cx + radius, cy + radius]
        if symbol.shape == 'square':
            draw.rectangle(marker, fill=symbol.color, outline=symbol.outline_color, width=outline_width)
        elif symbol.shape == 'triangle':
            draw.polygon([(cx, cy - radius), (cx + radius, cy + radius), (cx - radius, cy + radius)],
                         fill=symbol.color, outline=symbol.outline_color, width=outline_width)
        else:
            draw.ellipse(marker, fill=symbol.color, outline=symbol.outline_color, width=outline_width)
    else:
        draw.rectangle([x0, y0, x1, y1], fill=symbol.color, outline=symbol.outline_color, width=outline_width)


class LegendLayer:
    """Une couche de la légende et ses éléments [(libellé, symbole)]."""

    def __init__(self, title: str, items: List[Tuple[str, object]]):
        self.title = title
        self.items = items


class LegendRenderer:
    def __init__(self, layers: List[LegendLayer], settings: LegendSettings):
        self.layers = layers
        self.settings = settings
        self.layer_font = settings.layer_font()
        self.item_font = settings.item_font()
        self._measure = ImageDraw.Draw(Image.new('RGBA', (1, 1)))

    def _rows(self):
        """
        Lignes de la légende : (type, texte, symbole, hauteur) avec type
        'title', 'embedded', 'item' ou 'space'.
        """
        s = self.settings
        symbol_height = s.px(s.symbol_height)
        rows = []
        for index, layer in enumerate(self.layers):
            if index:
                rows.append(('space', '', None, s.px(s.layer_space)))

            # symbole unique : intégré à la ligne de titre
            embedded = s.layer_title and len(layer.items) == 1 and not layer.items[0][0]
            if embedded:
                _, height = text_size(self._measure, layer.title, self.layer_font)
                rows.append(('embedded', layer.title, layer.items[0][1], max(height, symbol_height)))
                continue

            if s.layer_title:
                _, height = text_size(self._measure, layer.title, self.layer_font)
                rows.append(('title', layer.title, None, height))
                rows.append(('space', '', None, s.px(s.layer_title_space)))

            for item_index, (label, symbol) in enumerate(layer.items):
                if item_index:
                    rows.append(('space', '', None, s.px(s.symbol_space)))
                text = (label or layer.title) if s.rule_label else ''
                _, height = text_size(self._measure, text, self.item_font) if text else (0, 0)
                rows.append(('item', text, symbol, max(height, symbol_height)))
        return rows

    def _row_width(self, kind: str, text: str) -> int:
        s = self.settings
        if kind == 'title':
            return text_size(self._measure, text, self.layer_font)[0]
        width = s.px(s.symbol_width)
        if text:
            font = self.layer_font if kind == 'embedded' else self.item_font
            width += s.px(s.icon_label_space) + text_size(self._measure, text, font)[0]
        return width

    def size(self) -> Tuple[int, int]:
        box = self.settings.px(self.settings.box_space)
        rows = self._rows()
        width = max([self._row_width(kind, text) for kind, text, _, _ in rows if kind != 'space'] or [0])
        height = sum(row[3] for row in rows)
        return width + 2 * box, height + 2 * box

    def render(self, background=(255, 255, 255, 255)) -> Image.Image:
        s = self.settings
        image = Image.new('RGBA', self.size(), background)
        draw = ImageDraw.Draw(image)
        box = s.px(s.box_space)
        y = box
        symbol_width, symbol_height = s.px(s.symbol_width), s.px(s.symbol_height)

        for kind, text, symbol, height in self._rows():
            if kind == 'title':
                draw.text((box, y), text, fill=s.layer_font_color, font=self.layer_font, anchor='la')
            elif kind in ('item', 'embedded'):
                top = y + (height - symbol_height) // 2
                draw_symbol(draw, (box, top, box + symbol_width, top + symbol_height), symbol, s.dpmm)
                if text:
                    font = self.layer_font if kind == 'embedded' else self.item_font
                    color = s.layer_font_color if kind == 'embedded' else s.item_font_color
                    draw.text((box + symbol_width + s.px(s.icon_label_space), y + height / 2), text,
                              fill=color, font=font, anchor='lm')
            y += height
        return image


# =============================================================================
# REQUÊTE
# =============================================================================

def _legend_layers(request: MapRequest, scale: float) -> List:
    names, styles = request.parameters.layers_and_styles()
    if not names:
        raise ServiceException('LayerNotSpecified', 'LAYER is mandatory for GetLegendGraphic operation')

    layers = []
    for index, name in enumerate(names):
        style_name = styles[index] if index < len(styles) else ''
        for layer in request.config.map_layers_from_name(name, style_name):
            if not layer.is_in_scale_range(scale):
                continue
            style = layer.style(style_name) or layer.style()
            renderer = style.renderer if style is not None else layer.renderer
            layers.append((layer, renderer))
    return layers


def _legend_items(layer, renderer, settings: LegendSettings):
    items = []
    for label, symbol in renderer.legend_items():
        if settings.show_feature_count:
            if renderer.type == renderer.CATEGORIZED:
                count = sum(1 for f in layer.get_features() if renderer.symbol_for_feature(f) is symbol)
            else:
                count = layer.feature_count()
            label = f'{label or layer.title or layer.name} [{count}]'
        items.append((label, symbol))
    return items


def _used_symbols(request: MapRequest, layer, renderer) -> set:
    """Symboles effectivement utilisés par les entités de l'emprise BBOX."""
    settings = request.map_settings()
    rect = settings.extent_in(layer.crs)
    if rect is None:
        return set()
    used = set()
    for feature in layer.get_features(rect=rect, exact=True):
        symbol = renderer.symbol_for_feature(feature)
        if symbol is not None:
            used.add(id(symbol))
    return used


def get_legend_graphic(request: MapRequest) -> Tuple[bytes, str]:
    """
    Raises:
        ServiceException: LayerNotSpecified, FormatNotSpecified, InvalidParameterValue,
            LayerNotDefined, InvalidFormat
    """
    parameters = request.parameters
    if 'LAYER' not in parameters and 'LAYERS' not in parameters:
        raise ServiceException('LayerNotSpecified', 'LAYER is mandatory for GetLegendGraphic operation')
    if 'FORMAT' not in parameters:
        raise ServiceException('FormatNotSpecified', 'FORMAT is mandatory for GetLegendGraphic operation')

    content_based = 'BBOX' in parameters
    if content_based:
        bbox = parse_bbox(parameters.get('BBOX'))
        if bbox is None or is_empty_extent(bbox):
            raise ServiceException('InvalidParameterValue', 'Invalid BBOX parameter')
        if 'RULE' in parameters:
            raise ServiceException('InvalidParameterValue', 'BBOX parameter cannot be combined with RULE')

    settings = LegendSettings(parameters)
    scale = parameters.get_float('SCALE', -1.0)
    output_format = parameters.get('FORMAT')

    with request.layer_state():
        legend_layers = []
        for layer, renderer in _legend_layers(request, scale):
            items = _legend_items(layer, renderer, settings)
            if content_based:
                used = _used_symbols(request, layer, renderer)
                items = [(label, symbol) for label, symbol in items if id(symbol) in used]
                if not items:
                    continue
            legend_layers.append(LegendLayer(layer.title or layer.name, items))

    rule = parameters.get('RULE')
    if rule:
        width = parameters.get_int('WIDTH', settings.px(settings.symbol_width))
        height = parameters.get_int('HEIGHT', settings.px(settings.symbol_height))
        return _rule_graphic(legend_layers, rule, settings, width, height, output_format)

    image = LegendRenderer(legend_layers, settings).render()
    logger.debug(f"GetLegendGraphic : {len(legend_layers)} couche(s), {image.size[0]}x{image.size[1]}")
    return encode_image(image, output_format)


def _rule_graphic(legend_layers: List[LegendLayer], rule: str, settings: LegendSettings,
                  width: int, height: int, output_format: str) -> Tuple[bytes, str]:
    """Symbole seul de l'élément de légende nommé RULE, à la taille WIDTH x HEIGHT (px)."""
    found = None
    for legend_layer in legend_layers:
        for label, symbol in legend_layer.items:
            if label == rule or (not label and legend_layer.title == rule):
                found = symbol
                break
        if found is not None:
            break

    canvas = Image.new('RGBA', (max(width, 1), max(height, 1)), (255, 255, 255, 255))
    if found is not None:
        draw_symbol(ImageDraw.Draw(canvas), (0, 0, canvas.width - 1, canvas.height - 1), found, settings.dpmm)
    else:
        logger.info(f"GetLegendGraphic : aucun élément de légende pour RULE={rule}")
    return encode_image(canvas, output_format)
