# api_wms/printing.py
"""
GetPrint : impression d'une mise en page du projet.

Paramètres reconnus, en plus des paramètres de rendu de GetMap :
    TEMPLATE            nom de la mise en page
    FORMAT              pdf, svg, png ou jpg
    DPI                 résolution du rendu des cartes (150 par défaut)
    mapN:EXTENT         emprise du cadre de carte n° N (0 = premier cadre)
    mapN:LAYERS         couches du cadre (à défaut LAYERS, puis celles du cadre)
    mapN:STYLES         styles associés
    mapN:SCALE          échelle imposée (l'emprise est recentrée)
    mapN:ROTATION       rotation de la carte en degrés
    <id étiquette>      texte de remplacement d'une étiquette
"""

from typing import List, Optional, Tuple
import io
import logging

from PIL import Image, ImageDraw

from .capabilities import project_extent
from .exceptions import ServiceException
from .getmap import MapRequest, parse_background
from .parameters import is_empty_extent, parse_bbox
from .rendering import LayerRenderJob, MapRenderer, MapSettings, load_font

logger = logging.getLogger(__name__)

PRINT_CONTENT_TYPES = {
    'pdf': 'application/pdf',
    'svg': 'image/svg+xml',
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
}
DEFAULT_PRINT_DPI = 150
MM_PER_POINT = 25.4 / 72


def print_format(value: Optional[str]) -> str:
    """FORMAT → extension ('application/pdf' et 'image/png' sont acceptés)."""
    normalized = (value or '').strip().lower()
    for prefix in ('application/', 'image/'):
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix):]
    if normalized == 'svg+xml':
        normalized = 'svg'
    if normalized not in PRINT_CONTENT_TYPES:
        raise ServiceException('InvalidFormat', f"Output format '{value}' is not supported in the GetPrint request")
    return 'jpg' if normalized == 'jpeg' else normalized


class RenderedMap:
    """Cadre de carte et son image, à la taille du cadre."""

    def __init__(self, frame, image: Image.Image, extent):
        self.frame = frame
        self.image = image
        self.extent = extent


class PrintJob:
    def __init__(self, request: MapRequest, layout):
        self.request = request
        self.parameters = request.parameters
        self.layout = layout
        dpi = self.parameters.get_int('DPI', 0)
        self.dpi = dpi if dpi > 0 else DEFAULT_PRINT_DPI

    # -------------------------------------------------------------------------
    # Cadres de carte
    # -------------------------------------------------------------------------

    def map_extent(self, index: int, frame, crs):
        value = self.parameters.get(f'MAP{index}:EXTENT')
        if value:
            extent = parse_bbox(value)
            if extent is None or is_empty_extent(extent):
                raise ServiceException('InvalidParameterValue', f'Invalid extent for map{index}')
            if self.request.version != '1.1.1' and crs and crs.has_axis_inverted():
                extent = (extent[1], extent[0], extent[3], extent[2])
        elif frame.extent:
            extent = frame.extent
        else:
            extent = self._project_extent(crs)

        if extent is None:
            return None

        scale = self.parameters.get_float(f'MAP{index}:SCALE', frame.scale)
        if scale > 0:
            extent = self._extent_for_scale(extent, frame, scale, crs)
        return self._fit_aspect(extent, frame)

    def _project_extent(self, crs):
        """WMSExtent, sinon l'union des couches publiées, dans le SCR de sortie."""
        project = self.request.project
        extent = self.request.config.extent or project_extent(project, self.request.config)
        if extent is None or not crs or not project.crs or crs == project.crs:
            return extent
        return project.crs.transform_extent(extent, crs)

    @staticmethod
    def _extent_for_scale(extent, frame, scale: float, crs):
        cx, cy = (extent[0] + extent[2]) / 2, (extent[1] + extent[3]) / 2
        units = crs.units_to_meters(cy if crs.geographic else 0.0) if crs else 1.0
        half_width = frame.width / 1000.0 * scale / units / 2
        half_height = frame.height / 1000.0 * scale / units / 2
        return cx - half_width, cy - half_height, cx + half_width, cy + half_height

    @staticmethod
    def _fit_aspect(extent, frame):
        """Élargit l'emprise aux proportions du cadre, même centre."""
        width, height = extent[2] - extent[0], extent[3] - extent[1]
        if width <= 0 or height <= 0 or frame.width <= 0 or frame.height <= 0:
            return extent
        ratio = frame.width / frame.height
        cx, cy = (extent[0] + extent[2]) / 2, (extent[1] + extent[3]) / 2
        if width / height < ratio:
            width = height * ratio
        else:
            height = width / ratio
        return cx - width / 2, cy - height / 2, cx + width / 2, cy + height / 2

    def map_layers(self, index: int, frame) -> List[Tuple[object, str]]:
        """[(couche, style)] dans l'ordre de dessin."""
        config = self.request.config
        names = self.parameters.get_list(f'MAP{index}:LAYERS')
        if names:
            styles = self.parameters.get_list(f'MAP{index}:STYLES')
            result = []
            for position, name in enumerate(names):
                style = styles[position] if position < len(styles) else ''
                for layer in reversed(config.map_layers_from_name(name, style)):
                    result.append((layer, style))
            return result

        if self.parameters.layers_and_styles()[0]:
            return self.request.layers()

        project = self.request.project
        if frame.layers:
            layers = [project.map_layer(layer_id) for layer_id in frame.layers]
            return [(layer, '') for layer in reversed(layers) if layer is not None]
        return [(layer, '') for layer in reversed(config.published_layers())]

    def render_maps(self) -> List[RenderedMap]:
        crs = self.request.output_crs()
        background = parse_background(self.parameters.get('BGCOLOR'))
        rendered = []
        for index, frame in enumerate(self.layout.maps):
            extent = self.map_extent(index, frame, crs)
            width = max(int(round(frame.width * self.dpi / 25.4)), 1)
            height = max(int(round(frame.height * self.dpi / 25.4)), 1)
            if extent is None:
                logger.warning(f"GetPrint {self.layout.name} : cadre {frame.id} sans emprise")
                rendered.append(RenderedMap(frame, Image.new('RGB', (width, height), background[:3]), None))
                continue

            settings = MapSettings(extent, width, height, crs, self.dpi)
            scale = settings.scale()
            jobs = [LayerRenderJob(layer, style) for layer, style in self.map_layers(index, frame)
                    if layer.is_in_scale_range(scale)]
            renderer = MapRenderer(settings, background)
            image = renderer.render(jobs, self.request.highlights(crs))
            for error in renderer.errors:
                logger.warning(f"GetPrint {self.layout.name} : {error}")

            rotation = self.parameters.get_float(f'MAP{index}:ROTATION', frame.rotation)
            if rotation:
                image = image.rotate(-rotation, resample=Image.Resampling.BICUBIC, fillcolor=background)

            flat = Image.new('RGBA', image.size, background[:3] + (255,))
            flat.alpha_composite(image)
            rendered.append(RenderedMap(frame, flat.convert('RGB'), extent))
        return rendered

    def labels(self) -> List[Tuple[object, str]]:
        """[(étiquette, texte)] ; un paramètre portant l'id de l'étiquette remplace son texte."""
        result = []
        for label in self.layout.labels:
            text = label.text
            if label.id and label.id.upper() in self.parameters:
                text = self.parameters.get(label.id.upper())
            result.append((label, text))
        return result


# =============================================================================
# ÉCRITURE
# =============================================================================

def write_pdf(layout, maps: List[RenderedMap], labels) -> bytes:
    from reportlab.pdfgen import canvas
    from reportlab.lib.units import mm
    from reportlab.lib.utils import ImageReader

    buffer = io.BytesIO()
    page_width, page_height = layout.paper_width * mm, layout.paper_height * mm
    pdf = canvas.Canvas(buffer, pagesize=(page_width, page_height))
    pdf.setTitle(layout.name)

    for rendered in maps:
        frame = rendered.frame
        x, y = frame.x * mm, page_height - (frame.y + frame.height) * mm
        pdf.drawImage(ImageReader(rendered.image), x, y, width=frame.width * mm, height=frame.height * mm)
        pdf.setLineWidth(0.5)
        pdf.rect(x, y, frame.width * mm, frame.height * mm, stroke=1, fill=0)

    for label, text in labels:
        pdf.setFont("Helvetica", label.font_size)
        y = page_height - label.y * mm - label.font_size
        for line in text.splitlines() or ['']:
            pdf.drawString(label.x * mm, y, line)
            y -= label.font_size * 1.2

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def write_svg(layout, maps: List[RenderedMap], labels) -> bytes:
    from reportlab.graphics import renderSVG
    from reportlab.graphics.shapes import Drawing, Image as DrawingImage, Rect, String
    from reportlab.lib import colors
    from reportlab.lib.units import mm

    page_width, page_height = layout.paper_width * mm, layout.paper_height * mm
    drawing = Drawing(page_width, page_height)

    for rendered in maps:
        frame = rendered.frame
        x, y = frame.x * mm, page_height - (frame.y + frame.height) * mm
        drawing.add(DrawingImage(x, y, frame.width * mm, frame.height * mm, rendered.image))
        drawing.add(Rect(x, y, frame.width * mm, frame.height * mm,
                         fillColor=None, strokeColor=colors.black, strokeWidth=0.5))

    for label, text in labels:
        y = page_height - label.y * mm - label.font_size
        for line in text.splitlines() or ['']:
            drawing.add(String(label.x * mm, y, line, fontName='Helvetica', fontSize=label.font_size))
            y -= label.font_size * 1.2

    return renderSVG.drawToString(drawing).encode('utf-8')


def write_raster(layout, maps: List[RenderedMap], labels, dpi: int, image_type: str) -> bytes:
    def px(value_mm: float) -> int:
        return int(round(value_mm * dpi / 25.4))

    page = Image.new('RGB', (max(px(layout.paper_width), 1), max(px(layout.paper_height), 1)), (255, 255, 255))
    draw = ImageDraw.Draw(page)

    for rendered in maps:
        frame = rendered.frame
        box = (px(frame.x), px(frame.y), px(frame.x + frame.width), px(frame.y + frame.height))
        image = rendered.image
        if image.size != (box[2] - box[0], box[3] - box[1]):
            image = image.resize((max(box[2] - box[0], 1), max(box[3] - box[1], 1)))
        page.paste(image, box[:2])
        draw.rectangle(box, outline=(0, 0, 0), width=max(px(0.2), 1))

    for label, text in labels:
        font = load_font(px(label.font_size * MM_PER_POINT))
        draw.multiline_text((px(label.x), px(label.y)), text, fill=(0, 0, 0), font=font)

    buffer = io.BytesIO()
    page.save(buffer, 'JPEG' if image_type == 'jpg' else 'PNG', dpi=(dpi, dpi))
    return buffer.getvalue()


def get_print(request: MapRequest) -> Tuple[bytes, str]:
    """
    Raises:
        ServiceException: ParameterMissing, InvalidParameterValue, LayerNotDefined,
            InvalidCRS, Filter string rejected, InvalidFormat
    """
    parameters = request.parameters
    template = parameters.get('TEMPLATE')
    if not template:
        raise ServiceException('ParameterMissing', 'The TEMPLATE parameter is required for the GetPrint request')

    layout = request.project.print_layout(template)
    if layout is None:
        raise ServiceException('InvalidParameterValue', f"The template '{template}' is not defined")

    output = print_format(parameters.get('FORMAT'))
    job = PrintJob(request, layout)
    with request.layer_state():
        maps = job.render_maps()
    labels = job.labels()

    if output == 'pdf':
        content = write_pdf(layout, maps, labels)
    elif output == 'svg':
        content = write_svg(layout, maps, labels)
    else:
        content = write_raster(layout, maps, labels, job.dpi, output)

    logger.info(f"GetPrint {layout.name} ({output}) : {len(maps)} carte(s), {len(content)} octets")
    return content, PRINT_CONTENT_TYPES[output]
