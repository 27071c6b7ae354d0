# api_projects/layouts.py
"""Relations entre couches et mises en page d'impression."""

from typing import List, Optional, Tuple
import xml.etree.ElementTree as ET


class Relation:
    """Relation 1-n : la couche référençante porte la clé étrangère."""

    def __init__(self, relation_id: str, name: str, referencing_layer: str, referenced_layer: str,
                 field_pairs: Optional[List[Tuple[str, str]]] = None):
        self.id = relation_id
        self.name = name
        self.referencing_layer = referencing_layer
        self.referenced_layer = referenced_layer
        self.field_pairs = field_pairs or []

    def is_valid(self) -> bool:
        return bool(self.id and self.referencing_layer and self.referenced_layer and self.field_pairs)

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Relation':
        return cls(
            element.get('id', ''),
            element.get('name', ''),
            element.get('referencingLayer', ''),
            element.get('referencedLayer', ''),
            [(f.get('referencingField', ''), f.get('referencedField', '')) for f in element.findall('fieldRef')],
        )

    def to_xml(self, parent: ET.Element):
        element = ET.SubElement(parent, 'relation', {
            'id': self.id,
            'name': self.name,
            'referencingLayer': self.referencing_layer,
            'referencedLayer': self.referenced_layer,
        })
        for referencing, referenced in self.field_pairs:
            ET.SubElement(element, 'fieldRef', {'referencingField': referencing, 'referencedField': referenced})

    def __repr__(self):
        return f'<Relation {self.id}>'


# =============================================================================
# MISE EN PAGE
# =============================================================================

class LayoutMap:
    """Cadre de carte ; position et taille en mm depuis le coin haut-gauche."""

    def __init__(self, item_id: str, x: float, y: float, width: float, height: float):
        self.id = item_id
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.extent: Optional[Tuple[float, float, float, float]] = None
        self.layers: List[str] = []
        self.scale = 0.0
        self.rotation = 0.0
        self.grid_interval_x = 0.0
        self.grid_interval_y = 0.0


class LayoutLabel:
    def __init__(self, item_id: str, text: str, x: float, y: float, width: float = 50.0,
                 height: float = 10.0, font_size: float = 10.0):
        self.id = item_id
        self.text = text
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.font_size = font_size


class PrintLayout:
    def __init__(self, name: str, paper_width: float = 297.0, paper_height: float = 210.0):
        self.name = name
        self.paper_width = paper_width
        self.paper_height = paper_height
        self.maps: List[LayoutMap] = []
        self.labels: List[LayoutLabel] = []

    def map(self, index: int) -> Optional[LayoutMap]:
        """Cadre de carte n° index (mapN dans GetPrint), dans l'ordre du document."""
        if 0 <= index < len(self.maps):
            return self.maps[index]
        return None

    def label(self, item_id: str) -> Optional[LayoutLabel]:
        return next((label for label in self.labels if label.id == item_id), None)

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'PrintLayout':
        paper = element.find('Composition')
        layout = cls(
            element.get('title', element.get('name', '')),
            float(paper.get('paperWidth', 297)) if paper is not None else 297.0,
            float(paper.get('paperHeight', 210)) if paper is not None else 210.0,
        )
        container = paper if paper is not None else element

        for index, item in enumerate(container.findall('ComposerMap')):
            frame = item.find('ComposerItem')
            attrs = frame.attrib if frame is not None else item.attrib
            layout_map = LayoutMap(
                item.get('id', f'map{index}'),
                float(attrs.get('x', 0)), float(attrs.get('y', 0)),
                float(attrs.get('width', 100)), float(attrs.get('height', 100)),
            )
            extent = item.find('Extent')
            if extent is not None:
                layout_map.extent = tuple(float(extent.get(k, 0)) for k in ('xmin', 'ymin', 'xmax', 'ymax'))
            layout_map.layers = [l.text for l in item.findall('LayerSet/Layer') if l.text]
            layout_map.scale = float(item.get('scale', 0) or 0)
            layout_map.rotation = float(item.get('mapRotation', 0) or 0)
            layout.maps.append(layout_map)

        for item in container.findall('ComposerLabel'):
            frame = item.find('ComposerItem')
            attrs = frame.attrib if frame is not None else item.attrib
            font = item.find('LabelFont')
            layout.labels.append(LayoutLabel(
                attrs.get('id', item.get('id', '')),
                item.get('labelText', ''),
                float(attrs.get('x', 0)), float(attrs.get('y', 0)),
                float(attrs.get('width', 50)), float(attrs.get('height', 10)),
                float(font.get('size', 10)) if font is not None else 10.0,
            ))
        return layout

    def to_xml(self, parent: ET.Element) -> ET.Element:
        element = ET.SubElement(parent, 'Composer', {'title': self.name})
        composition = ET.SubElement(element, 'Composition', {
            'paperWidth': repr(self.paper_width),
            'paperHeight': repr(self.paper_height),
        })
        for layout_map in self.maps:
            item = ET.SubElement(composition, 'ComposerMap', {'id': layout_map.id})
            if layout_map.scale:
                item.set('scale', repr(layout_map.scale))
            ET.SubElement(item, 'ComposerItem', {
                'x': repr(layout_map.x), 'y': repr(layout_map.y),
                'width': repr(layout_map.width), 'height': repr(layout_map.height),
            })
            if layout_map.extent:
                ET.SubElement(item, 'Extent', dict(zip(
                    ('xmin', 'ymin', 'xmax', 'ymax'), (repr(v) for v in layout_map.extent))))
            if layout_map.layers:
                layer_set = ET.SubElement(item, 'LayerSet')
                for layer_id in layout_map.layers:
                    ET.SubElement(layer_set, 'Layer').text = layer_id
        for label in self.labels:
            item = ET.SubElement(composition, 'ComposerLabel', {'labelText': label.text})
            ET.SubElement(item, 'ComposerItem', {
                'id': label.id, 'x': repr(label.x), 'y': repr(label.y),
                'width': repr(label.width), 'height': repr(label.height),
            })
            ET.SubElement(item, 'LabelFont', {'size': repr(label.font_size)})
        return element

    def __repr__(self):
        return f'<PrintLayout {self.name}>'
