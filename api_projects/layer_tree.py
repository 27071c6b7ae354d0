# api_projects/layer_tree.py
"""
Arbre des couches d'un projet (groupes imbriqués et références de couches).

    <layer-tree-group name="" checked="Qt::Checked">
      <layer-tree-group name="Réseau" checked="Qt::Checked">
        <layer-tree-layer id="roads_1" name="Routes" checked="Qt::Checked"/>
      </layer-tree-group>
    </layer-tree-group>
"""

from typing import Iterator, List, Optional, Union
import xml.etree.ElementTree as ET

CHECKED = 'Qt::Checked'
UNCHECKED = 'Qt::Unchecked'


class LayerTreeLayer:
    def __init__(self, layer_id: str, name: str = '', visible: bool = True):
        self.layer_id = layer_id
        self.name = name
        self.visible = visible

    def to_xml(self, parent: ET.Element):
        ET.SubElement(parent, 'layer-tree-layer', {
            'id': self.layer_id,
            'name': self.name,
            'checked': CHECKED if self.visible else UNCHECKED,
        })

    def __repr__(self):
        return f'<LayerTreeLayer {self.layer_id}>'


class LayerTreeGroup:
    def __init__(self, name: str = '', visible: bool = True):
        self.name = name
        self.short_name = ''
        self.title = ''
        self.abstract = ''
        self.visible = visible
        self.mutually_exclusive = False
        self.children: List[Union['LayerTreeGroup', LayerTreeLayer]] = []

    def add_group(self, name: str) -> 'LayerTreeGroup':
        group = LayerTreeGroup(name)
        self.children.append(group)
        return group

    def add_layer(self, layer_id: str, name: str = '') -> LayerTreeLayer:
        node = LayerTreeLayer(layer_id, name)
        self.children.append(node)
        return node

    def remove_layer(self, layer_id: str) -> bool:
        removed = False
        for child in list(self.children):
            if isinstance(child, LayerTreeLayer) and child.layer_id == layer_id:
                self.children.remove(child)
                removed = True
            elif isinstance(child, LayerTreeGroup):
                removed = child.remove_layer(layer_id) or removed
        return removed

    def find_layers(self) -> List[LayerTreeLayer]:
        """Nœuds couche de tout le sous-arbre, dans l'ordre de l'arbre."""
        return list(self._iter_layers())

    def _iter_layers(self) -> Iterator[LayerTreeLayer]:
        for child in self.children:
            if isinstance(child, LayerTreeLayer):
                yield child
            else:
                yield from child._iter_layers()

    def find_layer(self, layer_id: str) -> Optional[LayerTreeLayer]:
        return next((n for n in self._iter_layers() if n.layer_id == layer_id), None)

    def find_group(self, name: str) -> Optional['LayerTreeGroup']:
        for child in self.children:
            if isinstance(child, LayerTreeGroup):
                if name in (child.name, child.short_name):
                    return child
                found = child.find_group(name)
                if found is not None:
                    return found
        return None

    def groups(self) -> List['LayerTreeGroup']:
        return [c for c in self.children if isinstance(c, LayerTreeGroup)]

    def wms_name(self) -> str:
        return self.short_name or self.name

    # -------------------------------------------------------------------------
    # XML
    # -------------------------------------------------------------------------

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'LayerTreeGroup':
        group = cls(element.get('name', ''), element.get('checked', CHECKED) != UNCHECKED)
        group.short_name = element.get('shortname', '')
        group.title = element.get('title', '')
        group.abstract = element.get('abstract', '')
        group.mutually_exclusive = element.get('mutually-exclusive', '0') == '1'
        for child in element:
            if child.tag == 'layer-tree-group':
                group.children.append(cls.from_xml(child))
            elif child.tag == 'layer-tree-layer':
                group.children.append(LayerTreeLayer(
                    child.get('id', ''),
                    child.get('name', ''),
                    child.get('checked', CHECKED) != UNCHECKED,
                ))
        return group

    def to_xml(self, parent: ET.Element) -> ET.Element:
        element = ET.SubElement(parent, 'layer-tree-group', {
            'name': self.name,
            'checked': CHECKED if self.visible else UNCHECKED,
        })
        if self.short_name:
            element.set('shortname', self.short_name)
        if self.title:
            element.set('title', self.title)
        if self.abstract:
            element.set('abstract', self.abstract)
        if self.mutually_exclusive:
            element.set('mutually-exclusive', '1')
        for child in self.children:
            child.to_xml(element)
        return element

    def __repr__(self):
        return f'<LayerTreeGroup {self.name!r} ({len(self.children)})>'
