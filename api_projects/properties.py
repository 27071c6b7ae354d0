# api_projects/properties.py
"""
Arbre de propriétés d'un projet.

Les propriétés sont rangées par portée (scope) puis par clés délimitées par
des '/' : ``readEntry('Paths', '/Absolute')`` lit la valeur stockée sous
``Paths → Absolute``. Chaque nœud est soit une clé (PropertyKey, qui contient
d'autres nœuds), soit une valeur (PropertyValue).

Sérialisation XML :

    <properties>
      <Paths>
        <Absolute type="bool">false</Absolute>
      </Paths>
      <WMSCrsList type="QStringList">
        <value>EPSG:4326</value>
      </WMSCrsList>
    </properties>
"""

from typing import Dict, List, Optional, Union
import logging
import re
import xml.etree.ElementTree as ET

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r'^[A-Za-z_][\w.\-]*$')

TYPE_STRING = 'QString'
TYPE_INT = 'int'
TYPE_DOUBLE = 'double'
TYPE_BOOL = 'bool'
TYPE_STRING_LIST = 'QStringList'


def split_key(scope: str, key: str) -> List[str]:
    """'Paths', '/Absolute' → ['Paths', 'Absolute']"""
    parts = [scope] if scope else []
    parts.extend(p for p in key.split('/') if p)
    return parts


class PropertyValue:
    def __init__(self, value):
        self.value = value

    @property
    def type_name(self) -> str:
        if isinstance(self.value, bool):
            return TYPE_BOOL
        if isinstance(self.value, int):
            return TYPE_INT
        if isinstance(self.value, float):
            return TYPE_DOUBLE
        if isinstance(self.value, (list, tuple)):
            return TYPE_STRING_LIST
        return TYPE_STRING

    def write_xml(self, name: str, parent: ET.Element):
        element = ET.SubElement(parent, name, {'type': self.type_name})
        if self.type_name == TYPE_STRING_LIST:
            for item in self.value:
                ET.SubElement(element, 'value').text = str(item)
        elif self.type_name == TYPE_BOOL:
            element.text = 'true' if self.value else 'false'
        else:
            element.text = str(self.value)

    @classmethod
    def read_xml(cls, element: ET.Element) -> 'PropertyValue':
        type_name = element.get('type', TYPE_STRING)
        text = element.text or ''
        if type_name == TYPE_STRING_LIST:
            return cls([child.text or '' for child in element.findall('value')])
        if type_name == TYPE_BOOL:
            return cls(text.strip().lower() in ('true', '1'))
        if type_name == TYPE_INT:
            try:
                return cls(int(text))
            except ValueError:
                return cls(0)
        if type_name == TYPE_DOUBLE:
            try:
                return cls(float(text))
            except ValueError:
                return cls(0.0)
        return cls(text)

    def dump(self, indent: int = 0) -> List[str]:
        return [f"{' ' * indent}{self.value!r}"]

    def __repr__(self):
        return f'<PropertyValue {self.value!r}>'


class PropertyKey:
    def __init__(self, name: str = ''):
        self.name = name
        self.children: Dict[str, Union['PropertyKey', PropertyValue]] = {}

    def is_empty(self) -> bool:
        return not self.children

    def clear(self):
        self.children.clear()

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def find(self, path: List[str]) -> Optional[Union['PropertyKey', PropertyValue]]:
        node: Union[PropertyKey, PropertyValue] = self
        for part in path:
            if not isinstance(node, PropertyKey):
                return None
            node = node.children.get(part)
            if node is None:
                return None
        return node

    def set_value(self, path: List[str], value) -> PropertyValue:
        if not path:
            raise ValueError('Clé de propriété vide')
        for part in path:
            if not _TAG_RE.match(part):
                raise ValueError(f"Nom de clé invalide : {part!r}")

        node = self
        for part in path[:-1]:
            child = node.children.get(part)
            if not isinstance(child, PropertyKey):
                child = PropertyKey(part)
                node.children[part] = child
            node = child
        property_value = PropertyValue(value)
        node.children[path[-1]] = property_value
        return property_value

    def remove(self, path: List[str]) -> bool:
        if not path:
            return False
        parent = self.find(path[:-1])
        if not isinstance(parent, PropertyKey) or path[-1] not in parent.children:
            return False
        del parent.children[path[-1]]
        return True

    def entry_list(self) -> List[str]:
        return [name for name, node in self.children.items() if isinstance(node, PropertyValue)]

    def subkey_list(self) -> List[str]:
        return [name for name, node in self.children.items() if isinstance(node, PropertyKey)]

    # -------------------------------------------------------------------------
    # XML
    # -------------------------------------------------------------------------

    def write_xml(self, parent: ET.Element) -> ET.Element:
        element = ET.SubElement(parent, self.name)
        for name, node in self.children.items():
            if isinstance(node, PropertyKey):
                node.write_xml(element)
            else:
                node.write_xml(name, element)
        return element

    def read_xml(self, element: ET.Element):
        for child in element:
            # Un nœud typé sans enfants "clé" est une valeur
            if child.get('type') is not None:
                self.children[child.tag] = PropertyValue.read_xml(child)
            else:
                key = PropertyKey(child.tag)
                key.read_xml(child)
                self.children[child.tag] = key

    def dump(self, indent: int = 0) -> List[str]:
        lines = []
        for name, node in self.children.items():
            if isinstance(node, PropertyKey):
                lines.append(f"{' ' * indent}{name}/")
                lines.extend(node.dump(indent + 2))
            else:
                lines.append(f"{' ' * indent}{name}: {node.value!r}")
        return lines

    def __repr__(self):
        return f'<PropertyKey {self.name} ({len(self.children)})>'
