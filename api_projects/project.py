# api_projects/project.py
"""
Document projet.

Un projet regroupe le titre, le SCR, les couches (registre id → couche),
l'arbre des couches, les relations, les mises en page d'impression et un
arbre de propriétés libre (portée / clé → valeur). Il se lit et s'écrit au
format XML .qgs.

Usage:
    project = Project.instance()          # singleton du processus
    project.read('/data/commune.qgs')
    title, ok = project.read_entry('WMSServiceTitle', '/')

Le serveur WMS n'utilise pas le singleton : il instancie un Project par
fichier (voir api_projects.project_cache).
"""

from pathlib import Path
from threading import RLock
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import os
import xml.etree.ElementTree as ET

from .crs import CoordinateReferenceSystem
from .layer_tree import LayerTreeGroup
from .layers import VectorLayer
from .layouts import PrintLayout, Relation
from .properties import PropertyKey, PropertyValue, split_key
from . import signals

logger = logging.getLogger(__name__)

FILE_VERSION = '2.18.0'


class Project:
    _instance = None

    @classmethod
    def instance(cls) -> 'Project':
        """Projet unique du processus (créé à la première demande)."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self, file_name: str = ''):
        self._properties = PropertyKey('properties')
        self._dirty = False
        # requêtes WMS : état des couches modifié puis restauré sous ce verrou
        self.lock = RLock()
        self.clear(emit=False)
        self.file_name = file_name

    # =========================================================================
    # ÉTAT
    # =========================================================================

    def clear(self, emit: bool = True):
        self.title = ''
        self.file_name = ''
        self.error = ''
        self.crs = CoordinateReferenceSystem()
        self.ellipsoid = 'NONE'
        self.layers: Dict[str, VectorLayer] = {}
        self.layer_tree_root = LayerTreeGroup()
        self.relations: Dict[str, Relation] = {}
        self.print_layouts: List[PrintLayout] = []
        self.bad_layers: List[Dict] = []
        self._properties.clear()
        self._set_dirty(False)
        if emit:
            signals.project_cleared.send(sender=self)

    @property
    def home_path(self) -> str:
        if not self.file_name:
            return ''
        return str(Path(self.file_name).resolve().parent)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @dirty.setter
    def dirty(self, value: bool):
        self._set_dirty(value)

    def _set_dirty(self, value: bool):
        if value != self._dirty:
            self._dirty = value
            signals.dirty_changed.send(sender=self, dirty=value)

    def set_title(self, title: str):
        if title != self.title:
            self.title = title
            self._set_dirty(True)

    def set_crs(self, crs):
        if not isinstance(crs, CoordinateReferenceSystem):
            crs = CoordinateReferenceSystem(crs)
        self.crs = crs
        self._set_dirty(True)

    # =========================================================================
    # LECTURE / ÉCRITURE
    # =========================================================================

    def read(self, file_name: Optional[str] = None) -> bool:
        """
        Lit un fichier .qgs.

        Les couches dont la source est illisible sont consignées dans
        bad_layers et n'empêchent pas la lecture du reste du document.

        Returns:
            False si le document n'a pas pu être analysé (error renseigné)
        """
        target = file_name or self.file_name
        self.clear(emit=False)
        self.file_name = target or ''

        if not target:
            self.error = 'Aucun fichier projet indiqué'
            return False

        try:
            tree = ET.parse(target)
        except (OSError, ET.ParseError) as e:
            self.error = f"Impossible de lire le projet {target} : {e}"
            logger.error(self.error)
            return False

        root = tree.getroot()
        if root.tag != 'qgis':
            self.error = f"{target} n'est pas un fichier projet (racine <{root.tag}>)"
            logger.error(self.error)
            return False

        self.title = (root.findtext('title') or root.get('projectname', '')).strip()

        properties = root.find('properties')
        if properties is not None:
            self._properties.read_xml(properties)
        # attributs de la racine, prioritaires sur les propriétés
        if root.get('autoTransaction') is not None:
            self.auto_transaction = root.get('autoTransaction') == '1'
        if root.get('evaluateDefaultValues') is not None:
            self.evaluate_default_values = root.get('evaluateDefaultValues') == '1'

        crs = root.findtext('projectCrs/spatialrefsys/authid') or \
            root.findtext('mapcanvas/destinationsrs/spatialrefsys/authid')
        if not crs:
            crs, _ = self.read_entry('SpatialRefSys', '/ProjectCrs')
        self.crs = CoordinateReferenceSystem(crs)
        self.ellipsoid, _ = self.read_entry('Measure', '/Ellipsoid', 'NONE')

        self._read_layers(root)

        tree_element = root.find('layer-tree-group')
        if tree_element is not None:
            self.layer_tree_root = LayerTreeGroup.from_xml(tree_element)
            for layer_id in [node.layer_id for node in self.layer_tree_root.find_layers()]:
                if layer_id not in self.layers:
                    self.layer_tree_root.remove_layer(layer_id)
        else:
            for layer in self.layers.values():
                self.layer_tree_root.add_layer(layer.id, layer.name)

        for element in root.findall('relations/relation'):
            relation = Relation.from_xml(element)
            if relation.is_valid():
                self.relations[relation.id] = relation
            else:
                logger.warning(f"Relation {relation.id or '?'} ignorée (définition incomplète)")

        layout_elements = root.findall('Composer') + root.findall('Layouts/Composer')
        self.print_layouts = [PrintLayout.from_xml(e) for e in layout_elements]

        self._set_dirty(False)
        logger.info(
            f"Projet {target} lu : {len(self.layers)} couche(s), "
            f"{len(self.bad_layers)} couche(s) invalide(s)"
        )
        signals.project_read.send(sender=self, file_name=target)
        return True

    def _read_layers(self, root: ET.Element):
        for element in root.findall('projectlayers/maplayer'):
            layer_id = element.findtext('id', '')
            if element.get('type', 'vector') != 'vector':
                self._add_bad_layer(layer_id, element.findtext('layername', ''), '',
                                    f"Type de couche non pris en charge : {element.get('type')}")
                continue

            layer = VectorLayer.from_xml(element)
            if not layer.crs:
                layer.crs = self.crs
            if not layer.load(self.read_path(layer.source)):
                self._add_bad_layer(layer.id, layer.name, layer.source, layer.error)
                continue
            self.layers[layer.id] = layer

    def _add_bad_layer(self, layer_id, name, source, error):
        logger.warning(f"Couche {name or layer_id} invalide : {error}")
        self.bad_layers.append({'id': layer_id, 'name': name, 'source': source, 'error': error})

    def write(self, file_name: Optional[str] = None) -> bool:
        if file_name:
            self.file_name = file_name
        if not self.file_name:
            self.error = 'Aucun fichier projet indiqué'
            return False

        root = ET.Element('qgis', {'projectname': self.title, 'version': FILE_VERSION})
        if self.auto_transaction:
            root.set('autoTransaction', '1')
        if self.evaluate_default_values:
            root.set('evaluateDefaultValues', '1')
        ET.SubElement(root, 'title').text = self.title

        project_crs = ET.SubElement(ET.SubElement(root, 'projectCrs'), 'spatialrefsys')
        ET.SubElement(project_crs, 'authid').text = self.crs.authid

        self.layer_tree_root.to_xml(root)

        layers = ET.SubElement(root, 'projectlayers')
        for layer in self.layers.values():
            layer.to_xml(layers, self.write_path(str(layer._absolute_source or layer.source)))

        relations = ET.SubElement(root, 'relations')
        for relation in self.relations.values():
            relation.to_xml(relations)

        for layout in self.print_layouts:
            layout.to_xml(root)

        self._properties.write_xml(root)

        ET.indent(root)
        try:
            ET.ElementTree(root).write(self.file_name, encoding='utf-8', xml_declaration=True)
        except OSError as e:
            self.error = f"Impossible d'écrire le projet {self.file_name} : {e}"
            logger.error(self.error)
            return False

        self.error = ''
        self._set_dirty(False)
        logger.info(f"Projet enregistré : {self.file_name}")
        signals.project_saved.send(sender=self, file_name=self.file_name)
        return True

    # =========================================================================
    # PROPRIÉTÉS
    # =========================================================================

    def write_entry(self, scope: str, key: str, value) -> bool:
        """Écrit une valeur bool, int, float, str ou liste de str."""
        if isinstance(value, tuple):
            value = list(value)
        if isinstance(value, list):
            value = [str(v) for v in value]
        elif not isinstance(value, (bool, int, float, str)):
            raise TypeError(f"Type de propriété non pris en charge : {type(value).__name__}")
        self._properties.set_value(split_key(scope, key), value)
        self._set_dirty(True)
        return True

    def _find_value(self, scope: str, key: str) -> Optional[PropertyValue]:
        node = self._properties.find(split_key(scope, key))
        return node if isinstance(node, PropertyValue) else None

    def read_entry(self, scope: str, key: str, default: str = '') -> Tuple[str, bool]:
        node = self._find_value(scope, key)
        if node is None:
            return default, False
        if isinstance(node.value, list):
            return ','.join(node.value), True
        if isinstance(node.value, bool):
            return 'true' if node.value else 'false', True
        return str(node.value), True

    def read_num_entry(self, scope: str, key: str, default: int = 0) -> Tuple[int, bool]:
        node = self._find_value(scope, key)
        if node is None:
            return default, False
        try:
            return int(node.value), True
        except (TypeError, ValueError):
            return default, False

    def read_double_entry(self, scope: str, key: str, default: float = 0.0) -> Tuple[float, bool]:
        node = self._find_value(scope, key)
        if node is None:
            return default, False
        try:
            return float(node.value), True
        except (TypeError, ValueError):
            return default, False

    def read_bool_entry(self, scope: str, key: str, default: bool = False) -> Tuple[bool, bool]:
        node = self._find_value(scope, key)
        if node is None:
            return default, False
        value = node.value
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes'), True
        if isinstance(value, list):
            return default, False
        return bool(value), True

    def read_list_entry(self, scope: str, key: str, default: Optional[List[str]] = None) -> Tuple[List[str], bool]:
        node = self._find_value(scope, key)
        if node is None:
            return list(default or []), False
        if isinstance(node.value, list):
            return list(node.value), True
        if node.value == '':
            return [], True
        return [str(node.value)], True

    def remove_entry(self, scope: str, key: str) -> bool:
        removed = self._properties.remove(split_key(scope, key))
        if removed:
            self._set_dirty(True)
        return removed

    def entry_list(self, scope: str, key: str = '/') -> List[str]:
        node = self._properties.find(split_key(scope, key))
        return node.entry_list() if isinstance(node, PropertyKey) else []

    def subkey_list(self, scope: str, key: str = '/') -> List[str]:
        node = self._properties.find(split_key(scope, key))
        return node.subkey_list() if isinstance(node, PropertyKey) else []

    def dump_properties(self) -> List[str]:
        lines = self._properties.dump()
        logger.debug('Propriétés du projet :\n' + '\n'.join(lines))
        return lines

    # =========================================================================
    # CHEMINS
    # =========================================================================

    def _absolute_paths(self) -> bool:
        value, _ = self.read_bool_entry('Paths', '/Absolute', False)
        return value

    def write_path(self, filename: str, relative_base: Optional[str] = None) -> str:
        """Chemin tel qu'écrit dans le fichier : relatif (./…) sauf si Paths/Absolute."""
        if not filename or self._absolute_paths():
            return filename
        base = relative_base or self.home_path
        if not base or not os.path.isabs(filename):
            return filename
        try:
            relative = os.path.relpath(filename, base)
        except ValueError:
            # lecteurs différents (Windows)
            return filename
        relative = relative.replace(os.sep, '/')
        if not relative.startswith('../'):
            relative = f'./{relative}'
        return relative

    def read_path(self, filename: str) -> str:
        if not filename or self._absolute_paths() or os.path.isabs(filename):
            return filename
        if not self.home_path:
            return filename
        return os.path.normpath(os.path.join(self.home_path, filename))

    # =========================================================================
    # RÉGLAGES TYPÉS
    # =========================================================================

    @property
    def topological_editing(self) -> bool:
        value, _ = self.read_num_entry('Digitizing', '/TopologicalEditing', 0)
        return value > 0

    @topological_editing.setter
    def topological_editing(self, enabled: bool):
        self.write_entry('Digitizing', '/TopologicalEditing', 1 if enabled else 0)

    @property
    def avoid_intersections_list(self) -> List[str]:
        value, _ = self.read_list_entry('Digitizing', '/AvoidIntersectionsList')
        return value

    @avoid_intersections_list.setter
    def avoid_intersections_list(self, layer_ids: Iterable[str]):
        self.write_entry('Digitizing', '/AvoidIntersectionsList', list(layer_ids))

    @property
    def distance_units(self) -> str:
        value, _ = self.read_entry('Measurement', '/DistanceUnits', 'meters')
        return value

    @distance_units.setter
    def distance_units(self, unit: str):
        self.write_entry('Measurement', '/DistanceUnits', unit)

    @property
    def area_units(self) -> str:
        value, _ = self.read_entry('Measurement', '/AreaUnits', 'm2')
        return value

    @area_units.setter
    def area_units(self, unit: str):
        self.write_entry('Measurement', '/AreaUnits', unit)

    @property
    def non_identifiable_layers(self) -> List[str]:
        value, _ = self.read_list_entry('Identify', '/disabledLayers')
        return value

    @non_identifiable_layers.setter
    def non_identifiable_layers(self, layer_ids: Iterable[str]):
        self.write_entry('Identify', '/disabledLayers', list(layer_ids))

    @property
    def evaluate_default_values(self) -> bool:
        value, _ = self.read_bool_entry('Editing', '/EvaluateDefaultValues', False)
        return value

    @evaluate_default_values.setter
    def evaluate_default_values(self, enabled: bool):
        self.write_entry('Editing', '/EvaluateDefaultValues', bool(enabled))

    @property
    def auto_transaction(self) -> bool:
        value, _ = self.read_bool_entry('Editing', '/AutoTransaction', False)
        return value

    @auto_transaction.setter
    def auto_transaction(self, enabled: bool):
        self.write_entry('Editing', '/AutoTransaction', bool(enabled))

    @property
    def variables(self) -> Dict[str, str]:
        names, _ = self.read_list_entry('Variables', '/variableNames')
        values, _ = self.read_list_entry('Variables', '/variableValues')
        return dict(zip(names, values))

    @variables.setter
    def variables(self, variables: Dict[str, str]):
        self.write_entry('Variables', '/variableNames', list(variables.keys()))
        self.write_entry('Variables', '/variableValues', [str(v) for v in variables.values()])

    # =========================================================================
    # REGISTRE DES COUCHES
    # =========================================================================

    def add_map_layers(self, layers: Iterable[VectorLayer], add_to_tree: bool = True) -> List[VectorLayer]:
        added = []
        for layer in layers:
            if layer is None or layer.id in self.layers:
                continue
            self.layers[layer.id] = layer
            if add_to_tree:
                self.layer_tree_root.add_layer(layer.id, layer.name)
            added.append(layer)
        if added:
            self._set_dirty(True)
            signals.layers_added.send(sender=self, layers=added)
        return added

    def remove_map_layers(self, layer_ids: Iterable[str]) -> List[str]:
        removed = []
        for layer_id in layer_ids:
            if self.layers.pop(layer_id, None) is None:
                continue
            self.layer_tree_root.remove_layer(layer_id)
            removed.append(layer_id)

        if not removed:
            return removed

        non_identifiable = self.non_identifiable_layers
        if any(layer_id in non_identifiable for layer_id in removed):
            self.non_identifiable_layers = [i for i in non_identifiable if i not in removed]
        for relation_id in [r.id for r in self.relations.values()
                            if r.referencing_layer in removed or r.referenced_layer in removed]:
            del self.relations[relation_id]

        self._set_dirty(True)
        signals.layers_removed.send(sender=self, layer_ids=removed)
        return removed

    def map_layer(self, layer_id: str) -> Optional[VectorLayer]:
        return self.layers.get(layer_id)

    def map_layers_by_name(self, name: str) -> List[VectorLayer]:
        return [layer for layer in self.layers.values() if layer.name == name]

    def print_layout(self, name: str) -> Optional[PrintLayout]:
        return next((layout for layout in self.print_layouts if layout.name == name), None)

    def __repr__(self):
        return f'<Project {self.file_name or "(sans fichier)"}>'
