# api_wms/config.py
"""
Configuration WMS d'un projet.

Les réglages de publication sont des propriétés du projet (portée = nom du
réglage, clé '/'), écrites par l'onglet « Serveur OWS » des propriétés du
projet : WMSServiceTitle, WMSMaxWidth, WMSRestrictedLayers, ...
"""

from typing import List, Optional, Tuple
import logging

from django.conf import settings

from api_projects.crs import CoordinateReferenceSystem
from api_projects.layer_tree import LayerTreeGroup, LayerTreeLayer

from .exceptions import ServiceException

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 8


class WmsConfig:
    """Lecture des réglages WMS d'un projet et résolution des noms de couches."""

    def __init__(self, project):
        self.project = project

        # Service
        self.service_title = self._text('WMSServiceTitle') or project.title or 'CartoSIG WMS'
        self.service_abstract = self._text('WMSServiceAbstract')
        self.keywords = self._list('WMSKeywordList')
        self.online_resource = self._text('WMSOnlineResource')
        self.contact_organization = self._text('WMSContactOrganization')
        self.contact_person = self._text('WMSContactPerson')
        self.contact_position = self._text('WMSContactPosition')
        self.contact_mail = self._text('WMSContactMail')
        self.contact_phone = self._text('WMSContactPhone')
        self.fees = self._text('WMSFees')
        self.access_constraints = self._text('WMSAccessConstraints')
        self.root_name = self._text('WMSRootName')

        # Limites et sorties
        self.max_width, _ = project.read_num_entry('WMSMaxWidth', '/', -1)
        self.max_height, _ = project.read_num_entry('WMSMaxHeight', '/', -1)
        self.image_quality, _ = project.read_num_entry('WMSImageQuality', '/', -1)
        self.precision, _ = project.read_num_entry('WMSPrecision', '/', DEFAULT_PRECISION)
        self.add_wkt_geometry, _ = project.read_bool_entry('WMSAddWktGeometry', '/')

        # Publication des couches
        self.use_layer_ids, _ = project.read_bool_entry('WMSUseLayerIDs', '/')
        self.restricted_layers = set(self._list('WMSRestrictedLayers'))
        self.wfs_layers = self._list('WFSLayers')
        self.extent = self._extent()

    def _text(self, scope: str) -> str:
        value, _ = self.project.read_entry(scope, '/')
        return value

    def _list(self, scope: str) -> List[str]:
        value, _ = self.project.read_list_entry(scope, '/')
        return [item for item in value if item]

    def _extent(self) -> Optional[Tuple[float, float, float, float]]:
        values = self._list('WMSExtent')
        if len(values) != 4:
            return None
        try:
            return tuple(float(v) for v in values)
        except ValueError:
            logger.warning(f"WMSExtent invalide : {values}")
            return None

    # =========================================================================
    # LIMITES
    # =========================================================================

    def max_image_size(self) -> Tuple[int, int]:
        """WMSMaxWidth / WMSMaxHeight, ou CARTOSIG_MAX_IMAGE_SIZE s'ils ne sont pas définis."""
        fallback = getattr(settings, 'CARTOSIG_MAX_IMAGE_SIZE', 4096)
        width = self.max_width if self.max_width > 0 else fallback
        height = self.max_height if self.max_height > 0 else fallback
        return width, height

    # =========================================================================
    # SCR PUBLIÉS
    # =========================================================================

    def crs_list(self) -> List[str]:
        """WMSCrsList ; à défaut le SCR du projet et EPSG:4326."""
        values = self._list('WMSCrsList')
        if values:
            return values
        result = []
        if self.project.crs:
            result.append(self.project.crs.authid)
        if 'EPSG:4326' not in result:
            result.append('EPSG:4326')
        return result

    def output_crs(self, value: str) -> CoordinateReferenceSystem:
        crs = CoordinateReferenceSystem(value)
        if not crs.is_valid():
            raise ServiceException('InvalidCRS', 'Could not create output CRS')
        return crs

    # =========================================================================
    # COUCHES PUBLIÉES
    # =========================================================================

    def is_restricted(self, name: str) -> bool:
        return name in self.restricted_layers

    def layer_name(self, layer) -> str:
        return layer.wms_name(self.use_layer_ids)

    def published_layers(self) -> List:
        """Couches valides et non restreintes, dans l'ordre de l'arbre."""
        result = []
        for node in self.project.layer_tree_root.find_layers():
            layer = self.project.map_layer(node.layer_id)
            if layer is None or not layer.is_valid:
                continue
            if self.is_restricted(layer.name) or self.is_restricted(self.layer_name(layer)):
                continue
            result.append(layer)
        return result

    def layer_by_name(self, name: str):
        return next((layer for layer in self.published_layers() if self.layer_name(layer) == name), None)

    def group_by_name(self, name: str) -> Optional[LayerTreeGroup]:
        if self.is_restricted(name):
            return None
        root = self.project.layer_tree_root
        if self.root_name and name == self.root_name:
            return root
        return root.find_group(name)

    def is_identifiable(self, layer) -> bool:
        return layer.id not in self.project.non_identifiable_layers

    def tree_layers(self, group: LayerTreeGroup) -> List:
        """Couches publiées d'un groupe, dans l'ordre de l'arbre (haut → bas)."""
        published = {layer.id: layer for layer in self.published_layers()}
        return [published[node.layer_id] for node in group.find_layers() if node.layer_id in published]

    def map_layers_from_name(self, name: str, style: str = '') -> List:
        """
        Couches désignées par un nom de LAYERS : une couche ou un groupe
        (développé en ses couches).

        Raises:
            ServiceException: LayerNotDefined
        """
        layer = self.layer_by_name(name)
        if layer is not None:
            if style and layer.style(style) is None:
                raise ServiceException('LayerNotDefined', f"Layer '{name}' and/or style '{style}' not defined")
            return [layer]

        group = self.group_by_name(name)
        if group is not None:
            layers = self.tree_layers(group)
            if layers:
                return layers

        raise ServiceException('LayerNotDefined', f"Layer '{name}' and/or style '{style}' not defined")

    def wms_tree(self) -> List:
        """Racine de l'arbre publié : groupes et couches non restreints."""
        return [child for child in self.project.layer_tree_root.children if self._is_published_node(child)]

    def _is_published_node(self, node) -> bool:
        if isinstance(node, LayerTreeLayer):
            layer = self.project.map_layer(node.layer_id)
            return (
                layer is not None and layer.is_valid
                and not self.is_restricted(layer.name) and not self.is_restricted(self.layer_name(layer))
            )
        if self.is_restricted(node.name) or self.is_restricted(node.wms_name()):
            return False
        return any(self._is_published_node(child) for child in node.children)

    def published_children(self, group: LayerTreeGroup) -> List:
        return [child for child in group.children if self._is_published_node(child)]

    def wfs_layer_names(self) -> List[str]:
        names = []
        for layer_id in self.wfs_layers:
            layer = self.project.map_layer(layer_id)
            if layer is not None:
                names.append(self.layer_name(layer))
        return names
