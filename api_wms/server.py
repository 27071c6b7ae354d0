# api_wms/server.py
"""
Répartition des requêtes WMS.

WmsServer reçoit les paramètres (insensibles à la casse), le projet et l'URL
du service ; execute_request() retourne toujours une WmsResponse, les
ServiceException étant converties en ServiceExceptionReport.
"""

from typing import Callable, Dict
import logging

from .capabilities import get_capabilities, get_context, get_schema_extension
from .config import WmsConfig
from .exceptions import ServiceException
from .featureinfo import get_feature_info
from .getmap import MapRequest, get_map
from .legend import get_legend_graphic
from .parameters import WmsParameters
from .printing import get_print
from .styles import describe_layer, get_style, get_styles

logger = logging.getLogger(__name__)

DEFAULT_VERSION = '1.3.0'
SUPPORTED_SLD_VERSION = '1.1.0'

# Paramètres retirés de l'URL publiée dans les documents de capacités
SERVICE_URL_EXCLUDED_PARAMETERS = {'REQUEST', 'VERSION', 'SERVICE', 'LAYERS', 'SLD_VERSION', '_DC'}

XML_CONTENT_TYPE = 'text/xml; charset=utf-8'


class WmsResponse:
    def __init__(self, content: bytes, content_type: str, status: int = 200):
        self.content = content
        self.content_type = content_type
        self.status = status

    def __repr__(self):
        return f'<WmsResponse {self.status} {self.content_type} ({len(self.content)} octets)>'


def build_service_url(request) -> str:
    """
    URL du service à partir de la requête HTTP, sans les paramètres propres à
    la requête courante ; se termine par '?' ou '&'.
    """
    query = request.GET.copy()
    for key in list(query.keys()):
        if key.upper() in SERVICE_URL_EXCLUDED_PARAMETERS:
            del query[key]
    base = request.build_absolute_uri(request.path)
    encoded = query.urlencode()
    return f'{base}?{encoded}&' if encoded else f'{base}?'


class WmsServer:
    """
    Exemple:
        server = WmsServer({'REQUEST': 'GetCapabilities'}, project, 'http://localhost/wms/?')
        response = server.execute_request()
    """

    def __init__(self, parameters, project, service_url: str):
        if not isinstance(parameters, WmsParameters):
            parameters = WmsParameters(parameters)
        self.parameters = parameters
        self.project = project
        self.service_url = service_url
        self.config = WmsConfig(project)
        self.version = self.parameters.get('VERSION') or DEFAULT_VERSION

        self._handlers: Dict[str, Callable[[], WmsResponse]] = {
            'getcapabilities': self.get_capabilities,
            'getprojectsettings': self.get_project_settings,
            'getmap': self.get_map,
            'getfeatureinfo': self.get_feature_info,
            'getcontext': self.get_context,
            'getschemaextension': self.get_schema_extension,
            'getstyle': self.get_style,
            'getstyles': self.get_styles,
            'describelayer': self.describe_layer,
            'getlegendgraphic': self.get_legend_graphic,
            'getlegendgraphics': self.get_legend_graphic,
            'getprint': self.get_print,
        }

    def execute_request(self) -> WmsResponse:
        request = self.parameters.get('REQUEST')
        try:
            if not request:
                raise ServiceException('OperationNotSupported', 'Please check the value of the REQUEST parameter')
            handler = self._handlers.get(request.lower())
            if handler is None:
                raise ServiceException('OperationNotSupported', f'Operation {request} not supported')
            with self.project.lock:
                response = handler()
        except ServiceException as e:
            logger.info(f"WMS {request} : {e.code} - {e.message}")
            return WmsResponse(e.to_xml(self.version), XML_CONTENT_TYPE)

        logger.debug(f"WMS {request} : {response}")
        return response

    def _map_request(self) -> MapRequest:
        return MapRequest(self.parameters, self.project, self.config, self.version)

    # =========================================================================
    # CAPACITÉS
    # =========================================================================

    def get_capabilities(self) -> WmsResponse:
        content = get_capabilities(
            self.project, self.config, self.service_url, self.version,
            service=self.parameters.get('SERVICE', 'WMS'),
        )
        content_type = 'application/vnd.ogc.wms_xml' if self.version == '1.1.1' else XML_CONTENT_TYPE
        return WmsResponse(content, content_type)

    def get_project_settings(self) -> WmsResponse:
        self.version = DEFAULT_VERSION
        content = get_capabilities(
            self.project, self.config, self.service_url, self.version,
            project_settings=True, service=self.parameters.get('SERVICE', 'WMS'),
        )
        return WmsResponse(content, XML_CONTENT_TYPE)

    def get_context(self) -> WmsResponse:
        return WmsResponse(get_context(self.project, self.config, self.service_url), XML_CONTENT_TYPE)

    def get_schema_extension(self) -> WmsResponse:
        content = get_schema_extension()
        if content is None:
            raise ServiceException('InternalError', 'Schema extension is not available')
        return WmsResponse(content, XML_CONTENT_TYPE)

    # =========================================================================
    # CARTES
    # =========================================================================

    def get_map(self) -> WmsResponse:
        content, content_type = get_map(self._map_request())
        return WmsResponse(content, content_type)

    def get_feature_info(self) -> WmsResponse:
        content, content_type = get_feature_info(self._map_request())
        return WmsResponse(content, content_type)

    def get_legend_graphic(self) -> WmsResponse:
        content, content_type = get_legend_graphic(self._map_request())
        return WmsResponse(content, content_type)

    def get_print(self) -> WmsResponse:
        content, content_type = get_print(self._map_request())
        return WmsResponse(content, content_type)

    # =========================================================================
    # SLD
    # =========================================================================

    def get_style(self) -> WmsResponse:
        style = self.parameters.get('STYLE')
        if not style:
            raise ServiceException('StyleNotSpecified', 'Style is mandatory for GetStyle operation')
        layer = self.parameters.get('LAYER')
        if not layer:
            raise ServiceException('LayerNotSpecified', 'Layer is mandatory for GetStyle operation')
        return WmsResponse(get_style(self.config, layer, style), XML_CONTENT_TYPE)

    def get_styles(self) -> WmsResponse:
        layers = self.parameters.get_list('LAYERS')
        if not layers:
            raise ServiceException('LayerNotSpecified', 'Layers is mandatory for GetStyles operation')
        return WmsResponse(get_styles(self.config, layers), XML_CONTENT_TYPE)

    def describe_layer(self) -> WmsResponse:
        sld_version = self.parameters.get('SLD_VERSION')
        if not sld_version:
            raise ServiceException('MissingParameterValue', 'SLD_VERSION is mandatory for DescribeLayer operation')
        if sld_version != SUPPORTED_SLD_VERSION:
            raise ServiceException('InvalidParameterValue', f'SLD_VERSION = {sld_version} is not supported')
        if 'LAYERS' not in self.parameters:
            raise ServiceException('MissingParameterValue', 'LAYERS is mandatory for DescribeLayer operation')
        layers = self.parameters.get_list('LAYERS')
        if not layers:
            raise ServiceException('InvalidParameterValue', 'Layers is empty')

        href = self.config.online_resource or self.service_url
        return WmsResponse(describe_layer(self.config, layers, href), XML_CONTENT_TYPE)
