# api_wms/parameters.py
"""
Lecture des paramètres d'une requête WMS.

Les noms de paramètres sont insensibles à la casse (REQUEST, request, Request).
Les listes (LAYERS, STYLES, QUERY_LAYERS) sont séparées par des virgules, les
filtres et sélections par des points-virgules (FILTER=couche:expr;couche:expr).
"""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from .exceptions import ServiceException

logger = logging.getLogger(__name__)

FILTER_REJECTED_MESSAGE = (
    "The filter string {} has been rejected because of security reasons. "
    "Note: Text strings have to be enclosed in single or double quotes. "
    "A space between each word / special character is mandatory. "
    "Allowed Keywords and special characters are AND,OR,IN,<,>=,>,>=,!=,',',(,),DMETAPHONE,SOUNDEX. "
    "Not allowed are semicolons in the filter expression."
)

_ALLOWED_TOKENS = {',', '(', ')', '=', '!=', '<', '<=', '>', '>=', '%'}
_ALLOWED_KEYWORDS = {'AND', 'OR', 'IN', 'LIKE', 'ILIKE', 'DMETAPHONE', 'SOUNDEX'}


class WmsParameters:
    """Dictionnaire de paramètres à clés insensibles à la casse (clés stockées en majuscules)."""

    def __init__(self, params: Optional[Mapping[str, str]] = None):
        self._params: Dict[str, str] = {}
        for key, value in (params or {}).items():
            self._params[key.upper()] = value

    def get(self, key: str, default=None):
        return self._params.get(key.upper(), default)

    def __getitem__(self, key: str) -> str:
        return self._params[key.upper()]

    def __setitem__(self, key: str, value: str):
        self._params[key.upper()] = value

    def __contains__(self, key: str) -> bool:
        return key.upper() in self._params

    def __iter__(self):
        return iter(self._params)

    def items(self):
        return self._params.items()

    def to_dict(self) -> Dict[str, str]:
        return dict(self._params)

    def get_int(self, key: str, default: int) -> int:
        """Entier ou default si absent ou non convertible."""
        try:
            return int(self._params[key.upper()])
        except (KeyError, TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float) -> float:
        try:
            return float(self._params[key.upper()])
        except (KeyError, TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._params.get(key.upper())
        if value is None:
            return default
        return value.strip().lower() in ('true', '1', 'yes', 'on')

    def get_list(self, key: str, separator: str = ',') -> List[str]:
        """Liste sans éléments vides."""
        value = self._params.get(key.upper(), '')
        return [item for item in value.split(separator) if item]

    def layers_and_styles(self) -> Tuple[List[str], List[str]]:
        """LAYER + LAYERS et STYLE + STYLES (compatibilité GetLegendGraphic)."""
        layers = self.get_list('LAYER') + self.get_list('LAYERS')
        styles = self.get_list('STYLE') + self.get_list('STYLES')
        return layers, styles

    def __repr__(self):
        return f'<WmsParameters {self._params}>'


def parse_bbox(value: Optional[str]) -> Optional[Tuple[float, float, float, float]]:
    """'xmin,ymin,xmax,ymax' → tuple ; None si le format est invalide."""
    if value is None:
        return None
    parts = value.split(',')
    if len(parts) != 4:
        return None
    try:
        # '+' décodé en espace dans une URL (1e+06)
        return tuple(float(p.strip().replace(' ', '+')) for p in parts)
    except ValueError:
        return None


def is_empty_extent(extent) -> bool:
    return extent is None or extent[2] <= extent[0] or extent[3] <= extent[1]


def group_string_list(tokens: List[str], quote: str) -> List[str]:
    """
    Regroupe les éléments compris entre deux guillemets.

    ["'saint", "jean'", '=', 'x'] → ["'saint jean'", '=', 'x']
    """
    result = list(tokens)
    group_active = False
    start = -1
    parts: List[str] = []

    i = 0
    while i < len(result):
        token = result[i]
        if token.startswith(quote):
            start = i
            group_active = True
            parts = []

        if group_active:
            parts.append(token)

        if token.endswith(quote):
            group_active = False
            if start != -1:
                result[start] = ' '.join(parts)
                del result[start + 1:i + 1]
                i = start
            parts = []
            start = -1
        i += 1
    return result


def _is_number(token: str) -> bool:
    try:
        float(token)
    except ValueError:
        return False
    return '_' not in token and token.lower().lstrip('+-') not in ('nan', 'inf', 'infinity')


def _is_quoted(token: str, quote: str) -> bool:
    return (
        len(token) > 2
        and token[0] == quote
        and token[-1] == quote
        and token[1] != quote
        and token[-2] != quote
    )


def is_filter_string_safe(filter_string: str) -> bool:
    """
    Liste blanche des filtres acceptés.

    Chaque mot ou caractère spécial doit être séparé par un espace ; les
    textes sont entre guillemets simples ou doubles ; le point-virgule est
    interdit.
    """
    if ';' in filter_string:
        return False

    tokens = [t for t in filter_string.split(' ') if t]
    tokens = group_string_list(tokens, "'")
    tokens = group_string_list(tokens, '"')

    for token in tokens:
        if token in _ALLOWED_TOKENS or token.upper() in _ALLOWED_KEYWORDS:
            continue
        if _is_number(token):
            continue
        if token == "''":
            continue
        if _is_quoted(token, "'") or _is_quoted(token, '"'):
            continue
        return False
    return True


def parse_layer_filters(value: Optional[str]) -> List[Tuple[str, str]]:
    """
    FILTER=couche:expr;couche:expr → [(couche, expr), ...]

    Chaque expression est vérifiée par is_filter_string_safe.

    Raises:
        ServiceException: "Filter string rejected"
    """
    filters = []
    if not value:
        return filters
    for item in value.split(';'):
        name, separator, expression = item.partition(':')
        if not separator:
            continue
        if not is_filter_string_safe(expression):
            logger.warning(f"Filtre rejeté pour la couche {name} : {expression}")
            raise ServiceException('Filter string rejected', FILTER_REJECTED_MESSAGE.format(expression))
        filters.append((name, expression))
    return filters


def parse_selection(value: Optional[str]) -> List[Tuple[str, List[int]]]:
    """SELECTION=couche:1,2;autre:5 → [('couche', [1, 2]), ('autre', [5])]"""
    selections = []
    if not value:
        return selections
    for item in value.split(';'):
        name, separator, ids = item.partition(':')
        if not separator:
            continue
        feature_ids = []
        for fid in ids.split(','):
            try:
                feature_ids.append(int(fid))
            except ValueError:
                logger.debug(f"Identifiant de sélection ignoré : {fid!r}")
        selections.append((name, feature_ids))
    return selections


def parse_opacities(value: Optional[str], layer_names: Iterable[str]) -> List[Tuple[str, int]]:
    """OPACITIES=255,128 associées aux couches demandées ; valeurs hors [0, 255] ignorées."""
    result = []
    if not value:
        return result
    for name, opacity in zip(layer_names, value.split(',')):
        try:
            opacity = int(opacity)
        except ValueError:
            continue
        if 0 <= opacity <= 255:
            result.append((name, opacity))
    return result
