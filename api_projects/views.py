# api_projects/views.py
import logging

from django.contrib.gis.geos import Polygon
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from cartosig_web.cache_utils import cache_get, cache_set

from .filters import ProjectFileFilter
from .models import ProjectFile
from .project_cache import ProjectNotFound, get_project
from .serializers import ProjectEntrySerializer, ProjectFileSerializer, ProjectSummarySerializer

logger = logging.getLogger(__name__)


def _layer_summary(layer) -> dict:
    extent = layer.extent()
    extent_geometry = None
    if extent is not None:
        extent_geometry = Polygon.from_bbox(extent)
        extent_geometry.srid = layer.crs.srid
    return {
        'id': layer.id,
        'name': layer.name,
        'short_name': layer.short_name,
        'title': layer.title,
        'geometry_type': layer.geometry_type,
        'crs': layer.crs.authid,
        'feature_count': layer.feature_count(),
        'attributes': [f.name for f in layer.fields],
        'extent': extent_geometry,
    }


def project_summary(project) -> dict:
    return {
        'title': project.title,
        'file_name': project.file_name,
        'crs': project.crs.authid,
        'ellipsoid': project.ellipsoid,
        'layers': [_layer_summary(layer) for layer in project.layers.values()],
        'bad_layers': project.bad_layers,
        'print_layouts': [layout.name for layout in project.print_layouts],
        'relations': list(project.relations.keys()),
    }


class ProjectFileViewSet(viewsets.ModelViewSet):
    """
    ViewSet pour les fichiers projet enregistrés.

    list: Liste les projets (filtres: actif, search, date_modification_min)
    create: Enregistre un fichier .qgs existant
    retrieve: Détail d'un projet
    summary: Contenu du projet (couches, SCR, mises en page)
    entries: Lecture (GET ?scope=&key=) et écriture (POST) des propriétés
    """
    permission_classes = [IsAuthenticated]
    queryset = ProjectFile.objects.all().order_by('nom')
    serializer_class = ProjectFileSerializer
    filterset_class = ProjectFileFilter

    def _load(self, project_file):
        try:
            return get_project(project_file.chemin), None
        except ProjectNotFound as e:
            logger.warning(f"Projet {project_file.nom} illisible : {e}")
            return None, Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)

    @action(detail=True, methods=['get'])
    def summary(self, request, pk=None):
        """Résumé du projet, mis en cache (domaine PROJECTS)."""
        project_file = self.get_object()

        cached = cache_get('PROJECTS', 'summary', project_file.pk)
        if cached is not None:
            return Response(cached)

        project, error = self._load(project_file)
        if error is not None:
            return error

        data = ProjectSummarySerializer(project_summary(project)).data
        cache_set('PROJECTS', 'summary', project_file.pk, data=data)
        return Response(data)

    @action(detail=True, methods=['get', 'post'])
    def entries(self, request, pk=None):
        project_file = self.get_object()
        project, error = self._load(project_file)
        if error is not None:
            return error

        if request.method == 'GET':
            scope = request.query_params.get('scope')
            key = request.query_params.get('key', '/')
            if not scope:
                return Response({'error': 'Le paramètre scope est requis'}, status=status.HTTP_400_BAD_REQUEST)

            value, ok = project.read_list_entry(scope, key)
            if ok and len(value) == 1:
                value, ok = project.read_entry(scope, key)
            return Response({
                'scope': scope,
                'key': key,
                'value': value if ok else None,
                'found': ok,
                'entries': project.entry_list(scope, key),
                'subkeys': project.subkey_list(scope, key),
            })

        serializer = ProjectEntrySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            project.write_entry(data['scope'], data['key'], data['value'])
        except (TypeError, ValueError) as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        if not project.write():
            return Response({'error': project.error}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        logger.info(f"Propriété {data['scope']}{data['key']} écrite dans {project_file.nom}")
        return Response({'message': 'Propriété enregistrée', 'scope': data['scope'], 'key': data['key']},
                        status=status.HTTP_201_CREATED)
