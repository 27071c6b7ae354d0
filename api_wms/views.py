# api_wms/views.py
import logging

from celery.result import AsyncResult
from django.http import FileResponse, HttpResponse
from django.urls import reverse
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from api_projects.project_cache import ProjectNotFound, get_project, resolve_project_path

from .exceptions import ServiceException
from .parameters import WmsParameters
from .server import XML_CONTENT_TYPE, WmsServer, build_service_url

logger = logging.getLogger(__name__)


# ==============================================================================
# SERVICE WMS
# ==============================================================================

class WmsView(APIView):
    """
    Point d'entrée du service WMS (GET ou POST, paramètres KVP).

    Le projet est désigné par MAP (nom d'un projet enregistré ou chemin) ;
    sans MAP, le projet CARTOSIG_PROJECT_FILE est servi.

    Mode async pour GetPrint :
    - Ajouter ASYNC=true aux paramètres
    - Retourne un task_id ; suivre la tâche avec GET /wms/tasks/<task_id>/
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, *args, **kwargs):
        return self._handle(request, request.GET.dict())

    def post(self, request, *args, **kwargs):
        params = request.GET.dict()
        params.update(request.POST.dict())
        return self._handle(request, params)

    def _handle(self, request, params):
        parameters = WmsParameters(params)
        version = parameters.get('VERSION') or '1.3.0'

        try:
            project_path = resolve_project_path(parameters.get('MAP'))
            project = get_project(project_path)
        except ProjectNotFound as e:
            logger.warning(f"WMS : {e}")
            error = ServiceException('ProjectNotFound', str(e))
            return HttpResponse(error.to_xml(version), content_type=XML_CONTENT_TYPE)

        if (parameters.get('REQUEST') or '').lower() == 'getprint' and parameters.get_bool('ASYNC'):
            from .tasks import render_print_async
            task = render_print_async.delay(project_path, parameters.to_dict(), version)
            return Response({
                'task_id': task.id,
                'status': 'PENDING',
                'status_url': request.build_absolute_uri(reverse('api_wms:task-status', args=[task.id])),
            }, status=status.HTTP_202_ACCEPTED)

        server = WmsServer(parameters, project, build_service_url(request))
        result = server.execute_request()
        return HttpResponse(result.content, content_type=result.content_type, status=result.status)


# ==============================================================================
# SUIVI DES TÂCHES
# ==============================================================================

class PrintTaskStatusView(APIView):
    """
    Statut d'une impression asynchrone.

    ?download=true retourne le fichier produit quand la tâche est terminée.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, task_id, *args, **kwargs):
        result = AsyncResult(task_id)
        data = {'task_id': task_id, 'status': result.status}

        if not result.ready():
            return Response(data)

        if result.failed():
            data['error'] = str(result.result)
            return Response(data, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        outcome = result.result or {}
        data.update(outcome)
        if not outcome.get('success'):
            return Response(data, status=status.HTTP_400_BAD_REQUEST)

        if request.query_params.get('download', 'false').lower() in ('true', '1', 'yes'):
            try:
                handle = open(outcome['file_path'], 'rb')
            except OSError:
                return Response({'error': 'Fichier introuvable'}, status=status.HTTP_404_NOT_FOUND)
            return FileResponse(handle, content_type=outcome.get('content_type'),
                                as_attachment=True, filename=outcome.get('filename'))

        data.pop('file_path', None)
        return Response(data)
