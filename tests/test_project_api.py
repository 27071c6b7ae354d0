"""
Tests de l'API REST /api/projects/ et de la commande dump_project_properties.
"""
import pytest
from django.core.management import CommandError, call_command
from django.urls import reverse
from rest_framework.test import APIClient

from api_projects.models import ProjectFile
from cartosig_web.cache_utils import cache_get

from .conftest import PARCELS_ID

pytestmark = pytest.mark.django_db


@pytest.fixture
def project_file(project_path):
    return ProjectFile.objects.create(nom='commune', chemin=project_path, description='Projet de test')


class TestProjectFileCrud:

    def test_requires_authentication(self):
        response = APIClient().get(reverse('api_projects:project-list'))
        assert response.status_code in (401, 403)

    def test_list(self, api_client, project_file):
        response = api_client.get(reverse('api_projects:project-list'))
        assert response.status_code == 200
        assert response.data['count'] == 1
        assert response.data['results'][0]['nom'] == 'commune'

    def test_filters(self, api_client, project_file, project_dir):
        ProjectFile.objects.create(nom='archive', chemin=str(project_dir / 'commune.qgs'), actif=False)
        url = reverse('api_projects:project-list')
        assert api_client.get(url, {'actif': 'true'}).data['count'] == 1
        assert [p['nom'] for p in api_client.get(url, {'search': 'projet de test'}).data['results']] == ['commune']
        assert api_client.get(url, {'search': 'introuvable'}).data['count'] == 0

    def test_create(self, api_client, project_path):
        response = api_client.post(reverse('api_projects:project-list'), {
            'nom': 'nouveau',
            'chemin': project_path,
        }, format='json')
        assert response.status_code == 201
        assert ProjectFile.objects.get(nom='nouveau').actif is True

    @pytest.mark.parametrize('chemin', ['/tmp/projet.txt', '/nulle/part/projet.qgs'])
    def test_create_rejects_bad_paths(self, api_client, chemin):
        response = api_client.post(reverse('api_projects:project-list'), {
            'nom': 'mauvais',
            'chemin': chemin,
        }, format='json')
        assert response.status_code == 400
        assert 'chemin' in response.data


class TestSummary:

    def test_summary(self, api_client, project_file):
        response = api_client.get(reverse('api_projects:project-summary', args=[project_file.pk]))
        assert response.status_code == 200
        data = response.data
        assert data['title'] == 'Commune de test'
        assert data['crs'] == 'EPSG:3857'
        assert data['print_layouts'] == ['A4 paysage']
        assert data['relations'] == ['wells_parcels']
        assert data['bad_layers'][0]['id'] == 'missing_1'

        parcels = next(layer for layer in data['layers'] if layer['id'] == PARCELS_ID)
        assert parcels['feature_count'] == 3
        assert parcels['attributes'] == ['name', 'type', 'surface', 'owner']
        assert parcels['extent']['type'] == 'Polygon'

    def test_summary_is_cached_until_project_file_changes(self, api_client, project_file):
        api_client.get(reverse('api_projects:project-summary', args=[project_file.pk]))
        assert cache_get('PROJECTS', 'summary', project_file.pk) is not None

        api_client.patch(reverse('api_projects:project-detail', args=[project_file.pk]),
                         {'description': 'Modifié'}, format='json')
        assert cache_get('PROJECTS', 'summary', project_file.pk) is None

    def test_unreadable_project(self, api_client, project_file, project_dir):
        (project_dir / 'commune.qgs').unlink()
        response = api_client.get(reverse('api_projects:project-summary', args=[project_file.pk]))
        assert response.status_code == 404


class TestEntries:

    def url(self, project_file):
        return reverse('api_projects:project-entries', args=[project_file.pk])

    def test_read_string(self, api_client, project_file):
        response = api_client.get(self.url(project_file), {'scope': 'WMSServiceTitle'})
        assert response.data['value'] == 'Plan communal'
        assert response.data['found'] is True

    def test_read_list(self, api_client, project_file):
        response = api_client.get(self.url(project_file), {'scope': 'WMSCrsList'})
        assert response.data['value'] == ['EPSG:3857', 'EPSG:4326']

    def test_read_key(self, api_client, project_file):
        response = api_client.get(self.url(project_file), {'scope': 'Paths'})
        assert response.data['found'] is False
        assert response.data['entries'] == ['Absolute']

    def test_scope_required(self, api_client, project_file):
        assert api_client.get(self.url(project_file)).status_code == 400

    def test_write(self, api_client, project_file, project_path):
        response = api_client.post(self.url(project_file), {
            'scope': 'Gui',
            'key': '/CanvasColor/Red',
            'value': 200,
        }, format='json')
        assert response.status_code == 201

        with open(project_path, encoding='utf-8') as f:
            assert '<Red type="int">200</Red>' in f.read()
        response = api_client.get(self.url(project_file), {'scope': 'Gui', 'key': '/CanvasColor/Red'})
        assert response.data['value'] == '200'

    @pytest.mark.parametrize('payload', [
        {'scope': 'Gui', 'key': '/bad name', 'value': 1},
        {'scope': 'Gui', 'key': '/Color', 'value': {'r': 1}},
        {'scope': 'Gui', 'key': '/Colors', 'value': [[1]]},
        {'key': '/Color', 'value': 1},
    ])
    def test_write_rejects_invalid_entries(self, api_client, project_file, payload):
        response = api_client.post(self.url(project_file), payload, format='json')
        assert response.status_code == 400


class TestDumpProjectPropertiesCommand:

    def test_dump(self, project_path, capsys):
        call_command('dump_project_properties', project_path, '--layers')
        output = capsys.readouterr().out
        assert 'Commune de test (EPSG:3857)' in output
        assert 'WMSServiceTitle' in output
        assert f'{PARCELS_ID} : parcels [Polygon] 3 entité(s)' in output
        assert 'Couche invalide missing' in output

    def test_unreadable_project(self, tmp_path):
        with pytest.raises(CommandError):
            call_command('dump_project_properties', str(tmp_path / 'absent.qgs'))
