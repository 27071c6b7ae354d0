import shutil
from pathlib import Path

import pytest
from django.core.cache import cache

from api_projects import project_cache
from api_projects.project import Project

FIXTURES_DIR = Path(__file__).resolve().parent / 'fixtures'

PARCELS_ID = 'parcels_1'
ROADS_ID = 'roads_1'
WELLS_ID = 'wells_1'


@pytest.fixture(autouse=True)
def clean_caches():
    """Cache Django (capacités, résumés) et cache des projets vidés à chaque test."""
    cache.clear()
    project_cache.clear()
    yield
    project_cache.clear()


@pytest.fixture
def project_dir(tmp_path):
    """Copie des fixtures : les tests peuvent écrire le projet sans toucher aux originaux."""
    target = tmp_path / 'projet'
    shutil.copytree(FIXTURES_DIR, target)
    return target


@pytest.fixture
def project_path(project_dir):
    return str(project_dir / 'commune.qgs')


@pytest.fixture
def project(project_path):
    project = Project()
    assert project.read(project_path), project.error
    return project


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username='sig', password='cartosig-test')


@pytest.fixture
def api_client(user):
    from rest_framework.test import APIClient

    client = APIClient()
    client.force_authenticate(user=user)
    return client
