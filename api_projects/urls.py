# api_projects/urls.py
from django.urls import path, include
from rest_framework.routers import SimpleRouter

from .views import ProjectFileViewSet

router = SimpleRouter()
router.register(r'', ProjectFileViewSet, basename='project')

app_name = 'api_projects'

urlpatterns = [
    path('', include(router.urls)),
]
