# api_wms/urls.py
from django.urls import path

from .views import PrintTaskStatusView, WmsView

app_name = 'api_wms'

urlpatterns = [
    path('', WmsView.as_view(), name='wms'),
    path('tasks/<str:task_id>/', PrintTaskStatusView.as_view(), name='task-status'),
]
