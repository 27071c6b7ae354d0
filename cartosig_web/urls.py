from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView
from django.contrib import admin
from django.urls import path, include

"""
URL configuration for cartosig_web project.
"""

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/geometry/', include('api_geometry.urls')),
    path('api/projects/', include('api_projects.urls')),
    path('wms/', include('api_wms.urls')),
    path('api/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
]
