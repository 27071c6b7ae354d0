# api_projects/admin.py
from django.contrib import admin

from .models import ProjectFile


@admin.register(ProjectFile)
class ProjectFileAdmin(admin.ModelAdmin):
    list_display = ['nom', 'chemin', 'actif', 'date_modification']
    list_filter = ['actif']
    search_fields = ['nom', 'chemin', 'description']
    readonly_fields = ['date_creation', 'date_modification']
