# api_projects/filters.py
import django_filters
from django.db.models import Q

from .models import ProjectFile


# ==============================================================================
# FILTRE FICHIER PROJET
# ==============================================================================

class ProjectFileFilter(django_filters.FilterSet):
    """Filtre pour les fichiers projet."""

    search = django_filters.CharFilter(method='filter_search', label='Recherche')
    actif = django_filters.BooleanFilter()

    date_modification_min = django_filters.DateFilter(
        field_name='date_modification',
        lookup_expr='gte',
        label='Modifié après'
    )

    class Meta:
        model = ProjectFile
        fields = ['actif']

    def filter_search(self, queryset, name, value):
        """Recherche dans nom, description, chemin."""
        if value:
            return queryset.filter(
                Q(nom__icontains=value) |
                Q(description__icontains=value) |
                Q(chemin__icontains=value)
            )
        return queryset
