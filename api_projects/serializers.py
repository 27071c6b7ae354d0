# api_projects/serializers.py
from pathlib import Path

from rest_framework import serializers
from rest_framework_gis.fields import GeometryField

from .models import ProjectFile


# ==============================================================================
# SERIALIZERS FICHIER PROJET
# ==============================================================================

class ProjectFileSerializer(serializers.ModelSerializer):
    """Serializer de base pour ProjectFile."""

    class Meta:
        model = ProjectFile
        fields = ['id', 'nom', 'chemin', 'description', 'actif', 'date_creation', 'date_modification']
        read_only_fields = ['id', 'date_creation', 'date_modification']

    def validate_chemin(self, value):
        path = Path(value)
        if path.suffix.lower() != '.qgs':
            raise serializers.ValidationError("Le fichier doit avoir l'extension .qgs")
        if not path.is_file():
            raise serializers.ValidationError(f"Fichier introuvable : {value}")
        return str(path)


# ==============================================================================
# SERIALIZERS RÉSUMÉ DE PROJET
# ==============================================================================

class LayerSummarySerializer(serializers.Serializer):
    id = serializers.CharField()
    name = serializers.CharField()
    short_name = serializers.CharField(allow_blank=True)
    title = serializers.CharField(allow_blank=True)
    geometry_type = serializers.CharField(allow_blank=True)
    crs = serializers.CharField(allow_blank=True)
    feature_count = serializers.IntegerField()
    attributes = serializers.ListField(child=serializers.CharField())
    extent = GeometryField(read_only=True, allow_null=True)


class BadLayerSerializer(serializers.Serializer):
    id = serializers.CharField(allow_blank=True)
    name = serializers.CharField(allow_blank=True)
    source = serializers.CharField(allow_blank=True)
    error = serializers.CharField(allow_blank=True)


class ProjectSummarySerializer(serializers.Serializer):
    title = serializers.CharField(allow_blank=True)
    file_name = serializers.CharField()
    crs = serializers.CharField(allow_blank=True)
    ellipsoid = serializers.CharField(allow_blank=True)
    layers = LayerSummarySerializer(many=True)
    bad_layers = BadLayerSerializer(many=True)
    print_layouts = serializers.ListField(child=serializers.CharField())
    relations = serializers.ListField(child=serializers.CharField())


class ProjectEntrySerializer(serializers.Serializer):
    """Écriture d'une propriété : valeur bool, int, float, str ou liste de str."""
    scope = serializers.CharField()
    key = serializers.CharField(default='/')
    value = serializers.JSONField()

    def validate_value(self, value):
        if isinstance(value, list):
            if not all(isinstance(v, (str, int, float)) for v in value):
                raise serializers.ValidationError('Une liste ne peut contenir que des valeurs simples')
            return [str(v) for v in value]
        if not isinstance(value, (bool, int, float, str)):
            raise serializers.ValidationError('Type de valeur non pris en charge')
        return value
