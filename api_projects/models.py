# api_projects/models.py
from django.db import models


class ProjectFile(models.Model):
    """
    Fichier projet (.qgs) enregistré sur le serveur.

    Un projet actif est accessible par son nom dans le paramètre MAP du
    service WMS (?MAP=commune au lieu du chemin complet).
    """
    nom = models.CharField(max_length=100, unique=True, verbose_name="Nom")
    chemin = models.CharField(max_length=500, verbose_name="Chemin du fichier")
    description = models.TextField(blank=True, default='', verbose_name="Description")
    actif = models.BooleanField(default=True, verbose_name="Actif")
    date_creation = models.DateTimeField(auto_now_add=True, verbose_name="Date de création")
    date_modification = models.DateTimeField(auto_now=True, verbose_name="Date de modification")

    class Meta:
        verbose_name = "Fichier projet"
        verbose_name_plural = "Fichiers projet"
        ordering = ['nom']

    def __str__(self):
        return self.nom
