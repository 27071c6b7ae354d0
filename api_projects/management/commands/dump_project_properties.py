# Affiche l'arbre des propriétés d'un fichier projet

from django.core.management.base import BaseCommand, CommandError

from api_projects.project import Project


class Command(BaseCommand):
    help = "Affiche les propriétés (portées, clés, valeurs) d'un fichier projet .qgs."

    def add_arguments(self, parser):
        parser.add_argument('path', help='Chemin du fichier .qgs')
        parser.add_argument('--layers', action='store_true', help='Liste aussi les couches')

    def handle(self, *args, **options):
        project = Project()
        if not project.read(options['path']):
            raise CommandError(project.error)

        self.stdout.write(self.style.SUCCESS(f"Projet : {project.title or options['path']} ({project.crs.authid})"))
        for line in project.dump_properties():
            self.stdout.write(line)

        if options['layers']:
            for layer in project.layers.values():
                self.stdout.write(f"  {layer.id} : {layer.name} [{layer.geometry_type}] {layer.feature_count()} entité(s)")
        for bad in project.bad_layers:
            self.stdout.write(self.style.WARNING(f"Couche invalide {bad['name'] or bad['id']} : {bad['error']}"))
