"""
Tests du document projet : lecture/écriture .qgs, propriétés, chemins,
registre des couches, signals et cache des projets.
"""
import os
import xml.etree.ElementTree as ET

import pytest
from django.contrib.gis.geos import Point

from api_projects import project_cache, signals
from api_projects.crs import CoordinateReferenceSystem
from api_projects.layers import Feature, VectorLayer
from api_projects.project import Project
from cartosig_web.cache_utils import get_cache_version

from .conftest import PARCELS_ID, ROADS_ID, WELLS_ID


@pytest.fixture
def received():
    """Collecte les signals reçus pendant le test."""
    events = []

    def receiver(sender, signal, **kwargs):
        events.append((signal, kwargs))

    connected = [
        signals.dirty_changed, signals.layers_added, signals.layers_removed,
        signals.project_read, signals.project_saved, signals.project_cleared,
    ]
    for signal in connected:
        signal.connect(receiver, weak=False)
    yield events
    for signal in connected:
        signal.disconnect(receiver)


def memory_layer(layer_id='memoire_1', name='memoire'):
    layer = VectorLayer(layer_id, name, crs=CoordinateReferenceSystem('EPSG:3857'))
    layer.set_features([Feature(1, {'code': 'A'}, Point(5, 5, srid=3857))])
    return layer


# ==============================================================================
# LECTURE
# ==============================================================================

class TestRead:

    def test_document(self, project):
        assert project.title == 'Commune de test'
        assert project.crs.authid == 'EPSG:3857'
        assert project.ellipsoid == 'WGS84'
        assert project.dirty is False
        assert project.error == ''

    def test_layers(self, project):
        assert sorted(project.layers) == [PARCELS_ID, 'private_1', ROADS_ID, WELLS_ID]
        parcels = project.map_layer(PARCELS_ID)
        assert parcels.is_valid
        assert parcels.feature_count() == 3
        assert project.map_layers_by_name('roads')[0].id == ROADS_ID

    def test_bad_layers(self, project):
        assert len(project.bad_layers) == 1
        bad = project.bad_layers[0]
        assert bad['id'] == 'missing_1'
        assert bad['source'] == './absent.geojson'
        assert 'introuvable' in bad['error']

    def test_layer_tree_skips_bad_layers(self, project):
        ids = [node.layer_id for node in project.layer_tree_root.find_layers()]
        assert ids == [ROADS_ID, WELLS_ID, PARCELS_ID, 'private_1']
        group = project.layer_tree_root.find_group('Reseau')
        assert [n.layer_id for n in group.find_layers()] == [ROADS_ID, WELLS_ID]
        assert group.find_layer(WELLS_ID).visible is False

    def test_relations(self, project):
        relation = project.relations['wells_parcels']
        assert relation.referencing_layer == WELLS_ID
        assert relation.referenced_layer == PARCELS_ID
        assert relation.field_pairs == [('code', 'name')]

    def test_print_layouts(self, project):
        layout = project.print_layout('A4 paysage')
        assert (layout.paper_width, layout.paper_height) == (297, 210)
        assert layout.map(0).extent == (0, 0, 100, 100)
        assert layout.map(1) is None
        assert layout.label('titre').text == 'Plan parcellaire'
        assert layout.label('titre').font_size == 14
        assert project.print_layout('A3') is None

    def test_missing_file(self, tmp_path):
        project = Project()
        assert project.read(str(tmp_path / 'absent.qgs')) is False
        assert 'Impossible de lire' in project.error

    def test_not_a_project(self, tmp_path):
        path = tmp_path / 'autre.qgs'
        path.write_text('<?xml version="1.0"?><carte/>', encoding='utf-8')
        project = Project()
        assert project.read(str(path)) is False
        assert "n'est pas un fichier projet" in project.error

    def test_no_file_name(self):
        assert Project().read() is False

    def test_read_emits_signal(self, project_path, received):
        Project().read(project_path)
        assert any(signal is signals.project_read for signal, _ in received)

    def test_singleton(self):
        assert Project.instance() is Project.instance()


# ==============================================================================
# ÉCRITURE
# ==============================================================================

class TestWrite:

    def test_roundtrip(self, project, project_dir):
        project.set_title('Commune modifiée')
        project.write_entry('WMSServiceTitle', '/', 'Nouveau titre')
        target = str(project_dir / 'copie.qgs')
        assert project.write(target)
        assert project.dirty is False

        reloaded = Project()
        assert reloaded.read(target), reloaded.error
        assert reloaded.title == 'Commune modifiée'
        assert reloaded.crs == project.crs
        assert reloaded.read_entry('WMSServiceTitle', '/') == ('Nouveau titre', True)
        assert reloaded.read_list_entry('WMSCrsList', '/') == (['EPSG:3857', 'EPSG:4326'], True)
        assert sorted(reloaded.layers) == sorted(project.layers)
        assert set(reloaded.map_layer(PARCELS_ID).styles) == {'default', 'simple'}
        assert reloaded.map_layer(PARCELS_ID).field('surface').alias == 'Surface (m2)'
        assert 'wells_parcels' in reloaded.relations
        assert reloaded.print_layout('A4 paysage').label('titre').text == 'Plan parcellaire'
        assert reloaded.layer_tree_root.find_group('Reseau') is not None

    def test_sources_written_relative(self, project, project_dir):
        target = project_dir / 'copie.qgs'
        project.write(str(target))
        root = ET.parse(target).getroot()
        sources = {e.findtext('id'): e.findtext('datasource') for e in root.iter('maplayer')}
        assert sources[PARCELS_ID] == './parcels.geojson'

    def test_write_without_file_name(self):
        project = Project()
        assert project.write() is False
        assert project.error

    def test_write_emits_signal(self, project, project_dir, received):
        project.write(str(project_dir / 'copie.qgs'))
        assert any(signal is signals.project_saved for signal, _ in received)


# ==============================================================================
# PROPRIÉTÉS
# ==============================================================================

class TestEntries:

    def test_read_typed_entries(self, project):
        assert project.read_entry('WMSServiceTitle', '/') == ('Plan communal', True)
        assert project.read_num_entry('WMSMaxWidth', '/') == (2000, True)
        assert project.read_double_entry('WMSPrecision', '/') == (2.0, True)
        assert project.read_bool_entry('WMSAddWktGeometry', '/') == (True, True)
        assert project.read_entry('WMSCrsList', '/') == ('EPSG:3857,EPSG:4326', True)

    def test_missing_entries_return_default(self, project):
        assert project.read_entry('Gui', '/Missing', 'x') == ('x', False)
        assert project.read_num_entry('Gui', '/Missing', 7) == (7, False)
        assert project.read_bool_entry('Gui', '/Missing', True) == (True, False)
        assert project.read_list_entry('Gui', '/Missing', ['a']) == (['a'], False)

    def test_bad_numeric_entry(self, project):
        project.write_entry('Gui', '/Width', 'large')
        assert project.read_num_entry('Gui', '/Width', 3) == (3, False)

    def test_write_entry_marks_dirty(self, project, received):
        project.write_entry('Gui', '/CanvasColor/Red', 255)
        assert project.dirty is True
        assert (signals.dirty_changed, {'dirty': True}) in received
        assert project.read_num_entry('Gui', '/CanvasColor/Red') == (255, True)

    def test_write_entry_types(self, project):
        project.write_entry('Gui', '/Layers', ('a', 'b'))
        assert project.read_list_entry('Gui', '/Layers') == (['a', 'b'], True)
        with pytest.raises(TypeError):
            project.write_entry('Gui', '/Bad', {'a': 1})
        with pytest.raises(ValueError):
            project.write_entry('Gui', '/bad name', 1)

    def test_remove_entry(self, project):
        assert project.remove_entry('WMSMaxWidth', '/')
        assert project.read_num_entry('WMSMaxWidth', '/') == (0, False)
        assert project.remove_entry('WMSMaxWidth', '/') is False

    def test_entry_and_subkey_lists(self, project):
        assert 'Absolute' in project.entry_list('Paths')
        assert 'Measure' in project.subkey_list('')
        assert project.entry_list('Absent') == []

    def test_dump_properties(self, project):
        lines = project.dump_properties()
        assert 'Paths/' in lines
        assert '  Absolute: False' in lines


class TestTypedSettings:

    def test_values_from_file(self, project):
        assert project.topological_editing is True
        assert project.non_identifiable_layers == [WELLS_ID]
        assert project.avoid_intersections_list == []

    def test_unit_defaults(self, project):
        assert project.distance_units == 'meters'
        assert project.area_units == 'm2'
        project.distance_units = 'feet'
        assert project.distance_units == 'feet'

    def test_setters(self, project):
        project.topological_editing = False
        project.avoid_intersections_list = [PARCELS_ID]
        assert project.topological_editing is False
        assert project.avoid_intersections_list == [PARCELS_ID]

    def test_editing_flags_are_stored_in_properties(self, project):
        assert project.auto_transaction is False
        assert project.evaluate_default_values is False
        assert project.dirty is False

        project.auto_transaction = True
        assert project.dirty is True
        project.evaluate_default_values = True
        assert project.read_bool_entry('Editing', '/AutoTransaction') == (True, True)
        assert project.read_bool_entry('Editing', '/EvaluateDefaultValues') == (True, True)
        assert project.auto_transaction is True

    def test_editing_flags_roundtrip(self, project, project_dir):
        project.auto_transaction = True
        target = project_dir / 'copie.qgs'
        project.write(str(target))
        assert ET.parse(target).getroot().get('autoTransaction') == '1'

        reloaded = Project()
        reloaded.read(str(target))
        assert reloaded.auto_transaction is True
        assert reloaded.evaluate_default_values is False
        assert reloaded.dirty is False

    def test_variables(self, project):
        project.variables = {'commune': 'Test', 'code': 42}
        assert project.variables == {'commune': 'Test', 'code': '42'}


# ==============================================================================
# CHEMINS
# ==============================================================================

class TestPaths:

    def test_write_relative(self, project, project_dir):
        assert project.write_path(str(project_dir / 'data' / 'x.geojson')) == './data/x.geojson'
        assert project.write_path(str(project_dir.parent / 'x.geojson')) == '../x.geojson'

    def test_read_relative(self, project, project_dir):
        assert project.read_path('./parcels.geojson') == os.path.normpath(str(project_dir / 'parcels.geojson'))
        assert project.read_path('/abs/x.geojson') == '/abs/x.geojson'

    def test_absolute_mode(self, project, project_dir):
        project.write_entry('Paths', '/Absolute', True)
        absolute = str(project_dir / 'x.geojson')
        assert project.write_path(absolute) == absolute
        assert project.read_path('./x.geojson') == './x.geojson'

    def test_without_home(self):
        assert Project().write_path('/data/x.geojson') == '/data/x.geojson'


# ==============================================================================
# REGISTRE DES COUCHES
# ==============================================================================

class TestLayerRegistry:

    def test_add_map_layers(self, project, received):
        layer = memory_layer()
        added = project.add_map_layers([layer, None])
        assert added == [layer]
        assert project.map_layer('memoire_1') is layer
        assert project.layer_tree_root.find_layer('memoire_1') is not None
        assert project.dirty is True
        assert (signals.layers_added, {'layers': [layer]}) in received

    def test_add_existing_id_is_ignored(self, project):
        assert project.add_map_layers([memory_layer(PARCELS_ID)]) == []

    def test_add_without_tree(self, project):
        project.add_map_layers([memory_layer()], add_to_tree=False)
        assert project.layer_tree_root.find_layer('memoire_1') is None

    def test_remove_map_layers(self, project, received):
        removed = project.remove_map_layers([WELLS_ID, 'inconnu'])
        assert removed == [WELLS_ID]
        assert project.map_layer(WELLS_ID) is None
        assert project.layer_tree_root.find_layer(WELLS_ID) is None
        assert project.non_identifiable_layers == []
        assert 'wells_parcels' not in project.relations
        assert (signals.layers_removed, {'layer_ids': [WELLS_ID]}) in received

    def test_remove_unknown_layer(self, project):
        assert project.remove_map_layers(['inconnu']) == []
        assert project.dirty is False

    def test_clear(self, project, received):
        project.clear()
        assert project.layers == {}
        assert project.title == ''
        assert project.read_entry('WMSServiceTitle', '/') == ('', False)
        assert any(signal is signals.project_cleared for signal, _ in received)


# ==============================================================================
# CACHE
# ==============================================================================

class TestProjectCache:

    def test_project_is_cached(self, project_path):
        assert project_cache.get_project(project_path) is project_cache.get_project(project_path)

    def test_project_reloaded_when_file_changes(self, project_path):
        first = project_cache.get_project(project_path)
        stat = os.stat(project_path)
        os.utime(project_path, (stat.st_atime, stat.st_mtime + 10))
        assert project_cache.get_project(project_path) is not first

    def test_missing_project(self, tmp_path):
        with pytest.raises(project_cache.ProjectNotFound):
            project_cache.get_project(str(tmp_path / 'absent.qgs'))

    def test_eviction(self, project_dir, settings):
        settings.CARTOSIG_PROJECT_CACHE_SIZE = 1
        copy = project_dir / 'copie.qgs'
        copy.write_bytes((project_dir / 'commune.qgs').read_bytes())
        first = project_cache.get_project(str(project_dir / 'commune.qgs'))
        project_cache.get_project(str(copy))
        assert project_cache.get_project(str(project_dir / 'commune.qgs')) is not first

    def test_read_invalidates_versioned_cache(self, project_path):
        before = get_cache_version('CAPABILITIES')
        Project().read(project_path)
        assert get_cache_version('CAPABILITIES') == before + 1
        assert get_cache_version('PROJECTS') >= 1

    @pytest.mark.django_db
    def test_resolve_default_project(self, settings, project_path):
        settings.CARTOSIG_PROJECT_FILE = project_path
        assert project_cache.resolve_project_path(None) == project_path

    @pytest.mark.django_db
    def test_resolve_without_default(self, settings):
        settings.CARTOSIG_PROJECT_FILE = ''
        with pytest.raises(project_cache.ProjectNotFound):
            project_cache.resolve_project_path('')

    @pytest.mark.django_db
    def test_resolve_registered_name(self, project_path):
        from api_projects.models import ProjectFile

        ProjectFile.objects.create(nom='commune', chemin=project_path)
        assert project_cache.resolve_project_path('commune') == project_path

    @pytest.mark.django_db
    def test_unregistered_path_is_refused(self, settings, project_path):
        settings.CARTOSIG_PROJECT_ROOT = ''
        with pytest.raises(project_cache.ProjectNotFound):
            project_cache.resolve_project_path(project_path)

    @pytest.mark.django_db
    def test_path_under_project_root(self, settings, project_dir, project_path):
        settings.CARTOSIG_PROJECT_ROOT = str(project_dir)
        assert project_cache.resolve_project_path(project_path) == str(project_dir.resolve() / 'commune.qgs')
        assert project_cache.resolve_project_path('commune.qgs') == str(project_dir.resolve() / 'commune.qgs')

    @pytest.mark.django_db
    @pytest.mark.parametrize('value', ['/etc/passwd', '../commune.qgs'])
    def test_path_outside_project_root(self, settings, project_dir, value):
        settings.CARTOSIG_PROJECT_ROOT = str(project_dir)
        with pytest.raises(project_cache.ProjectNotFound):
            project_cache.resolve_project_path(value)
