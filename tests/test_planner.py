"""Tests for engine.planner module."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from configuration import UNKNOWN, Configuration
from engine.errors import CycleDetected
from engine.planner import CREATE, DESTROY, NOOP, REPLACE, UPDATE, Planner
from engine.state import Resource, StateSnapshot, parse_key
from providers import NullResourceProvider, ProviderRegistry


def _config(*resources):
    return Configuration.from_dict({'name': 'test', 'resources': list(resources)})


def _null(name, depends_on=None, **attributes):
    entry = {'type': 'null_resource', 'name': name, 'attributes': attributes}
    if depends_on:
        entry['depends_on'] = depends_on
    return entry


def _stored(snapshot, key, attributes, dependencies=(), tainted=False):
    module, type_, name = parse_key(key)
    resource = Resource(type=type_, name=name, module=module)
    resource.applied(attributes, list(dependencies))
    if tainted:
        resource.taint()
    snapshot.put(resource)
    return resource


@pytest.fixture
def planner(tmp_path):
    return Planner(ProviderRegistry(tmp_path))


@pytest.fixture
def snapshot():
    return StateSnapshot(lineage='lin', serial=5)


class TestClassification:
    """Tests for per-resource change classification."""

    def test_create_from_empty_state(self, planner):
        plan = planner.plan(_config(_null('a'), _null('b', depends_on=['null_resource.a'])), None)
        assert [(c.key, c.action) for c in plan.changes] == [
            ('null_resource.a', CREATE),
            ('null_resource.b', CREATE),
        ]
        assert plan.lineage is None
        assert plan.serial == 0

    def test_noop_when_matching(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'triggers': {'v': '1'}, 'id': '99'})
        plan = planner.plan(_config(_null('a', triggers={'v': '1'})), snapshot)
        change = plan.get('null_resource.a')
        assert change.action == NOOP
        assert not plan.has_changes
        assert plan.lineage == 'lin'
        assert plan.serial == 5

    def test_update(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'description': 'old', 'id': '99'})
        change = planner.plan(_config(_null('a', description='new')), snapshot).get('null_resource.a')
        assert change.action == UPDATE
        assert change.changed == ['description']
        assert change.before['description'] == 'old'
        assert change.after == {'description': 'new'}

    def test_removed_attribute_is_a_change(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'description': 'old', 'id': '99'})
        change = planner.plan(_config(_null('a')), snapshot).get('null_resource.a')
        assert change.action == UPDATE
        assert change.changed == ['description']

    def test_replace_on_trigger_change(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'triggers': {'v': '1'}, 'id': '99'})
        change = planner.plan(_config(_null('a', triggers={'v': '2'})), snapshot).get('null_resource.a')
        assert change.action == REPLACE
        assert 'triggers forces replacement' in change.reasons

    def test_tainted_is_replaced(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '99'}, tainted=True)
        change = planner.plan(_config(_null('a')), snapshot).get('null_resource.a')
        assert change.action == REPLACE
        assert change.reasons == ['tainted']

    def test_destroy_when_not_configured(self, planner, snapshot):
        _stored(snapshot, 'null_resource.gone', {'id': '1'})
        change = planner.plan(_config(), snapshot).get('null_resource.gone')
        assert change.action == DESTROY
        assert change.reasons == ['not in configuration']
        assert change.after is None

    def test_missing_object_is_recreated(self, tmp_path, snapshot):
        _stored(snapshot, 'local_file.f', {'filename': 'f.txt', 'content': 'x', 'id': 'abc'})
        planner = Planner(ProviderRegistry(tmp_path))
        config = Configuration.from_dict({'resources': [
            {'type': 'local_file', 'name': 'f', 'attributes': {'filename': 'f.txt', 'content': 'x'}},
        ]})
        change = planner.plan(config, snapshot).get('local_file.f')
        assert change.action == CREATE
        assert change.reasons == ['resource no longer exists']

    def test_drift_detected_by_refresh(self, tmp_path, snapshot):
        (tmp_path / 'f.txt').write_text('edited by hand')
        _stored(snapshot, 'local_file.f', {'filename': 'f.txt', 'content': 'x', 'id': 'abc'})
        config = Configuration.from_dict({'resources': [
            {'type': 'local_file', 'name': 'f', 'attributes': {'filename': 'f.txt', 'content': 'x'}},
        ]})
        change = Planner(ProviderRegistry(tmp_path)).plan(config, snapshot).get('local_file.f')
        assert change.action == REPLACE
        assert change.changed == ['content']
        assert change.before['content'] == 'edited by hand'

    def test_no_refresh_skips_provider_read(self, tmp_path, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '1'})
        with patch.object(NullResourceProvider, 'read') as mock_read:
            Planner(ProviderRegistry(tmp_path), refresh=False).plan(_config(_null('a')), snapshot)
        mock_read.assert_not_called()

    def test_unknown_resource_type(self, planner):
        config = Configuration.from_dict({'resources': [{'type': 'aws_instance', 'name': 'web'}]})
        with pytest.raises(ConfigError, match='aws_instance'):
            planner.plan(config, None)


class TestReferences:
    """Tests for values that are only known after apply."""

    def test_reference_to_new_resource_is_unknown(self, planner):
        config = _config(_null('a'), _null('b', triggers={'a_id': '${null_resource.a.id}'}))
        change = planner.plan(config, None).get('null_resource.b')
        assert change.after['triggers']['a_id'] is UNKNOWN
        assert change.attributes == {'triggers': {'a_id': '${null_resource.a.id}'}}
        assert change.dependencies == ['null_resource.a']

    def test_reference_to_stored_resource_resolves(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '42'})
        _stored(snapshot, 'null_resource.b', {'triggers': {'a_id': '42'}, 'id': '7'}, ['null_resource.a'])
        config = _config(_null('a'), _null('b', triggers={'a_id': '${null_resource.a.id}'}))
        plan = planner.plan(config, snapshot)
        assert plan.get('null_resource.b').action == NOOP
        assert plan.get('null_resource.b').after == {'triggers': {'a_id': '42'}}

    def test_replacement_cascades_through_reference(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'triggers': {'v': '1'}, 'id': '42'})
        _stored(snapshot, 'null_resource.b', {'triggers': {'a_id': '42'}, 'id': '7'}, ['null_resource.a'])
        config = _config(
            _null('a', triggers={'v': '2'}),
            _null('b', triggers={'a_id': '${null_resource.a.id}'}),
        )
        plan = planner.plan(config, snapshot)
        assert plan.get('null_resource.a').action == REPLACE
        assert plan.get('null_resource.b').action == REPLACE

    def test_unknown_attribute(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '42'})
        config = _config(_null('a'), _null('b', triggers={'x': '${null_resource.a.nope}'}))
        with pytest.raises(ConfigError, match="no attribute 'nope'"):
            planner.plan(config, snapshot)

    def test_to_dict_marks_unknown(self, planner):
        config = _config(_null('a'), _null('b', triggers={'a_id': '${null_resource.a.id}'}))
        data = planner.plan(config, None).to_dict()
        b = next(c for c in data['changes'] if c['key'] == 'null_resource.b')
        assert b['after']['triggers']['a_id'] == '(known after apply)'


class TestOrdering:
    """Tests for the order of the change list."""

    def test_destroys_first_in_reverse_order(self, planner, snapshot):
        _stored(snapshot, 'null_resource.c', {'id': '3'})
        _stored(snapshot, 'null_resource.b', {'id': '2'}, ['null_resource.c'])
        _stored(snapshot, 'null_resource.a', {'id': '1'}, ['null_resource.b'])
        plan = planner.plan(_config(_null('new')), snapshot)
        assert [(c.key, c.action) for c in plan.changes] == [
            ('null_resource.a', DESTROY),
            ('null_resource.b', DESTROY),
            ('null_resource.c', DESTROY),
            ('null_resource.new', CREATE),
        ]

    def test_destroy_order_is_reverse_of_create_order(self, planner, snapshot):
        config = _config(
            _null('A', depends_on=['null_resource.B']),
            _null('B', depends_on=['null_resource.C']),
            _null('C'),
        )
        created = [c.key for c in planner.plan(config, None).changes]
        for i, key in enumerate(created):
            _stored(snapshot, key, {'id': str(i)}, config.get(key).dependencies)
        destroyed = [c.key for c in planner.plan(None, snapshot, destroy=True).changes]
        assert created == ['null_resource.C', 'null_resource.B', 'null_resource.A']
        assert destroyed == list(reversed(created))

    def test_cycle(self, planner):
        config = _config(
            _null('A', depends_on=['null_resource.B']),
            _null('B', depends_on=['null_resource.A']),
        )
        with pytest.raises(CycleDetected):
            planner.plan(config, None)

    def test_summary(self, planner, snapshot):
        _stored(snapshot, 'null_resource.r', {'triggers': {'v': '1'}, 'id': '1'})
        _stored(snapshot, 'null_resource.u', {'description': 'a', 'id': '2'})
        _stored(snapshot, 'null_resource.d', {'id': '3'})
        config = _config(
            _null('r', triggers={'v': '2'}),
            _null('u', description='b'),
            _null('n'),
        )
        assert planner.plan(config, snapshot).summary() == {'add': 2, 'change': 1, 'destroy': 2}


class TestDestroyAndTargets:
    """Tests for destroy mode and --target selection."""

    def test_destroy_mode(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '1'})
        _stored(snapshot, 'null_resource.b', {'id': '2'}, ['null_resource.a'])
        plan = planner.plan(_config(_null('a'), _null('b')), snapshot, destroy=True)
        assert plan.destroy is True
        assert [(c.key, c.action) for c in plan.changes] == [
            ('null_resource.b', DESTROY),
            ('null_resource.a', DESTROY),
        ]
        assert plan.get('null_resource.a').reasons == ['destroy requested']

    def test_destroy_with_no_state(self, planner):
        plan = planner.plan(None, None, destroy=True)
        assert plan.changes == []

    def test_target_includes_dependencies(self, planner):
        config = _config(
            _null('a'),
            _null('b', depends_on=['null_resource.a']),
            _null('c'),
        )
        plan = planner.plan(config, None, targets=['null_resource.b'])
        assert [c.key for c in plan.changes] == ['null_resource.a', 'null_resource.b']

    def test_destroy_target_includes_dependents(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '1'})
        _stored(snapshot, 'null_resource.b', {'id': '2'}, ['null_resource.a'])
        _stored(snapshot, 'null_resource.c', {'id': '3'})
        plan = planner.plan(None, snapshot, destroy=True, targets=['null_resource.a'])
        assert [c.key for c in plan.changes] == ['null_resource.b', 'null_resource.a']

    def test_unknown_target(self, planner):
        with pytest.raises(ConfigError, match='Target'):
            planner.plan(_config(_null('a')), None, targets=['null_resource.zzz'])

    def test_stale_stored_dependencies_ignored(self, planner, snapshot):
        _stored(snapshot, 'null_resource.a', {'id': '1'}, ['null_resource.long_gone'])
        plan = planner.plan(None, snapshot, destroy=True)
        assert plan.get('null_resource.a').dependencies == []
