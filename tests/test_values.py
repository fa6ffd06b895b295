"""Tests for stack_opr.values module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError, SecretStore
from stack_opr.values import (
    SECRET_MARKER,
    UNKNOWN,
    Combine,
    Deferred,
    DeferredError,
    Literal,
    OutputRegistry,
    Reference,
    SealedSecret,
    Secret,
    collect_references,
    contains_secret,
    describe,
    evaluate,
    evaluate_properties,
    parse_reference,
    parse_value,
    restore,
    snapshot,
)


class TestDeferred:
    """Tests for single-resolution deferred values."""

    def test_resolve_once(self):
        d = Deferred('x')
        assert d.is_pending
        d.resolve(1)
        assert d.is_resolved
        assert d.value == 1

    def test_settle_twice_raises(self):
        d = Deferred('x')
        d.resolve(1)
        with pytest.raises(DeferredError):
            d.resolve(2)
        with pytest.raises(DeferredError):
            d.poison('late')
        assert d.value == 1

    def test_value_before_resolution_raises(self):
        with pytest.raises(DeferredError, match='pending'):
            Deferred('x').value

    def test_poisoned_value_raises(self):
        d = Deferred.failed('boom', label='x')
        assert d.is_poisoned
        assert d.reason == 'boom'
        with pytest.raises(DeferredError):
            d.value

    def test_on_settle_after_settlement_runs_immediately(self):
        d = Deferred.of(5)
        seen = []
        d.on_settle(lambda src: seen.append(src.value))
        assert seen == [5]

    def test_map_resolves_after_source(self):
        src = Deferred('src')
        doubled = src.map(lambda v: v * 2)
        assert doubled.is_pending
        src.resolve(21)
        assert doubled.value == 42

    def test_map_exception_poisons_with_label(self):
        src = Deferred('src')
        split = src.map(lambda v: v.split(':')[3], label='host')
        src.resolve('a:b')
        assert split.is_poisoned
        assert split.reason.startswith('host:')

    def test_map_over_poisoned_is_poisoned(self):
        src = Deferred('src')
        out = src.map(lambda v: v)
        src.poison('upstream died')
        assert out.is_poisoned
        assert out.reason == 'upstream died'

    def test_all_resolves_to_list(self):
        a, b = Deferred('a'), Deferred('b')
        both = Deferred.all(a, b)
        a.resolve(1)
        assert both.is_pending
        b.resolve(2)
        assert both.value == [1, 2]

    def test_all_poisoned_when_any_input_poisoned(self):
        a, b = Deferred('a'), Deferred('b')
        both = Deferred.all(a, b)
        a.resolve(1)
        b.poison('b failed')
        assert both.is_poisoned
        assert both.reason == 'b failed'

    def test_all_first_poison_wins(self):
        a, b = Deferred('a'), Deferred('b')
        both = Deferred.all(a, b)
        a.poison('first')
        b.poison('second')
        assert both.reason == 'first'

    def test_all_of_nothing(self):
        assert Deferred.all().value == []


class TestOutputRegistry:
    """Tests for per-resource output settlement."""

    def test_settle_resolves_requested_outputs(self):
        registry = OutputRegistry()
        d = registry.output('db', 'endpoint')
        registry.settle_resource('db', {'endpoint': 'h:5432'})
        assert d.value == 'h:5432'

    def test_output_after_settlement(self):
        registry = OutputRegistry()
        registry.settle_resource('db', {'endpoint': 'h:5432'})
        assert registry.output('db', 'endpoint').value == 'h:5432'

    def test_same_deferred_returned(self):
        registry = OutputRegistry()
        assert registry.output('db', 'id') is registry.output('db', 'id')

    def test_missing_attribute_poisons(self):
        registry = OutputRegistry()
        registry.settle_resource('db', {'id': 'db-1'})
        d = registry.output('db', 'nope')
        assert d.is_poisoned
        assert "no output 'nope'" in d.reason

    def test_poison_resource(self):
        registry = OutputRegistry()
        d = registry.output('db', 'id')
        registry.poison_resource('db', 'create failed')
        assert d.is_poisoned
        assert registry.is_settled('db')

    def test_settle_twice_raises(self):
        registry = OutputRegistry()
        registry.settle_resource('db', {})
        with pytest.raises(DeferredError):
            registry.poison_resource('db', 'again')

    def test_unknown_outputs(self):
        registry = OutputRegistry()
        registry.settle_resource('db', UNKNOWN)
        assert registry.output('db', 'anything').value is UNKNOWN


class TestParseValue:
    """Tests for turning YAML values into value trees."""

    def test_plain_literal(self):
        assert parse_value(20) == Literal(20)
        assert parse_value('postgres') == Literal('postgres')

    def test_whole_reference(self):
        assert parse_value('${vpc.id}') == Reference('vpc', 'id')

    def test_reference_path(self):
        ref = parse_value('${cachecluster.cacheNodes[0].address}')
        assert ref == Reference('cachecluster', 'cacheNodes', (0, 'address'))
        assert str(ref) == '${cachecluster.cacheNodes[0].address}'

    def test_parse_reference_rejects_partial(self):
        assert parse_reference('http://${lb.dnsName}') is None

    def test_literal_list_and_mapping_stay_literal(self):
        assert parse_value(['FARGATE']) == Literal(['FARGATE'])
        assert parse_value({'base': 1}) == Literal({'base': 1})

    def test_list_with_reference_is_combine(self):
        value = parse_value(['${a.id}', '${b.id}'])
        assert isinstance(value, Combine)
        assert [r.resource for r in collect_references(value)] == ['a', 'b']

    def test_nested_mapping_references_collected(self):
        value = parse_value({'defaultActions': [{'type': 'forward', 'targetGroupArn': '${tg.arn}'}]})
        assert collect_references(value) == [Reference('tg', 'arn')]

    def test_interpolation(self):
        registry = OutputRegistry()
        value = parse_value('http://${lb.dnsName}:8080')
        registry.settle_resource('lb', {'dnsName': 'lb.example'})
        assert evaluate(value, registry).value == 'http://lb.example:8080'

    def test_secret(self):
        value = parse_value({'fn::secret': 'dbPassword'}, SecretStore({'dbPassword': 'pw'}))
        assert isinstance(value.value, Secret)
        assert value.value.reveal() == 'pw'

    def test_missing_secret(self):
        with pytest.raises(ConfigError, match='dbPassword'):
            parse_value({'fn::secret': 'dbPassword'}, SecretStore({}))

    def test_config(self):
        assert parse_value({'fn::config': 'dbName'}, config={'dbName': 'airflow'}) == Literal('airflow')

    def test_missing_config(self):
        with pytest.raises(ConfigError, match='dbName'):
            parse_value({'fn::config': 'dbName'})

    def test_unknown_function(self):
        with pytest.raises(ConfigError, match='fn::nope'):
            parse_value({'fn::nope': 1})

    def test_split_with_index(self):
        registry = OutputRegistry()
        value = parse_value({'fn::split': [':', '${db.endpoint}', 0]})
        registry.settle_resource('db', {'endpoint': 'db.host:5432'})
        assert evaluate(value, registry).value == 'db.host'

    def test_split_of_secret_keeps_each_part_secret(self):
        registry = OutputRegistry()
        value = parse_value({'fn::split': [':', '${db.credentials}']})
        registry.settle_resource('db', {'credentials': Secret('admin:pw')})
        result = evaluate(value, registry)
        assert result.is_resolved
        assert all(isinstance(part, Secret) for part in result.value)
        assert [part.reveal() for part in result.value] == ['admin', 'pw']

    def test_join_and_select(self):
        registry = OutputRegistry()
        registry.settle_resource('a', {'id': 'x'})
        joined = parse_value({'fn::join': [',', ['${a.id}', 'y']]})
        selected = parse_value({'fn::select': [1, ['${a.id}', 'y']]})
        assert evaluate(joined, registry).value == 'x,y'
        assert evaluate(selected, registry).value == 'y'

    def test_json_of_secret_stays_secret(self):
        registry = OutputRegistry()
        value = parse_value({'fn::json': [{'value': {'fn::secret': 'pw'}}]}, SecretStore({'pw': 's3cr3t'}))
        result = evaluate(value, registry).value
        assert isinstance(result, Secret)
        assert json.loads(result.reveal()) == [{'value': 's3cr3t'}]
        assert 's3cr3t' not in str(result)


class TestEvaluate:
    """Tests for evaluating value trees against the registry."""

    def test_combine_waits_for_all_inputs(self):
        registry = OutputRegistry()
        value = parse_value(['${a.id}', '${b.id}'])
        d = evaluate(value, registry)
        registry.settle_resource('a', {'id': 1})
        assert d.is_pending
        registry.settle_resource('b', {'id': 2})
        assert d.value == [1, 2]

    def test_combined_deferred_poisoned_by_one_input(self):
        """A resolves, B fails: the combination of both is poisoned."""
        registry = OutputRegistry()
        d = evaluate(parse_value(['${a.id}', '${b.id}']), registry)
        registry.settle_resource('a', {'id': 'a-1'})
        registry.poison_resource('b', 'b failed')
        assert d.is_poisoned
        assert 'b failed' in d.reason

    def test_unknown_input_skips_transform(self):
        registry = OutputRegistry()
        calls = []
        value = Combine((Reference('a', 'id'),), lambda v: calls.append(v) or v, label='echo')
        registry.settle_resource('a', UNKNOWN)
        assert evaluate(value, registry).value is UNKNOWN
        assert calls == []

    def test_evaluate_properties(self):
        registry = OutputRegistry()
        props = {'vpcId': parse_value('${vpc.id}'), 'cidrBlock': parse_value('10.0.0.0/24')}
        d = evaluate_properties(props, registry, label='subnet')
        registry.settle_resource('vpc', {'id': 'vpc-1'})
        assert d.value == {'vpcId': 'vpc-1', 'cidrBlock': '10.0.0.0/24'}

    def test_not_a_value_node(self):
        with pytest.raises(TypeError):
            evaluate('raw string', OutputRegistry())


class TestSecrets:
    """Tests for secret masking and snapshots."""

    def test_repr_and_str_masked(self):
        secret = Secret('hunter2')
        assert 'hunter2' not in repr(secret)
        assert 'hunter2' not in str(secret)
        assert 'hunter2' not in describe(Literal(secret))

    def test_snapshot_digests_secret(self):
        snap = snapshot({'password': Secret('hunter2'), 'port': 5432})
        assert snap['port'] == 5432
        assert set(snap['password']) == {SECRET_MARKER}
        assert 'hunter2' not in json.dumps(snap)

    def test_snapshot_stable_across_instances(self):
        assert snapshot(Secret('a')) == snapshot(Secret('a'))
        assert snapshot(Secret('a')) != snapshot(Secret('b'))

    def test_contains_secret(self):
        assert contains_secret([{'v': Secret('x')}])
        assert not contains_secret([{'v': 'x'}])

    def test_interpolated_secret_is_secret(self):
        registry = OutputRegistry()
        value = parse_value('postgres://u:${db.password}@h', None)
        registry.settle_resource('db', {'password': Secret('pw')})
        result = evaluate(value, registry).value
        assert isinstance(result, Secret)
        assert result.reveal() == 'postgres://u:pw@h'

    def test_restore_seals_digest_markers(self):
        restored = restore(snapshot({'password': Secret('pw'), 'port': 5432}))
        assert isinstance(restored['password'], SealedSecret)
        assert restored['password'] == Secret('pw')
        assert snapshot(restored) == snapshot({'password': Secret('pw'), 'port': 5432})
        with pytest.raises(DeferredError, match='not recoverable'):
            restored['password'].reveal()
