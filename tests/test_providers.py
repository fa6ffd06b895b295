"""Tests for providers package (catalog and local provider)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from providers import LocalProvider, ResourceProvider, get_provider
from providers.catalog import CATALOG, get_type, list_types
from stack_opr.values import Secret


class TestCatalog:
    """Tests for the resource type catalog."""

    def test_airflow_types_present(self):
        assert len(list_types()) == 16
        assert 'awsx:ecr/image' in CATALOG
        assert get_type('aws:ec2/subnet').replace_on >= {'cidrBlock', 'vpcId'}

    def test_unknown_type(self):
        with pytest.raises(KeyError):
            get_type('aws:s3/bucket')

    def test_db_instance_outputs(self):
        outputs = get_type('aws:rds/instance').computed('db', 'db-abc', {'engine': 'postgres'})
        assert outputs['port'] == 5432
        assert outputs['endpoint'] == f"{outputs['address']}:5432"

    def test_cache_nodes(self):
        outputs = get_type('aws:elasticache/cluster').computed('c', 'c-1', {'numCacheNodes': 2})
        assert [n['id'] for n in outputs['cacheNodes']] == ['0001', '0002']


class TestLocalProvider:
    """Tests for the file-backed simulated provider."""

    def test_satisfies_protocol(self):
        assert isinstance(LocalProvider(), ResourceProvider)

    def test_create_assigns_id_and_outputs(self):
        provider = LocalProvider()
        result = provider.create('aws:ec2/subnet', 'subnet-a', {'vpcId': 'vpc-1', 'cidrBlock': '10.0.0.0/24'})
        assert result.success
        assert result.physical_id.startswith('subnet-')
        assert len(result.physical_id) == len('subnet-') + 17
        assert result.outputs['id'] == result.physical_id
        assert result.outputs['cidrBlock'] == '10.0.0.0/24'
        assert result.outputs['urn'] == 'urn:airstack::aws:ec2/subnet::subnet-a'

    def test_invalid_cidr(self):
        result = LocalProvider().create('aws:ec2/subnet', 's', {'vpcId': 'v', 'cidrBlock': '10.0.0.0/99'})
        assert not result.success
        assert 'cidrBlock' in result.message

    def test_empty_required_value(self):
        result = LocalProvider().create('aws:rds/subnetGroup', 'g', {'subnetIds': []})
        assert not result.success
        assert 'subnetIds' in result.message

    def test_update_and_delete(self):
        provider = LocalProvider()
        created = provider.create('aws:ecr/repository', 'repo', {})
        updated = provider.update('aws:ecr/repository', created.physical_id, {}, {'forceDelete': True})
        assert updated.success
        assert updated.outputs['forceDelete'] is True
        assert provider.delete('aws:ecr/repository', created.physical_id, {}).success
        assert provider.physical_ids == []

    def test_missing_resource_reports_not_found(self):
        provider = LocalProvider()
        assert provider.read('aws:ecr/repository', 'repo-gone', {}).not_found
        assert provider.update('aws:ecr/repository', 'repo-gone', {}, {}).not_found
        assert provider.delete('aws:ecr/repository', 'repo-gone', {}).not_found

    def test_inventory_persisted_without_plaintext(self, tmp_path):
        path = tmp_path / 'inventory.json'
        provider = LocalProvider(path)
        result = provider.create('aws:rds/instance', 'db', {
            'engine': 'postgres', 'instanceClass': 'db.t3.micro',
            'allocatedStorage': 20, 'password': Secret('hunter2'),
        })
        assert result.success
        assert 'hunter2' not in path.read_text()

        reloaded = LocalProvider(path)
        read = reloaded.read('aws:rds/instance', result.physical_id, {})
        assert read.success
        assert read.outputs['endpoint'] == result.outputs['endpoint']
        assert json.loads(path.read_text())[result.physical_id]['type'] == 'aws:rds/instance'


class TestGetProvider:
    """Tests for provider lookup."""

    def test_local(self, tmp_path):
        provider = get_provider('local', 'demo', state_dir=tmp_path)
        assert provider.inventory_path == tmp_path / 'demo' / 'local-provider.json'

    def test_unknown(self):
        with pytest.raises(ConfigError, match="Unknown provider 'aws'"):
            get_provider('aws', 'demo')
