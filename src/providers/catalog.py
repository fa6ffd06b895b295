"""Resource types used by the Airflow stack.

Each entry names the inputs a declaration must carry, the inputs whose
change forces replacement, and the outputs the provider computes when the
resource is created or updated.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable

ACCOUNT_ID = '123456789012'
REGION = 'us-east-1'


def _suffix(*parts: Any, length: int = 8) -> str:
    text = json.dumps([str(p) for p in parts])
    return hashlib.sha256(text.encode('utf-8')).hexdigest()[:length]


def _arn(service: str, resource: str) -> str:
    return f'arn:aws:{service}:{REGION}:{ACCOUNT_ID}:{resource}'


@dataclass(frozen=True)
class ResourceType:
    """Provider-side description of one resource type.

    Attributes:
        token: Type token used in stack files (e.g. aws:rds/instance)
        id_prefix: Prefix for generated physical ids
        required: Inputs that must be declared
        replace_on: Inputs whose change forces delete-then-create
        computed: (name, physical_id, inputs) -> provider-computed outputs
    """
    token: str
    id_prefix: str
    required: frozenset = field(default_factory=frozenset)
    replace_on: frozenset = field(default_factory=frozenset)
    computed: Callable[[str, str, dict], dict] = lambda name, pid, inputs: {}


def _vpc(name: str, pid: str, inputs: dict) -> dict:
    return {
        'arn': _arn('ec2', f'vpc/{pid}'),
        'cidrBlock': '172.31.0.0/16',
        'defaultSecurityGroupId': f'sg-{_suffix(pid, "sg")}',
    }


def _subnet(name: str, pid: str, inputs: dict) -> dict:
    return {'arn': _arn('ec2', f'subnet/{pid}')}


def _role(name: str, pid: str, inputs: dict) -> dict:
    return {'arn': f'arn:aws:iam::{ACCOUNT_ID}:role/{pid}', 'name': pid}


def _cluster(name: str, pid: str, inputs: dict) -> dict:
    return {'arn': _arn('ecs', f'cluster/{pid}'), 'name': pid}


def _named(service: str, kind: str) -> Callable[[str, str, dict], dict]:
    def _computed(name: str, pid: str, inputs: dict) -> dict:
        return {'arn': _arn(service, f'{kind}:{pid}'), 'name': pid}
    return _computed


def _db_instance(name: str, pid: str, inputs: dict) -> dict:
    address = f'{pid}.{_suffix(pid, length=12)}.{REGION}.rds.amazonaws.com'
    port = 5432 if inputs.get('engine') == 'postgres' else 3306
    return {
        'arn': _arn('rds', f'db:{pid}'),
        'address': address,
        'port': port,
        'endpoint': f'{address}:{port}',
    }


def _cache_cluster(name: str, pid: str, inputs: dict) -> dict:
    count = int(inputs.get('numCacheNodes', 1))
    nodes = [
        {
            'id': f'{i + 1:04d}',
            'address': f'{pid}.{_suffix(pid, length=6)}.{i + 1:04d}.use1.cache.amazonaws.com',
            'port': 6379,
        }
        for i in range(count)
    ]
    return {'arn': _arn('elasticache', f'cluster:{pid}'), 'cacheNodes': nodes}


def _load_balancer(name: str, pid: str, inputs: dict) -> dict:
    return {
        'arn': _arn('elasticloadbalancing', f'loadbalancer/app/{pid}/{_suffix(pid, length=16)}'),
        'dnsName': f'{pid}-{_suffix(pid, length=9)}.{REGION}.elb.amazonaws.com',
        'zoneId': 'Z35SXDOTRQ7X7K',
    }


def _target_group(name: str, pid: str, inputs: dict) -> dict:
    arn_suffix = f'targetgroup/{pid}/{_suffix(pid, length=16)}'
    return {'arn': _arn('elasticloadbalancing', arn_suffix), 'arnSuffix': arn_suffix, 'name': pid}


def _listener(name: str, pid: str, inputs: dict) -> dict:
    lb = str(inputs.get('loadBalancerArn', '')).split('loadbalancer/', 1)[-1]
    return {'arn': _arn('elasticloadbalancing', f'listener/{lb}/{pid}')}


def _repository(name: str, pid: str, inputs: dict) -> dict:
    return {
        'arn': _arn('ecr', f'repository/{pid}'),
        'registryId': ACCOUNT_ID,
        'repositoryUrl': f'{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com/{pid}',
    }


def _image(name: str, pid: str, inputs: dict) -> dict:
    digest = hashlib.sha256(json.dumps(
        {k: str(v) for k, v in sorted(inputs.items())}).encode('utf-8')).hexdigest()
    return {'imageUri': f"{inputs.get('repositoryUrl')}@sha256:{digest}"}


def _task_definition(name: str, pid: str, inputs: dict) -> dict:
    family = inputs.get('family', pid)
    return {
        'arn': _arn('ecs', f'task-definition/{family}:{pid.rsplit("-", 1)[-1]}'),
        'revision': int(_suffix(pid, length=4), 16) % 100 + 1,
    }


def _service(name: str, pid: str, inputs: dict) -> dict:
    return {'arn': _arn('ecs', f'service/{pid}'), 'name': pid}


_TYPES = [
    ResourceType('aws:ec2/defaultVpc', 'vpc', computed=_vpc),
    ResourceType(
        'aws:ec2/subnet', 'subnet',
        required=frozenset({'vpcId', 'cidrBlock'}),
        replace_on=frozenset({'vpcId', 'cidrBlock', 'availabilityZone'}),
        computed=_subnet,
    ),
    ResourceType(
        'aws:iam/role', 'role',
        required=frozenset({'assumeRolePolicy'}),
        replace_on=frozenset({'name', 'path'}),
        computed=_role,
    ),
    ResourceType('aws:ecs/cluster', 'cluster', replace_on=frozenset({'name'}), computed=_cluster),
    ResourceType(
        'aws:ecs/clusterCapacityProviders', 'ccp',
        required=frozenset({'clusterName'}),
        replace_on=frozenset({'clusterName'}),
    ),
    ResourceType(
        'aws:rds/subnetGroup', 'dbsubnet',
        required=frozenset({'subnetIds'}),
        replace_on=frozenset({'name'}),
        computed=_named('rds', 'subgrp'),
    ),
    ResourceType(
        'aws:rds/instance', 'db',
        required=frozenset({'engine', 'instanceClass', 'allocatedStorage'}),
        replace_on=frozenset({'engine', 'dbName', 'username', 'identifier', 'availabilityZone'}),
        computed=_db_instance,
    ),
    ResourceType(
        'aws:elasticache/subnetGroup', 'cachesubnet',
        required=frozenset({'subnetIds'}),
        replace_on=frozenset({'name'}),
        computed=_named('elasticache', 'subnetgroup'),
    ),
    ResourceType(
        'aws:elasticache/cluster', 'cache',
        required=frozenset({'engine', 'nodeType', 'numCacheNodes'}),
        replace_on=frozenset({'engine', 'subnetGroupName', 'clusterId'}),
        computed=_cache_cluster,
    ),
    ResourceType(
        'aws:lb/loadBalancer', 'lb',
        required=frozenset({'subnets'}),
        replace_on=frozenset({'name', 'internal', 'loadBalancerType'}),
        computed=_load_balancer,
    ),
    ResourceType(
        'aws:lb/targetGroup', 'tg',
        required=frozenset({'port', 'protocol', 'vpcId'}),
        replace_on=frozenset({'name', 'port', 'protocol', 'vpcId', 'targetType'}),
        computed=_target_group,
    ),
    ResourceType(
        'aws:lb/listener', 'listener',
        required=frozenset({'loadBalancerArn', 'port', 'defaultActions'}),
        replace_on=frozenset({'loadBalancerArn'}),
        computed=_listener,
    ),
    ResourceType('aws:ecr/repository', 'repo', replace_on=frozenset({'name'}), computed=_repository),
    ResourceType(
        'awsx:ecr/image', 'image',
        required=frozenset({'repositoryUrl', 'path'}),
        replace_on=frozenset({'repositoryUrl', 'path', 'dockerfile', 'args'}),
        computed=_image,
    ),
    ResourceType(
        'aws:ecs/taskDefinition', 'taskdef',
        required=frozenset({'family', 'containerDefinitions'}),
        replace_on=frozenset({
            'family', 'containerDefinitions', 'cpu', 'memory', 'networkMode',
            'requiresCompatibilities', 'taskRoleArn', 'executionRoleArn',
        }),
        computed=_task_definition,
    ),
    ResourceType(
        'aws:ecs/service', 'svc',
        required=frozenset({'cluster', 'taskDefinition'}),
        replace_on=frozenset({'cluster', 'name', 'launchType'}),
        computed=_service,
    ),
]

CATALOG: dict[str, ResourceType] = {t.token: t for t in _TYPES}


def get_type(token: str) -> ResourceType:
    """Look up a resource type.

    Raises:
        KeyError: If the type is not in the catalog
    """
    return CATALOG[token]


def list_types() -> list[str]:
    return sorted(CATALOG)
