"""
Shared pytest fixtures for backup-operator tests.

This module provides:
- An operator configuration isolated from the process environment
- An in-memory cluster store mimicking the Kubernetes API semantics the
  reconciler relies on (resource versions, finalizers, 404/409 errors)
- Factories for BackupPlans of every kind
"""

import copy
import itertools
import uuid
from datetime import datetime, timezone

import pytest

import backup_operator.config as config_module
from backup_operator.config import OperatorConfig
from backup_operator.plans import (
    ConsulBackupPlan,
    ConsulBackupPlanSpec,
    DestinationSpec,
    MongoDBBackupPlan,
    MongoDBBackupPlanSpec,
    PushgatewaySpec,
    S3Spec,
    default_registry,
)
from backup_operator.reconciler import BackupPlanReconciler
from backup_operator.store import ClusterStore, ConflictError, NotFoundError

ACCESS_KEY_ID = 'TESTACCESSKEY'
SECRET_ACCESS_KEY = 'TESTSECRETKEY'


class InMemoryClusterStore(ClusterStore):
    """
    Cluster store keeping objects in a dict.

    Deleting an object with finalizers only sets its deletionTimestamp; it
    disappears once an update clears the finalizers, like on a real cluster.
    Every write is appended to ``operations`` as (verb, kind, name).
    """

    def __init__(self):
        self.objects = {}
        self.operations = []
        self.failures = {}
        self._versions = itertools.count(1)

    @staticmethod
    def _key(obj):
        metadata = obj['metadata']
        return obj['kind'], metadata.get('namespace', ''), metadata['name']

    def fail(self, verb, kind, error):
        """Make the next ``verb`` on ``kind`` raise ``error``."""
        self.failures[(verb, kind)] = error

    def _check_failure(self, verb, kind):
        error = self.failures.pop((verb, kind), None)
        if error is not None:
            raise error

    def _stamp(self, obj):
        obj['metadata']['resourceVersion'] = str(next(self._versions))

    def get(self, kind, namespace, name):
        self._check_failure('get', kind)
        try:
            return copy.deepcopy(self.objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", status=404) from None

    def create(self, obj):
        self._check_failure('create', obj['kind'])
        key = self._key(obj)
        if key in self.objects:
            raise ConflictError(f"{key} already exists", status=409)
        stored = copy.deepcopy(obj)
        stored['metadata'].setdefault('uid', str(uuid.uuid4()))
        self._stamp(stored)
        self.objects[key] = stored
        self.operations.append(('create', key[0], key[2]))
        return copy.deepcopy(stored)

    def update(self, obj):
        self._check_failure('update', obj['kind'])
        key = self._key(obj)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{key} not found", status=404)
        version = obj['metadata'].get('resourceVersion')
        if version is not None and version != current['metadata']['resourceVersion']:
            raise ConflictError(f"{key} was modified", status=409)
        stored = copy.deepcopy(obj)
        # Status lives in its own subresource
        if 'status' in current:
            stored['status'] = current['status']
        else:
            stored.pop('status', None)
        stored['metadata']['uid'] = current['metadata']['uid']
        if current['metadata'].get('deletionTimestamp'):
            stored['metadata']['deletionTimestamp'] = current['metadata']['deletionTimestamp']
        self.operations.append(('update', key[0], key[2]))
        if stored['metadata'].get('deletionTimestamp') and not stored['metadata'].get('finalizers'):
            del self.objects[key]
            return stored
        self._stamp(stored)
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def update_status(self, obj):
        self._check_failure('update_status', obj['kind'])
        key = self._key(obj)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{key} not found", status=404)
        if obj['metadata'].get('resourceVersion') != current['metadata']['resourceVersion']:
            raise ConflictError(f"{key} was modified", status=409)
        current['status'] = copy.deepcopy(obj.get('status', {}))
        self._stamp(current)
        self.operations.append(('update_status', key[0], key[2]))
        return copy.deepcopy(current)

    def delete(self, kind, namespace, name):
        self._check_failure('delete', kind)
        key = (kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", status=404)
        self.operations.append(('delete', kind, name))
        if current['metadata'].get('finalizers'):
            current['metadata']['deletionTimestamp'] = datetime.now(timezone.utc).isoformat()
            self._stamp(current)
        else:
            del self.objects[key]

    def exists(self, kind, namespace, name):
        return (kind, namespace, name) in self.objects


@pytest.fixture(autouse=True)
def operator_config(monkeypatch):
    """Fresh configuration for every test, independent of the environment."""
    config = OperatorConfig()
    config.worker.image = 'backup-worker:test'
    monkeypatch.setattr(config_module, '_config', config)
    return config


@pytest.fixture
def registry(operator_config):
    return default_registry(operator_config)


@pytest.fixture
def store():
    return InMemoryClusterStore()


@pytest.fixture
def reconciler(store, registry, operator_config):
    return BackupPlanReconciler(store, registry, operator_config)


def new_s3_spec(**overrides):
    values = dict(
        endpoint='localhost:8000',
        bucket='test',
        use_ssl=False,
        access_key_id=ACCESS_KEY_ID,
        secret_access_key=SECRET_ACCESS_KEY,
        part_size=5242880,
    )
    values.update(overrides)
    return S3Spec(**values)


def _common_spec_values():
    return dict(
        schedule='* * * * *',
        active_deadline_seconds=3600,
        retention=2,
        destination=DestinationSpec(s3=new_s3_spec()),
        pushgateway=PushgatewaySpec(),
    )


def new_consul_plan(namespace='default', name=None, **overrides):
    values = _common_spec_values()
    values['address'] = 'localhost:8500'
    values.update(overrides)
    return ConsulBackupPlan(
        metadata={'namespace': namespace, 'name': name or f'plan-{uuid.uuid4().hex[:8]}'},
        spec=ConsulBackupPlanSpec(**values),
    )


def new_mongodb_plan(namespace='default', name=None, **overrides):
    values = _common_spec_values()
    values['uri'] = 'mongodb://localhost:27017'
    values.update(overrides)
    return MongoDBBackupPlan(
        metadata={'namespace': namespace, 'name': name or f'plan-{uuid.uuid4().hex[:8]}'},
        spec=MongoDBBackupPlanSpec(**values),
    )


PLAN_FACTORIES = {
    ConsulBackupPlan.kind: new_consul_plan,
    MongoDBBackupPlan.kind: new_mongodb_plan,
}


@pytest.fixture(params=sorted(PLAN_FACTORIES))
def plan_kind(request):
    """Runs a test once for every plan kind."""
    return request.param


@pytest.fixture
def create_plan(store, registry, plan_kind):
    """Create a plan of the current kind in the store and return it as read back."""

    def _create(**overrides):
        plan = PLAN_FACTORIES[plan_kind](**overrides)
        return registry.from_manifest(store.create(plan.to_manifest()))

    return _create
