"""
BackupPlan custom resources.

Every plan kind (consul, mongodb, ...) is a subclass of ``BackupPlan``.
The reconciler only talks to the capability methods of the base class and
looks kinds up in a ``PlanRegistry``, so adding a kind means adding a
subclass and registering it.
"""

import copy
import json
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict, Iterator, List, Optional, Type

from backup_operator.config import OperatorConfig, get_config


class PlanValidationError(ValueError):
    """Raised when a plan spec cannot be turned into running state."""


def _json_field(name: str, default: Any = None, nested: Optional[type] = None, default_factory=None):
    """Dataclass field serialized under the camelCase key ``name``"""
    metadata = {'json': name, 'nested': nested}
    if default_factory is not None:
        return field(default_factory=default_factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def spec_to_dict(obj) -> Dict[str, Any]:
    """Serialize a spec dataclass, dropping unset (None) values"""
    result = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        if is_dataclass(value):
            value = spec_to_dict(value)
        else:
            value = copy.deepcopy(value)
        result[f.metadata.get('json', f.name)] = value
    return result


def spec_from_dict(cls, data: Optional[Dict[str, Any]]):
    """Inverse of spec_to_dict; unknown keys are ignored"""
    data = data or {}
    kwargs = {}
    for f in fields(cls):
        key = f.metadata.get('json', f.name)
        if key not in data or data[key] is None:
            continue
        value = data[key]
        nested = f.metadata.get('nested')
        if nested is not None:
            value = spec_from_dict(nested, value)
        else:
            value = copy.deepcopy(value)
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass
class S3Spec:
    endpoint: str = _json_field('endpoint', '')
    bucket: str = _json_field('bucket', '')
    use_ssl: bool = _json_field('useSSL', False)
    insecure_skip_verify: bool = _json_field('insecureSkipVerify', False)
    access_key_id: str = _json_field('accessKeyID', '')
    secret_access_key: str = _json_field('secretAccessKey', '')
    encryption_key: Optional[str] = _json_field('encryptionKey')
    encryption_algorithm: Optional[str] = _json_field('encryptionAlgorithm')
    part_size: int = _json_field('partSize', 0)


@dataclass
class DestinationSpec:
    s3: Optional[S3Spec] = _json_field('s3', nested=S3Spec)


@dataclass
class PushgatewaySpec:
    url: str = _json_field('url', '')


@dataclass
class BackupPlanSpec:
    """Fields shared by every plan kind"""
    schedule: str = _json_field('schedule', '')
    active_deadline_seconds: int = _json_field('activeDeadlineSeconds', 0)
    retention: int = _json_field('retention', 0)
    destination: Optional[DestinationSpec] = _json_field('destination', nested=DestinationSpec)
    pushgateway: Optional[PushgatewaySpec] = _json_field('pushgateway', nested=PushgatewaySpec)
    env: List[Dict[str, Any]] = _json_field('env', default_factory=list)


@dataclass
class ConsulBackupPlanSpec(BackupPlanSpec):
    address: str = _json_field('address', '')


@dataclass
class MongoDBBackupPlanSpec(BackupPlanSpec):
    uri: str = _json_field('uri', '')


@dataclass
class ObjectReference:
    namespace: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {'namespace': self.namespace, 'name': self.name}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['ObjectReference']:
        if not data:
            return None
        return cls(namespace=data.get('namespace', ''), name=data.get('name', ''))


@dataclass
class PlanStatus:
    """References to the resources owned by a plan"""
    secret: Optional[ObjectReference] = None
    cron_job: Optional[ObjectReference] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        if self.secret is not None:
            result['secret'] = self.secret.to_dict()
        if self.cron_job is not None:
            result['cronJob'] = self.cron_job.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PlanStatus':
        data = data or {}
        return cls(
            secret=ObjectReference.from_dict(data.get('secret')),
            cron_job=ObjectReference.from_dict(data.get('cronJob')),
        )


class BackupPlan:
    """
    Base class of all plan kinds.

    Subclasses set ``kind``, ``plural``, ``worker_command`` and
    ``spec_class``. The raw metadata of the custom resource is kept as is,
    so a plan read from the cluster can be written back with its
    resourceVersion intact.
    """

    kind: str = ''
    plural: str = ''
    worker_command: str = ''
    spec_class: Type[BackupPlanSpec] = BackupPlanSpec

    def __init__(
        self,
        metadata: Optional[Dict[str, Any]] = None,
        spec: Optional[BackupPlanSpec] = None,
        status: Optional[PlanStatus] = None,
        api_version: Optional[str] = None,
    ):
        self.metadata = metadata if metadata is not None else {}
        self.spec = spec if spec is not None else self.spec_class()
        self.status = status if status is not None else PlanStatus()
        self.api_version = api_version or get_config().api_group_version
        # Body as read from the cluster, None for plans built in memory
        self.body: Optional[Dict[str, Any]] = None

    @property
    def namespace(self) -> str:
        return self.metadata.get('namespace', '')

    @property
    def name(self) -> str:
        return self.metadata.get('name', '')

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get('uid')

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get('deletionTimestamp')

    def get_kind(self) -> str:
        return self.kind

    def get_spec(self) -> BackupPlanSpec:
        return self.spec

    def get_status(self) -> PlanStatus:
        return self.status

    def set_status(self, status: PlanStatus) -> None:
        self.status = status

    def get_finalizers(self) -> List[str]:
        return list(self.metadata.get('finalizers') or [])

    def set_finalizers(self, finalizers: List[str]) -> None:
        self.metadata['finalizers'] = list(finalizers)

    def new(self) -> 'BackupPlan':
        """Zero-value plan of the same kind"""
        return type(self)()

    def validate(self) -> None:
        """
        Check the parts of the spec the operator depends on.

        Raises:
            PlanValidationError: If the plan cannot be scheduled
        """
        spec = self.spec
        if not spec.schedule:
            raise PlanValidationError(f"{self.kind} {self.name}: schedule is required")
        if spec.retention < 0:
            raise PlanValidationError(f"{self.kind} {self.name}: retention must not be negative")
        if spec.active_deadline_seconds < 0:
            raise PlanValidationError(
                f"{self.kind} {self.name}: activeDeadlineSeconds must not be negative"
            )
        if spec.destination is None or spec.destination.s3 is None:
            raise PlanValidationError(f"{self.kind} {self.name}: an s3 destination is required")
        if not spec.destination.s3.bucket:
            raise PlanValidationError(f"{self.kind} {self.name}: destination bucket is required")

    def to_manifest(self) -> Dict[str, Any]:
        manifest = {
            'apiVersion': self.api_version,
            'kind': self.kind,
            'metadata': copy.deepcopy(self.metadata),
            'spec': spec_to_dict(self.spec),
        }
        status = self.status.to_dict()
        if status:
            manifest['status'] = status
        return manifest

    def manifest_with_finalizers(self, finalizers: List[str]) -> Dict[str, Any]:
        """
        Body as read from the cluster with only its finalizers replaced.

        The spec is written back exactly as it was read, including fields
        unknown to the spec classes and fields left unset by the user.
        """
        manifest = copy.deepcopy(self.body) if self.body is not None else self.to_manifest()
        manifest.setdefault('metadata', {})['finalizers'] = list(finalizers)
        return manifest

    @classmethod
    def from_manifest(cls, body: Dict[str, Any]) -> 'BackupPlan':
        plan = cls(
            metadata=copy.deepcopy(dict(body.get('metadata') or {})),
            spec=spec_from_dict(cls.spec_class, body.get('spec')),
            status=PlanStatus.from_dict(body.get('status')),
            api_version=body.get('apiVersion'),
        )
        plan.body = copy.deepcopy(dict(body))
        return plan

    def serialize_spec(self) -> str:
        """Canonical JSON of the spec; identical specs give identical text"""
        return json.dumps(spec_to_dict(self.spec), sort_keys=True, separators=(',', ':'))


class ConsulBackupPlan(BackupPlan):
    kind = 'ConsulBackupPlan'
    plural = 'consulbackupplans'
    worker_command = 'consul'
    spec_class = ConsulBackupPlanSpec

    def validate(self) -> None:
        super().validate()
        if not self.spec.address:
            raise PlanValidationError(f"{self.kind} {self.name}: address is required")


class MongoDBBackupPlan(BackupPlan):
    kind = 'MongoDBBackupPlan'
    plural = 'mongodbbackupplans'
    worker_command = 'mongodb'
    spec_class = MongoDBBackupPlanSpec

    def validate(self) -> None:
        super().validate()
        if not self.spec.uri:
            raise PlanValidationError(f"{self.kind} {self.name}: uri is required")


class PlanRegistry:
    """Explicit mapping from plan kind to plan class"""

    def __init__(self, plan_classes: List[Type[BackupPlan]], config: Optional[OperatorConfig] = None):
        self.config = config or get_config()
        self._classes: Dict[str, Type[BackupPlan]] = {}
        for plan_class in plan_classes:
            if plan_class.kind in self._classes:
                raise ValueError(f"Plan kind {plan_class.kind} registered twice")
            self._classes[plan_class.kind] = plan_class

    def __iter__(self) -> Iterator[Type[BackupPlan]]:
        return iter(self._classes.values())

    def __contains__(self, kind: str) -> bool:
        return kind in self._classes

    def kinds(self) -> List[str]:
        return list(self._classes)

    def get(self, kind: str) -> Type[BackupPlan]:
        try:
            return self._classes[kind]
        except KeyError:
            raise KeyError(f"Unknown plan kind: {kind}") from None

    def new(self, kind: str) -> BackupPlan:
        return self.get(kind)(api_version=self.config.api_group_version)

    def from_manifest(self, body: Dict[str, Any]) -> BackupPlan:
        return self.get(body['kind']).from_manifest(body)


def default_registry(config: Optional[OperatorConfig] = None) -> PlanRegistry:
    return PlanRegistry([ConsulBackupPlan, MongoDBBackupPlan], config=config)
