"""
Cluster store: create/get/update/delete of namespaced objects as plain dicts.

The reconciler only depends on ``ClusterStore``; ``KubernetesClusterStore``
is the implementation backed by the kubernetes client.
"""

import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

from kubernetes import client, config
from kubernetes.client import ApiException

logger = logging.getLogger(__name__)


class ClusterStoreError(RuntimeError):
    """Raised when a cluster API call fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterStoreError):
    """Raised when the requested object does not exist."""


class ConflictError(ClusterStoreError):
    """Raised on concurrent modification or when creating an existing object."""


class ClusterStore(ABC):
    @abstractmethod
    def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, kind: str, namespace: str, name: str) -> None:
        ...


@dataclass(frozen=True)
class CustomResource:
    group: str
    version: str
    plural: str


@contextlib.contextmanager
def _translate_api_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ApiException as error:
        reason = (error.reason or '').strip() or error.__class__.__name__
        message = f"Unable to {operation}: {error.status} {reason}"
        if error.status == 404:
            raise NotFoundError(message, status=404) from error
        if error.status == 409:
            raise ConflictError(message, status=409) from error
        raise ClusterStoreError(message, status=error.status) from error


def load_api_client() -> client.ApiClient:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.ApiClient()


class KubernetesClusterStore(ClusterStore):
    """
    Secrets go through CoreV1Api, CronJobs through BatchV1Api and every kind
    listed in ``custom_resources`` through CustomObjectsApi.
    """

    def __init__(
        self,
        custom_resources: Dict[str, CustomResource],
        api_client: Optional[client.ApiClient] = None,
    ):
        self.api_client = api_client or client.ApiClient()
        self.core_api = client.CoreV1Api(self.api_client)
        self.batch_api = client.BatchV1Api(self.api_client)
        self.custom_api = client.CustomObjectsApi(self.api_client)
        self.custom_resources = dict(custom_resources)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _custom_resource(self, kind: str) -> CustomResource:
        try:
            return self.custom_resources[kind]
        except KeyError:
            raise ClusterStoreError(f"Unsupported kind: {kind}") from None

    @staticmethod
    def _identity(obj: Dict[str, Any]) -> Tuple[str, str, str]:
        metadata = obj.get('metadata') or {}
        return obj['kind'], metadata.get('namespace', ''), metadata['name']

    def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        with _translate_api_errors(f"get {kind} {namespace}/{name}"):
            if kind == 'Secret':
                result = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
            elif kind == 'CronJob':
                result = self.batch_api.read_namespaced_cron_job(name=name, namespace=namespace)
            else:
                resource = self._custom_resource(kind)
                result = self.custom_api.get_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name,
                )
        return self._to_dict(result)

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, namespace, name = self._identity(obj)
        with _translate_api_errors(f"create {kind} {namespace}/{name}"):
            if kind == 'Secret':
                result = self.core_api.create_namespaced_secret(namespace=namespace, body=obj)
            elif kind == 'CronJob':
                result = self.batch_api.create_namespaced_cron_job(namespace=namespace, body=obj)
            else:
                resource = self._custom_resource(kind)
                result = self.custom_api.create_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    body=obj,
                )
        return self._to_dict(result)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, namespace, name = self._identity(obj)
        with _translate_api_errors(f"update {kind} {namespace}/{name}"):
            if kind == 'Secret':
                result = self.core_api.replace_namespaced_secret(name=name, namespace=namespace, body=obj)
            elif kind == 'CronJob':
                result = self.batch_api.replace_namespaced_cron_job(name=name, namespace=namespace, body=obj)
            else:
                resource = self._custom_resource(kind)
                result = self.custom_api.replace_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name,
                    body=obj,
                )
        return self._to_dict(result)

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, namespace, name = self._identity(obj)
        resource = self._custom_resource(kind)
        with _translate_api_errors(f"update status of {kind} {namespace}/{name}"):
            result = self.custom_api.replace_namespaced_custom_object_status(
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
                name=name,
                body=obj,
            )
        return self._to_dict(result)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with _translate_api_errors(f"delete {kind} {namespace}/{name}"):
            if kind == 'Secret':
                self.core_api.delete_namespaced_secret(name=name, namespace=namespace)
            elif kind == 'CronJob':
                # Background propagation also removes the Jobs spawned so far
                self.batch_api.delete_namespaced_cron_job(
                    name=name,
                    namespace=namespace,
                    propagation_policy='Background',
                )
            else:
                resource = self._custom_resource(kind)
                self.custom_api.delete_namespaced_custom_object(
                    group=resource.group,
                    version=resource.version,
                    namespace=namespace,
                    plural=resource.plural,
                    name=name,
                )
        logger.debug(f"Deleted {kind} {namespace}/{name}")
