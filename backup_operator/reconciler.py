"""
Reconciliation of BackupPlans into their owned Secret and CronJob.

A pass always starts from what is currently in the cluster and converges it
towards the manifests rendered from the plan spec. Nothing is remembered
between passes, so running a pass twice, after a crash or on a duplicate
notification is harmless.

Life cycle of a plan::

    Absent -> Converging -> Converged -> Terminating -> Absent

The finalizer is persisted before any owned resource is created, and it is
removed only after the owned resources are gone.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from backup_operator.config import OperatorConfig, get_config
from backup_operator.plans import BackupPlan, ObjectReference, PlanRegistry, PlanStatus
from backup_operator.store import ClusterStore, NotFoundError
from backup_operator.templates import ManifestTemplates

logger = logging.getLogger(__name__)

# Top level fields that belong to the server, never to a rendered manifest
_SERVER_FIELDS = ('apiVersion', 'kind', 'metadata', 'status')


class ReconcileError(RuntimeError):
    """Raised when a plan cannot be converged."""


class OwnershipConflictError(ReconcileError):
    """Raised when a resource the plan wants to own belongs to something else."""


@dataclass
class ReconcileResult:
    requeue: bool = False


def is_owned_by(obj: Dict[str, Any], plan: BackupPlan) -> bool:
    if not plan.uid:
        return False
    references = (obj.get('metadata') or {}).get('ownerReferences') or []
    return any(ref.get('uid') == plan.uid for ref in references)


def manifest_matches(desired: Any, observed: Any) -> bool:
    """
    True when every field of desired is present with the same value in observed.

    Fields the API server adds on its own (defaults, resourceVersion, ...)
    are ignored; lists must match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(
            key in observed and manifest_matches(value, observed[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(manifest_matches(d, o) for d, o in zip(desired, observed))
    return desired == observed


def merge_manifest(observed: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Observed object with its content replaced by the desired manifest."""
    merged = copy.deepcopy(observed)
    metadata = merged.setdefault('metadata', {})
    metadata['labels'] = {**(metadata.get('labels') or {}), **desired['metadata'].get('labels', {})}
    metadata['ownerReferences'] = copy.deepcopy(desired['metadata']['ownerReferences'])
    for key, value in desired.items():
        if key not in _SERVER_FIELDS:
            merged[key] = copy.deepcopy(value)
    return merged


class BackupPlanReconciler:
    """
    Converges plans of every kind in ``registry``.

    The reconciler itself is stateless; concurrent passes for different
    plans are fine, passes for the same plan are serialized by the caller.
    """

    def __init__(
        self,
        store: ClusterStore,
        registry: PlanRegistry,
        config: Optional[OperatorConfig] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or get_config()

    def reconcile(self, kind: str, namespace: str, name: str) -> ReconcileResult:
        """
        Run one pass for the plan identified by kind, namespace and name.

        Raises:
            ClusterStoreError: On any cluster API failure; the pass should
                be retried later
            ReconcileError: If the plan conflicts with existing resources
            PlanValidationError: If the plan spec cannot be scheduled
        """
        try:
            plan = self.registry.from_manifest(self.store.get(kind, namespace, name))
        except NotFoundError:
            logger.debug(f"{kind} {namespace}/{name} is gone, nothing to do")
            return ReconcileResult()

        if plan.deletion_timestamp:
            return self._finalize(plan)

        if self.config.finalizer not in plan.get_finalizers():
            plan = self._add_finalizer(plan)

        return self._converge(plan)

    def _add_finalizer(self, plan: BackupPlan) -> BackupPlan:
        logger.info(f"Adding finalizer to {plan.kind} {plan.namespace}/{plan.name}")
        finalizers = plan.get_finalizers() + [self.config.finalizer]
        return self.registry.from_manifest(self.store.update(plan.manifest_with_finalizers(finalizers)))

    def _converge(self, plan: BackupPlan) -> ReconcileResult:
        plan.validate()

        # The CronJob mounts the Secret, so the Secret goes first
        secret = self._upsert(plan, ManifestTemplates.secret_manifest(plan, self.config))
        cron_job = self._upsert(plan, ManifestTemplates.cronjob_manifest(plan, self.config))

        status = PlanStatus(secret=_reference(secret), cron_job=_reference(cron_job))
        if plan.get_status() != status:
            logger.info(f"Updating status of {plan.kind} {plan.namespace}/{plan.name}")
            plan.set_status(status)
            self.store.update_status(plan.to_manifest())

        return ReconcileResult()

    def _upsert(self, plan: BackupPlan, desired: Dict[str, Any]) -> Dict[str, Any]:
        kind = desired['kind']
        namespace = desired['metadata']['namespace']
        name = desired['metadata']['name']

        try:
            observed = self.store.get(kind, namespace, name)
        except NotFoundError:
            logger.info(f"Creating {kind} {namespace}/{name} for {plan.kind} {plan.name}")
            return self.store.create(desired)

        if not is_owned_by(observed, plan):
            raise OwnershipConflictError(
                f"{kind} {namespace}/{name} exists but is not owned by "
                f"{plan.kind} {plan.namespace}/{plan.name}"
            )

        if manifest_matches(desired, observed):
            return observed

        logger.info(f"Updating {kind} {namespace}/{name} for {plan.kind} {plan.name}")
        return self.store.update(merge_manifest(observed, desired))

    def _finalize(self, plan: BackupPlan) -> ReconcileResult:
        if self.config.finalizer not in plan.get_finalizers():
            return ReconcileResult()

        logger.info(f"Freeing resources of {plan.kind} {plan.namespace}/{plan.name}")
        for kind, namespace, name in self._owned_resources(plan):
            self._delete_owned(plan, kind, namespace, name)

        # Last step: once the finalizer is gone the plan may disappear
        finalizers = [f for f in plan.get_finalizers() if f != self.config.finalizer]
        self.store.update(plan.manifest_with_finalizers(finalizers))
        logger.info(f"Removed finalizer from {plan.kind} {plan.namespace}/{plan.name}")
        return ReconcileResult()

    def _owned_resources(self, plan: BackupPlan) -> List[Tuple[str, str, str]]:
        """CronJob before Secret, from status and from the rendered names."""
        status = plan.get_status()
        name = ManifestTemplates.resource_name(plan)
        candidates = []
        for kind, ref in (('CronJob', status.cron_job), ('Secret', status.secret)):
            if ref is not None:
                candidates.append((kind, ref.namespace, ref.name))
            # Covers a crash between creating a resource and writing status
            candidates.append((kind, plan.namespace, name))
        return list(dict.fromkeys(candidates))

    def _delete_owned(self, plan: BackupPlan, kind: str, namespace: str, name: str) -> None:
        try:
            observed = self.store.get(kind, namespace, name)
        except NotFoundError:
            return
        if not is_owned_by(observed, plan):
            logger.warning(
                f"Not deleting {kind} {namespace}/{name}: it is not owned by "
                f"{plan.kind} {plan.namespace}/{plan.name}"
            )
            return
        try:
            self.store.delete(kind, namespace, name)
        except NotFoundError:
            return
        logger.info(f"Deleted {kind} {namespace}/{name}")


def _reference(obj: Dict[str, Any]) -> ObjectReference:
    metadata = obj['metadata']
    return ObjectReference(namespace=metadata['namespace'], name=metadata['name'])
