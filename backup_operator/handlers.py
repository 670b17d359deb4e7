import logging

import kopf

from backup_operator.config import get_config
from backup_operator.plans import PlanValidationError, default_registry
from backup_operator.reconciler import BackupPlanReconciler, ReconcileError
from backup_operator.store import ClusterStoreError, CustomResource, KubernetesClusterStore, load_api_client

_config = get_config()
_registry = default_registry(_config)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, logger, **_):
    """
    Configure operator on startup
    """
    config = get_config()

    # kopf and the reconciler share one finalizer
    settings.persistence.finalizer = config.finalizer
    settings.posting.level = getattr(logging, config.log_level.upper(), logging.INFO)
    settings.execution.max_workers = config.max_workers

    custom_resources = {
        plan_class.kind: CustomResource(
            group=config.api_group,
            version=config.api_version,
            plural=plan_class.plural,
        )
        for plan_class in _registry
    }
    store = KubernetesClusterStore(custom_resources, api_client=load_api_client())
    memo.reconciler = BackupPlanReconciler(store, _registry, config)

    logger.info(f"Starting {config.name} v{config.version}")
    logger.info(f"Watching namespace: {config.namespace or 'all namespaces'}")
    logger.info(f"Supported plans: {', '.join(_registry.kinds())}")


def reconcile_plan(body, name, namespace, memo: kopf.Memo, logger, **kwargs):
    """
    Handler called for every observed change of a BackupPlan, including
    its deletion. The reconciler works out what has to be done.
    """
    config = get_config()
    kind = body['kind']

    try:
        memo.reconciler.reconcile(kind, namespace, name)
    except (ReconcileError, PlanValidationError) as e:
        logger.error(f"Cannot converge {kind} {name}: {e}")
        raise kopf.TemporaryError(str(e), delay=config.precondition_retry_delay)
    except ClusterStoreError as e:
        logger.warning(f"Reconciliation of {kind} {name} failed, retrying: {e}")
        raise kopf.TemporaryError(str(e), delay=config.retry_delay)

    logger.info(f"{kind} {name} reconciled")


for _plan_class in _registry:
    _resource = (_config.api_group, _config.api_version, _plan_class.plural)
    kopf.on.resume(*_resource, id='reconcile-resume')(reconcile_plan)
    kopf.on.create(*_resource, id='reconcile-create')(reconcile_plan)
    kopf.on.update(*_resource, id='reconcile-update')(reconcile_plan)
    kopf.on.delete(*_resource, id='reconcile-delete')(reconcile_plan)
