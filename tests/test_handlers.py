import logging
from unittest.mock import MagicMock, patch

import kopf
import pytest
from kopf._core.intents import causes

from backup_operator import handlers
from backup_operator.plans import PlanValidationError
from backup_operator.reconciler import BackupPlanReconciler, OwnershipConflictError, ReconcileResult
from backup_operator.store import ClusterStoreError, ConflictError
from backup_operator.templates import ManifestTemplates

logger = logging.getLogger('test')


def _memo(reconciler):
    memo = kopf.Memo()
    memo.reconciler = reconciler
    return memo


def _call(memo):
    return handlers.reconcile_plan(
        body={'kind': 'MongoDBBackupPlan'},
        name='plan',
        namespace='ns',
        memo=memo,
        logger=logger,
    )


def test_startup_builds_reconciler(operator_config):
    settings = kopf.OperatorSettings()
    memo = kopf.Memo()
    operator_config.max_workers = 4

    with patch('backup_operator.handlers.load_api_client', return_value=MagicMock()):
        handlers.configure(settings=settings, memo=memo, logger=logger)

    assert isinstance(memo.reconciler, BackupPlanReconciler)
    assert settings.execution.max_workers == 4
    assert settings.posting.level == logging.INFO
    assert settings.persistence.finalizer == operator_config.finalizer
    assert set(memo.reconciler.store.custom_resources) == {'ConsulBackupPlan', 'MongoDBBackupPlan'}
    resource = memo.reconciler.store.custom_resources['MongoDBBackupPlan']
    assert (resource.group, resource.version, resource.plural) == (
        'backup.example.com', 'v1alpha1', 'mongodbbackupplans'
    )


def test_reconcile_passes_identity():
    reconciler = MagicMock()
    reconciler.reconcile.return_value = ReconcileResult()

    _call(_memo(reconciler))

    reconciler.reconcile.assert_called_once_with('MongoDBBackupPlan', 'ns', 'plan')


@pytest.mark.parametrize('error', [ClusterStoreError('timeout'), ConflictError('modified', status=409)])
def test_transient_errors_are_retried(operator_config, error):
    reconciler = MagicMock()
    reconciler.reconcile.side_effect = error

    with pytest.raises(kopf.TemporaryError) as excinfo:
        _call(_memo(reconciler))

    assert excinfo.value.delay == operator_config.retry_delay


@pytest.mark.parametrize('error', [OwnershipConflictError('taken'), PlanValidationError('no schedule')])
def test_precondition_errors_are_retried_later(operator_config, error):
    reconciler = MagicMock()
    reconciler.reconcile.side_effect = error

    with pytest.raises(kopf.TemporaryError) as excinfo:
        _call(_memo(reconciler))

    assert excinfo.value.delay == operator_config.precondition_retry_delay


def test_unknown_log_level_falls_back_to_info(operator_config):
    settings = kopf.OperatorSettings()
    operator_config.log_level = 'LOUD'

    with patch('backup_operator.handlers.load_api_client', return_value=MagicMock()):
        handlers.configure(settings=settings, memo=kopf.Memo(), logger=logger)

    assert settings.posting.level == logging.INFO


def _registered_handlers():
    registry = kopf.get_default_registry()
    return [h for h in registry._changing.get_all_handlers() if h.fn is handlers.reconcile_plan]


def test_every_plan_kind_is_watched_for_all_changes():
    ids = sorted(h.id for h in _registered_handlers())

    assert ids == sorted(['reconcile-resume', 'reconcile-create', 'reconcile-update', 'reconcile-delete'] * 2)


def test_delete_handler_requires_the_finalizer():
    deletes = [h for h in _registered_handlers() if h.id == 'reconcile-delete']

    assert len(deletes) == 2
    assert all(h.requires_finalizer for h in deletes)


def _changing_cause(body, finalizer):
    return causes.detect_changing_cause(
        finalizer=finalizer,
        raw_event={'type': 'MODIFIED', 'object': body},
        body=kopf.Body(body),
        resource=MagicMock(),
        logger=logger,
        patch=kopf.Patch(),
        memo=kopf.Memo(),
        indices=MagicMock(),
    )


def test_plan_deletion_reaches_teardown(operator_config, reconciler, store, create_plan):
    settings = kopf.OperatorSettings()
    with patch('backup_operator.handlers.load_api_client', return_value=MagicMock()):
        handlers.configure(settings=settings, memo=kopf.Memo(), logger=logger)
    memo = _memo(reconciler)
    plan = create_plan()
    handlers.reconcile_plan(
        body=store.get(plan.kind, plan.namespace, plan.name),
        name=plan.name, namespace=plan.namespace, memo=memo, logger=logger,
    )
    store.delete(plan.kind, plan.namespace, plan.name)
    body = store.get(plan.kind, plan.namespace, plan.name)

    cause = _changing_cause(body, settings.persistence.finalizer)
    assert cause.reason == causes.Reason.DELETE

    handlers.reconcile_plan(body=body, name=plan.name, namespace=plan.namespace, memo=memo, logger=logger)

    name = ManifestTemplates.resource_name(plan)
    assert not store.exists('CronJob', plan.namespace, name)
    assert not store.exists('Secret', plan.namespace, name)
    assert not store.exists(plan.kind, plan.namespace, plan.name)
