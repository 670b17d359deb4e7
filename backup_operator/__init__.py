"""
Backup Operator for Kubernetes

This operator watches BackupPlan custom resources (one kind per backup
source, e.g. ConsulBackupPlan or MongoDBBackupPlan) and keeps a CronJob and
a Secret holding the plan in sync with each of them. The CronJob runs the
backup worker, which uploads artifacts to S3 and prunes old ones.
"""

__version__ = "0.1.0"

# Import main components for easier access
from backup_operator.config import OperatorConfig, get_config, set_config
from backup_operator.plans import (
    BackupPlan,
    ConsulBackupPlan,
    MongoDBBackupPlan,
    PlanRegistry,
    default_registry,
)
from backup_operator.reconciler import BackupPlanReconciler, ReconcileResult
from backup_operator.templates import ManifestTemplates
from backup_operator.destination import S3Destination, S3DestinationConf
from backup_operator.sources import ConsulSource, MongoDBSource
from backup_operator.worker import run_plan

__all__ = [
    'OperatorConfig',
    'get_config',
    'set_config',
    'BackupPlan',
    'ConsulBackupPlan',
    'MongoDBBackupPlan',
    'PlanRegistry',
    'default_registry',
    'BackupPlanReconciler',
    'ReconcileResult',
    'ManifestTemplates',
    'S3Destination',
    'S3DestinationConf',
    'ConsulSource',
    'MongoDBSource',
    'run_plan',
]
