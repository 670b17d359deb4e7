"""
Runtime side of a backup CronJob.

The operator mounts the plan Secret into the worker container and points
``BACKUP_PLAN_CONFIG`` at the payload file. The worker turns the payload
back into the plan spec, streams the source into the S3 destination and
prunes old artifacts afterwards.
"""

import argparse
import json
import logging
import os
from typing import Callable, Dict, List, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from backup_operator.backup import Destination, Source
from backup_operator.destination import S3Destination, S3DestinationConf
from backup_operator.plans import (
    BackupPlan,
    BackupPlanSpec,
    ConsulBackupPlan,
    MongoDBBackupPlan,
    PlanRegistry,
    default_registry,
    spec_from_dict,
)
from backup_operator.sources import ConsulSource, MongoDBSource, SourceError

logger = logging.getLogger(__name__)


class WorkerError(RuntimeError):
    """Raised when the worker cannot start a backup run."""


# Worker sub-command (the CronJob argument) -> source of that plan kind
SOURCE_FACTORIES: Dict[str, Callable[[BackupPlanSpec], Source]] = {
    ConsulBackupPlan.worker_command: lambda spec: ConsulSource(spec.address),
    MongoDBBackupPlan.worker_command: lambda spec: MongoDBSource(spec.uri),
}


def load_plan_spec(registry: PlanRegistry, kind: str, payload: str) -> BackupPlanSpec:
    """Deserialize a Secret payload into the spec class of ``kind``."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise WorkerError(f"Plan payload is not valid JSON: {e}") from e
    return spec_from_dict(registry.get(kind).spec_class, data)


def load_plan_from_env(registry: PlanRegistry, environ: Optional[Mapping[str, str]] = None) -> BackupPlan:
    """
    Rebuild the plan from the environment set up by the CronJob.

    Raises:
        WorkerError: If a variable is missing or the payload cannot be read
    """
    environ = os.environ if environ is None else environ
    try:
        kind = environ['BACKUP_PLAN_KIND']
        namespace = environ['BACKUP_PLAN_NAMESPACE']
        name = environ['BACKUP_PLAN_NAME']
        path = environ['BACKUP_PLAN_CONFIG']
    except KeyError as e:
        raise WorkerError(f"Missing environment variable {e.args[0]}") from e

    if kind not in registry:
        raise WorkerError(f"Unknown plan kind: {kind}")

    try:
        with open(path, encoding='utf-8') as f:
            payload = f.read()
    except OSError as e:
        raise WorkerError(f"Cannot read plan payload {path}: {e}") from e

    plan = registry.new(kind)
    plan.metadata = {'namespace': namespace, 'name': name}
    plan.spec = load_plan_spec(registry, kind, payload)
    return plan


def destination_conf(spec: BackupPlanSpec, namespace: str, name: str) -> S3DestinationConf:
    """S3 settings of a plan; artifacts of a plan live under namespace/name."""
    if spec.destination is None or spec.destination.s3 is None:
        raise WorkerError("Plan has no s3 destination")
    s3 = spec.destination.s3
    return S3DestinationConf(
        endpoint=s3.endpoint,
        access_key=s3.access_key_id,
        secret_key=s3.secret_access_key,
        bucket=s3.bucket,
        prefix=f'{namespace}/{name}',
        encryption_key=s3.encryption_key,
        encryption_algorithm=s3.encryption_algorithm or '',
        disable_ssl=not s3.use_ssl,
        insecure_skip_verify=s3.insecure_skip_verify,
        part_size=s3.part_size or S3DestinationConf.part_size,
    )


def run_backup(spec: BackupPlanSpec, source: Source, destination: Destination) -> int:
    """
    Stream the source into the destination, then enforce retention.

    Retention runs after the upload so that the new artifact counts
    towards the limit; a retention of 0 keeps everything.

    Returns:
        Total number of bytes stored
    """
    size = source.stream(destination)
    logger.info(f"Backup stored, {size} bytes")

    if spec.retention > 0:
        destination.ensure_retention(spec.retention)
    return size


def run_plan(
    plan: BackupPlan,
    source: Source,
    destination_factory: Callable[[S3DestinationConf], Destination] = S3Destination,
) -> int:
    """Run one backup for a plan loaded with load_plan_from_env."""
    conf = destination_conf(plan.get_spec(), plan.namespace, plan.name)
    logger.info(f"Running {plan.kind} {plan.namespace}/{plan.name} into bucket {conf.bucket}")
    return run_backup(plan.get_spec(), source, destination_factory(conf))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one backup of the plan mounted by backup-operator")
    parser.add_argument('command', choices=sorted(SOURCE_FACTORIES), help="Kind of source to back up")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the worker image; returns the process exit code."""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        plan = load_plan_from_env(default_registry())
        if plan.worker_command != args.command:
            raise WorkerError(f"{plan.kind} cannot be backed up by the {args.command} command")
        source = SOURCE_FACTORIES[args.command](plan.get_spec())
        run_plan(plan, source)
    except (WorkerError, SourceError, ClientError, BotoCoreError) as e:
        logger.error(f"Backup failed: {e}")
        return 1
    return 0
