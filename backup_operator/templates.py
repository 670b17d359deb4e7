import base64
import copy
import posixpath
from typing import Dict, Any, List, Optional

import kopf

from backup_operator.config import OperatorConfig, get_config
from backup_operator.plans import BackupPlan

PLAN_CONFIG_VOLUME = 'plan-config'


class ManifestTemplates:
    """
    Templates for Kubernetes manifests owned by a BackupPlan

    All templates are pure: the same plan always renders the same manifest,
    which is what lets the reconciler detect that nothing needs updating.
    """

    @staticmethod
    def resource_name(plan: BackupPlan) -> str:
        """Name shared by the Secret and the CronJob of a plan"""
        return f'{plan.name}-{plan.worker_command}-backup'

    @staticmethod
    def labels(plan: BackupPlan, config: Optional[OperatorConfig] = None) -> Dict[str, str]:
        config = config or get_config()
        labels = config.common_labels()
        labels.update({
            'app.kubernetes.io/name': 'backup',
            'app.kubernetes.io/instance': plan.name,
            f'{config.api_group}/plan-kind': plan.get_kind(),
        })
        return labels

    @staticmethod
    def owner_reference(plan: BackupPlan) -> Dict[str, Any]:
        return kopf.build_owner_reference(
            plan.to_manifest(),
            controller=True,
            block_owner_deletion=True,
        )

    @staticmethod
    def secret_manifest(plan: BackupPlan, config: Optional[OperatorConfig] = None) -> Dict[str, Any]:
        """
        Generate the Secret holding the serialized plan spec
        """
        config = config or get_config()
        payload = plan.serialize_spec().encode('utf-8')

        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'metadata': {
                'name': ManifestTemplates.resource_name(plan),
                'namespace': plan.namespace,
                'labels': ManifestTemplates.labels(plan, config),
                'ownerReferences': [ManifestTemplates.owner_reference(plan)],
            },
            'type': 'Opaque',
            'data': {
                config.secret_field_name: base64.b64encode(payload).decode('ascii'),
            },
        }

    @staticmethod
    def cronjob_manifest(plan: BackupPlan, config: Optional[OperatorConfig] = None) -> Dict[str, Any]:
        """
        Generate the CronJob running the backup worker for a plan

        Credentials only ever reach the worker through the mounted Secret,
        never through arguments or plain environment values.
        """
        config = config or get_config()
        worker = config.worker
        spec = plan.get_spec()
        name = ManifestTemplates.resource_name(plan)

        job_spec = {
            'backoffLimit': worker.backoff_limit,
            'template': {
                'metadata': {
                    'labels': ManifestTemplates.labels(plan, config),
                },
                'spec': {
                    'restartPolicy': worker.restart_policy,
                    'containers': [{
                        'name': 'backup',
                        'image': worker.image,
                        'imagePullPolicy': worker.image_pull_policy,
                        'args': [plan.worker_command],
                        'env': ManifestTemplates._get_container_env(plan, config),
                        'volumeMounts': [{
                            'name': PLAN_CONFIG_VOLUME,
                            'mountPath': worker.config_mount_path,
                            'readOnly': True,
                        }],
                        'resources': {
                            'requests': {
                                'memory': worker.memory_request,
                                'cpu': worker.cpu_request
                            },
                            'limits': {
                                'memory': worker.memory_limit,
                                'cpu': worker.cpu_limit
                            }
                        }
                    }],
                    'volumes': [{
                        'name': PLAN_CONFIG_VOLUME,
                        'secret': {
                            'secretName': name,
                            'items': [{
                                'key': config.secret_field_name,
                                'path': config.secret_field_name,
                            }],
                        },
                    }],
                },
            },
        }
        if spec.active_deadline_seconds:
            job_spec['activeDeadlineSeconds'] = spec.active_deadline_seconds

        return {
            'apiVersion': 'batch/v1',
            'kind': 'CronJob',
            'metadata': {
                'name': name,
                'namespace': plan.namespace,
                'labels': ManifestTemplates.labels(plan, config),
                'ownerReferences': [ManifestTemplates.owner_reference(plan)],
            },
            'spec': {
                'schedule': spec.schedule,
                'concurrencyPolicy': worker.concurrency_policy,
                'successfulJobsHistoryLimit': worker.successful_jobs_history_limit,
                'failedJobsHistoryLimit': worker.failed_jobs_history_limit,
                'jobTemplate': {
                    'spec': job_spec,
                },
            },
        }

    @staticmethod
    def _get_container_env(plan: BackupPlan, config: OperatorConfig) -> List[Dict[str, Any]]:
        """
        Generate environment variables for the backup container
        """
        env_vars = [
            {'name': 'BACKUP_PLAN_KIND', 'value': plan.get_kind()},
            {'name': 'BACKUP_PLAN_NAMESPACE', 'value': plan.namespace},
            {'name': 'BACKUP_PLAN_NAME', 'value': plan.name},
            {
                'name': 'BACKUP_PLAN_CONFIG',
                'value': posixpath.join(config.worker.config_mount_path, config.secret_field_name),
            },
        ]
        # User supplied variables, e.g. secretKeyRefs to source credentials
        env_vars.extend(copy.deepcopy(plan.get_spec().env))
        return env_vars
