"""
Configuration management for the Backup Operator
"""

import logging
import os
from typing import Dict, Optional
from dataclasses import dataclass, field


@dataclass
class WorkerConfig:
    """Configuration of the CronJobs that run the backup worker"""
    image: str = field(default_factory=lambda: os.getenv(
        'WORKER_IMAGE', 'ghcr.io/backup-operator/backup-worker:latest'
    ))
    image_pull_policy: str = field(default_factory=lambda: os.getenv(
        'WORKER_IMAGE_PULL_POLICY', 'IfNotPresent'
    ))

    # Where the plan Secret is mounted inside the worker container
    config_mount_path: str = '/etc/backup-operator'

    concurrency_policy: str = 'Forbid'
    restart_policy: str = 'OnFailure'
    backoff_limit: int = 2
    successful_jobs_history_limit: int = 3
    failed_jobs_history_limit: int = 1

    # Resource limits for backup jobs
    memory_request: str = '256Mi'
    memory_limit: str = '512Mi'
    cpu_request: str = '100m'
    cpu_limit: str = '500m'


@dataclass
class OperatorConfig:
    """Main operator configuration"""

    # Operator metadata
    name: str = 'backup-operator'
    version: str = '0.1.0'

    # Custom resources served by the operator
    api_group: str = 'backup.example.com'
    api_version: str = 'v1alpha1'

    # Kubernetes API configuration
    namespace: Optional[str] = None  # None means watch all namespaces

    # Owned resources
    finalizer: str = 'backup.example.com/finalizer'
    secret_field_name: str = 'plan.json'

    # Component configurations
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    # Operator behavior
    max_workers: int = 10
    retry_delay: int = 30
    precondition_retry_delay: int = 300

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO'))

    @classmethod
    def from_env(cls) -> 'OperatorConfig':
        """
        Create configuration from environment variables

        Environment variables:
        - OPERATOR_NAMESPACE: Namespace to watch (default: all)
        - LOG_LEVEL: Logging level (default: INFO)
        - WORKER_IMAGE: Image of the backup worker run by the CronJobs
        - WORKER_IMAGE_PULL_POLICY: Pull policy of the worker image
        - MAX_WORKERS: Plans reconciled in parallel (default: 10)
        - RETRY_DELAY_SECONDS: Delay before retrying a failed pass (default: 30)
        - PRECONDITION_RETRY_DELAY_SECONDS: Delay before retrying a plan
          that conflicts with existing resources (default: 300)
        """
        config = cls()

        if namespace := os.getenv('OPERATOR_NAMESPACE'):
            config.namespace = namespace

        config.max_workers = _int_from_env('MAX_WORKERS', config.max_workers)
        config.retry_delay = _int_from_env('RETRY_DELAY_SECONDS', config.retry_delay)
        config.precondition_retry_delay = _int_from_env(
            'PRECONDITION_RETRY_DELAY_SECONDS', config.precondition_retry_delay
        )

        return config

    def validate(self) -> None:
        """
        Validate configuration

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.worker.image:
            raise ValueError("Worker image must be set")

        if self.max_workers < 1:
            raise ValueError("At least one worker is required")

        if self.retry_delay < 1 or self.precondition_retry_delay < 1:
            raise ValueError("Retry delays must be at least 1 second")

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log level: {self.log_level}")

    @property
    def api_group_version(self) -> str:
        return f'{self.api_group}/{self.api_version}'

    def common_labels(self) -> Dict[str, str]:
        """Labels attached to every resource the operator creates"""
        return {
            'app.kubernetes.io/managed-by': self.name,
            'app.kubernetes.io/version': self.version,
        }


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


# Global configuration instance
_config: Optional[OperatorConfig] = None


def get_config() -> OperatorConfig:
    """
    Get the global configuration instance (singleton pattern)

    Returns:
        OperatorConfig: The global configuration
    """
    global _config
    if _config is None:
        _config = OperatorConfig.from_env()
        _config.validate()
    return _config


def set_config(config: OperatorConfig) -> None:
    """
    Set the global configuration instance

    Args:
        config: New configuration instance
    """
    global _config
    config.validate()
    _config = config
