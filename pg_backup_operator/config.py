"""
Configuration management for the PostgreSQL Backup Operator
"""

import os
from typing import Optional
from dataclasses import dataclass, field


# Custom resource coordinates (used by the kopf decorators at import time)
GROUP = 'database.muntashirislam.com'
VERSION = 'v1alpha1'
PLURAL = 'postgresbackups'


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default  # Use default if invalid


# Read once at import so the kopf timer and OperatorConfig agree
REQUEUE_INTERVAL_SECONDS = _int_from_env('REQUEUE_INTERVAL_SECONDS', 24 * 60 * 60)

# How often the timer checks whether a backup is due
SCHEDULE_CHECK_SECONDS = max(60, min(60 * 60, REQUEUE_INTERVAL_SECONDS))


@dataclass
class WorkloadConfig:
    """Configuration for the pg_dump pod"""
    image: str = 'postgres:latest'
    container_name: str = 'pg-dump'
    password_env: str = 'PGPASSWORD'

    # Where the dump lands; shared with the operator through the claim if set
    artifact_dir: str = '/tmp'
    artifact_volume_claim: Optional[str] = None

    poll_interval_seconds: int = 5
    timeout_seconds: int = 6 * 60 * 60  # 0 disables the deadline

    # Transient read failures while polling
    read_retries: int = 5
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0


@dataclass
class TransferConfig:
    """Configuration for the Azure Blob upload"""
    endpoint_template: str = 'https://{account}.blob.core.windows.net'
    chunk_size: int = 4 * 1024 * 1024
    parallelism: int = 16
    artifact_suffix: str = '.sql'


@dataclass
class OperatorConfig:
    """Main operator configuration"""

    # Operator metadata
    name: str = 'pg-backup-operator'
    version: str = '0.1.0'

    # Kubernetes API configuration
    namespace: Optional[str] = None  # None means watch all namespaces

    # Component configurations
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)

    # Operator behavior
    requeue_interval_seconds: int = REQUEUE_INTERVAL_SECONDS
    retry_delay_seconds: int = 60
    in_progress_retry_delay_seconds: int = 300

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO'))

    @classmethod
    def from_env(cls) -> 'OperatorConfig':
        """
        Create configuration from environment variables

        Environment variables:
        - OPERATOR_NAMESPACE: Namespace to watch (default: all)
        - LOG_LEVEL: Logging level (default: INFO)
        - DUMP_IMAGE: Image running pg_dump (default: postgres:latest)
        - ARTIFACT_DIR: Directory holding the dump file (default: /tmp)
        - ARTIFACT_VOLUME_CLAIM: PVC shared between operator and dump pod
        - POLL_INTERVAL_SECONDS: Pod status poll interval (default: 5)
        - WORKLOAD_TIMEOUT_SECONDS: Dump deadline, 0 for none (default: 21600)
        - UPLOAD_CHUNK_SIZE: Upload block size in bytes (default: 4 MiB)
        - UPLOAD_PARALLELISM: Concurrent block uploads (default: 16)
        - REQUEUE_INTERVAL_SECONDS: Delay before the next backup (default: 86400)
        - RETRY_DELAY_SECONDS: Delay before retrying a failed backup (default: 60)
        """
        config = cls()

        # Override from environment
        if namespace := os.getenv('OPERATOR_NAMESPACE'):
            config.namespace = namespace

        if image := os.getenv('DUMP_IMAGE'):
            config.workload.image = image

        if artifact_dir := os.getenv('ARTIFACT_DIR'):
            config.workload.artifact_dir = artifact_dir

        if claim := os.getenv('ARTIFACT_VOLUME_CLAIM'):
            config.workload.artifact_volume_claim = claim

        config.workload.poll_interval_seconds = _int_from_env(
            'POLL_INTERVAL_SECONDS', config.workload.poll_interval_seconds
        )
        config.workload.timeout_seconds = _int_from_env(
            'WORKLOAD_TIMEOUT_SECONDS', config.workload.timeout_seconds
        )
        config.transfer.chunk_size = _int_from_env('UPLOAD_CHUNK_SIZE', config.transfer.chunk_size)
        config.transfer.parallelism = _int_from_env('UPLOAD_PARALLELISM', config.transfer.parallelism)
        config.requeue_interval_seconds = _int_from_env(
            'REQUEUE_INTERVAL_SECONDS', config.requeue_interval_seconds
        )
        config.retry_delay_seconds = _int_from_env('RETRY_DELAY_SECONDS', config.retry_delay_seconds)

        return config

    def validate(self) -> None:
        """
        Validate configuration

        Raises:
            ValueError: If configuration is invalid
        """
        if self.workload.poll_interval_seconds <= 0:
            raise ValueError("Poll interval must be positive")

        if self.workload.timeout_seconds < 0:
            raise ValueError("Workload timeout cannot be negative")

        if self.workload.read_retries < 0:
            raise ValueError("Read retries cannot be negative")

        if self.transfer.chunk_size < 64 * 1024:
            raise ValueError("Upload chunk size must be at least 64 KiB")

        if self.transfer.parallelism < 1:
            raise ValueError("Upload parallelism must be at least 1")

        if self.requeue_interval_seconds < 60:
            raise ValueError("Requeue interval must be at least 60 seconds")

    def artifact_path(self, resource_name: str) -> str:
        """Local path of the dump file for a resource"""
        directory = self.workload.artifact_dir.rstrip('/') or '/'
        return os.path.join(directory, f'{resource_name}{self.transfer.artifact_suffix}')

    def artifact_key(self, resource_name: str) -> str:
        """Blob name of the dump for a resource"""
        return f'{resource_name}{self.transfer.artifact_suffix}'

    def account_url(self, account: str) -> str:
        """Blob service endpoint for a storage account"""
        return self.transfer.endpoint_template.format(account=account)


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
