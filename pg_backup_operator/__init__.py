"""
PostgreSQL Backup Operator for Kubernetes

This operator watches PostgresBackup custom resources, runs pg_dump in a
short-lived pod for each of them and uploads the dump to Azure Blob Storage,
repeating the backup every 24 hours.
"""

__version__ = "0.1.0"

# Import main components for easier access
from pg_backup_operator.config import OperatorConfig, get_config, set_config
from pg_backup_operator.reconciler import Reconciler, ReconcileResult
from pg_backup_operator.templates import ManifestTemplates

__all__ = [
    'OperatorConfig',
    'get_config',
    'set_config',
    'Reconciler',
    'ReconcileResult',
    'ManifestTemplates',
]
