import logging

import kopf
import kubernetes

from pg_backup_operator.config import GROUP, PLURAL, SCHEDULE_CHECK_SECONDS, VERSION, get_config
from pg_backup_operator.credentials import SecretResolver
from pg_backup_operator.errors import (
    BackupError,
    BackupInProgressError,
    InvalidBackupSpecError,
    OwnerReferenceError,
)
from pg_backup_operator.reconciler import Reconciler
from pg_backup_operator.resources import BackupRequestStore, is_backup_due
from pg_backup_operator.transfer import ArtifactUploader
from pg_backup_operator.workload import WorkloadManager


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, logger, **_):
    """
    Configure operator on startup
    """
    config = get_config()

    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()

    # Configure Kopf settings
    settings.persistence.finalizer = f'{config.name}/finalizer'
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        logger.warning(f"Unknown LOG_LEVEL {config.log_level!r}, using INFO")
        level = logging.INFO
    settings.posting.level = level

    logger.info(f"Starting {config.name} v{config.version}")
    logger.info(f"Watching namespace: {config.namespace or 'all namespaces'}")
    logger.info(f"Dump image: {config.workload.image}, backups every {config.requeue_interval_seconds}s")


@kopf.on.create(GROUP, VERSION, PLURAL)
def create_backup(name, namespace, logger, **kwargs):
    """
    Handler called when a PostgresBackup resource is created
    """
    logger.info(f"Running initial backup for {name}")
    return run_backup(namespace, name, logger)


@kopf.on.update(GROUP, VERSION, PLURAL, field='spec')
def update_backup(name, namespace, logger, **kwargs):
    """
    Handler called when the spec of a PostgresBackup resource changes
    """
    logger.info(f"Spec of {name} changed, running backup")
    return run_backup(namespace, name, logger)


@kopf.on.resume(GROUP, VERSION, PLURAL)
def resume_backup(name, namespace, status, logger, **kwargs):
    """
    Handler called for existing resources when the operator starts
    """
    if status.get('activeWorkload'):
        logger.info(f"Backup of {name} was interrupted, running it again")
        return run_backup(namespace, name, logger)
    logger.info(f"Resumed {name}, next backup on schedule")
    return {'message': 'Resumed'}


@kopf.on.delete(GROUP, VERSION, PLURAL)
def delete_backup(name, namespace, logger, **kwargs):
    """
    Handler called when a PostgresBackup resource is deleted
    Dump pods will be automatically deleted due to owner reference
    """
    logger.info(f"PostgresBackup {name} deleted - dump pods will be cleaned up automatically")
    return {'message': f'Backup {name} deleted'}


@kopf.timer(GROUP, VERSION, PLURAL, interval=SCHEDULE_CHECK_SECONDS, initial_delay=SCHEDULE_CHECK_SECONDS)
def scheduled_backup(name, namespace, status, logger, stopped, **kwargs):
    """
    Periodic re-trigger once the requeue interval has passed since the last backup
    """
    if not is_backup_due(status.get('lastBackupTime'), get_config().requeue_interval_seconds):
        return None
    logger.info(f"Scheduled backup for {name}")
    return run_backup(namespace, name, logger, stopped=stopped)


def build_reconciler(logger) -> Reconciler:
    """
    Wire a reconciler from the API clients and the global configuration
    """
    config = get_config()
    core_api = kubernetes.client.CoreV1Api()
    return Reconciler(
        store=BackupRequestStore(kubernetes.client.CustomObjectsApi()),
        secrets=SecretResolver(core_api),
        workloads=WorkloadManager(core_api, config.workload, logger=logger),
        uploader=ArtifactUploader(config.transfer, logger=logger),
        config=config,
        logger=logger,
    )


def run_backup(namespace, name, logger, stopped=None):
    """
    Run one attempt and translate its errors for kopf
    """
    config = get_config()
    reconciler = build_reconciler(logger)

    try:
        result = reconciler.reconcile(namespace, name, stopped=stopped)
    except (InvalidBackupSpecError, OwnerReferenceError) as e:
        logger.error(f"Backup of {name} cannot run: {e}")
        raise kopf.PermanentError(f"{e.__class__.__name__}: {e}")
    except BackupInProgressError as e:
        logger.warning(f"Backup of {name} postponed: {e}")
        raise kopf.TemporaryError(str(e), delay=config.in_progress_retry_delay_seconds)
    except BackupError as e:
        logger.error(f"Backup of {name} failed: {e}")
        raise kopf.TemporaryError(f"{e.__class__.__name__}: {e}", delay=config.retry_delay_seconds)
    except kubernetes.client.exceptions.ApiException as e:
        logger.error(f"Backup of {name} failed: {e}")
        raise kopf.TemporaryError(f"Kubernetes API error: {e.status} {e.reason}", delay=config.retry_delay_seconds)

    if result.skipped:
        return {'message': f'PostgresBackup {name} no longer exists'}

    return {
        'message': 'Backup completed',
        'blob': result.blob_url,
        'requeueAfter': result.requeue_after,
    }
