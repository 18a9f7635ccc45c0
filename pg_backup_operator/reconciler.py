"""
Reconciliation loop for PostgresBackup resources

One call to :meth:`Reconciler.reconcile` is one backup attempt. The steps run
strictly in order:

    load -> resolve credentials -> submit pod -> await pod -> upload
         -> delete pod -> update status

Any failing step aborts the attempt and the error is raised to the caller
(kopf), whose retry policy decides when the next attempt happens. The
``lastBackupTime``/``backupStatus`` fields are only written after a fully
successful attempt.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pg_backup_operator.config import OperatorConfig
from pg_backup_operator.credentials import SecretResolver
from pg_backup_operator.errors import (
    BackupError,
    BackupInProgressError,
    TeardownError,
    WorkloadFailure,
)
from pg_backup_operator.resources import BackupRequest, BackupRequestStore
from pg_backup_operator.templates import ManifestTemplates
from pg_backup_operator.transfer import ArtifactUploader
from pg_backup_operator.workload import TERMINAL_PHASES, WorkloadHandle, WorkloadManager


@dataclass
class ReconcileResult:
    """What happened in one attempt and when the next one is due"""
    requeue_after: Optional[int] = None
    skipped: bool = False
    blob_url: Optional[str] = None
    status: Dict[str, Any] = field(default_factory=dict)


class _ResourceLocks:
    """Process-local mutual exclusion per (namespace, name)"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def get(self, namespace: str, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((namespace, name), threading.Lock())


class Reconciler:
    """
    Drives a single backup attempt for a PostgresBackup
    """

    def __init__(
        self,
        *,
        store: BackupRequestStore,
        secrets: SecretResolver,
        workloads: WorkloadManager,
        uploader: ArtifactUploader,
        config: OperatorConfig,
        logger: Optional[logging.Logger] = None,
        locks: Optional[_ResourceLocks] = None,
    ):
        self.store = store
        self.secrets = secrets
        self.workloads = workloads
        self.uploader = uploader
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.locks = locks or _LOCKS

    def reconcile(self, namespace: str, name: str, stopped: Any = None) -> ReconcileResult:
        """
        Run one backup attempt for ``namespace/name``

        Returns:
            ReconcileResult asking for a requeue after the configured interval,
            or a skipped result if the resource no longer exists

        Raises:
            BackupError: If any stage fails; status is left untouched
        """
        lock = self.locks.get(namespace, name)
        if not lock.acquire(blocking=False):
            raise BackupInProgressError(f"a backup of {namespace}/{name} is already running in this process")
        try:
            return self._reconcile(namespace, name, stopped)
        finally:
            lock.release()

    def _reconcile(self, namespace: str, name: str, stopped: Any) -> ReconcileResult:
        started_at = datetime.now(tz=timezone.utc)

        request = self.store.load(namespace, name)
        if request is None:
            self.logger.info(f"PostgresBackup {namespace}/{name} not found, nothing to do")
            return ReconcileResult(skipped=True)

        self._check_not_in_progress(request)
        pending_cleanup = self._retry_pending_cleanup(request)

        password = self.secrets.resolve(namespace, request.postgres_secret.name, request.postgres_secret.key)
        storage_key = self.secrets.resolve(namespace, request.azure_secret.name, request.azure_secret.key)

        artifact_path = self.config.artifact_path(request.name)
        manifest = ManifestTemplates.dump_pod_manifest(request, artifact_path, password, owner=request.body)

        self.store.mark_active(request, manifest['metadata']['name'])
        try:
            blob_url, cleanup = self._run_backup(request, manifest, artifact_path, storage_key, stopped)
        except Exception:
            self._release_marker(request)
            raise

        if cleanup or (pending_cleanup and pending_cleanup['workload'] == manifest['metadata']['name']):
            pending_cleanup = cleanup
        status = self.store.record_success(
            request,
            finished_at=max(datetime.now(tz=timezone.utc), started_at),
            pending_cleanup=pending_cleanup,
        )
        self.logger.info(
            f"Backup of {namespace}/{name} stored at {blob_url}; "
            f"next run in {self.config.requeue_interval_seconds}s"
        )
        return ReconcileResult(
            requeue_after=self.config.requeue_interval_seconds,
            blob_url=blob_url,
            status=status,
        )

    def _run_backup(
        self,
        request: BackupRequest,
        manifest: Dict[str, Any],
        artifact_path: str,
        storage_key: str,
        stopped: Any,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Submit, await, upload and tear down

        Returns:
            The blob URL and, if the pod could not be deleted afterwards, the
            pending cleanup record
        """
        handle = self.workloads.submit(manifest)
        try:
            outcome = self.workloads.await_completion(
                handle,
                stopped=stopped,
                on_phase=lambda phase: self._report_phase(request, handle, phase),
            )
            if not outcome.succeeded:
                raise WorkloadFailure(str(handle), outcome.message)

            blob_url = self.uploader.upload(
                artifact_path,
                request.storage_account,
                request.container_name,
                self.config.artifact_key(request.name),
                storage_key,
            )
        except Exception:
            self._teardown_after_failure(handle)
            raise

        try:
            self.workloads.teardown(handle)
        except TeardownError as e:
            self.logger.warning(f"Backup succeeded but {e}; cleanup will be retried on the next run")
            return blob_url, {'workload': handle.name, 'error': str(e)}
        return blob_url, None

    def _report_phase(self, request: BackupRequest, handle: WorkloadHandle, phase: str) -> None:
        try:
            self.store.update_active_phase(request, handle.name, phase)
        except Exception as e:  # pylint: disable=broad-except
            self.logger.warning(f"Cannot record phase {phase} of pod {handle}: {e}")

    def _teardown_after_failure(self, handle: WorkloadHandle) -> None:
        try:
            self.workloads.teardown(handle)
        except TeardownError as e:
            self.logger.warning(f"Cleanup after failed backup also failed: {e}")

    def _check_not_in_progress(self, request: BackupRequest) -> None:
        active = request.active_workload
        if not active or not active.get('name'):
            return

        handle = WorkloadHandle(namespace=request.namespace, name=active['name'])
        phase = self.workloads.phase(handle)
        if phase is not None and phase not in TERMINAL_PHASES:
            raise BackupInProgressError(
                f"pod {handle} from an earlier attempt is still {phase}"
            )
        self.logger.info(f"Taking over stale in-progress marker for pod {handle} (phase={phase})")

    def _retry_pending_cleanup(self, request: BackupRequest) -> Optional[Dict[str, Any]]:
        pending = request.pending_cleanup
        if not pending or not pending.get('workload'):
            return None

        handle = WorkloadHandle(namespace=request.namespace, name=pending['workload'])
        try:
            self.workloads.teardown(handle)
        except TeardownError as e:
            self.logger.warning(f"Pending cleanup still failing: {e}")
            return {'workload': handle.name, 'error': str(e)}
        return None

    def _release_marker(self, request: BackupRequest) -> None:
        try:
            self.store.clear_active(request)
        except Exception as e:  # pylint: disable=broad-except
            self.logger.warning(f"Cannot clear in-progress marker of {request.namespace}/{request.name}: {e}")


_LOCKS = _ResourceLocks()
