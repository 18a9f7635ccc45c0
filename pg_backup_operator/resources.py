"""
Typed access to PostgresBackup objects and their status subresource
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import kubernetes
from kubernetes.client.exceptions import ApiException

from pg_backup_operator.config import GROUP, PLURAL, VERSION
from pg_backup_operator.errors import InvalidBackupSpecError

SUCCESS = 'Success'


@dataclass(frozen=True)
class SecretKeyRef:
    name: str
    key: str


@dataclass(frozen=True)
class BackupRequest:
    """The user-authored half of a PostgresBackup"""
    name: str
    namespace: str
    uid: str
    host: str
    port: int
    user: str
    db_name: str
    container_name: str
    storage_account: str
    postgres_secret: SecretKeyRef
    azure_secret: SecretKeyRef
    status: Dict[str, Any]
    body: Mapping[str, Any]

    @property
    def active_workload(self) -> Optional[Dict[str, Any]]:
        return self.status.get('activeWorkload') or None

    @property
    def pending_cleanup(self) -> Optional[Dict[str, Any]]:
        return self.status.get('pendingCleanup') or None

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> 'BackupRequest':
        """
        Build a request from a raw PostgresBackup object

        Raises:
            InvalidBackupSpecError: If required fields are missing or invalid
        """
        metadata = body.get('metadata') or {}
        spec = body.get('spec') or {}

        for field_name in ('host', 'user', 'dbName', 'containerName', 'storageAccount'):
            if not spec.get(field_name):
                raise InvalidBackupSpecError(f"spec.{field_name} is required")

        try:
            port = int(spec.get('port'))
        except (TypeError, ValueError):
            raise InvalidBackupSpecError(f"spec.port must be an integer, got {spec.get('port')!r}")
        if not 0 < port < 65536:
            raise InvalidBackupSpecError(f"spec.port out of range: {port}")

        return cls(
            name=metadata.get('name', ''),
            namespace=metadata.get('namespace', ''),
            uid=metadata.get('uid', ''),
            host=spec['host'],
            port=port,
            user=spec['user'],
            db_name=spec['dbName'],
            container_name=spec['containerName'],
            storage_account=spec['storageAccount'],
            postgres_secret=_secret_ref(spec, 'postgresSecret'),
            azure_secret=_secret_ref(spec, 'azureSecret'),
            status=dict(body.get('status') or {}),
            body=body,
        )


def _secret_ref(spec: Mapping[str, Any], field_name: str) -> SecretKeyRef:
    ref = spec.get(field_name) or {}
    if not ref.get('name') or not ref.get('key'):
        raise InvalidBackupSpecError(f"spec.{field_name} needs both name and key")
    return SecretKeyRef(name=ref['name'], key=ref['key'])


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(tz=timezone.utc)
    return moment.astimezone(timezone.utc).replace(microsecond=0).strftime('%Y-%m-%dT%H:%M:%SZ')


def is_backup_due(
    last_backup_time: Optional[str],
    interval_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Whether the requeue interval has passed since the last successful backup

    A missing or unreadable timestamp counts as due.
    """
    if not last_backup_time:
        return True
    try:
        last = datetime.strptime(last_backup_time, '%Y-%m-%dT%H:%M:%SZ').replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return True
    now = now or datetime.now(tz=timezone.utc)
    return now - last >= timedelta(seconds=interval_seconds)


class BackupRequestStore:
    """
    Loads PostgresBackup objects and writes their status subresource
    """

    def __init__(self, custom_api: kubernetes.client.CustomObjectsApi):
        self.custom_api = custom_api

    def load(self, namespace: str, name: str) -> Optional[BackupRequest]:
        """
        Read a PostgresBackup by name

        Returns:
            The parsed request, or None if the object no longer exists
        """
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return BackupRequest.from_body(body)

    def patch_status(self, request: BackupRequest, status: Dict[str, Any]) -> None:
        self.custom_api.patch_namespaced_custom_object_status(
            group=GROUP,
            version=VERSION,
            namespace=request.namespace,
            plural=PLURAL,
            name=request.name,
            body={'status': status},
        )

    def mark_active(self, request: BackupRequest, workload: str, phase: str = 'Pending') -> None:
        self.patch_status(request, {
            'activeWorkload': {
                'name': workload,
                'phase': phase,
                'startedAt': utc_timestamp(),
            },
        })

    def update_active_phase(self, request: BackupRequest, workload: str, phase: str) -> None:
        self.patch_status(request, {'activeWorkload': {'name': workload, 'phase': phase}})

    def clear_active(self, request: BackupRequest) -> None:
        self.patch_status(request, {'activeWorkload': None})

    def record_success(
        self,
        request: BackupRequest,
        finished_at: datetime,
        pending_cleanup: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Persist the outcome of a fully successful attempt"""
        status = {
            'lastBackupTime': utc_timestamp(finished_at),
            'backupStatus': SUCCESS,
            'activeWorkload': None,
            'pendingCleanup': pending_cleanup,
        }
        self.patch_status(request, status)
        return status
