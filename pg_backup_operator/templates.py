import re
from typing import Any, Dict, List, Mapping

import kopf

from pg_backup_operator.config import get_config
from pg_backup_operator.errors import OwnerReferenceError
from pg_backup_operator.resources import BackupRequest


class ManifestTemplates:
    """
    Templates for Kubernetes manifests used by the operator
    """

    @staticmethod
    def workload_name(backup_name: str) -> str:
        """
        DNS-1123 compliant name of the dump pod for a backup
        """
        lowered = f'pg-dump-{backup_name}'.lower()
        normalized = re.sub(r'[^a-z0-9-]', '-', lowered)
        normalized = re.sub(r'-+', '-', normalized).strip('-')
        return normalized[:63].rstrip('-') or 'pg-dump'

    @staticmethod
    def label_value(value: str) -> str:
        """
        Label-safe form of a value: at most 63 chars, alphanumeric at both ends
        """
        normalized = re.sub(r'[^A-Za-z0-9._-]', '-', value)[:63]
        return re.sub(r'^[^A-Za-z0-9]+|[^A-Za-z0-9]+$', '', normalized)

    @staticmethod
    def get_dump_command(backup: BackupRequest, artifact_path: str) -> List[str]:
        """
        pg_dump invocation for a backup request
        """
        return [
            'pg_dump',
            f'--host={backup.host}',
            f'--port={backup.port}',
            f'--username={backup.user}',
            f'--dbname={backup.db_name}',
            f'--file={artifact_path}',
        ]

    @staticmethod
    def dump_pod_manifest(
        backup: BackupRequest,
        artifact_path: str,
        password: str,
        owner: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """
        Generate the run-once Pod manifest performing the dump

        The pod is adopted by ``owner`` so deleting the PostgresBackup
        cascades to any in-flight pod.

        Raises:
            OwnerReferenceError: If the owner reference cannot be set
        """
        config = get_config()
        workload = config.workload

        container: Dict[str, Any] = {
            'name': workload.container_name,
            'image': workload.image,
            'command': ManifestTemplates.get_dump_command(backup, artifact_path),
            'env': [{
                'name': workload.password_env,
                'value': password,
            }],
        }
        pod_spec: Dict[str, Any] = {
            'restartPolicy': 'Never',
            'containers': [container],
        }

        if workload.artifact_volume_claim:
            container['volumeMounts'] = [{
                'name': 'artifacts',
                'mountPath': workload.artifact_dir,
            }]
            pod_spec['volumes'] = [{
                'name': 'artifacts',
                'persistentVolumeClaim': {
                    'claimName': workload.artifact_volume_claim,
                },
            }]

        pod = {
            'apiVersion': 'v1',
            'kind': 'Pod',
            'metadata': {
                'name': ManifestTemplates.workload_name(backup.name),
                'namespace': backup.namespace,
                'labels': {
                    'app': 'postgres-backup',
                    'backup-name': ManifestTemplates.label_value(backup.name),
                    'managed-by': config.name,
                    'version': config.version,
                },
            },
            'spec': pod_spec,
        }

        ManifestTemplates._adopt(pod, owner)
        return pod

    @staticmethod
    def _adopt(pod: Dict[str, Any], owner: Mapping[str, Any]) -> None:
        """
        Set the owner reference for garbage collection
        """
        try:
            kopf.adopt(pod, owner=owner)
        except (LookupError, TypeError, ValueError) as e:
            raise OwnerReferenceError(f"cannot set owner reference on pod: {e!r}") from e

        owner_uid = (owner.get('metadata') or {}).get('uid')
        references = pod['metadata'].get('ownerReferences') or []
        if not owner_uid or not any(ref.get('uid') == owner_uid for ref in references):
            raise OwnerReferenceError("pod has no owner reference to its PostgresBackup")
