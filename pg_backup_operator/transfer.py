import logging
from typing import Optional

from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.storage.blob import BlobClient

from pg_backup_operator.config import TransferConfig
from pg_backup_operator.errors import AuthError, LocalFileError, TransferError


class ArtifactUploader:
    """
    Uploads a local dump file to Azure Blob Storage

    The file is sent in fixed-size blocks with a fixed number of parallel
    connections. The blob is overwritten on every run; a failed upload is
    retried from scratch by the next attempt.
    """

    def __init__(self, config: TransferConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def blob_client(
        self,
        account_name: str,
        container_name: str,
        artifact_key: str,
        credential: str,
    ) -> BlobClient:
        return BlobClient(
            account_url=self.config.endpoint_template.format(account=account_name),
            container_name=container_name,
            blob_name=artifact_key,
            credential={'account_name': account_name, 'account_key': credential},
            max_block_size=self.config.chunk_size,
            max_single_put_size=self.config.chunk_size,
        )

    def upload(
        self,
        local_path: str,
        account_name: str,
        container_name: str,
        artifact_key: str,
        credential: str,
    ) -> str:
        """
        Upload ``local_path`` to ``container_name/artifact_key``

        Returns:
            URL of the uploaded blob

        Raises:
            LocalFileError: The local file cannot be opened
            AuthError: The storage account rejected the credential
            TransferError: Any other failure during the upload
        """
        try:
            handle = open(local_path, 'rb')
        except OSError as e:
            raise LocalFileError(f"cannot open {local_path}: {e.strerror or e}") from e

        with handle:
            try:
                client = self.blob_client(account_name, container_name, artifact_key, credential)
                client.upload_blob(
                    handle,
                    overwrite=True,
                    max_concurrency=self.config.parallelism,
                )
            except ClientAuthenticationError as e:
                raise AuthError(
                    f"authentication to storage account {account_name} failed: {e.message or e}"
                ) from e
            except (AzureError, OSError, ValueError) as e:
                raise TransferError(
                    f"upload to {container_name}/{artifact_key} failed: {e}"
                ) from e

        self.logger.info(f"Uploaded {local_path} to {container_name}/{artifact_key}")
        return client.url
