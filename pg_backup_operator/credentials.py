import base64
import binascii

import kubernetes
from kubernetes.client.exceptions import ApiException

from pg_backup_operator.errors import KeyNotFoundError, SecretNotFoundError


class SecretResolver:
    """
    Reads single keys out of namespaced secrets

    Values are fetched on every call so rotated credentials are picked up by
    the next attempt. Nothing is cached or logged.
    """

    def __init__(self, core_api: kubernetes.client.CoreV1Api):
        self.core_api = core_api

    def resolve(self, namespace: str, secret_name: str, key: str) -> str:
        """
        Return the decoded value stored under ``key`` in a secret

        Raises:
            SecretNotFoundError: The secret does not exist
            KeyNotFoundError: The secret has no such key
        """
        try:
            secret = self.core_api.read_namespaced_secret(name=secret_name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(namespace, secret_name) from e
            raise

        data = secret.data or {}
        if key not in data:
            raise KeyNotFoundError(secret_name, key)

        try:
            return base64.b64decode(data[key]).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError) as e:
            raise KeyNotFoundError(secret_name, key) from e
