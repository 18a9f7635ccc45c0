import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

import kubernetes
import urllib3
from kubernetes.client.exceptions import ApiException

from pg_backup_operator.config import WorkloadConfig
from pg_backup_operator.errors import (
    BackupCancelledError,
    TeardownError,
    WorkloadError,
    WorkloadTimeoutError,
)

SUCCEEDED = 'Succeeded'
FAILED = 'Failed'
TERMINAL_PHASES = {SUCCEEDED, FAILED}
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}

T = TypeVar('T')


@dataclass(frozen=True)
class WorkloadHandle:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}'


@dataclass(frozen=True)
class WorkloadOutcome:
    phase: str
    message: str = ''

    @property
    def succeeded(self) -> bool:
        return self.phase == SUCCEEDED


def is_transient_error(error: Exception) -> bool:
    """
    Whether a failed API read is worth retrying
    """
    if isinstance(error, ApiException):
        return error.status in TRANSIENT_STATUSES or error.status == 0 or error.status is None
    return isinstance(error, (urllib3.exceptions.HTTPError, ConnectionError))


def failure_message(pod: Any) -> str:
    """
    Message the platform reported for a failed pod
    """
    status = getattr(pod, 'status', None)
    if status is None:
        return 'unknown error'

    message = (getattr(status, 'message', None) or '').strip()
    if message:
        return message

    for container_status in getattr(status, 'container_statuses', None) or []:
        state = getattr(container_status, 'state', None)
        terminated = getattr(state, 'terminated', None) if state is not None else None
        if terminated is None:
            continue
        reason = getattr(terminated, 'reason', None) or 'Error'
        exit_code = getattr(terminated, 'exit_code', None)
        detail = (getattr(terminated, 'message', None) or '').strip()
        text = f'{reason} (exit code {exit_code})'
        return f'{text}: {detail}' if detail else text

    return (getattr(status, 'reason', None) or '').strip() or 'unknown error'


class WorkloadManager:
    """
    Submits the dump pod, waits for it to finish and removes it
    """

    def __init__(
        self,
        core_api: kubernetes.client.CoreV1Api,
        config: WorkloadConfig,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.core_api = core_api
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    def submit(self, manifest: Dict[str, Any]) -> WorkloadHandle:
        """
        Create the pod described by ``manifest``

        A leftover pod with the same name (from an interrupted attempt) is
        deleted and the creation retried once.
        """
        metadata = manifest['metadata']
        handle = WorkloadHandle(namespace=metadata['namespace'], name=metadata['name'])

        try:
            self.core_api.create_namespaced_pod(namespace=handle.namespace, body=manifest)
        except ApiException as e:
            if e.status != 409:
                raise WorkloadError(f"cannot create pod {handle}: {_api_reason(e)}") from e
            self.logger.warning(f"Pod {handle} already exists, replacing it")
            try:
                self._delete(handle)
                self.core_api.create_namespaced_pod(namespace=handle.namespace, body=manifest)
            except ApiException as retry_error:
                raise WorkloadError(
                    f"cannot create pod {handle}: {_api_reason(retry_error)}"
                ) from retry_error

        self.logger.info(f"Pod {handle} created")
        return handle

    def await_completion(
        self,
        handle: WorkloadHandle,
        stopped: Any = None,
        on_phase: Optional[Callable[[str], None]] = None,
    ) -> WorkloadOutcome:
        """
        Poll the pod until it reaches Succeeded or Failed

        Args:
            handle: The pod to watch
            stopped: Cancellation signal with a ``wait(timeout) -> bool``
                method (kopf's ``stopped`` flag or a ``threading.Event``)
            on_phase: Called with every newly observed phase

        Raises:
            WorkloadTimeoutError: The configured deadline passed first
            BackupCancelledError: ``stopped`` was set while waiting
            WorkloadError: The pod could not be read
        """
        stopped = stopped if stopped is not None else threading.Event()
        timeout = self.config.timeout_seconds
        deadline = self.clock() + timeout if timeout > 0 else None
        last_phase: Optional[str] = None

        while True:
            if stopped.wait(self.config.poll_interval_seconds):
                raise BackupCancelledError(f"stopped while waiting for pod {handle}")

            pod = self._read_with_retries(
                lambda: self.core_api.read_namespaced_pod(name=handle.name, namespace=handle.namespace),
                handle=handle,
                stopped=stopped,
            )
            phase = pod.status.phase if pod.status and pod.status.phase else 'Unknown'
            if phase != last_phase:
                self.logger.info(f"Pod {handle} is {phase}")
                last_phase = phase
                if on_phase is not None:
                    on_phase(phase)

            if phase == SUCCEEDED:
                return WorkloadOutcome(phase=phase)
            if phase == FAILED:
                return WorkloadOutcome(phase=phase, message=failure_message(pod))

            if deadline is not None and self.clock() >= deadline:
                raise WorkloadTimeoutError(str(handle), timeout, last_phase)

    def phase(self, handle: WorkloadHandle) -> Optional[str]:
        """
        Current phase of a pod, or None if it does not exist
        """
        try:
            pod = self.core_api.read_namespaced_pod(name=handle.name, namespace=handle.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return pod.status.phase if pod.status and pod.status.phase else 'Unknown'

    def teardown(self, handle: WorkloadHandle) -> None:
        """
        Delete the pod; a pod that is already gone counts as deleted

        Raises:
            TeardownError: If the delete call fails
        """
        try:
            self._delete(handle)
        except Exception as e:  # pylint: disable=broad-except
            raise TeardownError(f"cannot delete pod {handle}: {_api_reason(e)}") from e
        self.logger.info(f"Pod {handle} deleted")

    def _delete(self, handle: WorkloadHandle) -> None:
        try:
            self.core_api.delete_namespaced_pod(
                name=handle.name,
                namespace=handle.namespace,
                grace_period_seconds=0,
                body=kubernetes.client.V1DeleteOptions(),
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise

    def _read_with_retries(self, read: Callable[[], T], *, handle: WorkloadHandle, stopped: Any) -> T:
        attempts = self.config.read_retries + 1
        delay = self.config.retry_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return read()
            except Exception as e:  # pylint: disable=broad-except
                if not is_transient_error(e):
                    raise WorkloadError(f"cannot read pod {handle}: {_api_reason(e)}") from e
                if attempt == attempts:
                    raise WorkloadError(
                        f"cannot read pod {handle} after {attempts} attempts: {_api_reason(e)}"
                    ) from e
                self.logger.warning(
                    f"Transient error reading pod {handle} (attempt {attempt}/{attempts}): "
                    f"{_api_reason(e)}; retrying in {delay:.1f}s"
                )
                if stopped.wait(delay):
                    raise BackupCancelledError(f"stopped while waiting for pod {handle}") from e
                delay = min(delay * 2, self.config.retry_backoff_max_seconds)


def _api_reason(error: Exception) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else 'unknown'
        return f"API status {status} ({error.reason or 'no reason provided'})"
    return str(error).strip() or error.__class__.__name__
