from __future__ import annotations

import itertools
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import urllib3
from kubernetes.client import ApiException

from pg_backup_operator.config import WorkloadConfig
from pg_backup_operator.errors import (
    BackupCancelledError,
    TeardownError,
    WorkloadError,
    WorkloadTimeoutError,
)
from pg_backup_operator.workload import (
    WorkloadHandle,
    WorkloadManager,
    failure_message,
    is_transient_error,
)

HANDLE = WorkloadHandle(namespace="apps", name="pg-dump-orders")


def _pod(phase: str | None, *, message: str | None = None, container_statuses: list | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        status=SimpleNamespace(
            phase=phase,
            message=message,
            reason=None,
            container_statuses=container_statuses,
        )
    )


def _manager(core_api: Mock, *, timeout_seconds: int = 0, read_retries: int = 3, clock=None) -> WorkloadManager:
    config = WorkloadConfig(
        poll_interval_seconds=5,
        timeout_seconds=timeout_seconds,
        read_retries=read_retries,
        retry_backoff_seconds=1.0,
        retry_backoff_max_seconds=4.0,
    )
    if clock is None:
        return WorkloadManager(core_api, config)
    return WorkloadManager(core_api, config, clock=clock)


def _manifest() -> dict:
    return {"metadata": {"name": "pg-dump-orders", "namespace": "apps"}, "spec": {}}


def test_submit_creates_pod_and_returns_handle() -> None:
    core_api = Mock()

    handle = _manager(core_api).submit(_manifest())

    assert handle == HANDLE
    core_api.create_namespaced_pod.assert_called_once_with(namespace="apps", body=_manifest())


def test_submit_replaces_leftover_pod_on_conflict() -> None:
    core_api = Mock()
    core_api.create_namespaced_pod.side_effect = [ApiException(status=409, reason="AlreadyExists"), None]

    handle = _manager(core_api).submit(_manifest())

    assert handle == HANDLE
    assert core_api.create_namespaced_pod.call_count == 2
    core_api.delete_namespaced_pod.assert_called_once()


def test_submit_wraps_other_api_errors() -> None:
    core_api = Mock()
    core_api.create_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(WorkloadError, match="403"):
        _manager(core_api).submit(_manifest())


def test_await_completion_polls_until_succeeded(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = [_pod("Pending"), _pod("Running"), _pod("Succeeded")]

    outcome = _manager(core_api).await_completion(HANDLE, stopped=never_stopped)

    assert outcome.succeeded
    assert core_api.read_namespaced_pod.call_count == 3
    never_stopped.wait.assert_called_with(5)


def test_await_completion_reports_each_phase_change(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = [_pod("Pending"), _pod("Running"), _pod("Running"), _pod("Succeeded")]
    seen: list[str] = []

    _manager(core_api).await_completion(HANDLE, stopped=never_stopped, on_phase=seen.append)

    assert seen == ["Pending", "Running", "Succeeded"]


def test_await_completion_reports_platform_message_on_failure(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.return_value = _pod("Failed", message="pg_dump: connection refused")

    outcome = _manager(core_api).await_completion(HANDLE, stopped=never_stopped)

    assert not outcome.succeeded
    assert outcome.message == "pg_dump: connection refused"


def test_failure_message_falls_back_to_container_exit_code() -> None:
    terminated = SimpleNamespace(reason="Error", exit_code=1, message=None)
    pod = _pod("Failed", container_statuses=[SimpleNamespace(state=SimpleNamespace(terminated=terminated))])

    assert failure_message(pod) == "Error (exit code 1)"


def test_await_completion_without_timeout_keeps_polling(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = [_pod("Running")] * 500 + [_pod("Succeeded")]
    clock = itertools.count(start=0, step=3600).__next__

    outcome = _manager(core_api, timeout_seconds=0, clock=clock).await_completion(HANDLE, stopped=never_stopped)

    assert outcome.succeeded
    assert core_api.read_namespaced_pod.call_count == 501


def test_await_completion_raises_timeout_after_deadline(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.return_value = _pod("Running")
    clock = iter([0.0, 10.0, 20.0, 30.0, 40.0]).__next__

    with pytest.raises(WorkloadTimeoutError) as excinfo:
        _manager(core_api, timeout_seconds=25, clock=clock).await_completion(HANDLE, stopped=never_stopped)

    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.last_phase == "Running"
    assert core_api.read_namespaced_pod.call_count == 3


def test_await_completion_stops_when_cancelled() -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.return_value = _pod("Running")
    stopped = Mock()
    stopped.wait.side_effect = [False, True]

    with pytest.raises(BackupCancelledError):
        _manager(core_api).await_completion(HANDLE, stopped=stopped)

    assert core_api.read_namespaced_pod.call_count == 1


def test_await_completion_retries_transient_read_errors(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = [
        ApiException(status=503, reason="Service Unavailable"),
        urllib3.exceptions.ProtocolError("connection reset"),
        _pod("Succeeded"),
    ]

    outcome = _manager(core_api).await_completion(HANDLE, stopped=never_stopped)

    assert outcome.succeeded
    waits = [call.args[0] for call in never_stopped.wait.call_args_list]
    assert waits == [5, 1.0, 2.0]


def test_await_completion_gives_up_after_bounded_retries(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(WorkloadError, match="after 3 attempts"):
        _manager(core_api, read_retries=2).await_completion(HANDLE, stopped=never_stopped)

    assert core_api.read_namespaced_pod.call_count == 3


def test_await_completion_does_not_retry_missing_pod(never_stopped: Mock) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(WorkloadError, match="404"):
        _manager(core_api).await_completion(HANDLE, stopped=never_stopped)

    assert core_api.read_namespaced_pod.call_count == 1


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ApiException(status=429, reason="Too Many Requests"), True),
        (ApiException(status=502, reason="Bad Gateway"), True),
        (ApiException(status=403, reason="Forbidden"), False),
        (ConnectionResetError("reset"), True),
        (ValueError("bad"), False),
    ],
)
def test_is_transient_error(error: Exception, expected: bool) -> None:
    assert is_transient_error(error) is expected


def test_phase_returns_none_for_missing_pod() -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

    assert _manager(core_api).phase(HANDLE) is None


def test_teardown_ignores_already_deleted_pod() -> None:
    core_api = Mock()
    core_api.delete_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

    _manager(core_api).teardown(HANDLE)

    core_api.delete_namespaced_pod.assert_called_once()
    assert core_api.delete_namespaced_pod.call_args.kwargs["grace_period_seconds"] == 0


def test_teardown_failure_raises_teardown_error() -> None:
    core_api = Mock()
    core_api.delete_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(TeardownError, match="pg-dump-orders"):
        _manager(core_api).teardown(HANDLE)
