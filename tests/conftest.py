from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest

from pg_backup_operator import config as config_module
from pg_backup_operator.config import OperatorConfig, set_config


@pytest.fixture(autouse=True)
def operator_config(monkeypatch: pytest.MonkeyPatch) -> OperatorConfig:
    monkeypatch.setattr(config_module, "_config", None)
    config = OperatorConfig()
    set_config(config)
    return config


@pytest.fixture
def never_stopped() -> Mock:
    return Mock(**{"wait.return_value": False})


def _backup_body(
    *,
    name: str = "orders",
    namespace: str = "apps",
    uid: str = "uid-orders-1",
    status: dict[str, Any] | None = None,
    **spec_overrides: Any,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "host": "db.internal",
        "port": 5432,
        "user": "app",
        "dbName": "appdb",
        "containerName": "backups",
        "storageAccount": "acct1",
        "postgresSecret": {"name": "pgsec", "key": "password"},
        "azureSecret": {"name": "azsec", "key": "key"},
    }
    spec.update(spec_overrides)
    return {
        "apiVersion": "database.muntashirislam.com/v1alpha1",
        "kind": "PostgresBackup",
        "metadata": {"name": name, "namespace": namespace, "uid": uid},
        "spec": spec,
        "status": status or {},
    }


@pytest.fixture
def backup_body() -> Any:
    return _backup_body
