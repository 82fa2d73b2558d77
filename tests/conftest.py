from __future__ import annotations

from pathlib import Path

import pytest

from relm.cluster import InMemoryCluster
from relm.release import ReleaseManager
from relm.store import ReleaseStore
from relm.ui.console import Console, set_console

from support import BANK_CHART


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "RELM_STORE_URL",
        "RELM_REDIS_URL",
        "RELM_CLUSTER",
        "RELM_NAMESPACE",
        "RELM_ENVIRONMENT",
        "RELM_REGISTRY",
        "RELM_ISSUER_URL",
        "RELM_READINESS_TIMEOUT",
        "RELM_KUBECTL",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def bank_chart_dir() -> Path:
    return BANK_CHART


@pytest.fixture
def store() -> ReleaseStore:
    return ReleaseStore("sqlite://")


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def manager(store, cluster) -> ReleaseManager:
    return ReleaseManager(store, cluster)
