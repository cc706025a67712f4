"""Shared test fixtures for deploy_caasp tests."""

import logging
import subprocess
from typing import Any, Dict, List
from unittest import mock

import pytest
import yaml


def node(count: int, memory: int, cpus: int) -> Dict[str, int]:
    return {"count": count, "memory": memory, "cpus": cpus}


MINIMAL_MODEL: Dict[str, Any] = {
    "nodes": {
        "master": node(1, 4096, 2),
        "worker": node(1, 4096, 2),
        "loadbalancer": node(1, 4096, 1),
        "storage": node(1, 4096, 1),
    }
}

SMALL_MODEL: Dict[str, Any] = {
    "nodes": {
        "master": node(2, 4096, 2),
        "worker": node(3, 6144, 4),
        "loadbalancer": node(1, 1024, 1),
        "storage": node(0, 2048, 1),
    }
}


def free_output(available: int) -> str:
    return (
        "               total        used        free      shared  buff/cache   available\n"
        f"Mem:           15895        5531        2745         629        7618        {available}\n"
        "Swap:           2047           0        2047\n"
    )


def write_config(path, models: Dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(models, handle, sort_keys=False)


@pytest.fixture(autouse=True)
def fresh_logger():
    """Drop handlers bound to a previous test's captured stderr."""
    logger = logging.getLogger("caasp.deploy")
    logger.handlers.clear()
    yield
    logger.handlers.clear()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep operator overrides from leaking into tests."""
    for key in ("CAASP_VM_PREFIX", "CAASP_DEPLOY_USER", "CAASP_CONFIG_MODEL", "SKUBA_VERBOSITY"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """Project directory with a config.yml, used as the working directory."""
    write_config(tmp_path / "config.yml", {"minimal": MINIMAL_MODEL, "small": SMALL_MODEL})
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def airgap_conf(project_dir):
    """Create the air-gapped registries configuration."""
    conf_dir = project_dir / "air-gap.d"
    conf_dir.mkdir()
    conf = conf_dir / "air-gapped-registries.conf"
    conf.write_text('[[registry]]\nlocation = "registry.suse.com"\n')
    return conf


@pytest.fixture
def available_memory():
    """Mutable holder for the MB reported by the mocked 'free -m'."""
    return {"value": 65536}


@pytest.fixture
def mock_run(available_memory):
    """Mock subprocess.run; 'free -m' reports available_memory, everything else succeeds."""
    calls: List[List[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(list(cmd))
        if cmd[0] == "free":
            return subprocess.CompletedProcess(cmd, 0, stdout=free_output(available_memory["value"]), stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    with mock.patch("deploy_caasp.subprocess.run", side_effect=fake_run) as run:
        run.calls = calls
        yield run


@pytest.fixture
def mock_which():
    """Pretend every required command is installed."""
    with mock.patch("deploy_caasp.shutil.which", side_effect=lambda name: f"/usr/bin/{name}") as which:
        yield which


def vagrant_calls(run) -> List[List[str]]:
    return [call for call in run.calls if call[0] == "vagrant"]
