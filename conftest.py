"""Shared fakes for the readiness tests."""

from __future__ import annotations

import io
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from rich.console import Console

from mde_readiness.config import Settings, get_settings
from mde_readiness.errors import ExternalCallError
from mde_readiness.host import (
    ATP_STATUS_KEY,
    EngineStatus,
    Host,
    OsInfo,
    ServiceState,
    UpdateInstallResult,
    UpdateItem,
)
from mde_readiness.packages import PackageArtifact, PackageRunResult

REPO_ROOT = Path(__file__).resolve().parent


class FakeSystem:
    def __init__(self) -> None:
        self.admin = True
        self.os = OsInfo(caption="Windows Server 2022 Datacenter", build=20348, is_server=True)
        self.free_gb = 40.0
        self.reboot_reasons: List[str] = []
        self.registry: Dict[Tuple[str, str], object] = {}
        self.feature = "Installed"
        self.feature_restart = False
        self.av_products: List[str] = []
        self.restarted = False
        self.os_error: Optional[Exception] = None

    def is_admin(self) -> bool:
        return self.admin

    def os_info(self) -> OsInfo:
        if self.os_error is not None:
            raise self.os_error
        return self.os

    def free_disk_gb(self, path=None) -> float:
        return self.free_gb

    def pending_reboot_reasons(self) -> List[str]:
        return list(self.reboot_reasons)

    def read_registry(self, key: str, name: str):
        return self.registry.get((key, name))

    def write_registry(self, key: str, name: str, value: int) -> None:
        self.registry[(key, name)] = value

    def feature_state(self, name: str = "Windows-Defender") -> str:
        return self.feature

    def install_feature(self, name: str = "Windows-Defender") -> bool:
        self.feature = "Installed"
        return self.feature_restart

    def third_party_antivirus(self) -> List[str]:
        return list(self.av_products)

    def restart(self) -> None:
        self.restarted = True

    def mark_onboarded(self) -> None:
        self.registry[(ATP_STATUS_KEY, "OnboardingState")] = 1
        self.registry[(ATP_STATUS_KEY, "OrgId")] = "contoso-org"


class FakeServices:
    def __init__(self) -> None:
        self.states = {
            "WinDefend": ServiceState("WinDefend", "Running", "Automatic"),
            "Sense": ServiceState("Sense", "Running", "Manual"),
        }
        self.fail_start = False
        self.started: List[str] = []

    def query(self, name: str) -> ServiceState:
        state = self.states.get(name)
        if state is None:
            return ServiceState(name)
        return replace(state)

    def start(self, name: str) -> ServiceState:
        if self.fail_start:
            raise ExternalCallError(f"Cannot start {name}", operation="service")
        self.started.append(name)
        self.states[name] = replace(self.states[name], status="Running")
        return self.query(name)

    def set_start_type(self, name: str, start_type: str) -> ServiceState:
        self.states[name] = replace(self.states[name], start_type=start_type)
        return self.query(name)


class FakeEngine:
    def __init__(self) -> None:
        self.state = EngineStatus(
            am_service_enabled=True,
            real_time_protection=True,
            product_version="4.18.24090.11",
            signature_version="1.419.200.0",
            signature_age_days=0,
        )

    def status(self) -> EngineStatus:
        return replace(self.state)

    def set_real_time_protection(self, enabled: bool) -> EngineStatus:
        self.state = replace(self.state, real_time_protection=enabled)
        return self.status()

    def update_signatures(self) -> EngineStatus:
        self.state = replace(self.state, signature_age_days=0, signature_version="1.419.300.0")
        return self.status()


class FakeUpdates:
    def __init__(self) -> None:
        self.pending: List[UpdateItem] = []
        self.fail: List[str] = []
        self.reboot_required = False

    def search(self) -> List[UpdateItem]:
        return list(self.pending)

    def install(self, update_ids: List[str]) -> UpdateInstallResult:
        result = UpdateInstallResult(reboot_required=self.reboot_required)
        for item in list(self.pending):
            if item.update_id not in update_ids:
                continue
            if item.title in self.fail:
                result.failed.append(item.title)
            else:
                result.installed.append(item.title)
                self.pending.remove(item)
        return result


class FakeNetwork:
    def __init__(self) -> None:
        self.unreachable: List[str] = []

    def reach(self, url: str) -> int:
        if url in self.unreachable:
            raise ExternalCallError(f"{url}: connection refused", operation="network")
        return 200


def make_host() -> Host:
    return Host(
        system=FakeSystem(),
        services=FakeServices(),
        engine=FakeEngine(),
        updates=FakeUpdates(),
        network=FakeNetwork(),
    )


class FakePackageRunner:
    """Stands in for ``run_package``; optionally marks the host onboarded."""

    def __init__(self, host: Host, exit_code: int = 0, registers: bool = True):
        self.host = host
        self.exit_code = exit_code
        self.registers = registers
        self.calls: List[PackageArtifact] = []

    def __call__(self, artifact: PackageArtifact) -> PackageRunResult:
        self.calls.append(artifact)
        if self.exit_code == 0 and self.registers:
            self.host.system.mark_onboarded()
        return PackageRunResult(artifact=artifact, exit_code=self.exit_code)


@pytest.fixture
def host() -> Host:
    return make_host()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        project_root=REPO_ROOT,
        report_dir=tmp_path / "reports",
        inventory_path=tmp_path / "hosts",
        playbooks_dir=REPO_ROOT / "playbooks",
        runner_dir=tmp_path / "runner",
        connectivity_urls=("https://winatp-gw-weu.microsoft.com/test",),
        reprobe_wait=0,
        reboot_countdown=3,
    )


@pytest.fixture
def console() -> Console:
    return Console(file=io.StringIO(), width=160, color_system=None)


@pytest.fixture
def onboarding_script(tmp_path: Path) -> Path:
    package = tmp_path / "package"
    package.mkdir()
    script = package / "WindowsDefenderATPOnboardingScript.cmd"
    script.write_text("@echo off\r\nexit /b 0\r\n")
    return script


@pytest.fixture
def configured(tmp_path: Path, monkeypatch):
    """Point the cached settings at a throwaway inventory and runner directory."""
    inventory = tmp_path / "hosts"
    inventory.write_text(
        "[servers]\n"
        "web01 ansible_user=azureuser ansible_ssh_private_key_file=~/.ssh/id_rsa\n"
        "web02 ansible_user=azureuser\n"
        "db01\n"
        "\n"
        "[databases]\n"
        "db02\n"
        "\n"
        "[linux:children]\n"
        "servers\n"
        "databases\n"
        "\n"
        "[servers:vars]\n"
        "ansible_python_interpreter=/usr/bin/python3\n"
    )
    monkeypatch.setenv("MDE_READINESS_ROOT", str(REPO_ROOT))
    monkeypatch.setenv("MDE_READINESS_REPORT_DIR", str(tmp_path / "reports"))
    monkeypatch.setenv("MDE_READINESS_INVENTORY", str(inventory))
    monkeypatch.setenv("MDE_READINESS_RUNNER_DIR", str(tmp_path / "runner"))
    for name in ("TENANT_ID", "CLIENT_ID", "CLIENT_SECRET", "KEYVAULT_NAME", "SECRET_NAME"):
        monkeypatch.delenv("MDE_READINESS_" + name, raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
