"""
Endpoint collaborators driven by the readiness checks and remediations.

Every call goes through PowerShell (or httpx for reachability) and returns a
small status snapshot.  Failures surface as :class:`ExternalCallError`; the
probe and remediation layers decide what that means for the session.
"""

from __future__ import annotations

import ctypes
import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import ExternalCallError

logger = logging.getLogger(__name__)

DEFENDER_POLICY_KEY = r"HKLM:\SOFTWARE\Policies\Microsoft\Windows Defender"
DEFENDER_RTP_POLICY_KEY = DEFENDER_POLICY_KEY + r"\Real-Time Protection"
ATP_POLICY_KEY = r"HKLM:\SOFTWARE\Policies\Microsoft\Windows Advanced Threat Protection"
ATP_STATUS_KEY = r"HKLM:\SOFTWARE\Microsoft\Windows Advanced Threat Protection\Status"

PENDING_REBOOT_KEYS = {
    "Component Based Servicing": r"HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending",
    "Windows Update": r"HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired",
}


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class PowerShell:
    """Runs PowerShell snippets and returns their output."""

    def __init__(self, executable: Optional[str] = None, timeout: float = 120.0):
        self.executable = executable or ("powershell.exe" if os.name == "nt" else "pwsh")
        self.timeout = timeout

    def run(self, script: str, timeout: Optional[float] = None) -> str:
        cmd = [self.executable, "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script]
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout or self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExternalCallError(f"PowerShell not available ({self.executable})", operation="powershell") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalCallError(
                f"PowerShell call timed out after {exc.timeout:.0f}s", operation="powershell"
            ) from exc

        if proc.returncode != 0:
            error = proc.stderr.strip() or proc.stdout.strip() or "PowerShell command failed"
            raise ExternalCallError(f"PowerShell exited with {proc.returncode}: {error}", operation="powershell")
        return proc.stdout.strip()

    def run_json(self, script: str, timeout: Optional[float] = None) -> Any:
        output = self.run(script, timeout=timeout)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise ExternalCallError(f"Unexpected PowerShell output: {output[:200]}", operation="powershell") from exc


@dataclass
class ServiceState:
    name: str
    status: str = "NotFound"
    start_type: str = "Unknown"

    @property
    def exists(self) -> bool:
        return self.status != "NotFound"

    @property
    def running(self) -> bool:
        return self.status == "Running"


@dataclass
class EngineStatus:
    am_service_enabled: bool
    real_time_protection: bool
    running_mode: str = "Normal"
    product_version: str = ""
    signature_version: str = ""
    signature_age_days: int = 0

    @property
    def passive(self) -> bool:
        return "passive" in self.running_mode.lower()


@dataclass
class OsInfo:
    caption: str
    build: int
    is_server: bool


@dataclass
class UpdateItem:
    update_id: str
    title: str
    kb: str = ""


@dataclass
class UpdateInstallResult:
    installed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reboot_required: bool = False


class ServiceManager:
    def __init__(self, shell: PowerShell):
        self.shell = shell

    def query(self, name: str) -> ServiceState:
        script = (
            f"$s = Get-Service -Name {_quote(name)} -ErrorAction SilentlyContinue; "
            "if ($null -eq $s) { '{}' } else { "
            "[pscustomobject]@{Name=$s.Name; Status=$s.Status.ToString(); StartType=$s.StartType.ToString()} "
            "| ConvertTo-Json -Compress }"
        )
        data = self.shell.run_json(script) or {}
        if not data:
            return ServiceState(name=name)
        return ServiceState(name=data.get("Name", name), status=data.get("Status", "Unknown"), start_type=data.get("StartType", "Unknown"))

    def start(self, name: str) -> ServiceState:
        self.shell.run(f"Start-Service -Name {_quote(name)} -ErrorAction Stop")
        return self.query(name)

    def set_start_type(self, name: str, start_type: str) -> ServiceState:
        self.shell.run(f"Set-Service -Name {_quote(name)} -StartupType {start_type} -ErrorAction Stop")
        return self.query(name)


class ProtectionEngine:
    """Microsoft Defender Antivirus control surface."""

    def __init__(self, shell: PowerShell):
        self.shell = shell

    def status(self) -> EngineStatus:
        script = (
            "Get-MpComputerStatus | Select-Object AMServiceEnabled, RealTimeProtectionEnabled, "
            "AMRunningMode, AMProductVersion, AntivirusSignatureVersion, AntivirusSignatureAge "
            "| ConvertTo-Json -Compress"
        )
        data = self.shell.run_json(script)
        if not isinstance(data, dict):
            raise ExternalCallError("Get-MpComputerStatus returned no data", operation="engine.status")
        return EngineStatus(
            am_service_enabled=bool(data.get("AMServiceEnabled")),
            real_time_protection=bool(data.get("RealTimeProtectionEnabled")),
            running_mode=str(data.get("AMRunningMode") or "Normal"),
            product_version=str(data.get("AMProductVersion") or ""),
            signature_version=str(data.get("AntivirusSignatureVersion") or ""),
            signature_age_days=int(data.get("AntivirusSignatureAge") or 0),
        )

    def set_real_time_protection(self, enabled: bool) -> EngineStatus:
        flag = "$false" if enabled else "$true"
        self.shell.run(f"Set-MpPreference -DisableRealtimeMonitoring {flag}")
        return self.status()

    def update_signatures(self) -> EngineStatus:
        self.shell.run("Update-MpSignature -ErrorAction Stop", timeout=600)
        return self.status()


class UpdateManager:
    """Windows Update Agent access through its COM API."""

    SEARCH_SCRIPT = (
        "$s = New-Object -ComObject Microsoft.Update.Session; "
        "$r = $s.CreateUpdateSearcher().Search(\"IsInstalled=0 and IsHidden=0 and Type='Software'\"); "
        "@($r.Updates | ForEach-Object { [pscustomobject]@{Id=$_.Identity.UpdateID; Title=$_.Title; "
        "KB=($_.KBArticleIDs -join ',')} }) | ConvertTo-Json -Compress"
    )

    def __init__(self, shell: PowerShell, install_timeout: float = 1800.0):
        self.shell = shell
        self.install_timeout = install_timeout

    def search(self) -> List[UpdateItem]:
        data = self.shell.run_json(self.SEARCH_SCRIPT, timeout=300)
        if data is None:
            return []
        if isinstance(data, dict):
            data = [data]
        return [UpdateItem(update_id=item.get("Id", ""), title=item.get("Title", ""), kb=item.get("KB", "")) for item in data]

    def install(self, update_ids: List[str]) -> UpdateInstallResult:
        ids = ",".join(_quote(update_id) for update_id in update_ids)
        script = (
            f"$ids = @({ids}); "
            "$s = New-Object -ComObject Microsoft.Update.Session; "
            "$r = $s.CreateUpdateSearcher().Search(\"IsInstalled=0 and IsHidden=0 and Type='Software'\"); "
            "$c = New-Object -ComObject Microsoft.Update.UpdateColl; "
            "foreach ($u in $r.Updates) { if ($ids -contains $u.Identity.UpdateID) { $u.AcceptEula(); [void]$c.Add($u) } }; "
            "$d = $s.CreateUpdateDownloader(); $d.Updates = $c; [void]$d.Download(); "
            "$i = $s.CreateUpdateInstaller(); $i.Updates = $c; $res = $i.Install(); "
            "$items = for ($n = 0; $n -lt $c.Count; $n++) { [pscustomobject]@{Title=$c.Item($n).Title; "
            "Code=$res.GetUpdateResult($n).ResultCode} }; "
            "[pscustomobject]@{RebootRequired=$res.RebootRequired; Items=@($items)} | ConvertTo-Json -Compress -Depth 4"
        )
        data = self.shell.run_json(script, timeout=self.install_timeout) or {}
        result = UpdateInstallResult(reboot_required=bool(data.get("RebootRequired")))
        items = data.get("Items") or []
        if isinstance(items, dict):
            items = [items]
        for item in items:
            # OperationResultCode: 2 succeeded, 3 succeeded with errors
            if item.get("Code") in (2, 3):
                result.installed.append(item.get("Title", ""))
            else:
                result.failed.append(item.get("Title", ""))
        return result


class SystemInfo:
    """Read-mostly facts about the local machine."""

    def __init__(self, shell: PowerShell):
        self.shell = shell

    def os_info(self) -> OsInfo:
        data = self.shell.run_json(
            "Get-CimInstance Win32_OperatingSystem | Select-Object Caption, BuildNumber, ProductType | ConvertTo-Json -Compress"
        )
        if not isinstance(data, dict):
            raise ExternalCallError("Win32_OperatingSystem query returned no data", operation="os_info")
        return OsInfo(
            caption=str(data.get("Caption") or "Unknown"),
            build=int(data.get("BuildNumber") or 0),
            is_server=int(data.get("ProductType") or 1) != 1,
        )

    def is_admin(self) -> bool:
        if os.name == "nt":
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        return os.geteuid() == 0

    def free_disk_gb(self, path: Optional[str] = None) -> float:
        target = path or (os.environ.get("SystemDrive", "C:") + "\\" if os.name == "nt" else "/")
        return shutil.disk_usage(target).free / (1024 ** 3)

    def pending_reboot_reasons(self) -> List[str]:
        checks = "; ".join(
            f"if (Test-Path {_quote(path)}) {{ {_quote(reason)} }}" for reason, path in PENDING_REBOOT_KEYS.items()
        )
        output = self.shell.run(checks)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def read_registry(self, key: str, name: str) -> Optional[Any]:
        script = (
            f"$p = Get-ItemProperty -Path {_quote(key)} -Name {_quote(name)} -ErrorAction SilentlyContinue; "
            f"if ($null -eq $p) {{ 'null' }} else {{ $p.{name} | ConvertTo-Json -Compress }}"
        )
        return self.shell.run_json(script)

    def write_registry(self, key: str, name: str, value: int) -> None:
        script = (
            f"if (-not (Test-Path {_quote(key)})) {{ New-Item -Path {_quote(key)} -Force | Out-Null }}; "
            f"New-ItemProperty -Path {_quote(key)} -Name {_quote(name)} -Value {int(value)} "
            "-PropertyType DWord -Force | Out-Null"
        )
        self.shell.run(script)

    def feature_state(self, name: str = "Windows-Defender") -> str:
        """Return ``Installed``, ``Available``, ``Removed`` or ``NotApplicable`` (client SKUs)."""
        script = (
            "if (Get-Command Get-WindowsFeature -ErrorAction SilentlyContinue) { "
            f"(Get-WindowsFeature -Name {_quote(name)}).InstallState.ToString() }} else {{ 'NotApplicable' }}"
        )
        return self.shell.run(script) or "Unknown"

    def install_feature(self, name: str = "Windows-Defender") -> bool:
        """Install a server feature; returns True when a restart is needed."""
        data = self.shell.run_json(
            f"Install-WindowsFeature -Name {_quote(name)} | Select-Object Success, RestartNeeded | ConvertTo-Json -Compress",
            timeout=900,
        ) or {}
        if not data.get("Success"):
            raise ExternalCallError(f"Install-WindowsFeature {name} did not succeed", operation="install_feature")
        return str(data.get("RestartNeeded", "No")).lower() in {"yes", "true", "1"}

    def third_party_antivirus(self) -> List[str]:
        script = (
            "@(Get-CimInstance -Namespace root/SecurityCenter2 -ClassName AntiVirusProduct -ErrorAction SilentlyContinue "
            "| Where-Object { $_.displayName -notmatch 'Defender' } | ForEach-Object { $_.displayName }) | ConvertTo-Json -Compress"
        )
        data = self.shell.run_json(script)
        if data is None:
            return []
        if isinstance(data, str):
            return [data]
        return list(data)

    def restart(self) -> None:
        self.shell.run("Restart-Computer -Force")


class NetworkProbe:
    def __init__(self, timeout: float = 8.0):
        self.timeout = timeout

    def reach(self, url: str) -> int:
        """Return the HTTP status for ``url``; any response means the endpoint is reachable."""
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=False) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            raise ExternalCallError(f"{url}: {exc}", operation="network") from exc
        return response.status_code


@dataclass
class Host:
    """Bundle of collaborators handed to probes and remediation strategies."""

    system: SystemInfo
    services: ServiceManager
    engine: ProtectionEngine
    updates: UpdateManager
    network: NetworkProbe

    @classmethod
    def local(cls, network_timeout: float = 8.0) -> "Host":
        shell = PowerShell()
        return cls(
            system=SystemInfo(shell),
            services=ServiceManager(shell),
            engine=ProtectionEngine(shell),
            updates=UpdateManager(shell),
            network=NetworkProbe(timeout=network_timeout),
        )


def onboarding_state(system: SystemInfo) -> Dict[str, Any]:
    """Read the Sense onboarding registration state."""
    state = system.read_registry(ATP_STATUS_KEY, "OnboardingState")
    org_id = system.read_registry(ATP_STATUS_KEY, "OrgId")
    return {"onboarded": state == 1, "state": state, "org_id": org_id}
