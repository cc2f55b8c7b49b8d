"""
The readiness probe set.

Each :class:`Check` wraps a probe function that inspects the endpoint and
returns a :class:`Finding`.  Probes are read-only with one exception: the
services probe may start a correctly configured but stopped service and
records that as a configuration change.  :func:`build_probe_set` returns the
checks in their declared order; "Existing Onboarding" must stay after the
policy-gating checks because an onboarded device short-circuits the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .errors import ExternalCallError, ProbeError
from .host import (
    ATP_POLICY_KEY,
    DEFENDER_POLICY_KEY,
    DEFENDER_RTP_POLICY_KEY,
    Host,
    onboarding_state,
)
from .models import ChangeKind, CheckKind, CheckResult, CheckStatus, ConfigurationChange, Severity
from .session import SessionRecorder

DEFENDER_SERVICE = "WinDefend"
SENSE_SERVICE = "Sense"
DEFENDER_FEATURE = "Windows-Defender"


@dataclass
class Finding:
    passed: bool
    detail: str
    hint: Optional[str] = None
    sub_issues: Tuple[str, ...] = ()
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckContext:
    """Everything a probe may use. Passed per call, never retained."""

    host: Host
    settings: Settings
    recorder: SessionRecorder


Probe = Callable[[CheckContext], Finding]


@dataclass(frozen=True)
class Check:
    name: str
    kind: CheckKind
    probe: Probe
    severity: Severity
    hint: str

    @property
    def critical(self) -> bool:
        return self.severity is Severity.CRITICAL

    def run(self, ctx: CheckContext) -> CheckResult:
        try:
            finding = self.probe(ctx)
        except OSError as exc:
            raise ProbeError(f"Could not read system state: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise ProbeError(f"Unexpected data while probing: {exc}") from exc
        return CheckResult(
            check_name=self.name,
            kind=self.kind,
            severity=self.severity,
            status=CheckStatus.PASSED if finding.passed else CheckStatus.FAILED,
            detail=finding.detail,
            remediation_hint=None if finding.passed else (finding.hint or self.hint),
            sub_issues=tuple(finding.sub_issues),
            data=dict(finding.data),
        )


def probe_admin(ctx: CheckContext) -> Finding:
    if ctx.host.system.is_admin():
        return Finding(True, "Running with administrative privileges")
    return Finding(False, "Current session is not elevated", sub_issues=("NotElevated",))


def probe_os_version(ctx: CheckContext) -> Finding:
    info = ctx.host.system.os_info()
    minimum = ctx.settings.min_os_build
    detail = f"{info.caption} (build {info.build}, minimum {minimum})"
    if info.build >= minimum:
        return Finding(True, detail, data={"build": info.build, "server": info.is_server})
    return Finding(False, detail, sub_issues=("BuildTooOld",), data={"build": info.build, "server": info.is_server})


def probe_disk_space(ctx: CheckContext) -> Finding:
    free = ctx.host.system.free_disk_gb()
    minimum = ctx.settings.min_free_disk_gb
    detail = f"{free:.1f} GB free on the system drive (minimum {minimum:g} GB)"
    if free >= minimum:
        return Finding(True, detail, data={"free_gb": free})
    return Finding(False, detail, sub_issues=("LowDiskSpace",), data={"free_gb": free})


def probe_pending_reboot(ctx: CheckContext) -> Finding:
    reasons = ctx.host.system.pending_reboot_reasons()
    if not reasons:
        return Finding(True, "No restart pending")
    return Finding(False, "Restart pending: " + ", ".join(reasons), sub_issues=tuple(reasons))


def probe_defender_features(ctx: CheckContext) -> Finding:
    state = ctx.host.system.feature_state(DEFENDER_FEATURE)
    if state == "NotApplicable":
        return Finding(True, "Client edition, Microsoft Defender Antivirus is built in", data={"state": state})
    if state == "Installed":
        return Finding(True, f"{DEFENDER_FEATURE} feature installed", data={"state": state})
    return Finding(
        False,
        f"{DEFENDER_FEATURE} feature is {state}",
        sub_issues=("FeatureMissing",),
        data={"state": state},
    )


def probe_defender_services(ctx: CheckContext) -> Finding:
    services = ctx.host.services
    issues: List[str] = []
    notes: List[str] = []

    defender = services.query(DEFENDER_SERVICE)
    if not defender.exists:
        issues.append(f"{DEFENDER_SERVICE}:Missing")
    else:
        if defender.start_type != "Automatic":
            issues.append(f"{DEFENDER_SERVICE}:StartupType")
        if not defender.running:
            if defender.start_type == "Automatic" and ctx.settings.self_heal_services:
                defender = _start_in_place(ctx, DEFENDER_SERVICE)
            if defender.running:
                notes.append(f"{DEFENDER_SERVICE} was stopped and has been started")
            else:
                issues.append(f"{DEFENDER_SERVICE}:Stopped")

    sense = services.query(SENSE_SERVICE)
    if not sense.exists:
        issues.append(f"{SENSE_SERVICE}:Missing")
    elif sense.start_type == "Disabled":
        issues.append(f"{SENSE_SERVICE}:Disabled")

    states = {
        DEFENDER_SERVICE: {"status": defender.status, "start_type": defender.start_type},
        SENSE_SERVICE: {"status": sense.status, "start_type": sense.start_type},
    }
    if issues:
        return Finding(False, "Service issues: " + ", ".join(issues), sub_issues=tuple(issues), data=states)
    detail = f"{DEFENDER_SERVICE} {defender.status}/{defender.start_type}, {SENSE_SERVICE} present"
    if notes:
        detail += " (" + "; ".join(notes) + ")"
    return Finding(True, detail, data=states)


def _start_in_place(ctx: CheckContext, name: str):
    location = f"Service:{name}"
    try:
        state = ctx.host.services.start(name)
    except ExternalCallError as exc:
        ctx.recorder.record_change(
            ConfigurationChange(ChangeKind.SERVICE, f"Start stopped service {name} failed: {exc}", location, False)
        )
        return ctx.host.services.query(name)
    ctx.recorder.record_change(
        ConfigurationChange(ChangeKind.SERVICE, f"Started stopped service {name}", location, state.running)
    )
    return state


def probe_signatures(ctx: CheckContext) -> Finding:
    status = ctx.host.engine.status()
    limit = ctx.settings.signature_max_age_days
    detail = f"Security intelligence {status.signature_version or 'unknown'} is {status.signature_age_days} day(s) old (limit {limit})"
    data = {"age_days": status.signature_age_days, "version": status.signature_version}
    if status.signature_age_days <= limit:
        return Finding(True, detail, data=data)
    return Finding(False, detail, sub_issues=("Outdated",), data=data)


def probe_real_time_protection(ctx: CheckContext) -> Finding:
    status = ctx.host.engine.status()
    if status.real_time_protection:
        return Finding(True, "Real-time protection is enabled")
    if status.passive or ctx.settings.passive_mode:
        return Finding(True, f"Real-time protection deferred ({status.running_mode})", data={"mode": status.running_mode})
    return Finding(False, "Real-time protection is disabled", sub_issues=("Disabled",), data={"mode": status.running_mode})


def probe_passive_mode(ctx: CheckContext) -> Finding:
    desired = ctx.settings.passive_mode
    products: List[str] = []
    if desired is None:
        products = ctx.host.system.third_party_antivirus()
        desired = bool(products)
    current = ctx.host.system.read_registry(ATP_POLICY_KEY, "ForceDefenderPassiveMode") == 1
    data = {"desired": desired, "current": current, "third_party": products}
    wanted = "passive" if desired else "active"
    actual = "passive" if current else "active"
    detail = f"Defender configured for {actual} mode, {wanted} mode expected"
    if products:
        detail += f" (third-party antivirus: {', '.join(products)})"
    if current == desired:
        return Finding(True, detail, data=data)
    return Finding(False, detail, sub_issues=("ModeMismatch",), data=data)


def probe_windows_updates(ctx: CheckContext) -> Finding:
    pending = ctx.host.updates.search()
    if not pending:
        return Finding(True, "No pending software updates")
    titles = tuple(item.title for item in pending)
    return Finding(
        False,
        f"{len(pending)} pending update(s)",
        sub_issues=titles,
        data={"update_ids": [item.update_id for item in pending], "titles": list(titles)},
    )


def probe_network(ctx: CheckContext) -> Finding:
    reached: List[str] = []
    failures: List[str] = []
    for url in ctx.settings.connectivity_urls:
        try:
            code = ctx.host.network.reach(url)
        except ExternalCallError as exc:
            failures.append(str(exc))
            continue
        reached.append(f"{url} ({code})")
    if failures:
        raise ExternalCallError("Unreachable: " + "; ".join(failures), operation="network")
    return Finding(True, f"Reached {len(reached)} service endpoint(s)", data={"reached": reached})


def probe_group_policy(ctx: CheckContext) -> Finding:
    system = ctx.host.system
    blocking = {
        "DisableAntiSpyware": system.read_registry(DEFENDER_POLICY_KEY, "DisableAntiSpyware"),
        "DisableAntiVirus": system.read_registry(DEFENDER_POLICY_KEY, "DisableAntiVirus"),
        "DisableRealtimeMonitoring": system.read_registry(DEFENDER_RTP_POLICY_KEY, "DisableRealtimeMonitoring"),
    }
    issues = tuple(name for name, value in blocking.items() if value == 1)
    if not issues:
        return Finding(True, "No policies disable Microsoft Defender Antivirus")
    return Finding(False, "Blocking policies: " + ", ".join(issues), sub_issues=issues, data=blocking)


def probe_existing_onboarding(ctx: CheckContext) -> Finding:
    state = onboarding_state(ctx.host.system)
    if state["onboarded"]:
        org = state.get("org_id") or "unknown organisation"
        return Finding(
            False,
            f"Device is already onboarded ({org})",
            hint="Offboard the device first if it must move to another tenant.",
            sub_issues=("AlreadyOnboarded",),
            data=state,
        )
    return Finding(True, "Device is not onboarded yet", data=state)


# name, kind, probe, default severity, generic hint
_DECLARED_CHECKS = (
    ("Administrator Privileges", CheckKind.ADMIN_PRIVILEGES, probe_admin, Severity.CRITICAL,
     "Re-run the tool from an elevated prompt (Run as administrator)."),
    ("Operating System Version", CheckKind.OS_VERSION, probe_os_version, Severity.CRITICAL,
     "Upgrade to Windows 10 1809 / Windows Server 2019 or later."),
    ("Disk Space", CheckKind.DISK_SPACE, probe_disk_space, Severity.CRITICAL,
     "Free space on the system drive (Disk Cleanup, remove temporary files)."),
    ("Pending Reboot", CheckKind.PENDING_REBOOT, probe_pending_reboot, Severity.ADVISORY,
     "Restart the device before onboarding."),
    ("Windows Defender Features", CheckKind.DEFENDER_FEATURES, probe_defender_features, Severity.CRITICAL,
     "Install the Windows-Defender server feature."),
    ("Windows Defender Services", CheckKind.DEFENDER_SERVICES, probe_defender_services, Severity.CRITICAL,
     "Set WinDefend to Automatic and start it; make sure the Sense service is not disabled."),
    ("Security Intelligence Updates", CheckKind.SIGNATURES, probe_signatures, Severity.ADVISORY,
     "Run Update-MpSignature to refresh security intelligence."),
    ("Real-Time Protection", CheckKind.REAL_TIME_PROTECTION, probe_real_time_protection, Severity.ADVISORY,
     "Enable real-time protection (Set-MpPreference -DisableRealtimeMonitoring $false)."),
    ("Passive Mode Configuration", CheckKind.PASSIVE_MODE, probe_passive_mode, Severity.ADVISORY,
     "Set ForceDefenderPassiveMode to match the antivirus deployment."),
    ("Windows Updates", CheckKind.WINDOWS_UPDATES, probe_windows_updates, Severity.ADVISORY,
     "Install pending Windows updates."),
    ("Network Connectivity", CheckKind.NETWORK_CONNECTIVITY, probe_network, Severity.ADVISORY,
     "Allow outbound HTTPS to the Defender for Endpoint service URLs (proxy/firewall)."),
    ("Group Policy Restrictions", CheckKind.GROUP_POLICY, probe_group_policy, Severity.CRITICAL,
     "Remove the 'Turn off Microsoft Defender Antivirus' policies and run gpupdate /force."),
    ("Existing Onboarding", CheckKind.EXISTING_ONBOARDING, probe_existing_onboarding, Severity.CRITICAL,
     "Offboard the device before onboarding it again."),
)


def build_probe_set(settings: Settings) -> List[Check]:
    """Return the checks in declared order with severity overrides applied."""
    checks: List[Check] = []
    for name, kind, probe, severity, hint in _DECLARED_CHECKS:
        override = settings.severity_overrides.get(name)
        checks.append(
            Check(
                name=name,
                kind=kind,
                probe=probe,
                severity=Severity(override) if override else severity,
                hint=hint,
            )
        )
    return checks
