"""
Linux fleet onboarding through Ansible.

The bundled playbooks add the Microsoft package repository, install
``mdatp``, drop the onboarding json in place and set the device group tag.
Runs go through ``ansible-runner`` and come back as structured stats rather
than raw logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ansible_runner import interface

from .config import get_settings
from .inventory import resolve_hosts

INSTALL_PLAYBOOK = "install_mdatp.yml"
UNINSTALL_PLAYBOOK = "uninstall_mdatp.yml"
CHANNELS = ("prod", "insiders-fast", "insiders-slow")
MAX_STDOUT_LINES = 400


class FleetError(RuntimeError):
    """Raised when a fleet playbook cannot be executed."""


@dataclass
class PlaybookCatalog:
    directory: Path
    playbooks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"directory": str(self.directory), "count": len(self.playbooks), "playbooks": self.playbooks}


@dataclass
class PlaybookRun:
    status: str
    playbook: str
    hosts: str
    inventory: Optional[str]
    check_mode: bool
    stats: Dict[str, int] = field(default_factory=dict)
    per_host: Dict[str, Dict[str, int]] = field(default_factory=dict)
    stdout_excerpt: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    runner_status: Optional[str] = None
    runner_code: Optional[int] = None

    def summary(self) -> str:
        lines = ["=" * 80, f"PLAYBOOK: {self.playbook}", "=" * 80]
        lines.append(
            f"Status: {self.status}  Changed: {self.stats.get('changed', 0)}  "
            f"Failed: {self.stats.get('failed', 0)}  Ok: {self.stats.get('ok', 0)}  "
            f"Skipped: {self.stats.get('skipped', 0)}"
        )
        if self.check_mode:
            lines.append("Mode: check (dry-run)")
        if self.per_host:
            lines.append("")
            lines.append("Per-host summary:")
            for host, stats in sorted(self.per_host.items()):
                lines.append(
                    f"  - {host}: ok={stats.get('ok', 0)} changed={stats.get('changed', 0)} "
                    f"failed={stats.get('failures', 0)} unreachable={stats.get('dark', 0)}"
                )
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  - {error}" for error in self.errors)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "playbook": self.playbook,
            "hosts": self.hosts,
            "inventory": self.inventory,
            "check_mode": self.check_mode,
            "stats": self.stats,
            "per_host": self.per_host,
            "errors": self.errors,
            "runner": {"status": self.runner_status, "rc": self.runner_code},
            "summary": self.summary(),
            "stdout_excerpt": self.stdout_excerpt,
        }


def list_playbooks(directory: Optional[Path] = None) -> PlaybookCatalog:
    directory = directory or get_settings().playbooks_dir
    names = sorted({p.name for p in directory.glob("*.yml")} | {p.name for p in directory.glob("*.yaml")})
    return PlaybookCatalog(directory=directory, playbooks=names)


def resolve_playbook(name: str, directory: Path) -> Path:
    """Accept names with or without extension; absolute paths are used as-is."""
    candidate = Path(name)
    if candidate.is_absolute():
        return candidate
    options = [candidate.name] if candidate.suffix else [f"{candidate.name}.yml", f"{candidate.name}.yaml", candidate.name]
    for option in options:
        path = directory / option
        if path.exists():
            return path
    return directory / options[0]


def collapse_repeats(lines: Sequence[str], limit: int = 40) -> List[str]:
    """Fold consecutive duplicate lines and keep the last ``limit`` entries."""
    collapsed: List[str] = []
    previous: Optional[str] = None
    count = 0
    for line in list(lines) + [None]:
        if line == previous:
            count += 1
            continue
        if previous is not None:
            collapsed.append(previous if count == 1 else f"{previous} (repeated {count} times)")
        previous, count = line, 1
    return collapsed[-limit:]


def _host_of(event_data: Dict[str, object]) -> str:
    return str(
        event_data.get("host")
        or event_data.get("remote_addr")
        or event_data.get("inventory_hostname")
        or "unknown"
    )


def run_playbook(
    playbook: str,
    hosts: str = "servers",
    inventory: Optional[str] = None,
    check_mode: bool = False,
    extravars: Optional[Dict[str, object]] = None,
) -> PlaybookRun:
    settings = get_settings()
    playbook_path = resolve_playbook(playbook, settings.playbooks_dir)
    if not playbook_path.exists():
        available = ", ".join(list_playbooks(settings.playbooks_dir).playbooks) or "none"
        raise FleetError(f"Playbook not found: {playbook}. Available: {available}")

    inventory_path = Path(inventory).expanduser() if inventory else settings.inventory_path
    if not inventory_path.exists():
        raise FleetError(f"Inventory not found: {inventory_path}")

    resolved = resolve_hosts(hosts, str(inventory_path))
    if not resolved.validated:
        raise FleetError(resolved.error or f"No hosts matched selector '{hosts}'")

    private_dir = settings.runner_dir / "fleet"
    private_dir.mkdir(parents=True, exist_ok=True, mode=0o755)

    stdout_lines: List[str] = []
    errors: List[str] = []

    def event_handler(event: Dict[str, object]) -> bool:
        stdout = str(event.get("stdout") or "").strip()
        if stdout:
            stdout_lines.append(stdout)
        if event.get("event") in ("runner_on_failed", "runner_on_unreachable"):
            edata = event.get("event_data") or {}
            res = edata.get("res") or {}
            message = res.get("msg") or res.get("stderr") or stdout or "Task failed"
            errors.append(f"{_host_of(edata)}: {edata.get('task', 'task')}: {message}")
        return True

    variables = dict(extravars or {})
    if check_mode:
        variables["ansible_check_mode"] = True

    run = interface.run(
        playbook=str(playbook_path),
        inventory=str(inventory_path),
        limit=None if hosts in ("all", "*") else hosts,
        extravars=variables,
        quiet=True,
        private_data_dir=str(private_dir),
        project_dir=str(settings.playbooks_dir),
        event_handler=event_handler,
    )

    stats = {"ok": 0, "changed": 0, "failed": 0, "skipped": 0, "unreachable": 0}
    per_host: Dict[str, Dict[str, int]] = {}
    for category, counts in (run.stats or {}).items():
        if not isinstance(counts, dict):
            continue
        for host, value in counts.items():
            per_host.setdefault(host, {})[category] = value
        key = {"failures": "failed", "dark": "unreachable", "skipped": "skipped", "ok": "ok", "changed": "changed"}.get(category)
        if key:
            stats[key] += sum(counts.values())

    status = "failed" if run.status == "failed" or run.rc not in (0, None) else "completed"
    return PlaybookRun(
        status=status,
        playbook=playbook_path.name,
        hosts=hosts,
        inventory=str(inventory_path),
        check_mode=check_mode,
        stats=stats,
        per_host=per_host,
        stdout_excerpt=collapse_repeats(stdout_lines[-MAX_STDOUT_LINES:]),
        errors=list(dict.fromkeys(errors)),
        runner_status=run.status,
        runner_code=run.rc,
    )


def onboard_fleet(
    onboarding_json: str,
    hosts: str = "servers",
    channel: str = "prod",
    group_tag: str = "MDE-Management",
    inventory: Optional[str] = None,
    check_mode: bool = False,
) -> PlaybookRun:
    """Install mdatp on the selected Linux hosts and onboard them with ``onboarding_json``."""
    if channel not in CHANNELS:
        raise FleetError(f"Unknown channel '{channel}'. Choose one of: {', '.join(CHANNELS)}")
    package = Path(onboarding_json).expanduser()
    if not package.is_file():
        raise FleetError(f"Onboarding file not found: {package}")
    return run_playbook(
        INSTALL_PLAYBOOK,
        hosts=hosts,
        inventory=inventory,
        check_mode=check_mode,
        extravars={
            "mdatp_channel": channel,
            "mdatp_onboarding_json": str(package.resolve()),
            "mdatp_group_tag": group_tag,
        },
    )


def offboard_fleet(offboarding_json: str, hosts: str = "servers", inventory: Optional[str] = None, check_mode: bool = False) -> PlaybookRun:
    package = Path(offboarding_json).expanduser()
    if not package.is_file():
        raise FleetError(f"Offboarding file not found: {package}")
    return run_playbook(
        UNINSTALL_PLAYBOOK,
        hosts=hosts,
        inventory=inventory,
        check_mode=check_mode,
        extravars={"mdatp_offboarding_json": str(package.resolve())},
    )
