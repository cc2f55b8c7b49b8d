"""
INI inventory helpers for Linux fleet onboarding.

Only the subset of the Ansible INI format the bundled playbooks rely on is
understood: host lines with inline variables, ``[group]``, ``[group:vars]``
and ``[group:children]`` sections.  The onboarding playbooks target the
``servers`` group.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional

from .config import get_settings

SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
SENSITIVE_VARS = {
    "ansible_ssh_private_key_file",
    "ansible_ssh_pass",
    "ansible_password",
    "ansible_become_password",
    "ansible_become_pass",
}


class InventoryError(RuntimeError):
    """Raised when the fleet inventory cannot be read."""


@dataclass
class FleetInventory:
    path: Path
    hosts: List[str] = field(default_factory=list)
    groups: Dict[str, List[str]] = field(default_factory=dict)
    group_vars: Dict[str, Dict[str, str]] = field(default_factory=dict)
    host_vars: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def variables_for(self, host: str) -> Dict[str, str]:
        merged = dict(self.group_vars.get("all", {}))
        for group, members in self.groups.items():
            if group != "all" and host in members:
                merged.update(self.group_vars.get(group, {}))
        merged.update(self.host_vars.get(host, {}))
        return merged

    def to_dict(self) -> Dict[str, object]:
        return {
            "inventory": str(self.path),
            "total_hosts": len(self.hosts),
            "hosts": self.hosts,
            "groups": self.groups,
            "host_vars": {host: sanitise_vars(self.variables_for(host)) for host in self.hosts},
        }


@dataclass
class ResolvedHosts:
    selector: str
    hosts: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def validated(self) -> bool:
        return bool(self.hosts) and not self.error

    def to_dict(self) -> Dict[str, object]:
        data = {"selector": self.selector, "hosts": self.hosts, "count": len(self.hosts), "validated": self.validated}
        if self.error:
            data["error"] = self.error
        return data


def sanitise_vars(values: Dict[str, str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if key not in SENSITIVE_VARS}


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


def _split_assignments(tokens: List[str]) -> Dict[str, str]:
    assignments: Dict[str, str] = {}
    for token in tokens:
        if "=" in token:
            key, value = token.split("=", 1)
            assignments[key.strip()] = value.strip()
    return assignments


def parse_inventory(path: Path) -> FleetInventory:
    inventory = FleetInventory(path=path)
    children: Dict[str, List[str]] = {}
    section: Optional[str] = None
    mode = "hosts"

    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line or line.startswith(("#", ";")):
                continue

            match = SECTION_RE.match(line)
            if match:
                name, _, suffix = match.group(1).partition(":")
                section = name
                mode = suffix or "hosts"
                if mode == "children":
                    children.setdefault(name, [])
                elif mode == "vars":
                    inventory.group_vars.setdefault(name, {})
                else:
                    inventory.groups.setdefault(name, [])
                continue

            if mode == "children":
                children[section].append(line.split()[0])
            elif mode == "vars":
                inventory.group_vars[section].update(_split_assignments([line]))
            else:
                parts = line.split()
                host = parts[0]
                inventory.hosts.append(host)
                inventory.groups.setdefault(section or "ungrouped", []).append(host)
                assignments = _split_assignments(parts[1:])
                if assignments:
                    inventory.host_vars.setdefault(host, {}).update(assignments)

    for parent, child_groups in children.items():
        members = inventory.groups.get(parent, [])
        for child in child_groups:
            members = members + inventory.groups.get(child, [])
        inventory.groups[parent] = _unique(members)

    inventory.hosts = _unique(inventory.hosts)
    inventory.groups.setdefault("all", inventory.hosts[:])
    return inventory


def load_inventory(inventory: str | Path | None = None) -> FleetInventory:
    path = Path(inventory).expanduser() if inventory else get_settings().inventory_path
    if not path.exists():
        raise InventoryError(f"Inventory not found: {path}")
    return parse_inventory(path)


def _expand(token: str, inventory: FleetInventory) -> List[str]:
    if token in ("", "all", "*"):
        return inventory.hosts[:]
    if token in inventory.groups:
        return inventory.groups[token][:]
    if token in inventory.hosts:
        return [token]
    return [host for host in inventory.hosts if fnmatch(host, token)]


def resolve_hosts(selector: str, inventory: str | Path | None = None) -> ResolvedHosts:
    """Expand ``servers,!db*`` style selectors into host names."""
    fleet = load_inventory(inventory)
    tokens = [token.strip() for token in re.split(r"[,:]", selector) if token.strip()]
    includes = [token for token in tokens if not token.startswith("!")] or ["all"]
    excludes = {host for token in tokens if token.startswith("!") for host in _expand(token[1:], fleet)}

    hosts = _unique([host for token in includes for host in _expand(token, fleet) if host not in excludes])
    if not hosts:
        groups = ", ".join(sorted(fleet.groups)) or "none"
        return ResolvedHosts(selector=selector, error=f"No hosts matched selector '{selector}'. Available groups: {groups}")
    return ResolvedHosts(selector=selector, hosts=hosts)
