"""
Configuration helpers for the MDE readiness tooling.

All tunables are read from ``MDE_READINESS_*`` environment variables and
exposed through a cached :class:`Settings` object.  Use
:func:`configure_settings` to apply overrides (it rewrites the environment and
clears the cache so the next :func:`get_settings` call sees them).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

ENV_PREFIX = "MDE_READINESS_"

DEFAULT_CONNECTIVITY_URLS = (
    "https://winatp-gw-eus.microsoft.com/test",
    "https://winatp-gw-weu.microsoft.com/test",
    "https://go.microsoft.com/fwlink/?linkid=2156000",
)
DEFAULT_API_BASE_URL = "https://api.securitycenter.microsoft.com/api"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(name: str, default: Optional[bool]) -> Optional[bool]:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def parse_severity_overrides(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``Check Name=critical;Other Check=advisory`` into a dict."""
    overrides: Dict[str, str] = {}
    if not raw:
        return overrides
    for entry in raw.split(";"):
        if "=" not in entry:
            continue
        name, severity = entry.split("=", 1)
        severity = severity.strip().lower()
        if severity not in {"critical", "advisory"}:
            raise ValueError(f"Unknown severity '{severity}' for check '{name.strip()}'")
        overrides[name.strip()] = severity
    return overrides


@dataclass(frozen=True)
class ApiSettings:
    """Credentials and endpoints for the device-management REST API."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    keyvault_name: Optional[str] = None
    secret_name: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    base_url: str = DEFAULT_API_BASE_URL
    timeout: float = 10.0

    @property
    def configured(self) -> bool:
        has_secret = bool(self.client_secret) or bool(self.keyvault_name and self.secret_name)
        return bool(self.tenant_id and self.client_id and has_secret)


@dataclass(frozen=True)
class Settings:
    """Centralised settings for the readiness orchestrator and its surfaces."""

    project_root: Path
    report_dir: Path
    inventory_path: Path
    playbooks_dir: Path
    runner_dir: Path
    min_os_build: int = 17763
    min_free_disk_gb: float = 2.0
    signature_max_age_days: int = 7
    connectivity_urls: Tuple[str, ...] = DEFAULT_CONNECTIVITY_URLS
    network_timeout: float = 8.0
    severity_overrides: Dict[str, str] = field(default_factory=dict)
    self_heal_services: bool = True
    passive_mode: Optional[bool] = None
    reprobe_wait: float = 3.0
    reboot_countdown: int = 30
    recent_actions: int = 15
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def load(
        cls,
        project_root: str | Path | None = None,
        report_dir: str | Path | None = None,
    ) -> "Settings":
        root = Path(project_root or _env("ROOT") or Path(__file__).resolve().parent.parent)
        project_root_path = root.expanduser().resolve()

        report_path = Path(report_dir or _env("REPORT_DIR") or Path.cwd()).expanduser().resolve()
        report_path.mkdir(parents=True, exist_ok=True)

        inventory_path = Path(_env("INVENTORY") or project_root_path / "inventory" / "hosts").expanduser().resolve()
        runner_path = Path(_env("RUNNER_DIR") or project_root_path / ".ansible-runner").expanduser().resolve()

        urls = _env("CONNECTIVITY_URLS")
        connectivity_urls = tuple(u.strip() for u in urls.split(",") if u.strip()) if urls else DEFAULT_CONNECTIVITY_URLS

        api = ApiSettings(
            tenant_id=_env("TENANT_ID"),
            client_id=_env("CLIENT_ID"),
            keyvault_name=_env("KEYVAULT_NAME"),
            secret_name=_env("SECRET_NAME"),
            client_secret=_env("CLIENT_SECRET"),
            base_url=_env("API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
            timeout=float(_env("API_TIMEOUT", "10")),
        )

        return cls(
            project_root=project_root_path,
            report_dir=report_path,
            inventory_path=inventory_path,
            playbooks_dir=project_root_path / "playbooks",
            runner_dir=runner_path,
            min_os_build=int(_env("MIN_OS_BUILD", "17763")),
            min_free_disk_gb=float(_env("MIN_FREE_DISK_GB", "2")),
            signature_max_age_days=int(_env("SIGNATURE_MAX_AGE_DAYS", "7")),
            connectivity_urls=connectivity_urls,
            network_timeout=float(_env("NETWORK_TIMEOUT", "8")),
            severity_overrides=parse_severity_overrides(_env("SEVERITY_OVERRIDES")),
            self_heal_services=bool(_env_bool("SELF_HEAL_SERVICES", True)),
            passive_mode=_env_bool("PASSIVE_MODE", None),
            reprobe_wait=float(_env("REPROBE_WAIT", "3")),
            reboot_countdown=int(_env("REBOOT_COUNTDOWN", "30")),
            recent_actions=int(_env("RECENT_ACTIONS", "15")),
            api=api,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.load()


def configure_settings(
    project_root: str | Path | None = None,
    report_dir: str | Path | None = None,
    inventory: str | Path | None = None,
    runner_dir: str | Path | None = None,
) -> Settings:
    if project_root is not None:
        os.environ[ENV_PREFIX + "ROOT"] = str(project_root)
    if report_dir is not None:
        os.environ[ENV_PREFIX + "REPORT_DIR"] = str(report_dir)
    if inventory is not None:
        os.environ[ENV_PREFIX + "INVENTORY"] = str(inventory)
    if runner_dir is not None:
        os.environ[ENV_PREFIX + "RUNNER_DIR"] = str(runner_dir)
    get_settings.cache_clear()
    return get_settings()
