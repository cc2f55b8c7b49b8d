from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import List, Optional, Union

import anyio
from mcp.server.fastmcp import FastMCP

from mde_readiness.checks import CheckContext, build_probe_set
from mde_readiness.config import get_settings
from mde_readiness.devices import DeviceApiError, DeviceManagementClient, DeviceSession, SelectionError
from mde_readiness.errors import ExternalCallError
from mde_readiness.executor import CheckExecutor
from mde_readiness.fleet import FleetError, list_playbooks as discover_playbooks, onboard_fleet
from mde_readiness.host import Host
from mde_readiness.inventory import InventoryError, load_inventory
from mde_readiness.prompts import ValidationError, parse_tag, parse_tag_action
from mde_readiness.session import SessionRecorder

logger = logging.getLogger(__name__)


def _normalize_inventory(inventory: Union[str, bool, None, dict, list]) -> Optional[str]:
    """Normalize an inventory argument to an existing path or None."""
    # Some MCP clients send {} or [] for omitted optional arguments
    if inventory is None or isinstance(inventory, bool) or not isinstance(inventory, str):
        return None
    value = inventory.strip()
    if not value or value.lower() in ("inventory", "true", "false", "none", "null"):
        return None
    path = Path(value).expanduser()
    try:
        if path.exists():
            return str(path.resolve())
    except (OSError, ValueError):
        pass
    return None


def _normalize_ids(device_ids: Union[str, List[str], None]) -> List[str]:
    if device_ids is None:
        return []
    if isinstance(device_ids, str):
        return [part.strip() for part in device_ids.split(",") if part.strip()]
    return [str(part).strip() for part in device_ids if str(part).strip()]


def _failed(error: object, **extra) -> dict:
    return {"status": "failed", "error": str(error), **extra}


def local_host() -> Host:
    return Host.local(get_settings().network_timeout)


def device_session() -> DeviceSession:
    api = get_settings().api
    if not api.configured:
        raise DeviceApiError(
            "Device API is not configured (MDE_READINESS_TENANT_ID, MDE_READINESS_CLIENT_ID and a client secret)",
            operation="config",
        )
    return DeviceSession(DeviceManagementClient.from_settings(api))


mcp = FastMCP(
    name="MDE Readiness Server",
    instructions=(
        "Inspect Microsoft Defender for Endpoint onboarding readiness, manage onboarded devices "
        "and onboard Linux servers with Ansible. Offboarding requires confirm=true."
    ),
    streamable_http_path="/mcp",
    sse_path="/sse",
)


@mcp.tool()
async def get_paths_info() -> dict:
    """Expose the resolved project paths for debugging."""
    settings = get_settings()
    return {
        "project_root": str(settings.project_root),
        "report_dir": str(settings.report_dir),
        "inventory": str(settings.inventory_path),
        "playbooks_dir": str(settings.playbooks_dir),
        "runner_dir": str(settings.runner_dir),
        "device_api_configured": settings.api.configured,
    }


def _readiness_pass() -> dict:
    settings = get_settings()
    recorder = SessionRecorder()
    executor = CheckExecutor(build_probe_set(settings))
    check_pass = executor.run(CheckContext(host=local_host(), settings=settings, recorder=recorder))
    return {
        "status": "ready" if not check_pass.critical_failures else "not_ready",
        "counts": check_pass.counts(),
        "critical_failures": [result.check_name for result in check_pass.critical_failures],
        "results": [result.to_dict() for result in check_pass.results],
        "changes": [change.to_dict() for change in recorder.summary.configuration_changes],
    }


@mcp.tool()
async def run_readiness_checks() -> dict:
    """Run the readiness check pass on this machine without remediating anything."""
    try:
        return await anyio.to_thread.run_sync(_readiness_pass)
    except ExternalCallError as exc:
        return _failed(exc)


@mcp.tool()
async def list_devices() -> dict:
    """List the devices registered with Defender for Endpoint."""
    try:
        session = device_session()
        devices = await anyio.to_thread.run_sync(session.refresh)
    except DeviceApiError as exc:
        return _failed(exc)
    return {"status": "ok", "count": len(devices), "devices": [device.to_dict() for device in devices]}


@mcp.tool()
async def tag_devices(device_ids: Union[str, List[str]], tag: str, action: str = "Add") -> dict:
    """Add or remove a machine tag on devices from the current device list."""
    try:
        tag_value = parse_tag(tag)
        tag_action = parse_tag_action(action)
    except ValidationError as exc:
        return _failed(exc)
    ids = _normalize_ids(device_ids)
    try:
        session = device_session()
        await anyio.to_thread.run_sync(session.refresh)
        results = await anyio.to_thread.run_sync(session.tag, ids, tag_value, tag_action)
    except (DeviceApiError, SelectionError) as exc:
        return _failed(exc, device_ids=ids)
    return {
        "status": "ok" if all(result.success for result in results) else "partial",
        "tag": tag_value,
        "action": tag_action,
        "results": [result.to_dict() for result in results],
    }


@mcp.tool()
async def offboard_devices(device_ids: Union[str, List[str]], comment: str, confirm: bool = False) -> dict:
    """Offboard devices. Nothing is sent unless ``confirm`` is true."""
    ids = _normalize_ids(device_ids)
    if not confirm:
        return {
            "status": "confirmation_required",
            "device_ids": ids,
            "message": "Offboarding stops these devices reporting to the tenant. Call again with confirm=true.",
        }
    if not comment or not comment.strip():
        return _failed("A comment is required for offboarding", device_ids=ids)
    try:
        session = device_session()
        await anyio.to_thread.run_sync(session.refresh)
        results = await anyio.to_thread.run_sync(session.offboard, ids, comment.strip())
    except (DeviceApiError, SelectionError) as exc:
        return _failed(exc, device_ids=ids)
    return {
        "status": "ok" if all(result.success for result in results) else "partial",
        "results": [result.to_dict() for result in results],
        "remaining": len(session.devices),
    }


@mcp.tool()
async def list_inventory(inventory: Union[str, bool, None, dict, list] = None) -> dict:
    """Show the Linux fleet inventory without running anything."""
    try:
        return load_inventory(_normalize_inventory(inventory)).to_dict()
    except InventoryError as exc:
        return _failed(exc)


@mcp.tool()
async def list_playbooks() -> dict:
    """List the bundled fleet playbooks."""
    return discover_playbooks().to_dict()


@mcp.tool()
async def run_fleet_onboarding(
    onboarding_json: str,
    hosts: str = "servers",
    channel: str = "prod",
    group_tag: str = "MDE-Management",
    inventory: Union[str, bool, None, dict, list] = None,
    check_mode: bool = False,
) -> dict:
    """Install mdatp on Linux servers and onboard them; returns structured stats."""
    job = partial(
        onboard_fleet,
        onboarding_json,
        hosts=hosts,
        channel=channel,
        group_tag=group_tag,
        inventory=_normalize_inventory(inventory),
        check_mode=check_mode,
    )
    try:
        run = await anyio.to_thread.run_sync(job)
    except (FleetError, InventoryError) as exc:
        return _failed(exc, playbook="install_mdatp.yml")
    details = run.to_dict()
    return {
        "status": details["status"],
        "playbook": details["playbook"],
        "errors": details["errors"],
        "output": details["summary"],
        "details": details,
    }
