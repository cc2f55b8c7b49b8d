#!/usr/bin/env python3
"""Smoke tests for the MCP tools."""

from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import httpx

import mcp_app
from conftest import make_host
from test_devices import API, FakeApi

from mde_readiness.devices import ClientCredentialsToken, DeviceManagementClient, DeviceSession, EnvironmentSecretStore


def _call(tool, **kwargs):
    return anyio.run(partial(tool, **kwargs))


def _fake_session(api: FakeApi) -> DeviceSession:
    http = httpx.Client(transport=httpx.MockTransport(api))
    token = ClientCredentialsToken(API, EnvironmentSecretStore(API.client_secret), http=http)
    return DeviceSession(DeviceManagementClient(API.base_url, token, http=http))


def test_paths_info(configured) -> None:
    info = _call(mcp_app.get_paths_info)
    assert Path(info["project_root"]).exists()
    assert info["device_api_configured"] is False


def test_playbook_listing(configured) -> None:
    catalog = _call(mcp_app.list_playbooks)
    assert "install_mdatp.yml" in catalog["playbooks"]


def test_inventory_listing(configured) -> None:
    summary = _call(mcp_app.list_inventory)
    assert summary["total_hosts"] == 4
    # clients sometimes send {} for an omitted argument
    assert _call(mcp_app.list_inventory, inventory={})["total_hosts"] == 4


def test_readiness_checks_are_read_only(configured, monkeypatch) -> None:
    host = make_host()
    host.system.free_gb = 0.5
    monkeypatch.setattr(mcp_app, "local_host", lambda: host)

    result = _call(mcp_app.run_readiness_checks)

    assert result["status"] == "not_ready"
    assert result["counts"]["total"] == 13
    assert result["critical_failures"] == ["Disk Space"]
    assert result["changes"] == []


def test_device_tools_need_configuration(configured) -> None:
    result = _call(mcp_app.list_devices)
    assert result["status"] == "failed"
    assert "not configured" in result["error"]


def test_tag_devices_tool(configured, monkeypatch) -> None:
    api = FakeApi()
    monkeypatch.setattr(mcp_app, "device_session", lambda: _fake_session(api))

    result = _call(mcp_app.tag_devices, device_ids="m1, m4", tag="Divestiture2025", action="add")

    assert result["status"] == "ok"
    assert [r["id"] for r in result["results"]] == ["m1", "m4"]
    assert len(api.calls("POST", "/tags")) == 2

    bad = _call(mcp_app.tag_devices, device_ids=["m1"], tag="", action="Add")
    assert bad["status"] == "failed"


def test_offboard_requires_confirmation(configured, monkeypatch) -> None:
    api = FakeApi()
    monkeypatch.setattr(mcp_app, "device_session", lambda: _fake_session(api))

    pending = _call(mcp_app.offboard_devices, device_ids=["m2"], comment="retired")
    assert pending["status"] == "confirmation_required"
    assert api.requests == []

    done = _call(mcp_app.offboard_devices, device_ids=["m2"], comment="retired", confirm=True)
    assert done["status"] == "ok"
    assert done["remaining"] == 3

    unknown = _call(mcp_app.offboard_devices, device_ids=["zz"], comment="retired", confirm=True)
    assert unknown["status"] == "failed"


def test_fleet_onboarding_errors_are_returned(configured, tmp_path) -> None:
    result = _call(mcp_app.run_fleet_onboarding, onboarding_json=str(tmp_path / "missing.py"))
    assert result["status"] == "failed"
    assert "not found" in result["error"]


def test_http_probes(configured) -> None:
    from starlette.testclient import TestClient

    from http_app import app

    client = TestClient(app)
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz").json()
    assert ready["status"] == "ready"
    assert ready["missing_playbooks"] == []
    assert ready["device_api_configured"] is False
