from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from mcp_app import mcp
from mde_readiness.config import get_settings
from mde_readiness.fleet import INSTALL_PLAYBOOK, UNINSTALL_PLAYBOOK


@mcp.custom_route("/healthz", methods=["GET"])
async def healthcheck(request):
    return JSONResponse({"status": "ok"})


@mcp.custom_route("/readyz", methods=["GET"])
async def readiness(request):
    """Fleet tools need the inventory and both bundled playbooks; device tools need API credentials."""
    settings = get_settings()
    missing = [
        name for name in (INSTALL_PLAYBOOK, UNINSTALL_PLAYBOOK)
        if not (settings.playbooks_dir / name).is_file()
    ]
    inventory_ok = settings.inventory_path.exists()
    return JSONResponse({
        "status": "ready" if inventory_ok and not missing else "degraded",
        "inventory": str(settings.inventory_path),
        "playbooks_dir": str(settings.playbooks_dir),
        "missing_playbooks": missing,
        "runner_dir": str(settings.runner_dir),
        "device_api_configured": settings.api.configured,
    })


app = mcp.streamable_http_app()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
