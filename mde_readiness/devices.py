"""
Defender for Endpoint device-management API helpers.

Access tokens come from an OAuth2 client-credentials exchange; the client
secret is pulled from a secret store (Azure Key Vault through the ``az`` CLI,
or the environment).  :class:`DeviceSession` keeps the most recently retrieved
device list and refuses to tag or offboard anything that is not in it.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import ApiSettings
from .errors import ExternalCallError

logger = logging.getLogger(__name__)

LOGIN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
API_SCOPE = "https://api.securitycenter.microsoft.com/.default"
TAG_ACTIONS = ("Add", "Remove")


class DeviceApiError(ExternalCallError):
    """Raised when the device-management API (or its auth) fails."""


class SelectionError(ValueError):
    """Raised when an operation targets devices outside the retrieved list."""


class EnvironmentSecretStore:
    def __init__(self, secret: Optional[str]):
        self.secret = secret

    def get_secret(self) -> str:
        if not self.secret:
            raise DeviceApiError("No client secret configured (MDE_READINESS_CLIENT_SECRET)", operation="secret")
        return self.secret


class KeyVaultSecretStore:
    """Reads a secret from Azure Key Vault using the signed-in ``az`` CLI."""

    def __init__(self, vault_name: str, secret_name: str, timeout: float = 30.0):
        self.vault_name = vault_name
        self.secret_name = secret_name
        self.timeout = timeout

    def get_secret(self) -> str:
        cmd = [
            "az", "keyvault", "secret", "show",
            "--vault-name", self.vault_name,
            "--name", self.secret_name,
            "--query", "value",
            "-o", "tsv",
        ]
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=self.timeout, check=False)
        except FileNotFoundError as exc:
            raise DeviceApiError("Azure CLI (az) not found; sign in with 'az login' first", operation="secret") from exc
        except subprocess.TimeoutExpired as exc:
            raise DeviceApiError("Timed out reading the client secret from Key Vault", operation="secret") from exc
        if proc.returncode != 0:
            raise DeviceApiError(
                f"Key Vault lookup failed: {proc.stderr.strip() or proc.stdout.strip()}", operation="secret"
            )
        secret = proc.stdout.strip()
        if not secret:
            raise DeviceApiError(f"Secret '{self.secret_name}' in '{self.vault_name}' is empty", operation="secret")
        return secret


def secret_store_for(api: ApiSettings):
    if api.keyvault_name and api.secret_name:
        return KeyVaultSecretStore(api.keyvault_name, api.secret_name)
    return EnvironmentSecretStore(api.client_secret)


class ClientCredentialsToken:
    """Caches a bearer token from the client-credentials grant until shortly before expiry."""

    def __init__(self, api: ApiSettings, secret_store, http: Optional[httpx.Client] = None):
        if not api.tenant_id or not api.client_id:
            raise DeviceApiError("Tenant id and client id are required", operation="token")
        self.api = api
        self.secret_store = secret_store
        self.http = http or httpx.Client(timeout=api.timeout)
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> str:
        if self._token and time.monotonic() < self._expires_at - 60:
            return self._token
        data = {
            "client_id": self.api.client_id,
            "client_secret": self.secret_store.get_secret(),
            "grant_type": "client_credentials",
            "scope": API_SCOPE,
        }
        try:
            response = self.http.post(LOGIN_URL.format(tenant=self.api.tenant_id), data=data)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise DeviceApiError(f"Token request failed ({exc.response.status_code})", operation="token") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise DeviceApiError(f"Token request failed: {exc}", operation="token") from exc
        token = payload.get("access_token")
        if not token:
            raise DeviceApiError("Token response did not contain an access_token", operation="token")
        self._token = token
        self._expires_at = time.monotonic() + float(payload.get("expires_in", 3599))
        return token


@dataclass
class Device:
    device_id: str
    name: str
    os_platform: str = ""
    health_status: str = ""
    last_seen: str = ""
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Device":
        return cls(
            device_id=str(data.get("id", "")),
            name=data.get("computerDnsName") or data.get("id", ""),
            os_platform=data.get("osPlatform") or "",
            health_status=data.get("healthStatus") or "",
            last_seen=data.get("lastSeen") or "",
            tags=list(data.get("machineTags") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.device_id,
            "name": self.name,
            "os_platform": self.os_platform,
            "health_status": self.health_status,
            "last_seen": self.last_seen,
            "tags": self.tags,
        }


@dataclass
class OperationResult:
    device_id: str
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.device_id, "success": self.success, "message": self.message}


class DeviceManagementClient:
    def __init__(self, base_url: str, token, http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.http = http or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, api: ApiSettings) -> "DeviceManagementClient":
        http = httpx.Client(timeout=api.timeout)
        token = ClientCredentialsToken(api, secret_store_for(api), http=http)
        return cls(api.base_url, token, http=http)

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token.get()}", "Content-Type": "application/json"}
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, json=json, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:300]
            raise DeviceApiError(f"{method} {path} failed ({exc.response.status_code}): {detail}", operation=path) from exc
        except httpx.HTTPError as exc:
            raise DeviceApiError(f"{method} {path} failed: {exc}", operation=path) from exc
        if not response.content:
            return {}
        return response.json()

    def list_machines(self) -> List[Device]:
        payload = self._request("GET", "/machines")
        return [Device.from_api(item) for item in payload.get("value", [])]

    def tag_machine(self, device_id: str, tag: str, action: str) -> Dict[str, Any]:
        if action not in TAG_ACTIONS:
            raise ValueError(f"Tag action must be one of {TAG_ACTIONS}")
        return self._request("POST", f"/machines/{device_id}/tags", json={"Value": tag, "Action": action})

    def offboard_machine(self, device_id: str, comment: str) -> Dict[str, Any]:
        return self._request("POST", f"/machines/{device_id}/offboard", json={"Comment": comment})


class DeviceSession:
    """The in-session device collection; every operation is checked against it."""

    def __init__(self, client: DeviceManagementClient):
        self.client = client
        self.devices: List[Device] = []
        self.retrieved = False

    @property
    def device_ids(self) -> List[str]:
        return [device.device_id for device in self.devices]

    def refresh(self) -> List[Device]:
        self.devices = self.client.list_machines()
        self.retrieved = True
        logger.info("Retrieved %d device(s)", len(self.devices))
        return self.devices

    def get(self, device_id: str) -> Optional[Device]:
        return next((device for device in self.devices if device.device_id == device_id), None)

    def validate_selection(self, device_ids: Sequence[str]) -> List[str]:
        if not self.retrieved:
            raise SelectionError("Retrieve the device list before selecting devices")
        known = set(self.device_ids)
        unknown = [device_id for device_id in device_ids if device_id not in known]
        if unknown:
            raise SelectionError("Devices not in the current list: " + ", ".join(unknown))
        if not device_ids:
            raise SelectionError("No devices selected")
        return list(dict.fromkeys(device_ids))

    def tag(self, device_ids: Sequence[str], tag: str, action: str) -> List[OperationResult]:
        selected = self.validate_selection(device_ids)
        results: List[OperationResult] = []
        for device_id in selected:
            try:
                self.client.tag_machine(device_id, tag, action)
            except DeviceApiError as exc:
                logger.error("Tag %s '%s' on %s failed: %s", action, tag, device_id, exc)
                results.append(OperationResult(device_id, False, str(exc)))
                continue
            device = self.get(device_id)
            if device is not None:
                if action == "Add" and tag not in device.tags:
                    device.tags.append(tag)
                elif action == "Remove" and tag in device.tags:
                    device.tags.remove(tag)
            logger.info("Tag %s '%s' on %s", action, tag, device_id)
            results.append(OperationResult(device_id, True, f"{action} '{tag}'"))
        return results

    def offboard(self, device_ids: Sequence[str], comment: str) -> List[OperationResult]:
        selected = self.validate_selection(device_ids)
        results: List[OperationResult] = []
        for device_id in selected:
            try:
                self.client.offboard_machine(device_id, comment)
            except DeviceApiError as exc:
                logger.error("Offboarding %s failed: %s", device_id, exc)
                results.append(OperationResult(device_id, False, str(exc)))
                continue
            self.devices = [device for device in self.devices if device.device_id != device_id]
            logger.info("Offboarding requested for %s", device_id)
            results.append(OperationResult(device_id, True, "Offboarding requested"))
        return results
