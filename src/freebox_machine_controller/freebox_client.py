"""Freebox HTTP API client for the asynchronous task endpoints."""

import base64
from dataclasses import dataclass, field
from typing import Any

import requests
import structlog

from .config import Settings
from .exceptions import FreeboxAPIError

logger = structlog.get_logger()

FILE_MODE_OVERWRITE = "overwrite"


def encode_path(path: str) -> str:
    """Encode a filesystem path the way the Freebox API expects it."""
    return base64.b64encode(path.encode("utf-8")).decode("ascii")


def decode_path(value: str) -> str:
    """Decode a base64 path returned by the Freebox API."""
    return base64.b64decode(value).decode("utf-8")


@dataclass
class DownloadTask:
    """State of a download task."""

    id: int
    status: str
    rx_bytes: int = 0
    size: int = 0

    @property
    def is_done(self) -> bool:
        return self.status == "done"

    @property
    def is_error(self) -> bool:
        return self.status == "error"


@dataclass
class FileSystemTask:
    """State of a filesystem task (extract, copy, move, remove)."""

    id: int
    state: str
    type: str = ""
    error: str = ""

    @property
    def is_done(self) -> bool:
        return self.state == "done"

    @property
    def is_error(self) -> bool:
        return self.state == "failed" or self.state == "error"


@dataclass
class VirtualDiskTask:
    """State of a virtual disk task."""

    id: int
    done: bool
    error: bool


@dataclass
class VirtualMachine:
    """A VM as reported by the Freebox."""

    id: int
    name: str = ""
    mac: str = ""
    status: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "VirtualMachine":
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            mac=data.get("mac", ""),
            status=data.get("status", ""),
        )


@dataclass
class VirtualMachinePayload:
    """Parameters of a VM creation request."""

    name: str
    disk_path: str
    disk_type: str
    memory: int
    vcpus: int
    os: str = "unknown"
    enable_cloudinit: bool = True
    cloudinit_userdata: str = ""
    enable_screen: bool = False

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "disk_path": encode_path(self.disk_path),
            "disk_type": self.disk_type,
            "memory": self.memory,
            "vcpus": self.vcpus,
            "os": self.os,
            "enable_cloudinit": self.enable_cloudinit,
            "cloudinit_userdata": self.cloudinit_userdata,
            "enable_screen": self.enable_screen,
        }


@dataclass
class LanHost:
    """A host seen by the Freebox LAN browser."""

    mac: str
    ipv4_addresses: list[str] = field(default_factory=list)
    primary_name: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "LanHost":
        l2ident = data.get("l2ident") or {}
        addresses = [
            l3["addr"]
            for l3 in data.get("l3connectivities") or []
            if l3.get("af") == "ipv4" and l3.get("addr")
        ]
        return cls(
            mac=l2ident.get("id", ""),
            ipv4_addresses=addresses,
            primary_name=data.get("primary_name", ""),
        )


class FreeboxClient:
    """Wrapper for the Freebox download, filesystem, VM and LAN APIs.

    Every long-running operation returns a task handle that must be polled;
    nothing here waits for work to finish on the appliance.
    """

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        """Initialize the Freebox client."""
        self.settings = settings
        self.base_url = settings.freebox_api_url
        self.session = session or requests.Session()
        self.session.verify = settings.freebox_verify_ssl
        if settings.freebox_session_token:
            self.session.headers["X-Fbx-App-Auth"] = settings.freebox_session_token

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and unwrap the ``{success, result}`` envelope."""
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                data=data,
                timeout=self.settings.request_timeout_seconds,
            )
        except requests.RequestException as e:
            raise FreeboxAPIError(operation, f"request to {url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise FreeboxAPIError(
                operation,
                f"invalid JSON response from {url}",
                status_code=response.status_code,
            ) from e

        if not isinstance(body, dict) or not body.get("success", False):
            body = body if isinstance(body, dict) else {}
            raise FreeboxAPIError(
                operation,
                body.get("msg") or "API call was not successful",
                status_code=response.status_code,
                error_code=body.get("error_code"),
            )

        logger.debug("Freebox API call succeeded", operation=operation, path=path)
        return body.get("result")

    # Downloads

    def add_download_task(self, urls: list[str], download_dir: str, filename: str) -> int:
        """Submit a download and return its task id."""
        result = self._request(
            "add download task",
            "POST",
            "/downloads/add",
            data={
                "download_url_list": "\n".join(urls),
                "download_dir": encode_path(download_dir),
                "filename": filename,
            },
        )
        return int(result["id"])

    def get_download_task(self, task_id: int) -> DownloadTask:
        """Fetch the state of a download task."""
        result = self._request("get download task", "GET", f"/downloads/{task_id}")
        return DownloadTask(
            id=int(result.get("id", task_id)),
            status=result.get("status", ""),
            rx_bytes=int(result.get("rx_bytes") or 0),
            size=int(result.get("size") or 0),
        )

    def get_download_dir(self) -> str:
        """Return the default download directory of the appliance."""
        result = self._request("get download config", "GET", "/downloads/config/")
        encoded = (result or {}).get("download_dir", "")
        try:
            download_dir = decode_path(encoded)
        except ValueError as e:
            raise FreeboxAPIError("get download config", "download_dir is not base64") from e
        if not download_dir:
            raise FreeboxAPIError("get download config", "download_dir is empty")
        return download_dir

    def get_vm_storage_path(self) -> str:
        """Return the VM storage directory, ``/<user_main_storage>/VMs``."""
        result = self._request("get system info", "GET", "/system/")
        main_storage = (result or {}).get("user_main_storage", "")
        if not main_storage:
            raise FreeboxAPIError("get system info", "user_main_storage is empty")
        return f"/{main_storage}/VMs"

    # Filesystem

    def _filesystem_task(self, operation: str, path: str, payload: dict[str, Any]) -> FileSystemTask:
        result = self._request(operation, "POST", path, json=payload)
        return self._parse_filesystem_task(result)

    @staticmethod
    def _parse_filesystem_task(result: dict[str, Any]) -> FileSystemTask:
        return FileSystemTask(
            id=int(result["id"]),
            state=result.get("state", ""),
            type=result.get("type", ""),
            error=result.get("error", "") or "",
        )

    def extract_file(self, src: str, dst: str) -> FileSystemTask:
        """Extract an archive into a destination directory."""
        return self._filesystem_task(
            "extract file",
            "/fs/extract/",
            {
                "src": encode_path(src),
                "dst": encode_path(dst),
                "delete_archive": False,
                "overwrite": True,
            },
        )

    def copy_files(self, files: list[str], dst: str, mode: str = FILE_MODE_OVERWRITE) -> FileSystemTask:
        """Copy files into a destination directory."""
        return self._filesystem_task(
            "copy files",
            "/fs/cp/",
            {"files": [encode_path(f) for f in files], "dst": encode_path(dst), "mode": mode},
        )

    def move_files(self, files: list[str], dst: str, mode: str = FILE_MODE_OVERWRITE) -> FileSystemTask:
        """Move files to a destination path."""
        return self._filesystem_task(
            "move files",
            "/fs/mv/",
            {"files": [encode_path(f) for f in files], "dst": encode_path(dst), "mode": mode},
        )

    def remove_files(self, files: list[str]) -> FileSystemTask:
        """Delete files."""
        return self._filesystem_task(
            "remove files",
            "/fs/rm/",
            {"files": [encode_path(f) for f in files]},
        )

    def get_filesystem_task(self, task_id: int) -> FileSystemTask:
        """Fetch the state of a filesystem task."""
        result = self._request("get filesystem task", "GET", f"/fs/tasks/{task_id}")
        return self._parse_filesystem_task(result)

    # Virtual disks

    def resize_virtual_disk(self, disk_path: str, size: int, shrink_allow: bool = False) -> int:
        """Grow a disk image and return the task id."""
        result = self._request(
            "resize virtual disk",
            "POST",
            "/vm/disk/resize/",
            json={"disk_path": encode_path(disk_path), "size": size, "shrink_allow": shrink_allow},
        )
        return int(result["id"])

    def get_virtual_disk_task(self, task_id: int) -> VirtualDiskTask:
        """Fetch the state of a virtual disk task."""
        result = self._request("get virtual disk task", "GET", f"/vm/disk/task/{task_id}")
        return VirtualDiskTask(
            id=int(result.get("id", task_id)),
            done=bool(result.get("done", False)),
            error=bool(result.get("error", False)),
        )

    # Virtual machines

    def create_virtual_machine(self, payload: VirtualMachinePayload) -> VirtualMachine:
        """Create a VM."""
        result = self._request("create virtual machine", "POST", "/vm/", json=payload.to_api())
        return VirtualMachine.from_api(result)

    def get_virtual_machine(self, vm_id: int) -> VirtualMachine:
        """Fetch a VM."""
        result = self._request("get virtual machine", "GET", f"/vm/{vm_id}")
        return VirtualMachine.from_api(result)

    def start_virtual_machine(self, vm_id: int) -> None:
        """Boot a VM."""
        self._request("start virtual machine", "POST", f"/vm/{vm_id}/start")

    def kill_virtual_machine(self, vm_id: int) -> None:
        """Force-stop a VM."""
        self._request("kill virtual machine", "POST", f"/vm/{vm_id}/stop")

    def delete_virtual_machine(self, vm_id: int) -> None:
        """Delete a stopped VM."""
        self._request("delete virtual machine", "DELETE", f"/vm/{vm_id}")

    # LAN

    def get_lan_hosts(self, interface: str) -> list[LanHost]:
        """List the hosts the LAN browser knows on an interface."""
        result = self._request("list LAN hosts", "GET", f"/lan/browser/{interface}/")
        return [LanHost.from_api(host) for host in result or []]
