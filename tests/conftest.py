# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Shared fixtures and helpers for all tests.

This module provides factory fixtures for settings and hosts, plus
in-memory stand-ins for the compute fleet, the SSH channel and the
access service so orchestration flows run without any network.
"""
import json
import re
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from cyberrange.access.client import AccessClient
from cyberrange.access.reconciler import AccessReconciler
from cyberrange.core.exceptions import FleetAPIError, RemoteCommandError
from cyberrange.core.types import (
    AccessConfig,
    FleetConfig,
    FleetInstance,
    Host,
    ResourceSnapshot,
    Settings,
    SshConfig,
    TimingConfig,
)
from cyberrange.orchestrator.service import ProvisioningOrchestrator


GIB = 1024 * 1024 * 1024


class FakeFleet:
    """In-memory compute fleet exposing the FleetClient coroutine API.

    Attributes:
        snapshots: Node name to snapshot, or to an exception raised on probe.
        instances: Node name to its listed instances (templates included).
        protection: (node, vmid) to protection flag of template configs.
        clone_errors: Errors consumed one per clone call; None means success.
        start_errors: Instance id to the error raised when starting it.
        list_errors: Node name to the error raised when listing it.
        auth_error: Error raised by the ticket exchange, if any.
        calls: Chronological log of mutating calls.
    """

    def __init__(self) -> None:
        self.snapshots: dict[str, ResourceSnapshot | Exception] = {}
        self.instances: dict[str, list[FleetInstance]] = {}
        self.protection: dict[tuple[str, int], int] = {}
        self.clone_errors: list[Exception | None] = []
        self.start_errors: dict[int, Exception] = {}
        self.list_errors: dict[str, Exception] = {}
        self.auth_error: Exception | None = None
        self.calls: list[tuple[Any, ...]] = []

    def add_template(self, node: str, vmid: int, protected: bool = True) -> None:
        self.instances.setdefault(node, []).append(
            FleetInstance(vmid=vmid, name=f"template-{vmid}", status="stopped", template=True, host=node)
        )
        self.protection[(node, vmid)] = int(protected)

    def add_instance(self, node: str, vmid: int, name: str, status: str = "running") -> None:
        self.instances.setdefault(node, []).append(
            FleetInstance(vmid=vmid, name=name, status=status, host=node)
        )

    def find(self, node: str, vmid: int) -> FleetInstance | None:
        for instance in self.instances.get(node, []):
            if instance.vmid == vmid:
                return instance
        return None

    def _missing(self, node: str, vmid: int) -> FleetAPIError:
        return FleetAPIError(
            f"GET /nodes/{node}/lxc/{vmid} failed: 500 Configuration file does not exist",
            status_code=500,
        )

    async def authenticate(self) -> None:
        if self.auth_error is not None:
            raise self.auth_error

    async def get_node_status(self, node: str) -> ResourceSnapshot:
        value = self.snapshots[node]
        if isinstance(value, Exception):
            raise value
        return value

    async def list_instances(self, node: str) -> list[FleetInstance]:
        if node in self.list_errors:
            raise self.list_errors[node]
        return list(self.instances.get(node, []))

    async def get_instance_config(self, node: str, vmid: int) -> dict[str, Any]:
        return {"protection": self.protection.get((node, vmid), 0)}

    async def set_instance_config(self, node: str, vmid: int, **values: Any) -> None:
        self.calls.append(("config", node, vmid, values))
        self.protection[(node, vmid)] = values["protection"]

    async def clone_instance(
        self,
        node: str,
        template_id: int,
        *,
        newid: int,
        hostname: str,
        description: str,
        full: bool = False,
    ) -> str:
        self.calls.append(("clone", node, newid, hostname))
        if self.clone_errors:
            error = self.clone_errors.pop(0)
            if error is not None:
                raise error
        self.add_instance(node, newid, hostname, status="stopped")
        return f"UPID:{node}:{newid}:vzclone"

    async def wait_for_task(self, node: str, upid: str, *, timeout: float, interval: float) -> None:
        return None

    async def start_instance(self, node: str, vmid: int) -> str:
        self.calls.append(("start", node, vmid))
        if vmid in self.start_errors:
            raise self.start_errors[vmid]
        instance = self.find(node, vmid)
        if instance is None:
            raise self._missing(node, vmid)
        instance.status = "running"
        return f"UPID:{node}:{vmid}:vzstart"

    async def stop_instance(self, node: str, vmid: int) -> str:
        self.calls.append(("stop", node, vmid))
        instance = self.find(node, vmid)
        if instance is None:
            raise self._missing(node, vmid)
        instance.status = "stopped"
        return f"UPID:{node}:{vmid}:vzstop"

    async def get_instance_status(self, node: str, vmid: int) -> str:
        instance = self.find(node, vmid)
        if instance is None:
            raise self._missing(node, vmid)
        return instance.status

    async def delete_instance(self, node: str, vmid: int) -> str:
        self.calls.append(("delete", node, vmid))
        instance = self.find(node, vmid)
        if instance is None:
            raise self._missing(node, vmid)
        self.instances[node].remove(instance)
        return f"UPID:{node}:{vmid}:vzdestroy"


class FakeChannel:
    """SSH channel answering ``ip addr`` listings from a vmid-to-address map."""

    _VMID = re.compile(r"pct exec (\d+)")

    def __init__(self) -> None:
        self.addresses: dict[int, str] = {}
        self.error: RemoteCommandError | None = None
        self.commands: list[tuple[str, str]] = []

    async def run(self, address: str, command: str) -> str:
        self.commands.append((address, command))
        if self.error is not None:
            raise self.error
        match = self._VMID.search(command)
        vmid = int(match.group(1)) if match else -1
        return interface_listing(self.addresses.get(vmid))


def interface_listing(address: str | None) -> str:
    """Render an ``ip addr`` output with loopback and an optional eth0 address."""
    lines = [
        "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN",
        "    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00",
        "    inet 127.0.0.1/8 scope host lo",
        "2: eth0@if12: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc noqueue state UP",
        "    link/ether bc:24:11:4f:2a:10 brd ff:ff:ff:ff:ff:ff link-netnsid 0",
    ]
    if address:
        lines.append(f"    inet {address}/24 brd 147.16.16.255 scope global dynamic eth0")
    return "\n".join(lines) + "\n"


class FakeAccessService:
    """In-memory Guacamole REST API served through ``httpx.MockTransport``.

    Attributes:
        connections: Identifier to connection record.
        users: Username to user record.
        permissions: Username to granted connection identifiers.
        reject_login: When set, the token exchange answers 403.
        fail: Operation names ('create_connection', 'create_user', ...) answering 500.
        requests: Log of (method, path) received after authentication.
    """

    TOKEN = "C90FDC7C8BC6B5F3"
    PREFIX = "/api/session/data/mysql"

    def __init__(self) -> None:
        self.connections: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.permissions: dict[str, set[str]] = {}
        self.reject_login = False
        self.fail: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self._next_id = 1

    def add_connection(self, name: str, hostname: str = "147.16.16.200") -> str:
        identifier = str(self._next_id)
        self._next_id += 1
        self.connections[identifier] = {
            "identifier": identifier,
            "name": name,
            "protocol": "rdp",
            "parameters": {"hostname": hostname},
        }
        return identifier

    def add_user(self, username: str) -> None:
        self.users[username] = {"username": username}

    def connection_names(self) -> list[str]:
        return sorted(record["name"] for record in self.connections.values())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(lambda request: self.handler(request))

    def _error(self, status: int, message: str) -> httpx.Response:
        return httpx.Response(status, json={"message": message, "type": "NOT_FOUND" if status == 404 else "INTERNAL_ERROR"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/tokens" and request.method == "POST":
            if self.reject_login:
                return self._error(403, "Permission denied.")
            return httpx.Response(200, json={"authToken": self.TOKEN, "username": "guacadmin", "dataSource": "mysql"})

        if request.url.params.get("token") != self.TOKEN:
            return self._error(403, "Permission denied.")
        self.requests.append((request.method, path))

        if not path.startswith(self.PREFIX):
            return self._error(404, "Not found")
        parts = path[len(self.PREFIX):].strip("/").split("/")
        body = json.loads(request.content) if request.content else None

        match (request.method, parts):
            case ("GET", ["connections"]):
                return httpx.Response(200, json=self.connections)
            case ("POST", ["connections"]):
                if "create_connection" in self.fail:
                    return self._error(500, "Unexpected internal error.")
                identifier = self.add_connection(body["name"], body["parameters"]["hostname"])
                return httpx.Response(200, json=self.connections[identifier])
            case ("DELETE", ["connections", identifier]):
                if "delete_connection" in self.fail:
                    return self._error(500, "Unexpected internal error.")
                if self.connections.pop(identifier, None) is None:
                    return self._error(404, f"No such connection: \"{identifier}\"")
                return httpx.Response(204)
            case ("GET", ["users", username]):
                if username not in self.users:
                    return self._error(404, f"No such user: \"{username}\"")
                return httpx.Response(200, json=self.users[username])
            case ("POST", ["users"]):
                if "create_user" in self.fail:
                    return self._error(500, "Unexpected internal error.")
                if body["username"] in self.users:
                    return self._error(400, "User already exists")
                self.users[body["username"]] = body
                return httpx.Response(200, json=body)
            case ("DELETE", ["users", username]):
                if self.users.pop(username, None) is None:
                    return self._error(404, f"No such user: \"{username}\"")
                self.permissions.pop(username, None)
                return httpx.Response(204)
            case ("PATCH", ["users", username, "permissions"]):
                if username not in self.users:
                    return self._error(404, f"No such user: \"{username}\"")
                granted = self.permissions.setdefault(username, set())
                for operation in body:
                    granted.add(operation["path"].rsplit("/", 1)[-1])
                return httpx.Response(204)
        return self._error(404, "Not found")


@pytest.fixture
def host_factory() -> Callable[..., Host]:
    """Factory fixture for creating Host instances with sensible defaults."""
    def _create(
        name: str = "proxmox09",
        address: str = "147.16.16.57",
        template_id: int = 103,
        available: bool = True,
    ) -> Host:
        return Host(name=name, address=address, template_id=template_id, available=available)
    return _create


@pytest.fixture
def snapshot_factory() -> Callable[..., ResourceSnapshot]:
    """Factory fixture for snapshots of a comfortably idle host."""
    def _create(
        cpu_busy: float = 0.1,
        free_memory: int = 16 * GIB,
        free_disk: int = 200 * GIB,
    ) -> ResourceSnapshot:
        return ResourceSnapshot(cpu_busy=cpu_busy, free_memory=free_memory, free_disk=free_disk)
    return _create


@pytest.fixture
def fast_timing() -> TimingConfig:
    """Timing with every delay removed and tiny readiness budgets."""
    return TimingConfig(
        lock_retry_delay=0,
        start_settle_delay=0,
        dhcp_settle_delay=0,
        task_timeout=0.05,
        stop_timeout=0.05,
        discovery_timeout=0.05,
        poll_interval=0,
    )


@pytest.fixture
def pool_hosts(host_factory: Callable[..., Host]) -> list[Host]:
    return [
        host_factory(name="proxmox00", address="147.16.16.14", template_id=155),
        host_factory(name="proxmox03", address="147.16.16.13", template_id=123),
        host_factory(name="proxmox09", address="147.16.16.57", template_id=103),
    ]


@pytest.fixture
def mock_settings_factory(
    tmp_path: Path,
    pool_hosts: list[Host],
    fast_timing: TimingConfig,
) -> Callable[..., Settings]:
    """Factory fixture for Settings writing into the test's tmp_path."""
    def _create(hosts: list[Host] | None = None, **kwargs: Any) -> Settings:
        values: dict[str, Any] = {
            "fleet": FleetConfig(
                api_host="pve.test",
                password="fleet-secret",
                hosts=hosts if hosts is not None else pool_hosts,
            ),
            "ssh": SshConfig(password="ssh-secret"),
            "access": AccessConfig(
                base_url="http://guac.test/api",
                username="guacadmin",
                password="guac-secret",
                connection_password="rdp-secret",
                password_suffix="!2024",
            ),
            "timing": fast_timing,
            "output_dir": tmp_path / "output",
            "lock_path": tmp_path / "run.lock",
        }
        values.update(kwargs)
        return Settings(**values)
    return _create


@pytest.fixture
def mock_settings(mock_settings_factory: Callable[..., Settings]) -> Settings:
    return mock_settings_factory()


@pytest.fixture
def fake_fleet(snapshot_factory: Callable[..., ResourceSnapshot]) -> FakeFleet:
    """Three-host fleet where proxmox09 has the most free resources."""
    fleet = FakeFleet()
    fleet.snapshots = {
        "proxmox00": snapshot_factory(free_memory=8 * GIB, free_disk=100 * GIB),
        "proxmox03": snapshot_factory(free_memory=4 * GIB, free_disk=60 * GIB),
        "proxmox09": snapshot_factory(free_memory=32 * GIB, free_disk=400 * GIB),
    }
    fleet.add_template("proxmox00", 155)
    fleet.add_template("proxmox03", 123)
    fleet.add_template("proxmox09", 103)
    return fleet


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def fake_access() -> FakeAccessService:
    return FakeAccessService()


@pytest.fixture
async def access_client(
    mock_settings: Settings,
    fake_access: FakeAccessService,
) -> AsyncIterator[AccessClient]:
    """AccessClient wired to the in-memory access service."""
    client = AccessClient(mock_settings.access, transport=fake_access.transport)
    yield client
    await client.aclose()


@pytest.fixture
def reconciler(access_client: AccessClient, mock_settings: Settings) -> AccessReconciler:
    return AccessReconciler(access_client, mock_settings.access.password_suffix)


@pytest.fixture
def orchestrator(
    mock_settings: Settings,
    fake_fleet: FakeFleet,
    reconciler: AccessReconciler,
    fake_channel: FakeChannel,
) -> ProvisioningOrchestrator:
    """Orchestrator over the fake fleet, channel and access service."""
    return ProvisioningOrchestrator(mock_settings, fake_fleet, reconciler, fake_channel)  # type: ignore[arg-type]
