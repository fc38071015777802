# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""REST client for the Proxmox VE compute fleet API."""
import asyncio
from types import TracebackType
from typing import Any

import httpx
from loguru import logger

from cyberrange.core.exceptions import FleetAPIError
from cyberrange.core.polling import poll_until
from cyberrange.core.types import FleetConfig, FleetInstance, ResourceSnapshot


_TICKET_COOKIE = "PVEAuthCookie"
_CSRF_HEADER = "CSRFPreventionToken"


class FleetClient:
    """HTTP client for the compute fleet API.

    One client is opened per orchestration run. Authentication happens on
    the first request with a ticket exchange; the ticket cookie and CSRF
    token are then reused for every call of the run.

    Example:
        >>> async with FleetClient(settings.fleet) as fleet:
        ...     snapshot = await fleet.get_node_status("proxmox09")
    """

    def __init__(
        self,
        config: FleetConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the fleet client.

        Args:
            config: Fleet API configuration.
            transport: Optional transport override (used by tests).
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            verify=config.verify_tls,
            timeout=httpx.Timeout(config.request_timeout, connect=5.0),
            transport=transport,
        )
        self._auth_lock = asyncio.Lock()
        self._authenticated = False

    async def __aenter__(self) -> "FleetClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def authenticate(self) -> None:
        """Exchange the API credentials for a ticket.

        Raises:
            FleetAPIError: If the credentials are rejected or the API is unreachable.
        """
        async with self._auth_lock:
            if self._authenticated:
                return
            try:
                response = await self._client.post(
                    "/access/ticket",
                    data={
                        "username": self.config.username,
                        "password": self.config.password,
                    },
                )
            except httpx.HTTPError as e:
                raise FleetAPIError(
                    f"Cannot reach fleet API at {self.config.base_url}: {e}"
                ) from e
            if response.status_code != 200:
                raise FleetAPIError(
                    f"Fleet authentication failed for {self.config.username}",
                    status_code=response.status_code,
                    detail=response.reason_phrase,
                )
            data = response.json().get("data") or {}
            if not data.get("ticket"):
                raise FleetAPIError("Fleet authentication returned no ticket")
            self._client.cookies.set(_TICKET_COOKIE, data["ticket"])
            self._client.headers[_CSRF_HEADER] = data.get(_CSRF_HEADER, "")
            self._authenticated = True
            logger.debug("Fleet ticket acquired", user=self.config.username)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send an authenticated request and unwrap the ``data`` envelope.

        Raises:
            FleetAPIError: On transport errors and non-2xx responses. The
                message carries the reason phrase, where the fleet API
                reports its error text.
        """
        await self.authenticate()
        try:
            response = await self._client.request(method, path, data=data, params=params)
        except httpx.HTTPError as e:
            raise FleetAPIError(f"{method} {path} failed: {e}") from e

        if response.is_success:
            return response.json().get("data")

        raise FleetAPIError(
            f"{method} {path} failed: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            detail=response.text,
        )

    async def get_node_status(self, node: str) -> ResourceSnapshot:
        """Read live utilization of a node.

        Returns:
            Snapshot with the CPU busy fraction rounded to one decimal and
            free memory and root disk in bytes.
        """
        status = await self._request("GET", f"/nodes/{node}/status")
        return ResourceSnapshot(
            cpu_busy=round(float(status["cpu"]), 1),
            free_memory=int(status["memory"]["free"]),
            free_disk=int(status["rootfs"]["free"]),
        )

    async def list_instances(self, node: str) -> list[FleetInstance]:
        """List the containers of a node."""
        rows = await self._request("GET", f"/nodes/{node}/lxc") or []
        return [FleetInstance.model_validate({**row, "host": node}) for row in rows]

    async def get_instance_config(self, node: str, vmid: int) -> dict[str, Any]:
        return await self._request("GET", f"/nodes/{node}/lxc/{vmid}/config") or {}

    async def set_instance_config(self, node: str, vmid: int, **values: Any) -> None:
        await self._request("PUT", f"/nodes/{node}/lxc/{vmid}/config", data=values)

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
        """Clone a template into a new container on the same node.

        Returns:
            Identifier of the asynchronous clone task.
        """
        return await self._request(
            "POST",
            f"/nodes/{node}/lxc/{template_id}/clone",
            data={
                "newid": newid,
                "hostname": hostname,
                "full": int(full),
                "target": node,
                "description": description,
            },
        )

    async def start_instance(self, node: str, vmid: int) -> str:
        return await self._request("POST", f"/nodes/{node}/lxc/{vmid}/status/start")

    async def stop_instance(self, node: str, vmid: int) -> str:
        return await self._request("POST", f"/nodes/{node}/lxc/{vmid}/status/stop")

    async def get_instance_status(self, node: str, vmid: int) -> str:
        """Return the runtime status of a container ('running', 'stopped')."""
        current = await self._request("GET", f"/nodes/{node}/lxc/{vmid}/status/current")
        return str((current or {}).get("status", ""))

    async def delete_instance(self, node: str, vmid: int) -> str:
        """Destroy a container and purge it from related configuration."""
        return await self._request(
            "DELETE",
            f"/nodes/{node}/lxc/{vmid}",
            params={"force": 1, "purge": 1},
        )

    async def get_task_status(self, node: str, upid: str) -> dict[str, Any]:
        return await self._request("GET", f"/nodes/{node}/tasks/{upid}/status") or {}

    async def wait_for_task(
        self,
        node: str,
        upid: str,
        *,
        timeout: float,
        interval: float,
    ) -> None:
        """Wait until a fleet task stops and check that it succeeded.

        Raises:
            FleetAPIError: If the task finished with an error exit status.
            ReadinessTimeoutError: If the task is still running after ``timeout``.
        """

        async def _finished() -> dict[str, Any] | None:
            status = await self.get_task_status(node, upid)
            return status if status.get("status") == "stopped" else None

        status = await poll_until(
            _finished, timeout=timeout, interval=interval, what=f"Task {upid}"
        )
        exit_status = status.get("exitstatus", "")
        if exit_status != "OK":
            raise FleetAPIError(f"Task {upid} on {node} failed: {exit_status}")
