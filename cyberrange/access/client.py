# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""REST client for the Guacamole access service."""
from types import TracebackType
from typing import Any

import httpx
from loguru import logger

from cyberrange.core.exceptions import AccessAuthenticationError, AccessServiceError
from cyberrange.core.types import AccessConfig, AccessConnection


class AccessClient:
    """HTTP client for the access service API.

    The session token obtained by :meth:`authenticate` is sent as the
    ``token`` query parameter on every later call and is never refreshed
    within a run.

    Example:
        >>> async with AccessClient(settings.access) as access:
        ...     await access.authenticate()
        ...     connections = await access.list_connections()
    """

    def __init__(
        self,
        config: AccessConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the access client.

        Args:
            config: Access service configuration.
            transport: Optional transport override (used by tests).
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout, connect=5.0),
            transport=transport,
        )
        self._token: str | None = None

    async def __aenter__(self) -> "AccessClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _data_url(self) -> str:
        return f"{self.base_url}/session/data/{self.config.data_source}"

    async def authenticate(self) -> str:
        """Exchange the admin credentials for a session token.

        Returns:
            The session token.

        Raises:
            AccessAuthenticationError: If the exchange fails for any reason.
        """
        try:
            response = await self._client.post(
                f"{self.base_url}/tokens",
                data={"username": self.config.username, "password": self.config.password},
            )
        except httpx.HTTPError as e:
            raise AccessAuthenticationError(
                f"Cannot reach access service at {self.base_url}: {e}"
            ) from e

        if response.status_code != 200:
            raise AccessAuthenticationError(
                f"Access service rejected credentials for {self.config.username}",
                status_code=response.status_code,
                detail=response.text,
            )
        token = response.json().get("authToken")
        if not token:
            raise AccessAuthenticationError("Auth token not found in response")
        self._token = token
        logger.info("Access service token acquired", user=self.config.username)
        return token

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
    ) -> httpx.Response:
        """Send a token-authenticated request.

        Raises:
            AccessAuthenticationError: If called before :meth:`authenticate`.
            AccessServiceError: On transport errors and non-2xx responses.
        """
        if self._token is None:
            raise AccessAuthenticationError("Access service call made before authentication")
        try:
            response = await self._client.request(
                method, url, params={"token": self._token}, json=json
            )
        except httpx.HTTPError as e:
            raise AccessServiceError(f"{method} {url} failed: {e}") from e

        if not response.is_success:
            raise AccessServiceError(
                f"{method} {url} failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                detail=response.text,
            )
        return response

    async def list_connections(self) -> list[AccessConnection]:
        """List every connection of the data source."""
        response = await self._request("GET", f"{self._data_url}/connections")
        return [
            AccessConnection(
                identifier=str(item["identifier"]),
                name=item.get("name", ""),
                protocol=item.get("protocol", ""),
            )
            for item in (response.json() or {}).values()
        ]

    async def find_connection(self, name: str) -> AccessConnection | None:
        for connection in await self.list_connections():
            if connection.name == name:
                return connection
        return None

    async def create_connection(self, name: str, ip: str) -> str:
        """Create a connection to ``ip`` from the fixed parameter template.

        Returns:
            Identifier of the new connection.
        """
        body = {
            "parentIdentifier": "ROOT",
            "name": name,
            "protocol": self.config.protocol,
            "parameters": {
                "hostname": ip,
                "port": str(self.config.connection_port),
                "username": self.config.connection_username,
                "password": self.config.connection_password,
                "security": "",
                "ignore-cert": "",
                "enable-drive": "",
            },
            "attributes": {
                "max-connections": "",
                "max-connections-per-user": "",
                "weight": "",
                "failover-only": "",
            },
        }
        response = await self._request("POST", f"{self._data_url}/connections", json=body)
        return str(response.json()["identifier"])

    async def delete_connection(self, identifier: str) -> None:
        await self._request("DELETE", f"{self._data_url}/connections/{identifier}")

    async def user_exists(self, username: str) -> bool:
        """Check whether a user exists (404 means absent)."""
        try:
            await self._request("GET", f"{self._data_url}/users/{username}")
        except AccessServiceError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def create_user(self, username: str, password: str) -> None:
        await self._request(
            "POST",
            f"{self._data_url}/users",
            json={
                "username": username,
                "password": password,
                "attributes": {
                    "guac-full-name": username,
                    "guac-organization": self.config.organization,
                },
            },
        )

    async def delete_user(self, username: str) -> None:
        await self._request("DELETE", f"{self._data_url}/users/{username}")

    async def add_connection_permission(self, username: str, connection_id: str) -> None:
        """Grant ``username`` READ access to a connection (idempotent server-side)."""
        await self._request(
            "PATCH",
            f"{self._data_url}/users/{username}/permissions",
            json=[
                {
                    "op": "add",
                    "path": f"/connectionPermissions/{connection_id}",
                    "value": "READ",
                }
            ],
        )
