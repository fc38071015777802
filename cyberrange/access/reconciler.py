"""Idempotent mapping of instances to access service resources.

Each provisioned instance owns one user and one connection of the same
name, linked by a READ permission. Every operation here can be re-run
safely: resources are looked up by name before being created, and
deleting something already gone counts as success.
"""

from loguru import logger

from cyberrange.access.client import AccessClient
from cyberrange.core.exceptions import AccessServiceError
from cyberrange.core.types import (
    AccessConnection,
    InstanceFailure,
    ProvisionedAccount,
    RevokeResult,
)


class AccessReconciler:
    """Create-or-fetch and revoke access resources by name.

    Args:
        client: Access service API client.
        password_suffix: Appended to the hostname to derive user passwords.
    """

    def __init__(self, client: AccessClient, password_suffix: str = "") -> None:
        self.client = client
        self.password_suffix = password_suffix

    async def authenticate(self) -> None:
        """Acquire the run's session token.

        Raises:
            AccessAuthenticationError: If the token exchange fails.
        """
        await self.client.authenticate()

    def password_for(self, hostname: str) -> str:
        return f"{hostname}{self.password_suffix}"

    async def ensure_connection(self, name: str, ip: str) -> str:
        """Return the identifier of connection ``name``, creating it if absent."""
        existing = await self.client.find_connection(name)
        if existing is not None:
            logger.info("Connection already exists", connection=name, identifier=existing.identifier)
            return existing.identifier
        identifier = await self.client.create_connection(name, ip)
        logger.info("Connection created", connection=name, identifier=identifier, ip=ip)
        return identifier

    async def ensure_user(self, name: str, secret: str) -> None:
        """Create user ``name`` unless it already exists."""
        if await self.client.user_exists(name):
            logger.info("User already exists", user=name)
            return
        await self.client.create_user(name, secret)
        logger.info("User created", user=name)

    async def grant(self, name: str, connection_id: str) -> None:
        """Give user ``name`` READ permission on a connection."""
        await self.client.add_connection_permission(name, connection_id)
        logger.info("Permission granted", user=name, connection_id=connection_id)

    async def reconcile(self, hostname: str, ip: str) -> ProvisionedAccount:
        """Ensure connection, user and permission exist for one instance.

        Raises:
            AccessServiceError: If any access service call fails.
        """
        connection_id = await self.ensure_connection(hostname, ip)
        password = self.password_for(hostname)
        await self.ensure_user(hostname, password)
        await self.grant(hostname, connection_id)
        return ProvisionedAccount(
            username=hostname,
            password=password,
            connection_name=hostname,
            ip=ip,
        )

    async def _delete_connection(self, connection: AccessConnection) -> None:
        try:
            await self.client.delete_connection(connection.identifier)
        except AccessServiceError as e:
            if not e.is_not_found:
                raise
            logger.info("Connection already deleted", connection=connection.name)
            return
        logger.info("Connection deleted", connection=connection.name, identifier=connection.identifier)

    async def _delete_user(self, name: str) -> None:
        if not await self.client.user_exists(name):
            logger.info("User already deleted", user=name)
            return
        try:
            await self.client.delete_user(name)
        except AccessServiceError as e:
            if not e.is_not_found:
                raise
            logger.info("User already deleted", user=name)
            return
        logger.info("User deleted", user=name)

    async def revoke_all(self, tenant_prefix: str) -> RevokeResult:
        """Delete every connection containing ``tenant_prefix`` and its user.

        Resources that are already absent are skipped without error. A
        failure on one connection or user is recorded and the remaining
        ones are still processed.

        Returns:
            Revoked connection names and one failure per connection left behind.

        Raises:
            AccessServiceError: If the connection listing itself fails.
        """
        connections = [
            connection
            for connection in await self.client.list_connections()
            if tenant_prefix in connection.name
        ]
        logger.info("Revoking access resources", prefix=tenant_prefix, connections=len(connections))
        result = RevokeResult()
        for connection in connections:
            try:
                await self._delete_connection(connection)
                await self._delete_user(connection.name)
            except AccessServiceError as e:
                logger.error("Failed to revoke access", connection=connection.name, error=str(e))
                result.failures.append(InstanceFailure(
                    entity=connection.name, stage="access", detail=str(e),
                ))
                continue
            result.revoked.append(connection.name)
        return result
