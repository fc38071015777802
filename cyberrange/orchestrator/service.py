# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Provisioning orchestrator composing fleet, discovery and access layers."""

import asyncio

from loguru import logger

from cyberrange.access.reconciler import AccessReconciler
from cyberrange.core.constants import IP_NOT_FOUND, InstanceState, RuntimeStatus
from cyberrange.core.exceptions import (
    AccessAuthenticationError,
    AccessServiceError,
    FleetAPIError,
    NoCapacityError,
    ProvisioningError,
    ReadinessTimeoutError,
)
from cyberrange.core.polling import poll_until
from cyberrange.core.types import (
    CreateReport,
    DeleteReport,
    FleetInstance,
    Host,
    InstanceFailure,
    Settings,
)
from cyberrange.fleet.client import FleetClient
from cyberrange.fleet.cloner import CloneStartMachine
from cyberrange.fleet.discovery import NetworkDiscoveryPoller
from cyberrange.fleet.scorer import HostScorer
from cyberrange.orchestrator.lock import run_lock
from cyberrange.orchestrator.manifest import write_manifest
from cyberrange.orchestrator.tenants import belongs_to, extract_tenant_names, validate_tenant
from cyberrange.remote.channel import RemoteCommandChannel


class ProvisioningOrchestrator:
    """Create and delete the sandboxes of a tenant in one best-effort pass.

    Nothing is persisted between runs: hosts, instances and access
    resources are rediscovered from the remote systems every time. Runs
    are serialized with a process-level lock.

    Args:
        settings: Installation settings.
        fleet: Fleet API client.
        reconciler: Access reconciliation layer.
        channel: SSH command channel used for address discovery.
    """

    def __init__(
        self,
        settings: Settings,
        fleet: FleetClient,
        reconciler: AccessReconciler,
        channel: RemoteCommandChannel,
    ) -> None:
        self.settings = settings
        self.fleet = fleet
        self.reconciler = reconciler
        self.discovery = NetworkDiscoveryPoller(
            channel, settings.timing, settings.ssh.address_prefixes
        )

    def _hosts(self) -> list[Host]:
        # Availability flags are per run, so each run works on fresh copies
        return [host.model_copy() for host in self.settings.fleet.hosts]

    async def create_for_tenant(self, tenant: str, count: int) -> CreateReport:
        """Provision ``count`` instances and their access resources.

        Args:
            tenant: Tenant name, used as hostname prefix.
            count: Number of instances (1 to ``settings.max_accounts``).

        Returns:
            Report with instances, accounts, per-instance failures and the
            manifest path.

        Raises:
            ValueError: If ``count`` is out of range or ``tenant`` is not
                made of lowercase letters and digits.
            FleetAPIError: If the fleet API rejects the credentials.
            NoCapacityError: If no host is eligible; nothing was changed.
            AccessAuthenticationError: If the access token cannot be acquired.
            TemplateNotFoundError: If the chosen host lacks its template.
            ProvisioningError: If no instance could be cloned.
            RunLockedError: If another run is in progress.
        """
        if not 1 <= count <= self.settings.max_accounts:
            raise ValueError(
                f"Number of accounts must be between 1 and {self.settings.max_accounts} (got {count})"
            )
        validate_tenant(tenant)

        with run_lock(self.settings.lock_path):
            await self.fleet.authenticate()
            hosts = self._hosts()
            host = await HostScorer(self.fleet, self.settings.scoring).select_best_host(hosts)
            if host is None:
                raise NoCapacityError("No host has enough free resources to clone the template")

            await self.reconciler.authenticate()

            machine = CloneStartMachine(
                self.fleet,
                hosts,
                self.settings.timing,
                self.settings.fleet.instance_floor,
            )
            instances = await machine.clone_and_start(host, tenant, count)
            report = CreateReport(tenant=tenant, host=host.name, instances=instances)
            for attempted in machine.last_batch:
                if attempted.state is InstanceState.FAILED and attempted not in instances:
                    report.failures.append(InstanceFailure(
                        entity=attempted.hostname, stage="clone", detail=attempted.error or "",
                    ))

            if not instances:
                raise ProvisioningError(f"No instance could be cloned for tenant {tenant}")

            for instance in instances:
                if instance.state is InstanceState.FAILED:
                    report.failures.append(InstanceFailure(
                        entity=instance.hostname, stage="start", detail=instance.error or "",
                    ))

                ip = await self.discovery.discover_ip(host, instance.vmid)
                if ip == IP_NOT_FOUND:
                    report.failures.append(InstanceFailure(
                        entity=instance.hostname, stage="discovery", detail=ip,
                    ))
                else:
                    instance.ip = ip

                try:
                    account = await self.reconciler.reconcile(instance.hostname, ip)
                except AccessServiceError as e:
                    logger.error(
                        "Access reconciliation failed",
                        hostname=instance.hostname,
                        error=str(e),
                        detail=e.detail,
                    )
                    report.failures.append(InstanceFailure(
                        entity=instance.hostname, stage="access", detail=str(e),
                    ))
                    continue
                report.accounts.append(account)

            report.manifest_path = write_manifest(self.settings.output_dir, tenant, report.accounts)
            logger.info(
                "Create run finished",
                tenant=tenant,
                requested=count,
                instances=len(report.instances),
                accounts=len(report.accounts),
                failures=len(report.failures),
            )
            return report

    async def _collect_instances(self) -> tuple[list[FleetInstance], list[InstanceFailure]]:
        """List instances above the identity floor on every host.

        Returns:
            The instances found and one ``list`` failure per host that
            could not be listed.
        """
        hosts = self._hosts()
        listings = await asyncio.gather(
            *(self.fleet.list_instances(host.name) for host in hosts),
            return_exceptions=True,
        )
        floor = self.settings.fleet.instance_floor
        instances: list[FleetInstance] = []
        failures: list[InstanceFailure] = []
        for host, listing in zip(hosts, listings, strict=True):
            if isinstance(listing, FleetAPIError):
                logger.error("Cannot list instances", host=host.name, error=str(listing))
                failures.append(InstanceFailure(entity=host.name, stage="list", detail=str(listing)))
                continue
            if isinstance(listing, BaseException):
                raise listing
            instances.extend(instance for instance in listing if instance.vmid >= floor)
        return instances, failures

    async def list_tenant_instances(self) -> list[FleetInstance]:
        """List instances above the identity floor on every reachable host.

        Raises:
            FleetAPIError: If the fleet API rejects the credentials.
        """
        await self.fleet.authenticate()
        instances, _ = await self._collect_instances()
        return instances

    async def list_tenants(self) -> list[str]:
        """Tenant candidates derived from the names of provisioned instances."""
        return extract_tenant_names(await self.list_tenant_instances())

    async def _wait_stopped(self, instance: FleetInstance) -> None:
        async def _stopped() -> bool:
            status = await self.fleet.get_instance_status(instance.host, instance.vmid)
            return status == RuntimeStatus.STOPPED

        await poll_until(
            _stopped,
            timeout=self.settings.timing.stop_timeout,
            interval=self.settings.timing.poll_interval,
            what=f"Stop of instance {instance.vmid}",
        )

    async def _teardown_instance(self, instance: FleetInstance) -> None:
        """Stop if running, then delete. Absent instances count as deleted.

        Raises:
            FleetAPIError: On failures other than absence.
            ReadinessTimeoutError: If the instance does not stop in time.
        """
        try:
            status = await self.fleet.get_instance_status(instance.host, instance.vmid)
            if status == RuntimeStatus.RUNNING:
                logger.info("Stopping running instance", vmid=instance.vmid, host=instance.host)
                await self.fleet.stop_instance(instance.host, instance.vmid)
                await self._wait_stopped(instance)
            await self.fleet.delete_instance(instance.host, instance.vmid)
        except FleetAPIError as e:
            if not e.is_not_found:
                raise
            logger.info("Instance already deleted", vmid=instance.vmid)
            return
        logger.info("Instance deleted", vmid=instance.vmid, name=instance.name)

    async def delete_for_tenant(self, tenant: str) -> DeleteReport:
        """Tear down every instance of ``tenant`` and revoke its access.

        Order is stop, delete instance, then revoke access resources; the
        revocation runs whatever happened to the instances. Hosts that
        cannot be listed are reported, since their instances are left
        untouched.

        Raises:
            FleetAPIError: If the fleet API rejects the credentials.
            AccessAuthenticationError: If the access token cannot be acquired.
            RunLockedError: If another run is in progress.
        """
        report = DeleteReport(tenant=tenant)
        with run_lock(self.settings.lock_path):
            await self.fleet.authenticate()
            instances, unlisted = await self._collect_instances()
            report.failures.extend(unlisted)
            targets = [instance for instance in instances if belongs_to(instance, tenant)]
            logger.info("Deleting tenant instances", tenant=tenant, instances=len(targets))

            for instance in targets:
                try:
                    await self._teardown_instance(instance)
                except (FleetAPIError, ReadinessTimeoutError) as e:
                    logger.error("Failed to delete instance", vmid=instance.vmid, error=str(e))
                    report.failures.append(InstanceFailure(
                        entity=str(instance.vmid), stage="delete", detail=str(e),
                    ))
                    continue
                report.deleted.append(instance.vmid)

            try:
                await self.reconciler.authenticate()
                revoked = await self.reconciler.revoke_all(f"{tenant}-")
            except AccessAuthenticationError:
                raise
            except AccessServiceError as e:
                logger.error("Failed to revoke access resources", tenant=tenant, error=str(e))
                report.failures.append(InstanceFailure(entity=tenant, stage="access", detail=str(e)))
            else:
                report.failures.extend(revoked.failures)
                report.access_revoked = not revoked.failures

        logger.info(
            "Delete run finished",
            tenant=tenant,
            deleted=len(report.deleted),
            failures=len(report.failures),
        )
        return report
