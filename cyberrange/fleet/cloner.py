# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Clone/start state machine turning a template into tenant instances."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from loguru import logger

from cyberrange.core.constants import InstanceState
from cyberrange.core.exceptions import FleetAPIError, ReadinessTimeoutError, TemplateNotFoundError
from cyberrange.core.types import Host, Instance, TimingConfig
from cyberrange.fleet.client import FleetClient


class CloneStartMachine:
    """Clone a batch of instances from a host's template and start them.

    Cloning and starting are strictly sequential: identities are allocated
    once per batch and locked-disk retries assume nothing else clones the
    same template concurrently.

    Args:
        fleet: Fleet API client.
        hosts: Whole host pool, scanned for identity allocation.
        timing: Delays, attempt cap and task budget.
        instance_floor: Lowest identity handed out.
    """

    def __init__(
        self,
        fleet: FleetClient,
        hosts: list[Host],
        timing: TimingConfig,
        instance_floor: int,
    ) -> None:
        self.fleet = fleet
        self.hosts = hosts
        self.timing = timing
        self.instance_floor = instance_floor
        self.last_batch: list[Instance] = []

    async def find_template(self, host: Host) -> None:
        """Ensure the template container exists on the host.

        Raises:
            TemplateNotFoundError: If no template with the host's template id is listed.
        """
        instances = await self.fleet.list_instances(host.name)
        for instance in instances:
            if instance.template and instance.vmid == host.template_id:
                logger.info(
                    "Template found",
                    host=host.name,
                    template_id=host.template_id,
                    name=instance.name,
                )
                return
        raise TemplateNotFoundError(
            f"Template {host.template_id} not found on host {host.name}"
        )

    async def next_available_id(self) -> int:
        """Compute the next free identity across the whole pool.

        Returns:
            ``max(existing ids, floor - 1) + 1``.

        Raises:
            FleetAPIError: If any host cannot be listed, since an unseen
                host could already own identities in the range.
        """
        listings = await asyncio.gather(
            *(self.fleet.list_instances(host.name) for host in self.hosts)
        )
        highest = self.instance_floor - 1
        for listing in listings:
            for instance in listing:
                highest = max(highest, instance.vmid)
        next_id = highest + 1
        logger.info("Next available instance id", vmid=next_id)
        return next_id

    @asynccontextmanager
    async def template_unprotected(self, host: Host) -> AsyncIterator[None]:
        """Lift the template write protection for the duration of the block.

        Protection is restored on every exit path when it was enabled.
        """
        config = await self.fleet.get_instance_config(host.name, host.template_id)
        protected = bool(int(config.get("protection", 0) or 0))
        if protected:
            logger.info("Disabling template protection", template_id=host.template_id)
            await self.fleet.set_instance_config(host.name, host.template_id, protection=0)
        try:
            yield
        finally:
            if protected:
                await self.fleet.set_instance_config(host.name, host.template_id, protection=1)
                logger.info("Template protection restored", template_id=host.template_id)

    async def clone_one(self, host: Host, instance: Instance, description: str) -> None:
        """Clone one instance, retrying while the template disk is locked.

        Updates ``instance`` in place: CLONED on success, FAILED after the
        attempt cap on persistent locks or at once on any other error.
        """
        while instance.attempts < self.timing.clone_attempts:
            instance.attempts += 1
            instance.state = InstanceState.CLONING
            try:
                upid = await self.fleet.clone_instance(
                    host.name,
                    host.template_id,
                    newid=instance.vmid,
                    hostname=instance.hostname,
                    description=description,
                )
                await self.fleet.wait_for_task(
                    host.name,
                    upid,
                    timeout=self.timing.task_timeout,
                    interval=self.timing.poll_interval,
                )
            except FleetAPIError as e:
                instance.error = str(e)
                if not e.is_locked:
                    instance.state = InstanceState.FAILED
                    logger.error(
                        "Clone failed",
                        hostname=instance.hostname,
                        vmid=instance.vmid,
                        error=str(e),
                    )
                    return
                instance.state = InstanceState.LOCKED_RETRY
                logger.warning(
                    "Template locked, retrying clone",
                    template_id=host.template_id,
                    hostname=instance.hostname,
                    attempt=instance.attempts,
                )
                if instance.attempts < self.timing.clone_attempts:
                    await asyncio.sleep(self.timing.lock_retry_delay)
                continue
            except ReadinessTimeoutError as e:
                instance.error = str(e)
                instance.state = InstanceState.FAILED
                logger.error("Clone task timed out", hostname=instance.hostname, error=str(e))
                return

            instance.state = InstanceState.CLONED
            instance.error = None
            logger.info("Instance cloned", hostname=instance.hostname, vmid=instance.vmid, host=host.name)
            return

        instance.state = InstanceState.FAILED
        logger.error(
            "Clone failed after repeated lock retries",
            hostname=instance.hostname,
            attempts=instance.attempts,
        )

    async def start_one(self, host: Host, instance: Instance) -> None:
        """Issue the start command for a cloned instance."""
        await asyncio.sleep(self.timing.start_settle_delay)
        try:
            await self.fleet.start_instance(host.name, instance.vmid)
        except FleetAPIError as e:
            instance.state = InstanceState.FAILED
            instance.error = str(e)
            logger.error("Instance start failed", vmid=instance.vmid, error=str(e))
            return
        instance.state = InstanceState.STARTED
        logger.info("Instance started", vmid=instance.vmid, hostname=instance.hostname)

    async def clone_and_start(self, host: Host, tenant: str, count: int) -> list[Instance]:
        """Clone ``count`` instances for ``tenant`` on ``host`` and start them.

        Args:
            host: Host selected for the batch.
            tenant: Tenant name, used as hostname prefix.
            count: Number of instances requested.

        Returns:
            Instances that cloned and were issued a start command. A start
            failure is recorded on the instance (state FAILED) but the
            instance is still returned; clone failures are not returned.

        Raises:
            TemplateNotFoundError: If the host does not carry its template.
            FleetAPIError: If identity allocation or template protection fails.
        """
        await self.find_template(host)

        attempted: list[Instance] = []
        self.last_batch = attempted
        async with self.template_unprotected(host):
            base_id = await self.next_available_id()
            for i in range(1, count + 1):
                instance = Instance(vmid=base_id + i, hostname=f"{tenant}-{i}", host=host.name)
                attempted.append(instance)
                await self.clone_one(host, instance, f"Sandbox for {tenant} account {i}")

        cloned = [instance for instance in attempted if instance.state is InstanceState.CLONED]
        for instance in cloned:
            await self.start_one(host, instance)

        failed = len(attempted) - len(cloned)
        if failed:
            logger.warning("Some clones failed", tenant=tenant, failed=failed, requested=count)
        return cloned
