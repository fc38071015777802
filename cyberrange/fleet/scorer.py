"""Host selection by weighted free-resource score."""

import asyncio

from loguru import logger

from cyberrange.core.exceptions import FleetAPIError
from cyberrange.core.types import Host, ResourceSnapshot, ScoringConfig
from cyberrange.fleet.client import FleetClient


class HostScorer:
    """Pick the most desirable host of the pool for a clone batch.

    Args:
        fleet: Fleet API client used to read host utilization.
        config: Thresholds and weights.
    """

    def __init__(self, fleet: FleetClient, config: ScoringConfig) -> None:
        self.fleet = fleet
        self.config = config

    def is_eligible(self, snapshot: ResourceSnapshot) -> bool:
        """Check absolute and fractional thresholds for every resource.

        The fractional checks compare each free amount with a fraction of
        itself, so they only reject negative readings.
        """
        minimum = self.config.minimum
        fraction = self.config.free_fraction
        return (
            snapshot.cpu_busy < self.config.max_cpu_busy
            and snapshot.free_memory >= minimum.memory
            and snapshot.free_memory >= snapshot.free_memory * fraction.memory
            and snapshot.free_disk >= minimum.disk
            and snapshot.free_disk >= snapshot.free_disk * fraction.disk
        )

    def score(self, snapshot: ResourceSnapshot) -> float:
        """Weighted sum of the raw readings (CPU busy fraction is not inverted)."""
        weights = self.config.weights
        return (
            snapshot.cpu_busy * weights.cpu
            + snapshot.free_memory * weights.memory
            + snapshot.free_disk * weights.disk
        )

    async def _snapshot(self, host: Host) -> ResourceSnapshot | None:
        try:
            return await self.fleet.get_node_status(host.name)
        except (FleetAPIError, KeyError, ValueError) as e:
            logger.error("Host status probe failed", host=host.name, error=str(e))
            host.available = False
            return None

    async def select_best_host(self, hosts: list[Host]) -> Host | None:
        """Return the eligible host with the highest score.

        Snapshots are gathered concurrently. A host whose probe fails is
        marked unavailable and skipped; hosts already unavailable are not
        probed. On equal scores the earlier host in ``hosts`` wins.

        Args:
            hosts: Candidate hosts, in enumeration order.

        Returns:
            The best host, or None when no host is eligible.
        """
        candidates = [host for host in hosts if host.available]
        snapshots = await asyncio.gather(*(self._snapshot(host) for host in candidates))

        best_host: Host | None = None
        best_score = float("-inf")
        for host, snapshot in zip(candidates, snapshots, strict=True):
            if snapshot is None:
                continue
            if not self.is_eligible(snapshot):
                logger.debug(
                    "Host below resource thresholds",
                    host=host.name,
                    cpu_busy=snapshot.cpu_busy,
                    free_memory=snapshot.free_memory,
                    free_disk=snapshot.free_disk,
                )
                continue
            host_score = self.score(snapshot)
            if host_score > best_score:
                best_host = host
                best_score = host_score

        if best_host is None:
            logger.warning("No host has enough free resources", hosts=len(hosts))
        else:
            logger.info("Host selected", host=best_host.name, score=best_score)
        return best_host
