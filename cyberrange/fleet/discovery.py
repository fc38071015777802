"""Network address discovery for freshly started instances."""

import asyncio
import re

from loguru import logger

from cyberrange.core.constants import IP_NOT_FOUND, LIST_INTERFACES_COMMAND
from cyberrange.core.exceptions import ReadinessTimeoutError, RemoteCommandError
from cyberrange.core.polling import poll_until
from cyberrange.core.types import Host, TimingConfig
from cyberrange.remote.channel import RemoteCommandChannel


_INET_PATTERN = re.compile(r"inet\s+(\d{1,3}(?:\.\d{1,3}){3})")


def extract_ip(output: str, prefixes: list[str]) -> str | None:
    """Return the first ``inet`` address of ``output`` starting with a prefix.

    Args:
        output: Interface listing as printed by ``ip addr``.
        prefixes: Accepted address prefixes (e.g. ``["147.", "192."]``).

    Returns:
        The matching address, or None.
    """
    for match in _INET_PATTERN.finditer(output):
        address = match.group(1)
        if any(address.startswith(prefix) for prefix in prefixes):
            return address
    return None


class NetworkDiscoveryPoller:
    """Read the address assigned to an instance through its host.

    Args:
        channel: SSH channel to the hosts.
        timing: DHCP settling delay and discovery budget.
        prefixes: Accepted address prefixes.
    """

    def __init__(
        self,
        channel: RemoteCommandChannel,
        timing: TimingConfig,
        prefixes: list[str],
    ) -> None:
        self.channel = channel
        self.timing = timing
        self.prefixes = prefixes

    async def _probe(self, host: Host, vmid: int) -> str | None:
        command = LIST_INTERFACES_COMMAND.format(vmid=vmid)
        output = await self.channel.run(host.address, command)
        return extract_ip(output, self.prefixes)

    async def discover_ip(self, host: Host, vmid: int) -> str:
        """Wait for the instance to get an address and return it.

        Never raises: channel errors and an exhausted budget both yield
        ``IP_NOT_FOUND``, which callers treat as a soft failure.
        """
        await asyncio.sleep(self.timing.dhcp_settle_delay)

        async def _address() -> str | None:
            return await self._probe(host, vmid)

        try:
            address = await poll_until(
                _address,
                timeout=self.timing.discovery_timeout,
                interval=self.timing.poll_interval,
                what=f"Address of instance {vmid}",
            )
        except RemoteCommandError as e:
            logger.error("Address discovery failed", vmid=vmid, host=host.name, error=str(e))
            return IP_NOT_FOUND
        except ReadinessTimeoutError as e:
            logger.warning("No address found for instance", vmid=vmid, host=host.name, error=str(e))
            return IP_NOT_FOUND

        logger.info("Instance address discovered", vmid=vmid, ip=address)
        return address
