"""Compute fleet integration.

Exports:
    FleetClient: REST client for the fleet API.
    HostScorer: Picks the host receiving a clone batch.
    CloneStartMachine: Clones and starts tenant instances.
    NetworkDiscoveryPoller: Reads instance addresses over SSH.
"""

from cyberrange.fleet.client import FleetClient
from cyberrange.fleet.cloner import CloneStartMachine
from cyberrange.fleet.discovery import NetworkDiscoveryPoller
from cyberrange.fleet.scorer import HostScorer


__all__ = [
    "CloneStartMachine",
    "FleetClient",
    "HostScorer",
    "NetworkDiscoveryPoller",
]
