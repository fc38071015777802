"""Orchestration of tenant create and delete runs."""

from cyberrange.orchestrator.manifest import write_manifest
from cyberrange.orchestrator.service import ProvisioningOrchestrator


__all__ = ["ProvisioningOrchestrator", "write_manifest"]
