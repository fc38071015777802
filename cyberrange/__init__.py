"""Cyber Range Manager: tenant sandbox provisioning with remote access."""

from cyberrange.config import load_settings
from cyberrange.orchestrator.service import ProvisioningOrchestrator


__version__ = "0.1.0"

__all__ = [
    "ProvisioningOrchestrator",
    "load_settings",
    "__version__",
]
