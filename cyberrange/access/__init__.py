"""Access service (Guacamole) integration."""

from cyberrange.access.client import AccessClient
from cyberrange.access.reconciler import AccessReconciler


__all__ = ["AccessClient", "AccessReconciler"]
