"""Tenant naming helpers."""

import re

from cyberrange.core.types import FleetInstance


_UNSAFE_CHARS = re.compile(r"[^a-z0-9\-]", re.IGNORECASE)
_TENANT_NAME = re.compile(r"[a-z0-9]+")


def sanitize_tenant(name: str) -> str:
    """Replace every character outside ``[a-z0-9-]`` with a dash."""
    return _UNSAFE_CHARS.sub("-", name)


def tenant_of(hostname: str) -> str:
    """Tenant part of an instance hostname ('acme-corp-3' -> 'acme-corp')."""
    return hostname.rsplit("-", 1)[0]


def extract_tenant_names(instances: list[FleetInstance]) -> list[str]:
    """Derive tenant candidates from instance names.

    Takes the part of each name before the first dash, sanitized, and
    keeps those longer than one character, in first-seen order.
    """
    names: dict[str, None] = {}
    for instance in instances:
        candidate = sanitize_tenant(instance.name.split("-")[0])
        if len(candidate) > 1:
            names.setdefault(candidate)
    return list(names)


def belongs_to(instance: FleetInstance, tenant: str) -> bool:
    return instance.name.startswith(f"{tenant}-")


def validate_tenant(name: str) -> str:
    """Return ``name`` if it can prefix instance hostnames.

    Only lowercase letters and digits are accepted. A dash would make the
    tenant ambiguous with its hostname suffix and with longer tenants
    sharing the same first word.

    Raises:
        ValueError: If ``name`` contains anything else.
    """
    if not _TENANT_NAME.fullmatch(name):
        raise ValueError(f"Company name must be lowercase letters and digits: '{name}'")
    return name
