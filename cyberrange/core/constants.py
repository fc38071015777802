# cyberrange/core/constants.py
"""Constants used across the Cyber Range codebase."""

from enum import StrEnum


class InstanceState(StrEnum):
    """Lifecycle states of a cloned instance within one run."""

    CLONING = "cloning"
    LOCKED_RETRY = "locked_retry"
    CLONED = "cloned"
    STARTED = "started"
    FAILED = "failed"


class RuntimeStatus(StrEnum):
    """Runtime status values reported by the fleet API."""

    RUNNING = "running"
    STOPPED = "stopped"


# Lowest numeric identity handed out to cloned instances
INSTANCE_ID_FLOOR = 2000

# Error fragment the fleet API reports while the template disk is still busy
LOCKED_SIGNATURE = "CT is locked"

# Fragments meaning the target of a request is already gone
NOT_FOUND_SIGNATURES: tuple[str, ...] = (
    "does not exist",
    "not found",
    "no such",
)

# Returned by network discovery when no address could be read
IP_NOT_FOUND = "No IP Address found"

# Upper bound on accounts per create run
MAX_ACCOUNTS = 50

MANIFEST_HEADER = "--- Created Accounts ---"
MANIFEST_DELIMITER = "-" * 30

# Remote command listing the interfaces of a container from its host
LIST_INTERFACES_COMMAND = "pct exec {vmid} -- ip addr"
