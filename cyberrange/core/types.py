# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Configuration and shared type definitions for the Cyber Range Manager.

Contains the Pydantic settings models (FleetConfig, SshConfig, AccessConfig,
ScoringConfig, TimingConfig, Settings) and the per-run value objects
(Host, ResourceSnapshot, Instance, ProvisionedAccount, reports) passed
between the fleet, access and orchestrator layers.
"""
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cyberrange.core.constants import (
    INSTANCE_ID_FLOOR,
    IP_NOT_FOUND,
    MAX_ACCOUNTS,
    InstanceState,
)


GIB = 1024 * 1024 * 1024


class Host(BaseModel):
    """A compute node of the pool.

    Attributes:
        name: Node identifier used in fleet API paths (e.g., 'proxmox09').
        address: Address used to open SSH sessions on the node.
        template_id: Numeric identity of the template container on this node.
        available: Cleared for the rest of a run when a status probe fails.
    """

    name: str
    address: str
    template_id: int
    available: bool = True


class ResourceSnapshot(BaseModel):
    """Live utilization of one host, read fresh on every run.

    Attributes:
        cpu_busy: CPU busy fraction in [0, 1].
        free_memory: Free memory in bytes.
        free_disk: Free root filesystem space in bytes.
    """

    model_config = ConfigDict(frozen=True)

    cpu_busy: float = Field(ge=0.0, le=1.0)
    free_memory: int = Field(ge=0)
    free_disk: int = Field(ge=0)


class ResourceWeights(BaseModel):
    """Weight of each resource in the host desirability score."""

    cpu: float = 2.0
    memory: float = 1.0
    disk: float = 0.5


class MinimumResources(BaseModel):
    """Absolute free resources a host needs to receive a clone (bytes)."""

    memory: int = 2048 * 1024 * 1024
    disk: int = 20 * GIB


class FreeFractionThresholds(BaseModel):
    """Minimum free fraction of each resource for a host to be eligible."""

    cpu: float = Field(default=0.2, ge=0.0, le=1.0)
    memory: float = Field(default=0.1, ge=0.0, le=1.0)
    disk: float = Field(default=0.05, ge=0.0, le=1.0)


class ScoringConfig(BaseModel):
    """Host selection configuration.

    Attributes:
        max_cpu_busy: Hosts at or above this CPU busy fraction are skipped.
        weights: Per-resource score weights.
        minimum: Per-resource absolute requirements.
        free_fraction: Per-resource free fraction requirements.
    """

    model_config = ConfigDict(frozen=True)

    max_cpu_busy: float = Field(default=0.9, gt=0.0, le=1.0)
    weights: ResourceWeights = Field(default_factory=ResourceWeights)
    minimum: MinimumResources = Field(default_factory=MinimumResources)
    free_fraction: FreeFractionThresholds = Field(default_factory=FreeFractionThresholds)


class FleetConfig(BaseModel):
    """Compute fleet API configuration.

    Attributes:
        api_host: Address of the node serving the fleet API.
        port: Fleet API port.
        username: API user (realm included, e.g. 'root@pam').
        password: API password.
        verify_tls: Whether to validate the API TLS certificate.
        request_timeout: Per-request timeout in seconds.
        hosts: Nodes of the pool, in selection order.
        instance_floor: Lowest identity assigned to cloned instances.
    """

    model_config = ConfigDict(frozen=True)

    api_host: str
    port: int = Field(default=8006, ge=1, le=65535)
    username: str = "root@pam"
    password: str = ""
    verify_tls: bool = False
    request_timeout: float = Field(default=30.0, gt=0)
    hosts: list[Host] = Field(min_length=1)
    instance_floor: int = Field(default=INSTANCE_ID_FLOOR, ge=100)

    @property
    def base_url(self) -> str:
        return f"https://{self.api_host}:{self.port}/api2/json"


class SshConfig(BaseModel):
    """Remote command channel configuration.

    Attributes:
        username: SSH user on the compute nodes.
        password: SSH password.
        port: SSH port.
        connect_timeout: Seconds allowed to establish a session.
        address_prefixes: Address prefixes accepted by network discovery.
    """

    model_config = ConfigDict(frozen=True)

    username: str = "root"
    password: str = ""
    port: int = Field(default=22, ge=1, le=65535)
    connect_timeout: float = Field(default=5.0, gt=0)
    address_prefixes: list[str] = Field(default_factory=lambda: ["147.", "192."])


class AccessConfig(BaseModel):
    """Access service (Guacamole) configuration.

    Attributes:
        base_url: REST API root, e.g. 'http://guacamole:8080/api'.
        username: Admin user used for the token exchange.
        password: Admin password.
        data_source: Authentication backend holding users and connections.
        protocol: Protocol of created connections.
        connection_port: Port of created connections.
        connection_username: Login used by created connections.
        connection_password: Password used by created connections.
        organization: Organization attribute set on created users.
        password_suffix: Appended to the hostname to build user passwords.
        request_timeout: Per-request timeout in seconds.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str
    username: str
    password: str = ""
    data_source: str = "mysql"
    protocol: str = "rdp"
    connection_port: int = Field(default=3389, ge=1, le=65535)
    connection_username: str = "root"
    connection_password: str = ""
    organization: str = "RDP client"
    password_suffix: str = ""
    request_timeout: float = Field(default=30.0, gt=0)


class TimingConfig(BaseModel):
    """Fixed delays and readiness probe budgets, in seconds.

    Attributes:
        clone_attempts: Clone attempts per instance while the template is locked.
        lock_retry_delay: Delay between two locked clone attempts.
        start_settle_delay: Delay before each start command.
        dhcp_settle_delay: Delay before the first address probe.
        task_timeout: Budget for a fleet task (clone) to finish.
        stop_timeout: Budget for a stopped instance to report 'stopped'.
        discovery_timeout: Budget for an address to show up.
        poll_interval: Interval between two readiness probes.
    """

    model_config = ConfigDict(frozen=True)

    clone_attempts: int = Field(default=5, ge=1, le=20)
    lock_retry_delay: float = Field(default=5.0, ge=0)
    start_settle_delay: float = Field(default=10.0, ge=0)
    dhcp_settle_delay: float = Field(default=10.0, ge=0)
    task_timeout: float = Field(default=120.0, gt=0)
    stop_timeout: float = Field(default=60.0, gt=0)
    discovery_timeout: float = Field(default=30.0, gt=0)
    poll_interval: float = Field(default=2.0, ge=0)


class Settings(BaseModel):
    """Global settings for one Cyber Range installation.

    This model is frozen and passed explicitly to every component.
    """

    model_config = ConfigDict(frozen=True)

    fleet: FleetConfig
    ssh: SshConfig = Field(default_factory=SshConfig)
    access: AccessConfig
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    output_dir: Path = Path("output")
    lock_path: Path = Path("/tmp/cyberrange.lock")
    max_accounts: int = Field(default=MAX_ACCOUNTS, ge=1)


class FleetInstance(BaseModel):
    """One instance row as listed by the fleet API.

    Attributes:
        vmid: Numeric identity.
        name: Instance hostname.
        status: Runtime status ('running', 'stopped').
        template: Whether the instance is a clone template.
        host: Name of the host it was listed on.
    """

    vmid: int
    name: str = ""
    status: str = ""
    template: bool = False
    host: str = ""

    @field_validator("template", mode="before")
    @classmethod
    def _coerce_template_flag(cls, value: object) -> bool:
        # The API reports the flag as 1, "1" or an empty string
        return value not in (None, "", 0, "0", False)


class Instance(BaseModel):
    """A tenant instance cloned during the current run.

    Attributes:
        vmid: Numeric identity assigned from the batch range.
        hostname: Derived hostname ('tenant-i').
        host: Name of the host owning the instance.
        state: Current lifecycle state.
        attempts: Number of clone attempts made.
        error: Last error detail, if any.
        ip: Discovered address, once known.
    """

    vmid: int
    hostname: str
    host: str
    state: InstanceState = InstanceState.CLONING
    attempts: int = 0
    error: str | None = None
    ip: str | None = None


class ProvisionedAccount(BaseModel):
    """Credentials handed out for one provisioned instance."""

    username: str
    password: str
    connection_name: str
    ip: str = IP_NOT_FOUND


class AccessConnection(BaseModel):
    """A connection registered in the access service."""

    identifier: str
    name: str
    protocol: str = ""


class InstanceFailure(BaseModel):
    """A per-instance failure surfaced in a run report."""

    entity: str
    stage: str
    detail: str


class RevokeResult(BaseModel):
    """Outcome of revoking a tenant's access resources.

    Attributes:
        revoked: Connection names whose connection and user are gone.
        failures: One entry per connection that could not be revoked.
    """

    revoked: list[str] = Field(default_factory=list)
    failures: list[InstanceFailure] = Field(default_factory=list)


class CreateReport(BaseModel):
    """Outcome of a create run.

    Attributes:
        tenant: Tenant the run provisioned for.
        host: Host selected for cloning.
        instances: Instances that cloned and were issued a start command.
        accounts: Accounts reconciled in the access service.
        failures: Per-instance failures from any stage.
        manifest_path: Manifest file written, if any.
    """

    tenant: str
    host: str
    instances: list[Instance] = Field(default_factory=list)
    accounts: list[ProvisionedAccount] = Field(default_factory=list)
    failures: list[InstanceFailure] = Field(default_factory=list)
    manifest_path: Path | None = None


class DeleteReport(BaseModel):
    """Outcome of a delete run."""

    tenant: str
    deleted: list[int] = Field(default_factory=list)
    failures: list[InstanceFailure] = Field(default_factory=list)
    access_revoked: bool = False
