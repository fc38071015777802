"""Plain-text manifest of the accounts created by a run."""

from pathlib import Path

from loguru import logger

from cyberrange.core.constants import MANIFEST_DELIMITER, MANIFEST_HEADER
from cyberrange.core.types import ProvisionedAccount
from cyberrange.orchestrator.tenants import sanitize_tenant, tenant_of


def render_manifest(accounts: list[ProvisionedAccount]) -> str:
    """Render the manifest text, one block per account."""
    lines = [MANIFEST_HEADER, ""]
    for account in accounts:
        lines.extend([
            f"User: {account.username}",
            f"Password: {account.password}",
            f"Connection: {account.connection_name}",
            f"IP: {account.ip}",
            MANIFEST_DELIMITER,
            "",
        ])
    return "\n".join(lines) + "\n"


def manifest_path(output_dir: Path, tenant: str, accounts: list[ProvisionedAccount]) -> Path:
    """Manifest location, named after the first account's tenant prefix."""
    prefix = tenant_of(accounts[0].username) if accounts else tenant
    return output_dir / f"{sanitize_tenant(prefix)}_accounts.txt"


def write_manifest(
    output_dir: Path,
    tenant: str,
    accounts: list[ProvisionedAccount],
) -> Path:
    """Write the manifest, creating ``output_dir`` if needed.

    Args:
        output_dir: Directory receiving the manifest.
        tenant: Tenant of the run, used when ``accounts`` is empty.
        accounts: Accounts to record.

    Returns:
        Path of the written file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    path = manifest_path(output_dir, tenant, accounts)
    path.write_text(render_manifest(accounts), encoding="utf-8")
    logger.info("Manifest written", path=str(path), accounts=len(accounts))
    return path
