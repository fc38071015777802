# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""SSH command channel to compute hosts.

Every call opens a fresh session, runs exactly one command and closes the
session again, whatever the outcome. paramiko is blocking, so the async
entry point hands the work to a worker thread.
"""

import asyncio
import socket
from collections.abc import Iterator
from contextlib import contextmanager

import paramiko
from loguru import logger

from cyberrange.core.exceptions import RemoteCommandError
from cyberrange.core.types import SshConfig


class RemoteCommandChannel:
    """Run single commands on hosts over password-authenticated SSH.

    Args:
        config: SSH credentials, port and connect timeout.
    """

    def __init__(self, config: SshConfig) -> None:
        self.config = config

    @contextmanager
    def session(self, address: str) -> Iterator[paramiko.SSHClient]:
        """Open an SSH session to ``address``, closed on every exit path.

        Raises:
            RemoteCommandError: If the connection or authentication fails.
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            try:
                client.connect(
                    address,
                    port=self.config.port,
                    username=self.config.username,
                    password=self.config.password,
                    timeout=self.config.connect_timeout,
                    banner_timeout=self.config.connect_timeout,
                    auth_timeout=self.config.connect_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except (paramiko.SSHException, OSError, socket.timeout) as e:
                raise RemoteCommandError(f"SSH connection to {address} failed: {e}") from e
            yield client
        finally:
            client.close()

    def run_sync(self, address: str, command: str) -> str:
        """Run ``command`` on ``address`` and return combined stdout/stderr."""
        with self.session(address) as client:
            try:
                _, stdout, _ = client.exec_command(command, timeout=self.config.connect_timeout * 6)
                stdout.channel.set_combine_stderr(True)
                output = stdout.read().decode(errors="replace")
                stdout.channel.recv_exit_status()
            except (paramiko.SSHException, OSError, socket.timeout) as e:
                raise RemoteCommandError(f"Command on {address} failed: {e}") from e
        logger.debug("Remote command finished", address=address, command=command, bytes=len(output))
        return output

    async def run(self, address: str, command: str) -> str:
        """Async wrapper around :meth:`run_sync`.

        Raises:
            RemoteCommandError: If the session cannot be opened or the command fails.
        """
        return await asyncio.to_thread(self.run_sync, address, command)
