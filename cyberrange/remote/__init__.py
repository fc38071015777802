"""Remote command execution on compute hosts."""

from cyberrange.remote.channel import RemoteCommandChannel


__all__ = ["RemoteCommandChannel"]
