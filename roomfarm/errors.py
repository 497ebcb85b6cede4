"""
Error types raised by the room orchestration layer.

Request-style operations (create, read, write, sync) raise these to their
caller. Background loops (port monitor, watcher, heartbeat) catch and log
them instead so one room cannot take down the others.
"""


class RoomFarmError(Exception):
    """Base class for all orchestration errors"""


class ContainerUnavailable(RoomFarmError):
    """No container exists for the room, or it is not running"""

    def __init__(self, ref, reason='not found'):
        self.ref = ref
        self.reason = reason
        super().__init__(f'Container for {ref!r} unavailable: {reason}')


class ExecStreamError(RoomFarmError):
    """Transport failure while streaming an exec. Never retried here."""


class CommandFailed(RoomFarmError):
    """An in-container command exited non-zero"""

    def __init__(self, command, exit_code, stderr=''):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or 'no stderr'
        super().__init__(f'Command exited with {exit_code}: {detail}')


class ProxyReloadFailed(RoomFarmError):
    """The reverse proxy could not be reloaded or restarted"""


class PortDiscoveryFailed(RoomFarmError):
    """A single port enumeration tick failed"""


class PathConflict(RoomFarmError):
    """Create or rename target already exists"""

    def __init__(self, path):
        self.path = path
        super().__init__(f'Path already exists: {path}')


class InvalidPath(RoomFarmError, ValueError):
    """Path escapes the workspace or targets the workspace root"""
