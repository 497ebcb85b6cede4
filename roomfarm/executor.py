"""
Command execution inside room containers.

Everything that runs in a container goes through CommandExecutor. Execs are
created without a TTY so that Docker multiplexes stdout and stderr over one
raw socket, which is then demultiplexed here instead of relying on the SDK's
own frame reader.
"""

import logging
import time
from typing import NamedTuple

import gevent
from docker.errors import APIError, NotFound
from docker.utils import socket as docker_socket

from .errors import CommandFailed, ContainerUnavailable, ExecStreamError
from .streams import STDERR, FrameDemuxer

logger = logging.getLogger(__name__)

READ_SIZE = 4096
EXIT_WAIT_TIMEOUT = 5.0


def ref_id(ref):
    """Accept a ContainerRef, a docker Container, or a bare id/name"""
    return getattr(ref, 'id', ref)


class ExecResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int
    command: str = ''

    @property
    def ok(self):
        return self.exit_code == 0

    def check(self):
        """Return self, or raise CommandFailed on a non-zero exit"""
        if self.exit_code != 0:
            raise CommandFailed(self.command, self.exit_code, self.stderr)
        return self


class ExecStream:
    """A started exec whose raw socket is read frame by frame.

    Iterating yields (stream, payload) tuples as soon as each frame is
    complete. close() may be called from another greenlet to stop a
    long-running command's reader.
    """

    def __init__(self, api, exec_id, sock, read_size=READ_SIZE):
        self.api = api
        self.exec_id = exec_id
        self._sock = sock
        self._read_size = read_size
        self._closed = False

    def __iter__(self):
        demuxer = FrameDemuxer()
        while not self._closed:
            try:
                chunk = docker_socket.read(self._sock, self._read_size)
            except (OSError, APIError) as e:
                if self._closed:
                    return
                raise ExecStreamError(f'Exec {self.exec_id[:12]} stream failed: {e}') from e
            if not chunk:
                break
            yield from demuxer.feed(chunk)
        if demuxer.pending and not self._closed:
            raise ExecStreamError(
                f'Exec {self.exec_id[:12]} stream ended inside a frame '
                f'({demuxer.pending} bytes pending)'
            )

    @property
    def closed(self):
        return self._closed

    def inspect(self):
        try:
            return self.api.exec_inspect(self.exec_id)
        except APIError as e:
            raise ExecStreamError(f'Could not inspect exec {self.exec_id[:12]}: {e}') from e

    def exit_code(self, timeout=EXIT_WAIT_TIMEOUT):
        """Exit status once the daemon has recorded it.

        The socket can reach EOF before the exec is marked finished, so poll
        with a short backoff. -1 means it was still running after `timeout`.
        """
        deadline = time.monotonic() + timeout
        delay = 0.005
        while True:
            info = self.inspect()
            if not info.get('Running'):
                code = info.get('ExitCode')
                return -1 if code is None else code
            if time.monotonic() >= deadline:
                logger.warning('[Exec] %s still running %.1fs after EOF', self.exec_id[:12], timeout)
                return -1
            gevent.sleep(delay)
            delay = min(delay * 2, 0.25)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError as e:
            logger.debug('[Exec] Error closing exec socket: %s', e)


class CommandExecutor:
    """Runs shell commands in containers and collects demultiplexed output"""

    def __init__(self, client, read_size=READ_SIZE):
        self.client = client
        self.read_size = read_size

    def get_running(self, ref):
        """Re-read the container from the daemon and require it to be running"""
        container_id = ref_id(ref)
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            raise ContainerUnavailable(container_id)
        except APIError as e:
            raise ContainerUnavailable(container_id, str(e))
        if container.status != 'running':
            raise ContainerUnavailable(container_id, f'status is {container.status}')
        return container

    def _create(self, container, command, workdir=None, user=''):
        try:
            created = self.client.api.exec_create(
                container.id,
                ['sh', '-c', command],
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                user=user,
                workdir=workdir,
            )
        except NotFound:
            raise ContainerUnavailable(container.id, 'removed before exec')
        except APIError as e:
            raise ExecStreamError(f'Could not create exec in {container.id[:12]}: {e}') from e
        return created['Id']

    def open_stream(self, ref, command, workdir=None, user=''):
        """Start a command and return its ExecStream without reading it"""
        container = self.get_running(ref)
        exec_id = self._create(container, command, workdir, user)
        try:
            sock = self.client.api.exec_start(exec_id, tty=False, socket=True)
        except APIError as e:
            raise ExecStreamError(f'Could not start exec {exec_id[:12]}: {e}') from e
        return ExecStream(self.client.api, exec_id, sock, self.read_size)

    def run(self, ref, command, workdir=None, user='', strip=True):
        """Run a command to completion.

        Returns an ExecResult. stdout is trimmed unless strip=False; stderr
        is never mixed into stdout.
        """
        stream = self.open_stream(ref, command, workdir, user)
        stdout = bytearray()
        stderr = bytearray()
        try:
            for kind, payload in stream:
                if kind == STDERR:
                    stderr.extend(payload)
                else:
                    stdout.extend(payload)
        finally:
            stream.close()

        exit_code = stream.exit_code()
        out = stdout.decode('utf-8', errors='replace')
        err = stderr.decode('utf-8', errors='replace')
        if err:
            logger.debug('[Exec] stderr from %s: %s', str(ref_id(ref))[:12], err.strip())
        return ExecResult(out.strip() if strip else out, err, exit_code, command)

    def run_checked(self, ref, command, workdir=None, user='', strip=True):
        return self.run(ref, command, workdir, user, strip).check()

    def run_detached(self, ref, command, workdir=None, user=''):
        """Start a command and return its exec id without waiting for it"""
        container = self.get_running(ref)
        exec_id = self._create(container, command, workdir, user)
        try:
            self.client.api.exec_start(exec_id, detach=True)
        except APIError as e:
            raise ExecStreamError(f'Could not start detached exec {exec_id[:12]}: {e}') from e
        return exec_id
