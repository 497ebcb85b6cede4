"""
Interactive terminals for rooms.

Each terminal is a host-side PTY running `docker exec -it` into the room's
container. Output is pumped to subscribers by one greenlet per terminal.
A heartbeat reclaims sessions whose container has gone away or been
replaced under the same name.
"""

import codecs
import enum
import errno
import fcntl
import logging
import os
import pty
import struct
import termios
from dataclasses import dataclass, field

import gevent
from docker.errors import APIError
from gevent import subprocess
from gevent.event import Event
from gevent.lock import Semaphore
from gevent.os import make_nonblocking, nb_read, nb_write

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
MIN_COLS = 10
MIN_ROWS = 5

SHELL_SCRIPT = 'cd {workspace} && (command -v bash >/dev/null && exec bash || exec sh)'


class PtyProcess:
    """A child process attached to a pseudo-terminal, with cooperative IO"""

    def __init__(self, argv, cols=DEFAULT_COLS, rows=DEFAULT_ROWS, env=None):
        master, slave = pty.openpty()
        self.fd = master
        self.cols = cols
        self.rows = rows
        self._set_size(cols, rows)
        child_env = dict(os.environ if env is None else env)
        child_env.setdefault('TERM', 'xterm-256color')
        try:
            self.proc = subprocess.Popen(
                argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=child_env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        make_nonblocking(master)
        self._closed = False

    @property
    def pid(self):
        return self.proc.pid

    def _set_size(self, cols, rows):
        fcntl.ioctl(self.fd, termios.TIOCSWINSZ, struct.pack('HHHH', rows, cols, 0, 0))

    def read(self, size=4096):
        """Read available output; b'' means the other side hung up"""
        try:
            return nb_read(self.fd, size)
        except OSError as e:
            # Linux reports a closed slave as EIO on the master
            if e.errno in (errno.EIO, errno.EBADF):
                return b''
            raise

    def write(self, data):
        if isinstance(data, str):
            data = data.encode('utf-8')
        view = memoryview(data)
        while view:
            written = nb_write(self.fd, view)
            view = view[written:]

    def resize(self, cols, rows):
        self._set_size(cols, rows)
        self.cols = cols
        self.rows = rows

    def alive(self):
        return self.proc.poll() is None

    def kill(self):
        if self.alive():
            try:
                self.proc.kill()
            except OSError as e:
                logger.debug('[Terminal] kill %s failed: %s', self.pid, e)

    def wait(self, timeout=None):
        return self.proc.wait(timeout=timeout)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.fd)
        except OSError:
            pass


class TerminalState(enum.Enum):
    STARTING = 'starting'
    ATTACHED = 'attached'
    EXITED = 'exited'


@dataclass
class TerminalSession:
    room_id: str
    terminal_id: str
    container_id: str
    process: object
    state: TerminalState = TerminalState.STARTING
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    pump: object = field(default=None, repr=False)

    @property
    def key(self):
        return (self.room_id, self.terminal_id)


class TerminalRegistry:
    """Owns every terminal session, keyed by (room id, terminal id)"""

    def __init__(self, lifecycle, publisher, settings, spawner=PtyProcess):
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.settings = settings
        self.spawner = spawner
        self.sessions = {}
        self._lock = Semaphore()
        self._heartbeat = None
        self._heartbeat_stop = Event()

    def command_for(self, container_id):
        script = SHELL_SCRIPT.format(workspace=self.settings.workspace)
        return [self.settings.docker_binary, 'exec', '-it', container_id, 'sh', '-c', script]

    def get(self, room_id, terminal_id):
        return self.sessions.get((room_id, terminal_id))

    def create_terminal(self, room_id, terminal_id):
        """Start a terminal, or re-announce it if it is already running"""
        key = (room_id, terminal_id)
        payload = {'roomId': room_id, 'terminalId': terminal_id}
        with self._lock:
            session = self.sessions.get(key)
            if session is not None and session.state is not TerminalState.EXITED:
                logger.info('[Terminal] Reattach to %s/%s', room_id, terminal_id)
                self.publisher.publish(room_id, 'terminalCreated', payload)
                return session

            ref = self.lifecycle.require(room_id)
            process = self.spawner(self.command_for(ref.id))
            session = TerminalSession(room_id, terminal_id, ref.id, process)
            self.sessions[key] = session

        session.state = TerminalState.ATTACHED
        session.pump = gevent.spawn(self._pump, session)
        logger.info('[Terminal] Started %s/%s in %s', room_id, terminal_id, ref.id[:12])
        self.publisher.publish(room_id, 'terminalCreated', payload)
        return session

    def _pump(self, session):
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            while True:
                data = session.process.read()
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self.publisher.publish(session.room_id, 'terminal:output', {
                        'terminalId': session.terminal_id,
                        'data': text,
                    })
            try:
                session.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                session.process.kill()
        except Exception:
            logger.exception('[Terminal] Output pump for %s/%s failed', *session.key)
        finally:
            self._finish(session)
            session.process.close()

    def _finish(self, session):
        """Mark the session exited and announce it. Only the first call publishes."""
        if session.state is TerminalState.EXITED:
            return False
        session.state = TerminalState.EXITED
        if self.sessions.get(session.key) is session:
            del self.sessions[session.key]
        logger.info('[Terminal] %s/%s exited', *session.key)
        self.publisher.publish(session.room_id, 'terminal:exit', {'terminalId': session.terminal_id})
        return True

    def write(self, room_id, terminal_id, data):
        session = self.get(room_id, terminal_id)
        if session is None or session.state is not TerminalState.ATTACHED:
            logger.debug('[Terminal] Write to unknown terminal %s/%s', room_id, terminal_id)
            return False
        session.process.write(data)
        return True

    def resize(self, room_id, terminal_id, cols, rows):
        session = self.get(room_id, terminal_id)
        if session is None:
            return False
        cols, rows = int(cols), int(rows)
        if cols < MIN_COLS or rows < MIN_ROWS:
            return False
        if (cols, rows) == (session.cols, session.rows):
            return False
        session.process.resize(cols, rows)
        session.cols, session.rows = cols, rows
        return True

    def kill(self, room_id, terminal_id):
        session = self.get(room_id, terminal_id)
        if session is None:
            return False
        session.process.kill()
        self._finish(session)
        return True

    def close_room(self, room_id):
        closed = []
        for key in [k for k in self.sessions if k[0] == room_id]:
            if self.kill(*key):
                closed.append(key[1])
        return closed

    def close_all(self):
        for key in list(self.sessions):
            self.kill(*key)

    # -- heartbeat -------------------------------------------------------

    def sweep(self):
        """Reclaim sessions whose container is gone or was replaced"""
        reclaimed = []
        refs = {}
        unknown = set()
        for session in list(self.sessions.values()):
            if session.room_id in unknown:
                continue
            if session.room_id not in refs:
                try:
                    refs[session.room_id] = self.lifecycle.lookup(session.room_id, strict=True)
                except APIError as e:
                    logger.warning('[Terminal] Could not look up %s, skipping this sweep: %s', session.room_id, e)
                    unknown.add(session.room_id)
                    continue
            ref = refs[session.room_id]
            if ref is not None and ref.id == session.container_id:
                continue
            logger.warning(
                '[Terminal] Container for %s/%s is %s, reclaiming',
                session.room_id, session.terminal_id, 'gone' if ref is None else 'replaced',
            )
            session.process.kill()
            if self._finish(session):
                reclaimed.append(session.key)
        return reclaimed

    def _heartbeat_loop(self):
        while not self._heartbeat_stop.wait(self.settings.heartbeat_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception('[Terminal] Heartbeat sweep failed')

    def start_heartbeat(self):
        if self._heartbeat is not None and not self._heartbeat.dead:
            return
        self._heartbeat_stop.clear()
        self._heartbeat = gevent.spawn(self._heartbeat_loop)

    def stop_heartbeat(self):
        self._heartbeat_stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=1)
            self._heartbeat = None
