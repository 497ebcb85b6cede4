"""
Listening-port discovery for room containers.

Discovery is polling based and sits behind PortSource so a push-based
source can replace LsofPortSource without touching the proxy side. One
PortMonitor greenlet runs per room and ends when its container exits.
"""

import logging
import re
from typing import NamedTuple

import gevent
import requests
from docker.errors import APIError, NotFound
from gevent.event import Event

from .errors import ContainerUnavailable, ExecStreamError, PortDiscoveryFailed
from .lifecycle import network_ip
from .shell import shell_quote

logger = logging.getLogger(__name__)

LSOF_COMMAND = 'command -v lsof >/dev/null 2>&1 || exit 127; lsof -iTCP -sTCP:LISTEN -P -n || true'
FORWARDER = 'socat'

_NAME_PATTERN = re.compile(r'^(?P<address>.*):(?P<port>\d+)$')


class ActivePort(NamedTuple):
    port: int
    pid: int
    command: str
    address: str = '*'

    def to_dict(self):
        return {'port': self.port, 'pid': self.pid, 'command': self.command}


class PortChange(NamedTuple):
    appeared: list
    disappeared: list
    ports: list

    @property
    def changed(self):
        return bool(self.appeared or self.disappeared)


def is_loopback(address):
    address = address.strip('[]')
    return address == 'localhost' or address == '::1' or address.startswith('127.')


def parse_lsof(output, exclude=(FORWARDER,)):
    """Parse `lsof -i -P -n` LISTEN lines into ActivePorts, one per port.

    When a port is bound more than once (IPv4 and IPv6, or loopback and a
    wildcard), the widest bind wins.
    """
    ports = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 9 or parts[0] == 'COMMAND' or '(LISTEN)' not in line:
            continue
        command = parts[0]
        if command in exclude:
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            continue
        match = _NAME_PATTERN.match(parts[8])
        if not match:
            continue
        port = int(match.group('port'))
        address = match.group('address')
        current = ports.get(port)
        if current is None or (is_loopback(current.address) and not is_loopback(address)):
            ports[port] = ActivePort(port, pid, command, address)
    return [ports[p] for p in sorted(ports)]


class PortSource:
    """Something that can enumerate a container's listening ports"""

    def list_ports(self, ref):
        raise NotImplementedError


class LsofPortSource(PortSource):

    def __init__(self, executor):
        self.executor = executor

    def list_ports(self, ref):
        try:
            result = self.executor.run(ref, LSOF_COMMAND)
        except (ContainerUnavailable, ExecStreamError) as e:
            raise PortDiscoveryFailed(str(e)) from e
        if not result.ok:
            raise PortDiscoveryFailed(
                f'lsof exited {result.exit_code}: {result.stderr.strip() or "lsof missing?"}'
            )
        return parse_lsof(result.stdout)


class PortMonitor:
    """Tracks one room's listening ports and reacts when the set changes"""

    def __init__(self, room_id, ref, source, executor, publisher, on_change,
                 resolve_ip=None, wait=None, interval=5.0, health_timeout=1.5, on_exit=None):
        self.room_id = room_id
        self.ref = ref
        self.source = source
        self.executor = executor
        self.publisher = publisher
        self.on_change = on_change
        self.resolve_ip = resolve_ip or (lambda ref: getattr(ref, 'ip', ''))
        self.wait = wait
        self.interval = interval
        self.health_timeout = health_timeout
        self.on_exit = on_exit

        self.previous = set()
        self.ports = []
        self.health = {}
        self.forwarded = set()
        self.container_exited = False
        self._exited = Event()
        self._loop = None
        self._waiter = None

    @property
    def port_numbers(self):
        return sorted(self.previous)

    @property
    def running(self):
        return self._loop is not None and not self._loop.dead

    def tick(self):
        """Run one enumeration and apply the delta. Returns a PortChange."""
        ports = self.source.list_ports(self.ref)
        current = {p.port for p in ports}
        change = PortChange(
            appeared=sorted(current - self.previous),
            disappeared=sorted(self.previous - current),
            ports=ports,
        )
        self.ports = ports
        if not change.changed:
            return change

        self.previous = current
        logger.info(
            '[Ports] %s: +%s -%s', self.room_id,
            ','.join(map(str, change.appeared)) or '-',
            ','.join(map(str, change.disappeared)) or '-',
        )
        for port in change.disappeared:
            self.health.pop(port, None)
            self.stop_forwarder(port)
        by_port = {p.port: p for p in ports}
        for port in change.appeared:
            if is_loopback(by_port[port].address):
                self.start_forwarder(port)
        for active in ports:
            self.probe(active.port)

        self.publisher.publish(self.room_id, 'active-ports', {
            'containerId': self.ref.id,
            'ports': sorted(current),
            'processes': [p.to_dict() for p in ports],
        })
        self.on_change(self.room_id)
        return change

    def start_forwarder(self, port):
        """Expose a loopback-only port on the container's network address"""
        ip = self.resolve_ip(self.ref)
        if not ip:
            logger.warning('[Ports] %s: no network address yet, not forwarding %s', self.room_id, port)
            return False
        command = f'{FORWARDER} TCP-LISTEN:{port},bind={ip},fork,reuseaddr TCP:127.0.0.1:{port}'
        try:
            self.executor.run_detached(self.ref, command)
        except (ContainerUnavailable, ExecStreamError) as e:
            logger.warning('[Ports] %s: could not forward %s: %s', self.room_id, port, e)
            return False
        self.forwarded.add(port)
        return True

    def stop_forwarder(self, port):
        if port not in self.forwarded:
            return False
        self.forwarded.discard(port)
        # bracketed first letter keeps pkill from matching its own sh -c wrapper
        pattern = shell_quote(f'[s]ocat TCP-LISTEN:{port},')
        try:
            self.executor.run(self.ref, f'pkill -f {pattern} || true')
        except (ContainerUnavailable, ExecStreamError) as e:
            logger.debug('[Ports] %s: stopping forwarder for %s failed: %s', self.room_id, port, e)
            return False
        return True

    def probe(self, port):
        """Best-effort HTTP health probe; never raises"""
        ip = self.resolve_ip(self.ref)
        if not ip:
            return False
        try:
            resp = requests.get(f'http://{ip}:{port}/', timeout=self.health_timeout)
            healthy = resp.status_code < 500
        except requests.RequestException:
            healthy = False
        self.health[port] = healthy
        return healthy

    # -- loop ------------------------------------------------------------

    def start(self):
        if self.running:
            return self
        self._exited.clear()
        if self.wait is not None:
            self._waiter = gevent.spawn(self._wait_for_exit)
        self._loop = gevent.spawn(self.run)
        return self

    def _wait_for_exit(self):
        try:
            self.wait(self.ref)
            self.container_exited = True
        except Exception:
            logger.exception('[Ports] %s: error waiting for container exit', self.room_id)
        finally:
            self._exited.set()

    def run(self):
        logger.info('[Ports] Monitoring %s (container %s)', self.room_id, self.ref.id[:12])
        try:
            while not self._exited.is_set():
                try:
                    self.tick()
                except PortDiscoveryFailed as e:
                    logger.warning('[Ports] %s: discovery failed: %s', self.room_id, e)
                except Exception:
                    logger.exception('[Ports] %s: monitor tick failed', self.room_id)
                if self._exited.wait(self.interval):
                    break
        finally:
            logger.info('[Ports] Stopped monitoring %s', self.room_id)
            self.forwarded.clear()
            if self.on_exit is not None:
                self.on_exit(self)

    def stop(self):
        self._exited.set()
        if self._waiter is not None:
            self._waiter.kill(block=False)


class PortMonitorService:
    """One PortMonitor per room, and the proxy regeneration they share.

    Routes outlive the monitors: stopping a monitor because nobody is
    watching the room keeps its last known ports in the proxy. A room's
    routes are dropped only when its container exits or it is forgotten.
    """

    def __init__(self, client, executor, proxy, publisher, settings, source=None):
        self.client = client
        self.executor = executor
        self.proxy = proxy
        self.publisher = publisher
        self.settings = settings
        self.source = source or LsofPortSource(executor)
        self.monitors = {}
        self.known_ports = {}

    def _wait(self, ref):
        try:
            return self.client.containers.get(ref.id).wait()
        except NotFound:
            return None

    def _resolve_ip(self, ref):
        if ref.ip:
            return ref.ip
        try:
            container = self.client.containers.get(ref.id)
        except (NotFound, APIError):
            return ''
        ref.ip = network_ip(container.attrs, self.settings.network)
        return ref.ip

    def start(self, room_id, ref):
        """Start monitoring a room; a second call for a live monitor is a no-op"""
        monitor = self.monitors.get(room_id)
        if monitor is not None and monitor.running:
            return monitor
        monitor = PortMonitor(
            room_id, ref, self.source, self.executor, self.publisher,
            on_change=self._ports_changed,
            resolve_ip=self._resolve_ip,
            wait=self._wait,
            interval=self.settings.port_poll_interval,
            health_timeout=self.settings.health_timeout,
            on_exit=self._finished,
        )
        self.monitors[room_id] = monitor
        return monitor.start()

    def _ports_changed(self, room_id):
        monitor = self.monitors.get(room_id)
        if monitor is not None:
            if monitor.previous:
                self.known_ports[room_id] = monitor.port_numbers
            else:
                self.known_ports.pop(room_id, None)
        self.reconfigure(room_id)

    def _finished(self, monitor):
        if self.monitors.get(monitor.room_id) is not monitor:
            return
        del self.monitors[monitor.room_id]
        if monitor.container_exited:
            logger.info('[Ports] Container for %s exited, dropping its routes', monitor.room_id)
            self._drop_routes(monitor.room_id)

    def _drop_routes(self, room_id):
        if self.known_ports.pop(room_id, None) is not None:
            self.reconfigure(room_id)

    def stop(self, room_id):
        """Stop polling a room. Its last known routes stay in the proxy."""
        monitor = self.monitors.get(room_id)
        if monitor is None:
            return False
        monitor.stop()
        return True

    def forget(self, room_id):
        """Stop polling a room and remove its routes from the proxy"""
        stopped = self.stop(room_id)
        self._drop_routes(room_id)
        return stopped

    def stop_all(self):
        for room_id in list(self.monitors):
            self.stop(room_id)

    def routes(self):
        return {room_id: list(ports) for room_id, ports in sorted(self.known_ports.items()) if ports}

    def reconfigure(self, room_id=None):
        """Regenerate the proxy config from every room's last known ports"""
        return self.proxy.apply(self.routes())
