"""Container lifecycle for rooms: create, locate, inspect and tear down."""

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass

from docker.errors import APIError, ImageNotFound, NotFound

from .errors import ContainerUnavailable
from .shell import shell_quote

logger = logging.getLogger(__name__)

LABEL = 'roomfarm'
LABEL_ROOM = 'roomfarm.room'
LABEL_PORT = 'roomfarm.port'

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]*
ROOM_ID_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$')


def generate_room_id():
    """Time-ordered, collision-resistant room id, e.g. room-1718000000000-3fa2b9c1"""
    return f'room-{int(time.time() * 1000)}-{secrets.token_hex(4)}'


def validate_room_id(room_id):
    if not room_id or not ROOM_ID_PATTERN.match(room_id):
        raise ValueError(
            f'Invalid room id {room_id!r}: must start with a letter or digit and '
            'contain only letters, digits, underscore, dot or dash'
        )
    return room_id


def normalize_env(env_vars):
    """Accept either a mapping or a list of KEY=VALUE strings"""
    if not env_vars:
        return {}
    if isinstance(env_vars, dict):
        return {str(k): str(v) for k, v in env_vars.items()}
    env = {}
    for item in env_vars:
        key, sep, value = str(item).partition('=')
        if key:
            env[key] = value if sep else ''
    return env


def network_ip(attrs, network):
    networks = (attrs or {}).get('NetworkSettings', {}).get('Networks') or {}
    return (networks.get(network) or {}).get('IPAddress') or ''


@dataclass
class ContainerRef:
    """Reference to a room's container. Only a snapshot; never authoritative."""
    id: str
    name: str
    room_id: str
    status: str = ''
    ip: str = ''


def install_tools_command(packages):
    pkgs = ' '.join(shell_quote(p) for p in packages)
    return (
        'if command -v apt-get >/dev/null 2>&1; then '
        f'apt-get update -qq && DEBIAN_FRONTEND=noninteractive apt-get install -y -qq {pkgs}; '
        'elif command -v apk >/dev/null 2>&1; then '
        f'apk add --no-cache {pkgs}; '
        'else echo "no supported package manager" >&2; exit 1; fi'
    )


class ContainerLifecycle:
    """Creates, finds and removes the one container that backs each room"""

    def __init__(self, client, executor, settings, proxy=None, port_monitors=None):
        self.client = client
        self.executor = executor
        self.settings = settings
        self.proxy = proxy
        self.port_monitors = port_monitors

    def container_name(self, room_id):
        return f'{self.settings.container_prefix}{validate_room_id(room_id)}'

    def _ref(self, container, room_id):
        return ContainerRef(
            id=container.id,
            name=container.name,
            room_id=room_id,
            status=container.status,
            ip=network_ip(container.attrs, self.settings.network),
        )

    def ensure_network(self):
        """Create the shared bridge network if it does not exist yet"""
        name = self.settings.network
        for network in self.client.networks.list(names=[name]):
            if network.name == name:
                return network
        logger.info('[Lifecycle] Creating network %s', name)
        return self.client.networks.create(name, driver='bridge')

    def _ensure_image(self, image):
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info('[Lifecycle] Image %s not found locally, pulling', image)
            self.client.images.pull(image)

    def _remove_stale(self, name):
        try:
            stale = self.client.containers.get(name)
        except NotFound:
            return
        logger.warning('[Lifecycle] Found stale container %s, removing', name)
        try:
            stale.stop(timeout=5)
        except APIError as e:
            logger.debug('[Lifecycle] Stop of stale %s failed: %s', name, e)
        stale.remove(force=True)

    def create(self, image, room_id=None, exposed_port=8080, env_vars=None):
        """Start a new container for a room and begin monitoring its ports"""
        room_id = validate_room_id(room_id) if room_id else generate_room_id()
        name = self.container_name(room_id)
        workspace = self.settings.workspace

        self.ensure_network()
        if self.proxy is not None:
            self.proxy.ensure_proxy()

        workspace_dir = os.path.join(self.settings.storage_root, room_id)
        os.makedirs(workspace_dir, exist_ok=True)

        env = normalize_env(env_vars)
        env.setdefault('ROOM_ID', room_id)
        env.setdefault('ROOM_BASE_PATH', f'/{room_id}/{exposed_port}/')

        self._ensure_image(image)
        self._remove_stale(name)

        logger.info('[Lifecycle] Creating container %s from %s', name, image)
        container = self.client.containers.run(
            image=image,
            name=name,
            detach=True,
            tty=True,
            stdin_open=True,
            environment=env,
            working_dir=workspace,
            network=self.settings.network,
            mem_limit=self.settings.memory_limit,
            nano_cpus=int(self.settings.cpu_limit * 1e9),
            volumes={workspace_dir: {'bind': workspace, 'mode': 'rw'}},
            labels={
                LABEL: 'true',
                LABEL_ROOM: room_id,
                LABEL_PORT: str(exposed_port),
            },
        )
        container.reload()
        if container.status in ('exited', 'dead'):
            raise ContainerUnavailable(name, f'exited right after start ({container.status})')

        ref = self._ref(container, room_id)
        self.install_tools(ref)

        if self.port_monitors is not None:
            self.port_monitors.start(room_id, ref)
        logger.info('[Lifecycle] Room %s ready in container %s', room_id, container.id[:12])
        return ref

    def install_tools(self, ref):
        """Install the inspection, relay and inotify utilities in one exec"""
        result = self.executor.run(ref, install_tools_command(self.settings.tool_packages))
        if not result.ok:
            logger.warning(
                '[Lifecycle] Tool install in %s exited %s: %s',
                ref.name, result.exit_code, result.stderr.strip()[-500:],
            )
        return result.ok

    def lookup(self, room_id, strict=False):
        """Find the room's container by name. Always asks the daemon.

        A daemon error reads as "no container" unless strict is set, in which
        case the APIError propagates.
        """
        name = self.container_name(room_id)
        try:
            containers = self.client.containers.list(all=True, filters={'name': name})
        except APIError as e:
            if strict:
                raise
            logger.error('[Lifecycle] Could not list containers: %s', e)
            return None
        for container in containers:
            if container.name == name:
                return self._ref(container, room_id)
        return None

    def require(self, room_id, running=True):
        ref = self.lookup(room_id)
        if ref is None:
            raise ContainerUnavailable(room_id)
        if running and ref.status != 'running':
            raise ContainerUnavailable(room_id, f'status is {ref.status}')
        return ref

    def remove(self, room_id):
        """Stop and remove the room's container; no-op if it is already gone"""
        if self.port_monitors is not None:
            self.port_monitors.forget(room_id)
        ref = self.lookup(room_id)
        if ref is None:
            logger.info('[Lifecycle] No container for room %s', room_id)
            return False
        try:
            container = self.client.containers.get(ref.id)
            container.stop(timeout=10)
            container.remove(force=True)
        except NotFound:
            # AutoRemove or an external removal beat us to it
            return False
        logger.info('[Lifecycle] Removed container for room %s', room_id)
        return True

    def get_internal_ip(self, room_id):
        """IP on the shared network, or '' while it is not assigned yet"""
        ref = self.lookup(room_id)
        if ref is None:
            raise ContainerUnavailable(room_id)
        try:
            container = self.client.containers.get(ref.id)
        except NotFound:
            raise ContainerUnavailable(room_id)
        return network_ip(container.attrs, self.settings.network)

    def list_rooms(self):
        """All labelled room containers, running or not"""
        containers = self.client.containers.list(all=True, filters={'label': f'{LABEL}=true'})
        rooms = []
        for container in containers:
            room_id = (container.labels or {}).get(LABEL_ROOM)
            if room_id:
                rooms.append(self._ref(container, room_id))
        return rooms

    def cleanup_orphans(self, known_rooms=()):
        """Remove stopped room containers that no caller is tracking"""
        known = set(known_rooms)
        cleaned, errors = [], []
        for ref in self.list_rooms():
            if ref.room_id in known or ref.status == 'running':
                continue
            try:
                self.client.containers.get(ref.id).remove(force=True)
                cleaned.append(ref.room_id)
            except (NotFound, APIError) as e:
                errors.append({'room': ref.room_id, 'error': str(e)})
        if cleaned:
            logger.info('[Lifecycle] Cleaned up orphaned rooms: %s', ', '.join(cleaned))
        return cleaned, errors
