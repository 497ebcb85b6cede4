"""
Reverse proxy configuration for room services.

The nginx config is derived data: it is rendered from scratch from the
current room -> ports mapping every time the port set changes, written as a
whole file, and then the proxy container is asked to reload.
"""

import logging
import os
import re
import tempfile

from docker.errors import APIError, NotFound
from gevent.lock import Semaphore

from .errors import ContainerUnavailable, ExecStreamError, ProxyReloadFailed

logger = logging.getLogger(__name__)

CONFIG_NAME = 'nginx.conf'
CONTAINER_CONFIG_DIR = '/etc/nginx/roomfarm'
CONTAINER_CONFIG_PATH = f'{CONTAINER_CONFIG_DIR}/{CONFIG_NAME}'

PROXY_HEADERS = (
    'proxy_http_version 1.1;',
    'proxy_set_header Upgrade $http_upgrade;',
    'proxy_set_header Connection "upgrade";',
    'proxy_set_header Host $host;',
    'proxy_set_header X-Real-IP $remote_addr;',
)


def upstream_name(room_id, port):
    safe = re.sub(r'[^A-Za-z0-9_]', '_', room_id)
    return f'room_{safe}_port_{port}'


def _location(prefix, upstream):
    lines = [f'    location {prefix} {{', f'      proxy_pass http://{upstream};']
    lines.extend(f'      {header}' for header in PROXY_HEADERS)
    lines.append('    }')
    return '\n'.join(lines)


def render_config(routes, container_prefix='room-'):
    """Render a complete nginx.conf for the given {room_id: [ports]} mapping.

    Output is deterministic: rooms and ports are sorted, and each room also
    gets a /<room>/ location pointing at its lowest port.
    """
    upstreams = []
    locations = []
    for room_id in sorted(routes):
        ports = sorted(set(int(p) for p in routes[room_id]))
        if not ports:
            continue
        host = f'{container_prefix}{room_id}'
        for port in ports:
            name = upstream_name(room_id, port)
            upstreams.append(f'  upstream {name} {{\n    server {host}:{port};\n  }}')
            locations.append(_location(f'/{room_id}/{port}/', name))
        locations.append(_location(f'/{room_id}/', upstream_name(room_id, ports[0])))

    parts = [
        'worker_processes 1;',
        'events { worker_connections 1024; }',
        'http {',
    ]
    parts.extend(upstreams)
    parts.append('  server {')
    parts.append('    listen 80;')
    parts.extend(locations)
    parts.append('    location / { return 404 "No room or port specified"; }')
    parts.append('  }')
    parts.append('}')
    return '\n'.join(parts) + '\n'


class ProxyConfigurator:
    """Owns the shared proxy container and its generated config file"""

    def __init__(self, client, executor, settings):
        self.client = client
        self.executor = executor
        self.settings = settings
        self._lock = Semaphore()

    @property
    def config_path(self):
        return os.path.join(self.settings.proxy_config_dir, CONFIG_NAME)

    def write_config(self, text):
        """Replace the config file in one step so nginx never reads a partial file"""
        directory = self.settings.proxy_config_dir
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.nginx-', suffix='.conf', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.config_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _get_container(self):
        try:
            return self.client.containers.get(self.settings.proxy_name)
        except NotFound:
            return None

    def ensure_proxy(self):
        """Create or start the proxy container. Safe to call repeatedly."""
        if not os.path.exists(self.config_path):
            self.write_config(render_config({}, self.settings.container_prefix))
        container = self._get_container()
        if container is None:
            logger.info('[Proxy] Starting %s on port %s', self.settings.proxy_name, self.settings.proxy_port)
            return self.client.containers.run(
                image=self.settings.proxy_image,
                name=self.settings.proxy_name,
                detach=True,
                network=self.settings.network,
                ports={'80/tcp': self.settings.proxy_port},
                volumes={
                    os.path.abspath(self.settings.proxy_config_dir): {
                        'bind': CONTAINER_CONFIG_DIR, 'mode': 'ro',
                    },
                },
                command=['nginx', '-c', CONTAINER_CONFIG_PATH, '-g', 'daemon off;'],
                labels={'roomfarm.proxy': 'true'},
                restart_policy={'Name': 'unless-stopped'},
            )
        if container.status != 'running':
            logger.info('[Proxy] Proxy container was %s, starting it', container.status)
            container.start()
            container.reload()
        return container

    def reload(self):
        """Reload nginx, restarting the container if a reload is not possible"""
        container = self.ensure_proxy()
        try:
            result = self.executor.run(
                container.id,
                f'nginx -t -c {CONTAINER_CONFIG_PATH} && nginx -c {CONTAINER_CONFIG_PATH} -s reload',
            )
            if result.ok:
                logger.info('[Proxy] Config reloaded')
                return True
            logger.warning('[Proxy] Reload exited %s: %s', result.exit_code, result.stderr.strip())
        except (ContainerUnavailable, ExecStreamError) as e:
            logger.warning('[Proxy] Reload failed: %s', e)

        try:
            container.restart(timeout=5)
        except APIError as e:
            raise ProxyReloadFailed(f'Proxy restart failed: {e}') from e
        logger.warning('[Proxy] Restarted proxy container after failed reload')
        return False

    def apply(self, routes):
        """Regenerate, write and reload. Errors are logged, never raised."""
        text = render_config(routes, self.settings.container_prefix)
        with self._lock:
            try:
                self.write_config(text)
                self.reload()
            except (ProxyReloadFailed, APIError, OSError) as e:
                logger.error('[Proxy] %s', e)
        return text
