"""Runtime settings for the room orchestrator.

Defaults come from environment variables. An optional JSON config file
(ROOMFARM_CONFIG) can override any field by name.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields

logger = logging.getLogger(__name__)

DEFAULT_BLACKLIST = (
    'node_modules', '.git', '.svn', '.hg', '__pycache__', '.venv', 'venv',
    'dist', 'build', '.next', '.cache', '.pytest_cache',
)

DEFAULT_CONFIG_FILE = os.environ.get('ROOMFARM_CONFIG', 'roomfarm.json')


def _env(name, default):
    value = os.environ.get(name, '').strip()
    return value if value else default


def _env_list(name, default):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(',') if item.strip()]


@dataclass
class Settings:
    network: str = field(default_factory=lambda: _env('ROOMFARM_NETWORK', 'roomfarm'))
    container_prefix: str = field(default_factory=lambda: _env('ROOMFARM_CONTAINER_PREFIX', 'room-'))
    workspace: str = field(default_factory=lambda: _env('ROOMFARM_WORKSPACE', '/workspace'))
    storage_root: str = field(default_factory=lambda: _env('ROOMFARM_STORAGE_ROOT', os.path.abspath('storage')))

    proxy_name: str = field(default_factory=lambda: _env('ROOMFARM_PROXY_NAME', 'roomfarm-proxy'))
    proxy_image: str = field(default_factory=lambda: _env('ROOMFARM_PROXY_IMAGE', 'nginx:latest'))
    proxy_port: int = field(default_factory=lambda: int(_env('ROOMFARM_PROXY_PORT', '8080')))
    proxy_config_dir: str = field(default_factory=lambda: _env('ROOMFARM_PROXY_CONFIG_DIR', os.path.abspath('proxy')))

    memory_limit: str = field(default_factory=lambda: _env('ROOMFARM_MEMORY_LIMIT', '1g'))
    cpu_limit: float = field(default_factory=lambda: float(_env('ROOMFARM_CPU_LIMIT', '1.0')))

    port_poll_interval: float = field(default_factory=lambda: float(_env('ROOMFARM_PORT_POLL_INTERVAL', '5')))
    heartbeat_interval: float = field(default_factory=lambda: float(_env('ROOMFARM_HEARTBEAT_INTERVAL', '30')))
    watch_debounce: float = field(default_factory=lambda: float(_env('ROOMFARM_WATCH_DEBOUNCE', '1.0')))
    health_timeout: float = 1.5

    docker_binary: str = field(default_factory=lambda: _env('ROOMFARM_DOCKER_BINARY', 'docker'))
    blacklist: list = field(default_factory=lambda: _env_list('ROOMFARM_BLACKLIST', DEFAULT_BLACKLIST))
    tool_packages: list = field(default_factory=lambda: ['lsof', 'socat', 'inotify-tools', 'curl', 'procps'])
    inline_write_limit: int = 64 * 1024

    secret_key: str = field(default_factory=lambda: _env('SECRET_KEY', 'roomfarm-secret-key'))
    host: str = field(default_factory=lambda: _env('HOST', '0.0.0.0'))
    port: int = field(default_factory=lambda: int(_env('PORT', '4000')))
    debug: bool = field(default_factory=lambda: _env('DEBUG', 'false').lower() == 'true')
    log_level: str = field(default_factory=lambda: _env('LOG_LEVEL', 'INFO'))

    @classmethod
    def from_env(cls, config_file=None):
        """Build settings from the environment, then apply the JSON overlay"""
        settings = cls()
        overrides = load_config_file(config_file or DEFAULT_CONFIG_FILE)
        if overrides:
            settings.update(overrides)
        return settings

    def update(self, overrides):
        known = {f.name: f for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning('[Config] Ignoring unknown setting %r', key)
                continue
            setattr(self, key, value)
        return self


def load_config_file(path):
    """Load JSON overrides, returning {} when the file is absent or invalid"""
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error('[Config] Error loading %s: %s', path, e)
        return {}
    if not isinstance(data, dict):
        logger.error('[Config] %s must contain a JSON object', path)
        return {}
    return data


def configure_logging(level='INFO'):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        stream=sys.stderr,
    )
