from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from roomfarm.config import Settings
from roomfarm.executor import ExecResult
from roomfarm.lifecycle import ContainerRef


class DummyDockerClient:
    def __init__(self):
        self.containers = MagicMock()
        self.images = MagicMock()
        self.networks = MagicMock()
        self.api = MagicMock()


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, room_id, event, payload):
        self.events.append((room_id, event, payload))

    def named(self, event):
        return [payload for _, name, payload in self.events if name == event]


class FakeExecutor:
    """
    Stands in for CommandExecutor. Commands are matched against registered
    fragments in order; unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.commands = []
        self.detached = []
        self.responses = []
        self.container = MagicMock()

    def respond(self, fragment, stdout="", stderr="", exit_code=0):
        self.responses.append((fragment, stdout, stderr, exit_code))

    def run(self, ref, command, workdir=None, user="", strip=True):
        self.commands.append(command)
        for fragment, stdout, stderr, exit_code in self.responses:
            if fragment in command:
                return ExecResult(stdout, stderr, exit_code, command)
        return ExecResult("", "", 0, command)

    def run_checked(self, ref, command, workdir=None, user="", strip=True):
        return self.run(ref, command, workdir, user, strip).check()

    def run_detached(self, ref, command, workdir=None, user=""):
        self.detached.append(command)
        return f"exec-{len(self.detached)}"

    def get_running(self, ref):
        return self.container


@pytest.fixture
def settings(tmp_path):
    return Settings(
        network="roomfarm-test",
        storage_root=str(tmp_path / "storage"),
        proxy_config_dir=str(tmp_path / "proxy"),
        port_poll_interval=0.01,
        heartbeat_interval=0.01,
        watch_debounce=0.01,
        health_timeout=0.1,
        blacklist=["node_modules", ".git"],
        secret_key="test-secret",
    )


@pytest.fixture
def docker_client():
    return DummyDockerClient()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def room_ref():
    return ContainerRef(
        id="c0ffee1234567890", name="room-r1", room_id="r1", status="running", ip="172.20.0.5"
    )


@pytest.fixture
def lifecycle(room_ref):
    lifecycle = MagicMock()
    lifecycle.require.return_value = room_ref
    lifecycle.lookup.return_value = room_ref
    return lifecycle


def running_container(container_id="c0ffee1234567890", name="room-r1", ip="172.20.0.5", network="roomfarm-test"):
    return SimpleNamespace(
        id=container_id,
        name=name,
        status="running",
        labels={},
        attrs={"NetworkSettings": {"Networks": {network: {"IPAddress": ip}}}},
        reload=MagicMock(),
        stop=MagicMock(),
        remove=MagicMock(),
        wait=MagicMock(return_value={"StatusCode": 0}),
        put_archive=MagicMock(return_value=True),
    )


@pytest.fixture
def make_container(settings):
    def make(**kwargs):
        kwargs.setdefault("network", settings.network)
        return running_container(**kwargs)
    return make
