import os
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from roomfarm.errors import ContainerUnavailable
from roomfarm.lifecycle import (
    LABEL_PORT,
    LABEL_ROOM,
    ContainerLifecycle,
    generate_room_id,
    install_tools_command,
    normalize_env,
    validate_room_id,
)


@pytest.fixture
def proxy():
    return MagicMock()


@pytest.fixture
def monitors():
    return MagicMock()


@pytest.fixture
def manager(docker_client, executor, settings, proxy, monitors):
    docker_client.networks.list.return_value = []
    docker_client.containers.get.side_effect = NotFound("missing")
    return ContainerLifecycle(docker_client, executor, settings, proxy=proxy, port_monitors=monitors)


def test_generated_room_ids_are_valid_and_unique():
    ids = {generate_room_id() for _ in range(50)}
    assert len(ids) == 50
    for room_id in ids:
        assert room_id.startswith("room-")
        assert validate_room_id(room_id) == room_id


@pytest.mark.parametrize("room_id", ["", "-leading", "has space", "a/b", "x" * 200])
def test_invalid_room_ids(room_id):
    with pytest.raises(ValueError):
        validate_room_id(room_id)


def test_normalize_env_accepts_list_and_dict():
    assert normalize_env(["A=1", "B=x=y", "C"]) == {"A": "1", "B": "x=y", "C": ""}
    assert normalize_env({"PORT": 5173}) == {"PORT": "5173"}
    assert normalize_env(None) == {}


def test_install_tools_command_quotes_packages():
    command = install_tools_command(["lsof", "inotify-tools"])
    assert "apt-get install -y -qq lsof inotify-tools" in command
    assert "apk add --no-cache lsof inotify-tools" in command


def test_create_starts_container_and_monitor(manager, docker_client, make_container, settings, proxy, monitors, executor):
    container = make_container(name="room-r1")
    docker_client.containers.run.return_value = container

    ref = manager.create("node:18", room_id="r1", exposed_port=5173, env_vars=["NODE_ENV=development"])

    assert ref.room_id == "r1"
    assert ref.id == container.id
    assert ref.ip == "172.20.0.5"
    kwargs = docker_client.containers.run.call_args.kwargs
    assert kwargs["name"] == "room-r1"
    assert kwargs["image"] == "node:18"
    assert kwargs["tty"] is True and kwargs["stdin_open"] is True
    assert kwargs["working_dir"] == "/workspace"
    assert kwargs["network"] == settings.network
    assert kwargs["environment"] == {
        "NODE_ENV": "development",
        "ROOM_ID": "r1",
        "ROOM_BASE_PATH": "/r1/5173/",
    }
    assert kwargs["labels"][LABEL_ROOM] == "r1"
    assert kwargs["labels"][LABEL_PORT] == "5173"
    workspace_dir = os.path.join(settings.storage_root, "r1")
    assert kwargs["volumes"] == {workspace_dir: {"bind": "/workspace", "mode": "rw"}}
    assert os.path.isdir(workspace_dir)

    docker_client.networks.create.assert_called_once_with(settings.network, driver="bridge")
    proxy.ensure_proxy.assert_called_once()
    assert any("apt-get" in command for command in executor.commands)
    monitors.start.assert_called_once_with("r1", ref)


def test_create_pulls_missing_image(manager, docker_client, make_container):
    docker_client.images.get.side_effect = ImageNotFound("nope")
    docker_client.containers.run.return_value = make_container()
    manager.create("python:3.10", room_id="r1")
    docker_client.images.pull.assert_called_once_with("python:3.10")


def test_create_tolerates_tool_install_failure(manager, docker_client, make_container, executor, monitors):
    executor.respond("apt-get", stderr="E: Unable to locate package", exit_code=100)
    docker_client.containers.run.return_value = make_container()
    ref = manager.create("node:18", room_id="r1")
    monitors.start.assert_called_once_with("r1", ref)


def test_create_fails_when_container_exits_immediately(manager, docker_client, make_container, monitors):
    container = make_container()
    container.status = "exited"
    docker_client.containers.run.return_value = container
    with pytest.raises(ContainerUnavailable):
        manager.create("broken:latest", room_id="r1")
    monitors.start.assert_not_called()


def test_create_replaces_stale_container(manager, docker_client, make_container):
    stale = make_container(container_id="old")
    docker_client.containers.get.side_effect = None
    docker_client.containers.get.return_value = stale
    docker_client.containers.run.return_value = make_container()
    manager.create("node:18", room_id="r1")
    stale.remove.assert_called_once_with(force=True)


def test_lookup_requires_exact_name(manager, docker_client, make_container):
    docker_client.containers.list.return_value = [
        make_container(container_id="a", name="room-r10"),
        make_container(container_id="b", name="room-r1"),
    ]
    ref = manager.lookup("r1")
    assert ref.id == "b"
    docker_client.containers.list.assert_called_with(all=True, filters={"name": "room-r1"})


def test_lookup_missing_returns_none(manager, docker_client):
    docker_client.containers.list.return_value = []
    assert manager.lookup("r1") is None
    with pytest.raises(ContainerUnavailable):
        manager.require("r1")


def test_lookup_daemon_error(manager, docker_client):
    docker_client.containers.list.side_effect = APIError("daemon busy")
    assert manager.lookup("r1") is None
    with pytest.raises(APIError):
        manager.lookup("r1", strict=True)


def test_require_running(manager, docker_client, make_container):
    stopped = make_container()
    stopped.status = "exited"
    docker_client.containers.list.return_value = [stopped]
    with pytest.raises(ContainerUnavailable):
        manager.require("r1")
    assert manager.require("r1", running=False).status == "exited"


def test_remove_stops_monitor_and_container(manager, docker_client, make_container, monitors):
    container = make_container()
    docker_client.containers.list.return_value = [container]
    docker_client.containers.get.side_effect = None
    docker_client.containers.get.return_value = container

    assert manager.remove("r1") is True
    monitors.forget.assert_called_once_with("r1")
    container.stop.assert_called_once_with(timeout=10)
    container.remove.assert_called_once_with(force=True)


def test_remove_missing_room_is_a_no_op(manager, docker_client):
    docker_client.containers.list.return_value = []
    assert manager.remove("r1") is False


def test_get_internal_ip(manager, docker_client, make_container):
    container = make_container(ip="172.20.0.9")
    docker_client.containers.list.return_value = [container]
    docker_client.containers.get.side_effect = None
    docker_client.containers.get.return_value = container
    assert manager.get_internal_ip("r1") == "172.20.0.9"


def test_cleanup_orphans_skips_running_and_known(manager, docker_client, make_container):
    def labelled(room_id, status):
        container = make_container(container_id=f"id-{room_id}", name=f"room-{room_id}")
        container.status = status
        container.labels = {LABEL_ROOM: room_id}
        return container

    containers = {
        "id-a": labelled("a", "running"),
        "id-b": labelled("b", "exited"),
        "id-c": labelled("c", "exited"),
    }
    docker_client.containers.list.return_value = list(containers.values())
    docker_client.containers.get.side_effect = lambda cid: containers[cid]

    cleaned, errors = manager.cleanup_orphans(known_rooms=["c"])

    assert cleaned == ["b"]
    assert errors == []
    containers["id-b"].remove.assert_called_once_with(force=True)
    containers["id-c"].remove.assert_not_called()


def test_ensure_network_reuses_exact_match(manager, docker_client, settings):
    existing = SimpleNamespace(name=settings.network)
    docker_client.networks.list.return_value = [SimpleNamespace(name=settings.network + "-other"), existing]
    assert manager.ensure_network() is existing
    docker_client.networks.create.assert_not_called()
