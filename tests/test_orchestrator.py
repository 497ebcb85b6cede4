import os
from unittest.mock import MagicMock

import pytest

from roomfarm.errors import ContainerUnavailable, ExecStreamError
from roomfarm.lifecycle import ContainerRef
from roomfarm.orchestrator import Orchestrator


@pytest.fixture
def orchestrator(settings, docker_client, publisher):
    orchestrator = Orchestrator(settings, client=docker_client, publisher=publisher)
    orchestrator.lifecycle = MagicMock()
    orchestrator.proxy = MagicMock()
    orchestrator.ports = MagicMock()
    orchestrator.watcher = MagicMock()
    orchestrator.terminals = MagicMock()
    orchestrator.files = MagicMock()
    return orchestrator


def test_components_share_one_client_and_publisher(settings, docker_client, publisher):
    orchestrator = Orchestrator(settings, client=docker_client, publisher=publisher)
    assert orchestrator.executor.client is docker_client
    assert orchestrator.lifecycle.port_monitors is orchestrator.ports
    assert orchestrator.lifecycle.proxy is orchestrator.proxy
    assert orchestrator.ports.proxy is orchestrator.proxy
    assert orchestrator.terminals.publisher is publisher
    assert orchestrator.watcher.files is orchestrator.files


def test_ensure_infrastructure(orchestrator, settings):
    orchestrator.ensure_infrastructure()
    assert os.path.isdir(settings.storage_root)
    orchestrator.lifecycle.ensure_network.assert_called_once()
    orchestrator.proxy.ensure_proxy.assert_called_once()


def test_start_resumes_monitors_for_running_rooms(orchestrator):
    running = ContainerRef(id="a", name="room-a", room_id="a", status="running")
    stopped = ContainerRef(id="b", name="room-b", room_id="b", status="exited")
    orchestrator.lifecycle.list_rooms.return_value = [running, stopped]

    orchestrator.start()

    orchestrator.terminals.start_heartbeat.assert_called_once()
    orchestrator.ports.start.assert_called_once_with("a", running)


def test_create_room_publishes(orchestrator, publisher, room_ref):
    orchestrator.lifecycle.create.return_value = room_ref
    assert orchestrator.create_room("node:18", exposed_port=3000) is room_ref
    assert publisher.events == [
        ("r1", "roomCreated", {"roomId": "r1", "containerId": room_ref.id}),
    ]


def test_join_room_starts_watcher_and_monitor(orchestrator, room_ref):
    orchestrator.lifecycle.require.return_value = room_ref
    orchestrator.join_room("r1", "sid-a")
    orchestrator.ports.start.assert_called_once_with("r1", room_ref)
    orchestrator.watcher.watch.assert_called_once_with("r1")
    assert orchestrator.membership.members("r1") == {"sid-a"}


def test_join_room_without_container(orchestrator):
    orchestrator.lifecycle.require.side_effect = ContainerUnavailable("r1")
    with pytest.raises(ContainerUnavailable):
        orchestrator.join_room("r1", "sid-a")
    orchestrator.watcher.watch.assert_not_called()
    assert orchestrator.membership.count("r1") == 0


def test_join_room_watch_failure_records_no_member(orchestrator, room_ref):
    orchestrator.lifecycle.require.return_value = room_ref
    orchestrator.watcher.watch.side_effect = ExecStreamError("exec start failed")

    with pytest.raises(ExecStreamError):
        orchestrator.join_room("r1", "sid-a")

    assert orchestrator.membership.count("r1") == 0
    orchestrator.ports.stop.assert_called_once_with("r1")
    assert orchestrator.disconnect("sid-a") == []


def test_last_member_leaving_stops_background_work_only(orchestrator, room_ref):
    orchestrator.lifecycle.require.return_value = room_ref
    orchestrator.join_room("r1", "sid-a")
    orchestrator.join_room("r1", "sid-b")

    assert orchestrator.leave_room("r1", "sid-a") is False
    orchestrator.watcher.stop.assert_not_called()

    assert orchestrator.disconnect("sid-b") == ["r1"]
    orchestrator.watcher.stop.assert_called_once_with("r1")
    orchestrator.ports.stop.assert_called_once_with("r1")
    orchestrator.terminals.close_room.assert_not_called()
    orchestrator.lifecycle.remove.assert_not_called()


def test_delete_room_tears_everything_down(orchestrator):
    orchestrator.lifecycle.remove.return_value = True
    assert orchestrator.delete_room("r1") is True
    orchestrator.terminals.close_room.assert_called_once_with("r1")
    orchestrator.watcher.stop.assert_called_once_with("r1")
    orchestrator.files.forget.assert_called_once_with("r1")
    orchestrator.lifecycle.remove.assert_called_once_with("r1")


def test_shutdown_stops_loops(orchestrator):
    orchestrator.shutdown()
    orchestrator.terminals.stop_heartbeat.assert_called_once()
    orchestrator.watcher.stop_all.assert_called_once()
    orchestrator.ports.stop_all.assert_called_once()
