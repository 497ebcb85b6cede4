from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from roomfarm.app import create_app
from roomfarm.errors import ContainerUnavailable
from roomfarm.publisher import SocketIOPublisher
from roomfarm.sockets import socketio


@pytest.fixture
def orchestrator(settings):
    orchestrator = MagicMock()
    orchestrator.settings = settings
    orchestrator.disconnect.return_value = []
    return orchestrator


@pytest.fixture
def sio_client(settings, orchestrator):
    app = create_app(settings, orchestrator=orchestrator)
    app.config.update({"TESTING": True})
    client = socketio.test_client(app)
    yield client
    if client.is_connected():
        client.disconnect()


def _named(client, name):
    return [event["args"][0] for event in client.get_received() if event["name"] == name]


def test_join_room_starts_background_work(sio_client, orchestrator):
    sio_client.emit("joinRoom", {"roomId": "r1"})
    args = orchestrator.join_room.call_args[0]
    assert args[0] == "r1"
    assert args[1]


def test_join_room_without_container_emits_error(sio_client, orchestrator):
    orchestrator.join_room.side_effect = ContainerUnavailable("r1")
    sio_client.emit("joinRoom", {"roomId": "r1"})
    assert _named(sio_client, "error") == [{"message": "No container found for room r1"}]


def test_published_events_reach_room_members(sio_client):
    sio_client.emit("joinRoom", {"roomId": "r1"})
    sio_client.get_received()

    publisher = SocketIOPublisher(socketio)
    publisher.publish("r1", "terminal:output", {"terminalId": "t1", "data": "$ "})
    publisher.publish("other-room", "terminal:output", {"terminalId": "t9", "data": "nope"})

    assert _named(sio_client, "terminal:output") == [{"terminalId": "t1", "data": "$ "}]


def test_create_room_event(sio_client, orchestrator):
    orchestrator.create_room.return_value = SimpleNamespace(room_id="room-1-abc", id="c123")
    sio_client.emit("createRoom", {"image": "node:18"})
    orchestrator.create_room.assert_called_once_with("node:18")
    assert _named(sio_client, "roomCreated") == [{"roomId": "room-1-abc", "containerId": "c123"}]


def test_create_room_requires_image(sio_client, orchestrator):
    sio_client.emit("createRoom", {})
    orchestrator.create_room.assert_not_called()
    assert _named(sio_client, "error") == [{"message": "image is required"}]


def test_terminal_events_are_forwarded(sio_client, orchestrator):
    sio_client.emit("createTerminal", {"roomId": "r1", "terminalId": "t1"})
    sio_client.emit("terminal:write", {"roomId": "r1", "terminalId": "t1", "data": "ls\r"})
    sio_client.emit("terminal:resize", {"roomId": "r1", "terminalId": "t1", "cols": 120, "rows": 40})

    orchestrator.terminals.create_terminal.assert_called_once_with("r1", "t1")
    orchestrator.terminals.write.assert_called_once_with("r1", "t1", "ls\r")
    orchestrator.terminals.resize.assert_called_once_with("r1", "t1", 120, 40)


def test_create_terminal_failure_emits_error(sio_client, orchestrator):
    orchestrator.terminals.create_terminal.side_effect = ContainerUnavailable("r1")
    sio_client.emit("createTerminal", {"roomId": "r1", "terminalId": "t1"})
    assert len(_named(sio_client, "error")) == 1


def test_leave_and_disconnect_release_membership(sio_client, orchestrator):
    sio_client.emit("joinRoom", {"roomId": "r1"})
    sio_client.emit("leaveRoom", {"roomId": "r1"})
    sid = orchestrator.join_room.call_args[0][1]
    orchestrator.leave_room.assert_called_once_with("r1", sid)

    sio_client.disconnect()
    orchestrator.disconnect.assert_called_once_with(sid)
