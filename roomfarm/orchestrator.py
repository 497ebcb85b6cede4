"""
Wiring for the room orchestration components.

The Orchestrator holds the Docker client and every service built on it.
Nothing here is a module-level global, so tests and scripts can build as
many independent instances as they like.
"""

import logging
import os

import docker
from docker.errors import APIError

from .config import Settings
from .errors import RoomFarmError
from .executor import CommandExecutor
from .filesystem import FileTreeService
from .lifecycle import ContainerLifecycle
from .ports import PortMonitorService
from .proxy import ProxyConfigurator
from .publisher import LoggingPublisher
from .rooms import RoomMembership
from .terminals import TerminalRegistry
from .watcher import FileWatcher

logger = logging.getLogger(__name__)


class Orchestrator:

    def __init__(self, settings=None, client=None, publisher=None):
        self.settings = settings or Settings.from_env()
        self.client = client if client is not None else docker.from_env()
        self.publisher = publisher or LoggingPublisher()

        self.executor = CommandExecutor(self.client)
        self.proxy = ProxyConfigurator(self.client, self.executor, self.settings)
        self.ports = PortMonitorService(
            self.client, self.executor, self.proxy, self.publisher, self.settings
        )
        self.lifecycle = ContainerLifecycle(
            self.client, self.executor, self.settings, proxy=self.proxy, port_monitors=self.ports
        )
        self.files = FileTreeService(self.executor, self.lifecycle, self.settings)
        self.terminals = TerminalRegistry(self.lifecycle, self.publisher, self.settings)
        self.watcher = FileWatcher(
            self.executor, self.lifecycle, self.files, self.publisher, self.settings
        )
        self.membership = RoomMembership()

    def ensure_infrastructure(self):
        """Storage directory, shared network and proxy container"""
        os.makedirs(self.settings.storage_root, exist_ok=True)
        self.lifecycle.ensure_network()
        self.proxy.ensure_proxy()

    def start(self):
        """Prepare infrastructure, start the heartbeat and resume port monitors"""
        self.ensure_infrastructure()
        self.terminals.start_heartbeat()
        try:
            rooms = self.lifecycle.list_rooms()
        except APIError as e:
            logger.error('[Orchestrator] Could not list existing rooms: %s', e)
            rooms = []
        for ref in rooms:
            if ref.status == 'running':
                self.ports.start(ref.room_id, ref)
        if rooms:
            logger.info('[Orchestrator] Found %d existing room(s)', len(rooms))

    def shutdown(self):
        logger.info('[Orchestrator] Shutting down')
        self.terminals.stop_heartbeat()
        self.terminals.close_all()
        self.watcher.stop_all()
        self.ports.stop_all()

    def create_room(self, image, room_id=None, exposed_port=8080, env_vars=None):
        ref = self.lifecycle.create(image, room_id=room_id, exposed_port=exposed_port, env_vars=env_vars)
        self.publisher.publish(ref.room_id, 'roomCreated', {
            'roomId': ref.room_id,
            'containerId': ref.id,
        })
        return ref

    def join_room(self, room_id, sid):
        """Subscribe a client and make sure the room's background work is running"""
        ref = self.lifecycle.require(room_id)
        try:
            self.ports.start(room_id, ref)
            self.watcher.watch(room_id)
        except RoomFarmError:
            if not self.membership.count(room_id):
                self.release_room(room_id)
            raise
        self.membership.join(room_id, sid)
        return ref

    def release_room(self, room_id):
        """Stop the per-room background work; terminals and the container stay"""
        self.watcher.stop(room_id)
        self.ports.stop(room_id)

    def leave_room(self, room_id, sid):
        if self.membership.leave(room_id, sid):
            self.release_room(room_id)
            return True
        return False

    def disconnect(self, sid):
        emptied = self.membership.leave_all(sid)
        for room_id in emptied:
            self.release_room(room_id)
        return emptied

    def delete_room(self, room_id):
        self.terminals.close_room(room_id)
        self.watcher.stop(room_id)
        self.files.forget(room_id)
        return self.lifecycle.remove(room_id)
