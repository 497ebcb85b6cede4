"""Fan-out of room events to subscribers."""

import logging

logger = logging.getLogger(__name__)


class Publisher:
    """Delivers an event to everyone subscribed to a room"""

    def publish(self, room_id, event, payload):
        raise NotImplementedError


class LoggingPublisher(Publisher):
    """Used when no transport is attached, e.g. from scripts"""

    def publish(self, room_id, event, payload):
        logger.debug('[Publish] %s %s', room_id, event)


class SocketIOPublisher(Publisher):

    def __init__(self, socketio):
        self.socketio = socketio

    def publish(self, room_id, event, payload):
        self.socketio.emit(event, payload, to=room_id)
