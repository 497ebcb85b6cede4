"""Socket.IO event handlers."""

import logging

from flask import current_app, request
from flask_socketio import SocketIO, emit, join_room, leave_room

from .errors import RoomFarmError

logger = logging.getLogger(__name__)

socketio = SocketIO(cors_allowed_origins='*')


def _orchestrator():
    return current_app.extensions['roomfarm']


def _error(message):
    emit('error', {'message': message})


@socketio.on('connect')
def handle_connect():
    logger.debug('[Socket] Client connected: %s', request.sid)


@socketio.on('disconnect')
def handle_disconnect(*args):
    emptied = _orchestrator().disconnect(request.sid)
    logger.debug('[Socket] Client %s disconnected; released %s', request.sid, emptied or 'nothing')


@socketio.on('createRoom')
def handle_create_room(data):
    image = (data or {}).get('image')
    if not image:
        _error('image is required')
        return
    try:
        ref = _orchestrator().create_room(image)
    except (RoomFarmError, ValueError) as e:
        logger.error('[Socket] createRoom failed: %s', e)
        _error(str(e))
        return
    # the creator is subscribed so it sees its own roomCreated
    join_room(ref.room_id)
    emit('roomCreated', {'roomId': ref.room_id, 'containerId': ref.id})


@socketio.on('joinRoom')
def handle_join_room(data):
    room_id = (data or {}).get('roomId')
    if not room_id:
        _error('roomId is required')
        return
    join_room(room_id)
    try:
        _orchestrator().join_room(room_id, request.sid)
    except (RoomFarmError, ValueError) as e:
        logger.warning('[Socket] joinRoom %s failed: %s', room_id, e)
        leave_room(room_id)
        _error(f'No container found for room {room_id}')


@socketio.on('leaveRoom')
def handle_leave_room(data):
    room_id = (data or {}).get('roomId')
    if not room_id:
        return
    leave_room(room_id)
    _orchestrator().leave_room(room_id, request.sid)


@socketio.on('createTerminal')
def handle_create_terminal(data):
    data = data or {}
    room_id, terminal_id = data.get('roomId'), data.get('terminalId')
    if not room_id or not terminal_id:
        _error('roomId and terminalId are required')
        return
    try:
        _orchestrator().terminals.create_terminal(room_id, terminal_id)
    except (RoomFarmError, OSError) as e:
        logger.error('[Socket] createTerminal %s/%s failed: %s', room_id, terminal_id, e)
        _error(str(e))


@socketio.on('terminal:write')
def handle_terminal_write(data):
    data = data or {}
    _orchestrator().terminals.write(data.get('roomId'), data.get('terminalId'), data.get('data') or '')


@socketio.on('terminal:resize')
def handle_terminal_resize(data):
    data = data or {}
    try:
        _orchestrator().terminals.resize(
            data.get('roomId'), data.get('terminalId'), data.get('cols'), data.get('rows')
        )
    except (TypeError, ValueError, OSError) as e:
        logger.debug('[Socket] Ignoring bad resize: %s', e)
