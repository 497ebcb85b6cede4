"""
HTTP API for rooms.

Routes are thin: they validate the request body, call into the
Orchestrator, and map typed errors onto status codes.
"""

import logging

from flask import Flask, current_app, jsonify, request

from .config import Settings, configure_logging
from .errors import ContainerUnavailable, InvalidPath, PathConflict, RoomFarmError
from .filetree import tree_to_dicts
from .languages import get_language_config
from .orchestrator import Orchestrator
from .publisher import SocketIOPublisher
from .sockets import socketio

logger = logging.getLogger(__name__)


def _orchestrator():
    return current_app.extensions['roomfarm']


def _body(*required):
    data = request.get_json(silent=True) or {}
    missing = [key for key in required if data.get(key) in (None, '')]
    if missing:
        raise ValueError(f'Missing required field(s): {", ".join(missing)}')
    return data


def register_routes(app):

    @app.errorhandler(ContainerUnavailable)
    def container_unavailable(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(PathConflict)
    def path_conflict(e):
        return jsonify({'error': str(e)}), 409

    @app.errorhandler(InvalidPath)
    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(RoomFarmError)
    def room_error(e):
        logger.error('[API] %s: %s', request.path, e)
        return jsonify({'error': str(e)}), 500

    @app.route('/')
    def index():
        return jsonify({'message': 'room-farm is running', 'status': 'healthy'})

    @app.route('/createRoom', methods=['POST'])
    def create_room():
        data = request.get_json(silent=True) or {}
        language = data.get('language')
        if not language:
            return jsonify({'error': 'Language selection is required'}), 400
        config = get_language_config(language)
        if config is None:
            return jsonify({'error': 'Unsupported language'}), 400
        ref = _orchestrator().create_room(
            config.image, exposed_port=config.port, env_vars=list(config.env_vars)
        )
        return jsonify({
            'success': True,
            'message': 'Room created successfully',
            'roomId': ref.room_id,
            'containerId': ref.id,
        })

    @app.route('/files/<room_id>')
    def get_files(room_id):
        tree = _orchestrator().files.get_tree(room_id)
        if not tree:
            return jsonify({'error': 'No file tree found for room'}), 404
        return jsonify({'tree': tree_to_dicts(tree)})

    @app.route('/read-file', methods=['POST'])
    def read_file():
        data = _body('roomId', 'path')
        content = _orchestrator().files.read(data['roomId'], data['path'])
        return jsonify({'content': content})

    @app.route('/save-file', methods=['POST'])
    def save_file():
        data = _body('roomId', 'path')
        _orchestrator().files.write(data['roomId'], data['path'], data.get('content') or '')
        return jsonify({'success': True})

    @app.route('/create-file', methods=['POST'])
    def create_file():
        data = _body('roomId', 'path')
        _orchestrator().files.create_file(data['roomId'], data['path'])
        return jsonify({'success': True})

    @app.route('/create-folder', methods=['POST'])
    def create_folder():
        data = _body('roomId', 'path')
        _orchestrator().files.create_folder(data['roomId'], data['path'])
        return jsonify({'success': True})

    @app.route('/delete-path', methods=['POST'])
    def delete_path():
        data = _body('roomId', 'path')
        _orchestrator().files.delete_path(data['roomId'], data['path'])
        return jsonify({'success': True})

    @app.route('/rename-path', methods=['POST'])
    def rename_path():
        data = _body('roomId', 'oldPath', 'newPath')
        _orchestrator().files.rename_path(data['roomId'], data['oldPath'], data['newPath'])
        return jsonify({'success': True})

    @app.route('/sync-tree', methods=['POST'])
    def sync_tree():
        data = _body('roomId')
        tree = data.get('tree')
        if not isinstance(tree, list):
            raise ValueError('tree must be a list of nodes')
        diff = _orchestrator().files.sync(data['roomId'], tree)
        return jsonify({
            'success': True,
            'created': diff.to_create,
            'deleted': diff.to_delete,
        })

    @app.route('/rooms/<room_id>', methods=['DELETE'])
    def delete_room(room_id):
        removed = _orchestrator().delete_room(room_id)
        return jsonify({'success': True, 'removed': removed})


def create_app(settings=None, orchestrator=None):
    """Build the Flask app and attach Socket.IO and the orchestrator"""
    settings = settings or (orchestrator.settings if orchestrator else Settings.from_env())
    app = Flask(__name__)
    app.config['SECRET_KEY'] = settings.secret_key

    socketio.init_app(app, async_mode='gevent', cors_allowed_origins='*')
    if orchestrator is None:
        orchestrator = Orchestrator(settings, publisher=SocketIOPublisher(socketio))
    app.extensions['roomfarm'] = orchestrator

    register_routes(app)
    return app


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    app = create_app(settings)
    orchestrator = app.extensions['roomfarm']
    orchestrator.start()
    logger.info('[API] Listening on %s:%s', settings.host, settings.port)
    try:
        socketio.run(app, host=settings.host, port=settings.port, debug=settings.debug)
    finally:
        orchestrator.shutdown()
