#!/usr/bin/env python3
"""
HTTP API for DockerMaid
"""

import hmac
import logging
import os
import threading
import traceback
from functools import wraps
from typing import Optional
from urllib.parse import unquote

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit

from dockermaid import DockerMaid, DEFAULT_SETTINGS_FILE, DEFAULT_LOG_TAIL, __version__
from docker_api import DockerAPIError

app = Flask(__name__)
app.config['SECRET_KEY'] = os.urandom(32).hex()
socketio = SocketIO(app)

# Global variables
maid: Optional[DockerMaid] = None
daemon_thread: Optional[threading.Thread] = None
daemon_stop_event = threading.Event()
is_checking = False

# Delay before the first periodic check after startup (seconds)
INITIAL_CHECK_DELAY = 10

API_TOKEN = os.environ.get('API_TOKEN', '')

logger = logging.getLogger(__name__)


def _error(message: str, exc: Exception, status: int = 500):
    details = exc.message if isinstance(exc, DockerAPIError) else str(exc)
    if isinstance(exc, DockerAPIError) and exc.status == 404:
        status = 404
    return jsonify({'error': message, 'details': details}), status


@app.before_request
def require_token():
    """Enforce the API token on /api routes when one is configured.

    Requests without an Origin header, or whose Referer points at this host,
    come from the bundled front end and pass without a token.
    """
    if not API_TOKEN or not request.path.startswith('/api'):
        return None

    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        if hmac.compare_digest(auth_header[len('Bearer '):], API_TOKEN):
            return None
        return jsonify({'error': 'Unauthorized: Invalid token'}), 401

    origin = request.headers.get('Origin')
    referer = request.headers.get('Referer', '')
    if not origin or (referer and request.host in referer):
        return None

    return jsonify({'error': 'Unauthorized: Missing token'}), 401


def load_maid():
    """Load or reload the DockerMaid instance."""
    global maid
    settings_file = os.environ.get('SETTINGS_FILE', DEFAULT_SETTINGS_FILE)
    log_level = os.environ.get('LOG_LEVEL', 'INFO')

    try:
        maid = DockerMaid(settings_file, log_level)
        maid.recreator.subscribe(emit_pull_progress)
        return True
    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        return False


def require_maid(f):
    """Decorator to check the service is loaded before executing route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not maid:
            return jsonify({'error': 'Service not loaded'}), 503
        return f(*args, **kwargs)
    return decorated


def emit_pull_progress(image, event):
    """Forward pull progress to connected clients."""
    socketio.emit('pull_progress', {
        'image': image,
        'status': event.get('status'),
        'progress': event.get('progress'),
        'id': event.get('id'),
    }, namespace='/')


def run_check():
    """Run a single periodic check cycle."""
    global is_checking

    if is_checking or not maid:
        return

    is_checking = True
    try:
        updates_available = maid.periodic_check()
        socketio.emit('check_complete', {
            'updatesAvailable': updates_available,
            'lastCheck': maid.settings.settings.last_check,
        }, namespace='/')
    except Exception as e:
        logger.error(f"Periodic check failed: {e}\n{traceback.format_exc()}")
        socketio.emit('check_error', {'error': str(e)}, namespace='/')
    finally:
        is_checking = False


def daemon_worker(interval_minutes, stop_event):
    """Background worker running checks every *interval_minutes*."""
    logger.info(f"Periodic check scheduled every {interval_minutes} minutes")
    if stop_event.wait(timeout=INITIAL_CHECK_DELAY):
        return
    while True:
        try:
            run_check()
        except Exception as e:
            logger.error(f"Daemon check cycle failed unexpectedly: {e}\n{traceback.format_exc()}")
        # Wait with efficient interruption support
        if stop_event.wait(timeout=interval_minutes * 60):
            break
    logger.info("Periodic checks stopped")


def setup_periodic_check():
    """(Re)start the daemon thread to match the current check interval."""
    global daemon_thread, daemon_stop_event

    if daemon_thread and daemon_thread.is_alive():
        daemon_stop_event.set()
        daemon_thread.join(timeout=5)
    daemon_thread = None

    if not maid or maid.settings.settings.check_interval <= 0:
        return

    daemon_stop_event = threading.Event()
    daemon_thread = threading.Thread(
        target=daemon_worker,
        args=(maid.settings.settings.check_interval, daemon_stop_event),
        daemon=True,
    )
    daemon_thread.start()


@app.route('/api/health')
@require_maid
def api_health():
    """Check the Docker daemon is reachable."""
    try:
        if maid.docker.ping():
            return jsonify({'status': 'ok', 'docker': 'connected'})
        error = 'Docker daemon did not answer ping'
    except FileNotFoundError:
        error = f"Docker socket not found at {maid.docker.socket_path}. Is Docker running?"
    except ConnectionRefusedError:
        error = 'Docker connection refused. Is Docker running?'
    except OSError as e:
        error = str(e)
    logger.error(f"Docker health check failed: {error}")
    return jsonify({
        'status': 'error',
        'docker': 'disconnected',
        'error': error,
        'socketPath': maid.docker.socket_path,
    }), 500


@app.route('/api/version')
def api_version():
    """Get application version."""
    return jsonify({'version': __version__})


@app.route('/api/containers')
@require_maid
def api_containers():
    """List containers, checking running ones for updates unless ?checkUpdates=false."""
    check_updates = request.args.get('checkUpdates') != 'false'
    try:
        return jsonify(maid.list_containers(check_updates=check_updates))
    except (DockerAPIError, OSError) as e:
        logger.error(f"Error fetching containers: {e}")
        return _error('Failed to fetch containers', e)


@app.route('/api/containers/update-all', methods=['POST'])
@require_maid
def api_update_all():
    """Update every running container with an update available."""
    try:
        result = maid.recreator.update_all()
    except (DockerAPIError, OSError) as e:
        return _error('Failed to update containers', e)
    socketio.emit('update_complete', result.to_dict(), namespace='/')
    return jsonify(result.to_dict())


@app.route('/api/containers/<container_id>')
@require_maid
def api_container(container_id):
    try:
        return jsonify(maid.get_container(container_id))
    except (DockerAPIError, OSError) as e:
        return _error('Failed to fetch container', e)


@app.route('/api/containers/<container_id>/<action>', methods=['POST'])
@require_maid
def api_container_action(container_id, action):
    """Start, stop or restart a container."""
    actions = {
        'start': (maid.docker.start_container, 'started'),
        'stop': (maid.docker.stop_container, 'stopped'),
        'restart': (maid.docker.restart_container, 'restarted'),
    }
    if action == 'update':
        return api_update_container(container_id)
    if action not in actions:
        return jsonify({'error': f"Unknown action '{action}'"}), 404

    func, done = actions[action]
    try:
        func(container_id)
    except (DockerAPIError, OSError) as e:
        return _error(f'Failed to {action} container', e)
    return jsonify({'success': True, 'message': f'Container {done}'})


def api_update_container(container_id):
    """Pull the latest (or requested) image and recreate the container."""
    data = request.get_json(silent=True) or {}
    target_tag = data.get('targetTag') or None

    result = maid.recreator.update_container(container_id, target_tag)
    socketio.emit('update_complete', result.to_dict(), namespace='/')
    if not result.success:
        return jsonify({'error': 'Failed to update container', 'details': result.message}), 500
    return jsonify(result.to_dict())


@app.route('/api/containers/<container_id>/logs')
@require_maid
def api_container_logs(container_id):
    tail = request.args.get('tail', DEFAULT_LOG_TAIL, type=int) or DEFAULT_LOG_TAIL
    since = request.args.get('since', 0, type=int)
    try:
        return jsonify({'logs': maid.container_logs(container_id, tail=tail, since=since)})
    except (DockerAPIError, OSError) as e:
        logger.error(f"Error fetching container logs: {e}")
        return _error('Failed to fetch logs', e)


@app.route('/api/images/<path:image_name>/pull', methods=['POST'])
@require_maid
def api_pull_image(image_name):
    """Pull an image without recreating any container."""
    image_name = unquote(image_name)
    try:
        maid.pull_image(image_name)
    except (DockerAPIError, OSError) as e:
        logger.error(f"Error pulling image {image_name}: {e}")
        return _error('Failed to pull image', e)
    return jsonify({'success': True, 'message': f'Image {image_name} pulled successfully'})


@app.route('/api/images/<path:image_name>/registry-url')
@require_maid
def api_registry_url(image_name):
    return jsonify(maid.registry_urls(unquote(image_name)))


@app.route('/api/images/<path:image_name>/tags')
@require_maid
def api_image_tags(image_name):
    return jsonify(maid.available_tags(unquote(image_name)))


@app.route('/api/images')
@require_maid
def api_images():
    try:
        return jsonify(maid.list_images())
    except (DockerAPIError, OSError) as e:
        return _error('Failed to get images', e)


@app.route('/api/docker/info')
@require_maid
def api_docker_info():
    try:
        return jsonify(maid.docker_info())
    except (DockerAPIError, OSError) as e:
        return _error('Failed to get Docker info', e)


@app.route('/api/supervisor/status')
@require_maid
def api_status():
    try:
        return jsonify(maid.status())
    except (DockerAPIError, OSError) as e:
        return _error('Failed to get status', e)


@app.route('/api/settings')
@require_maid
def api_settings():
    return jsonify(maid.settings.settings.to_dict())


@app.route('/api/settings', methods=['PUT'])
@require_maid
def api_update_settings():
    """Update settings and reschedule periodic checks."""
    data = request.get_json(silent=True) or {}
    settings = maid.settings.update(data)
    setup_periodic_check()
    return jsonify(settings.to_dict())


@app.route('/api/cache/clear', methods=['POST'])
@require_maid
def api_clear_cache():
    """Drop all cached update checks, forcing a fresh check next time."""
    maid.cache.clear()
    return jsonify({'success': True, 'message': 'Update cache cleared'})


@app.route('/api/logs')
@require_maid
def api_logs():
    """Get the update log, newest first."""
    limit = request.args.get('limit', 50, type=int) or 50
    return jsonify([entry.to_dict() for entry in maid.update_log.entries(limit)])


@app.route('/api/logs', methods=['DELETE'])
@require_maid
def api_clear_logs():
    maid.update_log.clear()
    return jsonify({'success': True, 'message': 'Logs cleared'})


@socketio.on('connect')
def handle_connect():
    """Send current status to a newly connected client."""
    emit('connected', {'status': 'Connected to DockerMaid'})
    emit('status_update', {
        'checking': is_checking,
        'lastCheck': maid.settings.settings.last_check if maid else None,
    })


# Load service and schedule checks on startup (runs when gunicorn imports this module)
load_maid()
setup_periodic_check()

if __name__ == '__main__':
    socketio.run(app, host='0.0.0.0', port=int(os.environ.get('PORT', '3000')),
                 allow_unsafe_werkzeug=True)
