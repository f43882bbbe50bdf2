"""
Session API Routes for EduSec Labs
Thin Flask adapter over the session lifecycle manager and command proxy.

The caller is trusted: the owner identity comes from the X-User-ID header,
already authenticated upstream.
"""

import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from session_errors import SessionError
from session_registry import KIND_LAB, KIND_WORKSTATION

logger = logging.getLogger('SessionRoutes')

# Create Blueprint
sessions_bp = Blueprint('sessions', __name__, url_prefix='/api')


def _services():
    return current_app.extensions['lab_sessions']


def get_owner_id():
    """Owner identity supplied by the upstream auth layer"""
    return request.headers.get('X-User-ID')


def owner_required(f):
    """Decorator to require the X-User-ID header"""
    @wraps(f)
    def decorated(*args, **kwargs):
        owner_id = get_owner_id()
        if not owner_id:
            return jsonify({'success': False, 'error': 'User ID required'}), 401
        return f(owner_id, *args, **kwargs)
    return decorated


def admin_required(f):
    """Decorator to require the X-Admin-Key header to match ADMIN_KEY"""
    @wraps(f)
    def decorated(*args, **kwargs):
        expected_key = _services()['config'].ADMIN_KEY
        admin_key = request.headers.get('X-Admin-Key')
        if not expected_key or admin_key != expected_key:
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated


def session_errors(f):
    """Decorator turning session errors into JSON responses"""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except SessionError as e:
            return jsonify(e.to_dict()), e.http_status
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return jsonify({
                'success': False,
                'error': f"Unexpected error: {str(e)}",
                'error_code': 'UNKNOWN_ERROR',
                'message': 'An unexpected error occurred.'
            }), 500
    return decorated


def _command_from_body():
    data = request.get_json(silent=True) or {}
    return data.get('command')


# ==================== LAB ENDPOINTS ====================

@sessions_bp.route('/labs/<lab_id>/start', methods=['POST'])
@owner_required
@session_errors
def start_lab(owner_id, lab_id):
    """
    POST /api/labs/<lab_id>/start
    Start (or reuse) the user's container for a lab
    """
    details = _services()['manager'].start(owner_id, lab_id, KIND_LAB)
    return jsonify({
        'success': True,
        'message': 'Lab started successfully',
        'lab': {
            'labId': lab_id,
            'status': details['status'],
            'accessUrl': details['accessUrl'],
            'hostPort': details['hostPort'],
            'containerName': details['containerName']
        }
    })


@sessions_bp.route('/labs/<lab_id>/stop', methods=['POST'])
@owner_required
@session_errors
def stop_lab(owner_id, lab_id):
    return jsonify(_services()['manager'].stop(owner_id, lab_id, KIND_LAB))


@sessions_bp.route('/labs/<lab_id>/status', methods=['GET'])
@owner_required
@session_errors
def lab_status(owner_id, lab_id):
    return jsonify(_services()['manager'].status(owner_id, lab_id, KIND_LAB))


@sessions_bp.route('/labs/<lab_id>/execute', methods=['POST'])
@owner_required
@session_errors
def execute_in_lab(owner_id, lab_id):
    """
    POST /api/labs/<lab_id>/execute
    Body: {"command": "ls -la"}
    """
    result = _services()['proxy'].execute(owner_id, lab_id, _command_from_body(), KIND_LAB)
    return jsonify(result)


@sessions_bp.route('/labs/<lab_id>/logs', methods=['GET'])
@owner_required
@session_errors
def lab_logs(owner_id, lab_id):
    tail = request.args.get('tail', 100, type=int)
    logs = _services()['manager'].logs(owner_id, lab_id, KIND_LAB, tail_lines=tail)
    return jsonify({'success': True, 'logs': logs})


# ==================== WORKSTATION ENDPOINTS ====================

@sessions_bp.route('/vm/status', methods=['GET'])
@owner_required
@session_errors
def workstation_status(owner_id):
    return jsonify(_services()['manager'].workstation_status(owner_id))


@sessions_bp.route('/vm/start', methods=['POST'])
@owner_required
@session_errors
def start_workstation(owner_id):
    return jsonify({'success': True, 'vm': _services()['manager'].start_workstation(owner_id)})


@sessions_bp.route('/vm/stop', methods=['POST'])
@owner_required
@session_errors
def stop_workstation(owner_id):
    return jsonify(_services()['manager'].stop_workstation(owner_id))


@sessions_bp.route('/vm/execute', methods=['POST'])
@owner_required
@session_errors
def execute_in_workstation(owner_id):
    result = _services()['proxy'].execute(owner_id, None, _command_from_body(), KIND_WORKSTATION)
    return jsonify(result)


@sessions_bp.route('/vm/docker-health', methods=['GET'])
def docker_health():
    return jsonify(_services()['manager'].runtime_health())


# ==================== ADMIN ====================

@sessions_bp.route('/sessions', methods=['GET'])
@admin_required
def list_sessions():
    sessions = _services()['manager'].list_sessions()
    return jsonify({'success': True, 'count': len(sessions), 'sessions': sessions})


@sessions_bp.route('/labs', methods=['GET'])
def list_labs():
    catalog = _services()['catalog']
    return jsonify({'success': True, 'labs': [entry.to_dict() for entry in catalog.list()]})
