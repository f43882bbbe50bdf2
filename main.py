"""
EduSec Labs - Session Service
Flask application exposing on-demand lab and workstation containers
"""

import logging

from flask import Flask, jsonify
from flask_cors import CORS

from command_proxy import CommandProxy
from container_driver import create_driver
from inactivity_reaper import InactivityReaper
from lab_catalog import LabCatalog
from session_config import Config, configure_logging
from session_manager import SessionLifecycleManager
from session_registry import SessionRegistry
from session_routes import sessions_bp

logger = logging.getLogger('EduSecLabs')


def create_app(overrides=None, driver=None):
    """
    Application factory pattern

    Args:
        overrides: optional dict of Config keys to override (tests)
        driver: optional ContainerDriver instance (tests inject a fake)
    """
    config = Config.from_env(**(overrides or {}))
    configure_logging(config.LOG_LEVEL)

    app = Flask(__name__)
    app.config['LAB_SESSIONS'] = config

    CORS(app, resources={r"/api/*": {"origins": config.cors_origins}}, supports_credentials=True)

    # Session services (one registry per process)
    driver = driver or create_driver(config)
    catalog = LabCatalog.from_config(config)
    registry = SessionRegistry()
    manager = SessionLifecycleManager.from_config(config, driver, catalog, registry)
    proxy = CommandProxy(manager)
    reaper = InactivityReaper.from_config(config, manager)

    app.extensions['lab_sessions'] = {
        'config': config,
        'driver': driver,
        'catalog': catalog,
        'registry': registry,
        'manager': manager,
        'proxy': proxy,
        'reaper': reaper,
    }

    app.register_blueprint(sessions_bp)

    if config.REAPER_ENABLED:
        reaper.start()

    health = manager.runtime_health()
    if health['healthy']:
        logger.info("✓ Docker Labs: ENABLED - Containers available")
    else:
        logger.warning("⚠ Docker Labs: runtime unavailable - starts will fail until Docker is running")

    # Error handlers
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'Resource not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'success': False, 'error': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    @app.route('/api/health')
    def health_check():
        return jsonify({'status': 'ok', 'sessions': len(registry)})

    # Root endpoint
    @app.route('/')
    def index():
        return jsonify({
            'name': 'EduSec Labs Session API',
            'version': '1.0.0',
            'endpoints': {
                'health': '/api/health',
                'labs': '/api/labs',
                'start_lab': '/api/labs/<id>/start',
                'stop_lab': '/api/labs/<id>/stop',
                'lab_status': '/api/labs/<id>/status',
                'execute': '/api/labs/<id>/execute',
                'workstation': '/api/vm/start',
                'docker_health': '/api/vm/docker-health'
            }
        })

    return app


if __name__ == '__main__':
    import os

    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    print("=" * 50)
    print("🚀 EduSec Labs Session Service")
    print(f"📍 Running on http://localhost:{port}")
    print("=" * 50)
    app.run(host='0.0.0.0', port=port, debug=debug)
