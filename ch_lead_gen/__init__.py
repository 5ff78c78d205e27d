"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import os
from flask import Flask, request, session, jsonify


def create_app():
    """Create and configure the Flask application."""
    from ch_lead_gen.logging_config import configure_logging
    from ch_lead_gen.extensions import redis_client

    app = Flask(__name__)

    configure_logging(app, redis_client)

    # Secret key for sessions
    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')

    # ── Simple password auth ────────────────────────────────────────────
    from ch_lead_gen.config import DASHBOARD_PASSWORD

    OPEN_PATHS = {'/health', '/login'}

    @app.before_request
    def require_login():
        if not DASHBOARD_PASSWORD:
            return  # No password set: open access (local dev)
        if request.path in OPEN_PATHS:
            return
        if session.get('authenticated'):
            return
        if request.headers.get('X-Dashboard-Password') == DASHBOARD_PASSWORD:
            return
        return jsonify({'error': 'Authentication required'}), 401

    @app.route('/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or request.form
        if DASHBOARD_PASSWORD and data.get('password') == DASHBOARD_PASSWORD:
            session['authenticated'] = True
            return jsonify({'authenticated': True})
        return jsonify({'authenticated': False, 'error': 'Wrong password'}), 401

    @app.route('/logout', methods=['POST'])
    def logout():
        session.clear()
        return jsonify({'authenticated': False})

    # Register blueprints
    from ch_lead_gen.routes.dashboard import bp as dashboard_bp
    from ch_lead_gen.routes.rules import bp as rules_bp

    app.register_blueprint(dashboard_bp)
    app.register_blueprint(rules_bp)

    return app
