#!/usr/bin/env python3
"""
Remote Control Server for Claude Code
Runs Claude Code under a PTY, streams it to phones over a WebSocket and
sends notifications when it is waiting for input.
"""

import logging
import signal
import sys
import threading
import time
from functools import wraps

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from .auth import SESSION_COOKIE, Authenticator
from .config import load_config, setup_logging
from .engine import RemoteEngine
from .notifier import Notifier

log = logging.getLogger(__name__)


def client_address(config):
    """Real client IP, honouring X-Forwarded-For behind a trusted proxy."""
    if config['server'].get('trust_proxy'):
        forwarded = request.headers.get('X-Forwarded-For')
        if forwarded:
            return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def request_credential():
    return request.cookies.get(SESSION_COOKIE) or request.args.get('token') \
        or request.headers.get('X-Auth-Token')


def maintenance_loop(engine, auth, interval, stop_event):
    """Background thread expiring bans, connection windows and login sessions."""
    while not stop_event.wait(interval):
        try:
            engine.hub.sweep()
            removed = auth.cleanup()
            if removed:
                log.debug(f"[auth] Expired {removed} session(s)")
        except Exception as e:
            log.error(f"Maintenance error: {e}")


def create_app(config=None, engine=None, notifier=None, auth=None):
    config = config or load_config()
    auth = auth or Authenticator(config)
    notifier = notifier or Notifier(config)
    engine = engine or RemoteEngine(config, is_authorized=auth.is_authorized, notifier=notifier)

    app = Flask(__name__)
    app.config['SOCK_SERVER_OPTIONS'] = {
        'max_message_size': config['websocket'].get('max_message_bytes', 65536),
        'ping_interval': 25,
    }
    app.extensions['claude_remote'] = {'engine': engine, 'auth': auth, 'notifier': notifier, 'config': config}
    sock = Sock(app)

    secure_cookies = config['server'].get('secure_cookies', False)

    # ========================================================================
    # Authentication
    # ========================================================================

    def requires_auth(f):
        """Decorator for routes that require authentication."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if not auth.is_authorized(request_credential()):
                return jsonify({'error': 'Unauthorized'}), 401
            return f(*args, **kwargs)
        return decorated

    @app.route('/api/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or {}
        username = data.get('username', '')
        if not auth.check_credentials(username, data.get('password', '')):
            log.info(f"[auth] Login failed for user: {username}")
            return jsonify({'error': 'Invalid credentials'}), 401

        response = jsonify({'success': True})
        response.set_cookie(
            SESSION_COOKIE,
            auth.create_session(),
            max_age=int(auth.session_duration),
            httponly=True,
            secure=secure_cookies,
            samesite='Lax',
        )
        log.info(f"[auth] Login successful for user: {username}")
        return response

    @app.route('/api/logout', methods=['POST'])
    def logout():
        session_id = request.cookies.get(SESSION_COOKIE)
        if session_id and auth.invalidate(session_id):
            log.info("[auth] Session invalidated")
        response = jsonify({'success': True})
        response.set_cookie(SESSION_COOKIE, '', max_age=0, httponly=True,
                            secure=secure_cookies, samesite='Lax')
        return response

    @app.route('/api/auth-check')
    def auth_check():
        if auth.is_authorized(request_credential()):
            return jsonify({'authenticated': True})
        return jsonify({'authenticated': False}), 401

    # ========================================================================
    # Status
    # ========================================================================

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'timestamp': int(time.time() * 1000)})

    @app.route('/api/health')
    @requires_auth
    def api_health():
        return jsonify({
            'status': 'ok',
            'timestamp': int(time.time() * 1000),
            'pty': engine.session.get_state(),
            'notifications': notifier.get_stats(),
            'clients': len(engine.hub),
        })

    @app.route('/api/state')
    @requires_auth
    def api_state():
        state = engine.get_state_message()
        return jsonify({
            'pty': state['pty'],
            'buffer': state['buffer'],
            'lastTrigger': state['lastTrigger'],
            'config': {
                'mockMode': bool(config['mock'].get('enabled')),
                'domain': config['server'].get('domain'),
            },
        })

    @app.route('/api/test-notify', methods=['POST'])
    @requires_auth
    def test_notify():
        return jsonify(notifier.test())

    # ========================================================================
    # Terminal WebSocket
    # ========================================================================

    @sock.route('/ws')
    def terminal_websocket(ws):
        """WebSocket endpoint streaming the Claude Code session."""
        address = client_address(config)
        log.debug(f"[ws] Upgrade request from {address}")

        conn = engine.attach(ws, address, request_credential())
        if not conn.open:
            # The writer sends the close code; flask-sock closes the socket on return
            conn.join(5)
            return

        try:
            while conn.open:
                message = ws.receive()
                if message is None:
                    continue
                engine.hub.handle_message(conn, message)
        except ConnectionClosed:
            pass
        finally:
            engine.detach(conn)
            conn.join(5)

    return app


# ============================================================================
# Main
# ============================================================================

def main():
    config = load_config()
    setup_logging(config)

    app = create_app(config)
    parts = app.extensions['claude_remote']
    engine, auth = parts['engine'], parts['auth']

    port = config['server']['port']
    ntfy = config['notifications']['ntfy']
    notify_status = 'enabled' if ntfy.get('enabled') and ntfy.get('topic') else 'disabled (no topic)'

    print(f"""
╔═══════════════════════════════════════════════════════════╗
║         Claude Code Mobile Controller                      ║
╠═══════════════════════════════════════════════════════════╣
║  Server:        http://{config['server']['host']}:{port}/
║  Domain:        {config['server'].get('domain')}
║  Auth Method:   {auth.method}
║  Mock mode:     {bool(config['mock'].get('enabled'))}
║  Notifications: {notify_status}
╚═══════════════════════════════════════════════════════════╝
    """)

    stop_event = threading.Event()
    maintenance_thread = threading.Thread(
        target=maintenance_loop,
        args=(engine, auth, config['websocket'].get('sweep_interval_seconds', 60), stop_event),
        daemon=True,
    )
    maintenance_thread.start()

    def shutdown(signum, frame):
        log.info(f"[server] Signal {signum} received, shutting down...")
        stop_event.set()
        engine.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    app.run(
        host=config['server']['host'],
        port=port,
        debug=False,
        threaded=True
    )


if __name__ == '__main__':
    main()
