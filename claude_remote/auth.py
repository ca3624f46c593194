"""
Authentication

Login sessions handed out as cookies, plus the static token and "none"
methods. The WebSocket layer only ever asks ``is_authorized(credential)``.
"""

import hmac
import logging
import secrets
import threading
import time

log = logging.getLogger(__name__)

SESSION_COOKIE = 'session'


class Authenticator:
    def __init__(self, config, clock=time.time):
        self.config = config
        self.clock = clock
        self._sessions = {}  # session id -> created timestamp
        self._lock = threading.Lock()

    @property
    def method(self):
        return self.config['auth'].get('method', 'password')

    @property
    def session_duration(self):
        return self.config['auth'].get('session_hours', 24) * 3600

    def check_credentials(self, username, password):
        """Check if username/password is valid for login."""
        expected = self.config['auth'].get('password') or ''
        if not expected:
            log.error("[auth] No password configured")
            return False
        user_ok = hmac.compare_digest(str(username or ''), str(self.config['auth'].get('username', '')))
        pass_ok = hmac.compare_digest(str(password or ''), str(expected))
        return user_ok and pass_ok

    def check_token(self, token):
        expected = self.config['auth'].get('token') or ''
        return bool(expected and token and hmac.compare_digest(str(token), str(expected)))

    def create_session(self):
        session_id = secrets.token_hex(32)
        with self._lock:
            self._sessions[session_id] = self.clock()
        return session_id

    def validate_session(self, session_id):
        if not session_id:
            return False
        with self._lock:
            created = self._sessions.get(session_id)
            if created is None:
                return False
            if self.clock() - created > self.session_duration:
                del self._sessions[session_id]
                return False
        return True

    def invalidate(self, session_id):
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup(self):
        """Drop expired sessions. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [sid for sid, created in self._sessions.items()
                       if now - created > self.session_duration]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def is_authorized(self, credential):
        """Accepts a login session id, or the static token for the token method."""
        if self.method == 'none':
            return True
        if self.validate_session(credential):
            return True
        return self.method == 'token' and self.check_token(credential)
