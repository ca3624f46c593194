"""
Session Engine

Wires the PTY session, the prompt watcher, the WebSocket hub and the
notifier together and implements the client control protocol:

    start {args, cwd}      input {data}      resize {cols, rows}
    stop {}                getState {}
"""

import logging
import os
import re
from pathlib import Path
from typing import List

from .broadcast import AccessPolicy, ClientConnection, ConnectionHub
from .errors import AlreadyRunning, NotRunning, SpawnFailure
from .option_parser import PatternLibrary
from .pty_session import (MockSource, PtySource, SessionExited, SessionManager,
                          SessionOutput, SessionStarted)
from .watcher import Watcher

log = logging.getLogger(__name__)

# ============================================================================
# Start argument validation
# ============================================================================

# Allowed claude flags and the pattern their value must match (None = boolean flag)
ALLOWED_CLAUDE_ARGS = {
    '--model': re.compile(r'^[a-zA-Z0-9_-]+$'),
    '--max-turns': re.compile(r'^\d{1,3}$'),
    '--output-format': re.compile(r'^(json|text|stream)$'),
    '--input-format': re.compile(r'^(json|text)$'),
    '--verbose': None,
    '--print': None,
    '--yes': None,
    '-y': None,
    '--no-cache': None,
    '--continue': None,
    '-c': None,
    '--resume': None,
    '-r': None,
}

MAX_ARGS = 10

DANGEROUS_PATTERN = re.compile(r'[;&|`$(){}\[\]<>\\\'"!#*?~]')


def validate_args(args) -> List[str]:
    """Filter client-supplied arguments down to whitelisted claude flags."""
    if not isinstance(args, list):
        return []

    validated = []
    i = 0
    while i < len(args) and len(validated) < MAX_ARGS:
        arg = str(args[i]).strip()
        i += 1

        if not arg:
            continue
        if DANGEROUS_PATTERN.search(arg):
            log.warning(f"[claude] Rejected argument with dangerous characters: {arg}")
            continue

        if '=' in arg:
            flag, value = arg.split('=', 1)
            if flag not in ALLOWED_CLAUDE_ARGS:
                log.warning(f"[claude] Rejected disallowed argument: {flag}")
                continue
            pattern = ALLOWED_CLAUDE_ARGS[flag]
            if pattern is None:
                log.warning(f"[claude] Boolean flag {flag} should not have value")
                continue
            if not pattern.match(value):
                log.warning(f"[claude] Invalid value for {flag}: {value}")
                continue
            validated.append(f"{flag}={value}")
            continue

        if not arg.startswith('-'):
            # Stray value without a flag in front of it
            continue
        if arg not in ALLOWED_CLAUDE_ARGS:
            log.warning(f"[claude] Rejected disallowed argument: {arg}")
            continue

        validated.append(arg)
        pattern = ALLOWED_CLAUDE_ARGS[arg]
        if pattern is not None and i < len(args):
            value = str(args[i]).strip()
            if not value.startswith('-') and not DANGEROUS_PATTERN.search(value):
                if pattern.match(value):
                    validated.append(value)
                    i += 1
                else:
                    log.warning(f"[claude] Invalid value for {arg}: {value}")

    if len(args) > MAX_ARGS:
        log.info(f"[claude] Argument count limited from {len(args)} to {MAX_ARGS}")

    return validated


def resolve_cwd(workspace, custom=''):
    """Resolve ``custom`` inside ``workspace``; anything escaping it falls back to the root."""
    root = Path(os.path.normpath(os.path.abspath(workspace)))
    if not custom:
        return str(root)
    resolved = Path(os.path.normpath(os.path.join(str(root), str(custom))))
    if resolved == root or root in resolved.parents:
        return str(resolved)
    log.warning(f"[claude] Ignoring working directory outside workspace: {custom}")
    return str(root)


# ============================================================================
# Engine
# ============================================================================

class RemoteEngine:
    """Everything behind the WebSocket endpoint."""

    def __init__(self, config, is_authorized, notifier=None, source=None, clock=None,
                 background_sends=True):
        self.config = config
        self.notifier = notifier

        if source is None:
            mock = config.get('mock', {})
            source = MockSource(speed=mock.get('speed', 1.0)) if mock.get('enabled') else PtySource()

        term = config['terminal']
        self.session = SessionManager(
            source=source,
            cols=term.get('cols', 120),
            rows=term.get('rows', 40),
            buffer_size=term.get('buffer_bytes', 100 * 1024),
            kill_grace=term.get('kill_grace_seconds', 5),
        )

        detection = config.get('detection', {})
        self.watcher = Watcher(
            library=PatternLibrary(),
            max_lines=detection.get('max_lines', 50),
            max_input_chars=detection.get('max_input_chars', 100000),
        )

        hub_kwargs = {'clock': clock} if clock is not None else {}
        self.hub = ConnectionHub(
            policy=AccessPolicy.from_config(config.get('websocket', {})),
            is_authorized=is_authorized,
            on_message=self.handle_client_message,
            snapshot=self.get_state_message,
            background_sends=background_sends,
            **hub_kwargs,
        )

        self.session.subscribe(self._on_session_event)

    # ------------------------------------------------------------------
    # Session events (called under the session lock)
    # ------------------------------------------------------------------

    def _on_session_event(self, event):
        if isinstance(event, SessionOutput):
            self._on_output(event)
        elif isinstance(event, SessionStarted):
            self.hub.broadcast({'type': 'started', 'args': event.args, 'cwd': event.cwd})
        elif isinstance(event, SessionExited):
            self._on_exit(event)

    def _on_output(self, event):
        held = self.watcher.trigger
        trigger = self.watcher.process(event.text)

        self.hub.broadcast({'type': 'output', 'data': event.text})

        if trigger is not None:
            self.hub.broadcast(trigger.to_message())
            if self.notifier is not None:
                self.notifier.on_trigger(trigger.prompt, trigger.options)
        elif held is not None and self.watcher.trigger is None:
            self.hub.broadcast({'type': 'hideOptions'})

    def _on_exit(self, event):
        had_trigger = self.watcher.awaiting
        self.watcher.reset()
        if had_trigger:
            self.hub.broadcast({'type': 'hideOptions'})
        self.hub.broadcast({'type': 'exit', 'exitCode': event.exit_code, 'signal': event.signal})
        if self.notifier is not None:
            self.notifier.on_exit(event.exit_code, event.signal)

    def broadcast_error(self, message):
        log.error(f"[claude] {message}")
        self.hub.broadcast({'type': 'error', 'message': message})
        if self.notifier is not None:
            self.notifier.on_error(message)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def attach(self, ws, address, credential) -> ClientConnection:
        """Admit a new WebSocket. Check ``conn.open`` to see if it was accepted."""
        conn = self.hub.connection(ws, address)
        # Same lock as output dispatch: the snapshot and the live stream never overlap
        with self.session.lock:
            self.hub.admit(conn, credential)
        return conn

    def detach(self, conn):
        self.hub.disconnect(conn)

    def get_state_message(self):
        with self.session.lock:
            snapshot = self.session.snapshot()
            buffer = snapshot.pop('buffer')
            trigger = self.watcher.trigger
            return {
                'type': 'state',
                'pty': snapshot,
                'buffer': buffer,
                'lastTrigger': trigger.to_message() if trigger else None,
            }

    # ------------------------------------------------------------------
    # Client protocol
    # ------------------------------------------------------------------

    def handle_client_message(self, conn, data):
        msg_type = data.get('type')

        if msg_type == 'start':
            self.start_claude(data.get('args') or [], data.get('cwd') or '')

        elif msg_type == 'input':
            self.send_input(data.get('data'))

        elif msg_type == 'resize':
            cols, rows = data.get('cols'), data.get('rows')
            if isinstance(cols, int) and isinstance(rows, int) and cols > 0 and rows > 0:
                self.session.resize(cols, rows)

        elif msg_type == 'stop':
            self.session.kill()

        elif msg_type == 'getState':
            self.hub.send_to(conn, self.get_state_message())

        else:
            log.info(f"[ws] Unknown message type: {msg_type}")

    def send_input(self, text):
        if not isinstance(text, str):
            log.warning("[ws] Input without string data ignored")
            return
        log.debug(f"[ws] Input received, length: {len(text)}")

        try:
            self.session.write(text)
        except NotRunning:
            log.info("[pty] Not running, ignoring input")
            return

        if '\r' in text:
            with self.session.lock:
                self.watcher.reset()
                self.hub.broadcast({'type': 'hideOptions'})
        if self.notifier is not None:
            self.notifier.reset_debounce()

    def build_env(self):
        env = dict(os.environ)
        env.update({k: str(v) for k, v in (self.config['claude'].get('env') or {}).items()})
        return env

    def start_claude(self, extra_args=None, custom_cwd=''):
        claude = self.config['claude']
        if self.session.is_running():
            self.hub.broadcast({'type': 'error', 'message': 'Claude Code is already running'})
            return False

        args = [a for a in list(claude.get('opts') or []) + validate_args(extra_args or []) if a]
        cwd = resolve_cwd(claude.get('workspace', '/workspace'), custom_cwd)

        try:
            os.makedirs(cwd, exist_ok=True)
        except OSError as e:
            self.broadcast_error(f"Failed to create directory: {e}")
            return False

        with self.session.lock:
            self.watcher.reset()
            try:
                self.session.start(claude.get('command', 'claude'), args, cwd=cwd, env=self.build_env())
            except AlreadyRunning as e:
                self.hub.broadcast({'type': 'error', 'message': str(e)})
                return False
            except SpawnFailure as e:
                self.broadcast_error(str(e))
                return False

        log.info(f"[claude] Started in {cwd} with args: {' '.join(args) or '(none)'}")
        return True

    def shutdown(self):
        self.session.kill()
