import copy
import json
import threading

import pytest
from simple_websocket import ConnectionClosed

from claude_remote.config import DEFAULT_CONFIG
from claude_remote.pty_session import TerminalSource


class FakeSocket:
    """Stands in for a simple_websocket.Server."""

    def __init__(self, fail_send=False):
        self.sent = []
        self.closed = None
        self.fail_send = fail_send

    def send(self, data):
        if self.fail_send or self.closed is not None:
            raise ConnectionClosed()
        self.sent.append(data)

    def close(self, reason=None, message=None):
        self.closed = (reason, message)

    def messages(self, msg_type=None):
        decoded = [json.loads(s) for s in self.sent]
        if msg_type is None:
            return decoded
        return [m for m in decoded if m.get('type') == msg_type]


class StallingSocket(FakeSocket):
    """Accepts ``allow`` messages, then blocks every send until released."""

    def __init__(self, allow=0):
        super().__init__()
        self.allow = allow
        self.stalled = threading.Event()
        self.release = threading.Event()

    def send(self, data):
        if len(self.sent) >= self.allow:
            self.stalled.set()
            self.release.wait()
        super().send(data)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSource(TerminalSource):
    """Terminal source driven by the test."""

    def __init__(self, fail=None):
        self.fail = fail
        self.written = []
        self.killed = []
        self.sizes = []
        self.on_data = None
        self.on_exit = None
        self.spawned = []

    @property
    def name(self):
        return "fake"

    def spawn(self, command, args, cwd, env, cols, rows, on_data, on_exit):
        if self.fail is not None:
            raise self.fail
        self.spawned.append((command, args, cwd, cols, rows))
        self.on_data = on_data
        self.on_exit = on_exit

    def write(self, data):
        self.written.append(data)

    def resize(self, cols, rows):
        self.sizes.append((cols, rows))

    def kill(self, sig):
        self.killed.append(sig)

    def emit(self, text):
        self.on_data(text.encode() if isinstance(text, str) else text)

    def exit(self, code=0, sig=None):
        self.on_exit(code, sig)


@pytest.fixture
def config(tmp_path):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg['claude']['workspace'] = str(tmp_path / 'workspace')
    cfg['claude']['opts'] = []
    cfg['auth']['method'] = 'token'
    cfg['auth']['token'] = 'secret-token'
    cfg['terminal']['kill_grace_seconds'] = 0
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_source():
    return FakeSource()
