"""
PTY Session Management

Owns the single Claude Code subprocess, its pseudo-terminal and a bounded
buffer of recent output. Output reaches subscribers as typed events, always
after it has landed in the buffer.
"""

import codecs
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional, Union

from .errors import AlreadyRunning, NotRunning, SpawnFailure

log = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100 * 1024


# ============================================================================
# Output buffer
# ============================================================================

class OutputBuffer:
    """Byte buffer keeping only the most recent ``capacity`` bytes."""

    def __init__(self, capacity=DEFAULT_BUFFER_SIZE):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data = bytearray()

    def append(self, chunk: bytes):
        self._data += chunk
        overflow = len(self._data) - self.capacity
        if overflow > 0:
            del self._data[:overflow]

    def get_all(self) -> bytes:
        return bytes(self._data)

    def clear(self):
        self._data = bytearray()

    def __len__(self):
        return len(self._data)


# ============================================================================
# Session events
# ============================================================================

@dataclass(frozen=True)
class SessionStarted:
    command: str
    args: List[str]
    cwd: Optional[str]


@dataclass(frozen=True)
class SessionOutput:
    data: bytes
    text: str


@dataclass(frozen=True)
class SessionExited:
    exit_code: Optional[int]
    signal: Optional[int]


SessionEvent = Union[SessionStarted, SessionOutput, SessionExited]


# ============================================================================
# Terminal sources
# ============================================================================

def set_winsize(fd, rows, cols):
    winsize = struct.pack('HHHH', rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty():
    # Runs in the child after setsid(); stdin is already the PTY slave
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class TerminalSource(ABC):
    """Where session output comes from and where input goes.

    ``spawn`` must call ``on_data(bytes)`` for every chunk of output and
    ``on_exit(exit_code, signal)`` exactly once when the process ends.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def spawn(self, command: str, args: List[str], cwd: Optional[str], env: Optional[Dict[str, str]],
              cols: int, rows: int, on_data: Callable[[bytes], None],
              on_exit: Callable[[Optional[int], Optional[int]], None]) -> None:
        """Start the process. Raises SpawnFailure."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        pass

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        pass

    @abstractmethod
    def kill(self, sig: int) -> None:
        pass


class PtySource(TerminalSource):
    """Real subprocess attached to a pseudo-terminal."""

    def __init__(self, read_size=4096):
        self.read_size = read_size
        self._master_fd: Optional[int] = None
        self._proc: Optional[subprocess.Popen] = None

    @property
    def name(self) -> str:
        return "pty"

    def spawn(self, command, args, cwd, env, cols, rows, on_data, on_exit):
        master_fd, slave_fd = pty.openpty()
        set_winsize(slave_fd, rows, cols)

        try:
            proc = subprocess.Popen(
                [command] + list(args),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd or None,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnFailure(f"Failed to start: {e}") from e

        # Only the child keeps the slave side, so reads hit EIO once it exits
        os.close(slave_fd)
        self._master_fd = master_fd
        self._proc = proc

        reader = threading.Thread(
            target=self._read_loop,
            args=(master_fd, proc, on_data, on_exit),
            name=f"pty-reader-{proc.pid}",
            daemon=True,
        )
        reader.start()

    def _read_loop(self, master_fd, proc, on_data, on_exit):
        while True:
            try:
                r, _, _ = select.select([master_fd], [], [], 0.1)
            except (OSError, ValueError):
                break
            if master_fd in r:
                try:
                    data = os.read(master_fd, self.read_size)
                except OSError:
                    break
                if not data:
                    break
                on_data(data)
            elif proc.poll() is not None:
                # Exited, and a grandchild may still hold the slave open
                break

        returncode = proc.wait()
        try:
            os.close(master_fd)
        except OSError:
            pass
        if self._master_fd == master_fd:
            self._master_fd = None

        if returncode < 0:
            on_exit(None, -returncode)
        else:
            on_exit(returncode, None)

    def write(self, data):
        fd = self._master_fd
        if fd is None:
            raise NotRunning()
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]

    def resize(self, cols, rows):
        if self._master_fd is not None:
            set_winsize(self._master_fd, rows, cols)

    def kill(self, sig):
        if self._proc is not None:
            # The child leads its own session, so this reaches its children too
            try:
                os.killpg(self._proc.pid, sig)
            except ProcessLookupError:
                pass


# ============================================================================
# Mock source
# ============================================================================

@dataclass
class MockStep:
    """Canned output emitted after ``delay`` seconds."""
    text: str
    delay: float = 0.0


@dataclass
class MockPrompt:
    """Pause the script until input arrives, then continue with the branch it picks."""
    on_input: Callable[[str], List[MockStep]]


def _mock_answer(text):
    if text.strip().lower().startswith('y'):
        return [
            MockStep('\r\n\r\nProceeding with changes...\r\n', 0.5),
            MockStep('\r\nModifying file 1/3: src/app.js\r\n', 1.5),
            MockStep('Modifying file 2/3: src/utils.js\r\n', 1.0),
            MockStep('Modifying file 3/3: src/config.js\r\n', 1.0),
            MockStep('\r\n\x1b[1;32mAll changes complete!\x1b[0m\r\n', 0.5),
            MockStep('\r\nSelect an option:\r\n1. Review changes\r\n2. Commit changes\r\n'
                     '3. Revert changes\r\n\r\n> ', 1.0),
        ]
    return [
        MockStep('\r\n\r\nOperation cancelled.\r\n', 0.5),
        MockStep('\r\nWould you like to (a)pply, (r)eject, or (e)dit the changes? ', 1.0),
    ]


DEFAULT_MOCK_SCRIPT = [
    MockStep('Welcome to Claude Code (Mock Mode)\r\n', 0.5),
    MockStep('\r\nAnalyzing your request...\r\n', 1.0),
    MockStep('\r\nI found 3 files that need to be modified.\r\n', 2.0),
    MockStep('\r\n\x1b[1;33mDo you want to proceed? (y/n)\x1b[0m ', 0.5),
    MockPrompt(_mock_answer),
]


class MockSource(TerminalSource):
    """Scripted stand-in for Claude Code, for demos and tests.

    Plays ``script`` with its delays scaled by ``speed`` and echoes input
    back like a terminal would. Runs until killed.
    """

    def __init__(self, script=None, speed=1.0):
        self.script = list(DEFAULT_MOCK_SCRIPT if script is None else script)
        self.speed = speed
        self._on_data = None
        self._on_exit = None
        self._stopped = threading.Event()
        self._pending: Optional[MockPrompt] = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "mock"

    def spawn(self, command, args, cwd, env, cols, rows, on_data, on_exit):
        log.info("[mock] Starting mock mode")
        self._on_data = on_data
        self._on_exit = on_exit
        self._stopped = threading.Event()
        self._pending = None
        self._play(self.script)

    def _play(self, steps):
        threading.Thread(target=self._run, args=(steps, self._stopped, self._on_data), daemon=True).start()

    def _run(self, steps, stopped, on_data):
        for step in steps:
            if isinstance(step, MockPrompt):
                with self._lock:
                    self._pending = step
                return
            if stopped.wait(step.delay * self.speed) or stopped.is_set():
                return
            on_data(step.text.encode())

    def write(self, data):
        if self._on_data is None or self._stopped.is_set():
            raise NotRunning()
        text = data.decode('utf-8', errors='replace')
        self._on_data(text.replace('\r', '\r\n').encode())

        with self._lock:
            pending, self._pending = self._pending, None
        if pending is not None:
            self._play(pending.on_input(text))

    def resize(self, cols, rows):
        pass

    def kill(self, sig):
        if self._stopped.is_set():
            return
        self._stopped.set()
        on_exit, self._on_data = self._on_exit, None
        if on_exit is not None:
            on_exit(None, sig)


# ============================================================================
# Session manager
# ============================================================================

class SessionManager:
    """Single-session PTY manager.

    ``lock`` is held while a chunk is appended to the buffer and dispatched
    to subscribers; taking it gives a view of the buffer that is consistent
    with everything subscribers will see afterwards.
    """

    def __init__(self, source: Optional[TerminalSource] = None, cols=120, rows=40,
                 buffer_size=DEFAULT_BUFFER_SIZE, kill_grace=5.0):
        self.source = source or PtySource()
        self.cols = cols
        self.rows = rows
        self.kill_grace = kill_grace
        self.buffer = OutputBuffer(buffer_size)
        self.lock = threading.RLock()

        self.running = False
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None

        self._subscribers: List[Callable[[SessionEvent], None]] = []
        self._decoder = None
        self._generation = 0
        self._kill_timer: Optional[threading.Timer] = None

    def subscribe(self, callback: Callable[[SessionEvent], None]):
        """Register a callback. Events arrive in order, under ``lock``."""
        self._subscribers.append(callback)

    def _dispatch(self, event):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.error(f"[pty] Subscriber failed on {type(event).__name__}: {e}", exc_info=True)

    def start(self, command='claude', args=None, cwd=None, env=None):
        """Spawn the process. Raises AlreadyRunning or SpawnFailure."""
        args = list(args or [])
        with self.lock:
            if self.running:
                raise AlreadyRunning()

            self._generation += 1
            generation = self._generation
            self.buffer.clear()
            self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

            self.source.spawn(
                command, args, cwd, env, self.cols, self.rows,
                on_data=partial(self._on_data, generation),
                on_exit=partial(self._on_exit, generation),
            )

            self.running = True
            self.exit_code = None
            self.signal = None
            log.info(f"[pty] Started {command} via {self.source.name} (gen {generation})")
            self._dispatch(SessionStarted(command, args, cwd))

    def _on_data(self, generation, chunk):
        with self.lock:
            if generation != self._generation:
                return
            self.buffer.append(chunk)
            text = self._decoder.decode(chunk)
            self._dispatch(SessionOutput(chunk, text))

    def _on_exit(self, generation, exit_code, sig):
        with self.lock:
            if generation != self._generation or not self.running:
                return
            self.running = False
            self.exit_code = exit_code
            self.signal = sig
            if self._kill_timer is not None:
                self._kill_timer.cancel()
                self._kill_timer = None
            log.info(f"[pty] Exited with code {exit_code}, signal {sig}")
            self._dispatch(SessionExited(exit_code, sig))

    def write(self, data: Union[str, bytes]):
        """Send input to the process. Raises NotRunning."""
        if not self.running:
            raise NotRunning()
        if isinstance(data, str):
            data = data.encode('utf-8')
        try:
            self.source.write(data)
        except OSError as e:
            raise NotRunning(f"PTY write failed: {e}") from e

    def resize(self, cols, rows):
        self.cols = cols
        self.rows = rows
        if self.running:
            self.source.resize(cols, rows)

    def kill(self, sig=signal.SIGTERM):
        """Ask the process to stop. Returns False when nothing is running.

        The running flag only changes when the exit is observed. A process
        that survives ``kill_grace`` seconds is sent SIGKILL.
        """
        with self.lock:
            if not self.running:
                return False
            generation = self._generation
            self.source.kill(sig)

            if self.running and self.kill_grace and sig != signal.SIGKILL and self._kill_timer is None:
                self._kill_timer = threading.Timer(self.kill_grace, self._escalate, args=(generation,))
                self._kill_timer.daemon = True
                self._kill_timer.start()
            return True

    def _escalate(self, generation):
        with self.lock:
            self._kill_timer = None
            if self.running and generation == self._generation:
                log.warning(f"[pty] Process ignored termination for {self.kill_grace}s, sending SIGKILL")
                self.source.kill(signal.SIGKILL)

    def is_running(self) -> bool:
        return self.running

    def get_buffer(self) -> str:
        return self.buffer.get_all().decode('utf-8', errors='replace')

    def get_state(self) -> Dict:
        return {
            'running': self.running,
            'exitCode': self.exit_code,
            'signal': self.signal,
            'bufferLength': len(self.buffer),
            'cols': self.cols,
            'rows': self.rows,
        }

    def snapshot(self) -> Dict:
        """State plus the full buffer text, taken atomically under ``lock``."""
        with self.lock:
            state = self.get_state()
            state['buffer'] = self.get_buffer()
            return state
