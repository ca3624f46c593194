"""
WebSocket Broadcast / Access Layer

Keeps the set of connected viewers, relays session output to all of them
and protects the session from abusive or runaway clients. All abuse state
(bans, per-address connection windows) belongs to the hub instance.
"""

import json
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from simple_websocket import ConnectionClosed

from .errors import (Banned, ConnectionRejected, OversizedMessage, RateLimited,
                     RateLimitExceeded, SlowConsumer, Unauthorized)

log = logging.getLogger(__name__)


@dataclass
class AccessPolicy:
    max_message_bytes: int = 65536
    connections_per_window: int = 10
    connection_window: float = 60.0
    message_rate_limit: int = 30
    message_window: float = 1.0
    max_violations: int = 5
    ban_duration: float = 300.0
    send_queue_size: int = 256

    @classmethod
    def from_config(cls, ws_cfg):
        return cls(
            max_message_bytes=ws_cfg.get('max_message_bytes', 65536),
            connections_per_window=ws_cfg.get('connections_per_window', 10),
            connection_window=ws_cfg.get('connection_window_seconds', 60),
            message_rate_limit=ws_cfg.get('message_rate_limit', 30),
            message_window=ws_cfg.get('message_window_seconds', 1),
            max_violations=ws_cfg.get('max_violations', 5),
            ban_duration=ws_cfg.get('ban_seconds', 300),
            send_queue_size=ws_cfg.get('send_queue_size', 256),
        )


_STOP = object()


class ClientConnection:
    """One attached viewer wrapping a WebSocket.

    With ``background`` (the default) every send goes through a bounded
    queue drained by a writer thread owned by the connection, so a client on
    a stalled link never blocks the caller. A client whose queue fills up is
    closed with SlowConsumer.
    """

    def __init__(self, ws, address, queue_size=256, background=True):
        self.ws = ws
        self.address = address
        self.open = True
        self.violations = 0
        self.message_times = deque()
        self.background = background

        self._close_reason = None
        self._outbox = queue.Queue(maxsize=queue_size)
        self._writer = None
        if background:
            self._writer = threading.Thread(target=self._write_loop, name=f"ws-writer-{address}", daemon=True)
            self._writer.start()

    def send(self, payload) -> bool:
        """Queue ``payload``. Returns False if the client is gone or too slow."""
        if not self.open:
            return False
        if not self.background:
            return self._deliver(payload)
        try:
            self._outbox.put_nowait(payload)
        except queue.Full:
            log.warning(f"[ws] Send queue full for {self.address}, dropping client")
            self.close(SlowConsumer.close_code, SlowConsumer.reason)
            return False
        return True

    def _deliver(self, payload) -> bool:
        try:
            self.ws.send(payload)
            return True
        except (ConnectionClosed, OSError) as e:
            log.debug(f"[ws] Send to {self.address} failed: {e}")
            self.open = False
            return False

    def _write_loop(self):
        while True:
            item = self._outbox.get()
            if item is _STOP or not self._deliver(item):
                break
        if self._close_reason is not None:
            self._close_socket(*self._close_reason)

    def _close_socket(self, code, reason):
        try:
            self.ws.close(reason=code, message=reason)
        except (ConnectionClosed, OSError):
            pass

    def stop(self):
        """Stop the writer once queued messages are out. Never blocks."""
        self.open = False
        if not self.background:
            return
        while True:
            try:
                self._outbox.put_nowait(_STOP)
                return
            except queue.Full:
                # Full: drop the oldest queued message to make room
                try:
                    self._outbox.get_nowait()
                except queue.Empty:
                    pass

    def close(self, code, reason):
        if self._close_reason is not None:
            return
        self._close_reason = (code, reason)
        if self.background:
            self.stop()
        else:
            self.open = False
            self._close_socket(code, reason)

    def join(self, timeout=None):
        """Wait for the writer thread to finish."""
        if self._writer is not None:
            self._writer.join(timeout)

    def __repr__(self):
        return f"<ClientConnection {self.address} open={self.open}>"


class ConnectionHub:
    """Live connection set plus admission and per-message policy.

    ``on_message(conn, data)`` receives every well-formed inbound message;
    ``snapshot()`` builds the state message sent to a newly admitted client.
    """

    def __init__(self, policy: Optional[AccessPolicy] = None,
                 is_authorized: Callable[[Optional[str]], bool] = lambda credential: False,
                 on_message: Optional[Callable[[ClientConnection, dict], None]] = None,
                 snapshot: Optional[Callable[[], dict]] = None,
                 clock=time.monotonic, background_sends=True):
        self.policy = policy or AccessPolicy()
        self.is_authorized = is_authorized
        self.on_message = on_message
        self.snapshot = snapshot
        self.clock = clock
        self.background_sends = background_sends

        self.clients: Set[ClientConnection] = set()
        self.banned: Dict[str, float] = {}  # address -> ban expiry
        self.connection_log: Dict[str, List[float]] = {}  # address -> admission times
        self._lock = threading.RLock()

    def __len__(self):
        return len(self.clients)

    def connection(self, ws, address) -> ClientConnection:
        """Wrap a new WebSocket according to the policy. Admit it separately."""
        return ClientConnection(ws, address, queue_size=self.policy.send_queue_size,
                                background=self.background_sends)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def is_banned(self, address) -> bool:
        expiry = self.banned.get(address)
        return expiry is not None and self.clock() < expiry

    def _check_admission(self, address, credential, now):
        if self.is_banned(address):
            raise Banned()

        if not self.is_authorized(credential):
            raise Unauthorized()

        recent = [t for t in self.connection_log.get(address, []) if now - t < self.policy.connection_window]
        self.connection_log[address] = recent
        if len(recent) >= self.policy.connections_per_window:
            raise RateLimited()

    def admit(self, conn: ClientConnection, credential) -> bool:
        """Admit ``conn`` or close it with the matching reason code."""
        with self._lock:
            now = self.clock()
            try:
                self._check_admission(conn.address, credential, now)
            except ConnectionRejected as e:
                log.info(f"[ws] Rejected {conn.address}: {e}")
                conn.close(e.close_code, str(e))
                return False

            self.connection_log[conn.address].append(now)
            self.clients.add(conn)
            log.info(f"[ws] Client connected from {conn.address} ({len(self.clients)} total)")

            if self.snapshot is not None:
                conn.send(json.dumps(self.snapshot()))
        return True

    def disconnect(self, conn: ClientConnection):
        with self._lock:
            if conn in self.clients:
                self.clients.discard(conn)
                log.info(f"[ws] Client disconnected ({len(self.clients)} remaining)")
        conn.stop()

    def _reject(self, conn, error: ConnectionRejected):
        log.info(f"[ws] Closing {conn.address}: {error}")
        conn.close(error.close_code, str(error))
        self.disconnect(conn)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def handle_message(self, conn: ClientConnection, message):
        """Apply size and rate policy, then hand the parsed message on."""
        if isinstance(message, (bytes, bytearray)):
            size = len(message)
        else:
            size = len(message.encode('utf-8'))
        if size > self.policy.max_message_bytes:
            log.warning(f"[ws] Rejected oversized message: {size}")
            self._reject(conn, OversizedMessage())
            return

        with self._lock:
            now = self.clock()
            times = conn.message_times
            while times and now - times[0] >= self.policy.message_window:
                times.popleft()

            if len(times) >= self.policy.message_rate_limit:
                conn.violations += 1
                log.warning(f"[ws] Rate limited - violation {conn.violations}/{self.policy.max_violations}")
                if conn.violations >= self.policy.max_violations:
                    self.banned[conn.address] = now + self.policy.ban_duration
                    log.warning(f"[ws] IP banned for abuse: {conn.address}")
                    self._reject(conn, RateLimitExceeded())
                return
            times.append(now)

        try:
            data = json.loads(message)
        except ValueError as e:
            log.error(f"[ws] Invalid message: {e}")
            return
        if not isinstance(data, dict):
            log.error(f"[ws] Invalid message: expected an object, got {type(data).__name__}")
            return

        if self.on_message is not None:
            try:
                self.on_message(conn, data)
            except Exception as e:
                log.error(f"[ws] Error handling {data.get('type')!r}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def broadcast(self, message: dict) -> int:
        """Queue for every open client. Returns how many accepted the message."""
        payload = json.dumps(message)
        sent = 0
        with self._lock:
            for conn in list(self.clients):
                if conn.open and conn.send(payload):
                    sent += 1
        return sent

    def send_to(self, conn: ClientConnection, message: dict) -> bool:
        with self._lock:
            return conn.send(json.dumps(message))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self):
        """Drop expired bans and stale connection timestamps."""
        with self._lock:
            now = self.clock()
            for address, expiry in list(self.banned.items()):
                if now >= expiry:
                    del self.banned[address]
                    log.info(f"[ws] Ban expired for IP: {address}")

            for address, times in list(self.connection_log.items()):
                recent = [t for t in times if now - t < self.policy.connection_window]
                if recent:
                    self.connection_log[address] = recent
                else:
                    del self.connection_log[address]
