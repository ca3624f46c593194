"""Exception types shared by the session engine and the connection layer."""


class RemoteControlError(Exception):
    """Base class for all remote control errors."""


# ============================================================================
# Session errors
# ============================================================================

class AlreadyRunning(RemoteControlError):
    def __init__(self, message="Claude Code is already running"):
        super().__init__(message)


class NotRunning(RemoteControlError):
    def __init__(self, message="PTY not running"):
        super().__init__(message)


class SpawnFailure(RemoteControlError):
    """The subprocess could not be created."""


# ============================================================================
# Connection errors
# ============================================================================

class ConnectionRejected(RemoteControlError):
    """Fatal to a single WebSocket connection, never to the session."""

    close_code = 1008
    reason = "Policy violation"

    def __init__(self, message=None):
        super().__init__(message or self.reason)


class Unauthorized(ConnectionRejected):
    close_code = 4001
    reason = "Unauthorized"


class Banned(ConnectionRejected):
    close_code = 4403
    reason = "Temporarily banned"


class RateLimited(ConnectionRejected):
    """Too many new connections from one address."""
    close_code = 4029
    reason = "Rate limited"


class RateLimitExceeded(ConnectionRejected):
    """Too many message-rate violations on one connection."""
    close_code = 4429
    reason = "Rate limit exceeded - temporarily banned"


class OversizedMessage(ConnectionRejected):
    close_code = 1009
    reason = "Message too large"


class SlowConsumer(ConnectionRejected):
    """The client stopped reading and its outbound queue filled up."""
    close_code = 1008
    reason = "Send queue overflow"
