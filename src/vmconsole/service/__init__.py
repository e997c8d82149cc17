"""Session Supervision Module.

Launches the machine and bridge sessions, keeps them in an append-only
registry, relays their notifications to an optional observer and keeps the
process group alive while anything is worth keeping.

Core Components:
- ServiceContext: Process-wide owner, explicit init/teardown
- SessionRegistry: Ordered session list and teardown decision
- Session: One supervised process
- EventDispatcher: Single-thread notification fan-out
- KeepAliveController: Wake lock pair and status indicator
"""

from .dispatcher import (
    EventDispatcher,
    SessionChannel,
    SessionObserver,
)
from .keep_alive import (
    KeepAliveController,
    StatusIndicator,
)
from .remote_display import (
    RemoteDisplayError,
    enable_remote_display,
)
from .service_context import (
    ServiceContext,
    ServiceError,
)
from .session import (
    FINISH_EXIT_CODE,
    Session,
)
from .session_registry import (
    MACHINE_SESSION_NAME,
    SessionRegistry,
    bridge_session_name,
)
from .wake_lock import (
    LockPair,
    LockTimeoutError,
    NetworkKeepalive,
    WakeLock,
)

__all__ = [
    # Context
    "ServiceContext",
    "ServiceError",
    # Sessions
    "Session",
    "SessionRegistry",
    "FINISH_EXIT_CODE",
    "MACHINE_SESSION_NAME",
    "bridge_session_name",
    # Notifications
    "EventDispatcher",
    "SessionChannel",
    "SessionObserver",
    # Keep-alive
    "KeepAliveController",
    "StatusIndicator",
    "LockPair",
    "WakeLock",
    "NetworkKeepalive",
    "LockTimeoutError",
    # Remote display
    "enable_remote_display",
    "RemoteDisplayError",
]
