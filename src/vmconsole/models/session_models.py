"""
Session Data Models

Shared dataclasses for session supervision to avoid circular dependencies.

Philosophy:
- Single responsibility: Session data structures only
- Zero dependencies: No imports from other vmconsole modules
- Plain data: frozen dataclasses and str enums only
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionKind(str, Enum):
    """What a session is running."""

    MACHINE = "machine"
    BRIDGE = "bridge"


class SessionState(str, Enum):
    """Session lifecycle state. FINISHED is terminal."""

    RUNNING = "running"
    FINISHED = "finished"


class EventKind(str, Enum):
    """Notifications a session raises towards the registry observer."""

    TITLE_CHANGED = "title_changed"
    SESSION_FINISHED = "session_finished"
    TEXT_CHANGED = "text_changed"
    BELL = "bell"
    CLIPBOARD_TEXT = "clipboard_text"
    COLORS_CHANGED = "colors_changed"


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed to start one session's child process.

    Attributes:
        executable_path: Absolute path of the binary to execute
        argv: Full argument vector, argv[0] included
        envp: Environment of the child (nothing is inherited implicitly)
        working_directory: Directory the child starts in
    """

    executable_path: str
    argv: tuple[str, ...]
    envp: dict[str, str] = field(default_factory=dict)
    working_directory: str = "/"


@dataclass(frozen=True)
class SessionEvent:
    """One notification posted on a session channel.

    Attributes:
        kind: Notification type
        session: Session that raised it
        text: Payload for clipboard notifications
    """

    kind: EventKind
    session: Any
    text: str | None = None


__all__ = ["EventKind", "LaunchSpec", "SessionEvent", "SessionKind", "SessionState"]
