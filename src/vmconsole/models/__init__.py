"""
vmconsole Data Models

Shared dataclasses and enums to avoid circular dependencies.

Philosophy:
- Zero dependencies on other vmconsole modules
- Self-contained data definitions
- Shared types used across multiple modules
"""

from .session_models import EventKind, LaunchSpec, SessionEvent, SessionKind, SessionState

__all__ = ["EventKind", "LaunchSpec", "SessionEvent", "SessionKind", "SessionState"]
