"""
toolport session management.

Sessions keep one server connection alive across calls and across CLI
processes, with persisted records for reattachment and crash recovery.
"""

from toolport.session.launcher import HostLauncher, Launched, SessionLauncher
from toolport.session.manager import SessionHandle, SessionManager, SessionState
from toolport.session.records import SessionRecord, SessionRecordStore

__all__ = [
    "HostLauncher",
    "Launched",
    "SessionHandle",
    "SessionLauncher",
    "SessionManager",
    "SessionRecord",
    "SessionRecordStore",
    "SessionState",
]
