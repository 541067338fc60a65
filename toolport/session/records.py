"""
Persisted session identity.

One YAML record per active session lets a later CLI process find the
session host started by an earlier one. A per-server ``flock`` lock keeps
two processes from starting the same server at once.
"""

import fcntl
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class SessionRecord:
    """
    What a separate process needs to resume ``call``/``stop``.

    ``attach`` is launcher-specific reattachment data (for the session
    host: its ``socket_path``).
    """

    session_id: str
    server: str
    created_at: datetime
    last_activity: datetime
    pid: Optional[int] = None
    attach: Optional[Dict[str, Any]] = None
    call_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "server": self.server,
            "pid": self.pid,
            "attach": self.attach or {},
            "call_count": self.call_count,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            server=data["server"],
            pid=data.get("pid"),
            attach=data.get("attach") or {},
            call_count=data.get("call_count", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
        )

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.last_activity).total_seconds()


class SessionRecordStore:
    """
    Directory of session records, one ``<server>.yaml`` each.

    Writes go through a temp file and ``os.replace`` so readers never see
    a half-written record.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, server: str) -> Path:
        return self.sessions_dir / f"{server}.yaml"

    def socket_path(self, server: str) -> Path:
        return self.sessions_dir / f"{server}.sock"

    def log_path(self, server: str) -> Path:
        return self.sessions_dir / f"{server}.log"

    @contextmanager
    def lock(self, server: str) -> Iterator[None]:
        """Exclusive cross-process lock for one server's session."""
        lock_file = self.sessions_dir / f".{server}.lock"
        fd = os.open(str(lock_file), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def save(self, record: SessionRecord) -> Path:
        path = self.path_for(record.server)
        tmp = path.with_suffix(".yaml.tmp")
        with open(tmp, "w") as f:
            yaml.dump(record.to_dict(), f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, path)
        return path

    def load(self, server: str) -> Optional[SessionRecord]:
        path = self.path_for(server)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
            return SessionRecord.from_dict(data)
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError):
            # Unreadable record: nothing can reattach through it
            return None

    def delete(self, server: str) -> bool:
        path = self.path_for(server)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_servers(self) -> List[str]:
        return sorted(p.stem for p in self.sessions_dir.glob("*.yaml"))

    def list_records(self) -> List[SessionRecord]:
        records = []
        for server in self.list_servers():
            record = self.load(server)
            if record is not None:
                records.append(record)
        return records
