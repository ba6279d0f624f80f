"""Audit trail of firewall changes.

Every bring-up, shutdown and ban/unban is appended to a JSON-lines file,
one object per line, so operators can answer "who banned this address
and when" after the fact.
"""

import fcntl
import json
import os
import pwd
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator, Optional

from bouncer.core.config import DEFAULT_AUDIT_LOG_PATH
from bouncer.core.output import console

if TYPE_CHECKING:
    from bouncer.services.decision import Decision


DEFAULT_MAX_SIZE_MB = 100
DEFAULT_BACKUP_COUNT = 10


class AuditEventType(Enum):
    """Types of auditable events."""
    SESSION_START = "session.start"

    BACKEND_INIT = "backend.init"
    BACKEND_SHUTDOWN = "backend.shutdown"

    DECISION_ADD = "decision.add"
    DECISION_DELETE = "decision.delete"
    DECISION_SIMULATED = "decision.simulated"


class AuditResult(Enum):
    """Outcome of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"


def _current_username() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


def _result(dry_run: bool, error: Optional[str]) -> AuditResult:
    if error is not None:
        return AuditResult.FAILURE
    return AuditResult.DRY_RUN if dry_run else AuditResult.SUCCESS


@dataclass
class AuditEvent:
    """One line of the audit log."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Who ran it
    actor_uid: int = field(default_factory=os.getuid)
    actor_username: str = field(default_factory=_current_username)
    actor_sudo_user: Optional[str] = field(default_factory=lambda: os.environ.get("SUDO_USER"))

    # What it touched: an address for decisions, set names for lifecycle events
    target: Optional[str] = None
    family: Optional[str] = None
    decision_type: Optional[str] = None

    parameters: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": {
                "uid": self.actor_uid,
                "username": self.actor_username,
                "sudo_user": self.actor_sudo_user,
            },
            "target": self.target,
            "family": self.family,
            "decision_type": self.decision_type,
            "parameters": self.parameters,
            "error": self.error,
            "session_id": self.session_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Append-only JSON-lines audit log.

    Writes are serialized with an exclusive flock so concurrent bouncer
    processes never interleave lines. Files over ``max_size_mb`` are
    rotated to ``audit.1`` .. ``audit.<backup_count>``.

    Audit problems are reported at debug level and never fail the
    firewall operation being recorded.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_AUDIT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.session_id = str(uuid.uuid4())

    def log(self, event: AuditEvent) -> None:
        """Append an event, tagged with this logger's session id."""
        if not self.enabled:
            return

        event.session_id = self.session_id
        line = event.to_json() + "\n"

        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            with self._locked_append() as f:
                f.write(line)
        except OSError as e:
            console.debug(f"Failed to write audit log {self.log_path}: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _locked_append(self) -> Generator:
        fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        # closing the file releases the lock
        with os.fdopen(fd, "a") as f:
            yield f
            f.flush()
            os.fsync(fd)

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate(self) -> None:
        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            if src.exists():
                src.rename(self.log_path.with_suffix(f".{i + 1}"))

        self.log_path.rename(self.log_path.with_suffix(".1"))
        self.log_path.touch(mode=0o640)

    # Convenience methods
    def log_session_start(self, command: str, args: list[str]) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.SESSION_START,
            result=AuditResult.SUCCESS,
            parameters={"command": command, "args": args},
        ))

    def log_backend(
        self,
        event_type: AuditEventType,
        set_names: list[str],
        *,
        dry_run: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Record a backend bring-up or shutdown."""
        self.log(AuditEvent(
            event_type=event_type,
            result=_result(dry_run, error),
            target=",".join(set_names),
            error=error,
        ))

    def log_decision(
        self,
        decision: "Decision",
        *,
        delete: bool,
        family: Optional[str] = None,
        dry_run: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Record one ban or unban.

        Simulated bans get their own event type so they can be told
        apart from bans that reached the firewall.
        """
        if delete:
            event_type = AuditEventType.DECISION_DELETE
        elif decision.is_simulation:
            event_type = AuditEventType.DECISION_SIMULATED
        else:
            event_type = AuditEventType.DECISION_ADD

        parameters = {
            key: value
            for key, value in (
                ("duration", decision.duration),
                ("origin", decision.origin),
                ("scenario", decision.scenario),
            )
            if value is not None
        }
        self.log(AuditEvent(
            event_type=event_type,
            result=_result(dry_run, error),
            target=decision.value,
            family=family,
            decision_type=decision.type,
            parameters=parameters,
            error=error,
        ))


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(
    log_path: Optional[Path] = None,
    enabled: bool = True,
) -> AuditLogger:
    """Replace the process-wide audit logger and return it."""
    global _audit_logger
    _audit_logger = AuditLogger(log_path=log_path, enabled=enabled)
    return _audit_logger
