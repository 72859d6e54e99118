"""
Audit Log - append-only diagnostic trail.

Entries are written to the store and mirrored to the `agentrun.audit`
logger. Nothing in the engine reads them back to make a decision, and a
failure to write one never changes what an execution does: it is reported
through logging and dropped.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from .schemas import AuditEntry, AuditLevel
from .store import ExecutionStore

logger = logging.getLogger("agentrun.audit")

_LOG_LEVELS = {
    AuditLevel.DEBUG: logging.DEBUG,
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}


class AuditLog:
    """
    Writes AuditEntry records.

    Usage:
        audit = AuditLog(store)
        audit.info("execution_started", execution_id="abc123", goal="Fix tests")
    """

    def __init__(self, store: ExecutionStore):
        self.store = store

    def log(
        self,
        level: AuditLevel,
        event: str,
        execution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        **payload: Any,
    ) -> Optional[AuditEntry]:
        """
        Append one entry.

        Returns:
            The stored entry, or None if it could not be written
        """
        logger.log(
            _LOG_LEVELS[level],
            f"[{execution_id or '-'}] {event} {payload if payload else ''}".rstrip(),
        )
        try:
            entry = AuditEntry(
                execution_id=execution_id,
                user_id=user_id,
                level=level,
                event=event,
                payload=payload,
            )
            return self.store.append_audit(entry)
        except (OSError, ValidationError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit entry '{event}': {e}")
            return None

    def debug(self, event: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.log(AuditLevel.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.log(AuditLevel.INFO, event, **kwargs)

    def warn(self, event: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.log(AuditLevel.WARN, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.log(AuditLevel.ERROR, event, **kwargs)

    def entries(self, execution_id: Optional[str] = None) -> list[AuditEntry]:
        """Read back the trail (for humans and tests)."""
        return self.store.list_audit(execution_id)
