from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.audit import AuditEntry, AuditEventType


logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit logger that writes to a file and the database.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `AuditEntry` model and the
    configured `BaseDBManager`. Passing `file_path=None` disables the file
    mirror.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.TRANSACTION,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.SYSTEM,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = AuditEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_audit_entry(entry)
        if self._file_path is None:
            return
        # The file mirror is best-effort; the DB copy is the record.
        try:
            line = json.dumps(entry.model_dump(mode="json", exclude_none=True))
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Audit file mirror write failed: %s", exc)
