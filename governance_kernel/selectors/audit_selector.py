"""
Module: governance_kernel.selectors.audit_selector
Responsibility: Filtered, paginated reads of a project's audit trail and
    its CSV export.
Architecture position: Kernel > Selectors.

Entries come back newest first.  Chain validation lives with the writer
(services/audit_logger.py); this module only reads.
"""

import csv
import io
import json
from datetime import datetime
from typing import Any, TextIO
from uuid import UUID

from sqlalchemy import select

from governance_kernel.domain.dtos import AuditEntryRecord
from governance_kernel.models.audit_log import AuditActionType, AuditLogEntry
from governance_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_LIMIT = 100

CSV_HEADER = (
    "Timestamp",
    "Actor",
    "Role",
    "Action Type",
    "Entity Type",
    "Entity ID",
    "Before",
    "After",
    "Reason",
)


def _json_cell(value: dict[str, Any] | None) -> str:
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class AuditSelector(BaseSelector):

    def query_project_logs(
        self,
        project_id: UUID,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        actor_id: UUID | None = None,
        action_type: AuditActionType | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> list[AuditEntryRecord]:
        """
        Audit entries of one project, newest first.

        Args:
            start: Inclusive lower bound on occurred_at.
            end: Exclusive upper bound on occurred_at.
            limit: Page size; None returns every matching entry.
        """
        stmt = select(AuditLogEntry).where(AuditLogEntry.project_id == project_id)
        if entity_type is not None:
            stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
        if actor_id is not None:
            stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
        if action_type is not None:
            stmt = stmt.where(AuditLogEntry.action_type == AuditActionType(action_type).value)
        if start is not None:
            stmt = stmt.where(AuditLogEntry.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(AuditLogEntry.occurred_at < end)

        stmt = stmt.order_by(AuditLogEntry.seq.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        return [AuditEntryRecord.from_model(e) for e in self.session.execute(stmt).scalars()]

    def export_project_logs_csv(
        self,
        project_id: UUID,
        out: TextIO | None = None,
        **filters: Any,
    ) -> str:
        """
        Write the project's audit entries as CSV.

        Accepts the same filters as query_project_logs() but exports every
        matching entry.  Returns the CSV text; also writes it to ``out``
        when given.
        """
        filters.pop("limit", None)
        filters.pop("offset", None)
        entries = self.query_project_logs(project_id, limit=None, **filters)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADER)
        for entry in entries:
            writer.writerow(
                (
                    entry.occurred_at.isoformat(),
                    str(entry.actor_id),
                    entry.actor_role,
                    entry.action_type,
                    entry.entity_type,
                    str(entry.entity_id),
                    _json_cell(entry.before),
                    _json_cell(entry.after),
                    entry.reason or "",
                )
            )

        text = buffer.getvalue()
        if out is not None:
            out.write(text)
        return text
