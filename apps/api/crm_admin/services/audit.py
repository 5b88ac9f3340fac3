from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_admin.core.context import ActorUser
from crm_admin.crm.query import Page, PageRequest, paginate
from crm_admin.metrics import observe_audit_write_failure
from crm_admin.models.audit import AuditLog


class AuditRecorder:
    """Appends audit rows after the primary mutation has been committed.

    The write runs in its own transaction on the same session: a failure rolls
    back the audit row only, is logged and counted, and never reaches the
    caller.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("crm_admin.audit")

    def record(
        self,
        session: Session,
        actor: ActorUser,
        *,
        resource_type: str,
        resource_id: int | str,
        action: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditLog | None:
        entry = AuditLog(
            resource_type=resource_type,
            resource_id=str(resource_id),
            action=action,
            user_id=actor.user_id,
            user_name=actor.identity.name,
            user_role=actor.identity.role,
            old_values=before,
            new_values=after,
            ip_address=actor.client_ip,
            user_agent=actor.user_agent,
            correlation_id=actor.correlation_id,
        )
        try:
            session.add(entry)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_audit_write_failure(resource_type)
            self.logger.warning(
                "audit.write_failed",
                extra={
                    "resource": resource_type,
                    "resource_id": str(resource_id),
                    "action": action,
                    "error": str(exc),
                },
            )
            return None
        return entry

    def list_entries(self, session: Session, filters: dict[str, str | None], page_request: PageRequest) -> Page[AuditLog]:
        stmt = select(AuditLog)
        if filters.get("resource_type"):
            stmt = stmt.where(AuditLog.resource_type == filters["resource_type"])
        if filters.get("resource_id"):
            stmt = stmt.where(AuditLog.resource_id == filters["resource_id"])
        if filters.get("user_id"):
            stmt = stmt.where(AuditLog.user_id == filters["user_id"])
        if filters.get("action"):
            stmt = stmt.where(AuditLog.action == filters["action"])
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        return paginate(session, stmt, page_request)
