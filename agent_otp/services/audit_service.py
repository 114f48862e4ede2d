"""Audit service - append-only record of decisions and token activity"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agent_otp.models.audit_log import AuditLog
from agent_otp.schemas.audit_log import (
    AuditEventType,
    AuditLogFilter,
    AuditLogResponse,
    AuditStats,
    PaginatedAuditLogs,
)
from agent_otp.utils.logger import logger
from agent_otp.utils.metrics import record_audit_failure
from agent_otp.utils.timeutil import utcnow


class AuditService:
    """Writes and queries audit events.

    ``log`` is fire-and-forget: a failed insert is logged and swallowed so
    auditing can never break the decision or token flow that triggered it.
    """

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        permission_request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Record an audit event; never raises"""
        try:
            entry = AuditLog(
                user_id=user_id,
                agent_id=agent_id,
                permission_request_id=permission_request_id,
                event_type=event_type,
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.db.add(entry)
            self.db.commit()
        except Exception:
            record_audit_failure()
            logger.error(
                "Failed to write audit log",
                extra={"event_type": event_type, "request_id": permission_request_id},
                exc_info=True,
            )
            try:
                self.db.rollback()
            except Exception:
                logger.warning("Rollback after failed audit write also failed", exc_info=True)

    def query(self, filter: AuditLogFilter) -> PaginatedAuditLogs:
        """Query audit logs with filtering and pagination, newest first"""
        query = self.db.query(AuditLog)

        if filter.user_id:
            query = query.filter(AuditLog.user_id == filter.user_id)
        if filter.agent_id:
            query = query.filter(AuditLog.agent_id == filter.agent_id)
        if filter.permission_request_id:
            query = query.filter(AuditLog.permission_request_id == filter.permission_request_id)
        if filter.event_type:
            query = query.filter(AuditLog.event_type == filter.event_type)
        if filter.start_date:
            query = query.filter(AuditLog.created_at >= filter.start_date)
        if filter.end_date:
            query = query.filter(AuditLog.created_at <= filter.end_date)

        total = query.count()
        offset = (filter.page - 1) * filter.limit
        rows = query.order_by(AuditLog.created_at.desc()).offset(offset).limit(filter.limit).all()

        return PaginatedAuditLogs(
            logs=[AuditLogResponse.model_validate(row) for row in rows],
            total=total,
            page=filter.page,
            limit=filter.limit,
        )

    def get_request_trail(self, permission_request_id: str) -> List[AuditLogResponse]:
        """Every event for one permission request, oldest first"""
        rows = (
            self.db.query(AuditLog)
            .filter(AuditLog.permission_request_id == permission_request_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )
        return [AuditLogResponse.model_validate(row) for row in rows]

    def stats(self, user_id: str, days: int = 30, now: Optional[datetime] = None) -> AuditStats:
        """Count a principal's events by type over the last ``days`` days"""
        since = (now or utcnow()) - timedelta(days=days)
        rows = (
            self.db.query(AuditLog)
            .with_entities(AuditLog.event_type, func.count(AuditLog.id).label("count"))
            .filter(AuditLog.user_id == user_id, AuditLog.created_at >= since)
            .group_by(AuditLog.event_type)
            .all()
        )
        by_event_type = {event_type: count for event_type, count in rows}

        return AuditStats(
            period=f"{days}d",
            total=sum(by_event_type.values()),
            by_event_type=by_event_type,
        )
