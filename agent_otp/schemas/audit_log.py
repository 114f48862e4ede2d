"""Audit log schemas"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AuditEventType = Literal[
    "permission_request",
    "permission_approve",
    "permission_deny",
    "permission_expire",
    "permission_escalate",
    "permission_cancel",
    "token_issue",
    "token_verify",
    "token_use",
    "token_revoke",
    "otp_store",
    "otp_consume",
    "policy_create",
    "policy_update",
    "policy_delete",
]


class AuditLogFilter(BaseModel):
    """Filters and pagination for audit queries"""

    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    permission_request_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class AuditLogResponse(BaseModel):
    """Schema for audit log response"""

    id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    permission_request_id: Optional[str] = None
    event_type: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaginatedAuditLogs(BaseModel):
    """A page of audit log entries"""

    logs: List[AuditLogResponse]
    total: int
    page: int
    limit: int


class AuditStats(BaseModel):
    """Event counts for one principal over a trailing window"""

    period: str = Field(..., description="Window covered, e.g. '30d'")
    total: int
    by_event_type: Dict[str, int] = Field(default_factory=dict)
