"""Pydantic schemas for validation and service results"""
from agent_otp.schemas.audit_log import (
    AuditEventType,
    AuditLogFilter,
    AuditLogResponse,
    AuditStats,
    PaginatedAuditLogs,
)
from agent_otp.schemas.permission import EvaluationRequest, PermissionOutcome, PolicyDecision
from agent_otp.schemas.policy import Condition, PolicyCreate, PolicyResponse, PolicyUpdate
from agent_otp.schemas.token import CachedToken, OtpPayloadData, TokenUsage, TokenVerification

__all__ = [
    "AuditEventType",
    "AuditLogFilter",
    "AuditLogResponse",
    "AuditStats",
    "PaginatedAuditLogs",
    "EvaluationRequest",
    "PermissionOutcome",
    "PolicyDecision",
    "Condition",
    "PolicyCreate",
    "PolicyResponse",
    "PolicyUpdate",
    "CachedToken",
    "OtpPayloadData",
    "TokenUsage",
    "TokenVerification",
]
