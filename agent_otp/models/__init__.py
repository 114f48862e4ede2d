"""Database models"""
from agent_otp.models.audit_log import AuditLog
from agent_otp.models.otp_payload import OtpPayload
from agent_otp.models.permission_request import PermissionRequest
from agent_otp.models.policy import Policy
from agent_otp.models.token import Token

__all__ = ["AuditLog", "OtpPayload", "PermissionRequest", "Policy", "Token"]
