"""Core services"""
from agent_otp.services.audit_service import AuditService
from agent_otp.services.permission_service import PermissionService, create_permission_service
from agent_otp.services.policy_engine import PolicyEngine, create_policy_engine
from agent_otp.services.policy_service import PolicyService
from agent_otp.services.token_service import TokenService, create_token_service

__all__ = [
    "AuditService",
    "PermissionService",
    "PolicyEngine",
    "PolicyService",
    "TokenService",
    "create_permission_service",
    "create_policy_engine",
    "create_token_service",
]
