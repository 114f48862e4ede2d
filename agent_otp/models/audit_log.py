"""Audit log model"""
from sqlalchemy import Column, DateTime, JSON, String, Text

from agent_otp.database import Base, generate_uuid_string
from agent_otp.utils.timeutil import utcnow


class AuditLog(Base):
    """AuditLog model - append-only record of decisions and token activity"""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid_string)
    user_id = Column(String(36), nullable=True, index=True)
    agent_id = Column(String(36), nullable=True, index=True)
    permission_request_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    details = Column(JSON, default=dict, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
