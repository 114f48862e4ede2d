"""Policy model"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from agent_otp.database import Base, generate_uuid_string
from agent_otp.utils.timeutil import utcnow

POLICY_ACTIONS = ("auto_approve", "require_approval", "deny")


class Policy(Base):
    """Policy model - a priority-ordered rule owned by a principal.

    ``conditions`` maps a field path (``action``, ``scope.amount``,
    ``context.recipient`` ...) to a condition object; an empty mapping
    matches every request. ``agent_id`` NULL means the rule applies to all
    of the principal's agents.
    """

    __tablename__ = "policies"
    __table_args__ = (
        Index("ix_policies_user_active_priority", "user_id", "is_active", "priority"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid_string)
    user_id = Column(String(36), nullable=False, index=True)
    agent_id = Column(String(36), nullable=True, index=True)   # null = all agents
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Integer, default=0, nullable=False)      # higher = evaluated first
    conditions = Column(JSON, default=dict, nullable=False)
    action = Column(String(50), nullable=False)                # auto_approve | require_approval | deny
    scope_template = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
