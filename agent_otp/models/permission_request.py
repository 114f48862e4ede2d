"""PermissionRequest model"""
from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship

from agent_otp.database import Base, generate_uuid_string
from agent_otp.utils.timeutil import utcnow

PERMISSION_STATUSES = ("pending", "approved", "denied", "expired", "cancelled", "used")
DECISION_SOURCES = ("auto", "user", "agent", "timeout")


class PermissionRequest(Base):
    """PermissionRequest model - one decision lifecycle for an agent action.

    Status only moves forward: pending -> approved | denied | expired | cancelled, and
    approved -> used once the last token use is spent. Decision fields are
    written once, when the request leaves ``pending``.
    """

    __tablename__ = "permission_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid_string)
    user_id = Column(String(36), nullable=False, index=True)
    agent_id = Column(String(36), nullable=False, index=True)
    action = Column(String(255), nullable=False)
    resource = Column(String(255), nullable=True)
    scope = Column(JSON, default=dict, nullable=False)
    context = Column(JSON, default=dict, nullable=False)
    status = Column(String(50), default="pending", nullable=False, index=True)
    policy_id = Column(String(36), ForeignKey("policies.id", ondelete="SET NULL"), nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_by = Column(String(50), nullable=True)   # auto | user | agent | timeout
    decided_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    tokens = relationship("Token", back_populates="permission_request", cascade="all, delete-orphan")

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"
