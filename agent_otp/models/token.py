"""Token model"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship

from agent_otp.database import Base, generate_uuid_string
from agent_otp.utils.timeutil import utcnow

UNLIMITED_USES = -1


class Token(Base):
    """Token model - a limited-use capability minted for one approved request.

    Only the SHA-256 of the secret is stored. ``uses_remaining`` is either a
    non-negative count or ``-1`` for unlimited use until ``expires_at``.
    """

    __tablename__ = "tokens"

    id = Column(String(36), primary_key=True, default=generate_uuid_string)
    permission_request_id = Column(
        String(36), ForeignKey("permission_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    scope = Column(JSON, default=dict, nullable=False)
    uses_remaining = Column(Integer, default=1, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    permission_request = relationship("PermissionRequest", back_populates="tokens")
