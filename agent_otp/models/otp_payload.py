"""OtpPayload model"""
from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from agent_otp.database import Base, generate_uuid_string
from agent_otp.utils.timeutil import utcnow

OTP_SOURCES = ("sms", "email", "whatsapp")


class OtpPayload(Base):
    """An encrypted verification code relayed to an agent exactly once.

    The payload is encrypted client-side for the requesting agent; the server
    never sees the plaintext code.
    """

    __tablename__ = "otp_payloads"

    id = Column(String(36), primary_key=True, default=generate_uuid_string)
    permission_request_id = Column(
        String(36), ForeignKey("permission_requests.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    encrypted_payload = Column(Text, nullable=False)
    source = Column(String(20), nullable=False)   # sms | email | whatsapp
    sender = Column(String(255), nullable=True)
    subject = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
