"""Token verification, usage and OTP payload schemas"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TokenVerification(BaseModel):
    """Result of a non-mutating token check"""

    valid: bool
    reason: Optional[str] = None
    scope: Optional[Dict[str, Any]] = None
    uses_remaining: Optional[int] = None
    expires_at: Optional[datetime] = None


class TokenUsage(BaseModel):
    """Result of spending one token use"""

    success: bool
    uses_remaining: int = Field(..., description="Uses left after this call; -1 means unlimited")
    reason: Optional[str] = None


class CachedToken(BaseModel):
    """Projection of a token kept in the cache, keyed by token hash"""

    id: str
    permission_request_id: str = Field(..., alias="permissionRequestId")
    scope: Dict[str, Any] = Field(default_factory=dict)
    uses_remaining: int = Field(..., alias="usesRemaining")
    expires_at: datetime = Field(..., alias="expiresAt")

    class Config:
        populate_by_name = True


class OtpPayloadData(BaseModel):
    """An encrypted OTP payload handed to the agent on consumption"""

    id: str
    permission_request_id: str = Field(..., alias="permissionRequestId")
    encrypted_payload: str = Field(..., alias="encryptedPayload")
    source: str
    sender: Optional[str] = None
    subject: Optional[str] = None
    expires_at: datetime = Field(..., alias="expiresAt")

    class Config:
        populate_by_name = True
