"""Agent OTP - policy-gated, limited-use permission tokens for AI agents"""

__version__ = "0.1.0"
