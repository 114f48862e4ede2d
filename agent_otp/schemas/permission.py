"""Permission evaluation and decision schemas"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

DecisionAction = Literal["auto_approve", "require_approval", "deny"]


class EvaluationRequest(BaseModel):
    """An agent's action request as seen by the policy engine"""

    agent_id: str = Field(..., description="Agent asking for the permission")
    action: str = Field(..., description="Action to authorize (e.g., 'gmail.send')")
    resource: Optional[str] = Field(None, description="Resource the action targets")
    scope: Dict[str, Any] = Field(default_factory=dict, description="Requested scope")
    context: Dict[str, Any] = Field(default_factory=dict, description="Additional context from the agent")

    def flatten(self) -> Dict[str, Any]:
        """Field-path view used by policy conditions.

        ``scope`` and ``context`` keys are exposed one level deep as
        ``scope.<key>`` / ``context.<key>``; deeper paths are resolved on
        demand by the condition evaluator.
        """
        flat: Dict[str, Any] = {
            "action": self.action,
            "resource": self.resource,
            "agentId": self.agent_id,
        }
        for key, value in self.scope.items():
            flat[f"scope.{key}"] = value
        for key, value in self.context.items():
            flat[f"context.{key}"] = value
        return flat


class PolicyDecision(BaseModel):
    """Outcome of policy evaluation"""

    action: DecisionAction
    reason: str
    policy_id: Optional[str] = Field(None, description="Policy that decided; null for the default decision")
    policy_name: Optional[str] = None
    scope: Optional[Dict[str, Any]] = Field(
        None, description="Scope to grant; merged with the policy's scope template on auto-approval"
    )


class PermissionOutcome(BaseModel):
    """Result of creating or deciding a permission request"""

    request_id: str
    status: Literal["pending", "approved", "denied", "expired", "cancelled", "used"]
    reason: Optional[str] = None
    policy_id: Optional[str] = None
    decided_by: Optional[Literal["auto", "user", "agent", "timeout"]] = None
    scope: Dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    token: Optional[str] = Field(None, description="Plaintext token, only present right after issuance")
