"""Policy engine - decides whether an agent request is auto-approved, denied,
or escalated to the owning principal"""
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from agent_otp.models.policy import Policy
from agent_otp.schemas.permission import EvaluationRequest, PolicyDecision
from agent_otp.utils.conditions import matches_conditions
from agent_otp.utils.logger import logger
from agent_otp.utils.merge import deep_merge
from agent_otp.utils.metrics import record_policy_decision, record_policy_failure

DEFAULT_REASON = "No matching policy - manual approval required"
FAILURE_REASON = "Policy evaluation failed - manual approval required"


def _evaluation_order(policy: Policy) -> tuple:
    """Priority descending; ties go to the older policy, then to id order"""
    return (-(policy.priority or 0), policy.created_at, policy.id)


class PolicyEngine:
    """Evaluates a principal's active policies against an agent request.

    Policies are tried in descending priority; the first whose conditions all
    match decides. No match, or any failure while loading policies, falls back
    to ``require_approval`` so a broken engine never auto-approves.
    """

    def __init__(self, db: Session):
        self.db = db

    def load_policies(self, user_id: str, agent_id: str) -> List[Policy]:
        """Active policies of ``user_id`` that apply to ``agent_id``, in evaluation order"""
        policies = (
            self.db.query(Policy)
            .filter(Policy.user_id == user_id, Policy.is_active == True)  # noqa: E712
            .order_by(Policy.priority.desc(), Policy.created_at.asc(), Policy.id.asc())
            .all()
        )
        applicable = [p for p in policies if p.agent_id is None or p.agent_id == agent_id]
        return sorted(applicable, key=_evaluation_order)

    def evaluate(self, user_id: str, request: EvaluationRequest) -> PolicyDecision:
        """Decide a request.

        Never raises: store errors are logged and converted into the safe
        ``require_approval`` default.
        """
        try:
            policies = self.load_policies(user_id, request.agent_id)
        except Exception:
            logger.error(
                "Policy lookup failed, defaulting to manual approval",
                extra={"user_id": user_id, "agent_id": request.agent_id, "action": request.action},
                exc_info=True,
            )
            self._rollback()
            record_policy_failure()
            return PolicyDecision(action="require_approval", reason=FAILURE_REASON)

        decision = self.decide(policies, request)
        record_policy_decision(decision.action)

        logger.info(
            f"Policy decision: {request.action} -> {decision.action}",
            extra={
                "user_id": user_id,
                "agent_id": request.agent_id,
                "action": request.action,
                "decision": decision.action,
                "policy_id": decision.policy_id,
            },
        )
        return decision

    @staticmethod
    def decide(policies: Iterable[Policy], request: EvaluationRequest) -> PolicyDecision:
        """Return the decision of the first matching policy in ``policies``.

        ``policies`` must already be in evaluation order and filtered to the
        requesting agent.
        """
        flat = request.flatten()

        for policy in policies:
            if not matches_conditions(policy.conditions, flat):
                continue

            scope: Optional[dict] = None
            if policy.action == "auto_approve":
                scope = dict(request.scope)
                if policy.scope_template:
                    scope = deep_merge(scope, policy.scope_template)

            return PolicyDecision(
                action=policy.action,
                reason=f"Matched policy: {policy.name}",
                policy_id=policy.id,
                policy_name=policy.name,
                scope=scope,
            )

        return PolicyDecision(action="require_approval", reason=DEFAULT_REASON)

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except Exception:
            logger.warning("Rollback after failed policy lookup also failed", exc_info=True)


def create_policy_engine(db: Session) -> PolicyEngine:
    """Creates a new policy engine instance."""
    return PolicyEngine(db)
