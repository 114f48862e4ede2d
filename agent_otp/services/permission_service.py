"""Permission orchestration - runs a request through the policy engine, records
the decision, issues tokens and hands pending requests to a human."""
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from agent_otp.config import settings
from agent_otp.exceptions import PermissionNotFoundError, PermissionStateError
from agent_otp.models.permission_request import PermissionRequest
from agent_otp.schemas.permission import EvaluationRequest, PermissionOutcome
from agent_otp.schemas.token import TokenUsage, TokenVerification
from agent_otp.services.audit_service import AuditService
from agent_otp.services.policy_engine import PolicyEngine
from agent_otp.services.token_service import TokenService
from agent_otp.utils.cache import TokenCache
from agent_otp.utils.logger import logger
from agent_otp.utils.metrics import record_permission_decision
from agent_otp.utils.timeutil import calculate_expires_at, is_expired, to_iso, utcnow
from agent_otp.utils.webhook import send_webhook

Notifier = Callable[[str, Dict[str, Any]], None]


class PermissionService:
    """Drives a permission request from creation to a decision.

    auto_approve -> approved + token, deny -> denied, require_approval ->
    pending until :meth:`approve` or :meth:`deny` is called by the
    human-decision path, the agent withdraws it with :meth:`cancel`, or the
    timeout sweep calls :meth:`expire`.
    """

    def __init__(self, db: Session, cache: TokenCache, notifier: Notifier = send_webhook):
        self.db = db
        self.audit = AuditService(db)
        self.engine = PolicyEngine(db)
        self.tokens = TokenService(db, cache, self.audit)
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request_permission(
        self,
        user_id: str,
        agent_id: str,
        action: str,
        resource: Optional[str] = None,
        scope: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        uses: int = 1,
        token_ttl_seconds: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PermissionOutcome:
        """Create a permission request and decide it as far as policy allows.

        Returns the outcome; ``token`` is set only when a policy auto-approved.
        """
        evaluation = EvaluationRequest(
            agent_id=agent_id,
            action=action,
            resource=resource,
            scope=scope or {},
            context=context or {},
        )

        request = PermissionRequest(
            user_id=user_id,
            agent_id=agent_id,
            action=action,
            resource=resource,
            scope=evaluation.scope,
            context=evaluation.context,
            status="pending",
            expires_at=calculate_expires_at(settings.APPROVAL_TIMEOUT_SECONDS),
        )
        self.db.add(request)
        self.db.commit()
        self.db.refresh(request)

        self.audit.log(
            "permission_request",
            user_id=user_id,
            agent_id=agent_id,
            permission_request_id=request.id,
            details={"action": action, "resource": resource, "scope": evaluation.scope},
            ip_address=ip_address,
            user_agent=user_agent,
        )

        decision = self.engine.evaluate(user_id, evaluation)

        if decision.action == "auto_approve":
            granted = decision.scope if decision.scope is not None else evaluation.scope
            self._decide(request, "approved", "auto", decision.reason, decision.policy_id)
            token = self.tokens.issue(request.id, granted, uses, token_ttl_seconds)
            self._audit_decision(request, "permission_approve", granted)
            return self._outcome(request, scope=granted, token=token)

        if decision.action == "deny":
            self._decide(request, "denied", "auto", decision.reason, decision.policy_id)
            self._audit_decision(request, "permission_deny")
            return self._outcome(request)

        self.audit.log(
            "permission_escalate",
            user_id=user_id,
            agent_id=agent_id,
            permission_request_id=request.id,
            details={"policy_id": decision.policy_id, "reason": decision.reason},
        )
        self._notify("permission.pending", request, reason=decision.reason)
        logger.info(
            f"Permission request {request.id} awaiting approval",
            extra={"request_id": request.id, "agent_id": agent_id, "action": action},
        )
        return self._outcome(request, reason=decision.reason)

    # ------------------------------------------------------------------
    # Human decisions
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: str,
        reason: Optional[str] = None,
        scope: Optional[Dict[str, Any]] = None,
        uses: int = 1,
        token_ttl_seconds: Optional[int] = None,
    ) -> PermissionOutcome:
        """Approve a pending request and issue its token.

        ``scope`` lets the approver grant less than was asked for; by default
        the requested scope is granted.

        Raises:
            PermissionNotFoundError: unknown request.
            PermissionStateError:    the request is no longer pending (or just expired).
        """
        request = self._pending(request_id)
        granted = scope if scope is not None else dict(request.scope or {})

        self._decide(request, "approved", "user", reason or "Approved by user")
        token = self.tokens.issue(request.id, granted, uses, token_ttl_seconds)

        self._audit_decision(request, "permission_approve", granted)
        self._notify("permission.approved", request)
        return self._outcome(request, scope=granted, token=token)

    def deny(self, request_id: str, reason: Optional[str] = None) -> PermissionOutcome:
        """Deny a pending request"""
        request = self._pending(request_id)
        self._decide(request, "denied", "user", reason or "Denied by user")

        self._audit_decision(request, "permission_deny")
        self._notify("permission.denied", request)
        return self._outcome(request)

    def cancel(self, request_id: str, reason: Optional[str] = None) -> PermissionOutcome:
        """Withdraw a pending request on behalf of the agent that made it.

        Raises:
            PermissionNotFoundError: unknown request.
            PermissionStateError:    the request is no longer pending.
        """
        request = self._get(request_id)
        if not request.is_pending:
            raise PermissionStateError(request.id, request.status)

        self._decide(request, "cancelled", "agent", reason or "Cancelled by agent")
        self.tokens.revoke_all_for_request(request.id)

        self._audit_decision(request, "permission_cancel")
        self._notify("permission.cancelled", request)
        return self._outcome(request)

    def expire(self, request_id: str) -> PermissionOutcome:
        """Close a pending request whose approval window ran out"""
        request = self._get(request_id)
        if not request.is_pending:
            raise PermissionStateError(request.id, request.status)
        self._expire(request)
        return self._outcome(request)

    def expire_stale(self, now=None) -> int:
        """Expire every pending request past its deadline; returns how many were expired"""
        now = now or utcnow()
        stale = (
            self.db.query(PermissionRequest)
            .filter(PermissionRequest.status == "pending", PermissionRequest.expires_at < now)
            .all()
        )
        expired = 0
        for request in stale:
            try:
                self._expire(request)
                expired += 1
            except PermissionStateError:
                # decided by someone else since the query ran
                continue
        if expired:
            logger.info(f"Expired {expired} stale permission request(s)")
        return expired

    def get_request(self, request_id: str) -> PermissionOutcome:
        """Current state of a request, as the agent would poll it"""
        return self._outcome(self._get(request_id))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def verify_token(self, secret: str, request_id: str) -> TokenVerification:
        result = self.tokens.verify(secret, request_id)
        self.audit.log(
            "token_verify",
            permission_request_id=request_id,
            details={"valid": result.valid, "reason": result.reason},
        )
        return result

    def use_token(
        self,
        secret: str,
        request_id: str,
        action_details: Optional[Dict[str, Any]] = None,
    ) -> TokenUsage:
        return self.tokens.consume(secret, request_id, action_details)

    def revoke_token(self, secret: str, request_id: str) -> bool:
        return self.tokens.revoke(secret, request_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, request_id: str) -> PermissionRequest:
        request = self.db.query(PermissionRequest).filter(PermissionRequest.id == request_id).first()
        if request is None:
            raise PermissionNotFoundError(request_id)
        return request

    def _pending(self, request_id: str) -> PermissionRequest:
        """Fetch a request that can still be decided by a human"""
        request = self._get(request_id)
        if not request.is_pending:
            raise PermissionStateError(request.id, request.status)
        if is_expired(request.expires_at):
            self._expire(request)
            raise PermissionStateError(request.id, request.status)
        return request

    def _decide(
        self,
        request: PermissionRequest,
        status: str,
        decided_by: str,
        reason: str,
        policy_id: Optional[str] = None,
    ) -> None:
        """Move a pending request to its final status exactly once.

        The conditional UPDATE makes concurrent deciders race safely: only
        the first one finds the row still pending.
        """
        result = self.db.execute(
            update(PermissionRequest)
            .where(PermissionRequest.id == request.id, PermissionRequest.status == "pending")
            .values(
                status=status,
                decided_by=decided_by,
                decision_reason=reason,
                decided_at=utcnow(),
                policy_id=policy_id,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(request)

        if result.rowcount != 1:
            raise PermissionStateError(request.id, request.status)

        record_permission_decision(status, decided_by)
        logger.info(
            f"Permission request {request.id} {status}",
            extra={
                "request_id": request.id,
                "agent_id": request.agent_id,
                "decision": status,
                "policy_id": policy_id,
            },
        )

    def _expire(self, request: PermissionRequest) -> None:
        self._decide(request, "expired", "timeout", "Approval window elapsed")
        self.tokens.revoke_all_for_request(request.id)
        self._audit_decision(request, "permission_expire")
        self._notify("permission.expired", request)

    def _audit_decision(
        self,
        request: PermissionRequest,
        event_type: str,
        granted_scope: Optional[Dict[str, Any]] = None,
    ) -> None:
        details: Dict[str, Any] = {
            "status": request.status,
            "decided_by": request.decided_by,
            "reason": request.decision_reason,
            "policy_id": request.policy_id,
        }
        if granted_scope is not None:
            details["scope"] = granted_scope
        self.audit.log(
            event_type,
            user_id=request.user_id,
            agent_id=request.agent_id,
            permission_request_id=request.id,
            details=details,
        )

    def _notify(self, event_type: str, request: PermissionRequest, reason: Optional[str] = None) -> None:
        payload = {
            "request_id": request.id,
            "user_id": request.user_id,
            "agent_id": request.agent_id,
            "action": request.action,
            "resource": request.resource,
            "scope": request.scope,
            "context": request.context,
            "status": request.status,
            "reason": reason or request.decision_reason,
            "expires_at": to_iso(request.expires_at),
        }
        try:
            self.notifier(event_type, payload)
        except Exception:
            logger.warning(
                f"Notifier failed for {event_type}",
                extra={"request_id": request.id},
                exc_info=True,
            )

    @staticmethod
    def _outcome(
        request: PermissionRequest,
        scope: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PermissionOutcome:
        return PermissionOutcome(
            request_id=request.id,
            status=request.status,
            reason=reason or request.decision_reason,
            policy_id=request.policy_id,
            decided_by=request.decided_by,
            scope=scope if scope is not None else dict(request.scope or {}),
            expires_at=request.expires_at,
            token=token,
        )


def create_permission_service(db: Session, cache: TokenCache, notifier: Notifier = send_webhook) -> PermissionService:
    """Creates a new permission service instance."""
    return PermissionService(db, cache, notifier)
