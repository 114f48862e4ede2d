"""Policy management - create, update and delete a principal's policies.

Input arrives as validated ``PolicyCreate`` / ``PolicyUpdate`` schemas, so
regex conditions are compiled and bounded here, at write time, rather than
first discovered at evaluation time.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from agent_otp.exceptions import PolicyNotFoundError
from agent_otp.models.policy import Policy
from agent_otp.schemas.policy import PolicyCreate, PolicyUpdate
from agent_otp.services.audit_service import AuditService
from agent_otp.utils.logger import logger

# Columns that cannot be cleared by an explicit null in an update
_REQUIRED_FIELDS = ("name", "priority", "action", "is_active")


class PolicyService:
    """CRUD over the ``policies`` table, scoped to one principal per call"""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService(db)

    def get(self, user_id: str, policy_id: str) -> Policy:
        policy = (
            self.db.query(Policy)
            .filter(Policy.id == policy_id, Policy.user_id == user_id)
            .first()
        )
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy

    def list(self, user_id: str, active_only: bool = False) -> List[Policy]:
        """Policies of a principal, highest priority first"""
        query = self.db.query(Policy).filter(Policy.user_id == user_id)
        if active_only:
            query = query.filter(Policy.is_active == True)  # noqa: E712
        return query.order_by(Policy.priority.desc(), Policy.created_at.asc(), Policy.id.asc()).all()

    def create(self, user_id: str, data: PolicyCreate) -> Policy:
        policy = Policy(
            user_id=user_id,
            agent_id=data.agent_id,
            name=data.name,
            description=data.description,
            priority=data.priority,
            conditions={path: cond.to_storage() for path, cond in data.conditions.items()},
            action=data.action,
            scope_template=data.scope_template,
            is_active=data.is_active,
        )
        self.db.add(policy)
        self.db.commit()
        self.db.refresh(policy)

        logger.info(
            f"Policy created: {policy.name}",
            extra={"user_id": user_id, "policy_id": policy.id, "decision": policy.action},
        )
        self.audit.log("policy_create", user_id=user_id, agent_id=policy.agent_id, details={"policy_id": policy.id})
        return policy

    def update(self, user_id: str, policy_id: str, data: PolicyUpdate) -> Policy:
        policy = self.get(user_id, policy_id)

        changes = data.model_dump(exclude_unset=True)
        if "conditions" in changes:
            changes["conditions"] = {
                path: cond.to_storage() for path, cond in (data.conditions or {}).items()
            }
        for field, value in changes.items():
            if value is None and field in _REQUIRED_FIELDS:
                continue
            setattr(policy, field, value)

        self.db.commit()
        self.db.refresh(policy)

        logger.info(f"Policy updated: {policy.name}", extra={"user_id": user_id, "policy_id": policy.id})
        self.audit.log(
            "policy_update",
            user_id=user_id,
            agent_id=policy.agent_id,
            details={"policy_id": policy.id, "fields": sorted(changes)},
        )
        return policy

    def delete(self, user_id: str, policy_id: str) -> None:
        policy = self.get(user_id, policy_id)
        self.db.delete(policy)
        self.db.commit()

        logger.info(f"Policy deleted: {policy_id}", extra={"user_id": user_id, "policy_id": policy_id})
        self.audit.log("policy_delete", user_id=user_id, details={"policy_id": policy_id})
