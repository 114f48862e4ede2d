"""Policy schemas"""
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr, field_validator, model_validator

from agent_otp.config import settings
from agent_otp.utils.conditions import FIELD_NAMESPACES, TOP_LEVEL_FIELDS

Number = Union[StrictInt, StrictFloat]
Scalar = Union[StrictStr, StrictInt, StrictFloat]

# A quantified group whose body is itself quantified, e.g. (a+)+ or (\w*)*
_NESTED_QUANTIFIER = re.compile(r"\([^)]*[+*][^)]*\)\s*[+*{]")

PolicyAction = Literal["auto_approve", "require_approval", "deny"]


class Condition(BaseModel):
    """Schema for a single-field condition; all set operators are AND-ed"""

    equals: Any = None
    not_equals: Any = Field(None, alias="notEquals")
    less_than: Optional[Number] = Field(None, alias="lessThan")
    greater_than: Optional[Number] = Field(None, alias="greaterThan")
    less_than_or_equal: Optional[Number] = Field(None, alias="lessThanOrEqual")
    greater_than_or_equal: Optional[Number] = Field(None, alias="greaterThanOrEqual")
    starts_with: Optional[StrictStr] = Field(None, alias="startsWith")
    ends_with: Optional[StrictStr] = Field(None, alias="endsWith")
    contains: Optional[StrictStr] = None
    matches: Optional[StrictStr] = None
    in_: Optional[List[Scalar]] = Field(None, alias="in")
    not_in: Optional[List[Scalar]] = Field(None, alias="notIn")
    exists: Optional[StrictBool] = None

    class Config:
        populate_by_name = True
        extra = "forbid"

    @field_validator("matches")
    @classmethod
    def validate_pattern(cls, pattern: Optional[str]) -> Optional[str]:
        """Reject patterns that cannot compile or risk catastrophic backtracking"""
        if pattern is None:
            return pattern
        if len(pattern) > settings.POLICY_MAX_PATTERN_LENGTH:
            raise ValueError(
                f"pattern longer than {settings.POLICY_MAX_PATTERN_LENGTH} characters"
            )
        if _NESTED_QUANTIFIER.search(pattern):
            raise ValueError("pattern contains nested quantifiers")
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return pattern

    @model_validator(mode="after")
    def require_operator(self) -> "Condition":
        if not self.model_fields_set:
            raise ValueError("condition must specify at least one operator")
        return self

    def to_storage(self) -> Dict[str, Any]:
        """Serialize with wire names, keeping only the operators that were given"""
        return self.model_dump(by_alias=True, exclude_unset=True)


def _validate_field_paths(conditions: Optional[Dict[str, Condition]]) -> Optional[Dict[str, Condition]]:
    if not conditions:
        return conditions
    for path in conditions:
        root, _, rest = path.partition(".")
        if path in TOP_LEVEL_FIELDS:
            continue
        if root in FIELD_NAMESPACES and rest:
            continue
        raise ValueError(
            f"unsupported field path '{path}'; use action, resource, agentId, scope.<key> or context.<key>"
        )
    return conditions


class PolicyCreate(BaseModel):
    """Schema for creating a policy"""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    agent_id: Optional[str] = Field(None, description="Restrict to one agent; null applies to all agents")
    priority: int = Field(0, description="Higher priority policies are evaluated first")
    conditions: Dict[str, Condition] = Field(default_factory=dict)
    action: PolicyAction
    scope_template: Optional[Dict[str, Any]] = None
    is_active: bool = True

    @field_validator("conditions")
    @classmethod
    def validate_field_paths(cls, conditions):
        return _validate_field_paths(conditions)


class PolicyUpdate(BaseModel):
    """Schema for updating a policy; omitted fields are left unchanged"""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    agent_id: Optional[str] = None
    priority: Optional[int] = None
    conditions: Optional[Dict[str, Condition]] = None
    action: Optional[PolicyAction] = None
    scope_template: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None

    @field_validator("conditions")
    @classmethod
    def validate_field_paths(cls, conditions):
        return _validate_field_paths(conditions)


class PolicyResponse(BaseModel):
    """Schema for policy response"""

    id: str
    user_id: str
    agent_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    priority: int
    conditions: Dict[str, Any]
    action: str
    scope_template: Optional[Dict[str, Any]] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
