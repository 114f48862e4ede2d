"""Exceptions raised by the permission core.

Expected negative outcomes (expired, consumed, mismatched or unknown tokens)
are returned as result values, never raised. These exceptions cover misuse of
the orchestration layer and infrastructure failures on mutating paths.
"""


class AgentOTPError(Exception):
    """Base class for all agent_otp errors"""


class TokenIssueError(AgentOTPError):
    """The durable store rejected a new token"""


class PolicyNotFoundError(AgentOTPError):
    """No policy with the given id belongs to the principal"""

    def __init__(self, policy_id: str):
        super().__init__(f"Policy {policy_id} not found")
        self.policy_id = policy_id


class PermissionNotFoundError(AgentOTPError):
    """No permission request exists with the given id"""

    def __init__(self, request_id: str):
        super().__init__(f"Permission request {request_id} not found")
        self.request_id = request_id


class PermissionStateError(AgentOTPError):
    """A decision was attempted on a request that is no longer pending"""

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Permission request {request_id} is already {status}")
        self.request_id = request_id
        self.status = status
