"""Prometheus metrics for decisions and token activity"""
from prometheus_client import Counter

# ===== Prometheus Metrics =====

# Policy metrics
policy_decisions_total = Counter(
    "agentotp_policy_decisions_total",
    "Total policy decisions",
    ["decision"]  # auto_approve, require_approval, deny
)

policy_evaluation_failures_total = Counter(
    "agentotp_policy_evaluation_failures_total",
    "Policy evaluations that fell back to manual approval because the store failed"
)

# Permission request metrics
permission_decisions_total = Counter(
    "agentotp_permission_decisions_total",
    "Permission requests leaving the pending state",
    ["status", "decided_by"]
)

# Token metrics
tokens_issued_total = Counter(
    "agentotp_tokens_issued_total",
    "Total tokens issued"
)

token_consumptions_total = Counter(
    "agentotp_token_consumptions_total",
    "Token consume attempts",
    ["result"]  # success, expired, consumed, not_found, mismatch, conflict
)

token_consume_conflicts_total = Counter(
    "agentotp_token_consume_conflicts_total",
    "Compare-and-swap misses while consuming a token"
)

tokens_revoked_total = Counter(
    "agentotp_tokens_revoked_total",
    "Total tokens revoked"
)

# Error metrics
audit_write_failures_total = Counter(
    "agentotp_audit_write_failures_total",
    "Audit events that could not be written"
)


def record_policy_decision(decision: str):
    """Record policy decision metric"""
    policy_decisions_total.labels(decision=decision).inc()


def record_policy_failure():
    policy_evaluation_failures_total.inc()


def record_permission_decision(status: str, decided_by: str):
    """Record a permission request reaching a final status"""
    permission_decisions_total.labels(status=status, decided_by=decided_by).inc()


def record_token_issued():
    tokens_issued_total.inc()


def record_token_consumption(result: str):
    """Record token consume outcome"""
    token_consumptions_total.labels(result=result).inc()


def record_consume_conflict():
    token_consume_conflicts_total.inc()


def record_tokens_revoked(count: int = 1):
    tokens_revoked_total.inc(count)


def record_audit_failure():
    audit_write_failures_total.inc()
