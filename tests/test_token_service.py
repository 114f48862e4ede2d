"""Tests for the token service"""
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from agent_otp.exceptions import TokenIssueError
from agent_otp.models import AuditLog, PermissionRequest, Token
from agent_otp.services.token_service import (
    REASON_CONSUMED,
    REASON_EXPIRED,
    REASON_MISMATCH,
    REASON_NOT_FOUND,
    TokenService,
)
from agent_otp.utils import timeutil
from agent_otp.utils.cache import NullTokenCache, build_cache_key
from agent_otp.utils.crypto import hash_token


def _token_row(db, secret: str) -> Token:
    db.expire_all()
    return db.query(Token).filter(Token.token_hash == hash_token(secret)).one()


def _request_status(db, request_id: str) -> str:
    db.expire_all()
    return db.query(PermissionRequest).filter(PermissionRequest.id == request_id).one().status


def _travel(monkeypatch, seconds: int) -> None:
    """Move the clock used for expiry checks forward"""
    future = timeutil.utcnow() + timedelta(seconds=seconds)
    monkeypatch.setattr(timeutil, "utcnow", lambda: future)


# ----------------------------------------------------------------------
# Issue
# ----------------------------------------------------------------------


def test_issue_returns_secret_and_stores_only_hash(db, token_service, approved_request):
    secret = token_service.issue(approved_request.id, {"amount": 50})

    assert secret.startswith("otp_")
    token = _token_row(db, secret)
    assert token.token_hash == hash_token(secret)
    assert len(token.token_hash) == 64
    assert token.uses_remaining == 1
    assert token.scope == {"amount": 50}
    assert db.query(Token).filter(Token.token_hash == secret).first() is None


def test_issue_writes_cache_with_ttl_within_lifetime(token_service, cache, approved_request):
    """Test that the cache TTL never exceeds the token's remaining lifetime"""
    secret = token_service.issue(approved_request.id, {}, ttl_seconds=300)

    key = build_cache_key("TOKEN", hash_token(secret))
    assert key in cache.store
    assert 299 <= cache.ttls[key] <= 300


@pytest.mark.parametrize("requested,expected", [(5, 60), (None, 300), (600, 600), (100000, 3600)])
def test_issue_clamps_ttl(db, token_service, approved_request, requested, expected):
    secret = token_service.issue(approved_request.id, {}, ttl_seconds=requested)

    token = _token_row(db, secret)
    lifetime = (token.expires_at - token.created_at).total_seconds()
    assert expected - 2 <= lifetime <= expected + 2


@pytest.mark.parametrize("uses", [0, -2])
def test_issue_rejects_invalid_use_counts(token_service, approved_request, uses):
    with pytest.raises(ValueError):
        token_service.issue(approved_request.id, {}, uses_remaining=uses)


def test_issue_failure_raises(cache):
    """Test that a failed insert surfaces as TokenIssueError and is rolled back"""
    db = MagicMock()
    db.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))

    with pytest.raises(TokenIssueError, match="Failed to create token"):
        TokenService(db, cache).issue("request-1", {})

    db.rollback.assert_called_once()
    assert cache.store == {}


def test_issue_is_audited(db, token_service, approved_request):
    token_service.issue(approved_request.id, {})

    entry = db.query(AuditLog).filter(AuditLog.event_type == "token_issue").one()
    assert entry.permission_request_id == approved_request.id


# ----------------------------------------------------------------------
# Verify
# ----------------------------------------------------------------------


def test_issue_verify_consume_lifecycle(db, token_service, approved_request):
    """Test single-use lifecycle: verify, consume, then consume again"""
    secret = token_service.issue(approved_request.id, {"amount": 50}, uses_remaining=1, ttl_seconds=300)

    verification = token_service.verify(secret, approved_request.id)
    assert verification.valid is True
    assert verification.uses_remaining == 1
    assert verification.scope == {"amount": 50}

    first = token_service.consume(secret, approved_request.id)
    assert first.success is True
    assert first.uses_remaining == 0

    second = token_service.consume(secret, approved_request.id)
    assert second.success is False
    assert second.uses_remaining == 0
    assert "consumed" in second.reason


def test_consume_unknown_token_is_not_found(token_service, approved_request):
    result = token_service.consume("otp_does-not-exist", approved_request.id)

    assert result.success is False
    assert "not found" in result.reason


def test_verify_is_non_mutating(db, token_service, approved_request):
    secret = token_service.issue(approved_request.id, {}, uses_remaining=2)

    for _ in range(5):
        assert token_service.verify(secret, approved_request.id).valid is True

    assert _token_row(db, secret).uses_remaining == 2
    assert _request_status(db, approved_request.id) == "approved"


def test_verify_rejects_other_request(token_service, approved_request):
    """Test that a token bound to another request is a mismatch, not a miss"""
    secret = token_service.issue(approved_request.id, {})

    result = token_service.verify(secret, "another-request")

    assert result.valid is False
    assert result.reason == REASON_MISMATCH


def test_verify_mismatch_on_cache_miss(token_service, cache, approved_request):
    secret = token_service.issue(approved_request.id, {})
    cache.clear()

    assert token_service.verify(secret, "another-request").reason == REASON_MISMATCH


def test_verify_expired(token_service, approved_request, monkeypatch):
    secret = token_service.issue(approved_request.id, {}, ttl_seconds=60)

    _travel(monkeypatch, 61)
    result = token_service.verify(secret, approved_request.id)

    assert result.valid is False
    assert result.reason == REASON_EXPIRED


def test_consume_expired(token_service, approved_request, monkeypatch):
    secret = token_service.issue(approved_request.id, {}, ttl_seconds=60)

    _travel(monkeypatch, 120)
    result = token_service.consume(secret, approved_request.id)

    assert result.success is False
    assert result.reason == REASON_EXPIRED


def test_verify_falls_back_to_database_and_recaches(token_service, cache, approved_request):
    """Test that a cache miss is only a slower path"""
    secret = token_service.issue(approved_request.id, {"amount": 50}, uses_remaining=3)
    cache.clear()

    result = token_service.verify(secret, approved_request.id)

    assert result.valid is True
    assert result.uses_remaining == 3
    assert build_cache_key("TOKEN", hash_token(secret)) in cache.store


def test_unreadable_cache_entry_falls_back_to_database(token_service, cache, approved_request):
    secret = token_service.issue(approved_request.id, {})
    key = build_cache_key("TOKEN", hash_token(secret))
    cache.set(key, "{not json", ex=60)

    result = token_service.verify(secret, approved_request.id)

    assert result.valid is True
    assert '"usesRemaining":1' in cache.store[key][0]


def test_cache_outage_is_tolerated(db, broken_cache, approved_request):
    """Test that every operation works against an unreachable cache"""
    service = TokenService(db, broken_cache)

    secret = service.issue(approved_request.id, {}, uses_remaining=2)
    assert service.verify(secret, approved_request.id).valid is True
    assert service.consume(secret, approved_request.id).uses_remaining == 1
    assert service.revoke(secret, approved_request.id) is True
    assert service.verify(secret, approved_request.id).reason == REASON_NOT_FOUND


# ----------------------------------------------------------------------
# Consume
# ----------------------------------------------------------------------


def test_consume_multi_use_rewrites_cache(db, token_service, cache, approved_request):
    secret = token_service.issue(approved_request.id, {}, uses_remaining=3)
    key = build_cache_key("TOKEN", hash_token(secret))

    result = token_service.consume(secret, approved_request.id, {"amount": 20})

    assert result.success is True
    assert result.uses_remaining == 2
    assert '"usesRemaining":2' in cache.store[key][0]
    assert _request_status(db, approved_request.id) == "approved"
    assert _token_row(db, secret).used_at is not None


def test_final_use_marks_request_used_and_drops_cache(db, token_service, cache, approved_request):
    secret = token_service.issue(approved_request.id, {}, uses_remaining=2)
    key = build_cache_key("TOKEN", hash_token(secret))

    token_service.consume(secret, approved_request.id)
    final = token_service.consume(secret, approved_request.id)

    assert final.success is True
    assert final.uses_remaining == 0
    assert key not in cache.store
    assert _request_status(db, approved_request.id) == "used"
    assert token_service.verify(secret, approved_request.id).reason == REASON_CONSUMED


def test_unlimited_token_stays_unlimited(db, token_service, approved_request):
    """Test that -1 survives any number of uses without closing the request"""
    secret = token_service.issue(approved_request.id, {}, uses_remaining=-1)

    for _ in range(5):
        result = token_service.consume(secret, approved_request.id)
        assert result.success is True
        assert result.uses_remaining == -1

    assert _token_row(db, secret).uses_remaining == -1
    assert _request_status(db, approved_request.id) == "approved"


def test_only_one_consumer_wins_the_last_use(db, cache, approved_request, monkeypatch):
    """Test that a consumer losing the compare-and-swap cannot spend the last use"""
    service = TokenService(db, cache)
    rival = TokenService(db, cache)
    secret = service.issue(approved_request.id, {}, uses_remaining=1)

    original_swap = TokenService._swap_uses
    rival_results = []

    def racing_swap(self, token_id, request_id, expected, new_uses):
        if self is service and not rival_results:
            # the rival spends the same use between our read and our write
            rival_results.append(rival.consume(secret, request_id))
        return original_swap(self, token_id, request_id, expected, new_uses)

    monkeypatch.setattr(TokenService, "_swap_uses", racing_swap)

    result = service.consume(secret, approved_request.id)

    assert rival_results[0].success is True
    assert rival_results[0].uses_remaining == 0
    assert result.success is False
    assert result.reason == REASON_CONSUMED
    assert _token_row(db, secret).uses_remaining == 0


def test_lost_race_with_uses_left_retries(db, cache, approved_request, monkeypatch):
    service = TokenService(db, cache)
    rival = TokenService(db, cache)
    secret = service.issue(approved_request.id, {}, uses_remaining=3)

    original_swap = TokenService._swap_uses
    raced = []

    def racing_swap(self, token_id, request_id, expected, new_uses):
        if self is service and not raced:
            raced.append(rival.consume(secret, request_id))
        return original_swap(self, token_id, request_id, expected, new_uses)

    monkeypatch.setattr(TokenService, "_swap_uses", racing_swap)

    result = service.consume(secret, approved_request.id)

    assert raced[0].uses_remaining == 2
    assert result.success is True
    assert result.uses_remaining == 1


def test_late_cache_rewrite_does_not_revive_exhausted_token(db, cache, approved_request, monkeypatch):
    """Test that a rival spending the last use during our cache rewrite wins"""
    service = TokenService(db, cache)
    rival = TokenService(db, cache)
    secret = service.issue(approved_request.id, {}, uses_remaining=2)
    key = build_cache_key("TOKEN", hash_token(secret))

    original_cache_token = TokenService._cache_token
    rival_results = []

    def slow_cache_token(self, token_hash, projection):
        if self is service and not rival_results:
            # the rival spends the last use after our commit but before our write
            rival_results.append(rival.consume(secret, approved_request.id))
        return original_cache_token(self, token_hash, projection)

    monkeypatch.setattr(TokenService, "_cache_token", slow_cache_token)

    result = service.consume(secret, approved_request.id)

    assert result.success is True
    assert result.uses_remaining == 1
    assert rival_results[0].success is True
    assert rival_results[0].uses_remaining == 0
    assert _token_row(db, secret).uses_remaining == 0
    assert key not in cache.store

    verification = service.verify(secret, approved_request.id)
    assert verification.valid is False
    assert verification.reason == REASON_CONSUMED


def test_concurrent_consumers_spend_the_last_use_once(db, approved_request):
    """Test the last use under real threads, each with its own session"""
    secret = TokenService(db, NullTokenCache()).issue(approved_request.id, {}, uses_remaining=1)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())

    workers = 8
    barrier = threading.Barrier(workers, timeout=10)
    results = []
    errors = []
    lock = threading.Lock()

    def consume():
        session = session_factory()
        try:
            service = TokenService(session, NullTokenCache())
            barrier.wait()
            result = service.consume(secret, approved_request.id)
            with lock:
                results.append(result)
        except Exception as exc:
            with lock:
                errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=consume) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == workers
    winners = [r for r in results if r.success]
    assert len(winners) == 1
    assert winners[0].uses_remaining == 0
    assert all(r.reason == REASON_CONSUMED for r in results if not r.success)
    assert _token_row(db, secret).uses_remaining == 0
    assert _request_status(db, approved_request.id) == "used"


def test_consume_rechecks_revocation_despite_cache(db, token_service, approved_request):
    """Test that a stale cache entry cannot spend a token revoked in the database"""
    secret = token_service.issue(approved_request.id, {}, uses_remaining=2)
    db.execute(update(Token).values(revoked_at=timeutil.utcnow()))
    db.commit()

    result = token_service.consume(secret, approved_request.id)

    assert result.success is False
    assert result.reason == REASON_NOT_FOUND


def test_consume_is_audited_with_action_details(db, token_service, approved_request):
    secret = token_service.issue(approved_request.id, {})
    token_service.consume(secret, approved_request.id, {"to": "bob"})

    entry = db.query(AuditLog).filter(AuditLog.event_type == "token_use").one()
    assert entry.details["action_details"] == {"to": "bob"}
    assert entry.details["uses_remaining"] == 0


def test_consume_store_failure_propagates(approved_request, cache, monkeypatch, db):
    service = TokenService(db, cache)
    secret = service.issue(approved_request.id, {})

    def broken_execute(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("connection lost"))

    monkeypatch.setattr(db, "execute", broken_execute)

    with pytest.raises(OperationalError):
        service.consume(secret, approved_request.id)


# ----------------------------------------------------------------------
# Revoke
# ----------------------------------------------------------------------


def test_revocation_is_terminal(token_service, cache, approved_request):
    secret = token_service.issue(approved_request.id, {}, uses_remaining=5)

    assert token_service.revoke(secret, approved_request.id) is True

    assert build_cache_key("TOKEN", hash_token(secret)) not in cache.store
    assert token_service.verify(secret, approved_request.id).valid is False
    assert token_service.consume(secret, approved_request.id).success is False
    assert token_service.revoke(secret, approved_request.id) is False


def test_revoke_unknown_token_returns_false(token_service, approved_request):
    assert token_service.revoke("otp_nope", approved_request.id) is False


def test_revoke_store_failure_returns_false(db, token_service, cache, approved_request, monkeypatch):
    secret = token_service.issue(approved_request.id, {})
    key = build_cache_key("TOKEN", hash_token(secret))

    def broken_execute(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("connection lost"))

    monkeypatch.setattr(db, "execute", broken_execute)

    assert token_service.revoke(secret, approved_request.id) is False

    monkeypatch.undo()
    assert key in cache.store
    assert _token_row(db, secret).revoked_at is None
    assert token_service.verify(secret, approved_request.id).valid is True


def test_revoke_all_for_request(db, token_service, cache, approved_request):
    first = token_service.issue(approved_request.id, {})
    second = token_service.issue(approved_request.id, {}, uses_remaining=-1)

    assert token_service.revoke_all_for_request(approved_request.id) == 2
    assert token_service.revoke_all_for_request(approved_request.id) == 0

    assert cache.store == {}
    assert token_service.verify(first, approved_request.id).reason == REASON_NOT_FOUND
    assert token_service.verify(second, approved_request.id).reason == REASON_NOT_FOUND


# ----------------------------------------------------------------------
# Encrypted OTP payloads
# ----------------------------------------------------------------------


def test_encrypted_payload_is_handed_out_once(db, token_service, cache, approved_request):
    stored = token_service.store_encrypted_payload(
        approved_request.id, "b64:ciphertext", "sms", sender="+15550100", ttl_seconds=120
    )
    assert build_cache_key("OTP", approved_request.id) in cache.store

    first = token_service.consume_encrypted_payload(approved_request.id)
    second = token_service.consume_encrypted_payload(approved_request.id)

    assert first is not None
    assert first.id == stored.id
    assert first.encrypted_payload == "b64:ciphertext"
    assert first.sender == "+15550100"
    assert second is None
    assert _request_status(db, approved_request.id) == "used"


def test_encrypted_payload_read_from_database_on_cache_miss(token_service, cache, approved_request):
    token_service.store_encrypted_payload(approved_request.id, "ciphertext", "email", subject="Your code")
    cache.clear()

    payload = token_service.consume_encrypted_payload(approved_request.id)

    assert payload.subject == "Your code"
    assert payload.source == "email"


def test_expired_encrypted_payload_is_not_returned(token_service, approved_request, monkeypatch):
    token_service.store_encrypted_payload(approved_request.id, "ciphertext", "whatsapp", ttl_seconds=60)

    later = timeutil.utcnow() + timedelta(seconds=601)
    monkeypatch.setattr("agent_otp.services.token_service.utcnow", lambda: later)

    assert token_service.consume_encrypted_payload(approved_request.id) is None


def test_encrypted_payload_rejects_unknown_source(token_service, approved_request):
    with pytest.raises(ValueError):
        token_service.store_encrypted_payload(approved_request.id, "ciphertext", "pigeon")


def test_consume_outcomes_are_counted(token_service, approved_request):
    labels = {"result": "not_found"}
    before = REGISTRY.get_sample_value("agentotp_token_consumptions_total", labels) or 0

    token_service.consume("otp_missing", approved_request.id)

    assert REGISTRY.get_sample_value("agentotp_token_consumptions_total", labels) == before + 1
