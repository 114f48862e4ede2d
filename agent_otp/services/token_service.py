"""Token service - issues, verifies, consumes and revokes ephemeral tokens.

Tokens live in two places: the ``tokens`` table (source of truth) and a
TTL-bound cache projection keyed by the token hash. Every change to
``uses_remaining`` rewrites or deletes the cache entry right after the
database commit; a cache miss or cache outage only costs a database read.

The same service relays encrypted OTP payloads, which are the one-shot
variant of a token: stored once, handed out at most once.
"""
import json
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agent_otp.config import settings
from agent_otp.exceptions import TokenIssueError
from agent_otp.models.otp_payload import OTP_SOURCES, OtpPayload
from agent_otp.models.permission_request import PermissionRequest
from agent_otp.models.token import UNLIMITED_USES, Token
from agent_otp.schemas.token import CachedToken, OtpPayloadData, TokenUsage, TokenVerification
from agent_otp.services.audit_service import AuditService
from agent_otp.utils.cache import TokenCache, build_cache_key
from agent_otp.utils.crypto import generate_token_secret, hash_token
from agent_otp.utils.logger import logger
from agent_otp.utils.metrics import (
    record_consume_conflict,
    record_token_consumption,
    record_token_issued,
    record_tokens_revoked,
)
from agent_otp.utils.timeutil import calculate_expires_at, clamp_ttl, is_expired, seconds_until, utcnow

REASON_MISMATCH = "Token does not match this permission request"
REASON_EXPIRED = "Token has expired"
REASON_CONSUMED = "Token has been fully consumed"
REASON_NOT_FOUND = "Token not found or revoked"
REASON_CONFLICT = "Token is being consumed concurrently, retry"

# Metric label per consume failure reason
_CONSUME_RESULTS = {
    REASON_MISMATCH: "mismatch",
    REASON_EXPIRED: "expired",
    REASON_CONSUMED: "consumed",
    REASON_NOT_FOUND: "not_found",
    REASON_CONFLICT: "conflict",
}


class TokenService:
    """Token lifecycle over a database session and a fast cache.

    Args:
        db:    SQLAlchemy session for the ``tokens`` / ``otp_payloads`` tables.
        cache: Best-effort key-value cache for token projections.
        audit: Optional audit sink; issue, use and revoke are recorded when set.
    """

    def __init__(self, db: Session, cache: TokenCache, audit: Optional[AuditService] = None):
        self.db = db
        self.cache = cache
        self.audit = audit

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        request_id: str,
        scope: Optional[Dict[str, Any]] = None,
        uses_remaining: int = 1,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """Mint a token for an approved request and return its plaintext secret.

        The secret is returned exactly once; only its SHA-256 is stored.

        Args:
            request_id:     Permission request the token is bound to.
            scope:          Granted scope (may be narrower than requested).
            uses_remaining: Number of uses, or ``-1`` for unlimited within the TTL.
            ttl_seconds:    Lifetime; defaults to TOKEN_DEFAULT_TTL_SECONDS and is
                            clamped to [TOKEN_MIN_TTL_SECONDS, TOKEN_MAX_TTL_SECONDS].

        Raises:
            ValueError:      uses_remaining is neither -1 nor positive.
            TokenIssueError: the database insert failed.
        """
        if uses_remaining != UNLIMITED_USES and uses_remaining < 1:
            raise ValueError("uses_remaining must be -1 (unlimited) or at least 1")

        ttl = clamp_ttl(
            ttl_seconds,
            settings.TOKEN_DEFAULT_TTL_SECONDS,
            settings.TOKEN_MIN_TTL_SECONDS,
            settings.TOKEN_MAX_TTL_SECONDS,
        )
        secret = generate_token_secret()
        token_hash = hash_token(secret)

        token = Token(
            permission_request_id=request_id,
            token_hash=token_hash,
            scope=dict(scope or {}),
            uses_remaining=uses_remaining,
            expires_at=calculate_expires_at(ttl),
        )
        try:
            self.db.add(token)
            self.db.commit()
            self.db.refresh(token)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Token insert failed", extra={"request_id": request_id}, exc_info=True)
            raise TokenIssueError(f"Failed to create token: {exc}") from exc

        self._cache_token(token_hash, self._projection(token))
        record_token_issued()

        logger.info(
            f"Issued token for request {request_id}",
            extra={"request_id": request_id, "token_id": token.id, "uses_remaining": uses_remaining},
        )
        self._audit(
            "token_issue",
            request_id,
            {"token_id": token.id, "uses_remaining": uses_remaining, "ttl_seconds": ttl},
        )
        return secret

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, secret: str, request_id: str) -> TokenVerification:
        """Check a token without spending a use.

        The cache is consulted first; on a miss the database is queried for a
        non-revoked token with the same hash and, when usable, the cache entry
        is rebuilt.
        """
        token_hash = hash_token(secret)

        cached = self._cached_token(token_hash)
        if cached is not None:
            return self._check(cached, request_id)

        token = self._find_live(token_hash)
        if token is None:
            return TokenVerification(valid=False, reason=REASON_NOT_FOUND)

        projection = self._projection(token)
        result = self._check(projection, request_id)
        if result.valid:
            self._cache_token(token_hash, projection)
        return result

    @staticmethod
    def _check(token: CachedToken, request_id: str) -> TokenVerification:
        if token.permission_request_id != request_id:
            return TokenVerification(valid=False, reason=REASON_MISMATCH)
        if is_expired(token.expires_at):
            return TokenVerification(valid=False, reason=REASON_EXPIRED)
        if token.uses_remaining == 0:
            return TokenVerification(valid=False, reason=REASON_CONSUMED)
        return TokenVerification(
            valid=True,
            scope=token.scope,
            uses_remaining=token.uses_remaining,
            expires_at=token.expires_at,
        )

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(
        self,
        secret: str,
        request_id: str,
        action_details: Optional[Dict[str, Any]] = None,
    ) -> TokenUsage:
        """Spend one use of a token.

        After verification the current count is re-read from the database and
        written back with a compare-and-swap ``UPDATE``; a concurrent consumer
        that changed the count first makes the swap miss, and the loop re-reads.
        Two callers racing for the last use therefore cannot both succeed.

        Raises:
            SQLAlchemyError: the database update failed.
        """
        verification = self.verify(secret, request_id)
        if not verification.valid:
            return self._rejected(verification.reason)

        token_hash = hash_token(secret)

        for _ in range(settings.TOKEN_CONSUME_MAX_RETRIES):
            row = (
                self.db.query(Token.id, Token.uses_remaining, Token.expires_at, Token.scope)
                .filter(
                    Token.token_hash == token_hash,
                    Token.permission_request_id == request_id,
                    Token.revoked_at.is_(None),
                )
                .first()
            )
            if row is None:
                self._uncache_token(token_hash)
                return self._rejected(REASON_NOT_FOUND)
            if is_expired(row.expires_at):
                self._uncache_token(token_hash)
                return self._rejected(REASON_EXPIRED)
            if row.uses_remaining == 0:
                self._uncache_token(token_hash)
                return self._rejected(REASON_CONSUMED)

            current = row.uses_remaining
            new_uses = current if current == UNLIMITED_USES else max(current - 1, 0)

            if not self._swap_uses(row.id, request_id, current, new_uses):
                record_consume_conflict()
                logger.info(
                    "Token consume lost a race, re-reading",
                    extra={"request_id": request_id, "token_id": row.id},
                )
                continue

            if new_uses == 0:
                self._uncache_token(token_hash)
            else:
                self._recache_after_use(
                    token_hash,
                    CachedToken(
                        id=row.id,
                        permission_request_id=request_id,
                        scope=row.scope or {},
                        uses_remaining=new_uses,
                        expires_at=row.expires_at,
                    ),
                )

            logger.info(
                f"Token used for request {request_id}",
                extra={"request_id": request_id, "token_id": row.id, "uses_remaining": new_uses},
            )
            self._audit(
                "token_use",
                request_id,
                {"token_id": row.id, "uses_remaining": new_uses, "action_details": action_details or {}},
            )
            record_token_consumption("success")
            return TokenUsage(success=True, uses_remaining=new_uses)

        logger.warning("Token consume gave up after repeated conflicts", extra={"request_id": request_id})
        return self._rejected(REASON_CONFLICT)

    @staticmethod
    def _rejected(reason: Optional[str]) -> TokenUsage:
        record_token_consumption(_CONSUME_RESULTS.get(reason, "invalid"))
        return TokenUsage(success=False, uses_remaining=0, reason=reason)

    def _swap_uses(self, token_id: str, request_id: str, expected: int, new_uses: int) -> bool:
        """Conditionally write ``new_uses``; False when the row no longer holds ``expected``.

        Exhausting the token also moves its approved request to ``used`` in
        the same transaction.
        """
        now = utcnow()
        try:
            result = self.db.execute(
                update(Token)
                .where(
                    Token.id == token_id,
                    Token.uses_remaining == expected,
                    Token.revoked_at.is_(None),
                )
                .values(uses_remaining=new_uses, used_at=now)
                .execution_options(synchronize_session=False)
            )
            swapped = result.rowcount == 1
            if swapped and new_uses == 0:
                self.db.execute(
                    update(PermissionRequest)
                    .where(PermissionRequest.id == request_id, PermissionRequest.status == "approved")
                    .values(status="used")
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Token usage update failed", extra={"request_id": request_id}, exc_info=True)
            raise
        return swapped

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, secret: str, request_id: str) -> bool:
        """Revoke one token.

        Returns False, without raising, when no live token matched or the
        database update failed.
        """
        token_hash = hash_token(secret)
        try:
            result = self.db.execute(
                update(Token)
                .where(
                    Token.token_hash == token_hash,
                    Token.permission_request_id == request_id,
                    Token.revoked_at.is_(None),
                )
                .values(revoked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Token revoke failed", extra={"request_id": request_id}, exc_info=True)
            return False

        self._uncache_token(token_hash)

        if result.rowcount == 0:
            return False

        logger.info(f"Revoked token for request {request_id}", extra={"request_id": request_id})
        record_tokens_revoked()
        self._audit("token_revoke", request_id, {"count": 1})
        return True

    def revoke_all_for_request(self, request_id: str) -> int:
        """Revoke every outstanding token of a request; returns how many were revoked"""
        hashes = [
            token_hash
            for (token_hash,) in self.db.query(Token.token_hash)
            .filter(Token.permission_request_id == request_id, Token.revoked_at.is_(None))
            .all()
        ]
        if not hashes:
            return 0

        try:
            self.db.execute(
                update(Token)
                .where(Token.permission_request_id == request_id, Token.revoked_at.is_(None))
                .values(revoked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Bulk token revoke failed", extra={"request_id": request_id}, exc_info=True)
            raise

        for token_hash in hashes:
            self._uncache_token(token_hash)

        logger.info(
            f"Revoked {len(hashes)} token(s) for request {request_id}",
            extra={"request_id": request_id},
        )
        record_tokens_revoked(len(hashes))
        self._audit("token_revoke", request_id, {"count": len(hashes)})
        return len(hashes)

    # ------------------------------------------------------------------
    # Encrypted OTP payloads
    # ------------------------------------------------------------------

    def store_encrypted_payload(
        self,
        request_id: str,
        encrypted_payload: str,
        source: str,
        sender: Optional[str] = None,
        subject: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> OtpPayloadData:
        """Persist an encrypted OTP for one-time pickup by the requesting agent"""
        if source not in OTP_SOURCES:
            raise ValueError(f"source must be one of: {', '.join(OTP_SOURCES)}")

        ttl = clamp_ttl(
            ttl_seconds,
            settings.OTP_DEFAULT_TTL_SECONDS,
            settings.OTP_MIN_TTL_SECONDS,
            settings.OTP_MAX_TTL_SECONDS,
        )
        payload = OtpPayload(
            permission_request_id=request_id,
            encrypted_payload=encrypted_payload,
            source=source,
            sender=sender,
            subject=subject,
            expires_at=calculate_expires_at(ttl),
        )
        try:
            self.db.add(payload)
            self.db.commit()
            self.db.refresh(payload)
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("OTP payload insert failed", extra={"request_id": request_id}, exc_info=True)
            raise

        data = OtpPayloadData(
            id=payload.id,
            permission_request_id=request_id,
            encrypted_payload=encrypted_payload,
            source=source,
            sender=sender,
            subject=subject,
            expires_at=payload.expires_at,
        )
        self._cache_set(build_cache_key("OTP", request_id), data.model_dump_json(by_alias=True), data.expires_at)
        self._audit("otp_store", request_id, {"source": source, "sender": sender})
        return data

    def consume_encrypted_payload(self, request_id: str) -> Optional[OtpPayloadData]:
        """Hand out an encrypted OTP exactly once; None if absent, expired or already taken"""
        cache_key = build_cache_key("OTP", request_id)
        now = utcnow()
        try:
            result = self.db.execute(
                update(OtpPayload)
                .where(
                    OtpPayload.permission_request_id == request_id,
                    OtpPayload.consumed_at.is_(None),
                    OtpPayload.expires_at >= now,
                )
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount > 0
            if claimed:
                self.db.execute(
                    update(PermissionRequest)
                    .where(PermissionRequest.id == request_id, PermissionRequest.status == "approved")
                    .values(status="used")
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("OTP payload claim failed", extra={"request_id": request_id}, exc_info=True)
            raise

        cached = self._cache_get(cache_key)
        self._cache_delete(cache_key)
        if not claimed:
            return None

        data = self._parse(OtpPayloadData, cached) if cached else None
        if data is None:
            payload = self.db.query(OtpPayload).filter(OtpPayload.permission_request_id == request_id).first()
            data = OtpPayloadData(
                id=payload.id,
                permission_request_id=request_id,
                encrypted_payload=payload.encrypted_payload,
                source=payload.source,
                sender=payload.sender,
                subject=payload.subject,
                expires_at=payload.expires_at,
            )

        self._audit("otp_consume", request_id, {"source": data.source})
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_live(self, token_hash: str) -> Optional[Token]:
        return (
            self.db.query(Token)
            .filter(Token.token_hash == token_hash, Token.revoked_at.is_(None))
            .first()
        )

    @staticmethod
    def _projection(token: Token) -> CachedToken:
        return CachedToken(
            id=token.id,
            permission_request_id=token.permission_request_id,
            scope=token.scope or {},
            uses_remaining=token.uses_remaining,
            expires_at=token.expires_at,
        )

    def _cached_token(self, token_hash: str) -> Optional[CachedToken]:
        raw = self._cache_get(build_cache_key("TOKEN", token_hash))
        if raw is None:
            return None
        return self._parse(CachedToken, raw)

    def _cache_token(self, token_hash: str, projection: CachedToken) -> None:
        self._cache_set(
            build_cache_key("TOKEN", token_hash),
            projection.model_dump_json(by_alias=True),
            projection.expires_at,
        )

    def _uncache_token(self, token_hash: str) -> None:
        self._cache_delete(build_cache_key("TOKEN", token_hash))

    def _recache_after_use(self, token_hash: str, projection: CachedToken) -> None:
        """Rewrite the cached count after a use, then drop it if the row moved on.

        A rival consumer may commit and clear the entry between our commit and
        our cache write. The cached count must never differ from the stored
        one once this returns.
        """
        self._cache_token(token_hash, projection)
        try:
            current = (
                self.db.query(Token.uses_remaining)
                .filter(Token.id == projection.id, Token.revoked_at.is_(None))
                .scalar()
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Could not confirm cached token count, dropping entry", exc_info=True)
            current = None
        if current != projection.uses_remaining:
            self._uncache_token(token_hash)

    @staticmethod
    def _parse(model, raw: str):
        try:
            return model.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Discarding unreadable cache entry")
            return None

    def _cache_get(self, key: str) -> Optional[str]:
        try:
            return self.cache.get(key)
        except Exception as exc:
            logger.warning(f"Cache read failed, falling back to database: {exc}")
            return None

    def _cache_set(self, key: str, value: str, expires_at) -> None:
        """Write with a TTL equal to the remaining lifetime; skip once nothing is left"""
        ttl = seconds_until(expires_at)
        if ttl <= 0:
            return
        try:
            self.cache.set(key, value, ex=ttl)
        except Exception as exc:
            logger.warning(f"Cache write failed: {exc}")

    def _cache_delete(self, key: str) -> None:
        try:
            self.cache.delete(key)
        except Exception as exc:
            logger.warning(f"Cache delete failed: {exc}")

    def _audit(self, event_type: str, request_id: str, details: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log(event_type, permission_request_id=request_id, details=details)


def create_token_service(db: Session, cache: TokenCache, audit: Optional[AuditService] = None) -> TokenService:
    """Creates a new token service instance."""
    return TokenService(db, cache, audit)
