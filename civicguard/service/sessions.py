from __future__ import annotations

import contextlib
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence

from civicguard.config import SessionLimitPolicy
from civicguard.logging import get_logger
from civicguard.service.errors import (
    BackendUnavailableError,
    ExpiredError,
    NotFoundError,
    RevokedError,
    SessionLimitError,
    ValidationError,
)
from civicguard.service.hashing import SecretHasher
from civicguard.storage.errors import BackendUnavailable, ConstraintViolation
from civicguard.storage.models import (
    RevokeReason,
    Session,
    SessionValidation,
    Token,
    TokenKind,
    utcnow,
)

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 16
MAX_SECRET_LENGTH = 512


class CredentialStore(Protocol):
    """Persistence primitives shared by the session and token services.

    Every mutation is a single conditional write; methods returning ``bool``
    or ``int`` report how many records actually changed state.
    """

    name: str

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...

    def insert_session(
        self, session: Session, *, max_active: int, policy: SessionLimitPolicy, now: datetime
    ) -> List[str]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_hashes(self, hashes: Sequence[str]) -> Optional[Session]: ...

    def expire_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_session(self, session_id: str, now: datetime, reason: RevokeReason = ...) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
        reason: RevokeReason = ...,
    ) -> int: ...

    def rotate_session(self, old_session_id: str, new_session: Session, now: datetime) -> bool: ...

    def extend_session(self, session_id: str, expires_at: datetime, now: datetime) -> bool: ...

    def rehash_session(self, session_id: str, old_hash: str, new_hash: str) -> bool: ...

    def session_stats(self, now: datetime, *, top: int = 10) -> Dict[str, object]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def purge_sessions(self, cutoff: datetime) -> int: ...

    def insert_token(self, token: Token, now: datetime) -> int: ...

    def rehash_token(self, token_id: str, old_hash: str, new_hash: str) -> bool: ...

    def token_stats(self, now: datetime) -> Dict[str, Dict[str, int]]: ...

    def find_token_by_hashes(self, hashes: Sequence[str], kind: TokenKind) -> Optional[Token]: ...

    def consume_token(self, hashes: Sequence[str], kind: TokenKind, now: datetime) -> Optional[str]: ...

    def purge_tokens(self, cutoff: datetime) -> int: ...


def is_well_formed_secret(raw: object) -> bool:
    return isinstance(raw, str) and MIN_SECRET_LENGTH <= len(raw) <= MAX_SECRET_LENGTH


@contextlib.contextmanager
def backend_errors(operation: str) -> Iterator[None]:
    """Translate storage outages into the 503 service error."""
    try:
        yield
    except BackendUnavailable as exc:
        logger.error(
            "credential_store_unavailable",
            operation=operation,
            backend=exc.backend,
            error=exc.message,
        )
        raise BackendUnavailableError(
            "credential store unavailable", detail={"operation": operation}
        ) from exc


class SessionStore:
    """Refresh-session lifecycle over a :class:`CredentialStore`.

    ``validate_session`` has a write side effect: an active session found past
    its expiry is marked inactive (reason ``expired``) before the negative
    result is returned. The update is conditional, so concurrent validators
    racing on the same session are harmless.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        *,
        ttl_minutes: int = 1440,
        max_concurrent: int = 3,
        policy: SessionLimitPolicy = SessionLimitPolicy.EVICT_OLDEST,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ttl_minutes = ttl_minutes
        self.max_concurrent = max_concurrent
        self.policy = SessionLimitPolicy(policy)
        self.clock = clock

    @staticmethod
    def _require_secret(raw: object) -> str:
        if not is_well_formed_secret(raw):
            raise ValidationError(
                "session secret is malformed",
                detail={"min_length": MIN_SECRET_LENGTH, "max_length": MAX_SECRET_LENGTH},
            )
        return raw  # type: ignore[return-value]

    def create(
        self,
        user_id: str,
        raw_secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
        tenant_id: str = "public",
    ) -> Session:
        self._require_secret(raw_secret)
        now = self.clock()
        session = Session.new(
            user_id,
            self.hasher.hash(raw_secret),
            now=now,
            ttl_minutes=ttl_minutes or self.ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            tenant_id=tenant_id,
        )
        try:
            with backend_errors("session_create"):
                evicted = self.store.insert_session(
                    session, max_active=self.max_concurrent, policy=self.policy, now=now
                )
        except ConstraintViolation as exc:
            if exc.detail.get("constraint") == "session_limit":
                logger.warning(
                    "session_limit_rejected",
                    user_id=user_id,
                    limit=self.max_concurrent,
                )
                raise SessionLimitError(
                    "concurrent session limit reached",
                    detail={"limit": self.max_concurrent},
                ) from exc
            raise ValidationError("session secret already in use") from exc
        if evicted:
            logger.info(
                "sessions_evicted",
                user_id=user_id,
                evicted_session_ids=evicted,
                limit=self.max_concurrent,
            )
        logger.info("session_created", user_id=user_id, session_id=session.id, tenant_id=tenant_id)
        return session

    def validate_session(self, raw_secret: str) -> SessionValidation:
        if not is_well_formed_secret(raw_secret):
            return SessionValidation(valid=False, reason="malformed")
        now = self.clock()
        try:
            session = self.store.find_session_by_hashes(self.hasher.candidates(raw_secret))
            if session and session.is_active and session.expires_at <= now:
                self.store.expire_session(session.id, now)
                logger.info("session_expired_on_read", session_id=session.id, user_id=session.user_id)
                return SessionValidation(valid=False, session=session, reason="expired")
        except Exception as exc:
            logger.error(
                "session_validation_unavailable",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SessionValidation(valid=False, reason="unavailable")
        if session is None:
            return SessionValidation(valid=False, reason="not_found")
        if not session.is_active:
            reason = "expired" if session.revoke_reason == RevokeReason.EXPIRED.value else "revoked"
            return SessionValidation(valid=False, session=session, reason=reason)
        if self.hasher.needs_rehash(session.token_hash):
            session = self._upgrade_hash(session, raw_secret)
        return SessionValidation(valid=True, session=session)

    def _upgrade_hash(self, session: Session, raw_secret: str) -> Session:
        """Re-store a session found under an older hash format in the current one."""
        new_hash = self.hasher.hash(raw_secret)
        try:
            changed = self.store.rehash_session(session.id, session.token_hash, new_hash)
        except (BackendUnavailable, ConstraintViolation) as exc:
            logger.warning("session_hash_upgrade_failed", session_id=session.id, error=str(exc))
            return session
        if not changed:
            return session
        logger.info(
            "session_hash_upgraded",
            session_id=session.id,
            from_version=SecretHasher.version_of(session.token_hash) or "legacy",
            to_version=self.hasher.version,
        )
        return replace(session, token_hash=new_hash)

    def extend(self, session_id: str, *, ttl_minutes: Optional[int] = None) -> Session:
        """Move a live session's expiry to ``now + ttl``; an expiry already later is kept."""
        now = self.clock()
        new_expiry = now + timedelta(minutes=ttl_minutes or self.ttl_minutes)
        with backend_errors("session_extend"):
            extended = self.store.extend_session(session_id, new_expiry, now)
            current = self.store.get_session(session_id)
            if current is None:
                raise NotFoundError("session not found")
            if not extended:
                if current.is_active and current.expires_at <= now:
                    self.store.expire_session(current.id, now)
                    raise ExpiredError("session expired")
                if current.revoke_reason == RevokeReason.EXPIRED.value:
                    raise ExpiredError("session expired")
                raise RevokedError("session revoked", detail={"reason": current.revoke_reason})
        logger.info(
            "session_extended",
            session_id=session_id,
            user_id=current.user_id,
            expires_at=current.expires_at.isoformat(),
        )
        return current

    def stats(self, *, top: int = 10) -> Dict[str, object]:
        with backend_errors("session_stats"):
            return self.store.session_stats(self.clock(), top=top)

    def rotate(
        self,
        raw_secret: str,
        new_raw_secret: str,
        *,
        ttl_minutes: Optional[int] = None,
    ) -> Session:
        self._require_secret(raw_secret)
        self._require_secret(new_raw_secret)
        now = self.clock()
        with backend_errors("session_rotate"):
            current = self.store.find_session_by_hashes(self.hasher.candidates(raw_secret))
            if current is None:
                raise NotFoundError("session not found")
            if not current.is_active:
                if current.revoke_reason == RevokeReason.ROTATED.value:
                    logger.warning(
                        "session_rotation_reuse_detected",
                        session_id=current.id,
                        user_id=current.user_id,
                    )
                if current.revoke_reason == RevokeReason.EXPIRED.value:
                    raise ExpiredError("session expired")
                raise RevokedError("session revoked", detail={"reason": current.revoke_reason})
            if current.expires_at <= now:
                self.store.expire_session(current.id, now)
                raise ExpiredError("session expired")
            replacement = Session.new(
                current.user_id,
                self.hasher.hash(new_raw_secret),
                now=now,
                ttl_minutes=ttl_minutes or self.ttl_minutes,
                ip_address=current.ip_address,
                user_agent=current.user_agent,
                tenant_id=current.tenant_id,
            )
            try:
                rotated = self.store.rotate_session(current.id, replacement, now)
            except ConstraintViolation as exc:
                raise ValidationError("session secret already in use") from exc
        if not rotated:
            # lost a race with another rotation or a revocation
            raise RevokedError("session revoked")
        logger.info(
            "session_rotated",
            user_id=current.user_id,
            old_session_id=current.id,
            session_id=replacement.id,
        )
        return replacement

    def invalidate(self, session_id: str) -> bool:
        with backend_errors("session_invalidate"):
            changed = self.store.revoke_session(session_id, self.clock(), RevokeReason.REVOKED)
        if changed:
            logger.info("session_revoked", session_id=session_id)
        return changed

    def invalidate_all_by_user(self, user_id: str) -> int:
        with backend_errors("session_invalidate_all"):
            count = self.store.revoke_user_sessions(user_id, self.clock())
        logger.info("user_sessions_revoked", user_id=user_id, revoked=count)
        return count

    def invalidate_others(self, user_id: str, keep_id: str) -> int:
        with backend_errors("session_invalidate_others"):
            count = self.store.revoke_user_sessions(
                user_id, self.clock(), except_session_id=keep_id
            )
        logger.info("user_sessions_revoked", user_id=user_id, revoked=count, kept_session_id=keep_id)
        return count

    def list_active(self, user_id: str) -> List[Session]:
        with backend_errors("session_list"):
            return self.store.list_active_sessions(user_id, self.clock())

    def get(self, session_id: str) -> Optional[Session]:
        with backend_errors("session_get"):
            return self.store.get_session(session_id)
