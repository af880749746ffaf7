from __future__ import annotations

import contextlib
import threading
import zlib
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Set

from civicguard.config import SessionLimitPolicy
from civicguard.storage.errors import BackendUnavailable, ConstraintViolation
from civicguard.storage.models import (
    RateLimitCounter,
    RateLimitInfo,
    RevokeReason,
    Session,
    Token,
    TokenKind,
)

_DEFAULT_STRIPES = 64


class StripedLocks:
    """Fixed pool of locks selected by key hash.

    Unrelated keys almost never share a stripe, so contention stays per key
    without keeping one lock object alive per key forever.
    """

    def __init__(self, stripes: int = _DEFAULT_STRIPES, *, timeout: float = 2.0, backend: str = "memory") -> None:
        self._locks = [threading.Lock() for _ in range(stripes)]
        self.timeout = timeout
        self.backend = backend

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            raise BackendUnavailable(self.backend, f"lock wait exceeded {self.timeout}s")
        try:
            yield
        finally:
            lock.release()

    @contextlib.contextmanager
    def try_hold(self, key: str) -> Iterator[bool]:
        """Non-blocking variant for background hygiene; yields False when busy."""
        lock = self._lock_for(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


class MemoryStore:
    """In-process credential store for sessions and single-use tokens.

    Records are treated as immutable: every transition swaps in a new object
    built with ``dataclasses.replace`` while the owning user's stripe lock is
    held, so readers never observe a half-applied update.
    """

    name = "memory"

    def __init__(self, *, lock_timeout: float = 2.0) -> None:
        self._user_locks = StripedLocks(timeout=lock_timeout)
        self.sessions: Dict[str, Session] = {}
        self._session_by_hash: Dict[str, str] = {}
        self._sessions_by_user: Dict[str, Set[str]] = {}
        self.tokens: Dict[str, Token] = {}
        self._token_by_hash: Dict[str, str] = {}
        self._tokens_by_user: Dict[str, Set[str]] = {}

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # sessions
    def insert_session(
        self,
        session: Session,
        *,
        max_active: int,
        policy: SessionLimitPolicy,
        now: datetime,
    ) -> List[str]:
        """Insert ``session`` enforcing the per-user cap; returns evicted ids."""
        evicted: List[str] = []
        with self._user_locks.hold(session.user_id):
            live = sorted(
                (
                    s
                    for s in self._user_sessions(session.user_id)
                    if s.is_live(now)
                ),
                key=lambda s: (s.created_at, s.id),
            )
            if max_active > 0 and len(live) >= max_active:
                if policy == SessionLimitPolicy.REJECT:
                    raise ConstraintViolation(
                        "session limit reached",
                        {
                            "constraint": "session_limit",
                            "user_id": session.user_id,
                            "active": len(live),
                            "limit": max_active,
                        },
                    )
                overflow = len(live) - max_active + 1
                for victim in live[:overflow]:
                    self._deactivate(victim, now, RevokeReason.EVICTED)
                    evicted.append(victim.id)
            existing = self._session_by_hash.setdefault(session.token_hash, session.id)
            if existing != session.id:
                raise ConstraintViolation(
                    "session token hash already exists",
                    {"constraint": "session_token_hash"},
                )
            self.sessions[session.id] = replace(session)
            self._sessions_by_user.setdefault(session.user_id, set()).add(session.id)
        return evicted

    def _user_sessions(self, user_id: str) -> List[Session]:
        ids = list(self._sessions_by_user.get(user_id, ()))
        return [self.sessions[sid] for sid in ids if sid in self.sessions]

    def _deactivate(self, session: Session, now: datetime, reason: RevokeReason) -> Session:
        updated = replace(
            session, is_active=False, revoked_at=now, revoke_reason=reason.value
        )
        self.sessions[session.id] = updated
        return updated

    def get_session(self, session_id: str) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        return replace(sess) if sess else None

    def find_session_by_hashes(self, hashes: Sequence[str]) -> Optional[Session]:
        for token_hash in hashes:
            sid = self._session_by_hash.get(token_hash)
            if sid and sid in self.sessions:
                return replace(self.sessions[sid])
        return None

    def expire_session(self, session_id: str, now: datetime) -> bool:
        current = self.sessions.get(session_id)
        if not current:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.sessions.get(session_id)
            if not current or not current.is_active or current.expires_at > now:
                return False
            self._deactivate(current, now, RevokeReason.EXPIRED)
            return True

    def revoke_session(self, session_id: str, now: datetime, reason: RevokeReason = RevokeReason.REVOKED) -> bool:
        current = self.sessions.get(session_id)
        if not current:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.sessions.get(session_id)
            if not current or not current.is_active:
                return False
            self._deactivate(current, now, reason)
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
        reason: RevokeReason = RevokeReason.REVOKED,
    ) -> int:
        revoked = 0
        with self._user_locks.hold(user_id):
            for sess in self._user_sessions(user_id):
                if sess.id == except_session_id or not sess.is_active:
                    continue
                self._deactivate(sess, now, reason)
                revoked += 1
        return revoked

    def rotate_session(self, old_session_id: str, new_session: Session, now: datetime) -> bool:
        """Deactivate a live session and insert its replacement atomically."""
        current = self.sessions.get(old_session_id)
        if not current or current.user_id != new_session.user_id:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.sessions.get(old_session_id)
            if not current or not current.is_live(now):
                return False
            existing = self._session_by_hash.setdefault(new_session.token_hash, new_session.id)
            if existing != new_session.id:
                raise ConstraintViolation(
                    "session token hash already exists",
                    {"constraint": "session_token_hash"},
                )
            self._deactivate(current, now, RevokeReason.ROTATED)
            self.sessions[new_session.id] = replace(new_session)
            self._sessions_by_user.setdefault(new_session.user_id, set()).add(new_session.id)
            return True

    def extend_session(self, session_id: str, expires_at: datetime, now: datetime) -> bool:
        """Push a live session's expiry out to ``expires_at``; never shortens it."""
        current = self.sessions.get(session_id)
        if not current:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.sessions.get(session_id)
            if not current or not current.is_live(now):
                return False
            self.sessions[session_id] = replace(
                current, expires_at=max(current.expires_at, expires_at)
            )
            return True

    def rehash_session(self, session_id: str, old_hash: str, new_hash: str) -> bool:
        current = self.sessions.get(session_id)
        if not current:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.sessions.get(session_id)
            if not current or current.token_hash != old_hash:
                return False
            self._swap_hash(self._session_by_hash, session_id, old_hash, new_hash)
            self.sessions[session_id] = replace(current, token_hash=new_hash)
            return True

    @staticmethod
    def _swap_hash(index: Dict[str, str], record_id: str, old_hash: str, new_hash: str) -> None:
        existing = index.setdefault(new_hash, record_id)
        if existing != record_id:
            raise ConstraintViolation("token hash already exists", {"constraint": "token_hash"})
        index.pop(old_hash, None)

    def session_stats(self, now: datetime, *, top: int = 10) -> Dict[str, object]:
        sessions = list(self.sessions.values())
        per_user: Dict[str, int] = {}
        for sess in sessions:
            if sess.is_live(now):
                per_user[sess.user_id] = per_user.get(sess.user_id, 0) + 1
        active = sum(per_user.values())
        ranked = sorted(per_user.items(), key=lambda item: (-item[1], item[0]))[:top]
        return {
            "total": len(sessions),
            "active": active,
            "ended": len(sessions) - active,
            "top_users": [{"user_id": uid, "active": count} for uid, count in ranked],
        }

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        live = [replace(s) for s in self._user_sessions(user_id) if s.is_live(now)]
        return sorted(live, key=lambda s: (s.created_at, s.id), reverse=True)

    def expire_sessions(self, now: datetime) -> int:
        expired = 0
        for user_id in list(self._sessions_by_user):
            with self._user_locks.try_hold(user_id) as acquired:
                if not acquired:
                    continue
                for sess in self._user_sessions(user_id):
                    if sess.is_active and sess.expires_at <= now:
                        self._deactivate(sess, now, RevokeReason.EXPIRED)
                        expired += 1
        return expired

    def purge_sessions(self, cutoff: datetime) -> int:
        removed = 0
        for user_id in list(self._sessions_by_user):
            with self._user_locks.try_hold(user_id) as acquired:
                if not acquired:
                    continue
                for sess in self._user_sessions(user_id):
                    ended_at = sess.revoked_at if not sess.is_active else sess.expires_at
                    if ended_at is None or ended_at >= cutoff:
                        continue
                    self.sessions.pop(sess.id, None)
                    self._session_by_hash.pop(sess.token_hash, None)
                    self._sessions_by_user[user_id].discard(sess.id)
                    removed += 1
                if not self._sessions_by_user.get(user_id):
                    self._sessions_by_user.pop(user_id, None)
        return removed

    # tokens
    def insert_token(self, token: Token, now: datetime) -> int:
        """Supersede the user's unused tokens of the same kind, then insert."""
        superseded = 0
        with self._user_locks.hold(token.user_id):
            for tid in list(self._tokens_by_user.get(token.user_id, ())):
                prior = self.tokens.get(tid)
                if prior and prior.kind == token.kind and prior.used_at is None:
                    self.tokens[tid] = replace(prior, used_at=now)
                    superseded += 1
            existing = self._token_by_hash.setdefault(token.token_hash, token.id)
            if existing != token.id:
                raise ConstraintViolation(
                    "token hash already exists", {"constraint": "token_hash"}
                )
            self.tokens[token.id] = replace(token)
            self._tokens_by_user.setdefault(token.user_id, set()).add(token.id)
        return superseded

    def find_token_by_hashes(self, hashes: Sequence[str], kind: TokenKind) -> Optional[Token]:
        for token_hash in hashes:
            tid = self._token_by_hash.get(token_hash)
            tok = self.tokens.get(tid) if tid else None
            if tok and tok.kind == kind:
                return replace(tok)
        return None

    def consume_token(self, hashes: Sequence[str], kind: TokenKind, now: datetime) -> Optional[str]:
        """Set ``used_at`` if still redeemable; returns the owner on success."""
        candidate = self.find_token_by_hashes(hashes, kind)
        if not candidate:
            return None
        with self._user_locks.hold(candidate.user_id):
            current = self.tokens.get(candidate.id)
            if not current or not current.is_redeemable(now):
                return None
            self.tokens[current.id] = replace(current, used_at=now)
            return current.user_id

    def rehash_token(self, token_id: str, old_hash: str, new_hash: str) -> bool:
        current = self.tokens.get(token_id)
        if not current:
            return False
        with self._user_locks.hold(current.user_id):
            current = self.tokens.get(token_id)
            if not current or current.token_hash != old_hash:
                return False
            self._swap_hash(self._token_by_hash, token_id, old_hash, new_hash)
            self.tokens[token_id] = replace(current, token_hash=new_hash)
            return True

    def token_stats(self, now: datetime) -> Dict[str, Dict[str, int]]:
        stats = {kind.value: {"active": 0, "used": 0, "expired": 0} for kind in TokenKind}
        for tok in list(self.tokens.values()):
            bucket = stats[tok.kind.value]
            if tok.used_at is not None:
                bucket["used"] += 1
            elif tok.expires_at <= now:
                bucket["expired"] += 1
            else:
                bucket["active"] += 1
        return stats

    def purge_tokens(self, cutoff: datetime) -> int:
        removed = 0
        for user_id in list(self._tokens_by_user):
            with self._user_locks.try_hold(user_id) as acquired:
                if not acquired:
                    continue
                for tid in list(self._tokens_by_user.get(user_id, ())):
                    tok = self.tokens.get(tid)
                    if not tok:
                        continue
                    used_long_ago = tok.used_at is not None and tok.used_at < cutoff
                    if used_long_ago or tok.expires_at < cutoff:
                        self.tokens.pop(tid, None)
                        self._token_by_hash.pop(tok.token_hash, None)
                        self._tokens_by_user[user_id].discard(tid)
                        removed += 1
                if not self._tokens_by_user.get(user_id):
                    self._tokens_by_user.pop(user_id, None)
        return removed


class MemoryRateLimitStore:
    """Per-process fixed-window counters (last link of the failover chain)."""

    name = "memory"

    def __init__(self, *, lock_timeout: float = 2.0) -> None:
        self._locks = StripedLocks(timeout=lock_timeout)
        self.counters: Dict[str, RateLimitCounter] = {}

    def increment(self, key: str, window_ms: int, max_hits: int, now_ms: int) -> RateLimitInfo:
        with self._locks.hold(key):
            current = self.counters.get(key)
            if current is None or now_ms >= current.window_end_ms:
                updated = RateLimitCounter(
                    key=key,
                    hits=1,
                    window_start_ms=now_ms,
                    window_ms=window_ms,
                    max_hits=max_hits,
                    updated_at_ms=now_ms,
                )
            else:
                updated = replace(
                    current, hits=current.hits + 1, max_hits=max_hits, updated_at_ms=now_ms
                )
            self.counters[key] = updated
        return RateLimitInfo.from_counter(
            updated.hits, updated.window_start_ms, updated.window_ms, max_hits, now_ms
        )

    def reset(self, key: str) -> None:
        with self._locks.hold(key):
            self.counters.pop(key, None)

    def cleanup(self, older_than_ms: int) -> int:
        removed = 0
        for key, counter in list(self.counters.items()):
            if counter.window_end_ms >= older_than_ms:
                continue
            with self._locks.try_hold(key) as acquired:
                if acquired and self.counters.get(key) is counter:
                    del self.counters[key]
                    removed += 1
        return removed

    def stats(self, now_ms: int) -> Dict[str, int]:
        counters = list(self.counters.values())
        active = [c for c in counters if c.window_end_ms > now_ms]
        return {
            "total_keys": len(counters),
            "active_windows": len(active),
            "blocked_keys": sum(1 for c in active if c.hits > c.max_hits),
        }

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        return None
