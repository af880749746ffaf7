from __future__ import annotations

import contextlib
import os
import sqlite3
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from civicguard.config import SessionLimitPolicy
from civicguard.logging import get_logger
from civicguard.storage.errors import BackendUnavailable, ConstraintViolation
from civicguard.storage.models import (
    RateLimitInfo,
    RevokeReason,
    Session,
    Token,
    TokenKind,
    from_ms,
    to_ms,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      tenant_id TEXT NOT NULL DEFAULT 'public',
      token_hash TEXT NOT NULL UNIQUE,
      created_at INTEGER NOT NULL,
      expires_at INTEGER NOT NULL,
      is_active INTEGER NOT NULL DEFAULT 1,
      revoked_at INTEGER,
      revoke_reason TEXT,
      ip_address TEXT,
      user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_active ON sessions(user_id, is_active, expires_at);",
    """
    CREATE TABLE IF NOT EXISTS tokens (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      kind TEXT NOT NULL,
      token_hash TEXT NOT NULL UNIQUE,
      created_at INTEGER NOT NULL,
      expires_at INTEGER NOT NULL,
      used_at INTEGER,
      ip_address TEXT,
      user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tokens_user_kind ON tokens(user_id, kind, used_at, expires_at);",
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
      key TEXT PRIMARY KEY,
      hits INTEGER NOT NULL,
      window_start INTEGER NOT NULL,
      window_ms INTEGER NOT NULL,
      max_hits INTEGER NOT NULL,
      updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rate_limits_window_end ON rate_limits(window_start + window_ms);",
)

# Rollover is decided inside the write so concurrent callers cannot both
# observe a stale window and reset it.
_INCREMENT_SQL = """
INSERT INTO rate_limits(key, hits, window_start, window_ms, max_hits, updated_at)
VALUES (?, 1, ?, ?, ?, ?)
ON CONFLICT(key) DO UPDATE SET
  hits = CASE WHEN excluded.updated_at >= rate_limits.window_start + rate_limits.window_ms
              THEN 1 ELSE rate_limits.hits + 1 END,
  window_start = CASE WHEN excluded.updated_at >= rate_limits.window_start + rate_limits.window_ms
                      THEN excluded.window_start ELSE rate_limits.window_start END,
  window_ms = CASE WHEN excluded.updated_at >= rate_limits.window_start + rate_limits.window_ms
                   THEN excluded.window_ms ELSE rate_limits.window_ms END,
  max_hits = excluded.max_hits,
  updated_at = excluded.updated_at
RETURNING hits, window_start, window_ms
"""


def is_file_database(path: str) -> bool:
    stripped = (path or "").strip()
    return bool(stripped) and stripped != ":memory:" and not stripped.startswith("file::memory:")


class _SqliteDatabase:
    """Connection-per-call access to one SQLite file shared across processes."""

    name = "sqlite"

    def __init__(self, path: str, *, busy_timeout: float = 2.0):
        if not is_file_database(path):
            # connections are opened per call, so the database has to live in a file
            raise ValueError(f"sqlite path must name a database file, got {path!r}")
        self.path = path
        self.busy_timeout = busy_timeout
        self.logger = get_logger(__name__)
        self._schema_ready = False
        self._schema_lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)};")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            for statement in _SCHEMA:
                conn.execute(statement)
            self._schema_ready = True

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._open()
            self._ensure_schema(conn)
            yield conn
        except sqlite3.IntegrityError as exc:
            raise ConstraintViolation("sqlite constraint violated", {"error": str(exc)}) from exc
        except sqlite3.Error as exc:
            raise BackendUnavailable(self.name, str(exc)) from exc
        finally:
            if conn is not None:
                conn.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction taking the database write lock up front."""
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def verify_connection(self) -> None:
        with self._conn() as conn:
            conn.execute("SELECT 1 FROM sessions LIMIT 1").fetchall()
            conn.execute("SELECT 1 FROM rate_limits LIMIT 1").fetchall()

    def close(self) -> None:
        return None


def _opt_ms(value: Optional[datetime]) -> Optional[int]:
    return to_ms(value) if value is not None else None


def _opt_dt(value: Optional[int]) -> Optional[datetime]:
    return from_ms(value) if value is not None else None


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


class SqliteStore(_SqliteDatabase):
    """SQLite-backed credential store for sessions and single-use tokens."""

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            expires_at=from_ms(row["expires_at"]),
            created_at=from_ms(row["created_at"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            is_active=bool(row["is_active"]),
            tenant_id=row["tenant_id"],
            revoked_at=_opt_dt(row["revoked_at"]),
            revoke_reason=row["revoke_reason"],
        )

    @staticmethod
    def _token_from_row(row: sqlite3.Row) -> Token:
        return Token(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            kind=TokenKind(row["kind"]),
            expires_at=from_ms(row["expires_at"]),
            created_at=from_ms(row["created_at"]),
            used_at=_opt_dt(row["used_at"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
        )

    @staticmethod
    def _insert_session_row(conn: sqlite3.Connection, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO sessions(id, user_id, tenant_id, token_hash, created_at, expires_at,
                                 is_active, revoked_at, revoke_reason, ip_address, user_agent)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.user_id,
                session.tenant_id,
                session.token_hash,
                to_ms(session.created_at),
                to_ms(session.expires_at),
                1 if session.is_active else 0,
                _opt_ms(session.revoked_at),
                session.revoke_reason,
                session.ip_address,
                session.user_agent,
            ),
        )

    # sessions
    def insert_session(
        self,
        session: Session,
        *,
        max_active: int,
        policy: SessionLimitPolicy,
        now: datetime,
    ) -> List[str]:
        now_ms = to_ms(now)
        evicted: List[str] = []
        with self._transaction() as conn:
            live = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id FROM sessions
                    WHERE user_id = ? AND is_active = 1 AND expires_at > ?
                    ORDER BY created_at ASC, id ASC
                    """,
                    (session.user_id, now_ms),
                )
            ]
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
                evicted = live[: len(live) - max_active + 1]
                conn.execute(
                    f"""
                    UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
                    WHERE id IN ({_placeholders(evicted)}) AND is_active = 1
                    """,
                    (now_ms, RevokeReason.EVICTED.value, *evicted),
                )
            self._insert_session_row(conn, session)
        return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_hashes(self, hashes: Sequence[str]) -> Optional[Session]:
        if not hashes:
            return None
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM sessions WHERE token_hash IN ({_placeholders(hashes)})",
                tuple(hashes),
            ).fetchall()
        by_hash = {row["token_hash"]: row for row in rows}
        for token_hash in hashes:
            if token_hash in by_hash:
                return self._session_from_row(by_hash[token_hash])
        return None

    def expire_session(self, session_id: str, now: datetime) -> bool:
        now_ms = to_ms(now)
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
                WHERE id = ? AND is_active = 1 AND expires_at <= ?
                """,
                (now_ms, RevokeReason.EXPIRED.value, session_id, now_ms),
            )
            return cur.rowcount > 0

    def revoke_session(self, session_id: str, now: datetime, reason: RevokeReason = RevokeReason.REVOKED) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
                WHERE id = ? AND is_active = 1
                """,
                (to_ms(now), RevokeReason(reason).value, session_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(
        self,
        user_id: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
        reason: RevokeReason = RevokeReason.REVOKED,
    ) -> int:
        sql = """
            UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
            WHERE user_id = ? AND is_active = 1
        """
        params: list = [to_ms(now), RevokeReason(reason).value, user_id]
        if except_session_id:
            sql += " AND id != ?"
            params.append(except_session_id)
        with self._conn() as conn:
            return int(conn.execute(sql, params).rowcount or 0)

    def rotate_session(self, old_session_id: str, new_session: Session, now: datetime) -> bool:
        now_ms = to_ms(now)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
                WHERE id = ? AND user_id = ? AND is_active = 1 AND expires_at > ?
                """,
                (now_ms, RevokeReason.ROTATED.value, old_session_id, new_session.user_id, now_ms),
            )
            if cur.rowcount == 0:
                return False
            self._insert_session_row(conn, new_session)
        return True

    def extend_session(self, session_id: str, expires_at: datetime, now: datetime) -> bool:
        now_ms = to_ms(now)
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET expires_at = MAX(expires_at, ?)
                WHERE id = ? AND is_active = 1 AND expires_at > ?
                """,
                (to_ms(expires_at), session_id, now_ms),
            )
            return cur.rowcount > 0

    def rehash_session(self, session_id: str, old_hash: str, new_hash: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE sessions SET token_hash = ? WHERE id = ? AND token_hash = ?",
                (new_hash, session_id, old_hash),
            )
            return cur.rowcount > 0

    def session_stats(self, now: datetime, *, top: int = 10) -> Dict[str, object]:
        now_ms = to_ms(now)
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_active = 1 AND expires_at > ? THEN 1 ELSE 0 END), 0)
                         AS active
                FROM sessions
                """,
                (now_ms,),
            ).fetchone()
            ranked = conn.execute(
                """
                SELECT user_id, COUNT(*) AS active FROM sessions
                WHERE is_active = 1 AND expires_at > ?
                GROUP BY user_id
                ORDER BY active DESC, user_id ASC
                LIMIT ?
                """,
                (now_ms, int(top)),
            ).fetchall()
        total, active = int(row["total"]), int(row["active"])
        return {
            "total": total,
            "active": active,
            "ended": total - active,
            "top_users": [{"user_id": r["user_id"], "active": int(r["active"])} for r in ranked],
        }

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = ? AND is_active = 1 AND expires_at > ?
                ORDER BY created_at DESC, id DESC
                """,
                (user_id, to_ms(now)),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        now_ms = to_ms(now)
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET is_active = 0, revoked_at = ?, revoke_reason = ?
                WHERE is_active = 1 AND expires_at <= ?
                """,
                (now_ms, RevokeReason.EXPIRED.value, now_ms),
            )
            return int(cur.rowcount or 0)

    def purge_sessions(self, cutoff: datetime) -> int:
        cutoff_ms = to_ms(cutoff)
        with self._conn() as conn:
            cur = conn.execute(
                """
                DELETE FROM sessions
                WHERE (is_active = 0 AND revoked_at < ?)
                   OR (is_active = 1 AND expires_at < ?)
                """,
                (cutoff_ms, cutoff_ms),
            )
            return int(cur.rowcount or 0)

    # tokens
    def insert_token(self, token: Token, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE tokens SET used_at = ?
                WHERE user_id = ? AND kind = ? AND used_at IS NULL
                """,
                (to_ms(now), token.user_id, token.kind.value),
            )
            superseded = int(cur.rowcount or 0)
            conn.execute(
                """
                INSERT INTO tokens(id, user_id, kind, token_hash, created_at, expires_at,
                                   used_at, ip_address, user_agent)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    token.id,
                    token.user_id,
                    token.kind.value,
                    token.token_hash,
                    to_ms(token.created_at),
                    to_ms(token.expires_at),
                    _opt_ms(token.used_at),
                    token.ip_address,
                    token.user_agent,
                ),
            )
        return superseded

    def find_token_by_hashes(self, hashes: Sequence[str], kind: TokenKind) -> Optional[Token]:
        if not hashes:
            return None
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM tokens WHERE kind = ? AND token_hash IN ({_placeholders(hashes)})",
                (TokenKind(kind).value, *hashes),
            ).fetchall()
        by_hash = {row["token_hash"]: row for row in rows}
        for token_hash in hashes:
            if token_hash in by_hash:
                return self._token_from_row(by_hash[token_hash])
        return None

    def consume_token(self, hashes: Sequence[str], kind: TokenKind, now: datetime) -> Optional[str]:
        if not hashes:
            return None
        now_ms = to_ms(now)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                UPDATE tokens SET used_at = ?
                WHERE token_hash IN ({_placeholders(hashes)})
                  AND kind = ? AND used_at IS NULL AND expires_at > ?
                RETURNING user_id
                """,
                (now_ms, *hashes, TokenKind(kind).value, now_ms),
            ).fetchall()
        return rows[0]["user_id"] if rows else None

    def rehash_token(self, token_id: str, old_hash: str, new_hash: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE tokens SET token_hash = ? WHERE id = ? AND token_hash = ?",
                (new_hash, token_id, old_hash),
            )
            return cur.rowcount > 0

    def token_stats(self, now: datetime) -> Dict[str, Dict[str, int]]:
        stats = {kind.value: {"active": 0, "used": 0, "expired": 0} for kind in TokenKind}
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT kind,
                       CASE WHEN used_at IS NOT NULL THEN 'used'
                            WHEN expires_at <= ? THEN 'expired'
                            ELSE 'active' END AS state,
                       COUNT(*) AS n
                FROM tokens
                GROUP BY kind, state
                """,
                (to_ms(now),),
            ).fetchall()
        for row in rows:
            if row["kind"] in stats:
                stats[row["kind"]][row["state"]] = int(row["n"])
        return stats

    def purge_tokens(self, cutoff: datetime) -> int:
        cutoff_ms = to_ms(cutoff)
        with self._conn() as conn:
            cur = conn.execute(
                """
                DELETE FROM tokens
                WHERE (used_at IS NOT NULL AND used_at < ?) OR expires_at < ?
                """,
                (cutoff_ms, cutoff_ms),
            )
            return int(cur.rowcount or 0)


class SqliteRateLimitStore(_SqliteDatabase):
    """Fixed-window counters persisted in SQLite, shared by every worker process."""

    def increment(self, key: str, window_ms: int, max_hits: int, now_ms: int) -> RateLimitInfo:
        with self._conn() as conn:
            rows = conn.execute(
                _INCREMENT_SQL, (key, now_ms, window_ms, max_hits, now_ms)
            ).fetchall()
        hits, window_start, stored_window_ms = (int(v) for v in rows[0])
        return RateLimitInfo.from_counter(hits, window_start, stored_window_ms, max_hits, now_ms)

    def reset(self, key: str) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM rate_limits WHERE key = ?", (key,))

    def cleanup(self, older_than_ms: int) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                "DELETE FROM rate_limits WHERE window_start + window_ms < ?",
                (int(older_than_ms),),
            )
            return int(cur.rowcount or 0)

    def stats(self, now_ms: int) -> Dict[str, int]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN window_start + window_ms > ? THEN 1 ELSE 0 END), 0)
                         AS active,
                       COALESCE(SUM(CASE WHEN window_start + window_ms > ? AND hits > max_hits
                                         THEN 1 ELSE 0 END), 0) AS blocked
                FROM rate_limits
                """,
                (int(now_ms), int(now_ms)),
            ).fetchone()
        return {
            "total_keys": int(row["total"]),
            "active_windows": int(row["active"]),
            "blocked_keys": int(row["blocked"]),
        }

    def health_check(self) -> bool:
        try:
            with self._conn() as conn:
                conn.execute("SELECT 1").fetchone()
        except BackendUnavailable as exc:
            self.logger.warning("sqlite_health_check_failed", error=str(exc))
            return False
        return True
