from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Optional

from civicguard.logging import get_logger
from civicguard.service.errors import (
    AlreadyUsedError,
    ExpiredError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from civicguard.service.hashing import TOKEN_BYTES, SecretHasher, generate_secret
from civicguard.service.rate_limit import RateLimiter
from civicguard.service.sessions import CredentialStore, backend_errors
from civicguard.storage.errors import BackendUnavailable, ConstraintViolation
from civicguard.storage.models import IssuedToken, Token, TokenKind, TokenValidation, utcnow

logger = get_logger(__name__)

TOKEN_ISSUANCE_SCOPE = "token_issuance"
_TOKEN_HEX_LENGTH = TOKEN_BYTES * 2
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _is_well_formed_token(raw: object) -> bool:
    return isinstance(raw, str) and len(raw) == _TOKEN_HEX_LENGTH and set(raw) <= _HEX_DIGITS


class TokenService:
    """Issue and redeem single-use password-reset and email-verification tokens.

    Only the hash of a token is persisted; the raw value leaves this service
    exactly once, in the :class:`IssuedToken` returned at issuance. Redemption
    is a single conditional update, so a token can succeed at most once no
    matter how many requests race on it.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        *,
        ttl_minutes: Optional[Dict[TokenKind, int]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ttl_minutes = {
            TokenKind.PASSWORD_RESET: 60,
            TokenKind.EMAIL_VERIFICATION: 1440,
            **(ttl_minutes or {}),
        }
        self.rate_limiter = rate_limiter
        self.clock = clock

    def create_password_reset_token(
        self, user_id: str, *, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> IssuedToken:
        return self._issue(user_id, TokenKind.PASSWORD_RESET, ip_address=ip_address, user_agent=user_agent)

    def create_email_verification_token(
        self, user_id: str, *, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> IssuedToken:
        return self._issue(
            user_id, TokenKind.EMAIL_VERIFICATION, ip_address=ip_address, user_agent=user_agent
        )

    def _issue(
        self,
        user_id: str,
        kind: TokenKind,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedToken:
        if not user_id:
            raise ValidationError("user_id is required")
        if self.rate_limiter is not None:
            self.rate_limiter.enforce(TOKEN_ISSUANCE_SCOPE, f"{kind.value}:{user_id}")
        now = self.clock()
        raw_token = generate_secret(TOKEN_BYTES)
        token = Token.new(
            user_id,
            self.hasher.hash(raw_token),
            kind,
            now=now,
            ttl_minutes=self.ttl_minutes[kind],
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with backend_errors("token_issue"):
                superseded = self.store.insert_token(token, now)
        except ConstraintViolation as exc:
            # 256-bit collision; never expected in practice
            raise ServerError("token issuance failed") from exc
        logger.info(
            "token_issued",
            user_id=user_id,
            kind=kind.value,
            token_id=token.id,
            superseded=superseded,
        )
        return IssuedToken(
            raw_token=raw_token, expires_at=token.expires_at, kind=kind, token_id=token.id
        )

    def validate(self, raw_token: str, kind: TokenKind) -> TokenValidation:
        if not _is_well_formed_token(raw_token):
            return TokenValidation(valid=False, reason="malformed")
        try:
            token = self.store.find_token_by_hashes(self.hasher.candidates(raw_token), TokenKind(kind))
        except Exception as exc:
            logger.error("token_validation_unavailable", error_type=type(exc).__name__, error=str(exc))
            return TokenValidation(valid=False, reason="unavailable")
        result = self._classify(token)
        if result.valid and self.hasher.needs_rehash(token.token_hash):
            self._upgrade_hash(token, raw_token)
        return result

    def _upgrade_hash(self, token: Token, raw_token: str) -> None:
        try:
            changed = self.store.rehash_token(token.id, token.token_hash, self.hasher.hash(raw_token))
        except (BackendUnavailable, ConstraintViolation) as exc:
            logger.warning("token_hash_upgrade_failed", token_id=token.id, error=str(exc))
            return
        if changed:
            logger.info("token_hash_upgraded", token_id=token.id, to_version=self.hasher.version)

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Counts per token kind: ``active`` (redeemable), ``used`` and ``expired``."""
        with backend_errors("token_stats"):
            return self.store.token_stats(self.clock())

    def _classify(self, token: Optional[Token]) -> TokenValidation:
        if token is None:
            return TokenValidation(valid=False, reason="not_found")
        if token.used_at is not None:
            return TokenValidation(valid=False, user_id=token.user_id, reason="used")
        if token.expires_at <= self.clock():
            return TokenValidation(valid=False, user_id=token.user_id, reason="expired")
        return TokenValidation(valid=True, user_id=token.user_id)

    def _consume(self, raw_token: str, kind: TokenKind) -> Optional[str]:
        if not _is_well_formed_token(raw_token):
            return None
        try:
            user_id = self.store.consume_token(
                self.hasher.candidates(raw_token), TokenKind(kind), self.clock()
            )
        except Exception as exc:
            logger.error("token_consume_unavailable", error_type=type(exc).__name__, error=str(exc))
            return None
        if user_id:
            logger.info("token_consumed", user_id=user_id, kind=TokenKind(kind).value)
        return user_id

    def consume(self, raw_token: str, kind: TokenKind) -> bool:
        return self._consume(raw_token, kind) is not None

    def redeem(self, raw_token: str, kind: TokenKind) -> str:
        """Consume the token and return its owner, or raise why it cannot be."""
        if not _is_well_formed_token(raw_token):
            raise ValidationError("token is malformed")
        user_id = self._consume(raw_token, kind)
        if user_id:
            return user_id
        result = self.validate(raw_token, kind)
        if result.reason == "used":
            raise AlreadyUsedError("token already used")
        if result.reason == "expired":
            raise ExpiredError("token expired")
        if result.reason == "unavailable":
            with backend_errors("token_redeem"):
                self.store.verify_connection()
        raise NotFoundError("token not found")
