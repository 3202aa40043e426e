"""
auth/tokens.py -- Bearer token service and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry only sub (identity ULID), iat and
       exp. Roles and permissions are NOT embedded: they are re-resolved from
       the store on every request, so role changes apply on the next request
       instead of after the token expires. Tokens are not persisted, which
       also means there is no revocation before expiry.

  Expiry: jose's own exp check treats a token as valid up to and including
       the exp second. The gate's contract is that a token is expired AT exp,
       so the exp claim is checked here against an injectable clock after
       signature verification.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in authenticate_identity() so response time does not
       reveal whether an email is registered.

  Signing key: TokenService refuses a key shorter than MIN_SECRET_KEY_LENGTH.
       Settings validation already refuses to start without one; the check
       here covers services constructed directly (tests, scripts).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenMalformed
from core.config import MIN_SECRET_KEY_LENGTH, Settings

if TYPE_CHECKING:
    from auth.models import Identity
    from auth.store import AccessStore

logger = logging.getLogger("accessgate.auth")

_ALGORITHM = "HS256"

# bcrypt's input limit, in UTF-8 bytes rather than characters.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def password_fits(plain: str) -> bool:
    """Return True if bcrypt will consider every byte of the password."""
    return len(plain.encode("utf-8")) <= MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES. The API models
    and the CLI reject those before they get here.
    """
    if not password_fits(plain):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not password_fits(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("accessgate_timing_dummy")


def authenticate_identity(store: AccessStore, email: str, password: str) -> Identity | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the identity exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Identity on success, None on any failure. Verification state
    and the second factor are the caller's business.
    """
    identity = store.find_identity_by_email(email)
    if identity is None or identity.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, identity.hashed_password):
        return None
    return identity


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and validates signed, time-bounded bearer tokens.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        token = tokens.issue(identity.id)
        subject = tokens.validate(token)   # raises TokenMalformed / TokenExpired
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret_key or len(secret_key) < MIN_SECRET_KEY_LENGTH:
            raise ValueError(f"Signing key must be at least {MIN_SECRET_KEY_LENGTH} characters.")
        if ttl_seconds <= 0:
            raise ValueError("Token TTL must be positive.")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenService:
        return cls(settings.secret_key, ttl_seconds=settings.token_expire_seconds)

    def issue(self, subject_id: str) -> str:
        """Return a signed token for subject_id valid for ttl_seconds from now."""
        issued_at = int(self._clock())
        payload = {
            "sub": subject_id,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def validate(self, token: str) -> str:
        """Verify the signature and expiry of token and return its subject.

        Raises TokenMalformed if the token cannot be decoded, its signature
        does not verify, or its claims are missing or of the wrong type.
        Raises TokenExpired if the current time is at or past exp.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError as exc:
            raise TokenMalformed() from exc

        subject = payload.get("sub")
        expires_at = payload.get("exp")
        if not isinstance(subject, str) or not subject:
            raise TokenMalformed("Token has no subject.")
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            raise TokenMalformed("Token has no valid expiry.")

        if self._clock() >= expires_at:
            raise TokenExpired()
        return subject
