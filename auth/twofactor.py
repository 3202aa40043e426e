"""
auth/twofactor.py -- TOTP second-factor enrollment, confirmation and login challenge.

Flow:
  setup()     -- generate a 160-bit base32 secret, store it as the identity's
                 PENDING secret, return the secret, the otpauth:// URI and a
                 QR code (PNG data URI) for authenticator apps.
  verify()    -- the user proves possession by submitting a current code. On
                 success the pending secret becomes the confirmed secret and
                 the second factor is enabled.
  challenge() -- called during login. Only the confirmed secret is ever
                 consulted, so an abandoned setup() cannot change how anyone
                 logs in.

Codes are RFC 6238 TOTP (pyotp): 6 digits, 30 s step, +/-1 step tolerance to
absorb clock skew between server and device.

No disable or rotate operation lives here. setup() on an identity whose
second factor is already enabled raises TwoFAAlreadyEnabled.

Identities passed in are never mutated: callers usually hold a per-request
read-only snapshot. Only the second-factor columns are written back, so a
concurrent change to the name or password survives setup() and verify().
"""

from __future__ import annotations

import base64
import io
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

import pyotp
import qrcode

from auth.errors import TwoFAAlreadyEnabled, TwoFAInvalid, TwoFANotSetup, TwoFARequired
from auth.models import Identity
from auth.store import AccessStore

logger = logging.getLogger("accessgate.auth.twofactor")

# 32 base32 characters x 5 bits = 160 bits, the RFC 4226 recommended length.
SECRET_LENGTH = 32
TIME_STEP_SECONDS = 30
VALID_WINDOW = 1


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    provisioning_uri: str
    qr_code_url: str


def render_qr_data_uri(data: str) -> str:
    """Render data as a PNG QR code and return it as a data: URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class TwoFactorService:
    """TOTP enrollment and verification bound to identities in the store."""

    def __init__(
        self,
        store: AccessStore,
        issuer: str = "AccessGate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self._clock = clock

    def _code_matches(self, secret: str, code: str) -> bool:
        code = code.strip().replace(" ", "")
        if not code.isdigit():
            return False
        totp = pyotp.TOTP(secret, interval=TIME_STEP_SECONDS)
        return totp.verify(code, for_time=int(self._clock()), valid_window=VALID_WINDOW)

    def setup(self, identity: Identity) -> TwoFactorEnrollment:
        """Start enrollment: persist a fresh pending secret and return its artifacts."""
        if identity.is_twofa_enabled:
            raise TwoFAAlreadyEnabled()

        secret = pyotp.random_base32(length=SECRET_LENGTH)
        uri = pyotp.TOTP(secret, interval=TIME_STEP_SECONDS).provisioning_uri(
            name=identity.email,
            issuer_name=self.issuer,
        )
        self.store.save_twofactor_state(
            identity.id,
            twofa_secret=identity.twofa_secret,
            pending_twofa_secret=secret,
            is_twofa_enabled=identity.is_twofa_enabled,
        )
        logger.info("2FA setup started identity=%s", identity.id)
        return TwoFactorEnrollment(secret=secret, provisioning_uri=uri, qr_code_url=render_qr_data_uri(uri))

    def verify(self, identity: Identity, code: str) -> Identity:
        """Confirm possession of the secret and enable the second factor.

        A pending secret takes precedence; with none pending, the confirmed
        secret is checked so re-verifying an enabled identity is harmless.
        Returns the updated identity.
        """
        secret = identity.pending_twofa_secret or identity.twofa_secret
        if not secret:
            raise TwoFANotSetup()
        if not self._code_matches(secret, code):
            logger.info("2FA verification failed identity=%s", identity.id)
            raise TwoFAInvalid()

        updated = replace(
            identity,
            twofa_secret=secret,
            pending_twofa_secret=None,
            is_twofa_enabled=True,
        )
        self.store.save_twofactor_state(
            updated.id,
            twofa_secret=updated.twofa_secret,
            pending_twofa_secret=updated.pending_twofa_secret,
            is_twofa_enabled=updated.is_twofa_enabled,
        )
        logger.info("2FA enabled identity=%s", identity.id)
        return updated

    def challenge(self, identity: Identity, code: str | None) -> None:
        """Check the login-time second factor. Never mutates state.

        Passes silently when the identity has no second factor enabled.
        """
        if not identity.is_twofa_enabled:
            return
        if not code:
            raise TwoFARequired()
        if not identity.twofa_secret or not self._code_matches(identity.twofa_secret, code):
            raise TwoFAInvalid()
