"""Stateless HMAC-signed tokens.

Signed tokens carry text through untrusted hands (cookies, hidden form
fields) and let any holder of the same key detect tampering. The encoded
form is ``<payload>|<base64url signature>``; the signature is located at the
last ``|`` so payloads may contain the separator themselves.

CSRF tokens are signed tokens whose payload is ``csrf:<epoch millis>``.
"""

import base64
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

logger = logging.getLogger(__name__)

SEPARATOR = "|"
CSRF_PREFIX = "csrf"

# Default CSRF token lifetime: 10 minutes
DEFAULT_CSRF_EXPIRY_MS = 10 * 60 * 1000


class VerificationErrorKind(str, Enum):
    """Why a signed token failed verification."""

    MISSING_SEPARATOR = "missing_separator"
    SIGNATURE_MISMATCH = "signature_mismatch"
    MALFORMED_PAYLOAD = "malformed_payload"


class VerificationError(Exception):
    """A signed token could not be verified.

    Attributes:
        kind: The VerificationErrorKind describing the failure
    """

    def __init__(self, kind: VerificationErrorKind, message: str | None = None):
        self.kind = kind
        super().__init__(message or f"Verification failed: {kind.value}")


class MissingSeparatorError(VerificationError):
    """The token has no signature separator."""

    def __init__(self, message: str = "Verification failed: signature not found"):
        super().__init__(VerificationErrorKind.MISSING_SEPARATOR, message)


class SignatureMismatchError(VerificationError):
    """The signature does not match the payload."""

    def __init__(self, message: str = "Verification failed: signature does not match"):
        super().__init__(VerificationErrorKind.SIGNATURE_MISMATCH, message)


@dataclass(frozen=True)
class SigningKey:
    """HMAC-SHA256 key material.

    Immutable, so one instance can be shared by any number of concurrent
    sign/verify calls.
    """

    secret: bytes

    def __repr__(self) -> str:
        return "SigningKey(<redacted>)"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of checking a signed token without raising."""

    text: str | None = None
    error: VerificationErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> str:
        """Return the verified payload or raise the matching VerificationError."""
        if self.error is None:
            return self.text or ""
        if self.error is VerificationErrorKind.MISSING_SEPARATOR:
            raise MissingSeparatorError()
        if self.error is VerificationErrorKind.SIGNATURE_MISMATCH:
            raise SignatureMismatchError()
        raise VerificationError(self.error)


def import_key(secret: str | bytes) -> SigningKey:
    """Derive an HMAC-SHA256 signing key from a shared secret.

    The minimum secret length (16 bytes) is enforced by configuration
    loading, not here.
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return SigningKey(secret=bytes(secret))


def _signature(key: SigningKey, text: str) -> str:
    h = crypto_hmac.HMAC(key.secret, hashes.SHA256())
    h.update(text.encode("utf-8"))
    return base64.urlsafe_b64encode(h.finalize()).decode("ascii").rstrip("=")


def sign_text(key: SigningKey, text: str) -> str:
    """Sign text, returning ``text|signature``."""
    return f"{text}{SEPARATOR}{_signature(key, text)}"


def check_text(key: SigningKey, signed_text: str) -> VerificationResult:
    """Verify a signed token and report the outcome as a result value."""
    index = signed_text.rfind(SEPARATOR)
    if index == -1:
        return VerificationResult(error=VerificationErrorKind.MISSING_SEPARATOR)

    text = signed_text[:index]
    claimed = signed_text[index + 1 :]
    expected = _signature(key, text)

    # Comparing canonical encodings rejects any altered signature characters,
    # including ones a lenient base64 decoder would ignore.
    if not hmac.compare_digest(expected.encode("ascii"), claimed.encode("utf-8")):
        return VerificationResult(error=VerificationErrorKind.SIGNATURE_MISMATCH)

    return VerificationResult(text=text)


def verify_text(key: SigningKey, signed_text: str) -> str:
    """Verify a signed token and return its payload.

    Raises:
        MissingSeparatorError: If the token has no ``|``
        SignatureMismatchError: If the signature does not match the payload
    """
    return check_text(key, signed_text).unwrap()


def _now_millis() -> int:
    return int(time.time() * 1000)


def make_csrf_token(key: SigningKey) -> str:
    """Create a CSRF token bound to the current time."""
    return sign_text(key, f"{CSRF_PREFIX}:{_now_millis()}")


def verify_csrf_token(
    key: SigningKey,
    csrf_token: str,
    expires_in: int = DEFAULT_CSRF_EXPIRY_MS,
) -> bool:
    """Check a CSRF token created by make_csrf_token.

    Args:
        key: The key the token was signed with
        csrf_token: The submitted token
        expires_in: Maximum token age in milliseconds

    Returns:
        True if the token is well formed and not older than expires_in,
        False if it is correctly signed but malformed or expired

    Raises:
        VerificationError: If the token is unsigned or the signature is wrong
    """
    payload = verify_text(key, csrf_token)

    parts = payload.split(":")
    if len(parts) != 2 or parts[0] != CSRF_PREFIX:
        logger.debug("CSRF token payload is not a csrf timestamp")
        return False

    try:
        timestamp = int(parts[1])
    except ValueError:
        logger.debug("CSRF token timestamp is not an integer")
        return False

    if _now_millis() - timestamp > expires_in:
        logger.debug("CSRF token expired")
        return False

    return True
