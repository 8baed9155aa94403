"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

IndieAuth requires PKCE for every authorization request; the code verifier
travels inside the sealed flow state and is sent to the token endpoint when
the code is redeemed.
"""

import base64
import hashlib
import secrets
from collections.abc import Iterable
from dataclasses import dataclass


# PKCE code verifier length constraints per RFC 7636
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64
DEFAULT_STATE_LENGTH = 32

# Allowed characters for code verifier (unreserved URI characters)
VERIFIER_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

S256 = "S256"


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = S256


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random string of unreserved characters.

    Each character comes from a random 32-bit value reduced modulo the
    66-symbol alphabet [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~".

    Args:
        length: Number of characters to generate (default 64)

    Returns:
        Random string of exactly ``length`` characters
    """
    return "".join(
        VERIFIER_CHARS[secrets.randbits(32) % len(VERIFIER_CHARS)]
        for _ in range(length)
    )


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    Args:
        length: Length of the code verifier (default 64, must be 43-128)

    Returns:
        PKCEPair with verifier, challenge, and method (always "S256")

    Raises:
        ValueError: If length is outside the range RFC 7636 allows
    """
    if length < MIN_VERIFIER_LENGTH or length > MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    verifier = generate_code_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state(length: int = DEFAULT_STATE_LENGTH) -> str:
    """Generate a random state parameter for an authorization request."""
    return generate_code_verifier(length)


def supports_s256(methods: Iterable[str] | None) -> bool:
    """Check whether an advertised code_challenge_methods_supported list has S256.

    Comparison is case-insensitive. A missing list is not support.
    """
    if not methods or isinstance(methods, str):
        return False
    return any(isinstance(m, str) and m.upper() == S256 for m in methods)
