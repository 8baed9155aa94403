"""Token set returned by an IndieAuth token endpoint.

``redeem_code`` returns the token endpoint's JSON verbatim. TokenSet is the
caller-side view of a successful response: it rejects error-shaped bodies
and turns ``expires_in`` into an absolute expiry time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)


class TokenResponseError(Exception):
    """The token endpoint returned an error or an unusable response.

    Attributes:
        error: The OAuth error code, when the server supplied one
        error_description: The server's description, when supplied
    """

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
    ):
        super().__init__(message)
        self.error = error
        self.error_description = error_description


@dataclass
class TokenSet:
    """Result of a successful authorization code redemption.

    Attributes:
        me: The canonical profile URL of the authenticated user
        access_token: Access token, absent for profile-only requests
        token_type: Token type (typically "Bearer")
        scope: Space-separated list of granted scopes
        profile: Profile information (name, url, photo, email) if granted
        refresh_token: Refresh token, if the server issued one
        expires_at: When the access token expires (UTC datetime)
        issued_at: When the token set was received (UTC datetime)
    """

    me: str
    access_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    profile: dict[str, Any] | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self) -> bool:
        """Check if the access token is past its expiry time.

        Tokens without expiry information are treated as valid.
        """
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    @classmethod
    def from_token_response(cls, response: Any) -> "TokenSet":
        """Create a TokenSet from a token endpoint JSON response.

        Raises:
            TokenResponseError: If the response is error-shaped or lacks ``me``
        """
        if not isinstance(response, dict):
            raise TokenResponseError("Token endpoint response is not a JSON object")

        if "error" in response:
            error = str(response["error"])
            description = response.get("error_description")
            message = f"Token endpoint returned an error: {error}"
            if description:
                message += f" - {description}"
            raise TokenResponseError(message, error=error, error_description=description)

        me = response.get("me")
        if not isinstance(me, str) or not me:
            raise TokenResponseError("Token endpoint response is missing 'me'")

        now = datetime.now(timezone.utc)
        expires_at = None
        if "expires_in" in response:
            try:
                expires_at = now + timedelta(seconds=int(response["expires_in"]))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid expires_in: {response['expires_in']!r}")

        return cls(
            me=me,
            access_token=response.get("access_token"),
            token_type=response.get("token_type"),
            scope=response.get("scope"),
            profile=response.get("profile"),
            refresh_token=response.get("refresh_token"),
            expires_at=expires_at,
            issued_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for display, leaving out unset fields."""
        data: dict[str, Any] = {"me": self.me, "issued_at": self.issued_at.isoformat()}
        for name in ("access_token", "token_type", "scope", "profile", "refresh_token"):
            value = getattr(self, name)
            if value:
                data[name] = value
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        return data
