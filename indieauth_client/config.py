"""Settings discovery and loading for the IndieAuth client."""

import os
import secrets
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .auth.discovery import DEFAULT_USER_AGENT
from .auth.sign import SigningKey, import_key

# Signing secrets shorter than this are rejected
MIN_SECRET_LENGTH = 16

DEFAULT_CALLBACK_TIMEOUT = 300.0  # seconds

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "indieauth" / ".env",
]

SECRET_KEY_VAR = "INDIEAUTH_SECRET_KEY"
USER_AGENT_VAR = "INDIEAUTH_USER_AGENT"
SCOPE_VAR = "INDIEAUTH_SCOPE"
CALLBACK_TIMEOUT_VAR = "INDIEAUTH_CALLBACK_TIMEOUT"


class ConfigError(Exception):
    """Invalid configuration value."""

    pass


@dataclass
class Settings:
    """Client settings.

    Attributes:
        secret_key: Secret for signing CSRF tokens and flow state, or None
            to use a fresh random secret for this process
        user_agent: User-Agent header for discovery requests
        scope: Default scope to request when signing in
        callback_timeout: Seconds to wait for the browser redirect
        env_path: The .env file that was loaded, if any
    """

    secret_key: str | None = None
    user_agent: str = DEFAULT_USER_AGENT
    scope: str | None = None
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT
    env_path: Path | None = None

    def signing_key(self) -> SigningKey:
        """Return the signing key, generating an ephemeral one if unset."""
        if self.secret_key is None:
            return import_key(secrets.token_bytes(32))
        return import_key(self.secret_key)


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def validate_secret(secret: str) -> str:
    """Check a signing secret is long enough.

    Raises:
        ConfigError: If the secret is shorter than 16 bytes
    """
    if len(secret.encode("utf-8")) < MIN_SECRET_LENGTH:
        raise ConfigError(
            f"{SECRET_KEY_VAR} must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return secret


def load_settings(env_path: Path | None = None) -> Settings:
    """Load settings from the environment, after loading a .env file.

    Args:
        env_path: Explicit path to .env file (optional)

    Returns:
        Settings populated from INDIEAUTH_* environment variables

    Raises:
        ConfigError: If a variable has an invalid value
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    secret = os.environ.get(SECRET_KEY_VAR) or None
    if secret is not None:
        validate_secret(secret)

    timeout_value = os.environ.get(CALLBACK_TIMEOUT_VAR)
    callback_timeout = DEFAULT_CALLBACK_TIMEOUT
    if timeout_value:
        try:
            callback_timeout = float(timeout_value)
        except ValueError:
            raise ConfigError(
                f"{CALLBACK_TIMEOUT_VAR} must be a number of seconds, got {timeout_value!r}"
            ) from None
        if callback_timeout <= 0:
            raise ConfigError(f"{CALLBACK_TIMEOUT_VAR} must be positive")

    return Settings(
        secret_key=secret,
        user_agent=os.environ.get(USER_AGENT_VAR) or DEFAULT_USER_AGENT,
        scope=os.environ.get(SCOPE_VAR) or None,
        callback_timeout=callback_timeout,
        env_path=env_file,
    )
