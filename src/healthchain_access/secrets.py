"""Database credential handling.

Passwords are never accepted inside connection URLs or configuration files;
they come from the environment and are kept out of logs.
"""

import logging
import os
from urllib.parse import quote, urlparse, urlunparse

logger = logging.getLogger(__name__)

DB_URL_ENV_VAR = "HEALTHCHAIN_DB_URL"
DB_PASSWORD_ENV_VAR = "HEALTHCHAIN_DB_PASSWORD"


class CredentialValidationError(Exception):
    """Raised when credentials are found in insecure locations."""

    pass


class MaskedSecret:
    """Wrapper that prevents accidental exposure of secret values."""

    def __init__(self, value: str):
        self._value = value

    def get_value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "***MASKED***"

    def __repr__(self) -> str:
        return "MaskedSecret(***)"


def validate_no_password_in_url(url: str) -> None:
    """Validate that a database URL does not contain a password.

    Raises:
        CredentialValidationError: If password is detected in URL.
    """
    parsed = urlparse(url)
    user_info = parsed.netloc.split("@")[0] if "@" in parsed.netloc else ""

    if parsed.password or ":" in user_info:
        raise CredentialValidationError(
            "Database password detected in connection URL. "
            f"Passwords must be provided via {DB_PASSWORD_ENV_VAR} or PGPASSWORD."
        )


def get_database_password(password_env_var: str = DB_PASSWORD_ENV_VAR) -> MaskedSecret | None:
    """Get database password from the environment, falling back to PGPASSWORD."""
    for var in (password_env_var, "PGPASSWORD"):
        value = os.environ.get(var)
        if value:
            logger.debug("Database password loaded from %s", var)
            return MaskedSecret(value)
    return None


def resolve_database_url(url: str | None = None) -> str | None:
    """Build a connection URL from ``url`` or the environment, adding the password.

    Returns:
        Connection URL including credentials, or None if no URL is configured.

    Raises:
        CredentialValidationError: If the supplied URL embeds a password.
    """
    url = url or os.environ.get(DB_URL_ENV_VAR)
    if not url:
        return None

    validate_no_password_in_url(url)

    password = get_database_password()
    if password is None:
        return url

    parsed = urlparse(url)
    user = parsed.username or "postgres"
    netloc = f"{user}:{quote(password.get_value(), safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))
