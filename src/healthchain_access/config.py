"""Configuration file support for healthchain-access."""

import logging
import math
import tomllib
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

TOKEN_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MIN_TOKEN_ENTROPY_BITS = 60

CREDENTIAL_KEYS = {
    "password",
    "db_password",
    "database_password",
    "secret",
    "api_key",
    "credentials",
    "auth",
}

POSITIVE_INT_KEYS = {
    "emergency_token_ttl_minutes",
    "max_emergency_ttl_minutes",
    "emergency_session_minutes",
    "max_emergency_session_minutes",
    "min_justification_length",
    "token_length",
    "token_group_size",
    "sweep_batch_size",
}

POSITIVE_FLOAT_KEYS = {
    "operation_timeout_seconds",
    "sweep_interval_seconds",
}


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class CredentialInConfigError(Exception):
    """Raised when credentials are detected in configuration files."""

    pass


@dataclass
class AccessConfig:
    emergency_token_ttl_minutes: int = 15
    max_emergency_ttl_minutes: int = 24 * 60
    emergency_session_minutes: int = 60
    max_emergency_session_minutes: int = 24 * 60
    min_justification_length: int = 20
    token_length: int = 12
    token_group_size: int = 4
    operation_timeout_seconds: float = 5.0
    sweep_interval_seconds: float = 60.0
    sweep_batch_size: int = 500
    log_level: str = "INFO"

    @property
    def emergency_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.emergency_token_ttl_minutes)

    @property
    def max_emergency_ttl(self) -> timedelta:
        return timedelta(minutes=self.max_emergency_ttl_minutes)

    @property
    def emergency_session(self) -> timedelta:
        return timedelta(minutes=self.emergency_session_minutes)

    @property
    def max_emergency_session(self) -> timedelta:
        return timedelta(minutes=self.max_emergency_session_minutes)

    @property
    def token_entropy_bits(self) -> float:
        return token_entropy_bits(self.token_length)


def token_entropy_bits(length: int, alphabet: str = TOKEN_ALPHABET) -> float:
    return length * math.log2(len(alphabet))


def detect_credentials_in_config(
    config_dict: dict[str, Any],
    path: str = "",
    warn_only: bool = True,
) -> list[str]:
    """Detect potential credentials in configuration dictionary.

    Args:
        config_dict: Configuration dictionary to check.
        path: Current path in nested config (for error messages).
        warn_only: If True, emit warning. If False, raise error.

    Returns:
        List of detected credential key paths.

    Raises:
        CredentialInConfigError: If credentials found and warn_only=False.
    """
    detected = []

    for key, value in config_dict.items():
        current_path = f"{path}.{key}" if path else key
        key_lower = key.lower()

        if any(cred_key in key_lower for cred_key in CREDENTIAL_KEYS):
            if value and value != "":
                detected.append(current_path)

        if isinstance(value, dict):
            detected.extend(detect_credentials_in_config(value, current_path, warn_only=True))

    if detected and not path:
        msg = (
            f"Potential credentials detected in config file: {', '.join(detected)}. "
            "Database secrets must be provided via environment variables, "
            "not configuration files."
        )
        if warn_only:
            logger.warning(msg)
        else:
            raise CredentialInConfigError(msg)

    return detected


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    for key in POSITIVE_INT_KEYS & config_dict.keys():
        value = config_dict[key]
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigValidationError(f"{key} must be an integer, got {type(value).__name__}")
        if value <= 0:
            raise ConfigValidationError(f"{key} must be positive, got {value}")

    for key in POSITIVE_FLOAT_KEYS & config_dict.keys():
        value = config_dict[key]
        if not isinstance(value, int | float) or isinstance(value, bool):
            raise ConfigValidationError(f"{key} must be a number, got {type(value).__name__}")
        if value <= 0:
            raise ConfigValidationError(f"{key} must be positive, got {value}")

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {VALID_LOG_LEVELS}, got '{log_level}'"
            )

    if "token_length" in config_dict:
        bits = token_entropy_bits(config_dict["token_length"])
        if bits < MIN_TOKEN_ENTROPY_BITS:
            raise ConfigValidationError(
                f"token_length {config_dict['token_length']} gives {bits:.1f} bits of entropy; "
                f"at least {MIN_TOKEN_ENTROPY_BITS} are required"
            )

    ttl = config_dict.get("emergency_token_ttl_minutes")
    max_ttl = config_dict.get("max_emergency_ttl_minutes", AccessConfig.max_emergency_ttl_minutes)
    if ttl is not None and ttl > max_ttl:
        raise ConfigValidationError(
            f"emergency_token_ttl_minutes ({ttl}) exceeds max_emergency_ttl_minutes ({max_ttl})"
        )

    session = config_dict.get("emergency_session_minutes")
    max_session = config_dict.get(
        "max_emergency_session_minutes", AccessConfig.max_emergency_session_minutes
    )
    if session is not None and session > max_session:
        raise ConfigValidationError(
            f"emergency_session_minutes ({session}) exceeds "
            f"max_emergency_session_minutes ({max_session})"
        )


def load_config(config_path: Path, overrides: dict[str, Any] | None = None) -> AccessConfig:
    """Load configuration from a TOML file.

    Args:
        config_path: Path to the TOML configuration file.
        overrides: Optional dict of values to override loaded config.

    Returns:
        AccessConfig instance with loaded values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        toml_data = tomllib.load(f)

    detect_credentials_in_config(toml_data, warn_only=True)

    config_dict = toml_data.get("healthchain_access", {})

    if overrides:
        config_dict.update(overrides)

    validate_config(config_dict)

    valid_fields = {f.name for f in fields(AccessConfig)}
    unknown = set(config_dict) - valid_fields
    if unknown:
        logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(unknown)))

    filtered_config = {k: v for k, v in config_dict.items() if k in valid_fields}

    return AccessConfig(**filtered_config)
