"""Provider configuration with validation.

Every value is checked when the configuration is built, and all problems are
reported together so a misconfigured environment fails before any cloud call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Poll presets. Interval is seconds between polls, attempts bound the loop.
FAST_POLL_INTERVAL_SECONDS = 0.5
FAST_POLL_MAX_ATTEMPTS = 40
STANDARD_POLL_INTERVAL_SECONDS = 2.0
STANDARD_POLL_MAX_ATTEMPTS = 60
SLOW_POLL_INTERVAL_SECONDS = 5.0
SLOW_POLL_MAX_ATTEMPTS = 60

# Overall cap on a single convergence wait, whatever the attempts allow
DEFAULT_MAX_WAIT_SECONDS = 1800
MIN_MAX_WAIT_SECONDS = 1
MAX_MAX_WAIT_SECONDS = 6 * 3600

DEFAULT_POLL_INTERVAL_SCALE = 1.0
MIN_POLL_INTERVAL_SCALE = 0.0
MAX_POLL_INTERVAL_SCALE = 10.0

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max resource document file

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_AWS_REGION_PATTERN = r"^[a-z]{2}(-gov|-iso[a-z]?)?-[a-z]+-\d$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class ProviderConfig:
    """Provider configuration, usually loaded from environment variables.

    Cloud settings are optional here; a handler for a cloud checks that its
    settings are present when its clients are first built.
    """

    aws_region: str | None = None
    aws_profile: str | None = None
    azure_subscription_id: str | None = None
    azure_client_id: str | None = None

    poll_interval_scale: float = DEFAULT_POLL_INTERVAL_SCALE
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS

    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.aws_region and not re.match(VALID_AWS_REGION_PATTERN, self.aws_region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.aws_region}")

        if self.azure_subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.azure_subscription_id.lower()
        ):
            errors.append(
                f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.azure_subscription_id}"
            )

        if not (MIN_POLL_INTERVAL_SCALE <= self.poll_interval_scale <= MAX_POLL_INTERVAL_SCALE):
            errors.append(
                f"POLL_INTERVAL_SCALE must be between {MIN_POLL_INTERVAL_SCALE} "
                f"and {MAX_POLL_INTERVAL_SCALE}"
            )

        if not (MIN_MAX_WAIT_SECONDS <= self.max_wait_seconds <= MAX_MAX_WAIT_SECONDS):
            errors.append(
                f"MAX_WAIT_SECONDS must be between {MIN_MAX_WAIT_SECONDS} "
                f"and {MAX_MAX_WAIT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def require_aws(self) -> None:
        """Raise ConfigurationError unless AWS handlers can be built."""
        if not self.aws_region:
            raise ConfigurationError("AWS_REGION is required for aws resource types")

    def require_azure(self) -> str:
        """Return the subscription id, or raise ConfigurationError if it is unset."""
        if not self.azure_subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for azure resource types")
        return self.azure_subscription_id

    @classmethod
    def from_env(cls) -> ProviderConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AWS_REGION: Region for EC2 calls (falls back to AWS_DEFAULT_REGION)
            AWS_PROFILE: Optional named profile for the boto3 session
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_CLIENT_ID: Client id of a user-assigned managed identity (optional)
            POLL_INTERVAL_SCALE: Poll interval multiplier (default: 1.0, 0 disables sleeping)
            MAX_WAIT_SECONDS: Cap on a single convergence wait (default: 1800)
            LOG_LEVEL: Logging level (default: INFO)
            LOG_JSON: If "false", log plain text instead of JSON (default: true)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_str(*keys: str) -> str | None:
            for key in keys:
                value = os.environ.get(key)
                if value:
                    return value
            return None

        return cls(
            aws_region=get_str("AWS_REGION", "AWS_DEFAULT_REGION"),
            aws_profile=get_str("AWS_PROFILE"),
            azure_subscription_id=get_str("AZURE_SUBSCRIPTION_ID"),
            azure_client_id=get_str("AZURE_CLIENT_ID"),
            poll_interval_scale=get_float("POLL_INTERVAL_SCALE", DEFAULT_POLL_INTERVAL_SCALE),
            max_wait_seconds=get_float("MAX_WAIT_SECONDS", DEFAULT_MAX_WAIT_SECONDS),
            log_level=(get_str("LOG_LEVEL") or "INFO").upper(),
            json_logs=get_bool("LOG_JSON", True),
        )
