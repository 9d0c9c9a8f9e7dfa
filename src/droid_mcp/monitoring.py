"""Error monitoring for the droid-mcp entry points."""

import logging

import sentry_sdk

from droid_mcp.env_config import get_env

logger = logging.getLogger(__name__)

DEFAULT_RELEASE = "droid-mcp@0.1.0"


def init_monitoring() -> bool:
    """
    Initialize Sentry when SENTRY_DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    sentry_dsn = get_env("SENTRY_DSN")
    if not sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        traces_sample_rate=1.0,
        environment=get_env("SENTRY_ENVIRONMENT", "development"),
        release=get_env("SENTRY_RELEASE", DEFAULT_RELEASE),
    )
    logger.info("Sentry monitoring enabled")
    return True
