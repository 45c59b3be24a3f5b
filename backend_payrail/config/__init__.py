"""
Configuration for the Payrail backend.

Loads settings from environment variables and an optional .env file and
exposes a single cached Settings object for jobs, adapters and the API.
"""

from backend_payrail.config.settings import (  # noqa: F401
    EVM_CHAINS,
    SUPPORTED_CHAINS,
    Settings,
    get_settings,
    reset_settings_cache,
)

__all__ = ["EVM_CHAINS", "SUPPORTED_CHAINS", "Settings", "get_settings", "reset_settings_cache"]
