"""API key lookup for cloud providers.

Keys come from the environment first (`ANTHROPIC_API_KEY` style), then from
the system keyring (GNOME Keyring, KDE Wallet, macOS Keychain, ...).
"""

from __future__ import annotations

import logging
import os

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# Service name for codemender credentials in the keyring
SERVICE_NAME = "codemender.providers"


def env_var_for(provider: str) -> str:
    return f"{provider.upper()}_API_KEY"


def store_api_key(provider: str, api_key: str) -> None:
    """Store an API key in the system keyring.

    Raises:
        RuntimeError: If the keyring backend refuses the write.
    """
    try:
        keyring.set_password(SERVICE_NAME, provider, api_key)
    except KeyringError as e:
        raise RuntimeError(f"Failed to store API key: {e}") from e
    logger.info("Stored API key for provider: %s", provider)


def get_api_key(provider: str) -> str | None:
    """Return the API key for `provider`, or None if none is configured."""
    from_env = os.environ.get(env_var_for(provider))
    if from_env:
        return from_env
    try:
        return keyring.get_password(SERVICE_NAME, provider)
    except KeyringError as e:
        logger.warning("Failed to retrieve API key for %s: %s", provider, e)
        return None


def delete_api_key(provider: str) -> bool:
    """Remove an API key from the system keyring. True if one was deleted."""
    try:
        keyring.delete_password(SERVICE_NAME, provider)
    except PasswordDeleteError:
        logger.debug("No stored API key for %s", provider)
        return False
    except KeyringError as e:
        logger.warning("Failed to delete API key for %s: %s", provider, e)
        return False
    logger.info("Deleted API key for provider: %s", provider)
    return True
