"""
Secrets management for ClearMail using the system keyring.

API keys and the IMAP password are looked up in the environment first
(OPENAI_API_KEY, IMAP_PASSWORD), then in the keyring, which supports:
- Windows Credential Manager
- macOS Keychain
- Linux Secret Service (GNOME Keyring, KWallet)
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# Service name for keyring entries
SERVICE_NAME = "clearmail"


def _lookup(env_var: str, key_name: str) -> Optional[str]:
    value = os.environ.get(env_var)
    if value:
        return value

    try:
        value = keyring.get_password(SERVICE_NAME, key_name)
        if value:
            logger.debug(f"Retrieved {key_name} from keyring")
        return value
    except KeyringError as e:
        logger.error(f"Failed to retrieve {key_name} from keyring: {e}")
        return None


def get_api_key(provider: str) -> Optional[str]:
    """
    Retrieve API key for a provider.

    Args:
        provider: Provider name (e.g., 'openai')

    Returns:
        API key string or None if not found
    """
    return _lookup(f"{provider.upper()}_API_KEY", f"{provider}_api_key")


def set_api_key(provider: str, api_key: str) -> bool:
    """
    Store API key for a provider in secure storage.

    Returns:
        True if successful, False otherwise
    """
    try:
        keyring.set_password(SERVICE_NAME, f"{provider}_api_key", api_key)
        logger.info(f"Stored API key for {provider} in keyring")
        return True
    except KeyringError as e:
        logger.error(f"Failed to store API key for {provider}: {e}")
        return False


def delete_api_key(provider: str) -> bool:
    """Remove API key for a provider from secure storage."""
    try:
        keyring.delete_password(SERVICE_NAME, f"{provider}_api_key")
        logger.info(f"Deleted API key for {provider} from keyring")
        return True
    except PasswordDeleteError:
        logger.warning(f"No API key found for {provider} to delete")
        return False
    except KeyringError as e:
        logger.error(f"Failed to delete API key for {provider}: {e}")
        return False


def get_imap_password(user: str, env_var: str = "IMAP_PASSWORD") -> Optional[str]:
    """Retrieve the IMAP password for `user`."""
    return _lookup(env_var, f"imap:{user}")


def set_imap_password(user: str, password: str) -> bool:
    """Store the IMAP password for `user` in secure storage."""
    try:
        keyring.set_password(SERVICE_NAME, f"imap:{user}", password)
        logger.info(f"Stored IMAP password for {user} in keyring")
        return True
    except KeyringError as e:
        logger.error(f"Failed to store IMAP password for {user}: {e}")
        return False
