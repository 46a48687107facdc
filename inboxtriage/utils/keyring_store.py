"""Credential storage via system keyring (Secret Service / macOS Keychain / Windows Credential Manager)."""
from __future__ import annotations

import logging

from inboxtriage import config
from inboxtriage.models.account import Account, Credential

logger = logging.getLogger(__name__)

SERVICE_NAME = config.APP_NAME


def _service(host: str) -> str:
    return f"{SERVICE_NAME}:{host}"


def set_password(username: str, host: str, password: str) -> bool:
    """Store password in system keyring. Returns True on success."""
    try:
        import keyring
        keyring.set_password(_service(host), username, password)
        return True
    except Exception as exc:
        logger.warning("keyring set failed: %s", exc)
        return False


def get_password(username: str, host: str) -> str | None:
    """Retrieve password from system keyring. Returns None if not found."""
    try:
        import keyring
        return keyring.get_password(_service(host), username)
    except Exception as exc:
        logger.warning("keyring get failed: %s", exc)
        return None


def delete_password(username: str, host: str) -> bool:
    """Remove password from system keyring. Returns True on success."""
    try:
        import keyring
        keyring.delete_password(_service(host), username)
        return True
    except Exception as exc:
        logger.warning("keyring delete failed: %s", exc)
        return False


class KeyringCredentialProvider:
    """Opaque credential provider: ``(username, secret)`` for an account, or None."""

    def __call__(self, account: Account) -> Credential | None:
        secret = get_password(account.address, account.host)
        if not secret:
            return None
        return Credential(username=account.address, secret=secret)
