"""ACME account management for configured endpoints."""

import logging
import os
from enum import StrEnum

from acme_distributed._logging import get_logger
from acme_distributed.client import AcmeClient
from acme_distributed.config import Endpoint
from acme_distributed.crypto import (
    PrivateKey,
    generate_rsa_key,
    load_private_key,
    write_private_key,
)
from acme_distributed.exceptions import ConfigurationError
from acme_distributed.models import Account

logger = get_logger(__name__)


class AccountAction(StrEnum):
    """Account operations selectable on the command line."""

    CREATE = "create"
    DEACTIVATE = "deactivate"
    CHANGE = "change"


def load_account_key(
    endpoint: Endpoint, generate: bool = False, logger: logging.Logger = logger
) -> PrivateKey:
    """Load the account key of an endpoint, creating it if allowed.

    Args:
        endpoint: Endpoint with an expanded ``private_key`` path.
        generate: Create a new RSA key of ``endpoint.key_size`` bits if
            none exists.
        logger: Logger for key messages.

    Raises:
        ConfigurationError: If the key is missing (and may not be
            generated), unreadable, or cannot be written.
    """
    path = endpoint.private_key
    if not endpoint.key_exists():
        if not generate:
            raise ConfigurationError(
                f"Private key for endpoint='{endpoint.name}' at path='{path}' does not exist."
            )
        if not path.parent.is_dir() or not os.access(path.parent, os.W_OK):
            raise ConfigurationError(
                f"Cannot create account key {path}: directory {path.parent} "
                "does not exist or is not writable"
            )
        logger.info(
            "Generating account key",
            extra={"endpoint": endpoint.name, "key": str(path), "key_size": endpoint.key_size},
        )
        key = generate_rsa_key(endpoint.key_size)
        try:
            write_private_key(path, key)
        except OSError as e:
            raise ConfigurationError(f"Cannot create account key {path}: {e}") from e
        return key

    try:
        return load_private_key(path)
    except ValueError as e:
        raise ConfigurationError(f"Account key for endpoint='{endpoint.name}': {e}") from e


def create_account(
    client: AcmeClient, endpoint: Endpoint, logger: logging.Logger = logger
) -> Account:
    """Register the endpoint's key as an account, or find the existing one."""
    account = client.register_account(email=endpoint.email_addr)
    logger.info(
        "Account created",
        extra={
            "endpoint": endpoint.name,
            "account_url": client.account_url,
            "status": account.status,
        },
    )
    return account


def deactivate_account(
    client: AcmeClient, endpoint: Endpoint, logger: logging.Logger = logger
) -> Account:
    """Deactivate the endpoint's account.

    WARNING: This is irreversible. The account key cannot be used for
    new orders afterwards.
    """
    account = client.deactivate_account()
    logger.warning(
        "Account deactivated",
        extra={
            "endpoint": endpoint.name,
            "account_url": client.account_url,
            "status": account.status,
        },
    )
    return account


def change_account(
    client: AcmeClient, endpoint: Endpoint, logger: logging.Logger = logger
) -> Account:
    """Update the account's contact address to the configured one."""
    account = client.update_account(endpoint.email_addr)
    logger.info(
        "Account updated",
        extra={
            "endpoint": endpoint.name,
            "account_url": client.account_url,
            "contact": ",".join(account.contact or []),
        },
    )
    return account


_ACTIONS = {
    AccountAction.CREATE: create_account,
    AccountAction.DEACTIVATE: deactivate_account,
    AccountAction.CHANGE: change_account,
}


def manage_account(
    action: AccountAction,
    client: AcmeClient,
    endpoint: Endpoint,
    logger: logging.Logger = logger,
) -> Account:
    """Run an account action against an endpoint.

    ACME errors are not caught; they end the program.
    """
    return _ACTIONS[action](client, endpoint, logger=logger)
