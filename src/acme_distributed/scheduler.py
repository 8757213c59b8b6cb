"""Selection of the certificates that need to be issued in a run."""

import logging
import os
from collections.abc import Iterable, Sequence
from datetime import datetime

from acme_distributed._logging import get_logger
from acme_distributed.certificate import Certificate
from acme_distributed.crypto import generate_rsa_key, write_private_key
from acme_distributed.exceptions import ConfigurationError

logger = get_logger(__name__)


class RenewalScheduler:
    """Decides which certificates are (re)issued.

    A certificate is selected when it has no PEM yet, or when its
    remaining lifetime in whole days is at most its ``renew_days``.

    Args:
        generate_keys: Generate missing certificate keys instead of
            skipping the certificate.
        logger: Logger for scheduling messages.
    """

    def __init__(self, generate_keys: bool = False, logger: logging.Logger = logger):
        self.generate_keys = generate_keys
        self._logger = logger

    def select(
        self,
        certificates: Sequence[Certificate],
        names: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[Certificate]:
        """Pick the certificates to process, in configuration order.

        Args:
            certificates: All configured certificates.
            names: Only consider these certificates; empty means all.
            now: Reference time for lifetime checks.

        Returns:
            Certificates that need a new PEM.

        Raises:
            ConfigurationError: If a key must be generated but its
                directory is missing or not writable.
        """
        wanted = set(names)
        selected = []
        for certificate in certificates:
            if wanted and certificate.name not in wanted:
                self._logger.debug(
                    "Certificate not requested", extra={"certificate": certificate.name}
                )
                continue

            if not certificate.key_exists():
                if not self.generate_keys:
                    self._logger.error(
                        "Private key does not exist, skipping certificate",
                        extra={"certificate": certificate.name, "key": str(certificate.key)},
                    )
                    continue
                self.generate_key(certificate)

            try:
                renewable = certificate.renewable(now=now)
            except (OSError, ValueError) as e:
                self._logger.error(
                    "Cannot read certificate, skipping",
                    extra={
                        "certificate": certificate.name,
                        "path": str(certificate.path),
                        "error": str(e),
                    },
                )
                continue

            lifetime = certificate.remaining_lifetime()
            if renewable:
                self._logger.info(
                    "Certificate is due for renewal",
                    extra={
                        "certificate": certificate.name,
                        "remaining_days": "none" if lifetime is None else lifetime,
                        "renew_days": certificate.renew_days,
                    },
                )
                selected.append(certificate)
            else:
                self._logger.debug(
                    "Certificate is not due for renewal",
                    extra={
                        "certificate": certificate.name,
                        "remaining_days": lifetime,
                        "renew_days": certificate.renew_days,
                    },
                )

        for name in sorted(wanted - {c.name for c in certificates}):
            self._logger.warning(
                "Requested certificate is not configured", extra={"certificate": name}
            )

        self._logger.info(
            "Certificates selected",
            extra={"selected": len(selected), "configured": len(certificates)},
        )
        return selected

    def generate_key(self, certificate: Certificate) -> None:
        """Create the private key of a certificate (mode 0600).

        Raises:
            ConfigurationError: If the key's directory is missing or not
                writable.
        """
        parent = certificate.key.parent
        if not parent.is_dir() or not os.access(parent, os.W_OK):
            raise ConfigurationError(
                f"Cannot create private key {certificate.key}: directory {parent} "
                "does not exist or is not writable"
            )
        self._logger.info(
            "Generating private key",
            extra={
                "certificate": certificate.name,
                "key": str(certificate.key),
                "key_size": certificate.key_size,
            },
        )
        try:
            write_private_key(certificate.key, generate_rsa_key(certificate.key_size))
        except OSError as e:
            raise ConfigurationError(f"Cannot create private key {certificate.key}: {e}") from e
