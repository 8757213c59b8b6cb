"""Processing of a single certificate from order to PEM file."""

import logging
import time
from collections.abc import Callable

from acme_distributed._logging import (
    Timer,
    get_certificate_extra,
    get_logger,
    reset_certificate,
    set_certificate,
)
from acme_distributed.certificate import Certificate
from acme_distributed.challenge import Challenge, ChallengeState
from acme_distributed.client import AcmeClient
from acme_distributed.connectors import Connector, ConnectorPool
from acme_distributed.exceptions import ChallengeError
from acme_distributed.retry import RetryPolicy

logger = get_logger(__name__)


class ChallengeOrchestrator:
    """Runs the challenge of one certificate after another.

    Artifacts created on connectors are always removed again, whether
    validation succeeded or not. Failures of one certificate are logged and
    reported through the return value of process(); they never stop the
    processing of other certificates.

    Args:
        client: ACME client of the selected endpoint.
        pool: Connector groups of the run.
        retry_policy: Retry policy of the selected endpoint.
        dry_run: Only check certificates and connectors, do not talk to
            the ACME server.
        sleep: Clock used while polling.
        logger: Logger for processing messages.
    """

    def __init__(
        self,
        client: AcmeClient,
        pool: ConnectorPool,
        retry_policy: RetryPolicy,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger = logger,
    ):
        self.client = client
        self.pool = pool
        self.retry_policy = retry_policy
        self.dry_run = dry_run
        self.sleep = sleep
        self._logger = logger

    def process(self, certificate: Certificate) -> bool:
        """Issue a new PEM for a certificate.

        Returns:
            True if the certificate was written (or, in a dry run, its
            connectors are reachable), False otherwise.
        """
        token = set_certificate(certificate.name, certificate.subjects)
        try:
            with Timer() as timer:
                success = self._process(certificate)
            self._logger.debug(
                "Certificate processed",
                extra={
                    **get_certificate_extra(),
                    "success": success,
                    "duration_ms": round(timer.elapsed_ms, 2),
                },
            )
            return success
        finally:
            reset_certificate(token)

    def _process(self, certificate: Certificate) -> bool:
        self._logger.info(
            "Processing certificate",
            extra={
                **get_certificate_extra(),
                "remaining_days": certificate.remaining_lifetime(),
            },
        )
        if not certificate.pem_writable():
            self._logger.error(
                "PEM file not writable, skipping certificate",
                extra={**get_certificate_extra(), "path": str(certificate.path)},
            )
            return False
        if not certificate.key_readable():
            self._logger.error(
                "Private key not readable, skipping certificate",
                extra={**get_certificate_extra(), "key": str(certificate.key)},
            )
            return False

        group = certificate.connector_group
        if self.dry_run:
            connectors = self.pool.group(group)
            self._logger.info(
                "Dry run, not contacting the ACME server",
                extra={**get_certificate_extra(), "group": group, "connected": len(connectors)},
            )
            return bool(connectors)

        challenge = Challenge(
            self.client,
            certificate,
            self.retry_policy,
            authorization_type=self.pool.authorization_type(group),
            sleep=self.sleep,
            logger=self._logger,
        )
        try:
            challenge.start()
        except ChallengeError as e:
            self._log_failure("Cannot start challenge", e)
            return False

        connectors = self.pool.group(group)
        if not connectors:
            self._logger.error(
                "No connector available, skipping certificate",
                extra={**get_certificate_extra(), "group": group},
            )
            return False

        self._run_challenge(challenge, connectors)

        if challenge.state != ChallengeState.VALID:
            self._logger.error(
                "Could not complete all authorizations", extra=get_certificate_extra()
            )
            return False

        try:
            challenge.finalize()
        except ChallengeError as e:
            self._log_failure("Cannot finalize order", e)
            return False
        return True

    def _run_challenge(self, challenge: Challenge, connectors: list[Connector]) -> None:
        """Distribute and validate; artifacts are removed afterwards in any case."""
        created: list[Connector] = []
        try:
            created = challenge.distribute(connectors)
            if created:
                try:
                    challenge.validate()
                except ChallengeError as e:
                    self._log_failure("Could not authorize certificate", e)
        finally:
            errors = challenge.cleanup()
            if not created:
                self._logger.warning("No challenges were created", extra=get_certificate_extra())
            elif errors:
                self._logger.warning(
                    "Errors while removing challenges, please check manually",
                    extra={**get_certificate_extra(), "errors": errors},
                )

    def _log_failure(self, message: str, error: ChallengeError) -> None:
        extra = {**get_certificate_extra(), "error": str(error)}
        if error.phase:
            extra["phase"] = str(error.phase)
        self._logger.error(message, extra=extra)
