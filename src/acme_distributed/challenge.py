"""Challenge state machine: one certificate's way through an ACME order."""

import logging
import time
from collections.abc import Callable, Sequence
from enum import StrEnum

from acme_distributed._logging import Timer, get_certificate_extra, get_logger
from acme_distributed.certificate import Certificate
from acme_distributed.client import AcmeClient
from acme_distributed.connectors.base import AuthorizationType, Connector
from acme_distributed.crypto import certificate_not_after, create_csr, load_private_key
from acme_distributed.exceptions import AcmeError, ChallengeError, ConnectorError
from acme_distributed.models import AuthorizationStatus, ChallengeStatus, OrderStatus
from acme_distributed.resources import AuthorizationHandle, ChallengeHandle, OrderHandle
from acme_distributed.retry import Phase, Poller, RetryPolicy

logger = get_logger(__name__)

VALIDATION_INTERVAL = 2.0
ORDER_INTERVAL = 1.0

_VALIDATION_PENDING = frozenset({ChallengeStatus.PENDING, ChallengeStatus.PROCESSING})
_ORDER_PENDING = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


class ChallengeState(StrEnum):
    NEW = "new"
    AUTHORIZED = "authorized"
    VALIDATING = "validating"
    VALID = "valid"
    FAILED = "failed"


def fulfillment_for(
    handle: ChallengeHandle, authorization_type: AuthorizationType
) -> tuple[str, str]:
    """The (name, content) pair a connector has to publish for a challenge."""
    if authorization_type == AuthorizationType.HTTP_01:
        return handle.token, handle.file_content
    return handle.record_name, handle.record_content


class Challenge:
    """Drives the ACME order of one certificate.

    States move NEW -> AUTHORIZED (start) -> VALIDATING (distribute) ->
    VALID (validate). Any fatal error moves to FAILED. A challenge whose
    authorizations did not all become valid stays in VALIDATING; use
    is_valid() to decide whether it can be finalized.

    Args:
        client: ACME client of the endpoint.
        certificate: The certificate to issue.
        retry_policy: Retry policy of the endpoint.
        authorization_type: Challenge type fulfilled by the connectors.
        sleep: Clock used while polling.
        logger: Logger for challenge messages.
    """

    def __init__(
        self,
        client: AcmeClient,
        certificate: Certificate,
        retry_policy: RetryPolicy,
        authorization_type: AuthorizationType = AuthorizationType.HTTP_01,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger = logger,
    ):
        self.client = client
        self.certificate = certificate
        self.retry_policy = retry_policy
        self.authorization_type = authorization_type
        self.state = ChallengeState.NEW
        self.order: OrderHandle | None = None
        self.authorizations: list[AuthorizationHandle] = []
        self._cleanup: dict[Connector, None] = {}
        self._validation_poller = Poller(VALIDATION_INTERVAL, sleep)
        self._order_poller = Poller(ORDER_INTERVAL, sleep)
        self._logger = logger

    def _require(self, state: ChallengeState, action: str) -> None:
        if self.state != state:
            raise ChallengeError(f"Cannot {action} a challenge in state '{self.state}'")

    def _fail(self, error: ChallengeError) -> ChallengeError:
        self.state = ChallengeState.FAILED
        return error

    def start(self) -> None:
        """Place the order and fetch its authorizations.

        Raises:
            ChallengeError: If the challenge was already started, the server
                fails or returns no authorizations.
        """
        self._require(ChallengeState.NEW, "start")
        subjects = self.certificate.subjects
        self._logger.info(
            "Starting ACME challenge",
            extra={**get_certificate_extra(), "subjects": ",".join(subjects)},
        )

        try:
            self.order = self.retry_policy.call(Phase.NEW_ORDER, self.client.new_order, subjects)
            self.authorizations = self.retry_policy.call(
                Phase.AUTHORIZATION_FETCH, self.order.authorizations
            )
        except ChallengeError as e:
            raise self._fail(e)

        if not self.authorizations:
            raise self._fail(
                ChallengeError("Order has no authorizations", phase=Phase.AUTHORIZATION_FETCH)
            )
        self.state = ChallengeState.AUTHORIZED
        self._logger.debug(
            "Order placed",
            extra={
                **get_certificate_extra(),
                "order_url": self.order.url,
                "authorizations": len(self.authorizations),
            },
        )

    def _challenge(self, authorization: AuthorizationHandle) -> ChallengeHandle | None:
        return authorization.challenge(self.authorization_type)

    def distribute(self, connectors: Sequence[Connector]) -> list[Connector]:
        """Publish every authorization's challenge through every connector.

        A connector that fails for any authorization is logged; it stays
        in the cleanup set only if it created at least one artifact.

        Returns:
            Connectors that created artifacts, in the order given.

        Raises:
            ChallengeError: If the challenge was not started.
        """
        self._require(ChallengeState.AUTHORIZED, "distribute")
        for authorization in self.authorizations:
            handle = self._challenge(authorization)
            if handle is None:
                self._logger.error(
                    "Server offers no challenge of this type",
                    extra={
                        **get_certificate_extra(),
                        "subject": authorization.subject,
                        "type": str(self.authorization_type),
                    },
                )
                continue
            try:
                name, content = fulfillment_for(handle, self.authorization_type)
            except AcmeError as e:
                self._logger.error(
                    "Unusable challenge",
                    extra={
                        **get_certificate_extra(),
                        "subject": authorization.subject,
                        "error": str(e),
                    },
                )
                continue
            for connector in connectors:
                try:
                    connector.create_challenge(authorization.subject, name, content)
                except ConnectorError as e:
                    self._logger.error(
                        "Cannot create challenge",
                        extra={
                            **get_certificate_extra(),
                            "connector": connector.name,
                            "subject": authorization.subject,
                            "error": str(e),
                        },
                    )
                    continue
                self._cleanup.setdefault(connector)

        self.state = ChallengeState.VALIDATING
        return list(self._cleanup)

    def validate(self) -> None:
        """Ask the server to validate each authorization and wait for the result.

        All authorizations are processed, even after one turned invalid.

        Raises:
            ChallengeError: If the challenge was not distributed, or an
                ACME error or too many timeouts occur; remaining
                authorizations are then not processed.
        """
        self._require(ChallengeState.VALIDATING, "validate")
        try:
            for authorization in self.authorizations:
                self._validate_authorization(authorization)
        except ChallengeError as e:
            raise self._fail(e)

        if self.is_valid():
            self.state = ChallengeState.VALID
            self._logger.info("All authorizations are valid", extra=get_certificate_extra())

    def _validate_authorization(self, authorization: AuthorizationHandle) -> None:
        subject = authorization.subject
        if authorization.status == AuthorizationStatus.VALID:
            self._logger.debug(
                "Authorization already valid", extra={**get_certificate_extra(), "subject": subject}
            )
            return
        handle = self._challenge(authorization)
        if handle is None:
            self._logger.error(
                "No challenge to validate", extra={**get_certificate_extra(), "subject": subject}
            )
            return

        with Timer() as timer:
            self.retry_policy.call(Phase.VALIDATION_REQUEST, handle.request_validation)
            status = self._validation_poller.poll(
                lambda: handle.status,
                handle.reload,
                _VALIDATION_PENDING,
                self.retry_policy.budget(Phase.VALIDATION_POLL),
            )

        extra = {
            **get_certificate_extra(),
            "subject": subject,
            "status": status,
            "duration_ms": round(timer.elapsed_ms, 2),
        }
        if status == ChallengeStatus.VALID:
            self._logger.info("Authorization valid", extra=extra)
        else:
            if handle.error:
                extra["error"] = handle.error.get("detail", handle.error)
            self._logger.error("Authorization failed", extra=extra)

    def is_valid(self) -> bool:
        """Whether every authorization is currently valid."""
        if not self.authorizations:
            return False
        for authorization in self.authorizations:
            if authorization.status == AuthorizationStatus.VALID:
                continue
            handle = self._challenge(authorization)
            if handle is None or handle.status != ChallengeStatus.VALID:
                return False
        return True

    def cleanup(self) -> int:
        """Remove the artifacts of every connector that created any.

        Each connector is cleaned up once; later calls do nothing.

        Returns:
            Number of artifacts that could not be removed.
        """
        errors = 0
        for connector in self._cleanup:
            errors += connector.cleanup()
        self._cleanup.clear()
        return errors

    def finalize(self) -> None:
        """Have the certificate issued and write it to its PEM path.

        Raises:
            ChallengeError: If the authorizations are not all valid, or
                issuing or writing the certificate fails. The PEM file is
                left untouched in that case.
        """
        if not self.is_valid():
            raise ChallengeError(
                "Cannot finalize, not all authorizations are valid", phase=Phase.ORDER_FINALIZE
            )
        try:
            pem = self._issue()
        except ChallengeError as e:
            raise self._fail(e)

        try:
            self.certificate.write_pem(pem)
        except OSError as e:
            raise self._fail(
                ChallengeError(
                    f"Cannot write {self.certificate.path}: {e}",
                    phase=Phase.CERTIFICATE_RETRIEVAL,
                )
            ) from e
        self._logger.info(
            "Certificate issued",
            extra={**get_certificate_extra(), "path": str(self.certificate.path)},
        )

    def _issue(self) -> bytes:
        try:
            key = load_private_key(self.certificate.key)
        except ValueError as e:
            raise ChallengeError(str(e), phase=Phase.ORDER_FINALIZE) from e
        subjects = self.certificate.subjects
        csr = create_csr(key, subjects[0], subjects)

        self.retry_policy.call(Phase.ORDER_FINALIZE, self.order.finalize, csr)
        status = self._order_poller.poll(
            lambda: self.order.status,
            self.order.reload,
            _ORDER_PENDING,
            self.retry_policy.budget(Phase.ORDER_POLL),
        )
        if status != OrderStatus.VALID:
            message = f"Order is '{status}' after finalization"
            if self.order.error:
                message += f": {self.order.error.get('detail', self.order.error)}"
            raise ChallengeError(message, phase=Phase.ORDER_POLL)

        pem = self.retry_policy.call(Phase.CERTIFICATE_RETRIEVAL, self.order.certificate)
        try:
            certificate_not_after(pem)
        except ValueError as e:
            raise ChallengeError(
                f"Server returned no PEM certificate: {e}", phase=Phase.CERTIFICATE_RETRIEVAL
            ) from e
        return pem
