"""Bounded retries and polling around ACME server interactions."""

import logging
import time
from collections.abc import Callable, Collection
from enum import StrEnum
from typing import Any, TypeVar

from acme_distributed._logging import get_certificate_extra, get_logger
from acme_distributed.exceptions import AcmeError, ChallengeError, TransientProviderTimeout

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 10


class Phase(StrEnum):
    """Orchestration phases that talk to the ACME server."""

    NEW_ORDER = "new-order"
    AUTHORIZATION_FETCH = "authorization-fetch"
    VALIDATION_REQUEST = "validation-request"
    VALIDATION_POLL = "validation-poll"
    ORDER_FINALIZE = "order-finalize"
    ORDER_POLL = "order-poll"
    CERTIFICATE_RETRIEVAL = "certificate-retrieval"


class RetryBudget:
    """Counts transient timeouts for one phase against a fixed allowance.

    A budget may be shared by several calls (a polling loop uses a single
    budget for all of its reloads), so timeouts accumulate until the
    allowance is spent.

    Args:
        phase: Phase name used in errors and log records.
        retries: Number of timeouts tolerated before giving up.
        logger: Logger for retry messages.
    """

    def __init__(self, phase: str, retries: int, logger: logging.Logger = logger):
        self.phase = phase
        self.retries = retries
        self.timeouts = 0
        self._logger = logger

    @property
    def exhausted(self) -> bool:
        return self.timeouts > self.retries

    def spend(self, error: TransientProviderTimeout) -> None:
        """Record one timeout.

        Raises:
            ChallengeError: If more timeouts occurred than the budget allows.
        """
        self.timeouts += 1
        if self.exhausted:
            raise ChallengeError(
                f"Giving up after {self.timeouts} timeouts during {self.phase}",
                phase=self.phase,
            ) from error
        self._logger.debug(
            "ACME server timeout, retrying",
            extra={
                "phase": self.phase,
                "timeouts": self.timeouts,
                "retries": self.retries,
                **get_certificate_extra(),
            },
        )

    def run(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run an operation, re-attempting it immediately on timeouts.

        Raises:
            ChallengeError: If the budget is exhausted or the server
                reports any other error.
        """
        while True:
            try:
                return operation(*args, **kwargs)
            except TransientProviderTimeout as e:
                self.spend(e)
            except AcmeError as e:
                raise ChallengeError(f"{self.phase} failed: {e}", phase=self.phase) from e


class RetryPolicy:
    """Retry policy shared by all ACME interactions of an endpoint.

    Args:
        retries: Timeouts tolerated per phase (the endpoint's
            ``timeout_retries``).
        logger: Logger for retry messages.
    """

    def __init__(self, retries: int = DEFAULT_RETRIES, logger: logging.Logger = logger):
        if retries < 0:
            raise ValueError("retries must not be negative")
        self.retries = retries
        self._logger = logger

    def budget(self, phase: str) -> RetryBudget:
        """Create a fresh budget for one phase."""
        return RetryBudget(phase, self.retries, self._logger)

    def call(self, phase: str, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a single operation under a fresh budget."""
        return self.budget(phase).run(operation, *args, **kwargs)


class Poller:
    """Fixed-interval polling of an ACME resource.

    Args:
        interval: Seconds to wait between reloads.
        sleep: Clock used for waiting; tests pass a fake.
        max_polls: Maximum number of reloads, None for no limit.
    """

    def __init__(
        self,
        interval: float,
        sleep: Callable[[float], None] = time.sleep,
        max_polls: int | None = None,
    ):
        self.interval = interval
        self.sleep = sleep
        self.max_polls = max_polls

    def poll(
        self,
        status: Callable[[], str],
        reload: Callable[[], Any],
        pending: Collection[str],
        budget: RetryBudget,
    ) -> str:
        """Reload a resource until its status leaves ``pending``.

        Args:
            status: Returns the current status of the resource.
            reload: Refreshes the resource from the server.
            pending: Statuses that mean "not finished yet".
            budget: Budget charged for reload timeouts.

        Returns:
            The first status outside of ``pending``.

        Raises:
            ChallengeError: If the budget or ``max_polls`` is exhausted.
        """
        polls = 0
        while (current := status()) in pending:
            if self.max_polls is not None and polls >= self.max_polls:
                raise ChallengeError(
                    f"Status still '{current}' after {polls} polls during {budget.phase}",
                    phase=budget.phase,
                )
            self.sleep(self.interval)
            polls += 1
            budget.run(reload)
        return current
