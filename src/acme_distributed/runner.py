"""A complete run: endpoint selection, scheduling and certificate processing."""

import logging
import time
from collections.abc import Callable
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

from acme_distributed._logging import Timer, get_logger
from acme_distributed.account import AccountAction, load_account_key, manage_account
from acme_distributed.client import AcmeClient
from acme_distributed.config import Config
from acme_distributed.connectors import ConnectorPool
from acme_distributed.orchestrator import ChallengeOrchestrator
from acme_distributed.retry import RetryPolicy
from acme_distributed.scheduler import RenewalScheduler
from acme_distributed.transport import SshTransport

logger = get_logger(__name__)


class RunOptions(BaseModel):
    """Options of a single run, usually taken from the command line."""

    model_config = ConfigDict(frozen=True)

    endpoint: str | None = None
    certificates: tuple[str, ...] = ()
    renew_days: Annotated[int, Field(ge=0)] | None = None
    generate_certificate_keys: bool = False
    generate_account_keys: bool = False
    dry_run: bool = False
    account_action: AccountAction | None = None


class RunReport(BaseModel):
    """What a run did."""

    endpoint: str
    account_action: AccountAction | None = None
    selected: list[str] = []
    succeeded: list[str] = []
    failed: list[str] = []

    @property
    def ok(self) -> bool:
        return not self.failed


class Runner:
    """Processes all due certificates of a configuration against one endpoint.

    Configuration problems abort the run before the ACME server or any
    connector is contacted. Failures of single certificates are recorded
    in the report; the remaining certificates are still processed.

    Args:
        config: Loaded configuration.
        options: Run options.
        transport: SSH transport shared by all connectors.
        client_factory: Creates the ACME client; AcmeClient by default.
        sleep: Clock used while polling the ACME server.
        logger: Logger for run messages.
    """

    def __init__(
        self,
        config: Config,
        options: RunOptions | None = None,
        transport: SshTransport | None = None,
        client_factory: Callable[..., AcmeClient] = AcmeClient,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger = logger,
    ):
        self.config = config
        self.options = options or RunOptions()
        self._transport = transport
        self._client_factory = client_factory
        self._sleep = sleep
        self._logger = logger

    def run(self) -> RunReport:
        """Execute the run.

        Raises:
            ConfigurationError: If the endpoint or its account key is
                unusable, or a certificate key cannot be generated.
            AcmeError: If an account action fails.
        """
        options = self.options
        endpoint = self.config.select_endpoint(options.endpoint)
        account_key = load_account_key(
            endpoint, generate=options.generate_account_keys, logger=self._logger
        )
        self._logger.info("Using endpoint", extra={"endpoint": endpoint.name, "url": endpoint.url})

        report = RunReport(endpoint=endpoint.name, account_action=options.account_action)
        with self._client_factory(endpoint.url, account_key, ca_cert=endpoint.ca_cert) as client:
            if options.account_action is not None:
                manage_account(options.account_action, client, endpoint, logger=self._logger)
                return report

            certificates = self.config.build_certificates(endpoint, renew_days=options.renew_days)
            scheduler = RenewalScheduler(
                generate_keys=options.generate_certificate_keys, logger=self._logger
            )
            selected = scheduler.select(certificates, names=options.certificates)
            report.selected = [c.name for c in selected]

            pool = ConnectorPool(self.config.connector_groups, self._transport, logger=self._logger)
            orchestrator = ChallengeOrchestrator(
                client,
                pool,
                RetryPolicy(endpoint.timeout_retries, logger=self._logger),
                dry_run=options.dry_run,
                sleep=self._sleep,
                logger=self._logger,
            )
            with Timer() as timer:
                try:
                    for certificate in selected:
                        if orchestrator.process(certificate):
                            report.succeeded.append(certificate.name)
                        else:
                            report.failed.append(certificate.name)
                finally:
                    pool.close()

        self._logger.info(
            "Run finished",
            extra={
                "endpoint": endpoint.name,
                "succeeded": len(report.succeeded),
                "failed": len(report.failed),
                "duration_ms": round(timer.elapsed_ms, 2),
            },
        )
        return report
