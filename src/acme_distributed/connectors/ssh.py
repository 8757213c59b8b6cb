"""Shared session handling of the SSH based connectors."""

import logging
import re
from abc import abstractmethod

from acme_distributed._logging import get_logger
from acme_distributed.config import SshConnectorConfig
from acme_distributed.connectors.base import Connector
from acme_distributed.exceptions import ConnectorError
from acme_distributed.transport import SshSession, SshTransport

logger = get_logger(__name__)

SUCCESS_MARKER = "success"

# Challenge names and contents are interpolated into remote shell commands,
# so they are restricted to the characters ACME actually produces.
NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
CONTENT_PATTERN = re.compile(r"[A-Za-z0-9_=.-]+")


class SshConnector(Connector):
    """Connector that drives a remote host through an SSH session.

    Args:
        config: Connection settings of this connector.
        transport: Opens SSH sessions; a default SshTransport if not given.
        logger: Logger for connector messages.
    """

    def __init__(
        self,
        config: SshConnectorConfig,
        transport: SshTransport | None = None,
        logger: logging.Logger = logger,
    ):
        super().__init__(config.name)
        self.config = config
        self._transport = transport or SshTransport()
        self._session: SshSession | None = None
        self._logger = logger

    @property
    def hostname(self) -> str:
        return self.config.hostname

    @property
    def username(self) -> str:
        return self.config.username

    @property
    def connected(self) -> bool:
        return self._session is not None

    def connect(self, force_reconnect: bool = False) -> None:
        if self.connected:
            if not force_reconnect:
                return
            self.disconnect()

        self._logger.debug(
            "Connecting",
            extra={"connector": self.name, "hostname": self.hostname, "username": self.username},
        )
        try:
            self._session = self._transport.start(
                self.hostname,
                self.username,
                port=self.config.ssh_port,
                timeout=self.config.timeout,
            )
        except ConnectorError as e:
            raise ConnectorError(f"[{self.name}] {e}", connector=self.name) from e

        try:
            self._probe()
        except ConnectorError:
            self.disconnect()
            raise
        self._logger.info("Connected", extra={"connector": self.name, "hostname": self.hostname})

    def disconnect(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        session.close()
        self._logger.debug("Disconnected", extra={"connector": self.name})

    def _check_connection(self) -> SshSession:
        if self._session is None:
            raise ConnectorError(f"[{self.name}] Not connected", connector=self.name)
        return self._session

    def _exec(self, command: str) -> str:
        session = self._check_connection()
        self._logger.debug(
            "Running remote command", extra={"connector": self.name, "command": command}
        )
        try:
            return session.exec(command)
        except ConnectorError as e:
            raise ConnectorError(f"[{self.name}] {e}", connector=self.name) from e

    def _succeeded(self, command: str) -> bool:
        """Run a command that prints the success marker when it worked."""
        return self._exec(command).strip() == SUCCESS_MARKER

    def _validate(self, name: str, content: str) -> None:
        if not NAME_PATTERN.fullmatch(name):
            raise ConnectorError(
                f"[{self.name}] Malformed challenge name: {name!r}", connector=self.name
            )
        if not CONTENT_PATTERN.fullmatch(content):
            raise ConnectorError(
                f"[{self.name}] Malformed challenge content: {content!r}", connector=self.name
            )

    @abstractmethod
    def _probe(self) -> None:
        """Check that the target is usable right after connecting.

        Raises:
            ConnectorError: If it is not.
        """
        ...
