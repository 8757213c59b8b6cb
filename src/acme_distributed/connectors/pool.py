"""Connector groups shared by all certificates of a run."""

import logging
from collections.abc import Mapping

from acme_distributed._logging import get_logger
from acme_distributed.config import (
    ConnectorGroupConfig,
    DnsUnboundConnectorConfig,
    HttpFileConnectorConfig,
)
from acme_distributed.connectors.base import AuthorizationType, Connector
from acme_distributed.connectors.dns_unbound import RemoteDnsConnector
from acme_distributed.connectors.http_file import RemoteFileConnector
from acme_distributed.exceptions import ConfigurationError, ConnectorError
from acme_distributed.transport import SshTransport

logger = get_logger(__name__)

_AUTHORIZATION_TYPES = {
    "ssh_http_file": AuthorizationType.HTTP_01,
    "ssh_dns_unbound": AuthorizationType.DNS_01,
}


def build_connector(
    config: HttpFileConnectorConfig | DnsUnboundConnectorConfig,
    transport: SshTransport | None = None,
    logger: logging.Logger = logger,
) -> Connector:
    """Create the connector for a connector configuration entry."""
    if isinstance(config, HttpFileConnectorConfig):
        return RemoteFileConnector(config, transport=transport, logger=logger)
    if isinstance(config, DnsUnboundConnectorConfig):
        return RemoteDnsConnector(config, transport=transport, logger=logger)
    raise ConfigurationError(f"Unsupported connector type: {type(config).__name__}")


class ConnectorPool:
    """Lazily connected connector groups.

    A group is connected the first time a certificate asks for it and
    stays connected for later certificates. Connectors that fail to
    connect are left out of the group for the rest of the run.

    Args:
        groups: Connector group configurations by name.
        transport: Shared SSH transport for all connectors.
        logger: Logger for connector messages.
    """

    def __init__(
        self,
        groups: Mapping[str, ConnectorGroupConfig],
        transport: SshTransport | None = None,
        logger: logging.Logger = logger,
    ):
        self._configs = dict(groups)
        self._transport = transport or SshTransport()
        self._logger = logger
        self._groups: dict[str, list[Connector]] = {}

    def _config(self, name: str) -> ConnectorGroupConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise ConfigurationError(f"Connector group '{name}' does not exist") from None

    def authorization_type(self, name: str) -> AuthorizationType:
        """The challenge type fulfilled by a group."""
        return _AUTHORIZATION_TYPES[self._config(name).type]

    def build(self, name: str) -> list[Connector]:
        """Create (without connecting) the connectors of a group.

        Raises:
            ConfigurationError: If the group does not exist.
        """
        config = self._config(name)
        return [build_connector(c, self._transport, self._logger) for c in config.connectors]

    def group(self, name: str) -> list[Connector]:
        """Get the connected connectors of a group, connecting on first use.

        Returns:
            Connectors that are connected; may be empty if none could be.

        Raises:
            ConfigurationError: If the group does not exist.
        """
        if name in self._groups:
            return [c for c in self._groups[name] if c.connected]

        connectors = []
        for connector in self.build(name):
            try:
                connector.connect()
            except ConnectorError as e:
                self._logger.error(
                    "Cannot connect",
                    extra={"connector": connector.name, "group": name, "error": str(e)},
                )
                continue
            connectors.append(connector)

        self._groups[name] = connectors
        self._logger.debug(
            "Connector group ready",
            extra={
                "group": name,
                "connected": len(connectors),
                "configured": len(self._configs[name].connectors),
            },
        )
        return list(connectors)

    def close(self) -> None:
        """Disconnect every connector opened during the run."""
        for connectors in self._groups.values():
            for connector in connectors:
                connector.disconnect()
        self._groups.clear()
