"""Connectors that place challenge artifacts on remote targets."""

from acme_distributed.connectors.base import AuthorizationType, Connector
from acme_distributed.connectors.dns_unbound import RemoteDnsConnector
from acme_distributed.connectors.http_file import RemoteFileConnector
from acme_distributed.connectors.pool import ConnectorPool, build_connector
from acme_distributed.connectors.ssh import SshConnector

__all__ = [
    "AuthorizationType",
    "Connector",
    "ConnectorPool",
    "RemoteDnsConnector",
    "RemoteFileConnector",
    "SshConnector",
    "build_connector",
]
