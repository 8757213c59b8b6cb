"""DNS-01 connector adding TXT records to a remote unbound resolver."""

import re
import shlex

from acme_distributed.config import DnsUnboundConnectorConfig
from acme_distributed.connectors.base import AuthorizationType
from acme_distributed.connectors.ssh import SUCCESS_MARKER, SshConnector
from acme_distributed.exceptions import ConnectorError

_HOSTNAME = re.compile(
    r"(?=.{1,253}$)"
    r"([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)"
    r"(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*"
)


class RemoteDnsConnector(SshConnector):
    """Adds challenge TXT records as local data of an unbound resolver.

    Records are managed with ``unbound-control local_data`` and
    ``local_data_remove``. Removal drops every record at the challenge
    name, including ones not created by this connector.
    """

    config: DnsUnboundConnectorConfig

    @property
    def authorization_type(self) -> AuthorizationType:
        return AuthorizationType.DNS_01

    @property
    def unbound_ctrl(self) -> str:
        return self.config.unbound_ctrl

    def _probe(self) -> None:
        ctrl = shlex.quote(self.unbound_ctrl)
        command = f"test -x {ctrl} && {ctrl} list_local_zones >/dev/null && printf {SUCCESS_MARKER}"
        if not self._succeeded(command):
            raise ConnectorError(
                f"[{self.name}] {self.unbound_ctrl} is not usable on {self.hostname}",
                connector=self.name,
            )

    def create_challenge(self, subject: str, name: str, content: str) -> str:
        self._check_connection()
        self._validate(name, content)
        domain = subject[2:] if subject.startswith("*.") else subject
        if not _HOSTNAME.fullmatch(domain):
            raise ConnectorError(
                f"[{self.name}] Malformed subject: {subject!r}", connector=self.name
            )

        record = f"{name}.{domain}"
        data = f'{record}. {self.config.ttl} IN TXT "{content}"'
        command = (
            f"{shlex.quote(self.unbound_ctrl)} local_data {shlex.quote(data)}"
            f" >/dev/null && printf {SUCCESS_MARKER}"
        )
        if not self._succeeded(command):
            raise ConnectorError(
                f"[{self.name}] Cannot add TXT record {record}", connector=self.name
            )

        self._challenges.append(record)
        self._logger.info(
            "Challenge record created",
            extra={"connector": self.name, "subject": subject, "record": record},
        )
        return record

    def remove_challenge(self, ref: str) -> bool:
        self._check_connection()
        command = (
            f"{shlex.quote(self.unbound_ctrl)} local_data_remove {shlex.quote(ref + '.')}"
            f" >/dev/null && printf {SUCCESS_MARKER}"
        )
        removed = self._succeeded(command)
        if not removed:
            self._logger.warning(
                "Challenge record not removed", extra={"connector": self.name, "record": ref}
            )
        return removed
