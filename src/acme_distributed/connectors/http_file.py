"""HTTP-01 connector placing challenge files into a remote web root."""

import posixpath
import shlex
import uuid

from acme_distributed.config import HttpFileConnectorConfig
from acme_distributed.connectors.base import AuthorizationType
from acme_distributed.connectors.ssh import SUCCESS_MARKER, SshConnector
from acme_distributed.exceptions import ConnectorError


class RemoteFileConnector(SshConnector):
    """Writes challenge files below ``acme_path`` on a web server.

    The directory must be served as ``/.well-known/acme-challenge/``.
    """

    config: HttpFileConnectorConfig

    @property
    def authorization_type(self) -> AuthorizationType:
        return AuthorizationType.HTTP_01

    @property
    def acme_path(self) -> str:
        return self.config.acme_path

    def _probe(self) -> None:
        probe = shlex.quote(posixpath.join(self.acme_path, str(uuid.uuid4())))
        command = f"touch {probe} && rm -f {probe} && printf {SUCCESS_MARKER}"
        if not self._succeeded(command):
            raise ConnectorError(
                f"[{self.name}] Cannot write to {self.acme_path} on {self.hostname}",
                connector=self.name,
            )

    def create_challenge(self, subject: str, name: str, content: str) -> str:
        self._check_connection()
        self._validate(name, content)

        path = posixpath.join(self.acme_path, name)
        command = (
            f"printf '%s' {shlex.quote(content)} > {shlex.quote(path)} && printf {SUCCESS_MARKER}"
        )
        if not self._succeeded(command):
            raise ConnectorError(
                f"[{self.name}] Cannot create challenge file {path}", connector=self.name
            )

        self._challenges.append(path)
        self._logger.info(
            "Challenge file created",
            extra={"connector": self.name, "subject": subject, "path": path},
        )
        return path

    def remove_challenge(self, ref: str) -> bool:
        self._check_connection()
        path = shlex.quote(ref)
        removed = self._succeeded(f"test -f {path} && rm -f {path} && printf {SUCCESS_MARKER}")
        if removed:
            self._logger.debug(
                "Challenge file removed", extra={"connector": self.name, "path": ref}
            )
        else:
            self._logger.warning(
                "Challenge file not removed", extra={"connector": self.name, "path": ref}
            )
        return removed
