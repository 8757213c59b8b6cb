"""Remote command execution over SSH."""

import paramiko

from acme_distributed._logging import get_logger
from acme_distributed.exceptions import ConnectorError

logger = get_logger(__name__)


class SshSession:
    """An established SSH connection that runs shell commands."""

    def __init__(
        self, client: paramiko.SSHClient, hostname: str, command_timeout: float | None = None
    ):
        self._client = client
        self.hostname = hostname
        self.command_timeout = command_timeout

    def exec(self, command: str) -> str:
        """Run a command and return its standard output.

        The exit status is not interpreted; callers check the output for a
        success marker instead.

        Raises:
            ConnectorError: If the command could not be run.
        """
        try:
            _, stdout, _ = self._client.exec_command(command, timeout=self.command_timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectorError(f"Command failed on {self.hostname}: {e}") from e
        return output

    def close(self) -> None:
        self._client.close()


class SshTransport:
    """Opens SSH sessions using the local agent and key files.

    Host keys must already be known (system known_hosts or the given file);
    unknown hosts are rejected.

    Args:
        key_filename: Private key to authenticate with, in addition to the
            agent and default key locations.
        known_hosts: Extra known_hosts file to load.
        command_timeout: Seconds to wait for a remote command.
    """

    def __init__(
        self,
        key_filename: str | None = None,
        known_hosts: str | None = None,
        command_timeout: float = 30.0,
    ):
        self.key_filename = key_filename
        self.known_hosts = known_hosts
        self.command_timeout = command_timeout

    def start(
        self, hostname: str, username: str, port: int = 22, timeout: float = 2.0
    ) -> SshSession:
        """Connect to a host.

        Raises:
            ConnectorError: If the connection or authentication fails.
        """
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.known_hosts:
            client.load_host_keys(self.known_hosts)
        client.set_missing_host_key_policy(paramiko.RejectPolicy())

        logger.debug(
            "Opening SSH session",
            extra={"hostname": hostname, "username": username, "port": port},
        )
        try:
            client.connect(
                hostname,
                port=port,
                username=username,
                timeout=timeout,
                key_filename=self.key_filename,
                allow_agent=True,
                look_for_keys=True,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectorError(f"Authentication as {username}@{hostname} failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectorError(f"Cannot connect to {hostname}:{port}: {e}") from e
        return SshSession(client, hostname, command_timeout=self.command_timeout)
