"""Abstract base class for challenge connectors."""

from abc import ABC, abstractmethod
from enum import StrEnum

from acme_distributed._logging import get_logger
from acme_distributed.exceptions import ConnectorError

logger = get_logger(__name__)


class AuthorizationType(StrEnum):
    """How a connector fulfills authorizations."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"


class Connector(ABC):
    """Abstract interface for challenge connectors.

    A connector places challenge artifacts (files, DNS records) on a remote
    target so the ACME server can validate them, and removes them again.
    Connectors remember every artifact they created, so that cleanup()
    can remove all of them after validation.

    Args:
        name: Name of the connector from the configuration.
    """

    def __init__(self, name: str):
        self.name = name
        self._challenges: list[str] = []

    @property
    @abstractmethod
    def authorization_type(self) -> AuthorizationType:
        """The challenge type this connector fulfills."""
        ...

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the connector currently holds a session."""
        ...

    @abstractmethod
    def connect(self, force_reconnect: bool = False) -> None:
        """Open the session to the remote target.

        Does nothing if already connected, unless force_reconnect is set.

        Raises:
            ConnectorError: If the target is unreachable or unusable.
        """
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close the session. Does nothing if not connected."""
        ...

    @abstractmethod
    def create_challenge(self, subject: str, name: str, content: str) -> str:
        """Create a challenge artifact.

        Args:
            subject: The domain name being validated.
            name: Artifact name (HTTP token or DNS record label).
            content: Artifact content (key authorization or TXT value).

        Returns:
            Reference to the artifact, to be passed to remove_challenge().

        Raises:
            ConnectorError: If not connected, the input is malformed, or
                the remote command fails.
        """
        ...

    @abstractmethod
    def remove_challenge(self, ref: str) -> bool:
        """Remove a challenge artifact.

        Returns:
            True if the artifact was removed, False otherwise.

        Raises:
            ConnectorError: If not connected.
        """
        ...

    @property
    def challenges(self) -> list[str]:
        """References of artifacts created and not yet cleaned up."""
        return list(self._challenges)

    def cleanup(self) -> int:
        """Remove every artifact this connector created.

        Removal failures are counted, never raised, so one stale artifact
        does not keep the others in place.

        Returns:
            Number of artifacts that could not be removed.
        """
        errors = 0
        for ref in self._challenges:
            try:
                removed = self.remove_challenge(ref)
            except ConnectorError as e:
                logger.warning(
                    "Cannot remove challenge",
                    extra={"connector": self.name, "challenge": ref, "error": str(e)},
                )
                removed = False
            if not removed:
                errors += 1
        self._challenges = []
        return errors

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
