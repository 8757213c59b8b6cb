"""Exceptions raised by acme_distributed."""

from collections.abc import Mapping
from typing import Any


class AcmeError(Exception):
    """Error reported by the ACME certificate authority.

    Represents errors returned by the ACME server in the standard
    problem document format (RFC 7807), as well as transport failures
    that are not timeouts.
    """

    def __init__(
        self,
        type: str,
        detail: str,
        status_code: int,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
    ):
        self.type = type
        self.detail = detail
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        super().__init__(f"{type}: {detail}")

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: Mapping[str, str] | None = None,
    ) -> "AcmeError":
        """Create an AcmeError from a JSON response.

        Routes to appropriate subclass based on error type.

        Args:
            data: Parsed JSON error response.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction); a
                case-insensitive mapping such as httpx.Headers.

        Returns:
            AcmeError instance (or appropriate subclass).
        """
        retry_after = cls._parse_retry_after(headers.get("Retry-After")) if headers else None
        error_type = data.get("type", "unknown")

        kwargs: dict[str, Any] = {
            "type": error_type,
            "detail": data.get("detail", "Unknown error"),
            "status_code": status_code,
            "subproblems": data.get("subproblems"),
            "retry_after": retry_after,
        }

        if error_type == "urn:ietf:params:acme:error:rateLimited":
            return RateLimitError(**kwargs)
        elif error_type == "urn:ietf:params:acme:error:dns":
            return DnsValidationError(**kwargs)
        elif error_type == "urn:ietf:params:acme:error:caa":
            return CAAError(**kwargs)
        elif error_type == "urn:ietf:params:acme:error:serverInternal":
            return ServerInternalError(**kwargs)
        elif error_type == "urn:ietf:params:acme:error:badNonce":
            return BadNonceError(**kwargs)

        return cls(**kwargs)

    @staticmethod
    def _parse_retry_after(value: str | None) -> int | None:
        """Parse Retry-After header (seconds or HTTP-date)."""
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            from datetime import datetime, timezone
            from email.utils import parsedate_to_datetime

            try:
                dt = parsedate_to_datetime(value)
                return max(0, int((dt - datetime.now(timezone.utc)).total_seconds()))
            except (TypeError, ValueError):
                return None


class RateLimitError(AcmeError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""

    pass


class DnsValidationError(AcmeError):
    """DNS validation failed (urn:ietf:params:acme:error:dns)."""

    pass


class CAAError(AcmeError):
    """CAA record forbids issuance (urn:ietf:params:acme:error:caa)."""

    pass


class ServerInternalError(AcmeError):
    """ACME server internal error (urn:ietf:params:acme:error:serverInternal)."""

    pass


class BadNonceError(AcmeError):
    """Bad nonce error (urn:ietf:params:acme:error:badNonce)."""

    pass


class DistributedError(Exception):
    """Base class for orchestration errors."""

    pass


class ConfigurationError(DistributedError):
    """Invalid or incomplete configuration.

    Always fatal: raised before any network activity takes place.
    """

    pass


class CommandLineError(DistributedError):
    """Invalid command line usage."""

    pass


class ConnectorError(DistributedError):
    """A fulfillment connector failed to connect or to run a command.

    Args:
        message: Human readable description.
        connector: Name of the connector that failed.
    """

    def __init__(self, message: str, connector: str | None = None):
        self.connector = connector
        super().__init__(message)


class ChallengeError(DistributedError):
    """Processing of a single certificate cannot continue.

    Args:
        message: Human readable description.
        phase: The orchestration phase that failed (see retry.Phase).
    """

    def __init__(self, message: str, phase: str | None = None):
        self.phase = phase
        super().__init__(message)


class TransientProviderTimeout(DistributedError):
    """The ACME server did not answer in time; the request may be retried."""

    pass
