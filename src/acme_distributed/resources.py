"""Live handles on ACME server resources (orders, authorizations, challenges).

Handles wrap the pydantic models from acme_distributed.models together with
the client that fetched them, so callers can reload and act on a resource
without dealing with URLs and signed requests.
"""

from typing import TYPE_CHECKING

from acme_distributed.challenges import (
    RECORD_LABEL,
    compute_dns_txt_value,
    compute_key_authorization,
)
from acme_distributed.crypto import base64url_encode, csr_to_der
from acme_distributed.exceptions import AcmeError
from acme_distributed.models import Authorization, Challenge, ChallengeType, Order

if TYPE_CHECKING:
    from cryptography import x509

    from acme_distributed.client import AcmeClient


class ChallengeHandle:
    """A single challenge of an authorization."""

    def __init__(self, client: "AcmeClient", challenge: Challenge):
        self._client = client
        self._challenge = challenge

    @property
    def type(self) -> str:
        return self._challenge.type

    @property
    def url(self) -> str:
        return self._challenge.url

    @property
    def status(self) -> str:
        return self._challenge.status

    @property
    def error(self) -> dict | None:
        return self._challenge.error

    @property
    def token(self) -> str:
        if not self._challenge.token:
            raise AcmeError(
                type="urn:ietf:params:acme:error:malformed",
                detail=f"Challenge {self.url} has no token",
                status_code=0,
            )
        return self._challenge.token

    @property
    def key_authorization(self) -> str:
        return compute_key_authorization(self.token, self._client.thumbprint)

    @property
    def file_content(self) -> str:
        return self.key_authorization

    @property
    def record_name(self) -> str:
        """DNS-01 record label, relative to the subject."""
        return RECORD_LABEL

    @property
    def record_content(self) -> str:
        return compute_dns_txt_value(self.key_authorization)

    def request_validation(self) -> None:
        """Tell the server the challenge is ready to be validated."""
        response = self._client._signed_request(self.url, {})
        self._challenge = self._client.parse_response(response, Challenge)

    def reload(self) -> None:
        response = self._client.post_as_get(self.url)
        self._challenge = self._client.parse_response(response, Challenge)


class AuthorizationHandle:
    """Per-subject authorization of an order."""

    def __init__(self, client: "AcmeClient", url: str, authorization: Authorization):
        self._client = client
        self.url = url
        self._authorization = authorization
        self._challenges = {
            c.type: ChallengeHandle(client, c) for c in authorization.challenges
        }

    @property
    def subject(self) -> str:
        return self._authorization.identifier.value

    @property
    def status(self) -> str:
        return self._authorization.status

    def challenge(self, challenge_type: str) -> ChallengeHandle | None:
        """Get the challenge of a given type, or None if not offered."""
        return self._challenges.get(challenge_type)

    @property
    def http(self) -> ChallengeHandle | None:
        return self.challenge(ChallengeType.HTTP_01)

    @property
    def dns(self) -> ChallengeHandle | None:
        return self.challenge(ChallengeType.DNS_01)


class OrderHandle:
    """A certificate order placed with the ACME server."""

    def __init__(self, client: "AcmeClient", url: str, order: Order):
        self._client = client
        self.url = url
        self._order = order

    @property
    def status(self) -> str:
        return self._order.status

    @property
    def error(self) -> dict | None:
        return self._order.error

    def reload(self) -> None:
        response = self._client.post_as_get(self.url)
        self._order = self._client.parse_response(response, Order)

    def authorizations(self) -> list[AuthorizationHandle]:
        """Fetch all authorizations of the order, in order of the server's list."""
        handles = []
        for authz_url in self._order.authorizations:
            response = self._client.post_as_get(authz_url)
            authz = self._client.parse_response(response, Authorization)
            handles.append(AuthorizationHandle(self._client, authz_url, authz))
        return handles

    def finalize(self, csr: "x509.CertificateSigningRequest") -> None:
        """Submit the CSR for the order."""
        payload = {"csr": base64url_encode(csr_to_der(csr))}
        response = self._client._signed_request(self._order.finalize, payload)
        self._order = self._client.parse_response(response, Order)

    def certificate(self) -> bytes:
        """Download the issued certificate chain as PEM.

        Raises:
            AcmeError: If the order has no certificate (yet).
        """
        if not self._order.certificate:
            raise AcmeError(
                type="urn:ietf:params:acme:error:orderNotReady",
                detail=f"Order {self.url} has no certificate (status '{self.status}')",
                status_code=0,
            )
        response = self._client.post_as_get(
            self._order.certificate,
            headers={"Accept": "application/pem-certificate-chain"},
        )
        return response.content
