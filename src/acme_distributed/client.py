"""ACME client for the certificate authority."""

from typing import TypeVar

import httpx
from pydantic import BaseModel

from acme_distributed._logging import get_logger
from acme_distributed.crypto import PrivateKey, key_thumbprint, sign_jws
from acme_distributed.exceptions import AcmeError, BadNonceError, TransientProviderTimeout
from acme_distributed.models import Account, Directory, Order
from acme_distributed.resources import OrderHandle

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class AcmeClient:
    """Minimal RFC 8555 client used to drive orders at an ACME endpoint.

    Requests that time out raise TransientProviderTimeout so callers can
    retry them; every other failure is reported as AcmeError.

    Args:
        directory_url: URL of the ACME directory endpoint.
        account_key: Private key for the ACME account.
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification.
        timeout: Per-request timeout in seconds.
    """

    MAX_NONCE_RETRIES = 3

    def __init__(
        self,
        directory_url: str,
        account_key: PrivateKey,
        ca_cert: str | bool | None = None,
        timeout: float = 30.0,
    ):
        self.directory_url = directory_url
        self.account_key = account_key

        verify = True if ca_cert is None else ca_cert
        self._http = httpx.Client(verify=verify, timeout=timeout)

        self._directory: Directory | None = None
        self._nonce: str | None = None
        self._account_url: str | None = None
        self._thumbprint: str | None = None

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()

    def __enter__(self) -> "AcmeClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, translating transport failures."""
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderTimeout(f"Timeout during {method} {url}: {e}") from e
        except httpx.HTTPError as e:
            raise AcmeError(
                type="urn:ietf:params:acme:error:connection",
                detail=f"{method} {url} failed: {e}",
                status_code=0,
            ) from e

    @property
    def directory(self) -> Directory:
        """Get the ACME directory (cached after first fetch)."""
        if self._directory is None:
            response = self._send("GET", self.directory_url)
            if response.status_code >= 400:
                raise AcmeError(
                    type="unknown",
                    detail=f"Cannot fetch directory {self.directory_url}",
                    status_code=response.status_code,
                )
            self._directory = self.parse_response(response, Directory)
        return self._directory

    def parse_response(self, response: httpx.Response, model: type[M]) -> M:
        """Validate the body of a successful response against a resource model.

        Raises:
            AcmeError: If the body is not JSON or does not describe the
                expected resource.
        """
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            raise AcmeError(
                type="urn:ietf:params:acme:error:malformed",
                detail=f"Unexpected {model.__name__} from {response.url}: {e}",
                status_code=response.status_code,
            ) from e

    @property
    def account_url(self) -> str | None:
        """Get the account URL (set after registration or lookup)."""
        return self._account_url

    @property
    def thumbprint(self) -> str:
        """JWK thumbprint of the account key."""
        if self._thumbprint is None:
            self._thumbprint = key_thumbprint(self.account_key)
        return self._thumbprint

    def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        if self._nonce:
            nonce = self._nonce
            self._nonce = None
            return nonce

        response = self._send("HEAD", self.directory.new_nonce)
        if "Replay-Nonce" not in response.headers:
            raise AcmeError(
                type="urn:ietf:params:acme:error:badNonce",
                detail="Server did not provide a nonce",
                status_code=response.status_code,
            )
        return response.headers["Replay-Nonce"]

    def _update_nonce(self, response: httpx.Response) -> None:
        """Update the cached nonce from response headers."""
        if "Replay-Nonce" in response.headers:
            self._nonce = response.headers["Replay-Nonce"]

    def _signed_request(
        self,
        url: str,
        payload: dict | str,
        use_kid: bool = True,
        headers: dict[str, str] | None = None,
        _retry_count: int = 0,
    ) -> httpx.Response:
        """Make a JWS-signed POST request to the ACME server.

        Args:
            url: The endpoint URL.
            payload: The request payload (dict for JSON, "" for POST-as-GET).
            use_kid: If True, use kid (account URL) in JWS header.
                     If False, use jwk (for account lookup/registration).
            headers: Additional request headers.

        Returns:
            The HTTP response.

        Raises:
            AcmeError: If the ACME server returns an error.
            TransientProviderTimeout: If the request timed out.
        """
        kid = self._account_kid() if use_kid else None
        nonce = self._get_nonce()

        body = sign_jws(key=self.account_key, payload=payload, url=url, nonce=nonce, kid=kid)
        response = self._send(
            "POST",
            url,
            json=body,
            headers={"Content-Type": "application/jose+json", **(headers or {})},
        )

        self._update_nonce(response)

        if response.status_code >= 400:
            try:
                problem = response.json()
            except ValueError:
                problem = None
            if not isinstance(problem, dict):
                raise AcmeError(
                    type="unknown",
                    detail=response.text,
                    status_code=response.status_code,
                )
            error = AcmeError.from_response(problem, response.status_code, response.headers)

            if isinstance(error, BadNonceError) and _retry_count < self.MAX_NONCE_RETRIES:
                logger.debug("Retrying request after bad nonce", extra={"url": url})
                self._nonce = None
                return self._signed_request(url, payload, use_kid, headers, _retry_count + 1)

            raise error

        return response

    def post_as_get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        """Fetch a resource with a POST-as-GET request (RFC 8555 Section 6.3)."""
        return self._signed_request(url, "", headers=headers)

    def _account_kid(self) -> str:
        """Account URL for the kid header, looked up once if necessary."""
        if not self._account_url:
            self.register_account(only_return_existing=True)
        if not self._account_url:
            raise AcmeError(
                type="urn:ietf:params:acme:error:accountDoesNotExist",
                detail="Server returned no account URL",
                status_code=0,
            )
        return self._account_url

    def register_account(
        self,
        email: str | None = None,
        only_return_existing: bool = False,
    ) -> Account:
        """Register a new account or find an existing one.

        If an account already exists for the key, it will be returned.

        Args:
            email: Contact email address (optional).
            only_return_existing: Only look up an existing account, never
                create one.

        Returns:
            The Account resource.
        """
        payload: dict = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]
        if only_return_existing:
            payload["onlyReturnExisting"] = True

        response = self._signed_request(self.directory.new_account, payload, use_kid=False)
        self._account_url = response.headers.get("Location")

        logger.debug("Account resolved", extra={"account_url": self._account_url})
        return self.parse_response(response, Account)

    def update_account(self, email: str) -> Account:
        """Replace the contact address of the account (RFC 8555 Section 7.3.2)."""
        response = self._signed_request(self._account_kid(), {"contact": [f"mailto:{email}"]})
        return self.parse_response(response, Account)

    def deactivate_account(self) -> Account:
        """Deactivate the current account (RFC 8555 Section 7.3.6).

        WARNING: This is irreversible. A deactivated account cannot be
        reactivated, and no new orders can be created.
        """
        response = self._signed_request(self._account_kid(), {"status": "deactivated"})
        return self.parse_response(response, Account)

    def new_order(self, names: list[str]) -> OrderHandle:
        """Create a new certificate order.

        Args:
            names: Domain names for the certificate.

        Returns:
            Handle on the created order.
        """
        payload = {"identifiers": [{"type": "dns", "value": name} for name in names]}
        response = self._signed_request(self.directory.new_order, payload)
        order = self.parse_response(response, Order)
        order_url = response.headers.get("Location")
        if not order_url:
            raise AcmeError(
                type="urn:ietf:params:acme:error:malformed",
                detail="Server returned no order URL",
                status_code=response.status_code,
            )
        logger.debug("Order created", extra={"order_url": order_url, "status": order.status})
        return OrderHandle(self, order_url, order)
