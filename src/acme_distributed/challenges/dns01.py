"""DNS-01 challenge helpers."""

import base64
import hashlib

# Label prepended to the validated name for the TXT record
RECORD_LABEL = "_acme-challenge"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Compute the DNS TXT record value for DNS-01 challenge.

    The TXT record value is the base64url-encoded SHA-256 digest
    of the key authorization string.

    Args:
        key_authorization: The key authorization string.

    Returns:
        The base64url-encoded SHA-256 digest (without padding).
    """
    digest = hashlib.sha256(key_authorization.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
