"""Key, CSR and JWS helpers for talking to the ACME server."""

import base64
import hashlib
import json
import os
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

# Type alias for private keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

# curve name -> (JWK crv, coordinate size in bytes, JWS alg, digest)
_CURVES = {
    "secp256r1": ("P-256", 32, "ES256", hashes.SHA256),
    "secp384r1": ("P-384", 48, "ES384", hashes.SHA384),
}


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits (2048 or 4096 recommended).

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def load_private_key_pem(pem_data: str, password: bytes | None = None) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Args:
        pem_data: PEM-encoded private key string.
        password: Optional password for encrypted keys.

    Returns:
        RSA or ECDSA private key.

    Raises:
        ValueError: If PEM data is invalid or password is incorrect.
    """
    try:
        key = serialization.load_pem_private_key(
            pem_data.encode("utf-8"),
            password=password,
        )
    except ValueError as e:
        error_msg = str(e).lower()
        if "password" in error_msg or "decrypt" in error_msg:
            raise ValueError("Invalid password or encrypted key requires password") from e
        raise ValueError(f"Invalid PEM data: {e}") from e
    except TypeError as e:
        # Raised when an encrypted key is loaded without password
        raise ValueError("Invalid password or encrypted key requires password") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")

    return key


def load_private_key(path: str | Path) -> PrivateKey:
    """Load a PEM private key from a file.

    Raises:
        ValueError: If the file cannot be read or does not hold a usable key.
    """
    try:
        pem_data = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"Cannot read private key {path}: {e}") from e
    return load_private_key_pem(pem_data)


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key as unencrypted PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_private_key(path: str | Path, key: PrivateKey) -> None:
    """Write a private key readable by the owner only (mode 0600).

    The file is created with restrictive permissions up front, so the key
    is never on disk with wider access.

    Raises:
        OSError: If the file cannot be created.
    """
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(private_key_to_pem(key))
    os.chmod(path, 0o600)


def create_csr(
    key: PrivateKey,
    common_name: str,
    names: list[str],
) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request (CSR).

    Args:
        key: Private key to sign the CSR.
        common_name: Subject common name.
        names: Domain names for the SAN extension.

    Returns:
        Certificate Signing Request.

    Raises:
        ValueError: If no common name is given.
    """
    if not common_name:
        raise ValueError("A common name is required")

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    san = x509.SubjectAlternativeName([x509.DNSName(name) for name in names or [common_name]])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_der(csr: x509.CertificateSigningRequest) -> bytes:
    """DER-encode a CSR for the ACME finalize payload."""
    return csr.public_bytes(serialization.Encoding.DER)


def certificate_not_after(pem_data: bytes) -> datetime:
    """Return the expiry (notAfter, UTC) of the first certificate in a PEM.

    Raises:
        ValueError: If the data is not a PEM certificate.
    """
    cert = x509.load_pem_x509_certificate(pem_data)
    return cert.not_valid_after_utc


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _curve_params(key: ec.EllipticCurvePrivateKey) -> tuple[str, int, str, type]:
    curve_name = key.curve.name
    if curve_name not in _CURVES:
        raise ValueError(f"Unsupported curve: {curve_name}")
    return _CURVES[curve_name]


def _int_to_base64url(n: int, length: int | None = None) -> str:
    if length is None:
        length = (n.bit_length() + 7) // 8
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def get_jwk(key: PrivateKey) -> dict:
    """Get the JWK (JSON Web Key) representation of the public key.

    Args:
        key: Private key to extract public JWK from.

    Returns:
        JWK dictionary.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.public_key().public_numbers()
        return {"kty": "RSA", "n": _int_to_base64url(numbers.n), "e": _int_to_base64url(numbers.e)}

    crv, coord_size, _, _ = _curve_params(key)
    numbers = key.public_key().public_numbers()
    return {
        "kty": "EC",
        "crv": crv,
        "x": _int_to_base64url(numbers.x, coord_size),
        "y": _int_to_base64url(numbers.y, coord_size),
    }


def key_thumbprint(key: PrivateKey) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    Args:
        key: Private key to compute thumbprint for.

    Returns:
        Base64url-encoded SHA-256 thumbprint.
    """
    jwk = get_jwk(key)
    # Only the required members, lexicographically ordered, no whitespace
    members = ("e", "kty", "n") if jwk["kty"] == "RSA" else ("crv", "kty", "x", "y")
    canonical = json.dumps({m: jwk[m] for m in members}, sort_keys=True, separators=(",", ":"))
    return base64url_encode(hashlib.sha256(canonical.encode("utf-8")).digest())


def sign_jws(
    key: PrivateKey,
    payload: dict | str,
    url: str,
    nonce: str | None = None,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a flattened JWS (JSON Web Signature) for ACME.

    Args:
        key: Private key to sign with.
        payload: Payload to sign (dict for JSON, empty string for POST-as-GET).
        url: URL of the ACME endpoint.
        nonce: Replay nonce.
        kid: Account URL (if registered). If None, includes JWK.

    Returns:
        JWS in flattened JSON serialization (protected, payload, signature).
    """
    if isinstance(key, rsa.RSAPrivateKey):
        alg = "RS256"
    else:
        _, coord_size, alg, digest = _curve_params(key)

    protected: dict[str, str | dict] = {"alg": alg, "url": url}
    if nonce is not None:
        protected["nonce"] = nonce
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)

    protected_b64 = base64url_encode(json.dumps(protected, separators=(",", ":")).encode("utf-8"))
    if payload == "":
        payload_b64 = ""
    else:
        payload_b64 = base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    signing_input = f"{protected_b64}.{payload_b64}".encode()

    if isinstance(key, rsa.RSAPrivateKey):
        signature = key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
    else:
        # JWS wants the fixed-size r||s form, not DER
        r, s = decode_dss_signature(key.sign(signing_input, ec.ECDSA(digest())))
        signature = r.to_bytes(coord_size, byteorder="big") + s.to_bytes(
            coord_size, byteorder="big"
        )

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }
