"""Key material for certificate credentials.

Each certificate credential is an RSA key pair wrapped in a self-signed X.509
certificate. Azure AD only ever sees the public certificate; the private key is
handed to the workload as a JSON Web Key (RFC 7517) in the managed secret.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
CERTIFICATE_VALIDITY = timedelta(days=365)

KEY_USE_SIGNATURE = "sig"
SIGNING_ALGORITHM = "RS256"

PUBLIC_MEMBERS = ("kty", "kid", "use", "alg", "n", "e", "x5c", "x5t", "x5t#S256")
REQUIRED_MEMBERS = ("kty", "kid", "n", "e")


class JwkError(Exception):
    """Raised when stored key material cannot be parsed."""

    pass


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_int(i: int) -> str:
    return _b64url(i.to_bytes((i.bit_length() + 7) // 8, "big")) or "AA"


@dataclass(frozen=True)
class Jwk:
    """A private RSA JSON Web Key together with its public certificate."""

    private: dict[str, Any]
    public_pem: bytes = b""

    @property
    def kid(self) -> str:
        return str(self.private.get("kid", ""))

    def public(self) -> dict[str, Any]:
        return {k: self.private[k] for k in PUBLIC_MEMBERS if k in self.private}

    def to_json(self) -> str:
        return json.dumps(self.private, separators=(",", ":"))

    def to_public_jwks(self) -> dict[str, Any]:
        return {"keys": [self.public()]}

    def to_private_jwks(self) -> dict[str, Any]:
        return {"keys": [self.private]}

    @classmethod
    def from_json(cls, data: str) -> Jwk:
        """Parse a private JWK as stored in a managed secret.

        Raises:
            JwkError: If ``data`` is not a JSON object carrying an RSA key.
        """
        try:
            parsed = json.loads(data)
        except (TypeError, ValueError) as e:
            raise JwkError(f"parsing JWK: {e}") from e

        if not isinstance(parsed, dict):
            raise JwkError("parsing JWK: expected a JSON object")

        missing = [m for m in REQUIRED_MEMBERS if not parsed.get(m)]
        if missing:
            raise JwkError(f"parsing JWK: missing members {missing}")
        if parsed["kty"] != "RSA":
            raise JwkError(f"parsing JWK: unsupported key type '{parsed['kty']}'")

        public_pem = b""
        chain = parsed.get("x5c") or []
        if chain:
            try:
                der = base64.b64decode(chain[0])
                certificate = x509.load_der_x509_certificate(der)
            except ValueError as e:
                raise JwkError(f"parsing JWK certificate chain: {e}") from e
            public_pem = certificate.public_bytes(serialization.Encoding.PEM)

        return cls(private=parsed, public_pem=public_pem)


def certificate_subject(name: str, namespace: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "NAIS"),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Azurerator"),
            x509.NameAttribute(NameOID.COMMON_NAME, f"{name}:{namespace}"),
        ]
    )


def generate_certificate(
    private_key: rsa.RSAPrivateKey, name: str, namespace: str, now: datetime | None = None
) -> x509.Certificate:
    """Self-sign a client authentication certificate for ``private_key``."""
    now = now or datetime.now(timezone.utc)
    subject = certificate_subject(name, namespace)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CERTIFICATE_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(private_key, hashes.SHA256())
    )


def to_jwk(private_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> Jwk:
    der = certificate.public_bytes(serialization.Encoding.DER)
    numbers = private_key.private_numbers()
    public_numbers = numbers.public_numbers

    private = {
        "kty": "RSA",
        # Azure AD identifies certificates by their SHA-1 thumbprint
        "kid": _b64url(hashlib.sha1(der).digest()),
        "use": KEY_USE_SIGNATURE,
        "alg": SIGNING_ALGORITHM,
        "n": _b64url_int(public_numbers.n),
        "e": _b64url_int(public_numbers.e),
        "d": _b64url_int(numbers.d),
        "p": _b64url_int(numbers.p),
        "q": _b64url_int(numbers.q),
        "dp": _b64url_int(numbers.dmp1),
        "dq": _b64url_int(numbers.dmq1),
        "qi": _b64url_int(numbers.iqmp),
        "x5c": [base64.b64encode(der).decode("ascii")],
        "x5t": _b64url(hashlib.sha1(der).digest()),
        "x5t#S256": _b64url(hashlib.sha256(der).digest()),
    }
    return Jwk(private=private, public_pem=certificate.public_bytes(serialization.Encoding.PEM))


def generate_jwk(name: str, namespace: str) -> Jwk:
    """Generate a fresh RSA key pair and certificate for the named resource."""
    private_key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)
    certificate = generate_certificate(private_key, name, namespace)
    return to_jwk(private_key, certificate)
