from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from saml_sp.config import ServiceProviderConfig
from saml_sp.exceptions import ConfigurationError


def _spki(public_key: Any) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@dataclass(frozen=True)
class ServiceProviderIdentity:
    """The SP's own key pair and certificate, loaded once per realm."""

    entity_id: str
    private_key: Any
    certificate: x509.Certificate
    private_key_pem: bytes
    signature_algorithm: str

    @property
    def public_key(self) -> Any:
        return self.certificate.public_key()

    @classmethod
    def from_config(cls, config: ServiceProviderConfig) -> "ServiceProviderIdentity":
        try:
            private_key = serialization.load_pem_private_key(
                config.private_key.encode("ascii"), password=None
            )
            certificate = x509.load_pem_x509_certificate(config.certificate.encode("ascii"))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("Invalid service provider key material") from exc

        if _spki(private_key.public_key()) != _spki(certificate.public_key()):
            raise ConfigurationError(
                "Service provider private key does not match its certificate"
            )

        return cls(
            entity_id=config.sp_entity_id,
            private_key=private_key,
            certificate=certificate,
            private_key_pem=private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ),
            signature_algorithm=config.signature_algorithm,
        )
