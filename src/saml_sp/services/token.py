"""Stateless session tokens.

The session state is signed as a compact JWS with the SP key and the JWS is
then sealed with AES-GCM under a host-supplied key. The token is
``base64url(nonce || ciphertext)`` without padding. Every decode failure is
reported as the same ``InvalidSessionToken``.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from saml_sp.exceptions import ConfigurationError, InvalidSessionToken
from saml_sp.identity import ServiceProviderIdentity
from saml_sp.models.session import SessionState

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZES = (16, 24, 32)
TOKEN_TYPE = "saml-session"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    raw = base64.b64decode(padded, altchars=b"-_", validate=True)
    # Only the canonical unpadded url-safe spelling of the bytes is accepted.
    if not hmac.compare_digest(_b64encode(raw), value):
        raise ValueError("non-canonical token encoding")
    return raw


class SessionTokenCodec:
    def __init__(self, identity: ServiceProviderIdentity, secret_key: bytes):
        if len(secret_key) not in KEY_SIZES:
            raise ConfigurationError(
                "Session token key must be 16, 24 or 32 bytes (AES-128/192/256)"
            )
        self.identity = identity
        self._aead = AESGCM(secret_key)

    def encode(self, state: SessionState) -> str:
        signed = jwt.encode(
            {"typ": TOKEN_TYPE, "state": state.to_dict()},
            self.identity.private_key,
            algorithm=self.identity.signature_algorithm,
        )
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, signed.encode("ascii"), None)
        return _b64encode(nonce + sealed)

    def decode(self, token: str) -> SessionState:
        try:
            raw = _b64decode(token)
            if len(raw) <= NONCE_SIZE:
                raise ValueError("token too short")
            signed = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
            claims = jwt.decode(
                signed.decode("ascii"),
                self.identity.public_key,
                algorithms=[self.identity.signature_algorithm],
            )
            if claims.get("typ") != TOKEN_TYPE:
                raise ValueError("unexpected token type")
            return SessionState.from_dict(claims["state"])
        except (
            binascii.Error,
            InvalidTag,
            jwt.PyJWTError,
            UnicodeError,
            KeyError,
            TypeError,
            ValueError,
        ) as exc:
            logger.debug("Rejected session token: %s", type(exc).__name__)
            raise InvalidSessionToken() from None
