"""Verified SAML principal.

A ``Principal`` is only produced by a successful response validation. Its
expiry is always ``authn_instant + session_timeout``; the claims form
carries ``exp`` for interoperability and the timeout is derived back from
it on load.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import jwt

from saml_sp.exceptions import AuthenticationRequired, InvalidSessionToken
from saml_sp.models.assertion import Assertion, put_once
from saml_sp.utils.datetime import (
    from_epoch_seconds,
    to_epoch_seconds,
    utcnow,
    whole_seconds,
)

ASSERTIONS_CLAIM = "urn:oasis:names:tc:SAML:2.0:assertion"


@dataclass(frozen=True)
class Principal:
    realm: str
    name: str
    issuer: str
    issued_at: datetime
    authn_instant: datetime
    authority: Optional[str]
    session_timeout: timedelta
    assertions: tuple[Assertion, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in ("realm", "name", "issuer"):
            if not getattr(self, name):
                raise ValueError(f"Principal {name} is required")
        object.__setattr__(self, "issued_at", whole_seconds(self.issued_at))
        object.__setattr__(self, "authn_instant", whole_seconds(self.authn_instant))
        object.__setattr__(self, "assertions", tuple(self.assertions))

    @property
    def expires(self) -> datetime:
        return self.authn_instant + self.session_timeout

    @property
    def attributes(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for assertion in self.assertions:
            for key, value in assertion.attributes.items():
                put_once(merged, key, value)
        return merged

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires

    def verify(self, realm: str, now: Optional[datetime] = None) -> None:
        """Fail unless issued for ``realm`` and still within the session lifetime."""
        if self.realm != realm:
            raise ValueError("invalid realm")
        if self.is_expired(now):
            raise AuthenticationRequired("Authenticated session expired")

    def to_claims(self) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "aud": self.realm,
            "sub": self.name,
            "iat": to_epoch_seconds(self.issued_at),
            "exp": to_epoch_seconds(self.expires),
            "auth_time": to_epoch_seconds(self.authn_instant),
            "authority": self.authority,
            ASSERTIONS_CLAIM: [a.to_claims() for a in self.assertions],
        }

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Principal":
        auth_time = from_epoch_seconds(claims["auth_time"])
        expires = from_epoch_seconds(claims["exp"])
        return cls(
            realm=claims["aud"],
            name=claims["sub"],
            issuer=claims["iss"],
            issued_at=from_epoch_seconds(claims["iat"]),
            authn_instant=auth_time,
            authority=claims.get("authority"),
            session_timeout=expires - auth_time,
            assertions=tuple(
                Assertion.from_claims(a) for a in claims.get(ASSERTIONS_CLAIM) or ()
            ),
        )

    def to_token(self, key: Any, algorithm: str = "RS256") -> str:
        """Compact signed (JWS) form for carrying the principal between requests."""
        return jwt.encode(self.to_claims(), key, algorithm=algorithm)

    @classmethod
    def from_token(
        cls,
        token: str,
        key: Any,
        realm: str,
        algorithm: str = "RS256",
    ) -> "Principal":
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=realm,
                options={"require": ["iss", "sub", "aud", "iat", "exp"]},
            )
            return cls.from_claims(claims)
        except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
            raise InvalidSessionToken("Invalid principal token") from exc
