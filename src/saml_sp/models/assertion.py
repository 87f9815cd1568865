"""Verified SAML assertion values.

An ``Assertion`` is only built from an element that already passed signature,
decryption and condition checks; it keeps the pieces a relying application
needs after the XML is gone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, MutableMapping, Optional

from saml_sp.exceptions import ProtocolViolation
from saml_sp.utils.datetime import from_epoch_seconds, to_epoch_seconds, whole_seconds


def put_once(attributes: MutableMapping[str, str], name: str, value: str) -> None:
    """Record ``name -> value``; first writer wins, a different second value fails."""
    current = attributes.get(name)
    if current is None:
        attributes[name] = value
    elif current != value:
        raise ProtocolViolation(f"Conflicting values for attribute {name}")


@dataclass(frozen=True)
class Assertion:
    not_before: Optional[datetime]
    not_on_or_after: Optional[datetime]
    authn_instant: Optional[datetime]
    authority: Optional[str]
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("not_before", "not_on_or_after", "authn_instant"):
            object.__setattr__(self, name, whole_seconds(getattr(self, name)))
        object.__setattr__(self, "attributes", dict(self.attributes))

    @property
    def has_authn_statement(self) -> bool:
        return self.authn_instant is not None

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {}
        if self.not_before is not None:
            claims["nbf"] = to_epoch_seconds(self.not_before)
        if self.not_on_or_after is not None:
            claims["exp"] = to_epoch_seconds(self.not_on_or_after)
        if self.authn_instant is not None:
            claims["authn_instant"] = to_epoch_seconds(self.authn_instant)
        if self.authority is not None:
            claims["authority"] = self.authority
        claims["attribute_statement"] = dict(self.attributes)
        return claims

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Assertion":
        def instant(key: str) -> Optional[datetime]:
            value = claims.get(key)
            return None if value is None else from_epoch_seconds(value)

        attributes = claims.get("attribute_statement") or {}
        if not isinstance(attributes, Mapping):
            raise ValueError("attribute_statement must be an object")
        return cls(
            not_before=instant("nbf"),
            not_on_or_after=instant("exp"),
            authn_instant=instant("authn_instant"),
            authority=claims.get("authority"),
            attributes={str(k): str(v) for k, v in attributes.items()},
        )
