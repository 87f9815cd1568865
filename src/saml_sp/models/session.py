from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from saml_sp.models.principal import Principal


@dataclass(frozen=True)
class PreAuthState:
    """Correlation state for one login attempt; consumed exactly once."""

    session_id: str
    relay_state: str
    return_uri: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "relay_state": self.relay_state,
            "return_uri": self.return_uri,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PreAuthState":
        return cls(
            session_id=str(data["session_id"]),
            relay_state=str(data["relay_state"]),
            return_uri=str(data["return_uri"]),
        )


@dataclass(frozen=True)
class PostAuthState:
    """Outcome of a completed login. An invalid state never yields a principal."""

    return_uri: str
    principal: Optional[Principal] = None
    invalid: bool = False

    @property
    def usable_principal(self) -> Optional[Principal]:
        if self.invalid:
            return None
        return self.principal

    @classmethod
    def failed(cls, return_uri: str) -> "PostAuthState":
        return cls(return_uri=return_uri, principal=None, invalid=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "return_uri": self.return_uri,
            "principal": self.principal.to_claims() if self.principal else None,
            "invalid": self.invalid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PostAuthState":
        principal = data.get("principal")
        return cls(
            return_uri=str(data["return_uri"]),
            principal=Principal.from_claims(principal) if principal else None,
            invalid=bool(data.get("invalid", False)),
        )


@dataclass
class SessionState:
    """All SAML details held for one user session."""

    pre_auth: Optional[PreAuthState] = None
    post_auth: Optional[PostAuthState] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pre_auth": self.pre_auth.to_dict() if self.pre_auth else None,
            "post_auth": self.post_auth.to_dict() if self.post_auth else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionState":
        pre_auth = data.get("pre_auth")
        post_auth = data.get("post_auth")
        return cls(
            pre_auth=PreAuthState.from_dict(pre_auth) if pre_auth else None,
            post_auth=PostAuthState.from_dict(post_auth) if post_auth else None,
        )
