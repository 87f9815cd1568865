from saml_sp.models.assertion import Assertion, put_once
from saml_sp.models.metadata import IdpMetadata
from saml_sp.models.principal import Principal
from saml_sp.models.session import PostAuthState, PreAuthState, SessionState

__all__ = [
    "Assertion",
    "IdpMetadata",
    "PostAuthState",
    "PreAuthState",
    "Principal",
    "SessionState",
    "put_once",
]
