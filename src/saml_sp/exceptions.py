"""Error taxonomy for the SAML service provider.

``ConfigurationError`` is fatal for the realm and ``AuthenticationFailure`` is
scoped to one login attempt. Any error raised out of a login attempt carries
the redirect ``location`` the caller can send the browser to.
"""

from __future__ import annotations

from typing import Optional


class SAMLError(Exception):
    """Base error; ``location`` is where the caller may send the browser next."""

    def __init__(self, message: str = "", location: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.location = location


class ConfigurationError(SAMLError):
    pass


class TransientError(SAMLError):
    pass


class InputValidationError(SAMLError, ValueError):
    pass


class InvalidSessionToken(SAMLError):
    def __init__(self, message: str = "Invalid session token"):
        super().__init__(message)


class AuthenticationFailure(SAMLError):
    def __init__(self, message: str, location: Optional[str] = None):
        super().__init__(message, location=location)


class AuthenticationRequired(AuthenticationFailure):
    pass


class ProtocolViolation(AuthenticationFailure):
    """Malformed or tampered response; may indicate an attack."""


class SignatureVerificationError(ProtocolViolation):
    pass


class DecryptionError(ProtocolViolation):
    pass
