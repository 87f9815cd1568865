"""Per-user login flow on top of the request builder and response validator."""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import Optional, Protocol, TypeVar, Union

from saml_sp.config import ServiceProviderConfig
from saml_sp.exceptions import (
    AuthenticationFailure,
    AuthenticationRequired,
    InputValidationError,
    ProtocolViolation,
    SAMLError,
)
from saml_sp.models.principal import Principal
from saml_sp.models.session import PostAuthState, PreAuthState, SessionState
from saml_sp.services.request import RequestBuilder
from saml_sp.services.validator import ResponseValidator
from saml_sp.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

Detail = Union[PreAuthState, PostAuthState]
D = TypeVar("D", PreAuthState, PostAuthState)

LOGIN_FAILED_MESSAGE = "SAML authentication failed"


class SessionStore(Protocol):
    def get(self, detail_type: type[D]) -> Optional[D]: ...

    def set(self, detail: Detail) -> None: ...

    def clear(self, detail_type: type[Detail]) -> None: ...


class InMemorySessionStore:
    """Session details for one user session, backed by a ``SessionState``."""

    def __init__(self, state: Optional[SessionState] = None):
        self.state = state or SessionState()

    def get(self, detail_type: type[D]) -> Optional[D]:
        if detail_type is PreAuthState:
            return self.state.pre_auth  # type: ignore[return-value]
        if detail_type is PostAuthState:
            return self.state.post_auth  # type: ignore[return-value]
        raise TypeError(f"Unsupported session detail {detail_type!r}")

    def set(self, detail: Detail) -> None:
        if isinstance(detail, PreAuthState):
            self.state.pre_auth = detail
        elif isinstance(detail, PostAuthState):
            self.state.post_auth = detail
        else:
            raise TypeError(f"Unsupported session detail {type(detail)!r}")

    def clear(self, detail_type: type[Detail]) -> None:
        if detail_type is PreAuthState:
            self.state.pre_auth = None
        elif detail_type is PostAuthState:
            self.state.post_auth = None
        else:
            raise TypeError(f"Unsupported session detail {detail_type!r}")


def new_session_id() -> str:
    # xs:ID must not start with a digit
    return "_" + secrets.token_hex(16)


def new_relay_state() -> str:
    return secrets.token_urlsafe(32)


class SsoSessionController:
    """Drives one user session through ``begin_login`` / ``complete_login``.

    Stored pre-authentication state is consumed before the response is
    examined, so a failed or replayed attempt never finds usable state.
    """

    def __init__(
        self,
        config: ServiceProviderConfig,
        session: SessionStore,
        request_builder: RequestBuilder,
        response_validator: ResponseValidator,
        acs_url: str,
    ):
        if acs_url not in config.acs_uris:
            raise InputValidationError("ACS URL is not in the configured allow-list")
        self.config = config
        self.session = session
        self.request_builder = request_builder
        self.response_validator = response_validator
        self.acs_url = acs_url

    def begin_login(self, return_uri: str) -> str:
        if not return_uri:
            raise InputValidationError("Return URI is required")
        if return_uri not in self.config.entry_point_uris:
            raise InputValidationError(
                "Return URI doesn't match with allowed list of entry points"
            )

        self.session.clear(PreAuthState)
        state = PreAuthState(
            session_id=new_session_id(),
            relay_state=new_relay_state(),
            return_uri=return_uri,
        )
        self.session.set(state)
        return self.request_builder.build_redirect(
            state.relay_state, state.session_id, self.acs_url
        )

    def complete_login(
        self,
        remote_addr: Optional[str],
        raw_response: str,
        relay_state: Optional[str],
    ) -> str:
        """Validate the POSTed response and bind the principal; returns the return URI."""
        state = self.session.get(PreAuthState)
        self.session.clear(PreAuthState)

        if state is None:
            logger.info("SAML response received without a pending login")
            self.session.set(PostAuthState.failed(self.config.default_entry_point))
            raise AuthenticationFailure(
                LOGIN_FAILED_MESSAGE, location=self.config.default_entry_point
            )

        try:
            if not relay_state or not hmac.compare_digest(
                relay_state.encode("utf-8"), state.relay_state.encode("utf-8")
            ):
                raise AuthenticationFailure("RelayState does not match the pending login")
            principal = self.response_validator.validate(
                raw_response,
                session_id=state.session_id,
                acs_url=self.acs_url,
                remote_addr=remote_addr,
            )
        except AuthenticationFailure as exc:
            self.session.set(PostAuthState.failed(state.return_uri))
            if isinstance(exc, ProtocolViolation):
                logger.error(
                    "Rejected SAML response for session %s: %s",
                    sanitize_for_log(state.session_id),
                    sanitize_for_log(exc.message),
                )
            else:
                logger.warning(
                    "SAML authentication failed for session %s: %s",
                    sanitize_for_log(state.session_id),
                    sanitize_for_log(exc.message),
                )
            raise AuthenticationFailure(
                LOGIN_FAILED_MESSAGE, location=state.return_uri
            ) from exc
        except SAMLError as exc:
            self.session.set(PostAuthState.failed(state.return_uri))
            logger.warning(
                "SAML login for session %s could not be completed: %s",
                sanitize_for_log(state.session_id),
                sanitize_for_log(exc.message),
            )
            exc.location = state.return_uri
            raise
        except Exception as exc:
            self.session.set(PostAuthState.failed(state.return_uri))
            logger.exception(
                "Unexpected error validating SAML response for session %s",
                sanitize_for_log(state.session_id),
            )
            raise AuthenticationFailure(
                LOGIN_FAILED_MESSAGE, location=state.return_uri
            ) from exc

        self.session.set(
            PostAuthState(return_uri=state.return_uri, principal=principal)
        )
        logger.info(
            "SAML login complete for %s; returning to %s",
            sanitize_for_log(principal.name),
            sanitize_for_log(state.return_uri),
        )
        return state.return_uri

    def get_principal(self) -> Principal:
        post_auth = self.session.get(PostAuthState)
        location = (
            post_auth.return_uri if post_auth is not None else self.config.default_entry_point
        )
        principal = post_auth.usable_principal if post_auth is not None else None
        if principal is None:
            raise AuthenticationRequired("Authentication required", location=location)
        try:
            principal.verify(self.config.realm)
        except AuthenticationRequired as exc:
            raise AuthenticationRequired(exc.message, location=location) from exc
        return principal
