from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from saml_sp.config import ServiceProviderConfig
from saml_sp.identity import ServiceProviderIdentity
from saml_sp.services.address import AddressMatcher
from saml_sp.services.metadata import DefaultMetadataFetcher, MetadataCache, MetadataFetcher
from saml_sp.services.request import RequestBuilder
from saml_sp.services.session import SessionStore, SsoSessionController
from saml_sp.services.token import SessionTokenCodec
from saml_sp.services.validator import ResponseValidator, XmlSecDecrypter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceProviderRealm:
    """Everything shared by the login attempts of one trust realm.

    Built once at startup and shared across requests; per-user state lives
    only in the session store handed to :meth:`controller`.
    """

    config: ServiceProviderConfig
    identity: ServiceProviderIdentity
    metadata_cache: MetadataCache
    request_builder: RequestBuilder
    response_validator: ResponseValidator

    @classmethod
    def from_config(
        cls,
        config: ServiceProviderConfig,
        fetcher: Optional[MetadataFetcher] = None,
    ) -> "ServiceProviderRealm":
        identity = ServiceProviderIdentity.from_config(config)
        metadata_cache = MetadataCache(
            config.metadata_uris,
            ttl=config.metadata_ttl,
            fetcher=fetcher or DefaultMetadataFetcher(timeout=config.metadata_fetch_timeout),
        )
        validator = ResponseValidator(
            config,
            metadata_cache,
            decrypter=XmlSecDecrypter(identity.private_key_pem),
            address_matcher=AddressMatcher(
                config.allowed_ranges, config.fail_on_address_mismatch
            ),
        )
        logger.info(
            "Initialized SAML realm %s (sp=%s, idp=%s)",
            config.realm,
            config.sp_entity_id,
            config.idp_entity_id,
        )
        return cls(
            config=config,
            identity=identity,
            metadata_cache=metadata_cache,
            request_builder=RequestBuilder(config, metadata_cache),
            response_validator=validator,
        )

    def controller(self, session: SessionStore, acs_url: str) -> SsoSessionController:
        return SsoSessionController(
            self.config,
            session,
            self.request_builder,
            self.response_validator,
            acs_url,
        )

    def token_codec(self, secret_key: bytes) -> SessionTokenCodec:
        return SessionTokenCodec(self.identity, secret_key)
