from __future__ import annotations

import base64
import logging
import zlib
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlencode

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from lxml import etree

from saml_sp.config import ServiceProviderConfig
from saml_sp.exceptions import ConfigurationError, InputValidationError
from saml_sp.services.metadata import MetadataCache
from saml_sp.utils.datetime import format_saml_instant, utcnow
from saml_sp.utils.logging import log_xml, sanitize_for_log
from saml_sp.utils.xml import (
    DS_NS,
    HTTP_POST_BINDING,
    MD_NS,
    SAML_NS,
    SAMLP_NS,
    qname,
    strip_xml_declaration,
)

logger = logging.getLogger(__name__)

URI_REFERENCE = "urn:oasis:names:tc:SAML:2.0:attrname-format:uri"

REQUESTED_ATTRIBUTES = (
    ("mail", "urn:oid:0.9.2342.19200300.100.1.3"),
    ("displayName", "urn:oid:2.16.840.1.113730.3.1.241"),
    ("eduPersonPrincipalName", "urn:oid:1.3.6.1.4.1.5923.1.1.1.6"),
)


def deflate_and_encode(text: str) -> str:
    """Raw DEFLATE (no zlib header or checksum), then base64."""
    deflated = zlib.compress(text.encode("utf-8"))[2:-4]
    return base64.b64encode(deflated).decode("ascii")


def decode_and_inflate(value: str) -> str:
    return zlib.decompress(base64.b64decode(value), -15).decode("utf-8")


class RequestBuilder:
    """Builds HTTP-Redirect binding AuthnRequests for one realm."""

    def __init__(
        self,
        config: ServiceProviderConfig,
        metadata_cache: MetadataCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.metadata_cache = metadata_cache
        self._clock = clock

    def build_authn_request(
        self, correlation_id: str, acs_url: str, destination: Optional[str] = None
    ) -> etree._Element:
        request = etree.Element(
            qname(SAMLP_NS, "AuthnRequest"),
            nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
        )
        request.set("ID", correlation_id)
        request.set("Version", "2.0")
        request.set("IssueInstant", format_saml_instant(self._clock()))
        if destination:
            request.set("Destination", destination)
        request.set("ProtocolBinding", HTTP_POST_BINDING)
        request.set("AssertionConsumerServiceURL", acs_url)

        issuer = etree.SubElement(request, qname(SAML_NS, "Issuer"))
        issuer.text = self.config.sp_entity_id

        policy = etree.SubElement(request, qname(SAMLP_NS, "NameIDPolicy"))
        policy.set("AllowCreate", "true")
        return request

    @staticmethod
    def serialize(element: etree._Element) -> str:
        text = etree.tostring(element, method="c14n", exclusive=True).decode("utf-8")
        return strip_xml_declaration(text)

    def build_redirect(self, relay_state: str, correlation_id: str, acs_url: str) -> str:
        if acs_url not in self.config.acs_uris:
            raise InputValidationError(
                "Post URI doesn't match with allowed list of Assertion Consumer Service URLs"
            )
        if not relay_state or not correlation_id:
            raise InputValidationError("RelayState and request ID are required")

        metadata = self.metadata_cache.resolve(self.config.idp_entity_id)
        destination = metadata.sso_redirect_url

        request = self.build_authn_request(correlation_id, acs_url, destination)
        log_xml(logger, "SAML2 authentication request", request)
        saml_request = deflate_and_encode(self.serialize(request))

        query = urlencode([("SAMLRequest", saml_request), ("RelayState", relay_state)])
        separator = "&" if "?" in destination else "?"

        logger.info(
            "Built SAML AuthnRequest id=%s for idp=%s acs=%s",
            sanitize_for_log(correlation_id),
            sanitize_for_log(metadata.entity_id),
            sanitize_for_log(acs_url),
        )
        return f"{destination}{separator}{query}"

    def service_provider_metadata(self) -> str:
        """SP metadata document for registration with the identity provider."""
        try:
            certificate = x509.load_pem_x509_certificate(
                self.config.certificate.encode("ascii")
            )
        except ValueError as exc:
            raise ConfigurationError("Invalid service provider certificate") from exc
        der = certificate.public_bytes(serialization.Encoding.DER)

        entity = etree.Element(
            qname(MD_NS, "EntityDescriptor"), nsmap={"md": MD_NS, "ds": DS_NS}
        )
        entity.set("entityID", self.config.sp_entity_id)

        sp = etree.SubElement(entity, qname(MD_NS, "SPSSODescriptor"))
        sp.set("protocolSupportEnumeration", SAMLP_NS)

        key_descriptor = etree.SubElement(sp, qname(MD_NS, "KeyDescriptor"))
        key_info = etree.SubElement(key_descriptor, qname(DS_NS, "KeyInfo"))
        x509_data = etree.SubElement(key_info, qname(DS_NS, "X509Data"))
        x509_cert = etree.SubElement(x509_data, qname(DS_NS, "X509Certificate"))
        x509_cert.text = base64.b64encode(der).decode("ascii")

        for index, acs_url in enumerate(self.config.acs_uris):
            acs = etree.SubElement(sp, qname(MD_NS, "AssertionConsumerService"))
            acs.set("Binding", HTTP_POST_BINDING)
            acs.set("Location", acs_url)
            acs.set("index", str(index))

        consuming = etree.SubElement(sp, qname(MD_NS, "AttributeConsumingService"))
        consuming.set("index", "0")
        service_name = etree.SubElement(consuming, qname(MD_NS, "ServiceName"))
        service_name.set("{http://www.w3.org/XML/1998/namespace}lang", "en")
        service_name.text = self.config.realm
        for friendly_name, name in REQUESTED_ATTRIBUTES:
            attribute = etree.SubElement(consuming, qname(MD_NS, "RequestedAttribute"))
            attribute.set("FriendlyName", friendly_name)
            attribute.set("Name", name)
            attribute.set("NameFormat", URI_REFERENCE)
            attribute.set("isRequired", "true")

        return etree.tostring(entity, pretty_print=True, encoding="unicode")
