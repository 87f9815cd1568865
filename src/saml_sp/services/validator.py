"""SAML Response validation.

A response moves through fixed stages and any failure aborts the whole
response; no principal is built from a partially valid document.

1. Received: base64 decode, hardened parse, issuer must be trusted.
2. SignatureChecked: the Response signature must satisfy the signature
   profile and verify against one of the IdP's signing certificates. All
   later stages read only the signed content returned by the trust engine.
3. AssertionsDecrypted: every EncryptedAssertion is decrypted with the SP
   key. One failure fails the response.
4. AssertionsValidated: issuer, validity window, audience, bearer
   InResponseTo/Recipient binding, attributes and authentication statements.
5. SubjectConfirmed: at least one bearer confirmation passed timing and
   address checks.
6. PrincipalExtracted.

Signature and decryption engines are injected so the validator holds no
per-request state and can be exercised without an XML security stack.
"""

from __future__ import annotations

import base64
import binascii
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from lxml import etree

from saml_sp.config import ServiceProviderConfig
from saml_sp.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    DecryptionError,
    InputValidationError,
    ProtocolViolation,
    SignatureVerificationError,
)
from saml_sp.models.assertion import Assertion, put_once
from saml_sp.models.principal import Principal
from saml_sp.services.address import AddressMatcher
from saml_sp.services.metadata import MetadataCache
from saml_sp.utils.datetime import parse_saml_instant, utcnow
from saml_sp.utils.logging import log_xml, sanitize_for_log
from saml_sp.utils.xml import (
    BEARER_METHOD,
    DS_NS,
    NAMESPACES,
    SAML_NS,
    SAMLP_NS,
    STATUS_SUCCESS,
    find_text,
    parse_document,
    qname,
)

logger = logging.getLogger(__name__)

ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
EXC_C14N_WITH_COMMENTS = "http://www.w3.org/2001/10/xml-exc-c14n#WithComments"
ALLOWED_TRANSFORMS = frozenset({ENVELOPED_TRANSFORM, EXC_C14N, EXC_C14N_WITH_COMMENTS})
ALLOWED_C14N = frozenset({EXC_C14N, EXC_C14N_WITH_COMMENTS})


class TrustEngine(Protocol):
    def verify(self, document: bytes, root: etree._Element) -> etree._Element:
        """Return the signed Response element, or raise SignatureVerificationError."""
        ...


TrustEngineFactory = Callable[[Sequence[str]], TrustEngine]


class Decrypter(Protocol):
    def decrypt(self, encrypted_assertion: etree._Element) -> etree._Element:
        """Return the plaintext Assertion element, or raise DecryptionError."""
        ...


def check_signature_profile(root: etree._Element) -> None:
    """Enforce the SAML signature profile on the Response-level signature.

    The signature must be a direct child of the Response, reference the
    Response by its ID, and use only enveloped/exclusive C14N transforms.
    """
    signatures = root.findall(qname(DS_NS, "Signature"))
    if not signatures:
        raise SignatureVerificationError("SAML response is not signed")
    if len(signatures) > 1:
        raise SignatureVerificationError("SAML response has more than one signature")
    signature = signatures[0]

    response_id = root.get("ID")
    if not response_id:
        raise SignatureVerificationError("Signed SAML response has no ID")

    c14n = signature.find("ds:SignedInfo/ds:CanonicalizationMethod", NAMESPACES)
    if c14n is None or c14n.get("Algorithm") not in ALLOWED_C14N:
        raise SignatureVerificationError("Unsupported signature canonicalization")

    references = signature.findall("ds:SignedInfo/ds:Reference", NAMESPACES)
    if len(references) != 1:
        raise SignatureVerificationError("SAML signature must have exactly one reference")
    if references[0].get("URI") != f"#{response_id}":
        raise SignatureVerificationError("SAML signature does not reference the response")

    for transform in references[0].findall("ds:Transforms/ds:Transform", NAMESPACES):
        if transform.get("Algorithm") not in ALLOWED_TRANSFORMS:
            raise SignatureVerificationError("Unsupported signature transform")


class SignxmlTrustEngine:
    """Verifies against a fixed set of trusted IdP certificates (rollover aware)."""

    def __init__(self, certificates: Sequence[str]):
        self.certificates = tuple(certificates)

    def verify(self, document: bytes, root: etree._Element) -> etree._Element:
        check_signature_profile(root)
        if not self.certificates:
            raise SignatureVerificationError("No trusted IdP signing certificates")

        try:
            from signxml import XMLVerifier  # type: ignore[import-not-found]
            from signxml.exceptions import SignXMLException  # type: ignore[import-not-found]
        except ImportError as exc:
            raise ConfigurationError("SAML signature validation requires signxml") from exc

        failure: Optional[Exception] = None
        for certificate in self.certificates:
            try:
                result = XMLVerifier().verify(
                    document, x509_cert=certificate, expect_references=1
                )
            except (SignXMLException, ValueError) as exc:
                failure = exc
                continue

            signed = result.signed_xml
            if (
                signed is None
                or signed.tag != root.tag
                or signed.get("ID") != root.get("ID")
            ):
                raise SignatureVerificationError("SAML signature does not cover the response")
            return signed

        raise SignatureVerificationError("SAML signature verification failed") from failure


class XmlSecDecrypter:
    """Decrypts EncryptedAssertion elements with the SP private key."""

    def __init__(self, private_key_pem: bytes):
        self._private_key_pem = private_key_pem

    def decrypt(self, encrypted_assertion: etree._Element) -> etree._Element:
        try:
            import xmlsec  # type: ignore[import-not-found]
        except ImportError as exc:
            raise ConfigurationError("SAML assertion decryption requires xmlsec") from exc

        # decrypt a detached copy; the signed response tree stays untouched
        holder = copy.deepcopy(encrypted_assertion)
        encrypted_data = holder.find("xenc:EncryptedData", NAMESPACES)
        if encrypted_data is None:
            raise DecryptionError("EncryptedAssertion has no EncryptedData")

        try:
            manager = xmlsec.KeysManager()
            manager.add_key(
                xmlsec.Key.from_memory(self._private_key_pem, xmlsec.KeyFormat.PEM, None)
            )
            decrypted = xmlsec.EncryptionContext(manager).decrypt(encrypted_data)
        except xmlsec.Error as exc:
            raise DecryptionError("Failed to decrypt SAML assertion") from exc

        if not isinstance(decrypted, etree._Element) or decrypted.tag != qname(
            SAML_NS, "Assertion"
        ):
            raise DecryptionError("Decrypted content is not a SAML assertion")
        return decrypted


@dataclass(frozen=True)
class _CheckedAssertion:
    assertion: Assertion
    issuer: str
    confirmed: bool


class ResponseValidator:
    def __init__(
        self,
        config: ServiceProviderConfig,
        metadata_cache: MetadataCache,
        decrypter: Decrypter,
        trust_engine_factory: TrustEngineFactory = SignxmlTrustEngine,
        address_matcher: Optional[AddressMatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.metadata_cache = metadata_cache
        self.decrypter = decrypter
        self.trust_engine_factory = trust_engine_factory
        self.address_matcher = address_matcher or AddressMatcher(
            config.allowed_ranges, config.fail_on_address_mismatch
        )
        self._clock = clock

    def validate(
        self,
        raw_response: str,
        *,
        session_id: str,
        acs_url: str,
        remote_addr: Optional[str],
    ) -> Principal:
        if acs_url not in self.config.acs_uris:
            raise InputValidationError("ACS URL is not in the configured allow-list")
        if not session_id:
            raise InputValidationError("Expected request ID is required")

        document = self._decode(raw_response)
        root = parse_document(document)
        issuer = self._trusted_issuer(root)

        response = self._check_signature(document, root, issuer)
        log_xml(logger, "SAML2 authentication response", response)
        issue_instant = self._check_response(response, issuer, session_id, acs_url)

        elements = self._decrypt_assertions(response)

        now = self._clock()
        checked = [
            self._check_assertion(element, now, session_id, acs_url, remote_addr)
            for element in elements
        ]
        name, authn_instant, authority = self._agree_identity(checked)

        if not any(c.confirmed for c in checked):
            raise AuthenticationFailure("Missing valid bearer subject confirmation")

        merged: dict[str, str] = {}
        for c in checked:
            for key, value in c.assertion.attributes.items():
                put_once(merged, key, value)

        principal = Principal(
            realm=self.config.realm,
            name=name,
            issuer=issuer,
            issued_at=issue_instant,
            authn_instant=authn_instant,
            authority=authority,
            session_timeout=self.config.session_timeout,
            assertions=tuple(c.assertion for c in checked),
        )
        logger.info(
            "SAML response verified for principal %s from %s",
            sanitize_for_log(principal.name),
            sanitize_for_log(issuer),
        )
        return principal

    @staticmethod
    def _decode(raw_response: str) -> bytes:
        if not raw_response:
            raise ProtocolViolation("Missing SAMLResponse payload")
        try:
            compact = "".join(raw_response.split())
            return base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise ProtocolViolation("Invalid base64 SAMLResponse") from exc

    def _trusted_issuer(self, root: etree._Element) -> str:
        if root.tag != qname(SAMLP_NS, "Response"):
            raise ProtocolViolation("Document is not a SAML Response")
        issuer = find_text(root, "saml:Issuer")
        if not self.config.is_trusted_issuer(issuer):
            raise AuthenticationFailure(
                f"Untrusted SAML issuer {sanitize_for_log(issuer)}"
            )
        return issuer  # type: ignore[return-value]

    def _check_signature(
        self, document: bytes, root: etree._Element, issuer: str
    ) -> etree._Element:
        metadata = self.metadata_cache.resolve(issuer)
        engine = self.trust_engine_factory(metadata.signing_certificates)
        try:
            signed = engine.verify(document, root)
        except (ValueError, etree.LxmlError) as exc:
            raise SignatureVerificationError("SAML signature verification failed") from exc

        if find_text(signed, "saml:Issuer") != issuer:
            raise SignatureVerificationError("Signed issuer does not match response issuer")
        return signed

    def _check_response(
        self,
        response: etree._Element,
        issuer: str,
        session_id: str,
        acs_url: str,
    ) -> datetime:
        status = response.find("samlp:Status/samlp:StatusCode", NAMESPACES)
        if status is None or status.get("Value") != STATUS_SUCCESS:
            raise AuthenticationFailure("SAML response status is not Success")

        in_response_to = response.get("InResponseTo")
        if in_response_to is not None and in_response_to != session_id:
            raise AuthenticationFailure("SAML response InResponseTo mismatch")

        destination = response.get("Destination")
        if destination is not None and destination != acs_url:
            raise AuthenticationFailure("SAML response destination mismatch")

        issue_instant = self._instant(response.get("IssueInstant"))
        if issue_instant is None:
            raise ProtocolViolation("SAML response IssueInstant missing")
        return issue_instant

    def _decrypt_assertions(self, response: etree._Element) -> list[etree._Element]:
        elements = list(response.findall("saml:Assertion", NAMESPACES))
        for encrypted in response.findall("saml:EncryptedAssertion", NAMESPACES):
            try:
                elements.append(self.decrypter.decrypt(encrypted))
            except (ValueError, etree.LxmlError) as exc:
                raise DecryptionError("Failed to decrypt SAML assertion") from exc
        return elements

    @staticmethod
    def _instant(value: Optional[str]) -> Optional[datetime]:
        try:
            return parse_saml_instant(value)
        except ValueError as exc:
            raise ProtocolViolation("Malformed SAML timestamp") from exc

    def _check_assertion(
        self,
        element: etree._Element,
        now: datetime,
        session_id: str,
        acs_url: str,
        remote_addr: Optional[str],
    ) -> _CheckedAssertion:
        log_xml(logger, "SAML2 assertion", element)
        skew = self.config.clock_skew

        issuer = find_text(element, "saml:Issuer")
        if not self.config.is_trusted_issuer(issuer):
            raise AuthenticationFailure(
                f"Untrusted assertion issuer {sanitize_for_log(issuer)}"
            )

        conditions = element.find("saml:Conditions", NAMESPACES)
        not_before = not_on_or_after = None
        if conditions is not None:
            not_before = self._instant(conditions.get("NotBefore"))
            not_on_or_after = self._instant(conditions.get("NotOnOrAfter"))
        if not_before is not None and now + skew < not_before:
            raise AuthenticationFailure("SAML assertion not yet valid")
        if not_on_or_after is not None and now - skew >= not_on_or_after:
            raise AuthenticationFailure("SAML assertion expired")

        restrictions = (
            conditions.findall("saml:AudienceRestriction", NAMESPACES)
            if conditions is not None
            else []
        )
        if not restrictions:
            raise AuthenticationFailure("SAML assertion has no audience restriction")
        for restriction in restrictions:
            audiences = {
                (a.text or "").strip()
                for a in restriction.findall("saml:Audience", NAMESPACES)
            }
            if self.config.sp_entity_id not in audiences:
                raise AuthenticationFailure("SAML audience mismatch")

        confirmed = self._check_confirmations(
            element, now, session_id, acs_url, remote_addr
        )

        attributes: dict[str, str] = {}
        for attribute in element.findall(
            "saml:AttributeStatement/saml:Attribute", NAMESPACES
        ):
            value_node = attribute.find("saml:AttributeValue", NAMESPACES)
            if value_node is None:
                continue
            value = "".join(value_node.itertext()).strip()
            for name in (attribute.get("Name"), attribute.get("FriendlyName")):
                if name:
                    put_once(attributes, name, value)

        authn_instant: Optional[datetime] = None
        authority: Optional[str] = None
        for statement in element.findall("saml:AuthnStatement", NAMESPACES):
            instant = self._instant(statement.get("AuthnInstant"))
            if instant is None:
                raise ProtocolViolation("AuthnStatement without AuthnInstant")
            if authn_instant is not None and authn_instant != instant:
                raise ProtocolViolation("Conflicting AuthnInstant values in assertion")
            authn_instant = instant
            authority = authority or find_text(
                statement, "saml:AuthnContext/saml:AuthenticatingAuthority"
            )
        if authn_instant is not None and authority is None:
            authority = issuer

        return _CheckedAssertion(
            assertion=Assertion(
                not_before=not_before,
                not_on_or_after=not_on_or_after,
                authn_instant=authn_instant,
                authority=authority,
                attributes=attributes,
            ),
            issuer=issuer,  # type: ignore[arg-type]
            confirmed=confirmed,
        )

    def _check_confirmations(
        self,
        element: etree._Element,
        now: datetime,
        session_id: str,
        acs_url: str,
        remote_addr: Optional[str],
    ) -> bool:
        skew = self.config.clock_skew
        bound = confirmed = False
        for confirmation in element.findall(
            "saml:Subject/saml:SubjectConfirmation", NAMESPACES
        ):
            if confirmation.get("Method") != BEARER_METHOD:
                continue
            data = confirmation.find("saml:SubjectConfirmationData", NAMESPACES)
            if data is None:
                logger.info("Bearer SubjectConfirmation without SubjectConfirmationData")
                continue

            if data.get("InResponseTo") != session_id:
                raise AuthenticationFailure("SubjectConfirmationData InResponseTo mismatch")
            if data.get("Recipient") != acs_url:
                raise AuthenticationFailure("SubjectConfirmationData Recipient mismatch")
            bound = True

            if data.get("NotBefore") is not None:
                logger.info("Bearer SubjectConfirmationData must not carry NotBefore")
                continue
            expires = self._instant(data.get("NotOnOrAfter"))
            if expires is None or now - skew >= expires:
                logger.info("Bearer SubjectConfirmationData expired or missing NotOnOrAfter")
                continue

            if not self.address_matcher.accept(remote_addr, data.get("Address")):
                continue

            confirmed = True

        if not bound:
            raise AuthenticationFailure(
                "SAML assertion has no bearer confirmation bound to this request"
            )
        return confirmed

    def _agree_identity(
        self, checked: Sequence[_CheckedAssertion]
    ) -> tuple[str, datetime, Optional[str]]:
        attribute = self.config.principal_name_attribute
        authenticated = [c.assertion for c in checked if c.assertion.has_authn_statement]
        if not authenticated:
            raise AuthenticationFailure(
                "SAML response has no assertion with an AuthnStatement"
            )

        name: Optional[str] = None
        authn_instant: Optional[datetime] = None
        authority: Optional[str] = None
        for assertion in authenticated:
            value = assertion.attributes.get(attribute)
            if value is not None:
                if name is not None and name != value:
                    raise ProtocolViolation("Ambiguous principal name across assertions")
                name = value
            if authn_instant is not None and authn_instant != assertion.authn_instant:
                raise ProtocolViolation("Conflicting authentication instants")
            authn_instant = assertion.authn_instant
            if authority is not None and authority != assertion.authority:
                raise ProtocolViolation("Conflicting authenticating authorities")
            authority = assertion.authority

        if not name:
            raise AuthenticationFailure(
                f"SAML response has no principal name attribute {attribute}"
            )
        return name, authn_instant, authority  # type: ignore[return-value]
