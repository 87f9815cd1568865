from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from lxml import etree

from saml_helpers import (
    ACS_URL,
    METADATA_URI,
    PassthroughTrustEngine,
    StaticFetcher,
    assertion_xml,
    encode_response,
    encrypt_assertion,
    encrypted_assertion_xml,
    idp_metadata_xml,
    make_config,
    make_keypair,
    response_xml,
    sign_response,
)
from saml_sp.exceptions import (
    AuthenticationFailure,
    DecryptionError,
    ProtocolViolation,
    SignatureVerificationError,
)
from saml_sp.services.address import AddressMatcher
from saml_sp.services.metadata import MetadataCache
from saml_sp.services.validator import (
    ResponseValidator,
    SignxmlTrustEngine,
    XmlSecDecrypter,
    check_signature_profile,
)

REQUEST_ID = "_req1"
REMOTE_ADDR = "198.51.100.7"


def _cache(certificates):
    document = idp_metadata_xml(certificates)
    return MetadataCache([METADATA_URI], fetcher=StaticFetcher({METADATA_URI: document}))


def _validate(validator, xml, session_id=REQUEST_ID, remote_addr=REMOTE_ADDR):
    return validator.validate(
        encode_response(xml),
        session_id=session_id,
        acs_url=ACS_URL,
        remote_addr=remote_addr,
    )


@pytest.fixture
def decrypter():
    return MagicMock()


@pytest.fixture
def validator(sp_config, idp_keypair, decrypter):
    return ResponseValidator(
        sp_config,
        _cache([idp_keypair[1]]),
        decrypter=decrypter,
        trust_engine_factory=PassthroughTrustEngine,
    )


class TestResponseValidator:
    def test_valid_response_yields_principal(self, validator):
        now = datetime.now(timezone.utc)
        authn = now - timedelta(minutes=2)
        xml = response_xml(
            assertion_xml(
                in_response_to=REQUEST_ID,
                now=now,
                authn_instant=authn,
                extra_attributes={"urn:oid:0.9.2342.19200300.100.1.3": "alice@mail.example.edu"},
            ),
            in_response_to=REQUEST_ID,
        )

        principal = _validate(validator, xml)

        assert principal.name == "alice@example.edu"
        assert principal.realm == "example"
        assert principal.authn_instant == authn.replace(microsecond=0)
        assert principal.expires == principal.authn_instant + timedelta(hours=12)
        assert principal.authority == "https://idp.example.edu/idp/shibboleth"
        assert principal.attributes["urn:oid:0.9.2342.19200300.100.1.3"] == "alice@mail.example.edu"

    def test_encrypted_assertion_is_decrypted(self, validator, decrypter):
        decrypter.decrypt.return_value = etree.fromstring(
            assertion_xml(in_response_to=REQUEST_ID, name="bob@example.edu").strip()
        )
        xml = response_xml(encrypted_assertion_xml())

        principal = _validate(validator, xml)

        decrypter.decrypt.assert_called_once()
        assert principal.name == "bob@example.edu"

    def test_decrypt_failure_fails_whole_response(self, validator, decrypter):
        decrypter.decrypt.side_effect = DecryptionError("bad key")
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID),
            encrypted_assertion_xml(),
        )

        with pytest.raises(DecryptionError):
            _validate(validator, xml)

    def test_conflicting_principal_names_rejected(self, validator):
        now = datetime.now(timezone.utc)
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID, now=now, assertion_id="_a1"),
            assertion_xml(
                in_response_to=REQUEST_ID, now=now, assertion_id="_a2", name="mallory@example.edu"
            ),
        )

        with pytest.raises(ProtocolViolation):
            _validate(validator, xml)

    def test_same_principal_name_in_two_assertions_tolerated(self, validator):
        now = datetime.now(timezone.utc)
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID, now=now, assertion_id="_a1"),
            assertion_xml(in_response_to=REQUEST_ID, now=now, assertion_id="_a2"),
        )

        principal = _validate(validator, xml)

        assert principal.name == "alice@example.edu"
        assert len(principal.assertions) == 2

    def test_missing_authn_statement_rejected(self, validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, include_authn=False))

        with pytest.raises(AuthenticationFailure, match="AuthnStatement"):
            _validate(validator, xml)

    def test_missing_principal_name_rejected(self, validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, name=None))

        with pytest.raises(AuthenticationFailure, match="principal name"):
            _validate(validator, xml)

    def test_audience_mismatch_rejected(self, validator):
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID, audience="https://other-sp.example.org")
        )

        with pytest.raises(AuthenticationFailure, match="audience"):
            _validate(validator, xml)

    def test_missing_audience_restriction_rejected(self, validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, audience=None))

        with pytest.raises(AuthenticationFailure, match="audience"):
            _validate(validator, xml)

    def test_recipient_mismatch_rejected(self, validator):
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID, recipient="https://evil.example.com/acs")
        )

        with pytest.raises(AuthenticationFailure, match="Recipient"):
            _validate(validator, xml)

    def test_confirmation_for_other_request_rejected(self, validator):
        xml = response_xml(assertion_xml(in_response_to="_someone_else"))

        with pytest.raises(AuthenticationFailure, match="InResponseTo"):
            _validate(validator, xml)

    def test_response_for_other_request_rejected(self, validator):
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID), in_response_to="_someone_else"
        )

        with pytest.raises(AuthenticationFailure, match="InResponseTo"):
            _validate(validator, xml)

    def test_expired_confirmation_leaves_subject_unconfirmed(self, validator):
        xml = response_xml(
            assertion_xml(
                in_response_to=REQUEST_ID, confirmation_expires_in=timedelta(minutes=-10)
            )
        )

        with pytest.raises(AuthenticationFailure, match="subject confirmation"):
            _validate(validator, xml)

    def test_expired_assertion_rejected(self, validator):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, now=old))

        with pytest.raises(AuthenticationFailure, match="expired"):
            _validate(validator, xml)

    def test_address_mismatch_rejected_when_configured_to_fail(self, validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, address="203.0.113.9"))

        with pytest.raises(AuthenticationFailure, match="subject confirmation"):
            _validate(validator, xml)

    def test_site_local_confirmation_address_accepted(self, validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, address="10.1.2.3"))

        assert _validate(validator, xml).name == "alice@example.edu"

    def test_assertion_without_confirmation_rejected(self, validator):
        now = datetime.now(timezone.utc)
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID, now=now, assertion_id="_a1"),
            assertion_xml(
                in_response_to="_other_request",
                recipient="https://elsewhere.example.org/acs",
                now=now,
                assertion_id="_a2",
                include_confirmation=False,
            ),
            in_response_to=REQUEST_ID,
        )

        with pytest.raises(AuthenticationFailure, match="bound to this request"):
            _validate(validator, xml)

    def test_conflicting_attribute_across_assertions_rejected(self, validator):
        now = datetime.now(timezone.utc)
        xml = response_xml(
            assertion_xml(
                in_response_to=REQUEST_ID,
                now=now,
                assertion_id="_a1",
                extra_attributes={"mail": "alice@mail.example.edu"},
            ),
            assertion_xml(
                in_response_to=REQUEST_ID,
                now=now,
                assertion_id="_a2",
                extra_attributes={"mail": "mallory@mail.example.edu"},
            ),
        )

        with pytest.raises(ProtocolViolation, match="mail"):
            _validate(validator, xml)

    def test_address_mismatch_tolerated_when_not_configured_to_fail(
        self, sp_config, idp_keypair
    ):
        validator = ResponseValidator(
            sp_config,
            _cache([idp_keypair[1]]),
            decrypter=MagicMock(),
            trust_engine_factory=PassthroughTrustEngine,
            address_matcher=AddressMatcher(fail_on_mismatch=False),
        )
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID, address="203.0.113.9"))

        assert _validate(validator, xml).name == "alice@example.edu"

    def test_untrusted_issuer_rejected(self, validator):
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID), issuer="https://rogue.example.org"
        )

        with pytest.raises(AuthenticationFailure, match="Untrusted"):
            _validate(validator, xml)

    def test_failed_status_rejected(self, validator):
        xml = response_xml(
            assertion_xml(in_response_to=REQUEST_ID),
            status="urn:oasis:names:tc:SAML:2.0:status:Responder",
        )

        with pytest.raises(AuthenticationFailure, match="status"):
            _validate(validator, xml)

    def test_invalid_base64_is_protocol_violation(self, validator):
        with pytest.raises(ProtocolViolation):
            validator.validate(
                "not*base64", session_id=REQUEST_ID, acs_url=ACS_URL, remote_addr=None
            )

    def test_doctype_is_protocol_violation(self, validator):
        xml = '<!DOCTYPE r [<!ENTITY x "y">]>' + response_xml(
            assertion_xml(in_response_to=REQUEST_ID)
        )

        with pytest.raises(ProtocolViolation):
            _validate(validator, xml)


class TestSignxmlTrustEngine:
    @pytest.fixture
    def signed_validator(self, sp_config, idp_keypair):
        return ResponseValidator(
            sp_config,
            _cache([idp_keypair[1]]),
            decrypter=MagicMock(),
        )

    def test_signed_response_verifies(self, signed_validator, idp_keypair):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID), in_response_to=REQUEST_ID)
        signed = sign_response(xml, *idp_keypair)

        principal = _validate(signed_validator, signed)

        assert principal.name == "alice@example.edu"

    def test_tampered_response_fails_before_attribute_extraction(
        self, signed_validator, idp_keypair
    ):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))
        signed = sign_response(xml, *idp_keypair)
        tampered = signed.replace(b"alice@example.edu", b"alicf@example.edu")

        with pytest.raises(SignatureVerificationError):
            _validate(signed_validator, tampered)

    def test_unsigned_response_rejected(self, signed_validator):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))

        with pytest.raises(SignatureVerificationError, match="not signed"):
            _validate(signed_validator, xml)

    def test_signature_from_unknown_key_rejected(self, signed_validator):
        rogue = make_keypair("rogue.example.org")
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))

        with pytest.raises(SignatureVerificationError):
            _validate(signed_validator, sign_response(xml, *rogue))

    def test_rollover_certificate_accepted(self, sp_keypair, idp_keypair):
        _, previous_cert = make_keypair("idp-previous.example.edu")
        validator = ResponseValidator(
            make_config(*sp_keypair),
            _cache([previous_cert, idp_keypair[1]]),
            decrypter=MagicMock(),
        )
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))

        principal = _validate(validator, sign_response(xml, *idp_keypair))

        assert principal.name == "alice@example.edu"

    def test_profile_requires_reference_to_response(self, idp_keypair):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))
        signed = etree.fromstring(sign_response(xml, *idp_keypair))
        signed.set("ID", "_renamed")

        with pytest.raises(SignatureVerificationError, match="reference"):
            check_signature_profile(signed)

    def test_engine_without_certificates_rejects(self, idp_keypair):
        xml = response_xml(assertion_xml(in_response_to=REQUEST_ID))
        document = sign_response(xml, *idp_keypair)

        with pytest.raises(SignatureVerificationError):
            SignxmlTrustEngine([]).verify(document, etree.fromstring(document))


class TestXmlSecDecrypter:
    def test_missing_encrypted_data_rejected(self, sp_keypair):
        element = etree.fromstring(
            '<saml:EncryptedAssertion xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"/>'
        )

        with pytest.raises(DecryptionError):
            XmlSecDecrypter(sp_keypair[0].encode("ascii")).decrypt(element)

    def test_validate_decrypts_assertion_for_sp_certificate(
        self, sp_config, sp_keypair, idp_keypair
    ):
        validator = ResponseValidator(
            sp_config,
            _cache([idp_keypair[1]]),
            decrypter=XmlSecDecrypter(sp_keypair[0].encode("ascii")),
            trust_engine_factory=PassthroughTrustEngine,
        )
        encrypted = encrypt_assertion(
            assertion_xml(in_response_to=REQUEST_ID, name="carol@example.edu"), sp_keypair[1]
        )

        principal = _validate(validator, response_xml(encrypted, in_response_to=REQUEST_ID))

        assert principal.name == "carol@example.edu"
        assert principal.issuer == "https://idp.example.edu/idp/shibboleth"

    def test_assertion_for_other_key_fails_decryption(self, sp_keypair):
        other_cert = make_keypair("other-sp.example.org")[1]
        encrypted = etree.fromstring(
            encrypt_assertion(assertion_xml(in_response_to=REQUEST_ID), other_cert)
        )

        with pytest.raises(DecryptionError):
            XmlSecDecrypter(sp_keypair[0].encode("ascii")).decrypt(encrypted)
