from __future__ import annotations

from datetime import timedelta

import pytest

from saml_helpers import (
    IDP_ENTITY_ID,
    METADATA_URI,
    SSO_URL,
    StaticFetcher,
    idp_metadata_xml,
    make_keypair,
)
from saml_sp.exceptions import ConfigurationError, TransientError
from saml_sp.services.metadata import MetadataCache, parse_idp_metadata

SECOND_URI = "https://federation.example.org/metadata.xml"


class FakeClock:
    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def metadata(idp_keypair):
    return idp_metadata_xml([idp_keypair[1]])


class TestParseIdpMetadata:
    def test_extracts_redirect_location_and_certificates(self, idp_keypair):
        _, rollover_cert = make_keypair("idp-next.example.edu")
        entities = parse_idp_metadata(idp_metadata_xml([idp_keypair[1], rollover_cert]))

        entity = entities[IDP_ENTITY_ID]
        assert entity.sso_redirect_url == SSO_URL
        assert len(entity.signing_certificates) == 2
        assert entity.signing_certificates[0].startswith("-----BEGIN CERTIFICATE-----")

    def test_entities_descriptor(self, idp_keypair):
        inner = idp_metadata_xml([idp_keypair[1]]).decode("utf-8")
        document = (
            '<md:EntitiesDescriptor xmlns:md="urn:oasis:names:tc:SAML:2.0:metadata">'
            f"{inner}</md:EntitiesDescriptor>"
        ).encode("utf-8")

        assert list(parse_idp_metadata(document)) == [IDP_ENTITY_ID]

    def test_rejects_dtd(self):
        document = b'<!DOCTYPE x [<!ENTITY a "b">]><x>&a;</x>'

        with pytest.raises(ValueError):
            parse_idp_metadata(document)


class TestMetadataCache:
    def test_resolve_within_ttl_does_not_refetch(self, metadata):
        fetcher = StaticFetcher({METADATA_URI: metadata})
        clock = FakeClock()
        cache = MetadataCache([METADATA_URI], ttl=timedelta(minutes=5), fetcher=fetcher, clock=clock)

        cache.resolve(IDP_ENTITY_ID)
        clock.value += 60
        cache.resolve(IDP_ENTITY_ID)

        assert fetcher.calls == [METADATA_URI]

    def test_resolve_after_ttl_refetches(self, metadata):
        fetcher = StaticFetcher({METADATA_URI: metadata})
        clock = FakeClock()
        cache = MetadataCache([METADATA_URI], ttl=timedelta(minutes=5), fetcher=fetcher, clock=clock)

        cache.resolve(IDP_ENTITY_ID)
        clock.value += 301
        cache.resolve(IDP_ENTITY_ID)

        assert fetcher.calls == [METADATA_URI, METADATA_URI]

    def test_partial_failure_uses_successful_sources_within_ttl(self, metadata):
        fetcher = StaticFetcher({METADATA_URI: metadata, SECOND_URI: OSError("unreachable")})
        clock = FakeClock()
        cache = MetadataCache(
            [METADATA_URI, SECOND_URI], ttl=timedelta(minutes=5), fetcher=fetcher, clock=clock
        )

        assert cache.resolve(IDP_ENTITY_ID).entity_id == IDP_ENTITY_ID
        clock.value += 60
        cache.resolve(IDP_ENTITY_ID)
        cache.resolve(IDP_ENTITY_ID)

        assert fetcher.calls == [METADATA_URI, SECOND_URI]

    def test_partial_failure_retries_failed_source_after_ttl(self, metadata):
        fetcher = StaticFetcher({METADATA_URI: metadata, SECOND_URI: OSError("unreachable")})
        clock = FakeClock()
        cache = MetadataCache(
            [METADATA_URI, SECOND_URI], ttl=timedelta(minutes=5), fetcher=fetcher, clock=clock
        )

        cache.resolve(IDP_ENTITY_ID)
        clock.value += 301
        cache.resolve(IDP_ENTITY_ID)

        assert fetcher.calls.count(SECOND_URI) == 2

    def test_total_failure_keeps_stale_cache(self, metadata, caplog):
        fetcher = StaticFetcher({METADATA_URI: metadata})
        clock = FakeClock()
        cache = MetadataCache([METADATA_URI], ttl=timedelta(minutes=5), fetcher=fetcher, clock=clock)
        first = cache.resolve(IDP_ENTITY_ID)

        fetcher.documents[METADATA_URI] = OSError("down")
        clock.value += 600
        with caplog.at_level("WARNING"):
            second = cache.resolve(IDP_ENTITY_ID)

        assert second is first
        assert "keeping cached metadata" in caplog.text

    def test_total_failure_without_cache_is_configuration_error(self):
        fetcher = StaticFetcher({METADATA_URI: b"<not-xml"})
        cache = MetadataCache([METADATA_URI], fetcher=fetcher)

        with pytest.raises(ConfigurationError):
            cache.resolve(IDP_ENTITY_ID)

    def test_all_sources_timed_out_is_transient(self):
        fetcher = StaticFetcher({METADATA_URI: TransientError("timeout")})
        cache = MetadataCache([METADATA_URI], fetcher=fetcher)

        with pytest.raises(TransientError):
            cache.resolve(IDP_ENTITY_ID)

    def test_unknown_entity_is_configuration_error(self, metadata):
        cache = MetadataCache([METADATA_URI], fetcher=StaticFetcher({METADATA_URI: metadata}))

        with pytest.raises(ConfigurationError):
            cache.resolve("https://other-idp.example.org")

    def test_invalidate_forces_refetch(self, metadata):
        fetcher = StaticFetcher({METADATA_URI: metadata})
        cache = MetadataCache([METADATA_URI], fetcher=fetcher, clock=FakeClock())

        cache.resolve(IDP_ENTITY_ID)
        cache.invalidate()
        cache.resolve(IDP_ENTITY_ID)

        assert len(fetcher.calls) == 2

    def test_requires_a_source(self):
        with pytest.raises(ConfigurationError):
            MetadataCache([])
