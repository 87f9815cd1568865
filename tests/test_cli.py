from __future__ import annotations

from urllib.parse import parse_qsl, urlsplit

import pytest
import yaml

from saml_helpers import (
    ACS_URL,
    ENTRY_POINT,
    IDP_ENTITY_ID,
    SP_ENTITY_ID,
    SSO_URL,
    StaticFetcher,
    idp_metadata_xml,
)
from saml_sp import cli
from saml_sp.models.session import PreAuthState
from saml_sp.realm import ServiceProviderRealm
from saml_sp.services.session import InMemorySessionStore


@pytest.fixture
def config_file(tmp_path, sp_keypair, idp_keypair):
    metadata = tmp_path / "idp-metadata.xml"
    metadata.write_bytes(idp_metadata_xml([idp_keypair[1]]))
    key_pem, cert_pem = sp_keypair
    (tmp_path / "sp.key").write_text(key_pem)
    (tmp_path / "sp.crt").write_text(cert_pem)
    path = tmp_path / "realm.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "realm": "example",
                "sp_entity_id": SP_ENTITY_ID,
                "idp_entity_id": IDP_ENTITY_ID,
                "metadata_uris": [metadata.as_uri()],
                "acs_uris": [ACS_URL],
                "entry_point_uris": [ENTRY_POINT],
                "private_key_path": str(tmp_path / "sp.key"),
                "certificate_path": str(tmp_path / "sp.crt"),
            }
        )
    )
    return path


@pytest.fixture(autouse=True)
def _no_dotenv(monkeypatch):
    monkeypatch.setenv("DISABLE_DOTENV", "1")
    for name in ("SAML_SP_PRIVATE_KEY", "SAML_SP_CERT", "SAML_SP_KEY_PATH", "SAML_SP_CERT_PATH"):
        monkeypatch.delenv(name, raising=False)


class TestCli:
    def test_metadata_command(self, config_file, capsys):
        assert cli.main(["metadata", "--config", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert f'entityID="{SP_ENTITY_ID}"' in out
        assert "SPSSODescriptor" in out

    def test_login_url_command(self, config_file, capsys):
        code = cli.main(
            ["login-url", "--config", str(config_file), "--acs", ACS_URL, "--relay-state", "r1"]
        )

        assert code == 0
        url = capsys.readouterr().out.strip()
        assert url.startswith(f"{SSO_URL}?SAMLRequest=")
        assert dict(parse_qsl(urlsplit(url).query))["RelayState"] == "r1"

    def test_login_url_rejects_unknown_acs(self, config_file):
        code = cli.main(
            ["login-url", "--config", str(config_file), "--acs", "https://evil.example.com/acs"]
        )

        assert code == 1

    def test_missing_config_fails(self, tmp_path):
        assert cli.main(["metadata", "--config", str(tmp_path / "missing.yaml")]) == 1


class TestServiceProviderRealm:
    def test_controller_shares_realm_components(self, sp_config, idp_keypair):
        fetcher = StaticFetcher({sp_config.metadata_uris[0]: idp_metadata_xml([idp_keypair[1]])})
        realm = ServiceProviderRealm.from_config(sp_config, fetcher=fetcher)
        store = InMemorySessionStore()

        controller = realm.controller(store, ACS_URL)
        controller.begin_login(ENTRY_POINT)

        assert controller.request_builder is realm.request_builder
        assert controller.response_validator is realm.response_validator
        assert store.get(PreAuthState) is not None
        assert fetcher.calls == [sp_config.metadata_uris[0]]

    def test_token_codec_uses_realm_identity(self, sp_config):
        realm = ServiceProviderRealm.from_config(sp_config, fetcher=StaticFetcher({}))

        assert realm.token_codec(b"k" * 16).identity is realm.identity
