from __future__ import annotations

import pytest

from saml_helpers import make_config, make_keypair


@pytest.fixture(scope="session")
def sp_keypair():
    return make_keypair("sp.example.edu")


@pytest.fixture(scope="session")
def idp_keypair():
    return make_keypair("idp.example.edu")


@pytest.fixture
def sp_config(sp_keypair):
    key_pem, cert_pem = sp_keypair
    return make_config(key_pem, cert_pem)
