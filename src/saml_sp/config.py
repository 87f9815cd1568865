"""Service provider configuration.

One ``ServiceProviderConfig`` describes one trust realm. It is immutable and
loaded once, usually from YAML via :func:`load_config`::

    realm: example
    sp_entity_id: https://app.example.edu/saml
    idp_entity_id: https://idp.example.edu/idp/shibboleth
    metadata_uris: [https://idp.example.edu/idp/shibboleth]
    acs_uris: [https://app.example.edu/saml/acs]
    entry_point_uris: [https://app.example.edu/]
    private_key_path: /etc/saml/sp.key
    certificate_path: /etc/saml/sp.crt

Key material may also come from ``SAML_SP_PRIVATE_KEY`` / ``SAML_SP_CERT``
or the ``SAML_SP_KEY_PATH`` / ``SAML_SP_CERT_PATH`` environment variables,
which take precedence over the file.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from saml_sp.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

EDU_PERSON_PRINCIPAL_NAME = "urn:oid:1.3.6.1.4.1.5923.1.1.1.6"


def is_valid_ip_or_cidr(value: str) -> bool:
    try:
        if "/" in value:
            ipaddress.ip_network(value, strict=False)
        else:
            ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


class ServiceProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    realm: str = Field(min_length=1)
    sp_entity_id: str = Field(min_length=1)
    idp_entity_id: str = Field(min_length=1)
    trusted_idp_entity_ids: tuple[str, ...] = ()
    metadata_uris: tuple[str, ...] = Field(min_length=1)
    metadata_ttl: timedelta = timedelta(minutes=5)
    metadata_fetch_timeout: float = Field(default=30.0, gt=0)
    acs_uris: tuple[str, ...] = Field(min_length=1)
    entry_point_uris: tuple[str, ...] = Field(min_length=1)
    private_key: str = Field(repr=False)
    certificate: str
    signature_algorithm: str = "RS256"
    principal_name_attribute: str = EDU_PERSON_PRINCIPAL_NAME
    session_timeout: timedelta = timedelta(hours=12)
    allowed_ranges: tuple[str, ...] = ()
    fail_on_address_mismatch: bool = True
    clock_skew: timedelta = timedelta(minutes=5)

    @model_validator(mode="before")
    @classmethod
    def _default_trusted_issuers(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("trusted_idp_entity_ids"):
            data = {**data, "trusted_idp_entity_ids": (data.get("idp_entity_id"),)}
        return data

    @model_validator(mode="after")
    def _check(self) -> "ServiceProviderConfig":
        for value in self.allowed_ranges:
            if not is_valid_ip_or_cidr(value):
                raise ValueError(f"Invalid IP address or CIDR range: {value}")
        if self.session_timeout <= timedelta(0):
            raise ValueError("session_timeout must be positive")
        if self.session_timeout % timedelta(seconds=1):
            raise ValueError("session_timeout must be a whole number of seconds")
        if self.clock_skew < timedelta(0):
            raise ValueError("clock_skew must not be negative")
        return self

    @property
    def default_entry_point(self) -> str:
        return self.entry_point_uris[0]

    def is_trusted_issuer(self, entity_id: Optional[str]) -> bool:
        return entity_id is not None and entity_id in self.trusted_idp_entity_ids


def _read_pem(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigurationError(f"Unable to read key material from {path}") from exc


def build_config(
    data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None
) -> ServiceProviderConfig:
    """Validate a raw mapping into a config, resolving key material."""
    env = os.environ if env is None else env
    values = dict(data)

    key_path = env.get("SAML_SP_KEY_PATH") or values.pop("private_key_path", None)
    cert_path = env.get("SAML_SP_CERT_PATH") or values.pop("certificate_path", None)
    values.pop("private_key_path", None)
    values.pop("certificate_path", None)

    if env.get("SAML_SP_PRIVATE_KEY"):
        values["private_key"] = env["SAML_SP_PRIVATE_KEY"]
    elif key_path:
        values["private_key"] = _read_pem(key_path)

    if env.get("SAML_SP_CERT"):
        values["certificate"] = env["SAML_SP_CERT"]
    elif cert_path:
        values["certificate"] = _read_pem(cert_path)

    try:
        return ServiceProviderConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid service provider configuration: {exc}") from exc


def load_config(
    path: str | Path, env: Optional[Mapping[str, str]] = None
) -> ServiceProviderConfig:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to load configuration from {path}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration in {path} must be a mapping")

    config = build_config(raw, env=env)
    logger.info(
        "Loaded SAML service provider config realm=%s sp=%s",
        config.realm,
        config.sp_entity_id,
    )
    return config
