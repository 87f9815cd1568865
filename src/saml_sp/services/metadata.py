"""Identity provider metadata resolution with a time-bounded cache.

Every configured source is fetched and parsed on refresh; the entities found
are combined into one snapshot that is swapped in as a single reference, so
readers always see either the old or the new snapshot. Fetching happens
without any lock held.
"""

from __future__ import annotations

import base64
import binascii
import logging
import textwrap
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Protocol
from urllib.parse import unquote, urlparse
from xml.etree import ElementTree

import httpx
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as safe_tree

from saml_sp.exceptions import ConfigurationError, TransientError
from saml_sp.models.metadata import IdpMetadata
from saml_sp.utils.datetime import utcnow
from saml_sp.utils.logging import sanitize_for_log
from saml_sp.utils.xml import HTTP_REDIRECT_BINDING, MD_NS, NAMESPACES

logger = logging.getLogger(__name__)


class MetadataFetcher(Protocol):
    def fetch(self, uri: str) -> bytes: ...


class DefaultMetadataFetcher:
    """Reads ``file://`` URIs and local paths; fetches ``http(s)://`` with a timeout."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._client = client

    def fetch(self, uri: str) -> bytes:
        parsed = urlparse(uri)
        if parsed.scheme in ("http", "https"):
            return self._fetch_http(uri)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path)).read_bytes()
        if parsed.scheme == "":
            return Path(uri).read_bytes()
        raise ConfigurationError(f"Unsupported metadata URI scheme: {parsed.scheme}")

    def _fetch_http(self, uri: str) -> bytes:
        try:
            if self._client is not None:
                response = self._client.get(uri, timeout=self.timeout)
            else:
                with httpx.Client(follow_redirects=True) as client:
                    response = client.get(uri, timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransientError(f"Timed out fetching SAML metadata from {uri}") from exc
        return response.content


def _pem_certificate(text: str) -> str:
    body = "".join(text.split())
    try:
        base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid X509Certificate content") from exc
    wrapped = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN CERTIFICATE-----\n{wrapped}\n-----END CERTIFICATE-----\n"


def _idp_descriptor(entity: ElementTree.Element) -> Optional[ElementTree.Element]:
    return entity.find("md:IDPSSODescriptor", NAMESPACES)


def _signing_certificates(descriptor: ElementTree.Element) -> tuple[str, ...]:
    certificates: list[str] = []
    for key_descriptor in descriptor.findall("md:KeyDescriptor", NAMESPACES):
        use = key_descriptor.get("use")
        if use not in (None, "", "signing"):
            continue
        for node in key_descriptor.findall(
            "ds:KeyInfo/ds:X509Data/ds:X509Certificate", NAMESPACES
        ):
            if node.text and node.text.strip():
                pem = _pem_certificate(node.text)
                if pem not in certificates:
                    certificates.append(pem)
    return tuple(certificates)


def _redirect_location(descriptor: ElementTree.Element) -> Optional[str]:
    for service in descriptor.findall("md:SingleSignOnService", NAMESPACES):
        if service.get("Binding") == HTTP_REDIRECT_BINDING and service.get("Location"):
            return service.get("Location")
    return None


def _iter_entities(root: ElementTree.Element) -> Iterable[ElementTree.Element]:
    # iter() includes the root itself when it is an EntityDescriptor
    yield from root.iter(f"{{{MD_NS}}}EntityDescriptor")


def parse_idp_metadata(
    document: bytes, fetched_at: Optional[datetime] = None
) -> dict[str, IdpMetadata]:
    """Parse an ``EntityDescriptor`` or ``EntitiesDescriptor`` document.

    Only entities with an IDPSSODescriptor offering an HTTP-Redirect
    SingleSignOnService are returned.
    """
    fetched_at = fetched_at or utcnow()
    try:
        root = safe_tree.fromstring(document, forbid_dtd=True)
    except (DefusedXmlException, ElementTree.ParseError) as exc:
        raise ValueError("Invalid SAML metadata XML") from exc

    entities: dict[str, IdpMetadata] = {}
    for entity in _iter_entities(root):
        entity_id = entity.get("entityID")
        descriptor = _idp_descriptor(entity)
        if not entity_id or descriptor is None or entity_id in entities:
            continue
        location = _redirect_location(descriptor)
        if location is None:
            logger.debug(
                "Skipping IdP %s without an HTTP-Redirect SSO endpoint",
                sanitize_for_log(entity_id),
            )
            continue
        entities[entity_id] = IdpMetadata(
            entity_id=entity_id,
            sso_redirect_url=location,
            signing_certificates=_signing_certificates(descriptor),
            fetched_at=fetched_at,
        )
    return entities


@dataclass(frozen=True)
class _Snapshot:
    entities: Mapping[str, IdpMetadata]
    loaded_at: float
    failures: tuple[str, ...] = field(default=())


class MetadataCache:
    def __init__(
        self,
        metadata_uris: Iterable[str],
        ttl: timedelta = timedelta(minutes=5),
        fetcher: Optional[MetadataFetcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.metadata_uris = tuple(metadata_uris)
        if not self.metadata_uris:
            raise ConfigurationError("At least one SAML metadata URI is required")
        self.ttl = ttl
        self.fetcher = fetcher or DefaultMetadataFetcher()
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None

    def resolve(self, entity_id: str) -> IdpMetadata:
        snapshot = self._current()
        metadata = snapshot.entities.get(entity_id)
        if metadata is None:
            raise ConfigurationError(
                f"No SAML metadata found for entity {sanitize_for_log(entity_id)}"
            )
        return metadata

    def invalidate(self) -> None:
        self._snapshot = None

    def _is_fresh(self, snapshot: Optional[_Snapshot]) -> bool:
        if snapshot is None:
            return False
        return self._clock() - snapshot.loaded_at <= self.ttl.total_seconds()

    def _current(self) -> _Snapshot:
        snapshot = self._snapshot
        if self._is_fresh(snapshot):
            return snapshot  # type: ignore[return-value]
        return self._refresh(snapshot)

    def _refresh(self, previous: Optional[_Snapshot]) -> _Snapshot:
        entities: dict[str, IdpMetadata] = {}
        failures: list[str] = []
        timeouts = 0
        succeeded = 0
        fetched_at = utcnow()

        for uri in self.metadata_uris:
            try:
                document = self.fetcher.fetch(uri)
                parsed = parse_idp_metadata(document, fetched_at=fetched_at)
            except TransientError as exc:
                timeouts += 1
                failures.append(f"{uri}: {exc}")
                logger.warning("SAML metadata fetch timed out: %s", sanitize_for_log(uri))
                continue
            except (OSError, ValueError, httpx.HTTPError, ConfigurationError) as exc:
                failures.append(f"{uri}: {exc}")
                logger.warning(
                    "Failed to load SAML metadata from %s: %s",
                    sanitize_for_log(uri),
                    sanitize_for_log(str(exc)),
                )
                continue
            succeeded += 1
            for key, value in parsed.items():
                entities.setdefault(key, value)

        if succeeded == 0:
            if previous is not None:
                logger.warning(
                    "Failed to refresh SAML metadata from all %d sources; "
                    "keeping cached metadata",
                    len(self.metadata_uris),
                )
                return previous
            if timeouts == len(self.metadata_uris):
                raise TransientError("Timed out fetching SAML metadata from all sources")
            raise ConfigurationError(
                "Failed to load SAML metadata for at least one provider: "
                + "; ".join(sanitize_for_log(failures))
            )

        if failures:
            logger.warning(
                "Failed to load SAML metadata from %d of %d sources; "
                "continuing with %d entities until the next refresh",
                len(failures),
                len(self.metadata_uris),
                len(entities),
            )

        snapshot = _Snapshot(
            entities=entities,
            loaded_at=self._clock(),
            failures=tuple(failures),
        )
        self._snapshot = snapshot
        logger.info("Loaded SAML metadata for %d entities", len(entities))
        return snapshot
