from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class IdpMetadata:
    """Resolved identity provider metadata; replaced as a whole, never patched."""

    entity_id: str
    sso_redirect_url: str
    signing_certificates: tuple[str, ...]
    fetched_at: datetime
