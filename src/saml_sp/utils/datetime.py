from datetime import datetime, timezone
from typing import Optional, overload


@overload
def to_utc(dt: None) -> None: ...


@overload
def to_utc(dt: datetime) -> datetime: ...


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC tzinfo. Handles None gracefully."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_saml_instant(value: Optional[str]) -> Optional[datetime]:
    """Parse an xs:dateTime as used by SAML (``2024-01-01T00:00:00Z``).

    Fractional seconds beyond microseconds are truncated. Raises ValueError
    on malformed input.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        zone = rest[len(digits):]
        text = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
    return to_utc(datetime.fromisoformat(text))


def format_saml_instant(value: datetime) -> str:
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def to_epoch_seconds(value: datetime) -> int:
    return int(to_utc(value).timestamp())


def from_epoch_seconds(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def whole_seconds(value: Optional[datetime]) -> Optional[datetime]:
    """UTC with sub-second precision dropped, matching epoch-second claims."""
    if value is None:
        return None
    return to_utc(value).replace(microsecond=0)
