"""Log helpers for values that arrive from browsers and identity providers.

Relay states, entity IDs, addresses and whole XML documents are
attacker-controlled; everything logged from them goes through
``sanitize_for_log`` so a crafted value cannot forge log lines.
"""

from __future__ import annotations

import logging
from typing import Any

from lxml import etree


def sanitize_for_log(value: Any, max_length: int = 1000) -> Any:
    """Strip CR/LF and control characters, truncating long strings.

    Mappings and sequences are sanitized element by element.
    """

    def clean_string(text: str) -> str:
        cleaned = text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")
        cleaned = "".join(ch for ch in cleaned if ch >= " " and ch != "\x7f")
        if len(cleaned) > max_length:
            return cleaned[:max_length] + "...[truncated]"
        return cleaned

    if value is None:
        return ""

    if isinstance(value, str):
        return clean_string(value)

    if isinstance(value, dict):
        return {
            clean_string(str(k)): sanitize_for_log(v, max_length)
            for k, v in value.items()
        }

    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_for_log(elem, max_length) for elem in value]

    return clean_string(str(value))


def log_xml(logger: logging.Logger, message: str, element: Any) -> None:
    """Dump an XML element at DEBUG level only; serialization is skipped otherwise."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        text = etree.tostring(element, encoding="unicode")
    except TypeError:
        text = str(element)
    logger.debug("%s %s", message, sanitize_for_log(text, max_length=20000))
