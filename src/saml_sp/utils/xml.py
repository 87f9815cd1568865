from __future__ import annotations

from typing import Mapping, Optional

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as safe_tree
from lxml import etree

from saml_sp.exceptions import ProtocolViolation

SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XENC_NS = "http://www.w3.org/2001/04/xmlenc#"

NAMESPACES: Mapping[str, str] = {
    "saml": SAML_NS,
    "samlp": SAMLP_NS,
    "md": MD_NS,
    "ds": DS_NS,
    "xenc": XENC_NS,
}

HTTP_POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
HTTP_REDIRECT_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
BEARER_METHOD = "urn:oasis:names:tc:SAML:2.0:cm:bearer"

_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    load_dtd=False,
    huge_tree=False,
    remove_comments=False,
)


def qname(namespace: str, local: str) -> str:
    return f"{{{namespace}}}{local}"


def parse_document(xml_bytes: bytes) -> etree._Element:
    """Parse untrusted XML into an lxml element.

    The document is screened with defusedxml first so DTDs, entity
    declarations and external references are rejected outright.
    """
    try:
        safe_tree.fromstring(xml_bytes, forbid_dtd=True)
        return etree.fromstring(xml_bytes, parser=_PARSER)
    except (DefusedXmlException, safe_tree.ParseError, etree.XMLSyntaxError) as exc:
        raise ProtocolViolation("Invalid SAML XML") from exc


def find_text(
    element: etree._Element,
    path: str,
    namespaces: Mapping[str, str] = NAMESPACES,
) -> Optional[str]:
    node = element.find(path, namespaces)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def strip_xml_declaration(text: str) -> str:
    """Drop a leading ``<?xml ...?>`` declaration and the whitespace after it."""
    if not text.startswith("<?xml"):
        return text
    end = text.find("?>")
    if end == -1:
        return text
    return text[end + 2 :].lstrip()
