"""Bearer subject-confirmation address policy.

IdP responses usually reach the SP through a load balancer or a back channel,
so the address an IdP records for the subject rarely equals the TCP peer the
SP sees. The policy below accepts private (site-local) confirmation
addresses, addresses inside configured CIDR ranges, and exact matches; any
other mismatch is rejected only when ``fail_on_mismatch`` is set.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Union

from saml_sp.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
HostResolver = Callable[[str], Sequence[str]]

_SITE_LOCAL_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fec0::/10"),
    ipaddress.ip_network("fc00::/7"),
)


class AddressCheck(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    INDETERMINATE = "indeterminate"


def resolve_host(host: str) -> list[str]:
    """Resolve a hostname or literal to its addresses; raises OSError when unresolvable."""
    infos = socket.getaddrinfo(host, None)
    return sorted({str(info[4][0]) for info in infos})


def parse_address(value: Optional[str]) -> Optional[IPAddress]:
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip().strip("[]").split("%", 1)[0])
    except ValueError:
        return None


def is_site_local(address: IPAddress) -> bool:
    return any(
        address.version == network.version and address in network
        for network in _SITE_LOCAL_NETWORKS
    )


def is_address_in_range(address: IPAddress, cidr: str) -> bool:
    """Prefix match of ``address`` against ``cidr``.

    A range without ``/prefix`` uses a full-length mask, i.e. an exact match.
    Mismatched address families never match.
    """
    try:
        if "/" in cidr:
            network = ipaddress.ip_network(cidr.strip(), strict=False)
        else:
            single = ipaddress.ip_address(cidr.strip())
            network = ipaddress.ip_network(single)
    except ValueError:
        return False
    return address.version == network.version and address in network


def check_address(
    observed_address: Optional[str],
    confirmation_address: Optional[str],
    allowed_ranges: Iterable[str],
    *,
    required: bool = False,
    resolver: HostResolver = resolve_host,
) -> AddressCheck:
    """Evaluate the address rules without applying the mismatch policy."""
    address = (confirmation_address or "").strip()
    if not address:
        if required:
            logger.info("SubjectConfirmationData/@Address was missing and was required")
            return AddressCheck.INVALID
        return AddressCheck.VALID

    literal = parse_address(address)
    if literal is not None:
        confirming = [literal]
    else:
        try:
            resolved = resolver(address)
        except (OSError, UnicodeError, ValueError):
            resolved = []
        confirming = [a for a in (parse_address(r) for r in resolved) if a is not None]
        if not confirming:
            logger.info(
                "Subject confirmation address '%s' is not a resolvable hostname or IP address",
                sanitize_for_log(address),
            )
            return AddressCheck.INDETERMINATE

    ranges = list(allowed_ranges or ())
    for candidate in confirming:
        if is_site_local(candidate):
            logger.debug("Allowing private IP %s", candidate)
            return AddressCheck.VALID
        for cidr in ranges:
            if is_address_in_range(candidate, cidr):
                logger.debug("Allowing IP %s; range = %s", candidate, cidr)
                return AddressCheck.VALID

    observed = parse_address(observed_address)
    if observed is not None and observed in confirming:
        return AddressCheck.VALID

    logger.info(
        "IP address mismatch in SAML subject confirmation; remote address = %s; "
        "confirmation address = %s; allowed ranges = %s",
        sanitize_for_log(observed_address),
        sanitize_for_log(address),
        sanitize_for_log(ranges),
    )
    return AddressCheck.INVALID


def accept(
    observed_address: Optional[str],
    confirmation_address: Optional[str],
    allowed_ranges: Iterable[str],
    fail_on_mismatch: bool,
    *,
    required: bool = False,
    resolver: HostResolver = resolve_host,
) -> bool:
    result = check_address(
        observed_address,
        confirmation_address,
        allowed_ranges,
        required=required,
        resolver=resolver,
    )
    if result is AddressCheck.VALID:
        return True
    if result is AddressCheck.INVALID and not (confirmation_address or "").strip():
        return False
    if not fail_on_mismatch:
        logger.warning(
            "Accepting subject confirmation address %s (%s) because address "
            "mismatch is not configured to fail",
            sanitize_for_log(confirmation_address),
            result.value,
        )
        return True
    return False


class AddressMatcher:
    """``accept`` bound to one realm's allow-list and mismatch policy."""

    def __init__(
        self,
        allowed_ranges: Iterable[str] = (),
        fail_on_mismatch: bool = True,
        resolver: HostResolver = resolve_host,
    ):
        self.allowed_ranges = tuple(allowed_ranges)
        self.fail_on_mismatch = fail_on_mismatch
        self.resolver = resolver

    def accept(
        self,
        observed_address: Optional[str],
        confirmation_address: Optional[str],
        *,
        required: bool = False,
    ) -> bool:
        return accept(
            observed_address,
            confirmation_address,
            self.allowed_ranges,
            self.fail_on_mismatch,
            required=required,
            resolver=self.resolver,
        )
