from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from saml_sp.config import load_config
from saml_sp.exceptions import SAMLError
from saml_sp.realm import ServiceProviderRealm
from saml_sp.services.session import new_relay_state, new_session_id

logger = logging.getLogger(__name__)


def _load_dotenv(path: Path) -> int:
    """
    Load a .env file into process environment (without overriding existing vars).
    """
    if not path.exists():
        return 0
    loaded = 0
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key or key in os.environ:
            continue
        if (len(value) >= 2) and ((value[0] == value[-1]) and value[0] in {"'", '"'}):
            value = value[1:-1]
        os.environ[key] = value
        loaded += 1
    return loaded


def _cmd_metadata(ns: argparse.Namespace) -> int:
    config = load_config(ns.config)
    realm = ServiceProviderRealm.from_config(config)
    sys.stdout.write(realm.request_builder.service_provider_metadata())
    return 0


def _cmd_login_url(ns: argparse.Namespace) -> int:
    config = load_config(ns.config)
    realm = ServiceProviderRealm.from_config(config)
    relay_state = ns.relay_state or new_relay_state()
    url = realm.request_builder.build_redirect(relay_state, new_session_id(), ns.acs)
    print(url)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="saml-sp",
        description="SAML 2.0 service provider utilities.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING). Defaults to env LOG_LEVEL or INFO.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    metadata = sub.add_parser("metadata", help="Print the SP metadata document.")
    metadata.add_argument("--config", required=True, help="Path to realm YAML config.")
    metadata.set_defaults(func=_cmd_metadata)

    login = sub.add_parser(
        "login-url", help="Print an IdP redirect URL for a fresh AuthnRequest."
    )
    login.add_argument("--config", required=True, help="Path to realm YAML config.")
    login.add_argument("--acs", required=True, help="Assertion Consumer Service URL.")
    login.add_argument(
        "--relay-state", default=None, help="RelayState value (random if omitted)."
    )
    login.set_defaults(func=_cmd_login_url)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if os.getenv("DISABLE_DOTENV", "").strip().lower() not in {
        "1",
        "true",
        "yes",
        "on",
    }:
        _load_dotenv(Path.cwd() / ".env")

    parser = build_parser()
    ns = parser.parse_args(argv)

    level_name = str(getattr(ns, "log_level", "") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    try:
        return int(func(ns))
    except SAMLError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
