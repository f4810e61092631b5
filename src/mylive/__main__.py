"""Command-line interface for running the MyLive web server."""

from __future__ import annotations

import argparse
import contextlib
import ipaddress
import logging
import socket
from pathlib import Path
from typing import Iterable

import uvicorn
from zeroconf import ServiceInfo, Zeroconf

from . import __version__, create_app, db

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_http._tcp.local."
SERVICE_NAME = "mylive"


def _iter_candidate_addresses(host: str) -> Iterable[str]:
    if host and host not in {"0.0.0.0", "::"}:
        yield host
    try:
        hostname = socket.gethostbyname(socket.gethostname())
        if hostname:
            yield hostname
    except OSError:
        pass
    yield "127.0.0.1"


def _resolve_mdns_addresses(host: str) -> list[bytes]:
    addresses: list[bytes] = []
    for candidate in _iter_candidate_addresses(host):
        try:
            addr = ipaddress.ip_address(candidate)
        except ValueError:
            continue
        if addr.is_unspecified or addr.packed in addresses:
            continue
        addresses.append(addr.packed)
    return addresses


def _advertise(host: str, port: int) -> tuple[Zeroconf, ServiceInfo] | None:
    """Announce the wall as ``mylive.local`` so other screens can open it."""

    addresses = _resolve_mdns_addresses(host)
    if not addresses:
        logger.warning("No address available to advertise via mDNS.")
        return None

    zeroconf = Zeroconf()
    info = ServiceInfo(
        type_=SERVICE_TYPE,
        name=f"{SERVICE_NAME}.{SERVICE_TYPE}",
        addresses=addresses,
        port=port,
        server=f"{SERVICE_NAME}.local.",
        properties={"path": "/"},
    )
    try:
        zeroconf.register_service(info, allow_name_change=True)
    except Exception:
        logger.exception("Failed to advertise MyLive over mDNS.")
        zeroconf.close()
        return None
    logger.info("Advertising MyLive at %s.local:%s", SERVICE_NAME, port)
    return zeroconf, info


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the MyLive stream wall web server.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help=f"SQLite file holding channels and settings (default: {db.DB_PATH}).",
    )
    parser.add_argument("--no-mdns", action="store_true", help="Do not advertise via mDNS.")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.database is not None:
        db.DB_PATH = args.database.expanduser().resolve()

    app = create_app()
    registration = None if args.no_mdns else _advertise(args.host, args.port)
    try:
        uvicorn.run(app, host=args.host, port=args.port, workers=1, log_level=args.log_level)
    finally:
        if registration:
            zeroconf, info = registration
            with contextlib.suppress(Exception):
                zeroconf.unregister_service(info)
            zeroconf.close()


if __name__ == "__main__":  # pragma: no cover - direct execution guard
    main()
