"""Command-line interface for shhsignal.

``shhsignal demo`` runs two clients on an in-process bus through discovery and
a full handshake, which is a quick way to check an installation and to watch
the protocol in the logs.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .__about__ import __version__
from .bus import MemoryBus
from .client import SignalClient
from .config import Config, SignalConfig, resolve_settings
from .robustness import HandshakeError, SignalError, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="shhsignal", description="Serverless peer signaling")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("version", help="Print the package version")

    demo = sub.add_parser("demo", help="Run a two-client handshake on an in-process bus")
    demo.add_argument("--config", default=None, help="Path to config YAML")
    demo.add_argument(
        "--loglevel",
        default=None,
        help="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    demo.add_argument("--logfile", default=None, help="Optional log file path")
    demo.add_argument("--timeout", type=int, default=None, help="Connection timeout in ms (-1 disables)")
    demo.add_argument("--reject", action="store_true", help="Have the responder reject the request")
    return p


async def run_demo(settings: SignalConfig, reject: bool = False) -> int:
    bus = MemoryBus()
    alice = SignalClient(bus, settings)
    bob = SignalClient(bus, settings)
    try:
        await alice.start()
        await bob.start()

        found = asyncio.get_running_loop().create_future()

        def on_discover(identity, discovery_data):
            if not found.done():
                found.set_result((identity, discovery_data))

        def on_request(request):
            if reject:
                request.reject({"reason": "busy"})
            else:
                request.accept({"name": "bob"})

        alice.on("discover", on_discover)
        bob.on("request", on_request)

        await bob.discover({"name": "bob"})
        target, discovery_data = await found
        print(f"discovered {target.public_key[:18]}... {discovery_data}")

        try:
            result = await alice.connect(target, {"name": "alice"})
        except HandshakeError as e:
            print(f"handshake failed: {e} {e.metadata}")
            return 1
        print(f"connected, remote metadata {result.metadata}")
        return 0
    finally:
        await alice.close()
        await bob.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(__version__)
        return 0

    try:
        overrides = {}
        if args.timeout is not None:
            overrides["connection_timeout"] = args.timeout
        settings = resolve_settings(Config(args.config), **overrides)
    except SignalError as e:
        print(f"configuration error: {e}")
        return 2

    setup_logging(args.loglevel or settings.log_level, args.logfile or settings.log_file)
    logger.debug(f"Running demo with timeout {settings.connection_timeout}ms")
    return asyncio.run(run_demo(settings, reject=args.reject))


if __name__ == "__main__":
    raise SystemExit(main())
