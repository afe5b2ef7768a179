"""Command-line interface for bantaybot-link."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from . import constants
from .app import BantayLinkApp
from .config import LinkConfig, load_config
from .core.models import DeviceAddress
from .logging import configure_logging
from .probe import DeviceProbe

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bantaybot-link", description="Hybrid local/cloud link to a BantayBot"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the bantaybot-link service")

    subparsers.add_parser(
        "probe", help="Check whether the configured boards answer right now"
    )

    discover_parser = subparsers.add_parser(
        "discover", help="Scan the local network for BantayBot boards"
    )
    discover_parser.add_argument(
        "--base", help="First three octets to scan, e.g. 192.168.1"
    )

    send_parser = subparsers.add_parser(
        "send", help="Connect, send one command and print the result"
    )
    send_parser.add_argument("name", help="Command name, e.g. SOUND_ALARM")
    send_parser.add_argument(
        "value", nargs="?", help="Optional value; parsed as JSON when possible"
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _parse_value(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


async def _probe(config: LinkConfig) -> int:
    probe = DeviceProbe(timeout=config.discovery.probe_timeout_seconds)
    try:
        main_ok = await probe.probe(config.device.main_address)
        camera_ok = await probe.probe(
            DeviceAddress(
                config.device.camera_host,
                config.device.camera_port,
                constants.DEFAULT_STREAM_PATH,
            )
        )
    finally:
        await probe.close()

    print(f"main board   {config.device.main_address}: {'up' if main_ok else 'down'}")
    print(f"camera board {config.device.camera_host}:{config.device.camera_port}: "
          f"{'up' if camera_ok else 'down'}")
    return 0 if main_ok and camera_ok else 1


async def _discover(config: LinkConfig, base: Optional[str]) -> int:
    probe = DeviceProbe(
        timeout=config.discovery.probe_timeout_seconds,
        batch_size=config.discovery.batch_size,
    )

    def _progress(fraction: float, scanned: int, total: int) -> None:
        LOGGER.debug("Scanned %d/%d hosts (%.0f%%)", scanned, total, fraction * 100)

    try:
        found = await probe.smart_discover(base, _progress)
    finally:
        await probe.close()

    if not found:
        print("No BantayBot boards found")
        return 1
    for endpoint in found:
        print(f"{endpoint.kind:<7} {endpoint.address}")
    return 0


async def _send(config: LinkConfig, name: str, value: Any) -> int:
    app = BantayLinkApp(config)
    try:
        await app.start_services()
        result = await app.send_command(name, value)
    finally:
        await app.stop_services()

    print(json.dumps({"mode": app.mode.value, **result.as_dict()}))
    return 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        BantayLinkApp.start(config)
        return 0

    if args.command in {"probe", "discover", "send"}:
        configure_logging(config.logging.level, log_path=None)

    if args.command == "probe":
        return asyncio.run(_probe(config))

    if args.command == "discover":
        return asyncio.run(_discover(config, args.base))

    if args.command == "send":
        return asyncio.run(_send(config, args.name, _parse_value(args.value)))

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
