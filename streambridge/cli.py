"""StreamBridge CLI entry point.

Usage:
    streambridge run --config bridge.yaml
    streambridge formats
    streambridge init [--output bridge.yaml]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger


def cmd_run(args: argparse.Namespace) -> None:
    """Run the StreamBridge server."""
    config_path = args.config

    if not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    from streambridge.config import load_config

    config = load_config(config_path)

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level)

    if not config.api_key:
        logger.warning("No realtime API key configured (realtime.api_key or OPENAI_API_KEY)")

    logger.info(f"StreamBridge starting with config: {config_path}")
    logger.info(f"Telephony: {config.telephony.type}, audio format: {config.audio.format.value}")
    logger.info(
        f"Listening on: {config.telephony.listen_host}:{config.telephony.listen_port}"
        f"{config.telephony.listen_path}"
    )
    logger.info(f"Realtime model: {config.realtime.model}")

    if args.plain:
        from streambridge.bridge import StreamBridge
        StreamBridge(config).run()
        return

    # Try FastAPI server first, fall back to plain WebSocket server
    try:
        from streambridge.server import run_server
        run_server(config)
    except ImportError:
        from streambridge.bridge import StreamBridge
        StreamBridge(config).run()


def cmd_formats(args: argparse.Namespace) -> None:
    """List supported audio formats and telephony gateways."""
    from streambridge.core.events import AudioFormat
    from streambridge.serializers.twilio import GATEWAY_SERIALIZERS

    print("\nSupported audio formats:")
    print("=" * 40)
    for fmt in AudioFormat:
        print(f"  {fmt.value:<12} rate={fmt.sample_rate}Hz, width={fmt.sample_width}B")

    print("\nTelephony gateways:")
    print("=" * 40)
    for name in sorted(GATEWAY_SERIALIZERS):
        print(f"  {name}")
    print()


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from streambridge.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: streambridge run --config {output}")


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="streambridge",
        description="StreamBridge - Telephony media stream to realtime API audio bridge",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `streambridge run`
    run_parser = subparsers.add_parser("run", help="Run the StreamBridge server")
    run_parser.add_argument(
        "--config", "-c",
        default="bridge.yaml",
        help="Path to the bridge YAML config file (default: bridge.yaml)",
    )
    run_parser.add_argument(
        "--plain",
        action="store_true",
        help="Use the built-in websockets/aiohttp server instead of FastAPI",
    )

    # `streambridge formats`
    subparsers.add_parser("formats", help="List supported audio formats and gateways")

    # `streambridge init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="bridge.yaml",
        help="Output file path (default: bridge.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    args = parser.parse_args()

    if args.command == "run":
        cmd_run(args)
    elif args.command == "formats":
        cmd_formats(args)
    elif args.command == "init":
        cmd_init(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
