"""CLI for the Art-Net node."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from artnet_node.config import ArtNetNodeConfig, load_config
from artnet_node.exceptions import TransportError
from artnet_node.protocol import ARTNET_PORT
from artnet_node.service import ArtNetNodeService

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Art-Net Node - Receive and merge Art-Net DMX for one universe",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Listen on universe 0, reply to polls directly
  artnet-node --ip 10.0.0.20

  # Broadcast poll replies on a 2.x network, universe 0:1:3
  artnet-node --ip 2.0.0.20 --mask 255.0.0.0 --net 0 --subnet 1 --universe 3

  # Load settings from YAML
  artnet-node --config node.yaml
""",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="YAML configuration file (command-line values are ignored)",
    )

    # Identity
    parser.add_argument(
        "--name",
        default="Art-Net Node",
        help="Short node name, max 17 characters (default: Art-Net Node)",
    )
    parser.add_argument(
        "--long-name",
        default="Art-Net DMX Output Node",
        help="Long node name, max 63 characters",
    )
    parser.add_argument(
        "--mac",
        default="00:00:00:00:00:00",
        help="MAC address reported in poll replies",
    )

    # Network
    parser.add_argument(
        "--ip",
        default="2.0.0.1",
        help="Node IP address reported in replies (default: 2.0.0.1)",
    )
    parser.add_argument(
        "--mask",
        help="Subnet mask; poll replies are broadcast when given",
    )
    parser.add_argument(
        "--unicast",
        action="store_true",
        help="Reply to the poller even when a subnet mask is given",
    )
    parser.add_argument(
        "--bind",
        default="",
        help="Local address to bind (default: all interfaces)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=ARTNET_PORT,
        help=f"Art-Net port (default: {ARTNET_PORT})",
    )

    # Port-address
    parser.add_argument(
        "--net",
        type=int,
        default=0,
        help="Net 0-127 (default: 0)",
    )
    parser.add_argument(
        "--subnet",
        type=int,
        default=0,
        help="Subnet 0-15 (default: 0)",
    )
    parser.add_argument(
        "--universe",
        type=int,
        default=0,
        help="Universe 0-15 (default: 0)",
    )

    # Logging
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ArtNetNodeConfig:
    """Create configuration from command line arguments."""
    return ArtNetNodeConfig(
        short_name=args.name,
        long_name=args.long_name,
        mac_address=args.mac,
        ip_address=args.ip,
        subnet_mask=args.mask,
        broadcast_replies=not args.unicast,
        bind_host=args.bind,
        port=args.port,
        net=args.net,
        subnet=args.subnet,
        universe=args.universe,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Setup logging
    log_level = logging.DEBUG if args.debug else (logging.INFO if args.verbose else logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Always show info for main module
    if not args.debug:
        logging.getLogger("artnet_node").setLevel(logging.INFO)

    try:
        config = load_config(args.config) if args.config else config_from_args(args)
    except (OSError, ValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    service = ArtNetNodeService(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler() -> None:
        print("\nShutting down...")
        loop.create_task(service.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    # Run
    try:
        loop.run_until_complete(service.run())
    except TransportError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        service.close()
        loop.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
