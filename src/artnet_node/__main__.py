"""Entry point for artnet-node command."""

import sys

from artnet_node.cli import main

if __name__ == "__main__":
    sys.exit(main())
