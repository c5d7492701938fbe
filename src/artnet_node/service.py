"""Art-Net Node Service.

Runs an ArtNetNode against a UDP transport from a single asyncio task,
polling for datagrams and logging statistics.
"""

import asyncio
import logging
import time
from ipaddress import IPv4Address
from typing import Any, Callable

import numpy as np

from artnet_node.config import ArtNetNodeConfig
from artnet_node.node import ArtNetNode
from artnet_node.transport import Transport, UdpTransport

logger = logging.getLogger(__name__)

# Called with the composite levels whenever they change
LevelsHandler = Callable[[np.ndarray], None]


class ArtNetNodeService:
    """Drives an Art-Net node from an asyncio polling loop.

    This service:
    - Polls the transport and feeds datagrams to the node
    - Reports level changes to an optional handler
    - Logs address and IP programming received from the network
    - Periodically logs statistics
    """

    def __init__(
        self,
        config: ArtNetNodeConfig | None = None,
        transport: Transport | None = None,
        levels_handler: LevelsHandler | None = None,
        idle_interval: float = 0.005,
        stats_interval: float = 5.0,
    ):
        self.config = config or ArtNetNodeConfig()
        self.node = ArtNetNode(self.config)
        self.node.set_address_callback(self._on_address)
        self.node.set_ipprog_callback(self._on_ipprog)

        self._transport = transport
        self._opened_transport = False
        self.levels_handler = levels_handler
        self.idle_interval = idle_interval
        self.stats_interval = stats_interval

        # State
        self._running = False
        self._poll_task: asyncio.Task | None = None
        self._stats_task: asyncio.Task | None = None

        # Statistics
        self._level_updates = 0
        self._address_changes = 0
        self._ipprog_changes = 0

    def _on_address(self) -> None:
        self._address_changes += 1
        logger.info(
            f"Node reprogrammed: {self.node.short_name!r}, net {self.node.net}, "
            f"subnet {self.node.subnet}, universe {self.node.universe}"
        )

    def _on_ipprog(self, command: int, ip_address: IPv4Address, subnet_mask: IPv4Address) -> None:
        self._ipprog_changes += 1
        logger.info(f"IP programmed (0x{command:02X}): {ip_address}/{subnet_mask}")

    def poll_once(self) -> bool:
        """Process at most one datagram. Returns True if one was read."""
        if self._transport is None:
            return False

        received = self._transport.receive()
        if received is None:
            return False

        data, sender = received
        if self.node.process_dmx_packet(data, sender, self._transport):
            self._level_updates += 1
            if self.levels_handler is not None:
                self.levels_handler(self.node.dmx_data[: self.node.number_of_slots])
        return True

    async def _poll_loop(self) -> None:
        """Feed datagrams to the node until stopped."""
        while self._running:
            try:
                if not self.poll_once():
                    await asyncio.sleep(self.idle_interval)
            except Exception as e:
                if self._running:
                    logger.error(f"Poll loop error: {e}")
                await asyncio.sleep(self.idle_interval)

    async def _stats_monitor(self) -> None:
        """Periodically log statistics."""
        last_time = time.time()
        last_packets = 0

        while self._running:
            await asyncio.sleep(self.stats_interval)

            now = time.time()
            elapsed = now - last_time
            stats = self.node.get_stats()

            if elapsed > 0:
                packets_delta = stats["packets_received"] - last_packets
                if packets_delta > 0:
                    logger.info(
                        f"Stats: {packets_delta / elapsed:.1f} packets/s, "
                        f"merge active: {stats['merge']['merge_active']}, "
                        f"slots: {stats['merge']['slots']}"
                    )

            last_time = now
            last_packets = stats["packets_received"]

    async def start(self) -> None:
        """Start the node service."""
        if self._running:
            return

        logger.info(
            f"Starting Art-Net node: {self.config.short_name} at {self.config.ip_address}, "
            f"net {self.config.net} subnet {self.config.subnet} universe {self.config.universe}"
        )

        if self._transport is None:
            self._transport = UdpTransport(
                host=self.config.bind_host,
                port=self.config.port,
            )
        if isinstance(self._transport, UdpTransport) and not self._transport.is_open:
            self._transport.open()
            self._opened_transport = True

        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._stats_task = asyncio.create_task(self._stats_monitor())

        if self.node.broadcast_address is not None:
            logger.info(f"Poll replies broadcast to {self.node.broadcast_address}")
        else:
            logger.info("Poll replies unicast to poller")

    async def stop(self) -> None:
        """Stop the node service."""
        if not self._running:
            return

        logger.info("Stopping Art-Net node")
        self._running = False

        # Cancel tasks
        for task in (self._poll_task, self._stats_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._stats_task = None

        # Close only what start() opened
        if self._opened_transport and isinstance(self._transport, UdpTransport):
            self._transport.close()
        self._opened_transport = False

        logger.info(
            f"Final stats: {self.node.get_stats()['packets_received']} packets received, "
            f"{self._level_updates} level updates"
        )

    def close(self) -> None:
        """Release the node after stop(). The service cannot be started again."""
        self.node.close()

    async def run(self) -> None:
        """Run the node until interrupted."""
        await self.start()
        try:
            while self._running:
                await asyncio.sleep(0.1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict[str, Any]:
        """Get service statistics."""
        return {
            "running": self._running,
            "level_updates": self._level_updates,
            "address_changes": self._address_changes,
            "ipprog_changes": self._ipprog_changes,
            "node": self.node.get_stats(),
        }
