"""UDP transport for an Art-Net node.

The node never touches sockets itself: it polls a transport for datagrams
and hands it filled packet buffers to send.
"""

import logging
import socket
from typing import Protocol

from artnet_node.exceptions import TransportError
from artnet_node.protocol import ARTNET_BUFFER_MAX, ARTNET_PORT

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Datagram capability consumed by ArtNetNode."""

    def receive(self) -> tuple[bytes, str] | None:
        """Return (payload, sender IP) if a datagram is waiting, else None."""
        ...

    def send(self, data: bytes | memoryview, address: str) -> None:
        """Send a datagram to address.

        data may be a view into the node's packet buffer, which is reused
        for the next packet; copy it if it must outlive the call.
        """
        ...


class UdpTransport:
    """Non-blocking UDP socket bound to the Art-Net port."""

    def __init__(
        self,
        host: str = "",
        port: int = ARTNET_PORT,
        broadcast: bool = True,
    ):
        self.host = host
        self.port = port
        self.broadcast = broadcast
        self._socket: socket.socket | None = None

        # Statistics
        self._packets_received = 0
        self._packets_sent = 0
        self._bytes_sent = 0

    def open(self) -> None:
        """Open and bind the UDP socket."""
        if self._socket is not None:
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if self.broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)

        # Don't block
        sock.setblocking(False)

        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise TransportError(f"Could not bind to {self.host or '*'}:{self.port}: {e}") from e

        self._socket = sock
        # Peers listen on the same port we bound
        self.port = self.bound_port
        logger.info(f"Art-Net transport bound to {self.host or '*'}:{self.port}")

    def close(self) -> None:
        """Close the UDP socket."""
        if self._socket:
            self._socket.close()
            self._socket = None
            logger.info(
                f"Art-Net transport closed. Stats: {self._packets_received} received, "
                f"{self._packets_sent} sent, {self._bytes_sent} bytes"
            )

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    @property
    def bound_port(self) -> int:
        """Actual bound port (differs from port when port is 0)."""
        if self._socket is None:
            return 0
        return self._socket.getsockname()[1]

    def receive(self) -> tuple[bytes, str] | None:
        if self._socket is None:
            raise TransportError("UdpTransport is not open")

        try:
            data, addr = self._socket.recvfrom(ARTNET_BUFFER_MAX)
        except BlockingIOError:
            return None

        self._packets_received += 1
        return data, addr[0]

    def send(self, data: bytes | memoryview, address: str) -> None:
        if self._socket is None:
            raise TransportError("UdpTransport is not open")

        try:
            sent = self._socket.sendto(data, (address, self.port))
            self._packets_sent += 1
            self._bytes_sent += sent
        except OSError as e:
            logger.error(f"Failed to send to {address}:{self.port}: {e}")

    def get_stats(self) -> dict:
        return {
            "open": self.is_open,
            "packets_received": self._packets_received,
            "packets_sent": self._packets_sent,
            "bytes_sent": self._bytes_sent,
        }
