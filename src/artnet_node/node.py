"""Art-Net Node.

Protocol engine for a single-universe Art-Net DMX output node:
- Decodes datagrams handed over by a transport into one packet buffer
- HTP-merges ArtDmx from up to two senders for the node's port-address
- Applies ArtAddress and ArtIpProg programming
- Answers ArtPoll, ArtAddress and ArtIpProg with the matching replies

The engine is synchronous and keeps no sockets, threads or timers. Access
from more than one thread must be serialized by the caller.
"""

import logging
import struct
from enum import Enum
from ipaddress import IPv4Address
from typing import Callable

import numpy as np

from artnet_node.addressing import AddressingState
from artnet_node.config import LONG_NAME_MAX, SHORT_NAME_MAX, ArtNetNodeConfig, broadcast_for
from artnet_node.exceptions import ArtNetError, MalformedPacketError
from artnet_node.merge import MergeEngine
from artnet_node.protocol import (
    ADDRESS_CMD_CANCEL_MERGE,
    ADDRESS_CMD_CLEAR_OUTPUT,
    ADDRESS_CMD_NONE,
    ARTNET_BUFFER_MAX,
    ARTNET_DMX_HEADER_SIZE,
    DMX_SLOT_COUNT,
    IPPROG_DHCP,
    IPPROG_RESET,
    IPPROG_SET_IP,
    IPPROG_SET_MASK,
    IPPROG_STATUS_DHCP,
    STATUS2_DHCP_USED,
    ArtAddressPacket,
    ArtIpProgPacket,
    ArtPollReplyPacket,
    OpCode,
    decode_address,
    decode_dmx,
    decode_ipprog,
    decode_opcode,
    decode_poll,
    encode_artdmx_into,
    encode_ipprog_reply_into,
    encode_poll_reply_into,
)
from artnet_node.transport import Transport

logger = logging.getLogger(__name__)

# Type aliases for callbacks
AddressCallback = Callable[[], None]
IpProgCallback = Callable[[int, IPv4Address, IPv4Address], None]

NODE_REPORT_POWER_OK = 0x0001
_UNSET_MASK = IPv4Address("0.0.0.0")
_PAD = bytes(2)


class BufferOwnership(Enum):
    """Who owns the packet buffer."""

    OWNED = "owned"  # Allocated by the node
    BORROWED = "borrowed"  # Supplied by the caller, possibly shared


class ArtNetNode:
    """Art-Net node protocol engine.

    Args:
        config: Addressing, identity and network values (defaults if omitted)
        buffer: Optional caller-owned packet buffer of at least 530 bytes.
            Several nodes may share one buffer so each can read the same
            datagram via process_packet_contents().
    """

    def __init__(self, config: ArtNetNodeConfig | None = None, buffer: bytearray | None = None):
        self.config = config or ArtNetNodeConfig()

        if buffer is None:
            self._packet_buffer: bytearray | None = bytearray(ARTNET_BUFFER_MAX)
            self._ownership = BufferOwnership.OWNED
        else:
            if len(buffer) < ARTNET_BUFFER_MAX:
                raise ValueError(f"Packet buffer must hold {ARTNET_BUFFER_MAX} bytes, got {len(buffer)}")
            self._packet_buffer = buffer
            self._ownership = BufferOwnership.BORROWED
        self._packet_size = 0

        self._addressing = AddressingState(
            net=self.config.net,
            subnet=self.config.subnet,
            universe=self.config.universe,
        )
        self._merge = MergeEngine()

        # Identity
        self._short_name = self.config.short_name
        self._long_name = self.config.long_name
        self._status1 = self.config.status1
        self._status2 = self.config.status2
        self._mac_address = self.config.mac_bytes

        # Network
        self._ip_address = self.config.ip_address
        self._subnet_mask = self.config.subnet_mask or _UNSET_MASK
        self._broadcast_address = self.config.broadcast_address

        self._sequence: int = 1  # 0 = disabled, 1-255 wrapping
        self._poll_reply_counter: int = 0

        self._address_callback: AddressCallback | None = None
        self._ipprog_callback: IpProgCallback | None = None

        # Statistics
        self._packets_received = 0
        self._packets_malformed = 0
        self._replies_sent = 0
        self._dmx_sent = 0

    # ------------------------------------------------------------------
    # Packet buffer

    @property
    def packet_buffer(self) -> bytearray:
        if self._packet_buffer is None:
            raise ArtNetError("ArtNetNode is closed")
        return self._packet_buffer

    @property
    def buffer_ownership(self) -> BufferOwnership:
        return self._ownership

    @property
    def packet_size(self) -> int:
        """Size of the last Art-Net packet read."""
        return self._packet_size

    def close(self) -> None:
        """Release the packet buffer.

        An owned buffer is dropped; a borrowed one is left to its owner
        untouched.
        """
        if self._packet_buffer is None:
            return
        if self._ownership is BufferOwnership.OWNED:
            logger.debug("Releasing owned packet buffer")
        self._packet_buffer = None

    # ------------------------------------------------------------------
    # Addressing

    @property
    def addressing(self) -> AddressingState:
        return self._addressing

    @property
    def net(self) -> int:
        return self._addressing.net

    @property
    def subnet(self) -> int:
        return self._addressing.subnet

    @property
    def universe(self) -> int:
        return self._addressing.universe

    @property
    def port_address(self) -> int:
        return self._addressing.port_address

    def set_universe(self, universe: int) -> None:
        self._addressing.set_universe(universe)

    def set_subnet(self, subnet: int) -> None:
        self._addressing.set_subnet(subnet)

    def set_net(self, net: int) -> None:
        self._addressing.set_net(net)

    def set_subnet_universe(self, subnet: int, universe: int) -> None:
        self._addressing.set_subnet_universe(subnet, universe)

    # ------------------------------------------------------------------
    # Merge / slots

    @property
    def merge(self) -> MergeEngine:
        return self._merge

    @property
    def merge_active(self) -> bool:
        return self._merge.merge_active

    def cancel_merge(self) -> None:
        self._merge.cancel_merge()

    @property
    def dmx_data(self) -> np.ndarray:
        """Composite levels, index 0 is slot 1."""
        return self._merge.buffer_c

    @property
    def number_of_slots(self) -> int:
        return self._merge.slot_count

    def set_number_of_slots(self, n: int) -> None:
        """Set the slot count, clamped to 0-512."""
        self._merge.slot_count = n

    def get_slot(self, slot: int) -> int:
        """Composite level of a 1-based slot; 0 outside the valid slots."""
        if 1 <= slot <= self._merge.slot_count:
            return int(self._merge.buffer_c[slot - 1])
        return 0

    def set_slot(self, slot: int, level: int) -> None:
        """Set the output level of a 1-based slot."""
        if not 1 <= slot <= DMX_SLOT_COUNT:
            raise ValueError(f"slot must be 1-{DMX_SLOT_COUNT}, got {slot}")
        if not 0 <= level <= 255:
            raise ValueError(f"level must be 0-255, got {level}")
        self._merge.buffer_c[slot - 1] = level

    # ------------------------------------------------------------------
    # Identity

    @property
    def short_name(self) -> str:
        return self._short_name

    @short_name.setter
    def short_name(self, name: str) -> None:
        self._short_name = name[:SHORT_NAME_MAX]

    @property
    def long_name(self) -> str:
        return self._long_name

    @long_name.setter
    def long_name(self, name: str) -> None:
        self._long_name = name[:LONG_NAME_MAX]

    @property
    def status1(self) -> int:
        return self._status1

    @property
    def status2(self) -> int:
        return self._status2

    def set_status1_flag(self, flag: int, enabled: bool) -> None:
        if enabled:
            self._status1 |= flag
        else:
            self._status1 &= ~flag & 0xFF

    def set_status2_flag(self, flag: int, enabled: bool) -> None:
        if enabled:
            self._status2 |= flag
        else:
            self._status2 &= ~flag & 0xFF

    @property
    def ip_address(self) -> IPv4Address:
        return self._ip_address

    @property
    def subnet_mask(self) -> IPv4Address:
        return self._subnet_mask

    @property
    def broadcast_address(self) -> IPv4Address | None:
        """Poll reply destination; None means replies go to the poller."""
        return self._broadcast_address

    def set_local_address(self, ip_address: IPv4Address, subnet_mask: IPv4Address | None = None) -> None:
        """Change the address reported in replies.

        A node that broadcasts poll replies re-derives its broadcast address.

        Raises:
            ValueError: subnet_mask is not a valid netmask; nothing is changed
        """
        ip_address = IPv4Address(ip_address)
        subnet_mask = self._subnet_mask if subnet_mask is None else IPv4Address(subnet_mask)
        broadcast_address = broadcast_for(ip_address, subnet_mask)

        self._ip_address = ip_address
        self._subnet_mask = subnet_mask
        if self._broadcast_address is not None:
            self._broadcast_address = broadcast_address

    # ------------------------------------------------------------------
    # Callbacks

    def set_address_callback(self, callback: AddressCallback | None) -> None:
        """Call callback() after each ArtAddress is applied. None clears it."""
        self._address_callback = callback

    def set_ipprog_callback(self, callback: IpProgCallback | None) -> None:
        """Call callback(command, ip, mask) after each programming ArtIpProg."""
        self._ipprog_callback = callback

    # ------------------------------------------------------------------
    # Receiving

    def read_packet(self, transport: Transport) -> OpCode | None:
        """Poll the transport once and process any datagram.

        Returns:
            Opcode of the packet read, or None if nothing usable arrived
        """
        return self._receive(transport)[0]

    def read_dmx_packet(self, transport: Transport) -> bool:
        """Poll the transport once. Returns True if output levels changed."""
        return self._receive(transport)[1]

    def process_packet(
        self,
        data: bytes | bytearray | memoryview,
        sender: str,
        transport: Transport | None = None,
    ) -> OpCode | None:
        """Copy a datagram into the packet buffer and process it.

        Args:
            data: Raw UDP payload
            sender: Sender IP address
            transport: Used to send replies; replies are only built if None

        Returns:
            Decoded opcode, or None for a malformed datagram
        """
        return self._load_and_process(data, sender, transport)[0]

    def process_dmx_packet(
        self,
        data: bytes | bytearray | memoryview,
        sender: str,
        transport: Transport | None = None,
    ) -> bool:
        """Like process_packet, but returns True if output levels changed."""
        return self._load_and_process(data, sender, transport)[1]

    def process_packet_contents(
        self,
        length: int,
        sender: str,
        transport: Transport | None = None,
    ) -> OpCode | None:
        """Process a datagram already present in the packet buffer."""
        return self._process(length, sender, transport)[0]

    def _receive(self, transport: Transport) -> tuple[OpCode | None, bool]:
        received = transport.receive()
        if received is None:
            return None, False
        data, sender = received
        return self._load_and_process(data, sender, transport)

    def _load_and_process(
        self,
        data: bytes | bytearray | memoryview,
        sender: str,
        transport: Transport | None,
    ) -> tuple[OpCode | None, bool]:
        buffer = self.packet_buffer
        length = len(data)
        if length > ARTNET_BUFFER_MAX:
            logger.debug(f"Truncating {length} byte datagram from {sender}")
            length = ARTNET_BUFFER_MAX
        buffer[:length] = memoryview(data)[:length]
        return self._process(length, sender, transport)

    def _process(self, length: int, sender: str, transport: Transport | None) -> tuple[OpCode | None, bool]:
        buffer = self.packet_buffer
        levels_changed = False

        try:
            opcode = decode_opcode(buffer, length)

            if opcode == OpCode.DMX:
                levels_changed = self._handle_dmx(sender, length)

            elif opcode == OpCode.POLL:
                decode_poll(buffer, length)
                logger.debug(f"Received ArtPoll from {sender}")
                self.send_poll_reply(transport, sender)

            elif opcode == OpCode.ADDRESS:
                levels_changed = self._handle_address(decode_address(buffer, length), sender)
                self.send_poll_reply(transport, sender)

            elif opcode == OpCode.IP_PROG:
                self._handle_ipprog(decode_ipprog(buffer, length), sender, length)
                self.send_ipprog_reply(transport, sender)

            else:
                logger.debug(f"Ignoring {opcode.name} from {sender}")

        except MalformedPacketError as e:
            self._packets_malformed += 1
            logger.debug(f"Dropping datagram from {sender}: {e}")
            return None, False

        self._packets_received += 1
        self._packet_size = length
        return opcode, levels_changed

    def _handle_dmx(self, sender: str, length: int) -> bool:
        packet = decode_dmx(self.packet_buffer, length)

        if packet.universe != self._addressing.port_address:
            logger.debug(
                f"Ignoring ArtDmx for port-address {packet.universe} from {sender}, "
                f"listening on {self._addressing.port_address}"
            )
            return False

        return self._merge.merge(sender, packet.data)

    def _handle_address(self, packet: ArtAddressPacket, sender: str) -> bool:
        logger.info(f"Received ArtAddress from {sender} (command 0x{packet.command:02X})")

        self._addressing.apply_net_command(packet.net_switch)
        if packet.short_name:
            self.short_name = packet.short_name
        if packet.long_name:
            self.long_name = packet.long_name
        self._addressing.apply_universe_command(packet.sw_out[0])
        self._addressing.apply_subnet_command(packet.sub_switch)

        levels_changed = False
        if packet.command == ADDRESS_CMD_CANCEL_MERGE:
            self._merge.cancel_merge()
        elif packet.command == ADDRESS_CMD_CLEAR_OUTPUT:
            self._merge.clear()
            levels_changed = True
        elif packet.command != ADDRESS_CMD_NONE:
            logger.debug(f"Unsupported ArtAddress command 0x{packet.command:02X}")

        if self._address_callback is not None:
            try:
                self._address_callback()
            except Exception as e:
                logger.error(f"ArtAddress callback error: {e}")

        return levels_changed

    def _handle_ipprog(self, packet: ArtIpProgPacket, sender: str, length: int) -> None:
        if not packet.is_programming:
            logger.debug(f"Received ArtIpProg query from {sender}")
            return

        command = packet.command
        ip_address = self._ip_address
        subnet_mask = self._subnet_mask

        dhcp = bool(command & IPPROG_DHCP)
        if not dhcp:
            if command & IPPROG_RESET:
                ip_address = self.config.ip_address
                subnet_mask = self.config.subnet_mask or _UNSET_MASK
            else:
                if command & IPPROG_SET_IP:
                    ip_address = packet.ip_address
                if command & IPPROG_SET_MASK:
                    subnet_mask = packet.subnet_mask

        try:
            self.set_local_address(ip_address, subnet_mask)
        except ValueError as e:
            raise MalformedPacketError(f"ArtIpProg subnet mask {subnet_mask} rejected: {e}", length) from e

        self.set_status2_flag(STATUS2_DHCP_USED, dhcp)
        logger.info(
            f"ArtIpProg from {sender} (command 0x{command:02X}): "
            f"ip={self._ip_address}, mask={self._subnet_mask}, "
            f"dhcp={bool(self._status2 & STATUS2_DHCP_USED)}"
        )

        if self._ipprog_callback is not None:
            try:
                self._ipprog_callback(command, self._ip_address, self._subnet_mask)
            except Exception as e:
                logger.error(f"ArtIpProg callback error: {e}")

    # ------------------------------------------------------------------
    # Replies

    def build_poll_reply(self) -> int:
        """Fill the packet buffer with an ArtPollReply.

        Returns:
            Number of bytes to send
        """
        self._poll_reply_counter = (self._poll_reply_counter + 1) & 0xFFFF
        address = self._addressing.address

        reply = ArtPollReplyPacket(
            ip_address=self._ip_address,
            short_name=self._short_name,
            long_name=self._long_name,
            net_switch=address.net,
            sub_switch=address.subnet,
            port=self.config.port,
            version=self.config.firmware_version,
            oem=self.config.oem_code,
            status1=self._status1,
            esta_code=self.config.esta_code,
            node_report=(
                f"#{NODE_REPORT_POWER_OK:04x} [{self._poll_reply_counter % 10000:04d}] "
                f"Art-Net node ready"
            ),
            sw_out=bytes([address.universe, 0, 0, 0]),
            mac_address=self._mac_address,
            bind_ip=self._ip_address,
            status2=self._status2,
        )
        return encode_poll_reply_into(self.packet_buffer, reply)

    def build_ipprog_reply(self) -> int:
        """Fill the packet buffer with an ArtIpProgReply.

        Returns:
            Number of bytes to send
        """
        status = IPPROG_STATUS_DHCP if self._status2 & STATUS2_DHCP_USED else 0
        return encode_ipprog_reply_into(
            self.packet_buffer,
            ip_address=self._ip_address,
            subnet_mask=self._subnet_mask,
            status=status,
            port=self.config.port,
        )

    @property
    def poll_reply_counter(self) -> int:
        return self._poll_reply_counter

    def send_poll_reply(self, transport: Transport | None, requester: str) -> int:
        """Build an ArtPollReply and send it.

        The reply is broadcast if the node has a broadcast address, otherwise
        it goes to the requester.
        """
        size = self.build_poll_reply()
        destination = str(self._broadcast_address) if self._broadcast_address is not None else requester
        self._send(transport, size, destination, "ArtPollReply")
        return size

    def send_ipprog_reply(self, transport: Transport | None, requester: str) -> int:
        """Build an ArtIpProgReply and send it to the requester."""
        size = self.build_ipprog_reply()
        self._send(transport, size, requester, "ArtIpProgReply")
        return size

    def _send(self, transport: Transport | None, size: int, destination: str, name: str) -> None:
        if transport is None:
            logger.debug(f"No transport, {name} not sent")
            return
        transport.send(memoryview(self.packet_buffer)[:size], destination)
        self._replies_sent += 1
        logger.debug(f"Sent {name} to {destination}")

    # ------------------------------------------------------------------
    # Sending DMX

    @property
    def sequence(self) -> int:
        return self._sequence

    def build_dmx_packet(self) -> int:
        """Fill the packet buffer with an ArtDmx of the composite levels.

        Odd slot counts are padded with a zero slot.

        Returns:
            Number of bytes to send
        """
        buffer = self.packet_buffer
        slots = self._merge.slot_count
        size = encode_artdmx_into(
            buffer,
            self._addressing.port_address,
            self._merge.buffer_c[:slots],
            sequence=self._sequence,
        )

        padded = max(2, slots + (slots & 1))
        if padded > slots:
            pad = padded - slots
            buffer[size : size + pad] = _PAD[:pad]
            struct.pack_into(">H", buffer, 16, padded)
            size = ARTNET_DMX_HEADER_SIZE + padded

        # Update sequence (1-255 wrapping)
        self._sequence = (self._sequence % 255) + 1
        return size

    def send_dmx(self, transport: Transport, address: str) -> int:
        """Send the composite levels as ArtDmx to address."""
        size = self.build_dmx_packet()
        transport.send(memoryview(self.packet_buffer)[:size], address)
        self._dmx_sent += 1
        return size

    def get_stats(self) -> dict:
        """Get node statistics."""
        return {
            "port_address": self._addressing.port_address,
            "packets_received": self._packets_received,
            "packets_malformed": self._packets_malformed,
            "replies_sent": self._replies_sent,
            "dmx_sent": self._dmx_sent,
            "merge": self._merge.get_stats(),
        }
