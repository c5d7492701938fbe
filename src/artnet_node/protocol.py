"""Art-Net Protocol Implementation.

Art-Net 4 packet structures, decoders and encoders for the subset of the
protocol a DMX output node needs: ArtDmx, ArtPoll/ArtPollReply, ArtAddress
and ArtIpProg/ArtIpProgReply.
Reference: https://art-net.org.uk/downloads/art-net.pdf

Decoders take a buffer plus the number of valid bytes in it, so a single
preallocated packet buffer can be reused for every datagram. Encoders write
into a caller-supplied buffer and return the number of bytes written.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from ipaddress import IPv4Address
from typing import NamedTuple

from artnet_node.exceptions import MalformedPacketError

logger = logging.getLogger(__name__)

# Art-Net constants
ARTNET_PORT = 6454
ARTNET_HEADER = b"Art-Net\x00"
ARTNET_VERSION = 14  # Protocol version

DMX_SLOT_COUNT = 512

# Packet sizes
ARTNET_BUFFER_MAX = 530
ARTNET_HEADER_SIZE = 10  # Signature + OpCode
ARTNET_DMX_HEADER_SIZE = 18
ARTNET_POLL_MIN_SIZE = 12
ARTNET_ADDRESS_SIZE = 107
ARTNET_IPPROG_MIN_SIZE = 24  # Through ProgSm
ARTNET_IPPROG_SIZE = 34
ARTNET_REPLY_SIZE = 239
ARTNET_IPPROG_REPLY_SIZE = 34
ARTNET_SHORT_NAME_LENGTH = 18
ARTNET_LONG_NAME_LENGTH = 64
ARTNET_NODE_REPORT_LENGTH = 64

# Status1 flags (ArtPollReply)
STATUS1_INDICATORS_NORMAL = 0xC0
STATUS1_PORT_PROG = 0x20
STATUS1_FACTORY_BOOT = 0x04

# Status2 flags (ArtPollReply)
STATUS2_SACN_CAPABLE = 0x10
STATUS2_ARTNET3_CAPABLE = 0x08
STATUS2_DHCP_CAPABLE = 0x04
STATUS2_DHCP_USED = 0x02

# ArtAddress commands
ADDRESS_CMD_NONE = 0x00
ADDRESS_CMD_CANCEL_MERGE = 0x01
ADDRESS_CMD_CLEAR_OUTPUT = 0x90

# ArtIpProg command bits
IPPROG_ENABLE = 0x80
IPPROG_DHCP = 0x40
IPPROG_RESET = 0x08
IPPROG_SET_IP = 0x04
IPPROG_SET_MASK = 0x02
IPPROG_SET_PORT = 0x01

# ArtIpProgReply status bits
IPPROG_STATUS_DHCP = 0x40

_ZERO_PACKET = bytes(ARTNET_BUFFER_MAX)


class OpCode(IntEnum):
    """Art-Net operation codes handled by a node (little-endian in packets).

    UNSUPPORTED is returned for any valid Art-Net packet whose opcode the
    node does not act on.
    """

    UNSUPPORTED = 0x0000
    POLL = 0x2000
    POLL_REPLY = 0x2100
    DMX = 0x5000
    ADDRESS = 0x6000
    IP_PROG = 0xF800
    IP_PROG_REPLY = 0xF900


class PortType(IntEnum):
    """Port type flags for ArtPollReply."""

    DMX512 = 0x00
    MIDI = 0x01
    AVAB = 0x02
    COLORTRAN_CMX = 0x03
    ADB_625 = 0x04
    ARTNET = 0x05
    DALI = 0x06


PORT_TYPE_OUTPUT = 0x80
PORT_TYPE_INPUT = 0x40
GOOD_OUTPUT_DATA = 0x80


@dataclass
class ArtDmxPacket:
    """ArtDmx packet (OpCode 0x5000).

    Contains DMX512 channel data for a single universe. ``data`` is a view
    into the buffer it was decoded from.
    """

    sequence: int  # 0 = disabled, 1-255 wrapping sequence
    physical: int  # Physical input port (informational)
    universe: int  # 15-bit port-address (Net:SubNet:Universe)
    data: bytes | memoryview  # DMX channel data (0-512 bytes)

    @property
    def net(self) -> int:
        """Extract Net from universe (bits 14-8)."""
        return (self.universe >> 8) & 0x7F

    @property
    def subnet(self) -> int:
        """Extract SubNet from universe (bits 7-4)."""
        return (self.universe >> 4) & 0x0F

    @property
    def uni(self) -> int:
        """Extract Universe from universe (bits 3-0)."""
        return self.universe & 0x0F

    @property
    def slot_count(self) -> int:
        return len(self.data)


@dataclass
class ArtPollPacket:
    """ArtPoll packet (OpCode 0x2000).

    Discovery request broadcast by controllers.
    """

    talk_to_me: int = 0  # Flags for response behavior
    priority: int = 0  # Minimum diagnostic priority


@dataclass
class ArtAddressPacket:
    """ArtAddress packet (OpCode 0x6000).

    Remote programming of a node. Switch bytes use the 0x7F no-change /
    0x80 program-flag encoding, see ``artnet_node.addressing``.
    """

    net_switch: int
    bind_index: int
    short_name: str  # Empty = no change
    long_name: str  # Empty = no change
    sw_in: bytes  # 4 bytes
    sw_out: bytes  # 4 bytes
    sub_switch: int
    sw_video: int
    command: int


@dataclass
class ArtIpProgPacket:
    """ArtIpProg packet (OpCode 0xF800)."""

    command: int
    ip_address: IPv4Address
    subnet_mask: IPv4Address
    port: int = ARTNET_PORT

    @property
    def is_programming(self) -> bool:
        """True when the command changes settings rather than only querying."""
        return bool(self.command & IPPROG_ENABLE)


@dataclass
class ArtIpProgReplyPacket:
    """ArtIpProgReply packet (OpCode 0xF900)."""

    ip_address: IPv4Address
    subnet_mask: IPv4Address
    port: int = ARTNET_PORT
    status: int = 0

    @property
    def dhcp_enabled(self) -> bool:
        return bool(self.status & IPPROG_STATUS_DHCP)


@dataclass
class ArtPollReplyPacket:
    """ArtPollReply packet (OpCode 0x2100).

    Node announcement in response to ArtPoll.
    """

    ip_address: IPv4Address
    short_name: str  # 18 chars max
    long_name: str  # 64 chars max
    net_switch: int = 0
    sub_switch: int = 0
    port: int = ARTNET_PORT
    version: int = 0x0001
    oem: int = 0x0000
    ubea_version: int = 0
    status1: int = 0
    esta_code: int = 0x0000
    node_report: str = ""  # 64 chars max
    num_ports: int = 1
    port_types: bytes = bytes([PORT_TYPE_OUTPUT | PortType.DMX512, 0, 0, 0])
    good_input: bytes = bytes(4)
    good_output: bytes = bytes([GOOD_OUTPUT_DATA, 0, 0, 0])
    sw_in: bytes = bytes(4)
    sw_out: bytes = bytes(4)
    style: int = 0x00  # StNode
    mac_address: bytes = bytes(6)
    bind_ip: IPv4Address | None = None
    bind_index: int = 1
    status2: int = 0

    @property
    def port_address(self) -> "UniverseAddress":
        """Port-address of the first output port."""
        return UniverseAddress(
            net=self.net_switch & 0x7F,
            subnet=self.sub_switch & 0x0F,
            universe=self.sw_out[0] & 0x0F,
        )


class UniverseAddress(NamedTuple):
    """15-bit port-address broken into components."""

    net: int  # 0-127
    subnet: int  # 0-15
    universe: int  # 0-15

    def to_int(self) -> int:
        """Convert to 15-bit integer."""
        return ((self.net & 0x7F) << 8) | ((self.subnet & 0x0F) << 4) | (self.universe & 0x0F)

    @property
    def low_byte(self) -> int:
        """SubUni byte: subnet in the high nibble, universe in the low nibble."""
        return ((self.subnet & 0x0F) << 4) | (self.universe & 0x0F)

    @property
    def high_byte(self) -> int:
        """Net byte, top bit always zero."""
        return self.net & 0x7F

    @classmethod
    def from_int(cls, value: int) -> "UniverseAddress":
        """Parse from 15-bit integer."""
        return cls(
            net=(value >> 8) & 0x7F,
            subnet=(value >> 4) & 0x0F,
            universe=value & 0x0F,
        )


def _valid_length(buffer: bytes | bytearray | memoryview, length: int | None) -> int:
    if length is None:
        return len(buffer)
    return min(length, len(buffer))


def _decode_name(buffer: bytes | bytearray | memoryview, start: int, size: int) -> str:
    raw = bytes(buffer[start : start + size])
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def _encode_name(buffer: bytearray, start: int, size: int, name: str) -> None:
    encoded = name.encode("ascii", errors="replace")[: size - 1]
    buffer[start : start + size] = _ZERO_PACKET[:size]
    buffer[start : start + len(encoded)] = encoded


def _write_header(buffer: bytearray, opcode: OpCode, size: int) -> None:
    buffer[0:size] = _ZERO_PACKET[:size]
    buffer[0:8] = ARTNET_HEADER
    struct.pack_into("<H", buffer, 8, opcode)


def _require_size(buffer: bytes | bytearray | memoryview, length: int | None, minimum: int, name: str) -> int:
    valid = _valid_length(buffer, length)
    if valid < minimum:
        raise MalformedPacketError(f"{name} needs at least {minimum} bytes", valid)
    return valid


def decode_opcode(buffer: bytes | bytearray | memoryview, length: int | None = None) -> OpCode:
    """Validate the Art-Net signature and return the packet's opcode.

    Args:
        buffer: Packet data
        length: Number of valid bytes in buffer (default: all of it)

    Returns:
        Handled OpCode, or OpCode.UNSUPPORTED for any other opcode

    Raises:
        MalformedPacketError: Signature missing or packet too short
    """
    valid = _valid_length(buffer, length)
    if valid < ARTNET_HEADER_SIZE:
        raise MalformedPacketError("shorter than Art-Net header", valid)

    if bytes(buffer[0:8]) != ARTNET_HEADER:
        raise MalformedPacketError("missing Art-Net signature", valid)

    # Get OpCode (little-endian)
    raw = struct.unpack_from("<H", buffer, 8)[0]
    try:
        return OpCode(raw)
    except ValueError:
        logger.debug(f"Unsupported Art-Net opcode 0x{raw:04X}")
        return OpCode.UNSUPPORTED


def decode_dmx(buffer: bytes | bytearray | memoryview, length: int | None = None) -> ArtDmxPacket:
    """Decode an ArtDmx packet.

    The declared slot count is clamped to 512 and to the bytes actually
    present, so an oversized or truncated frame never reads past the data.
    """
    valid = _require_size(buffer, length, ARTNET_DMX_HEADER_SIZE, "ArtDmx")

    declared = struct.unpack_from(">H", buffer, 16)[0]
    count = min(declared, DMX_SLOT_COUNT, valid - ARTNET_DMX_HEADER_SIZE)
    if count != declared:
        logger.debug(f"ArtDmx slot count {declared} clamped to {count}")

    return ArtDmxPacket(
        sequence=buffer[12],
        physical=buffer[13],
        universe=buffer[14] | ((buffer[15] & 0x7F) << 8),
        data=memoryview(buffer)[ARTNET_DMX_HEADER_SIZE : ARTNET_DMX_HEADER_SIZE + count],
    )


def decode_poll(buffer: bytes | bytearray | memoryview, length: int | None = None) -> ArtPollPacket:
    """Decode an ArtPoll packet."""
    valid = _require_size(buffer, length, ARTNET_POLL_MIN_SIZE, "ArtPoll")
    talk_to_me = buffer[12] if valid > 12 else 0
    priority = buffer[13] if valid > 13 else 0
    return ArtPollPacket(talk_to_me=talk_to_me, priority=priority)


def decode_address(buffer: bytes | bytearray | memoryview, length: int | None = None) -> ArtAddressPacket:
    """Decode an ArtAddress packet."""
    _require_size(buffer, length, ARTNET_ADDRESS_SIZE, "ArtAddress")
    return ArtAddressPacket(
        net_switch=buffer[12],
        bind_index=buffer[13],
        short_name=_decode_name(buffer, 14, ARTNET_SHORT_NAME_LENGTH),
        long_name=_decode_name(buffer, 32, ARTNET_LONG_NAME_LENGTH),
        sw_in=bytes(buffer[96:100]),
        sw_out=bytes(buffer[100:104]),
        sub_switch=buffer[104],
        sw_video=buffer[105],
        command=buffer[106],
    )


def decode_ipprog(buffer: bytes | bytearray | memoryview, length: int | None = None) -> ArtIpProgPacket:
    """Decode an ArtIpProg packet."""
    valid = _require_size(buffer, length, ARTNET_IPPROG_MIN_SIZE, "ArtIpProg")
    port = struct.unpack_from(">H", buffer, 24)[0] if valid >= 26 else ARTNET_PORT
    return ArtIpProgPacket(
        command=buffer[14],
        ip_address=IPv4Address(bytes(buffer[16:20])),
        subnet_mask=IPv4Address(bytes(buffer[20:24])),
        port=port,
    )


def decode_ipprog_reply(
    buffer: bytes | bytearray | memoryview, length: int | None = None
) -> ArtIpProgReplyPacket:
    """Decode an ArtIpProgReply packet."""
    _require_size(buffer, length, ARTNET_IPPROG_REPLY_SIZE, "ArtIpProgReply")
    return ArtIpProgReplyPacket(
        ip_address=IPv4Address(bytes(buffer[16:20])),
        subnet_mask=IPv4Address(bytes(buffer[20:24])),
        port=struct.unpack_from(">H", buffer, 24)[0],
        status=buffer[26],
    )


def decode_poll_reply(
    buffer: bytes | bytearray | memoryview, length: int | None = None
) -> ArtPollReplyPacket:
    """Decode an ArtPollReply packet."""
    _require_size(buffer, length, ARTNET_REPLY_SIZE, "ArtPollReply")
    return ArtPollReplyPacket(
        ip_address=IPv4Address(bytes(buffer[10:14])),
        port=struct.unpack_from("<H", buffer, 14)[0],
        version=struct.unpack_from(">H", buffer, 16)[0],
        net_switch=buffer[18],
        sub_switch=buffer[19],
        oem=struct.unpack_from(">H", buffer, 20)[0],
        ubea_version=buffer[22],
        status1=buffer[23],
        esta_code=struct.unpack_from("<H", buffer, 24)[0],
        short_name=_decode_name(buffer, 26, ARTNET_SHORT_NAME_LENGTH),
        long_name=_decode_name(buffer, 44, ARTNET_LONG_NAME_LENGTH),
        node_report=_decode_name(buffer, 108, ARTNET_NODE_REPORT_LENGTH),
        num_ports=struct.unpack_from(">H", buffer, 172)[0],
        port_types=bytes(buffer[174:178]),
        good_input=bytes(buffer[178:182]),
        good_output=bytes(buffer[182:186]),
        sw_in=bytes(buffer[186:190]),
        sw_out=bytes(buffer[190:194]),
        style=buffer[200],
        mac_address=bytes(buffer[201:207]),
        bind_ip=IPv4Address(bytes(buffer[207:211])),
        bind_index=buffer[211],
        status2=buffer[212],
    )


def encode_artdmx_into(
    buffer: bytearray,
    universe: int,
    data: bytes | bytearray | memoryview,
    sequence: int = 0,
    physical: int = 0,
) -> int:
    """Write an ArtDmx packet into buffer.

    Args:
        buffer: Destination, at least 18 + len(data) bytes
        universe: 15-bit port-address (0-32767)
        data: DMX channel data, anything exposing the buffer protocol
            (bytes, bytearray, uint8 numpy array). Clamped to 512 slots.
        sequence: Sequence number (0=disabled, 1-255)
        physical: Physical port number (informational)

    Returns:
        Number of bytes written
    """
    view = memoryview(data).cast("B")
    length = min(len(view), DMX_SLOT_COUNT)

    # Header: "Art-Net\0" (8 bytes)
    # OpCode: 0x5000 (2 bytes, little-endian)
    # ProtVer: 14 (2 bytes, big-endian)
    # Sequence, Physical: 1 byte each
    # SubUni, Net: port-address low / high byte
    # LengthHi, LengthLo: 2 bytes big-endian
    _write_header(buffer, OpCode.DMX, ARTNET_DMX_HEADER_SIZE)
    struct.pack_into(">H", buffer, 10, ARTNET_VERSION)
    buffer[12] = sequence & 0xFF
    buffer[13] = physical & 0xFF
    buffer[14] = universe & 0xFF
    buffer[15] = (universe >> 8) & 0x7F
    struct.pack_into(">H", buffer, 16, length)
    buffer[ARTNET_DMX_HEADER_SIZE : ARTNET_DMX_HEADER_SIZE + length] = view[:length]

    return ARTNET_DMX_HEADER_SIZE + length


def encode_poll_reply_into(buffer: bytearray, reply: ArtPollReplyPacket) -> int:
    """Write an ArtPollReply packet into buffer.

    Returns:
        Number of bytes written (always ARTNET_REPLY_SIZE)
    """
    _write_header(buffer, OpCode.POLL_REPLY, ARTNET_REPLY_SIZE)

    # IP address (4 bytes)
    buffer[10:14] = reply.ip_address.packed

    # Port (2 bytes, little-endian)
    struct.pack_into("<H", buffer, 14, reply.port)

    # Version (2 bytes, big-endian)
    struct.pack_into(">H", buffer, 16, reply.version)

    # Net/SubSwitch
    buffer[18] = reply.net_switch & 0x7F
    buffer[19] = reply.sub_switch & 0x0F

    # OEM code (2 bytes, big-endian)
    struct.pack_into(">H", buffer, 20, reply.oem)

    buffer[22] = reply.ubea_version & 0xFF
    buffer[23] = reply.status1 & 0xFF

    # ESTA code (2 bytes, little-endian)
    struct.pack_into("<H", buffer, 24, reply.esta_code)

    _encode_name(buffer, 26, ARTNET_SHORT_NAME_LENGTH, reply.short_name)
    _encode_name(buffer, 44, ARTNET_LONG_NAME_LENGTH, reply.long_name)
    _encode_name(buffer, 108, ARTNET_NODE_REPORT_LENGTH, reply.node_report)

    # NumPorts (2 bytes, big-endian)
    struct.pack_into(">H", buffer, 172, reply.num_ports)

    buffer[174:178] = reply.port_types[:4].ljust(4, b"\x00")
    buffer[178:182] = reply.good_input[:4].ljust(4, b"\x00")
    buffer[182:186] = reply.good_output[:4].ljust(4, b"\x00")
    buffer[186:190] = reply.sw_in[:4].ljust(4, b"\x00")
    buffer[190:194] = reply.sw_out[:4].ljust(4, b"\x00")

    # SwVideo, SwMacro, SwRemote, Spare (3 bytes) stay zero
    buffer[200] = reply.style & 0xFF
    buffer[201:207] = reply.mac_address[:6].ljust(6, b"\x00")

    bind_ip = reply.bind_ip if reply.bind_ip is not None else reply.ip_address
    buffer[207:211] = bind_ip.packed
    buffer[211] = reply.bind_index & 0xFF
    buffer[212] = reply.status2 & 0xFF

    return ARTNET_REPLY_SIZE


def encode_ipprog_reply_into(
    buffer: bytearray,
    ip_address: IPv4Address,
    subnet_mask: IPv4Address,
    status: int = 0,
    port: int = ARTNET_PORT,
) -> int:
    """Write an ArtIpProgReply packet into buffer.

    Returns:
        Number of bytes written (always ARTNET_IPPROG_REPLY_SIZE)
    """
    _write_header(buffer, OpCode.IP_PROG_REPLY, ARTNET_IPPROG_REPLY_SIZE)
    struct.pack_into(">H", buffer, 10, ARTNET_VERSION)
    buffer[16:20] = ip_address.packed
    buffer[20:24] = subnet_mask.packed
    struct.pack_into(">H", buffer, 24, port)
    buffer[26] = status & 0xFF
    return ARTNET_IPPROG_REPLY_SIZE


def build_artdmx(
    universe: int,
    data: bytes,
    sequence: int = 0,
    physical: int = 0,
) -> bytes:
    """Build an ArtDmx packet.

    Args:
        universe: 15-bit port-address (0-32767)
        data: DMX channel data (1-512 bytes)
        sequence: Sequence number (0=disabled, 1-255)
        physical: Physical port number (informational)

    Returns:
        Complete Art-Net packet ready for UDP transmission
    """
    packet = bytearray(ARTNET_DMX_HEADER_SIZE + min(len(data), DMX_SLOT_COUNT))
    size = encode_artdmx_into(packet, universe, data, sequence, physical)
    return bytes(packet[:size])


def build_artpoll(talk_to_me: int = 0x02, priority: int = 0) -> bytes:
    """Build an ArtPoll packet.

    Args:
        talk_to_me: Response behavior flags (0x02 = reply on change)
        priority: Minimum diagnostic priority level

    Returns:
        Complete Art-Net packet ready for UDP broadcast
    """
    packet = bytearray(14)
    packet[0:8] = ARTNET_HEADER
    struct.pack_into("<H", packet, 8, OpCode.POLL)
    struct.pack_into(">H", packet, 10, ARTNET_VERSION)
    packet[12] = talk_to_me
    packet[13] = priority

    return bytes(packet)


def build_artpoll_reply(reply: ArtPollReplyPacket) -> bytes:
    """Build an ArtPollReply packet."""
    packet = bytearray(ARTNET_REPLY_SIZE)
    encode_poll_reply_into(packet, reply)
    return bytes(packet)


def build_artaddress(
    net_switch: int = 0x7F,
    sub_switch: int = 0x7F,
    sw_out: int = 0x7F,
    command: int = ADDRESS_CMD_NONE,
    short_name: str = "",
    long_name: str = "",
    bind_index: int = 0,
) -> bytes:
    """Build an ArtAddress packet.

    Switch values default to 0x7F (no change); OR a value with 0x80 to
    program it.
    """
    packet = bytearray(ARTNET_ADDRESS_SIZE)
    _write_header(packet, OpCode.ADDRESS, ARTNET_ADDRESS_SIZE)
    struct.pack_into(">H", packet, 10, ARTNET_VERSION)
    packet[12] = net_switch & 0xFF
    packet[13] = bind_index & 0xFF
    _encode_name(packet, 14, ARTNET_SHORT_NAME_LENGTH, short_name)
    _encode_name(packet, 32, ARTNET_LONG_NAME_LENGTH, long_name)
    packet[96:100] = b"\x7f\x7f\x7f\x7f"
    packet[100] = sw_out & 0xFF
    packet[101:104] = b"\x7f\x7f\x7f"
    packet[104] = sub_switch & 0xFF
    packet[105] = 0
    packet[106] = command & 0xFF
    return bytes(packet)


def build_ipprog(
    command: int = 0,
    ip_address: IPv4Address | str = "0.0.0.0",
    subnet_mask: IPv4Address | str = "0.0.0.0",
    port: int = ARTNET_PORT,
) -> bytes:
    """Build an ArtIpProg packet. command=0 is a query."""
    packet = bytearray(ARTNET_IPPROG_SIZE)
    _write_header(packet, OpCode.IP_PROG, ARTNET_IPPROG_SIZE)
    struct.pack_into(">H", packet, 10, ARTNET_VERSION)
    packet[14] = command & 0xFF
    packet[16:20] = IPv4Address(ip_address).packed
    packet[20:24] = IPv4Address(subnet_mask).packed
    struct.pack_into(">H", packet, 24, port)
    return bytes(packet)
