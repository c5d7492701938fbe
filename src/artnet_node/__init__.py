"""Art-Net Node.

Node-side Art-Net protocol engine:
- ArtNetNode: decodes Art-Net datagrams, HTP-merges two DMX sources and
  answers ArtPoll, ArtAddress and ArtIpProg
- UdpTransport: non-blocking UDP socket feeding the node
- ArtNetNodeService: asyncio polling loop around a node and a transport
"""

from artnet_node.addressing import AddressingState, AddressUpdate, UpdateKind
from artnet_node.config import ArtNetNodeConfig, load_config
from artnet_node.exceptions import ArtNetError, MalformedPacketError, TransportError
from artnet_node.merge import MergeEngine
from artnet_node.node import ArtNetNode, BufferOwnership
from artnet_node.protocol import (
    ARTNET_PORT,
    ArtAddressPacket,
    ArtDmxPacket,
    ArtIpProgPacket,
    ArtIpProgReplyPacket,
    ArtPollPacket,
    ArtPollReplyPacket,
    OpCode,
    UniverseAddress,
    build_artaddress,
    build_artdmx,
    build_artpoll,
    build_ipprog,
    decode_opcode,
)
from artnet_node.service import ArtNetNodeService
from artnet_node.transport import Transport, UdpTransport

__all__ = [
    "ArtNetNode",
    "ArtNetNodeConfig",
    "ArtNetNodeService",
    "BufferOwnership",
    "AddressingState",
    "AddressUpdate",
    "UpdateKind",
    "MergeEngine",
    "Transport",
    "UdpTransport",
    "ArtNetError",
    "MalformedPacketError",
    "TransportError",
    "ARTNET_PORT",
    "OpCode",
    "UniverseAddress",
    "ArtDmxPacket",
    "ArtPollPacket",
    "ArtPollReplyPacket",
    "ArtAddressPacket",
    "ArtIpProgPacket",
    "ArtIpProgReplyPacket",
    "build_artdmx",
    "build_artpoll",
    "build_artaddress",
    "build_ipprog",
    "decode_opcode",
    "load_config",
]
