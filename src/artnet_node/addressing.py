"""Art-Net port-address state.

A node listens on one 15-bit port-address made of Net (7 bits), SubNet
(4 bits) and Universe (4 bits). ArtAddress packets reprogram each part with a
single byte: 0x7F leaves it unchanged, a byte with the top bit set programs
the low bits, anything else is ignored.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from artnet_node.protocol import UniverseAddress

logger = logging.getLogger(__name__)

ADDRESS_NO_CHANGE = 0x7F
ADDRESS_PROG_BIT = 0x80

NET_MASK = 0x7F
NIBBLE_MASK = 0x0F
NET_MAX = 127
SUBNET_MAX = 15
UNIVERSE_MAX = 15


class UpdateKind(Enum):
    """How an ArtAddress switch byte affects a sub-field."""

    NO_CHANGE = "no_change"
    SET = "set"
    IGNORE = "ignore"


@dataclass(frozen=True)
class AddressUpdate:
    """Decoded ArtAddress switch byte."""

    kind: UpdateKind
    value: int | None = None

    @classmethod
    def decode(cls, raw: int, mask: int = NIBBLE_MASK) -> "AddressUpdate":
        """Decode a raw switch byte.

        Args:
            raw: Byte from the ArtAddress packet
            mask: Bits holding the new value (0x0F, or 0x7F for Net)
        """
        raw &= 0xFF
        if raw == ADDRESS_NO_CHANGE:
            return cls(UpdateKind.NO_CHANGE)
        if raw & ADDRESS_PROG_BIT:
            return cls(UpdateKind.SET, raw & mask)
        return cls(UpdateKind.IGNORE)

    def apply(self, current: int) -> int:
        """Return the sub-field value after this update."""
        if self.kind is UpdateKind.SET:
            return self.value
        return current


def _check_range(name: str, value: int, maximum: int) -> int:
    if not 0 <= value <= maximum:
        raise ValueError(f"{name} must be 0-{maximum}, got {value}")
    return value


class AddressingState:
    """Current Net/SubNet/Universe of a node."""

    def __init__(self, net: int = 0, subnet: int = 0, universe: int = 0):
        self._net = _check_range("net", net, NET_MAX)
        self._subnet = _check_range("subnet", subnet, SUBNET_MAX)
        self._universe = _check_range("universe", universe, UNIVERSE_MAX)

    @property
    def net(self) -> int:
        return self._net

    @property
    def subnet(self) -> int:
        return self._subnet

    @property
    def universe(self) -> int:
        return self._universe

    @property
    def address(self) -> UniverseAddress:
        return UniverseAddress(net=self._net, subnet=self._subnet, universe=self._universe)

    @property
    def port_address(self) -> int:
        """Packed 15-bit port-address."""
        return self.address.to_int()

    @property
    def low_byte(self) -> int:
        return self.address.low_byte

    @property
    def high_byte(self) -> int:
        return self.address.high_byte

    def set_universe(self, universe: int) -> None:
        self._universe = _check_range("universe", universe, UNIVERSE_MAX)

    def set_subnet(self, subnet: int) -> None:
        self._subnet = _check_range("subnet", subnet, SUBNET_MAX)

    def set_net(self, net: int) -> None:
        self._net = _check_range("net", net, NET_MAX)

    def set_subnet_universe(self, subnet: int, universe: int) -> None:
        self.set_subnet(subnet)
        self.set_universe(universe)

    def set_port_address(self, port_address: int) -> None:
        """Replace all three sub-fields from a packed 15-bit value."""
        _check_range("port-address", port_address, 0x7FFF)
        self._net, self._subnet, self._universe = UniverseAddress.from_int(port_address)

    def apply_universe_command(self, raw: int) -> bool:
        """Apply an ArtAddress SwOut byte. Returns True if the universe changed."""
        return self._apply("universe", AddressUpdate.decode(raw, NIBBLE_MASK))

    def apply_subnet_command(self, raw: int) -> bool:
        """Apply an ArtAddress SubSwitch byte. Returns True if the subnet changed."""
        return self._apply("subnet", AddressUpdate.decode(raw, NIBBLE_MASK))

    def apply_net_command(self, raw: int) -> bool:
        """Apply an ArtAddress NetSwitch byte. Returns True if the net changed."""
        return self._apply("net", AddressUpdate.decode(raw, NET_MASK))

    def _apply(self, name: str, update: AddressUpdate) -> bool:
        attr = f"_{name}"
        current = getattr(self, attr)
        new = update.apply(current)
        if new == current:
            return False
        setattr(self, attr, new)
        logger.info(f"Port-address {name} changed {current} -> {new}")
        return True

    def __repr__(self) -> str:
        return f"AddressingState(net={self._net}, subnet={self._subnet}, universe={self._universe})"
