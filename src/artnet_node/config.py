"""Configuration for an Art-Net node.

The node only consumes these values; storing them is up to the host.
"""

import re
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from artnet_node.protocol import (
    ARTNET_PORT,
    STATUS1_PORT_PROG,
    STATUS2_ARTNET3_CAPABLE,
    STATUS2_DHCP_CAPABLE,
)

SHORT_NAME_MAX = 17
LONG_NAME_MAX = 63

_MAC_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}([:-][0-9A-Fa-f]{2}){5}$")


class ArtNetNodeConfig(BaseModel):
    """Configuration for an Art-Net output node."""

    # Identity
    short_name: str = "Art-Net Node"
    long_name: str = "Art-Net DMX Output Node"
    mac_address: str = "00:00:00:00:00:00"
    oem_code: int = Field(default=0x0000, ge=0, le=0xFFFF)
    esta_code: int = Field(default=0x0000, ge=0, le=0xFFFF)
    firmware_version: int = Field(default=0x0001, ge=0, le=0xFFFF)
    status1: int = Field(default=STATUS1_PORT_PROG, ge=0, le=0xFF)
    status2: int = Field(default=STATUS2_ARTNET3_CAPABLE | STATUS2_DHCP_CAPABLE, ge=0, le=0xFF)

    # Network
    ip_address: IPv4Address = IPv4Address("2.0.0.1")
    subnet_mask: IPv4Address | None = None  # Set to broadcast poll replies
    broadcast_replies: bool = True
    port: int = Field(default=ARTNET_PORT, ge=1, le=65535)
    bind_host: str = ""

    # Port-address
    net: int = Field(default=0, ge=0, le=127)
    subnet: int = Field(default=0, ge=0, le=15)
    universe: int = Field(default=0, ge=0, le=15)

    @field_validator("short_name")
    @classmethod
    def truncate_short_name(cls, v: str) -> str:
        return v[:SHORT_NAME_MAX]

    @field_validator("long_name")
    @classmethod
    def truncate_long_name(cls, v: str) -> str:
        return v[:LONG_NAME_MAX]

    @field_validator("mac_address")
    @classmethod
    def validate_mac_format(cls, v: str) -> str:
        """Validate MAC address string format."""
        if not _MAC_PATTERN.match(v):
            raise ValueError(f"Invalid MAC address: {v}")
        return v.upper().replace("-", ":")

    @property
    def mac_bytes(self) -> bytes:
        return bytes(int(part, 16) for part in self.mac_address.split(":"))

    @property
    def broadcast_address(self) -> IPv4Address | None:
        """Directed broadcast address for poll replies, if broadcasting."""
        if not self.broadcast_replies or self.subnet_mask is None:
            return None
        return broadcast_for(self.ip_address, self.subnet_mask)


def broadcast_for(ip_address: IPv4Address, subnet_mask: IPv4Address) -> IPv4Address:
    """Directed broadcast address of the network containing ip_address."""
    network = IPv4Network(f"{ip_address}/{subnet_mask}", strict=False)
    return network.broadcast_address


def load_config(path: Path) -> ArtNetNodeConfig:
    """Load configuration from YAML file.

    Expected layout::

        node:
          short_name: Stage Left
          long_name: Stage left dimmer rack
          mac_address: "02:00:00:00:00:01"
        network:
          ip_address: 10.0.0.20
          subnet_mask: 255.0.0.0
          broadcast_replies: true
        addressing:
          net: 0
          subnet: 0
          universe: 1
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    # Map nested config to flat
    config_dict = {}

    for section in ("node", "network", "addressing"):
        if section in data and data[section]:
            config_dict.update(data[section])

    return ArtNetNodeConfig(**config_dict)
