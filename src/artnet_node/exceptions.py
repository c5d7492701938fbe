"""
Art-Net Node - Exceptions
"""


class ArtNetError(Exception):
    """Base exception for Art-Net node errors."""
    pass


class MalformedPacketError(ArtNetError):
    """Datagram is not a usable Art-Net packet (bad signature, too short)."""

    def __init__(self, reason: str, length: int = 0):
        self.reason = reason
        self.length = length
        super().__init__(f"Malformed Art-Net packet ({length} bytes): {reason}")


class TransportError(ArtNetError):
    """Transport used before it was opened, or failed to open."""
    pass
