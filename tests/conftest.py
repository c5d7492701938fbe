from __future__ import annotations

from collections import deque

import pytest

from artnet_node.config import ArtNetNodeConfig
from artnet_node.node import ArtNetNode


class FakeTransport:
    """In-memory transport: queued datagrams in, copies of sent ones out."""

    def __init__(self) -> None:
        self.incoming: deque[tuple[bytes, str]] = deque()
        self.sent: list[tuple[bytes, str]] = []

    def queue(self, data: bytes, sender: str) -> None:
        self.incoming.append((data, sender))

    def receive(self) -> tuple[bytes, str] | None:
        if not self.incoming:
            return None
        return self.incoming.popleft()

    def send(self, data: bytes | memoryview, address: str) -> None:
        # The node reuses its packet buffer, keep a copy
        self.sent.append((bytes(data), address))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def node() -> ArtNetNode:
    return ArtNetNode(ArtNetNodeConfig(ip_address="10.0.0.1"))
