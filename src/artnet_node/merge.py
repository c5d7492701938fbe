"""HTP merge of DMX data from two network sources.

The first two distinct senders of ArtDmx for the node's universe each own a
source buffer. Their levels are merged highest-takes-precedence into the
composite buffer. Further senders are ignored until the merge is cancelled.
"""

import logging

import numpy as np

from artnet_node.protocol import DMX_SLOT_COUNT

logger = logging.getLogger(__name__)


class MergeEngine:
    """Two-source HTP merge with fixed 512-slot buffers.

    All buffers are allocated once; merging writes into them in place.
    """

    def __init__(self):
        self._buffer_a = np.zeros(DMX_SLOT_COUNT, dtype=np.uint8)
        self._buffer_b = np.zeros(DMX_SLOT_COUNT, dtype=np.uint8)
        self._buffer_c = np.zeros(DMX_SLOT_COUNT, dtype=np.uint8)

        self._slots_a = 0
        self._slots_b = 0
        self._slots = 0

        self._sender_a: str | None = None
        self._sender_b: str | None = None

        # Statistics
        self._packets_merged = 0
        self._packets_dropped = 0

    @property
    def buffer_a(self) -> np.ndarray:
        return self._buffer_a

    @property
    def buffer_b(self) -> np.ndarray:
        return self._buffer_b

    @property
    def buffer_c(self) -> np.ndarray:
        """Composite (merged) levels."""
        return self._buffer_c

    @property
    def slots_a(self) -> int:
        return self._slots_a

    @property
    def slots_b(self) -> int:
        return self._slots_b

    @property
    def slot_count(self) -> int:
        """Number of valid composite slots."""
        return self._slots

    @slot_count.setter
    def slot_count(self, value: int) -> None:
        clamped = max(0, min(int(value), DMX_SLOT_COUNT))
        if clamped != value:
            logger.debug(f"Slot count {value} clamped to {clamped}")
        self._slots = clamped

    @property
    def sender_a(self) -> str | None:
        return self._sender_a

    @property
    def sender_b(self) -> str | None:
        return self._sender_b

    @property
    def merge_active(self) -> bool:
        """True while two distinct senders are bound."""
        return self._sender_a is not None and self._sender_b is not None

    def merge(self, sender: str, data: bytes | memoryview) -> bool:
        """Store a sender's levels and recompute the composite.

        Args:
            sender: Transport address of the ArtDmx sender
            data: Slot values (at most 512 are used)

        Returns:
            True if the packet was merged, False if it came from a third
            sender and was dropped
        """
        if sender == self._sender_a:
            self._slots_a = self._store(self._buffer_a, data)
        elif sender == self._sender_b:
            self._slots_b = self._store(self._buffer_b, data)
        elif self._sender_a is None:
            self._sender_a = sender
            logger.info(f"DMX source A bound to {sender}")
            self._slots_a = self._store(self._buffer_a, data)
        elif self._sender_b is None:
            self._sender_b = sender
            logger.info(f"DMX source B bound to {sender}, merging")
            self._slots_b = self._store(self._buffer_b, data)
        else:
            self._packets_dropped += 1
            logger.debug(f"Ignoring DMX from {sender}: already merging {self._sender_a} and {self._sender_b}")
            return False

        np.maximum(self._buffer_a, self._buffer_b, out=self._buffer_c)
        self._slots = max(self._slots_a, self._slots_b)
        self._packets_merged += 1
        return True

    @staticmethod
    def _store(buffer: np.ndarray, data: bytes | memoryview) -> int:
        count = min(len(data), DMX_SLOT_COUNT)
        if count:
            buffer[:count] = np.frombuffer(data, dtype=np.uint8, count=count)
        # Zero slots beyond the new count
        buffer[count:] = 0
        return count

    def cancel_merge(self) -> None:
        """Unbind both senders and zero the source buffers.

        The composite keeps its last levels until the next packet arrives.
        """
        logger.info(f"Merge cancelled (sources {self._sender_a}, {self._sender_b})")
        self._sender_a = None
        self._sender_b = None
        self._buffer_a[:] = 0
        self._buffer_b[:] = 0
        self._slots_a = 0
        self._slots_b = 0

    def clear(self) -> None:
        """Cancel the merge and zero the composite output."""
        self.cancel_merge()
        self._buffer_c[:] = 0
        self._slots = DMX_SLOT_COUNT

    def get_stats(self) -> dict:
        return {
            "sender_a": self._sender_a,
            "sender_b": self._sender_b,
            "merge_active": self.merge_active,
            "slots": self._slots,
            "packets_merged": self._packets_merged,
            "packets_dropped": self._packets_dropped,
        }
