from __future__ import annotations

import struct
from ipaddress import IPv4Address

import pytest

from artnet_node.config import ArtNetNodeConfig
from artnet_node.exceptions import ArtNetError
from artnet_node.node import ArtNetNode, BufferOwnership
from artnet_node.protocol import (
    ARTNET_BUFFER_MAX,
    ARTNET_HEADER,
    STATUS2_DHCP_USED,
    OpCode,
    UniverseAddress,
    build_artaddress,
    build_artpoll,
    build_ipprog,
    decode_dmx,
    decode_ipprog_reply,
    decode_opcode,
    decode_poll_reply,
)


def _dmx_packet(universe: int, levels: list[int], sequence: int = 1) -> bytes:
    packet = bytearray(ARTNET_HEADER)
    packet += struct.pack("<H", OpCode.DMX)
    packet += struct.pack(">H", 14)
    packet += bytes([sequence, 0, universe & 0xFF, (universe >> 8) & 0x7F])
    packet += struct.pack(">H", len(levels))
    packet += bytes(levels)
    return bytes(packet)


def test_dmx_then_poll_end_to_end(node, transport) -> None:
    opcode = node.process_packet(_dmx_packet(0, [10, 20, 30]), "10.0.0.5", transport)

    assert opcode == OpCode.DMX
    assert [node.get_slot(i) for i in (1, 2, 3)] == [10, 20, 30]
    assert node.number_of_slots == 3

    assert node.process_packet(build_artpoll(), "10.0.0.9", transport) == OpCode.POLL

    assert len(transport.sent) == 1
    data, destination = transport.sent[0]
    assert destination == "10.0.0.9"
    assert decode_opcode(data) == OpCode.POLL_REPLY

    reply = decode_poll_reply(data)
    assert reply.port_address == UniverseAddress(net=0, subnet=0, universe=0)
    assert reply.ip_address == IPv4Address("10.0.0.1")


def test_malformed_header_leaves_state_untouched(node, transport) -> None:
    node.process_packet(_dmx_packet(0, [10, 20, 30]), "10.0.0.5", transport)

    bad = bytearray(_dmx_packet(0, [99, 99, 99]))
    bad[0] = ord("X")

    assert node.process_packet(bytes(bad), "10.0.0.5", transport) is None
    assert node.process_packet(b"Art", "10.0.0.5", transport) is None

    assert [node.get_slot(i) for i in (1, 2, 3)] == [10, 20, 30]
    assert node.packet_size == len(_dmx_packet(0, [10, 20, 30]))
    assert transport.sent == []
    assert node.get_stats()["packets_malformed"] == 2
    assert node.get_stats()["packets_received"] == 1


def test_truncated_poll_is_dropped(node, transport) -> None:
    assert node.process_packet(build_artpoll()[:11], "10.0.0.9", transport) is None
    assert transport.sent == []


def test_unsupported_opcode_is_ignored(node, transport) -> None:
    packet = bytearray(build_artpoll())
    struct.pack_into("<H", packet, 8, 0x9700)

    assert node.process_packet(bytes(packet), "10.0.0.9", transport) == OpCode.UNSUPPORTED
    assert transport.sent == []


def test_dmx_for_other_universe_is_ignored(node, transport) -> None:
    assert not node.process_dmx_packet(_dmx_packet(1, [255, 255]), "10.0.0.5", transport)
    assert node.get_slot(1) == 0
    assert node.merge.sender_a is None


def test_dmx_merges_two_senders(node, transport) -> None:
    assert node.process_dmx_packet(_dmx_packet(0, [0, 255, 40]), "10.0.0.5", transport)
    assert node.process_dmx_packet(_dmx_packet(0, [255, 0, 40]), "10.0.0.6", transport)

    assert [node.get_slot(i) for i in (1, 2, 3)] == [255, 255, 40]
    assert node.merge_active

    # Third sender rejected
    assert not node.process_dmx_packet(_dmx_packet(0, [1, 1, 1]), "10.0.0.7", transport)
    assert [node.get_slot(i) for i in (1, 2, 3)] == [255, 255, 40]


@pytest.mark.parametrize("slots", [1, 2, 100, 511, 512])
def test_slots_read_back_within_count(node, slots: int) -> None:
    node.set_number_of_slots(slots)
    for slot in range(1, slots + 1):
        node.set_slot(slot, slot % 256)

    assert [node.get_slot(i) for i in range(1, slots + 1)] == [i % 256 for i in range(1, slots + 1)]
    assert node.get_slot(0) == 0
    assert node.get_slot(slots + 1) == 0


def test_set_number_of_slots_clamps(node) -> None:
    node.set_number_of_slots(600)
    assert node.number_of_slots == 512
    node.set_number_of_slots(-4)
    assert node.number_of_slots == 0


def test_set_slot_rejects_bad_values(node) -> None:
    with pytest.raises(ValueError):
        node.set_slot(0, 10)
    with pytest.raises(ValueError):
        node.set_slot(513, 10)
    with pytest.raises(ValueError):
        node.set_slot(1, 256)


def test_poll_reply_broadcast_when_mask_configured(transport) -> None:
    node = ArtNetNode(ArtNetNodeConfig(ip_address="10.0.0.1", subnet_mask="255.0.0.0"))
    assert node.broadcast_address == IPv4Address("10.255.255.255")

    node.process_packet(build_artpoll(), "10.0.0.9", transport)
    assert transport.sent[0][1] == "10.255.255.255"


def test_poll_reply_unicast_when_broadcast_disabled(transport) -> None:
    node = ArtNetNode(
        ArtNetNodeConfig(ip_address="10.0.0.1", subnet_mask="255.0.0.0", broadcast_replies=False)
    )
    assert node.broadcast_address is None

    node.process_packet(build_artpoll(), "10.0.0.9", transport)
    assert transport.sent[0][1] == "10.0.0.9"


def test_poll_reply_counter_increments_and_wraps(node) -> None:
    node.build_poll_reply()
    node.build_poll_reply()
    assert node.poll_reply_counter == 2
    reply = decode_poll_reply(node.packet_buffer)
    assert reply.node_report.startswith("#0001 [0002]")

    node._poll_reply_counter = 0xFFFF
    node.build_poll_reply()
    assert node.poll_reply_counter == 0


def test_reply_built_without_transport(node) -> None:
    assert node.process_packet(build_artpoll(), "10.0.0.9") == OpCode.POLL
    assert decode_opcode(node.packet_buffer) == OpCode.POLL_REPLY


def test_address_command_reprograms_node(node, transport) -> None:
    calls = []
    node.set_address_callback(lambda: calls.append(node.port_address))

    packet = build_artaddress(
        net_switch=0x7F,
        sub_switch=0x80 | 2,
        sw_out=0x80 | 5,
        short_name="Truss 2",
        long_name="Truss two dimmers",
    )
    assert node.process_packet(packet, "10.0.0.9", transport) == OpCode.ADDRESS

    assert (node.net, node.subnet, node.universe) == (0, 2, 5)
    assert node.short_name == "Truss 2"
    assert node.long_name == "Truss two dimmers"
    assert calls == [0x25]

    # ArtAddress is answered with a poll reply showing the new address
    reply = decode_poll_reply(transport.sent[-1][0])
    assert reply.port_address == UniverseAddress(net=0, subnet=2, universe=5)
    assert reply.short_name == "Truss 2"


def test_address_command_without_flags_changes_nothing(node, transport) -> None:
    node.set_subnet_universe(3, 4)
    packet = build_artaddress(net_switch=0x03, sub_switch=0x7F, sw_out=0x05)

    node.process_packet(packet, "10.0.0.9", transport)

    assert (node.net, node.subnet, node.universe) == (0, 3, 4)
    assert node.short_name == "Art-Net Node"


def test_address_cancel_merge(node, transport) -> None:
    node.process_packet(_dmx_packet(0, [10, 10]), "10.0.0.5", transport)
    node.process_packet(_dmx_packet(0, [20, 20]), "10.0.0.6", transport)

    node.process_packet(build_artaddress(command=0x01), "10.0.0.9", transport)

    assert not node.merge_active
    assert not node.merge.buffer_a.any()
    assert not node.merge.buffer_b.any()

    node.process_packet(_dmx_packet(0, [7, 8]), "10.0.0.6", transport)
    assert node.merge.sender_a == "10.0.0.6"
    assert [node.get_slot(1), node.get_slot(2)] == [7, 8]


def test_address_clear_output_reports_level_change(node, transport) -> None:
    node.process_packet(_dmx_packet(0, [10, 10]), "10.0.0.5", transport)

    assert node.process_dmx_packet(build_artaddress(command=0x90), "10.0.0.9", transport)
    assert not node.dmx_data.any()
    assert node.get_slot(1) == 0


def test_address_callback_replace_and_clear(node, transport) -> None:
    first, second = [], []
    node.set_address_callback(lambda: first.append(1))
    node.set_address_callback(lambda: second.append(1))

    node.process_packet(build_artaddress(), "10.0.0.9", transport)
    assert first == []
    assert second == [1]

    node.set_address_callback(None)
    node.process_packet(build_artaddress(), "10.0.0.9", transport)
    assert second == [1]


def test_address_callback_error_does_not_escape(node, transport) -> None:
    def broken() -> None:
        raise RuntimeError("settings store unavailable")

    node.set_address_callback(broken)
    packet = build_artaddress(sw_out=0x80 | 7)

    assert node.process_packet(packet, "10.0.0.9", transport) == OpCode.ADDRESS
    assert node.universe == 7
    assert len(transport.sent) == 1


def test_ipprog_sets_address_and_mask(node, transport) -> None:
    calls = []
    node.set_ipprog_callback(lambda cmd, ip, mask: calls.append((cmd, ip, mask)))

    packet = build_ipprog(command=0x80 | 0x04 | 0x02, ip_address="10.1.2.3", subnet_mask="255.255.0.0")
    assert node.process_packet(packet, "10.0.0.9", transport) == OpCode.IP_PROG

    assert node.ip_address == IPv4Address("10.1.2.3")
    assert node.subnet_mask == IPv4Address("255.255.0.0")
    assert calls == [(0x86, IPv4Address("10.1.2.3"), IPv4Address("255.255.0.0"))]

    data, destination = transport.sent[-1]
    assert destination == "10.0.0.9"
    reply = decode_ipprog_reply(data)
    assert reply.ip_address == IPv4Address("10.1.2.3")
    assert reply.subnet_mask == IPv4Address("255.255.0.0")
    assert not reply.dhcp_enabled


def test_ipprog_query_changes_nothing(node, transport) -> None:
    calls = []
    node.set_ipprog_callback(lambda *args: calls.append(args))

    packet = build_ipprog(command=0x04, ip_address="10.9.9.9")
    node.process_packet(packet, "10.0.0.9", transport)

    assert node.ip_address == IPv4Address("10.0.0.1")
    assert calls == []
    reply = decode_ipprog_reply(transport.sent[-1][0])
    assert reply.ip_address == IPv4Address("10.0.0.1")


def test_ipprog_dhcp_sets_status(node, transport) -> None:
    node.process_packet(build_ipprog(command=0x80 | 0x40), "10.0.0.9", transport)

    assert node.status2 & STATUS2_DHCP_USED
    assert decode_ipprog_reply(transport.sent[-1][0]).dhcp_enabled


def test_ipprog_reset_restores_configured_address(transport) -> None:
    node = ArtNetNode(ArtNetNodeConfig(ip_address="10.0.0.1", subnet_mask="255.0.0.0"))
    node.process_packet(
        build_ipprog(command=0x80 | 0x04 | 0x02, ip_address="192.168.5.5", subnet_mask="255.255.255.0"),
        "10.0.0.9",
        transport,
    )
    assert node.broadcast_address == IPv4Address("192.168.5.255")

    node.process_packet(build_ipprog(command=0x80 | 0x08), "10.0.0.9", transport)

    assert node.ip_address == IPv4Address("10.0.0.1")
    assert node.subnet_mask == IPv4Address("255.0.0.0")
    assert node.broadcast_address == IPv4Address("10.255.255.255")


def test_ipprog_with_invalid_mask_is_rejected(transport) -> None:
    node = ArtNetNode(ArtNetNodeConfig(ip_address="10.0.0.1", subnet_mask="255.0.0.0"))
    calls = []
    node.set_ipprog_callback(lambda *args: calls.append(args))

    packet = build_ipprog(command=0x86, ip_address="10.0.0.50", subnet_mask="255.0.255.0")
    assert node.process_packet(packet, "10.0.0.9", transport) is None

    assert node.ip_address == IPv4Address("10.0.0.1")
    assert node.subnet_mask == IPv4Address("255.0.0.0")
    assert node.broadcast_address == IPv4Address("10.255.255.255")
    assert calls == []
    assert transport.sent == []
    assert node.get_stats()["packets_malformed"] == 1


def test_set_local_address_rejects_invalid_mask(node) -> None:
    with pytest.raises(ValueError):
        node.set_local_address(IPv4Address("10.0.0.50"), IPv4Address("255.0.255.0"))
    assert node.ip_address == IPv4Address("10.0.0.1")


def test_send_dmx_encodes_composite(node, transport) -> None:
    node.set_number_of_slots(3)
    for slot, level in ((1, 11), (2, 22), (3, 33)):
        node.set_slot(slot, level)
    node.set_slot(4, 99)  # Beyond the slot count, never sent

    size = node.send_dmx(transport, "10.0.0.50")

    data, destination = transport.sent[0]
    assert destination == "10.0.0.50"
    assert size == len(data) == 18 + 4
    packet = decode_dmx(data)
    assert packet.sequence == 1
    assert bytes(packet.data) == bytes([11, 22, 33, 0])
    assert node.sequence == 2


def test_send_dmx_sequence_wraps_past_zero(node, transport) -> None:
    node.set_number_of_slots(2)
    node._sequence = 255

    node.send_dmx(transport, "10.0.0.50")

    assert decode_dmx(transport.sent[0][0]).sequence == 255
    assert node.sequence == 1


def test_read_packet_polls_transport(node, transport) -> None:
    assert node.read_packet(transport) is None

    transport.queue(_dmx_packet(0, [1, 2]), "10.0.0.5")
    transport.queue(build_artpoll(), "10.0.0.9")

    assert node.read_dmx_packet(transport)
    assert node.read_packet(transport) == OpCode.POLL
    assert transport.sent[0][1] == "10.0.0.9"


def test_borrowed_buffer_is_shared_and_left_intact() -> None:
    shared = bytearray(ARTNET_BUFFER_MAX)
    first = ArtNetNode(ArtNetNodeConfig(universe=0), buffer=shared)
    second = ArtNetNode(ArtNetNodeConfig(universe=0), buffer=shared)
    assert first.buffer_ownership is BufferOwnership.BORROWED

    packet = _dmx_packet(0, [42, 43])
    shared[: len(packet)] = packet
    first.process_packet_contents(len(packet), "10.0.0.5")
    second.process_packet_contents(len(packet), "10.0.0.5")

    assert first.get_slot(1) == second.get_slot(1) == 42

    first.close()
    assert len(shared) == ARTNET_BUFFER_MAX
    assert shared[: len(packet)] == packet


def test_owned_buffer_released_on_close(node) -> None:
    assert node.buffer_ownership is BufferOwnership.OWNED
    node.close()
    node.close()
    with pytest.raises(ArtNetError):
        node.process_packet(build_artpoll(), "10.0.0.9")


def test_borrowed_buffer_too_small() -> None:
    with pytest.raises(ValueError):
        ArtNetNode(buffer=bytearray(100))


def test_oversized_datagram_is_truncated(node, transport) -> None:
    packet = _dmx_packet(0, [5] * 512) + b"\xff" * 100

    assert node.process_packet(packet, "10.0.0.5", transport) == OpCode.DMX
    assert node.number_of_slots == 512
    assert node.packet_size == ARTNET_BUFFER_MAX


def test_status_flags(node) -> None:
    node.set_status2_flag(STATUS2_DHCP_USED, True)
    assert node.status2 & STATUS2_DHCP_USED
    node.set_status2_flag(STATUS2_DHCP_USED, False)
    assert not node.status2 & STATUS2_DHCP_USED

    node.set_status1_flag(0x01, True)
    assert node.status1 & 0x01
