import io
import struct

import pytest

from ashakit.bytestream import ParseError
from ashakit.gatt import Opcode
from ashakit.snoopfile import BtSnoopFile, Packet, SnoopFileType


def _header(file_type=2001, version=1, magic=b"btsnoop\0"):
    return magic + struct.pack(">II", version, file_type)


def _record(data, flags, stamp=0, original=None):
    original = len(data) if original is None else original
    return struct.pack(">IIIIQ", original, len(data), flags, 0, stamp) + data


def test_header_types():
    assert BtSnoopFile(io.BytesIO(_header(2001))).type == SnoopFileType.MONITOR
    assert BtSnoopFile(io.BytesIO(_header(1001))).type == SnoopFileType.HCI


@pytest.mark.parametrize(
    "header",
    [
        _header(magic=b"btsnoopX"),
        _header(version=2),
        _header(file_type=1002),
        b"btsn",
        b"",
    ],
)
def test_bad_header_raises(header):
    with pytest.raises(ParseError, match="Not a bluetooth snoop file"):
        BtSnoopFile(io.BytesIO(header))


def test_monitor_packet_fields():
    data = _header() + _record(b"\x01\x02\x03", flags=(3 << 16) | 5, stamp=123456)
    snoop = BtSnoopFile(io.BytesIO(data))
    packet = snoop.next_packet()
    assert packet == Packet(idx=3, opcode=5, stamp=123456, data=b"\x01\x02\x03")
    assert packet.length == 3
    assert snoop.next_packet() is None


@pytest.mark.parametrize(
    "flags, opcode",
    [
        (0, Opcode.ACL_TX_PKT),
        (1, Opcode.ACL_RX_PKT),
        (2, Opcode.COMMAND_PKT),
        (3, Opcode.EVENT_PKT),
        (0xFF03, Opcode.EVENT_PKT),
    ],
)
def test_hci_flags_map_to_opcodes(flags, opcode):
    snoop = BtSnoopFile(io.BytesIO(_header(1001) + _record(b"\xaa", flags)))
    packet = snoop.next_packet()
    assert packet.opcode == opcode
    assert packet.idx == 0


def test_iteration_yields_all_packets():
    payloads = [b"a", b"bc", b"def"]
    data = _header() + b"".join(_record(p, flags=i) for i, p in enumerate(payloads))
    packets = list(BtSnoopFile(io.BytesIO(data)))
    assert [p.data for p in packets] == payloads
    assert [p.opcode for p in packets] == [0, 1, 2]


def test_length_mismatch_stops_reading():
    data = _header() + _record(b"xy", flags=0, original=5) + _record(b"z", flags=0)
    assert list(BtSnoopFile(io.BytesIO(data))) == []


def test_oversized_packet_stops_reading():
    data = _header() + _record(bytes(1025), flags=0)
    assert BtSnoopFile(io.BytesIO(data)).next_packet() is None


def test_max_size_packet_is_read():
    data = _header() + _record(bytes(1024), flags=0)
    assert BtSnoopFile(io.BytesIO(data)).next_packet().length == 1024


def test_truncated_data_stops_reading():
    data = _header() + _record(b"abcdef", flags=0)[:-2]
    assert BtSnoopFile(io.BytesIO(data)).next_packet() is None


def test_reset_rewinds():
    data = _header() + _record(b"q", flags=4)
    snoop = BtSnoopFile(io.BytesIO(data))
    first = list(snoop)
    snoop.reset()
    assert list(snoop) == first
    assert len(first) == 1