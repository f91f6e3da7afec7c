"""Reader for btsnoop capture files (HCI and btmon monitor flavours)."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Iterator

from .bytestream import ParseError
from .gatt import Opcode

MAGIC = b"btsnoop\0"
MAX_PACKET_SIZE = 1024

_HEADER = struct.Struct(">8sII")
_RECORD = struct.Struct(">IIIIQ")

# In HCI captures the two low flag bits give the direction and packet kind.
_HCI_OPCODES = (
    Opcode.ACL_TX_PKT,
    Opcode.ACL_RX_PKT,
    Opcode.COMMAND_PKT,
    Opcode.EVENT_PKT,
)


class SnoopFileType(IntEnum):
    HCI = 1001
    MONITOR = 2001


@dataclass(frozen=True)
class Packet:
    """One captured record."""

    idx: int
    opcode: int
    stamp: int
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)


class BtSnoopFile:
    """Reads packets one at a time from a binary btsnoop stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.type = SnoopFileType.MONITOR
        self.reset()

    def _read(self, count: int) -> bytes | None:
        data = self._stream.read(count)
        if data is None or len(data) != count:
            return None
        return data

    def reset(self) -> None:
        """Rewind (where possible) and validate the file header."""
        if self._stream.seekable():
            self._stream.seek(0)
        header = self._read(_HEADER.size)
        if header is None:
            raise ParseError("Not a bluetooth snoop file")
        magic, version, file_type = _HEADER.unpack(header)
        if magic != MAGIC or version != 1 or file_type not in SnoopFileType._value2member_map_:
            raise ParseError("Not a bluetooth snoop file")
        self.type = SnoopFileType(file_type)

    def next_packet(self) -> Packet | None:
        """Return the next packet, or None at the end or at an unreadable record."""
        record = self._read(_RECORD.size)
        if record is None:
            return None
        original_length, length, flags, _drops, stamp = _RECORD.unpack(record)
        if original_length != length or length > MAX_PACKET_SIZE:
            return None
        data = self._read(length)
        if data is None:
            return None
        if self.type == SnoopFileType.MONITOR:
            return Packet(idx=flags >> 16, opcode=flags & 0xFFFF, stamp=stamp, data=data)
        return Packet(idx=0, opcode=_HCI_OPCODES[flags & 0x3], stamp=stamp, data=data)

    def __iter__(self) -> Iterator[Packet]:
        while (packet := self.next_packet()) is not None:
            yield packet