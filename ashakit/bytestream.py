"""Bounds-checked little-endian reader over Bluetooth packet bytes, and hex helpers."""

from __future__ import annotations

from typing import Iterable


class ParseError(RuntimeError):
    """A packet was truncated or malformed."""


class BtBufferStream:
    """Consumes bytes from the front of a buffer, refusing to read past the end."""

    def __init__(self, context: str, data: bytes | bytearray | memoryview = b"") -> None:
        self.context = context
        self._data = memoryview(bytes(data))

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return bytes(self._data)

    def _take(self, count: int, context: str | None = None) -> memoryview:
        if count < 0 or count > len(self._data):
            raise ParseError(f"{context if context is not None else self.context} truncated")
        taken = self._data[:count]
        self._data = self._data[count:]
        return taken

    def _int(self, size: int) -> int:
        return int.from_bytes(self._take(size), "little")

    def u8(self) -> int:
        return self._int(1)

    def u16(self) -> int:
        return self._int(2)

    def u32(self) -> int:
        return self._int(4)

    def u64(self) -> int:
        return self._int(8)

    def skip(self, count: int) -> None:
        self._take(count)

    def sub(self, context: str, count: int | None = None) -> BtBufferStream:
        """Split off the next *count* bytes (all remaining by default) as a new stream."""
        if count is None:
            count = len(self._data)
        return BtBufferStream(context, self._take(count, context))

    def peek_u16(self) -> int:
        """Read a 16-bit value without consuming it."""
        if len(self._data) < 2:
            raise ParseError(f"{self.context} truncated")
        return int.from_bytes(self._data[:2], "little")

    def uuid(self) -> str:
        """Read a UUID whose size is implied by the remaining length."""
        if len(self._data) == 2:
            return self.uuid16()
        if len(self._data) == 16:
            return self.uuid128()
        raise ValueError("Not enough context to determine the uuid size")

    def uuid16(self) -> str:
        return f"0000{self.u16():04x}-0000-1000-8000-00805f9b34fb"

    def uuid128(self) -> str:
        h = bytes(reversed(self._take(16))).hex()
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:]}"

    def mac(self) -> str:
        # The address is stored least significant byte first.
        return ":".join(f"{b:02x}" for b in reversed(self._take(6)))

    def error(self, message: str) -> None:
        raise ParseError(f"{self.context} {message}")


def hex_value(value: int, width: int = 4) -> str:
    """Zero-padded lower-case hex of *value* with at least *width* digits."""
    return f"{value:0{width}x}"


def hex_bytes(data: Iterable[int]) -> str:
    """Space-separated two-digit hex of each byte."""
    return " ".join(f"{b:02x}" for b in data)


def hex_dump(data: Iterable[int]) -> str:
    """Render a byte buffer as a one-line hex dump."""
    return hex_bytes(data)


def to_string(data: bytes | bytearray) -> str:
    """Show a value as text when it looks printable, otherwise as (truncated) hex."""
    data = bytes(data)
    printable = True
    null_count = 0
    for b in data:
        if b == 0:
            null_count += 1
        elif b < 0x20 or b > 0x7E:
            printable = False
            break
    if null_count > 1 or (null_count == 1 and data[-1] != 0):
        printable = False

    if printable:
        if len(data) > 40:
            return data[:40].split(b"\0", 1)[0].decode("ascii") + "..."
        return data.split(b"\0", 1)[0].decode("ascii")
    if len(data) > 20:
        return f"{hex_bytes(data[:20])} plus {len(data) - 20} more"
    return hex_bytes(data)