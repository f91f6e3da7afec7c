"""Walks a Bluetooth capture and reports ASHA hearing-aid traffic and stream health."""

from __future__ import annotations

import itertools
import sys
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, TextIO

from .bytestream import BtBufferStream, ParseError, hex_bytes, hex_value, to_string
from .database import BtDatabase
from .gatt import (
    ASHA_AUDIO_STATUS,
    ASHA_LE_PSM_OUT,
    ASHA_READ_ONLY_PROPERTIES,
    DEVICE_NAME,
    FEATURE_2MPHY,
    FEATURE_DLE,
    L2CapCreditConnection,
    StreamCids,
)
from .parser import BtParser
from .snoopfile import BtSnoopFile

AUDIO_FRAME_SIZE = 161
FRAME_INTERVAL_US = 20000

_AUDIO_STATUS_TEXT = {0: " [Success]", -1: " [Unknown Command]", -2: " [Illegal Parameters]"}


class _Side(Enum):
    UNKNOWN = auto()
    MONO = auto()
    LEFT = auto()
    RIGHT = auto()


_STREAM_LABELS = {
    _Side.LEFT: "Left Stream:    ",
    _Side.RIGHT: "Right Stream:   ",
    _Side.MONO: "Mono Stream:    ",
    _Side.UNKNOWN: "Unknown Stream: ",
}


@dataclass(eq=False)
class _DeviceInfo:
    psm: int = 0
    description: str = ""
    side: _Side = _Side.UNKNOWN
    hisync: int = 0


@dataclass(eq=False)
class _StreamInfo:
    order: int
    device: int = 0
    cids: StreamCids = field(default_factory=StreamCids)
    dinfo: Optional[_DeviceInfo] = None
    other: Optional["_StreamInfo"] = None
    credits: int = 0
    seq: int = 0
    expected_stamp: int = 0
    outfile: Optional[BinaryIO] = None

    def close(self) -> None:
        if self.outfile is not None:
            self.outfile.close()
            self.outfile = None


def _text(data: bytes) -> str:
    return data.split(b"\0", 1)[0].decode("utf-8", errors="replace")


class SnoopAnalyzer:
    """Hooks a parser and prints a line for every interesting event it reports."""

    def __init__(
        self,
        parser: BtParser,
        out: Optional[TextIO] = None,
        extract_audio: bool = False,
        output_dir: str | Path = ".",
    ) -> None:
        self.parser = parser
        self.out = out if out is not None else sys.stdout
        self.extract_audio = extract_audio
        self.output_dir = Path(output_dir)
        self.frame_idx = 0
        self.stamp = 0
        self._devices: dict[int, _DeviceInfo] = {}
        self._streams: dict[tuple[int, StreamCids], _StreamInfo] = {}
        self._next_read_is_psm: dict[int, bool] = {}
        self._order = itertools.count()

        parser.on_note = self._on_note
        parser.on_connection = self._on_connection
        parser.on_disconnect = self._on_disconnect
        parser.on_dle_change = self._on_dle_change
        parser.on_remote_features = self._on_remote_features
        parser.on_service = self._on_service
        parser.on_characteristic = self._on_characteristic
        parser.on_descriptor = self._on_descriptor
        parser.on_write = self._on_write
        parser.on_read = self._on_read
        parser.on_notify = self._on_notify
        parser.on_failed_write = self._on_failed_write
        parser.on_failed_read = self._on_failed_read
        parser.on_new_credit_connection = self._on_new_credit_connection
        parser.on_data = self._on_data

    def __enter__(self) -> SnoopAnalyzer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _print(self, line: str) -> None:
        self.out.write(line + "\n")

    def run(self, snoop: Iterable) -> None:
        """Feed every packet of *snoop* through the parser."""
        for packet in snoop:
            self.frame_idx += 1
            self.stamp = packet.stamp
            try:
                self.parser.parse(packet.opcode, BtBufferStream("Transport", packet.data))
            except ParseError as e:
                self._print(f"Invalid packet {self.frame_idx}: {e}")

    def close(self) -> None:
        """Close any audio files opened for extraction."""
        for stream in self._streams.values():
            stream.close()

    # -- callbacks --------------------------------------------------------

    def _on_note(self, note: str) -> None:
        self._print(f"System Note: {note.split(chr(0), 1)[0]}")

    def _on_connection(self, connection, status, mac, interval, latency, timeout) -> None:
        self._print(
            f"New Connection: {hex_value(connection)} {mac} params({interval}, {latency}, {timeout})"
        )

    def _on_disconnect(self, connection, status, mac, reason) -> None:
        self._print(f"Disconnect:     {hex_value(connection)} {mac} {hex_value(reason, 2)}")
        for key in [k for k in self._streams if k[0] == connection]:
            self._streams.pop(key).close()
        self._devices.pop(connection, None)

    def _on_dle_change(self, connection, tx_dlen, tx_time, rx_dlen, rx_time) -> None:
        self._print(
            f"Dle Change:     {hex_value(connection)} tx: {tx_dlen} {tx_time}μs"
            f"   rx: {rx_dlen} {rx_time}μs"
        )

    def _on_remote_features(self, connection, features) -> None:
        dle = "true" if features & FEATURE_DLE else "false"
        phy = "true" if features & FEATURE_2MPHY else "false"
        self._print(f"Supported:      {hex_value(connection)} DLE: {dle} 2MPHY: {phy}")

    def _on_service(self, connection, handle, end_handle, uuid) -> None:
        self._print(
            f"Service:        {hex_value(connection)} {hex_value(handle)} "
            f"{hex_value(end_handle)} {uuid}"
        )

    def _on_characteristic(self, connection, handle, value, props, uuid) -> None:
        self._print(
            f"Characteristic: {hex_value(connection)} {hex_value(handle)} {hex_value(value)} "
            f"{hex_value(props, 2)} {uuid}"
        )

    def _on_descriptor(self, connection, char_handle, desc_handle, uuid) -> None:
        self._print(
            f"Descriptor:     {hex_value(connection)} {hex_value(char_handle)} "
            f"{hex_value(desc_handle)} {uuid}"
        )

    def _describe(self, connection: int, handle: int) -> str:
        return (
            f"{hex_value(connection)} {hex_value(handle)} "
            f"{self.parser.handle_description(connection, handle)}"
        )

    def _on_write(self, connection, handle, data: bytes) -> None:
        self._print(f"Write:          {self._describe(connection, handle)} {to_string(data)}")

    def _on_read(self, connection, handle, data: bytes) -> None:
        self._print(f"Read:           {self._describe(connection, handle)} {to_string(data)}")
        info = self.parser.find_handle(connection, handle)
        if info.characteristic is None:
            # Discovery was not captured; guess from the shape of the value.
            if len(data) == 2 and self._next_read_is_psm.get(connection, False):
                self._print("   Guessing that this is ASHA_LE_PSM_OUT")
                self.parser.add_characteristic_guess(connection, handle, ASHA_LE_PSM_OUT)
            self._next_read_is_psm[connection] = False
            if len(data) == 17 and data[0] == 0x01 and data[10] == 0x01 and data[15] == 0x02:
                self._print("   Guessing that this is ASHA_READ_ONLY_PROPERTIES")
                self.parser.add_characteristic_guess(connection, handle, ASHA_READ_ONLY_PROPERTIES)
                self._next_read_is_psm[connection] = True
            info = self.parser.find_handle(connection, handle)
        else:
            self._next_read_is_psm[connection] = False

        characteristic = info.characteristic
        if characteristic is None:
            return
        device = self._devices.setdefault(connection, _DeviceInfo())
        if characteristic.uuid == ASHA_LE_PSM_OUT and len(data) == 2:
            device.psm = data[0] | (data[1] << 8)
            self._print(f"   PSM: {device.psm}")
        elif characteristic.uuid == DEVICE_NAME:
            device.description = _text(data)
            self._print(f"   Name: {device.description}")
        elif characteristic.uuid == ASHA_READ_ONLY_PROPERTIES and len(data) == 17:
            props = BtBufferStream("ASHA_READ_ONLY_PROPERTIES", data)
            version = props.u8()
            caps = props.u8()
            hisync = props.u64()
            props.u8()  # feature map
            props.u16()  # render delay
            props.skip(2)  # reserved
            props.u16()  # codecs
            if version == 1:
                if not caps & 2:
                    device.side = _Side.MONO
                else:
                    device.side = _Side.RIGHT if caps & 1 else _Side.LEFT
                device.hisync = hisync
                mode = "stereo " if caps & 2 else "mono "
                side = "right " if caps & 1 else "left "
                self._print(f"   Props: {mode}{side}{hex_value(hisync, 16)}")

    def _on_notify(self, connection, handle, data: bytes) -> None:
        line = f"Notify:         {self._describe(connection, handle)} {hex_bytes(data)}"
        info = self.parser.find_handle(connection, handle)
        if (
            info.characteristic is not None
            and info.characteristic.uuid == ASHA_AUDIO_STATUS
            and len(data) == 1
        ):
            line += _AUDIO_STATUS_TEXT.get(int.from_bytes(data, "little", signed=True), "")
        self._print(line)

    def _on_failed_write(self, connection, handle, code) -> None:
        self._print(f"Failed Write:   {self._describe(connection, handle)} {code}")

    def _on_failed_read(self, connection, handle, code) -> None:
        self._print(f"Failed Read:    {self._describe(connection, handle)} {code}")

    def _new_stream(self, cids: StreamCids) -> _StreamInfo:
        return _StreamInfo(order=next(self._order), cids=cids)

    def _on_new_credit_connection(self, connection, status, info: L2CapCreditConnection) -> None:
        if status:
            self._print(
                f"Failed CoC:     {hex_value(connection)} PSM: {hex_value(info.psm)} Status: {status}"
            )
            return
        device = self._devices.setdefault(connection, _DeviceInfo())
        if device.psm == info.psm and info.outgoing:
            prefix = _STREAM_LABELS[device.side]
            stream = self._streams.get((connection, info.cids))
            if stream is None:
                stream = self._streams[(connection, info.cids)] = self._new_stream(info.cids)
            stream.cids = info.cids
            stream.device = connection
            stream.dinfo = device
            for _, other in sorted(self._streams.items(), key=lambda kv: kv[0]):
                if (
                    other.device != connection
                    and other.dinfo is not None
                    and other.dinfo.hisync == device.hisync
                ):
                    stream.other = other
                    other.other = stream
                    break
        else:
            prefix = "New CoC:        "
        self._print(
            f"{prefix}{hex_value(connection)} PSM: {hex_value(info.psm)} MTU: {info.mtu} "
            f"MPS: {info.mps} Credits: {info.tx_credits}"
        )

    def _guess_stream(self, connection: int, info: L2CapCreditConnection) -> _StreamInfo:
        self._print(
            f"   Guessing that connection {connection} stream {info.cids.tx} is g.722 audio"
        )
        key = (connection, info.cids)
        stream = self._streams[key] = self._new_stream(info.cids)
        for (other_conn, other_cids), other in sorted(self._streams.items(), key=lambda kv: kv[0]):
            if other_conn != connection and other_cids.rx == 0 and other.other is None:
                stream.other = other
                other.other = stream
                self._print(
                    f"   Guessing that {hex_value(connection)}:{hex_value(info.cids.tx)}"
                    f" and {hex_value(other_conn)}:{hex_value(other_cids.tx)} are a stereo pair."
                )
                break
        return stream

    def _on_data(self, connection, rx, info: L2CapCreditConnection, data: bytes, fragment_count) -> None:
        length = len(data)
        stream = self._streams.get((connection, info.cids))
        if stream is None:
            if length != AUDIO_FRAME_SIZE or rx:
                return
            stream = self._guess_stream(connection, info)

        if length > 1 and self.extract_audio:
            if stream.outfile is None:
                name = f"{hex_value(connection)}_{hex_value(info.cids.tx)}.g722"
                stream.outfile = open(self.output_dir / name, "wb")
            # The first byte is the sequence number.
            stream.outfile.write(data[1:])

        stream.credits = info.tx_credits
        line = f"{self.frame_idx:8d}{' >> ' if rx else ' << '}{hex_value(connection)}"
        other = stream.other
        if other is not None:
            if stream.dinfo is not None and other.dinfo is not None:
                is_left = stream.dinfo.side == _Side.LEFT
                left, right = (stream, other) if is_left else (other, stream)
                side = " left  " if is_left else " right "
                line += (
                    f"{side}{left.credits:6d}{right.credits:6d}"
                    f"({left.credits - right.credits:2d}) {length} bytes"
                )
            else:
                # Which side is which is unknown; label by discovery order.
                if stream.order < other.order:
                    dev1, dev2, label = stream, other, " dev1 "
                else:
                    dev1, dev2, label = other, stream, " dev2 "
                line += (
                    f"{label}{dev1.credits:6d}{dev2.credits:6d}"
                    f"({dev1.credits - dev2.credits:2d}) {length} bytes"
                )
        else:
            line += f" mono {info.tx_credits} {length} bytes"
        if fragment_count > 1:
            line += f" {fragment_count} fragments"
        if length > 1:
            seq = data[0]
            line += f" {seq:3d} seq"
            if seq != stream.seq + 1 and seq != 0:
                line += f" (Missing {(seq - stream.seq + 1) & 0xFFFFFFFF} frames)"
            stream.seq = seq
        if stream.expected_stamp == 0:
            stream.expected_stamp = self.stamp
        dt = (self.stamp - stream.expected_stamp) / 1000.0
        line += f" {dt:+9.3f} ms"
        stream.expected_stamp += FRAME_INTERVAL_US
        self._print(line)


_USAGE = """\
Usage: {prog} [opts] capture.snoop
This tool will analyze a bluetooth capture to check for asha protocol usage, and
will attempt to find common problems.
Options:
   --mac <mac_address>  Mac address to assume for remote device. This is used to
                        look up characteristics that may have been discovered
                        during a previous connection or dump file if the pairing
                        is not part of the snoop file.
   --extract            Extract audio into <cid>_<connid>.g722 files

Parsed characteristics are cached in ~/.local/share/snoop_analyze/cache/ to be
used in the future. These characteristics can also be manually copied by the
user from the bluez cache at /var/lib/bluetooth/<hci-mac>/cache/

Stream analysis output will look like this:
     183 << 0e02 right      0     7(-7) 161 bytes   0 seq    +0.000 ms
     184 << 0e01 left       7     7( 0) 161 bytes   0 seq    +0.000 ms
     187 << 0e02 right      7     6( 1) 161 bytes   1 seq    +0.326 ms
     188 << 0e01 left       6     6( 0) 161 bytes   1 seq    +0.304 ms
   The columns are:
      1. Packet number
      2. << for transmit, >> for receive
      3. Device id
      4. Human readable device label ("left" or "right")
      5. Current left credits
      6. Current right credits
      7. Delta between left or right (this should stay less than 4)
      8. Size of data frame plus sequence header (should be 161 bytes)
      9. One byte sequence number
     10. Delta between the audio offset from the beginning of the stream
"""


def main(argv: Optional[list[str]] = None) -> int:
    """Command-line entry point: analyze a capture file or standard input."""
    args = list(sys.argv[1:] if argv is None else argv)
    prog = Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "snoop_analyze"
    filename = ""
    default_mac = ""
    extract_audio = False
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--mac" and i + 1 < len(args):
            default_mac = args[i + 1]
            i += 1
        elif (len(arg) > 1 and not arg.startswith("-")) or arg == "-":
            if arg != "-":
                filename = arg
        elif arg == "--extract":
            extract_audio = True
        else:
            sys.stdout.write(_USAGE.format(prog=prog))
            return 1
        i += 1

    if filename:
        try:
            infile: BinaryIO = open(filename, "rb")
        except OSError:
            print("Unable to open file")
            return 1
    else:
        infile = sys.stdin.buffer

    try:
        try:
            snoop = BtSnoopFile(infile)
        except ParseError as e:
            print(e)
            return 1
        with BtDatabase(default_mac=default_mac) as database:
            with SnoopAnalyzer(BtParser(database), sys.stdout, extract_audio) as analyzer:
                analyzer.run(snoop)
    finally:
        if filename:
            infile.close()
    return 0