"""Stateful decoder for HCI, ATT and L2CAP traffic found in Bluetooth captures."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Optional

from .bytestream import BtBufferStream, ParseError
from .database import BtDatabase
from .gatt import (
    GATT_CCC,
    GATT_CHAR_DESCRIPTION,
    GATT_CHARACTERISTICS,
    GATT_SERVICES,
    LE_CREATE_CONNECTION,
    LE_EXTENDED_CREATE_CONNECTION,
    SERVICE_CHANGED,
    GattCharacteristic,
    GattService,
    L2CapCreditConnection,
    Opcode,
    StreamCids,
    uuid_name,
)

Callback = Optional[Callable[..., None]]


class HandleType(Enum):
    """What an attribute handle refers to."""

    INVALID = auto()
    SERVICE = auto()
    CHAR = auto()
    CHAR_CCC = auto()
    CHAR_DESCRIPTION = auto()
    CHAR_VALUE = auto()
    CHAR_DESCRIPTOR = auto()


@dataclass
class HandleInfo:
    """Result of looking up an attribute handle on a connection."""

    type: HandleType = HandleType.INVALID
    handle: int = 0
    service: Optional[GattService] = None
    characteristic: Optional[GattCharacteristic] = None


class _ConnType(Enum):
    UNKNOWN = auto()
    L2CAP = auto()


class _Phy(Enum):
    UNKNOWN = auto()
    PHY1M = auto()
    PHY2M = auto()


@dataclass
class _PhyParams:
    interval_min: int = 0
    interval_max: int = 0
    latency: int = 0
    timeout: int = 0
    celength_min: int = 0
    celength_max: int = 0


_PHY_PARAM_FIELDS = tuple(f.name for f in dataclasses.fields(_PhyParams))


@dataclass
class _PendingConnection:
    phy: int = 0
    p1m: _PhyParams = field(default_factory=_PhyParams)
    p2m: _PhyParams = field(default_factory=_PhyParams)


@dataclass
class _Pending:
    """Per-direction temporary parse state."""

    current_uuid: str = ""
    fragment: bytearray = field(default_factory=bytearray)
    fragment_count: int = 0
    expected_fragment_size: int = 0
    handle: int = 0
    ecred: dict[int, L2CapCreditConnection] = field(default_factory=dict)


@dataclass
class _ConnectionInfo:
    handle: int = 0
    type: _ConnType = _ConnType.UNKNOWN
    mac: str = ""
    phy: _Phy = _Phy.UNKNOWN
    interval: int = 0
    latency: int = 0
    timeout: int = 0
    celength: int = 0
    tx_dlen: int = 0
    tx_time: int = 0
    rx_dlen: int = 0
    rx_time: int = 0
    features: int = 0
    peripheral_mtu: int = 0
    central_mtu: int = 0
    services: dict[int, GattService] = field(default_factory=dict)
    characteristics: dict[int, GattCharacteristic] = field(default_factory=dict)
    ecred: dict[StreamCids, L2CapCreditConnection] = field(default_factory=dict)
    pending: tuple[_Pending, _Pending] = field(default_factory=lambda: (_Pending(), _Pending()))


class BtParser:
    """Decodes packets and reports what it finds through the on_* callbacks."""

    def __init__(self, database: Optional[BtDatabase] = None) -> None:
        self.database = database if database is not None else BtDatabase()
        self.connections: dict[int, _ConnectionInfo] = {}
        self._pending_connection = _PendingConnection()

        self.on_note: Callback = None
        self.on_connection: Callback = None
        self.on_dle_change: Callback = None
        self.on_remote_features: Callback = None
        self.on_service: Callback = None
        self.on_characteristic: Callback = None
        self.on_descriptor: Callback = None
        self.on_write: Callback = None
        self.on_read: Callback = None
        self.on_notify: Callback = None
        self.on_failed_write: Callback = None
        self.on_failed_read: Callback = None
        self.on_new_credit_connection: Callback = None
        self.on_data: Callback = None
        self.on_disconnect: Callback = None

    # -- public API -------------------------------------------------------

    def parse(self, opcode: int, stream: BtBufferStream) -> None:
        """Decode one captured packet of the given monitor opcode."""
        if opcode == Opcode.COMMAND_PKT:
            self._command_pkt(stream.sub("HCI Command"))
        elif opcode == Opcode.EVENT_PKT:
            self._event_pkt(stream.sub("HCI Event"))
        elif opcode == Opcode.ACL_TX_PKT:
            self._acl_pkt(False, stream.sub("ACL TX Packet"))
        elif opcode == Opcode.ACL_RX_PKT:
            self._acl_pkt(True, stream.sub("ACL RX Packet"))
        elif opcode == Opcode.SYSTEM_NOTE:
            self._emit(self.on_note, bytes(stream).decode("utf-8", errors="replace"))

    def find_handle(self, connection: int, handle: int) -> HandleInfo:
        """Work out which service, characteristic or descriptor *handle* belongs to."""
        conn = self._conn(connection)
        if not conn.services:
            for s in self.database.services(""):
                conn.services[s.handle] = dataclasses.replace(s)
        if not conn.characteristics:
            for c in self.database.characteristics(""):
                conn.characteristics[c.handle] = dataclasses.replace(c)

        pservice: Optional[GattService] = None
        for key, s in sorted(conn.services.items()):
            if key == handle:
                return HandleInfo(HandleType.SERVICE, handle, s)
            if s.handle < handle <= s.end_handle:
                pservice = s
                break

        def outside(key: int) -> bool:
            return pservice is not None and (pservice.handle > key or pservice.end_handle < key)

        chars = sorted(conn.characteristics.items())
        for key, c in chars:
            if outside(key):
                continue
            if c.value == handle:
                return HandleInfo(HandleType.CHAR_VALUE, handle, pservice, c)
            if c.ccc == handle:
                return HandleInfo(HandleType.CHAR_CCC, handle, pservice, c)
            if c.description == handle:
                return HandleInfo(HandleType.CHAR_DESCRIPTION, handle, pservice, c)
            if key == handle:
                return HandleInfo(HandleType.CHAR, handle, pservice, c)

        # The service-changed ccc is usually never discovered explicitly.
        for key, c in chars:
            if outside(key):
                continue
            if c.value + 1 == handle and c.uuid == SERVICE_CHANGED:
                return HandleInfo(HandleType.CHAR_CCC, handle, pservice, c)
        return HandleInfo()

    def handle_description(self, connection: int, handle: int) -> str:
        return self.describe(self.find_handle(connection, handle))

    def describe(self, info: HandleInfo) -> str:
        """Human-readable description of a looked-up handle."""
        if info.type == HandleType.SERVICE and info.service is not None:
            return uuid_name(info.service.uuid)
        c = info.characteristic
        if c is None:
            return "unknown"
        suffix = {
            HandleType.CHAR: "",
            HandleType.CHAR_CCC: " ccc",
            HandleType.CHAR_DESCRIPTION: " description",
            HandleType.CHAR_VALUE: " value",
            HandleType.CHAR_DESCRIPTOR: " descriptor",
        }.get(info.type)
        if suffix is None:
            return "unknown"
        return uuid_name(c.uuid) + suffix

    def add_characteristic_guess(self, connection: int, value_handle: int, uuid: str) -> None:
        """Record a characteristic inferred from its traffic, keyed by its value handle."""
        chars = self._conn(connection).characteristics
        characteristic = chars.setdefault(value_handle, GattCharacteristic())
        characteristic.value = value_handle
        characteristic.uuid = uuid
        characteristic.guess = True

    # -- helpers ----------------------------------------------------------

    def _conn(self, handle: int) -> _ConnectionInfo:
        return self.connections.setdefault(handle, _ConnectionInfo())

    @staticmethod
    def _emit(callback: Callback, *args: object) -> None:
        if callback is not None:
            callback(*args)

    def _load_cached(self, conn: _ConnectionInfo) -> None:
        for s in self.database.services(conn.mac):
            conn.services[s.handle] = dataclasses.replace(s)
        for c in self.database.characteristics(conn.mac):
            conn.characteristics[c.handle] = dataclasses.replace(c)

    # -- HCI commands and events ------------------------------------------

    def _command_pkt(self, pkt: BtBufferStream) -> None:
        opcode = pkt.u16()
        if opcode == LE_CREATE_CONNECTION:
            b = pkt.sub("LE Create Connection", 25)
            b.skip(13)
            pending = self._pending_connection = _PendingConnection(phy=1)
            for name in _PHY_PARAM_FIELDS:
                setattr(pending.p1m, name, b.u16())
        elif opcode == LE_EXTENDED_CREATE_CONNECTION:
            b = pkt.sub("LE Extended Create Connection")
            b.skip(10)
            pending = self._pending_connection = _PendingConnection()
            pending.phy = b.u8()

            def read_phy_param() -> tuple[int, int]:
                p1m = p2m = 0
                for bit in range(8):
                    if pending.phy & (1 << bit):
                        value = b.u16()
                        if bit == 0:
                            p1m = value
                        elif bit == 1:
                            p2m = value
                return p1m, p2m

            read_phy_param()  # scan interval
            read_phy_param()  # scan window
            for name in _PHY_PARAM_FIELDS:
                p1m, p2m = read_phy_param()
                setattr(pending.p1m, name, p1m)
                setattr(pending.p2m, name, p2m)

    def _event_pkt(self, pkt: BtBufferStream) -> None:
        code = pkt.u8()
        if code == 0x05:
            self._disconnect_event(pkt.sub("Disconnect Complete"))
        elif code == 0x3E:
            self._le_meta_event(pkt.sub("LE Meta Event"))

    def _disconnect_event(self, pkt: BtBufferStream) -> None:
        length = pkt.u8()
        if length > len(pkt):
            pkt.error("bad length")
        if length != 4:
            pkt.error("Unexpected length")
        status = pkt.u8()
        handle = pkt.u16()
        reason = pkt.u8()
        info = self._conn(handle)
        self._emit(self.on_disconnect, handle, status, info.mac, reason)
        self.connections.pop(handle, None)

    def _finish_connection(self, conn: _ConnectionInfo, status: int) -> None:
        conn.celength = self._pending_connection.p1m.celength_min
        conn.phy = _Phy.PHY2M if self._pending_connection.phy & 2 else _Phy.PHY1M
        self._emit(
            self.on_connection,
            conn.handle, status, conn.mac, conn.interval, conn.latency, conn.timeout,
        )
        self._load_cached(conn)

    def _le_meta_event(self, pkt: BtBufferStream) -> None:
        length = pkt.u8()
        if length > len(pkt):
            pkt.error("bad length")
        subcode = pkt.u8()
        if subcode == 0x01:  # LE Connection Complete
            b = pkt.sub("LE Connection Complete")
            status = b.u8()
            handle = b.u16()
            b.u8()  # role
            conn = self.connections[handle] = _ConnectionInfo(handle=handle, type=_ConnType.L2CAP)
            b.u8()  # peer address type
            conn.mac = b.mac()
            conn.interval = b.u16()
            conn.latency = b.u16()
            conn.timeout = b.u16()
            self._finish_connection(conn, status)
        elif subcode == 0x0A:  # LE Enhanced Connection Complete
            b = pkt.sub("LE Enhanced Connection Complete")
            status = b.u8()
            handle = b.u16()
            conn = self.connections[handle] = _ConnectionInfo(handle=handle)
            b.skip(2)  # role, peer address type
            conn.type = _ConnType.L2CAP
            conn.mac = b.mac()
            b.skip(12)  # local and peer resolvable addresses
            conn.interval = b.u16()
            conn.latency = b.u16()
            conn.timeout = b.u16()
            b.u8()  # clock accuracy
            self._finish_connection(conn, status)
        elif subcode == 0x07:  # LE Data Length Change
            b = pkt.sub("LE Data Length Change")
            conn = self._conn(b.u16())
            conn.tx_dlen = b.u16()
            conn.tx_time = b.u16()
            conn.rx_dlen = b.u16()
            conn.rx_time = b.u16()
            self._emit(
                self.on_dle_change,
                conn.handle, conn.tx_dlen, conn.tx_time, conn.rx_dlen, conn.rx_time,
            )
        elif subcode == 0x04:  # LE Read Remote Features
            b = pkt.sub("LE Data Length Change")
            b.u8()  # status
            handle = b.u16()
            flags = b.u64()
            self._conn(handle).features = flags
            self._emit(self.on_remote_features, handle, flags)
        elif subcode == 0x0C:  # PHY update complete
            b = pkt.sub("PHY update complete")
            b.u8()  # status
            handle = b.u16()
            tx = b.u8()
            b.u8()  # rx
            self._conn(handle).phy = {1: _Phy.PHY1M, 2: _Phy.PHY2M}.get(tx, _Phy.UNKNOWN)

    # -- Attribute protocol -----------------------------------------------

    def _find_information_response(self, rx: bool, connection: int, b: BtBufferStream) -> None:
        fmt = b.u8()
        if fmt not in (1, 2):
            raise ParseError("implement additional uuid types please!")
        response_size = 4 if fmt == 1 else 18
        count = len(b) // response_size
        conn = self._conn(connection)
        for _ in range(count):
            binfo = b.sub("Information Data", response_size)
            handle = binfo.u16()
            uuid = binfo.uuid16() if fmt == 1 else binfo.uuid128()
            # The descriptor belongs to the closest characteristic below it.
            below = [key for key in conn.characteristics if key < handle]
            if not below:
                continue
            key = max(below)
            characteristic = conn.characteristics[key]
            if uuid == GATT_CHAR_DESCRIPTION:
                characteristic.description = handle
            elif uuid == GATT_CCC:
                characteristic.ccc = handle
            self.database.cache_characteristic(conn.mac, characteristic)
            self._emit(self.on_descriptor, connection, key, handle, uuid)

    def _read_by_type_response(
        self, rx: bool, connection: int, group: bool, b: BtBufferStream
    ) -> None:
        response_size = b.u8()
        count = 0 if response_size == 0 else len(b) // response_size
        conn = self._conn(connection)
        pending = conn.pending[int(not rx)]
        current_uuid = pending.current_uuid
        for _ in range(count):
            rsp = b.sub("Read By Type" if group else "Read By Group Type", response_size)
            handle = rsp.u16()
            end_handle = rsp.u16() if group else 0
            if current_uuid == GATT_SERVICES:
                uuid = rsp.uuid()
                service = conn.services.setdefault(handle, GattService())
                service.handle = handle
                service.end_handle = end_handle
                service.uuid = uuid
                self.database.cache_service(conn.mac, service)
                self._emit(self.on_service, connection, handle, end_handle, uuid)
            elif current_uuid == GATT_CHARACTERISTICS:
                properties = rsp.u8()
                value_handle = rsp.u16()
                uuid = rsp.uuid()
                characteristic = conn.characteristics.setdefault(handle, GattCharacteristic())
                characteristic.handle = handle
                characteristic.value = value_handle
                characteristic.properties = properties
                characteristic.uuid = uuid
                self.database.cache_characteristic(conn.mac, characteristic)
                self._emit(self.on_characteristic, connection, handle, value_handle, properties, uuid)
        pending.current_uuid = ""

    def _attribute_error(self, rx: bool, handle: int, b: BtBufferStream) -> None:
        pending = self._conn(handle).pending[int(not rx)]
        original_method = b.u8() & 0x3F
        b.u16()  # handle in error
        error_code = b.u8()
        if original_method == 0x11:
            pending.current_uuid = ""
        elif original_method == 0x0A:
            self._emit(self.on_failed_read, handle, pending.handle, error_code)
            pending.handle = 0
        elif original_method == 0x12:
            self._emit(self.on_failed_write, handle, pending.handle, error_code)
            pending.handle = 0

    def _parse_attribute(self, rx: bool, handle: int, b: BtBufferStream) -> None:
        conn = self._conn(handle)
        method = b.u8() & 0x3F
        if method == 0x01:
            self._attribute_error(rx, handle, b.sub("Attribute Error Response", 4))
        elif method in (0x02, 0x03):
            mtu = b.sub("Exchange MTU").u16()
            if rx:
                conn.peripheral_mtu = mtu
            else:
                conn.central_mtu = mtu
        elif method == 0x05:
            self._find_information_response(rx, handle, b.sub("Find Information Response"))
        elif method in (0x08, 0x10):
            bg = b.sub("Read By Type Request")
            bg.skip(4)  # starting and ending handle
            conn.pending[int(rx)].current_uuid = bg.uuid()
        elif method == 0x09:
            self._read_by_type_response(rx, handle, False, b.sub("Read By Type Response"))
        elif method == 0x11:
            self._read_by_type_response(rx, handle, True, b.sub("Read By Group Type Response"))
        elif method == 0x12:
            w = b.sub("Write Request")
            write_handle = w.u16()
            conn.pending[int(rx)].handle = write_handle
            self._emit(self.on_write, handle, write_handle, bytes(w))
        elif method == 0x13:
            b.sub("Write Response")  # a successful write carries no payload
        elif method == 0x0A:
            conn.pending[int(rx)].handle = b.sub("Read Request").u16()
        elif method == 0x0B:
            r = b.sub("Read Response")
            pending = conn.pending[int(not rx)]
            if pending.handle:
                self._emit(self.on_read, handle, pending.handle, bytes(r))
                pending.handle = 0
        elif method == 0x1B:
            n = b.sub("Value Notification")
            value_handle = n.u16()
            self._emit(self.on_notify, handle, value_handle, bytes(n))

    # -- L2CAP ------------------------------------------------------------

    def _credit_connection_request(self, rx: bool, handle: int, ident: int, b: BtBufferStream) -> None:
        psm = b.u16()
        cid = b.u16()
        mtu = b.u16()
        mps = b.u16()
        credits = b.u16()
        self._conn(handle).pending[int(rx)].ecred[ident] = L2CapCreditConnection(
            outgoing=not rx,
            cids=StreamCids(rx=cid if rx else 0, tx=0 if rx else cid),
            psm=psm,
            mtu=mtu,
            mps=mps,
            tx_credits=0 if rx else credits,
        )

    def _credit_connection_response(self, rx: bool, handle: int, ident: int, b: BtBufferStream) -> None:
        cid = b.u16()
        mtu = b.u16()
        mps = b.u16()
        credits = b.u16()
        result = b.u16()
        conn = self._conn(handle)
        requests = conn.pending[int(not rx)].ecred
        pending = dataclasses.replace(requests.get(ident, L2CapCreditConnection()))
        if rx:
            pending.outgoing = True
            pending.cids = dataclasses.replace(pending.cids, rx=cid)
            pending.tx_credits = credits
        else:
            pending.outgoing = False
            pending.cids = dataclasses.replace(pending.cids, tx=cid)
        pending.mps = min(mps, pending.mps) if pending.mps else mps
        pending.mtu = min(mtu, pending.mtu) if pending.mtu else mtu

        if result == 0:
            conn.ecred[pending.cids] = dataclasses.replace(pending)
        self._emit(self.on_new_credit_connection, handle, result, pending)
        requests.pop(ident, None)

    def _credit_connection_add_credit(self, rx: bool, handle: int, b: BtBufferStream) -> None:
        cid = b.u16()
        credits = b.u16()
        # The credit is sent from the channel's own cid, not the peer's.
        for cids, channel in sorted(self._conn(handle).ecred.items()):
            if rx and cids.tx == cid:
                channel.tx_credits += credits
                break

    def _parse_l2cap_signal(self, rx: bool, handle: int, b: BtBufferStream) -> None:
        code = b.u8()
        ident = b.u8()
        length = b.u16()
        if code == 0x14:
            self._credit_connection_request(
                rx, handle, ident, b.sub("LE Credit Based Connection Request", length))
        elif code == 0x15:
            self._credit_connection_response(
                rx, handle, ident, b.sub("LE Credit Based Connection Response", length))
        elif code == 0x16:
            self._credit_connection_add_credit(rx, handle, b.sub("LE Flow Control Credit"))

    def _credit_connection_data(
        self, rx: bool, handle: int, channel: L2CapCreditConnection, b: BtBufferStream
    ) -> None:
        if not rx:
            # Streams inferred mid-capture have unknown credits, so this may go negative.
            channel.tx_credits -= 1
        sdu_length = b.u16()
        if sdu_length != len(b):
            b.error("Invalid SDU length")
        fragment_count = self._conn(handle).pending[int(rx)].fragment_count
        self._emit(self.on_data, handle, rx, channel, bytes(b), fragment_count)

    def _parse_dynamic_data(self, rx: bool, handle: int, cid: int, b: BtBufferStream) -> None:
        conn = self._conn(handle)
        for cids, channel in sorted(conn.ecred.items()):
            if (cids.rx if rx else cids.tx) == cid:
                self._credit_connection_data(
                    rx, handle, channel, b.sub("LE Credit Based Connection Payload"))
                return

        # The stream setup was not captured; a 161 byte SDU looks like G.722 audio.
        sdu_length = b.u16()
        if sdu_length == 161 and len(b) == 161 and not rx:
            cids = StreamCids(tx=cid)
            stream = conn.ecred[cids] = L2CapCreditConnection(outgoing=True, cids=cids)
            self._emit(
                self.on_data, handle, rx, stream, bytes(b), conn.pending[int(rx)].fragment_count)

    def _acl_pkt(self, rx: bool, pkt: BtBufferStream) -> None:
        header = pkt.u16()
        handle = header & 0x0FFF
        length = pkt.u16()

        conn = self._conn(handle)
        if conn.type == _ConnType.UNKNOWN:
            # The connection setup was missed; assume L2CAP.
            conn.type = _ConnType.L2CAP
        if conn.type != _ConnType.L2CAP:
            return

        b = pkt.sub("L2CAP", length)
        pending = conn.pending[int(rx)]
        if not pending.fragment:
            if len(b) < 4:
                raise ParseError("Truncated TX L2CAP packet header")
            pending.expected_fragment_size = (b.peek_u16() + 4) & 0xFFFF
            pending.fragment_count = 1
            if pending.expected_fragment_size > len(b):
                pending.fragment = bytearray(bytes(b))
                return
        else:
            pending.fragment_count += 1
            pending.fragment.extend(bytes(b))
            if len(pending.fragment) < pending.expected_fragment_size:
                return
            data = bytes(pending.fragment)
            pending.fragment = bytearray()
            b = BtBufferStream("L2CAP", data)

        b.u16()  # L2CAP length
        cid = b.u16()
        if cid == 0x0004:
            self._parse_attribute(rx, handle, b.sub("Attribute Protocol"))
        elif cid == 0x0005:
            self._parse_l2cap_signal(rx, handle, b.sub("LE L2CAP Signaling Channel"))
        else:
            self._parse_dynamic_data(rx, handle, cid, b.sub("L2CAP Dynamic Channel"))