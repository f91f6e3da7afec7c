import struct

import pytest

from ashakit.bytestream import BtBufferStream, ParseError
from ashakit.database import BtDatabase
from ashakit.gatt import (
    ASHA_AUDIO_STATUS,
    ASHA_LE_PSM_OUT,
    ASHA_SERVICE,
    ASHA_VOLUME,
    DEVICE_NAME,
    GATT_CCC,
    LE_CREATE_CONNECTION,
    LE_EXTENDED_CREATE_CONNECTION,
    SERVICE_CHANGED,
    GattCharacteristic,
    GattService,
    Opcode,
    StreamCids,
)
from ashakit.parser import BtParser, HandleInfo, HandleType

MAC = "12:34:56:78:9a:bc"
CONN = 0x0040


def h16(v):
    return struct.pack("<H", v)


def feed(parser, opcode, data):
    parser.parse(opcode, BtBufferStream("Transport", data))


def acl(handle, cid, payload):
    l2 = struct.pack("<HH", len(payload), cid) + payload
    return struct.pack("<HH", handle, len(l2)) + l2


def att(parser, rx, payload, handle=CONN):
    feed(parser, Opcode.ACL_RX_PKT if rx else Opcode.ACL_TX_PKT, acl(handle, 4, payload))


def signal(parser, rx, code, ident, body, handle=CONN):
    payload = bytes([code, ident]) + h16(len(body)) + body
    feed(parser, Opcode.ACL_RX_PKT if rx else Opcode.ACL_TX_PKT, acl(handle, 5, payload))


def le_meta(sub, params):
    rest = bytes([sub]) + params
    return bytes([0x3E, len(rest)]) + rest


def mac_bytes(mac):
    return bytes(reversed(bytes.fromhex(mac.replace(":", ""))))


def connect(parser, handle=CONN, mac=MAC):
    params = (
        bytes([0]) + h16(handle) + bytes([0, 0]) + mac_bytes(mac)
        + h16(24) + h16(0) + h16(400) + bytes([0])
    )
    feed(parser, Opcode.EVENT_PKT, le_meta(0x01, params))


def recorder():
    calls = []
    return calls, lambda *args: calls.append(args)


@pytest.fixture
def db(tmp_path):
    return BtDatabase(search_paths=[], cache_dir=tmp_path)


@pytest.fixture
def parser(db):
    return BtParser(db)


def test_connection_complete_reports_parameters(parser):
    calls, cb = recorder()
    parser.on_connection = cb
    connect(parser)
    assert calls == [(CONN, 0, MAC, 24, 0, 400)]
    assert parser.connections[CONN].mac == MAC


def test_disconnect_reports_mac_and_forgets_connection(parser):
    calls, cb = recorder()
    parser.on_disconnect = cb
    connect(parser)
    feed(parser, Opcode.EVENT_PKT, bytes([0x05, 4, 0]) + h16(CONN) + bytes([0x13]))
    assert calls == [(CONN, 0, MAC, 0x13)]
    assert CONN not in parser.connections


def test_disconnect_with_wrong_length_raises(parser):
    connect(parser)
    with pytest.raises(ParseError) as excinfo:
        feed(parser, Opcode.EVENT_PKT, bytes([0x05, 3, 0]) + h16(CONN))
    assert "Unexpected length" in str(excinfo.value)
    assert parser.connections[CONN].mac == MAC


def test_disconnect_with_length_past_end_raises(parser):
    connect(parser)
    with pytest.raises(ParseError) as excinfo:
        feed(parser, Opcode.EVENT_PKT, bytes([0x05, 9, 0]) + h16(CONN) + bytes([1]))
    assert "bad length" in str(excinfo.value)
    assert parser.connections[CONN].mac == MAC


def test_system_note(parser):
    calls, cb = recorder()
    parser.on_note = cb
    feed(parser, Opcode.SYSTEM_NOTE, b"hello")
    assert calls == [("hello",)]
    assert parser.connections == {}


def test_remote_features(parser):
    calls, cb = recorder()
    parser.on_remote_features = cb
    flags = 0x0120
    feed(parser, Opcode.EVENT_PKT, le_meta(0x04, bytes([0]) + h16(CONN) + struct.pack("<Q", flags)))
    assert calls == [(CONN, flags)]
    assert parser.connections[CONN].features == flags


def test_dle_change(parser):
    calls, cb = recorder()
    parser.on_dle_change = cb
    connect(parser)
    feed(parser, Opcode.EVENT_PKT, le_meta(0x07, h16(CONN) + h16(251) + h16(2120) + h16(27) + h16(328)))
    assert calls == [(CONN, 251, 2120, 27, 328)]
    conn = parser.connections[CONN]
    assert (conn.tx_dlen, conn.tx_time, conn.rx_dlen, conn.rx_time) == (251, 2120, 27, 328)


def test_create_connection_sets_celength_and_phy(parser):
    params = bytes(13) + h16(24) + h16(40) + h16(0) + h16(400) + h16(7) + h16(9)
    feed(parser, Opcode.COMMAND_PKT, h16(LE_CREATE_CONNECTION) + params)
    connect(parser)
    assert parser.connections[CONN].celength == 7
    assert parser.connections[CONN].phy.name == "PHY1M"


def test_extended_create_connection_two_phys(parser):
    values = [(1, 2), (3, 4), (16, 17), (16, 17), (0, 0), (400, 400), (12, 13), (14, 15)]
    body = bytes(10) + bytes([0x03]) + b"".join(h16(a) + h16(b) for a, b in values)
    feed(parser, Opcode.COMMAND_PKT, h16(LE_EXTENDED_CREATE_CONNECTION) + body)
    connect(parser)
    assert parser.connections[CONN].celength == 12
    assert parser.connections[CONN].phy.name == "PHY2M"


def test_service_discovery(parser, db):
    calls, cb = recorder()
    parser.on_service = cb
    connect(parser)
    att(parser, False, bytes([0x10]) + h16(1) + h16(0xFFFF) + h16(0x2800))
    att(parser, True, bytes([0x11, 6]) + h16(0x20) + h16(0x2F) + h16(0xFDF0))
    assert calls == [(CONN, 0x20, 0x2F, ASHA_SERVICE)]
    assert [s.uuid for s in db.services(MAC)] == [ASHA_SERVICE]
    info = parser.find_handle(CONN, 0x20)
    assert info.type == HandleType.SERVICE
    assert parser.describe(info) == "ASHA"


def test_characteristic_discovery_and_descriptors(parser, db):
    chars, on_char = recorder()
    descs, on_desc = recorder()
    parser.on_characteristic = on_char
    parser.on_descriptor = on_desc
    connect(parser)
    att(parser, False, bytes([0x08]) + h16(1) + h16(0xFFFF) + h16(0x2803))
    att(parser, True, bytes([0x09, 7]) + h16(0x10) + bytes([0x02]) + h16(0x11) + h16(0x2A00))
    assert chars == [(CONN, 0x10, 0x11, 0x02, DEVICE_NAME)]
    assert parser.handle_description(CONN, 0x11) == DEVICE_NAME + " value"
    assert parser.find_handle(CONN, 0x10).type == HandleType.CHAR

    att(parser, True, bytes([0x05, 1]) + h16(0x12) + h16(0x2902))
    assert descs == [(CONN, 0x10, 0x12, GATT_CCC)]
    assert parser.handle_description(CONN, 0x12) == DEVICE_NAME + " ccc"
    assert db.characteristics(MAC)[0].ccc == 0x12


def test_characteristic_with_128_bit_uuid(parser):
    connect(parser)
    att(parser, False, bytes([0x08]) + h16(1) + h16(0xFFFF) + h16(0x2803))
    raw_uuid = bytes(reversed(bytes.fromhex(ASHA_VOLUME.replace("-", ""))))
    att(parser, True, bytes([0x09, 21]) + h16(0x30) + bytes([0x06]) + h16(0x31) + raw_uuid)
    assert parser.handle_description(CONN, 0x31) == "Volume value"


def test_find_information_with_unknown_format_raises(parser):
    with pytest.raises(ParseError):
        att(parser, True, bytes([0x05, 3]) + h16(0x12) + h16(0x2902))
    assert parser.find_handle(CONN, 0x12) == HandleInfo()


def test_write_request_and_error(parser):
    writes, on_write = recorder()
    failures, on_fail = recorder()
    parser.on_write = on_write
    parser.on_failed_write = on_fail
    att(parser, False, bytes([0x12]) + h16(0x20) + b"\x01\x02")
    assert writes == [(CONN, 0x20, b"\x01\x02")]
    att(parser, True, bytes([0x01, 0x12]) + h16(0x20) + bytes([0x03]))
    assert failures == [(CONN, 0x20, 0x03)]
    assert parser.handle_description(CONN, 0x20) == "unknown"


def test_read_request_and_response(parser):
    reads, on_read = recorder()
    parser.on_read = on_read
    att(parser, False, bytes([0x0A]) + h16(0x30))
    att(parser, True, bytes([0x0B]) + b"hi")
    att(parser, True, bytes([0x0B]) + b"again")
    assert reads == [(CONN, 0x30, b"hi")]
    assert parser.handle_description(CONN, 0x30) == "unknown"


def test_failed_read(parser):
    failures, on_fail = recorder()
    parser.on_failed_read = on_fail
    att(parser, False, bytes([0x0A]) + h16(0x30))
    att(parser, True, bytes([0x01, 0x0A]) + h16(0x30) + bytes([0x02]))
    assert failures == [(CONN, 0x30, 0x02)]
    assert parser.find_handle(CONN, 0x30) == HandleInfo()


def test_notification(parser):
    calls, cb = recorder()
    parser.on_notify = cb
    att(parser, True, bytes([0x1B]) + h16(0x40) + b"\x00")
    assert calls == [(CONN, 0x40, b"\x00")]
    assert parser.find_handle(CONN, 0x40) == HandleInfo()
    assert parser.handle_description(CONN, 0x40) == "unknown"


def test_mtu_exchange(parser):
    att(parser, False, bytes([0x02]) + h16(247))
    att(parser, True, bytes([0x03]) + h16(185))
    conn = parser.connections[CONN]
    assert (conn.central_mtu, conn.peripheral_mtu) == (247, 185)


def open_channel(parser, result=0):
    signal(parser, False, 0x14, 1, h16(0x0080) + h16(0x0040) + h16(167) + h16(167) + h16(0))
    signal(parser, True, 0x15, 1, h16(0x0041) + h16(100) + h16(160) + h16(8) + h16(result))


def test_credit_connection_open_data_and_credits(parser):
    opened, on_open = recorder()
    data, on_data = recorder()
    parser.on_new_credit_connection = on_open
    parser.on_data = on_data
    open_channel(parser)

    (handle, status, info), = opened
    assert (handle, status) == (CONN, 0)
    assert info.outgoing
    assert info.cids == StreamCids(rx=0x41, tx=0x40)
    assert (info.psm, info.mtu, info.mps, info.tx_credits) == (0x80, 100, 160, 8)

    payload = b"\x05" + bytes(9)
    feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x40, h16(len(payload)) + payload))
    (handle, rx, channel, got, fragments), = data
    assert (handle, rx, got, fragments) == (CONN, False, payload, 1)
    assert channel.tx_credits == 7

    signal(parser, True, 0x16, 2, h16(0x40) + h16(3))
    assert parser.connections[CONN].ecred[StreamCids(rx=0x41, tx=0x40)].tx_credits == 10


def test_failed_credit_connection_not_stored(parser):
    opened, on_open = recorder()
    parser.on_new_credit_connection = on_open
    open_channel(parser, result=4)
    assert opened[0][1] == 4
    assert parser.connections[CONN].ecred == {}


def test_invalid_sdu_length_raises(parser):
    open_channel(parser)
    with pytest.raises(ParseError) as excinfo:
        feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x40, h16(50) + bytes(3)))
    assert "Invalid SDU length" in str(excinfo.value)
    # The credit is spent before the SDU length is checked.
    assert parser.connections[CONN].ecred[StreamCids(rx=0x41, tx=0x40)].tx_credits == 7


def test_guessed_audio_stream(parser):
    data, on_data = recorder()
    parser.on_data = on_data
    frame = bytes(range(161))
    feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x60, h16(161) + frame))
    feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x60, h16(161) + frame))
    assert len(data) == 2
    first = data[0]
    assert first[2].cids == StreamCids(tx=0x60)
    assert first[2].outgoing
    assert first[3] == frame
    # The second frame goes through the inferred stream and spends a credit.
    assert data[1][2].tx_credits == -1


def test_other_sizes_are_not_guessed_as_audio(parser):
    data, on_data = recorder()
    parser.on_data = on_data
    feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x60, h16(10) + bytes(10)))
    feed(parser, Opcode.ACL_RX_PKT, acl(CONN, 0x60, h16(161) + bytes(161)))
    assert data == []
    assert parser.connections[CONN].ecred == {}


def test_fragmented_l2cap_frame_is_reassembled(parser):
    data, on_data = recorder()
    parser.on_data = on_data
    frame = bytes(range(161))
    sdu = h16(161) + frame
    whole = struct.pack("<HH", len(sdu), 0x60) + sdu
    first, second = whole[:100], whole[100:]
    feed(parser, Opcode.ACL_TX_PKT, struct.pack("<HH", CONN, len(first)) + first)
    assert data == []
    assert parser.connections[CONN].ecred == {}
    feed(parser, Opcode.ACL_TX_PKT, struct.pack("<HH", CONN | 0x1000, len(second)) + second)
    assert len(data) == 1
    assert data[0][3] == frame
    assert data[0][4] == 2
    assert StreamCids(tx=0x60) in parser.connections[CONN].ecred


def test_truncated_l2cap_header_raises(parser):
    with pytest.raises(ParseError):
        feed(parser, Opcode.ACL_TX_PKT, struct.pack("<HH", CONN, 2) + b"\x00\x00")
    # A complete frame afterwards is still parsed normally.
    feed(parser, Opcode.ACL_TX_PKT, acl(CONN, 0x60, h16(161) + bytes(161)))
    assert StreamCids(tx=0x60) in parser.connections[CONN].ecred


def test_unknown_handle(parser):
    info = parser.find_handle(CONN, 0x99)
    assert info == HandleInfo()
    assert parser.describe(info) == "unknown"


def test_handles_from_default_database(db):
    db.cache_service("", GattService(1, 5, ASHA_SERVICE))
    db.cache_characteristic("", GattCharacteristic(handle=2, value=3, ccc=4, uuid=ASHA_AUDIO_STATUS))
    parser = BtParser(db)
    assert parser.find_handle(7, 1).type == HandleType.SERVICE
    value = parser.find_handle(7, 3)
    assert value.type == HandleType.CHAR_VALUE
    assert value.service.uuid == ASHA_SERVICE
    assert parser.handle_description(7, 4) == "AudioStatus ccc"
    assert parser.handle_description(7, 2) == "AudioStatus"


def test_service_changed_ccc_is_inferred(db):
    db.cache_characteristic("", GattCharacteristic(handle=2, value=3, uuid=SERVICE_CHANGED))
    parser = BtParser(db)
    info = parser.find_handle(1, 4)
    assert info.type == HandleType.CHAR_CCC
    assert info.characteristic.uuid == SERVICE_CHANGED


def test_characteristic_guess(parser):
    parser.add_characteristic_guess(CONN, 0x50, ASHA_LE_PSM_OUT)
    info = parser.find_handle(CONN, 0x50)
    assert info.type == HandleType.CHAR_VALUE
    assert info.characteristic.guess
    assert parser.describe(info) == "LE_PSM_OUT value"