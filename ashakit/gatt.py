"""Bluetooth constants and the GATT / L2CAP records shared by the analyzer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class Opcode(IntEnum):
    """Packet opcodes used by the btsnoop monitor format."""

    NEW_INDEX = 0
    DEL_INDEX = 1
    COMMAND_PKT = 2
    EVENT_PKT = 3
    ACL_TX_PKT = 4
    ACL_RX_PKT = 5
    SCO_TX_PKT = 6
    SCO_RX_PKT = 7
    OPEN_INDEX = 8
    CLOSE_INDEX = 9
    INDEX_INFO = 10
    VENDOR_DIAG = 11
    SYSTEM_NOTE = 12
    USER_LOGGING = 13
    CTRL_OPEN = 14
    CTRL_CLOSE = 15
    CTRL_COMMAND = 16
    CTRL_EVENT = 17
    ISO_TX_PKT = 18
    ISO_RX_PKT = 19


# LE supported features that the analyzer reports on.
FEATURE_DLE = 0x0020
FEATURE_2MPHY = 0x0100


def _hci_opcode(ocf: int, ogf: int) -> int:
    return (ocf << 10) | ogf


LE_CREATE_CONNECTION = _hci_opcode(0x08, 0x00D)
LE_EXTENDED_CREATE_CONNECTION = _hci_opcode(0x08, 0x043)

GATT_SERVICES = "00002800-0000-1000-8000-00805f9b34fb"
GATT_SECONDARY = "00002801-0000-1000-8000-00805f9b34fb"
GATT_INCLUDE = "00002802-0000-1000-8000-00805f9b34fb"
GATT_CHARACTERISTICS = "00002803-0000-1000-8000-00805f9b34fb"

GATT_CHAR_DESCRIPTION = "00002901-0000-1000-8000-00805f9b34fb"
GATT_CCC = "00002902-0000-1000-8000-00805f9b34fb"

DEVICE_NAME = "00002a00-0000-1000-8000-00805f9b34fb"
SERVICE_CHANGED = "00002a05-0000-1000-8000-00805f9b34fb"

ASHA_SERVICE = "0000fdf0-0000-1000-8000-00805f9b34fb"
ASHA_READ_ONLY_PROPERTIES = "6333651e-c481-4a3e-9169-7c902aad37bb"
ASHA_AUDIO_CONTROL_POINT = "f0d4de7e-4a88-476c-9d9f-1937b0996cc0"
ASHA_AUDIO_STATUS = "38663f1a-e711-4cac-b641-326b56404837"
ASHA_VOLUME = "00e4ca9e-ab14-41e4-8823-f9e70c7e91df"
ASHA_LE_PSM_OUT = "2d410339-82b6-42aa-b34e-e2e01df8cc1a"

KNOWN_UUIDS: dict[str, str] = {
    GATT_SERVICES: "Services",
    GATT_SECONDARY: "Secondary",
    GATT_INCLUDE: "Include",
    GATT_CHARACTERISTICS: "Characteristics",
    GATT_CHAR_DESCRIPTION: "Description",
    GATT_CCC: "CCC",
    ASHA_SERVICE: "ASHA",
    ASHA_READ_ONLY_PROPERTIES: "ReadOnlyProperties",
    ASHA_AUDIO_CONTROL_POINT: "AudioControlPoint",
    ASHA_AUDIO_STATUS: "AudioStatus",
    ASHA_VOLUME: "Volume",
    ASHA_LE_PSM_OUT: "LE_PSM_OUT",
}


def uuid_name(uuid: str) -> str:
    """Return a short human-readable name for a known UUID, else the UUID itself."""
    return KNOWN_UUIDS.get(uuid, uuid)


@dataclass(frozen=True, order=True)
class StreamCids:
    """Channel ids of a credit-based stream, ordered by rx then tx."""

    rx: int = 0
    tx: int = 0


@dataclass
class GattService:
    handle: int = 0
    end_handle: int = 0
    uuid: str = ""


@dataclass
class GattCharacteristic:
    handle: int = 0
    value: int = 0
    ccc: int = 0
    description: int = 0
    properties: int = 0
    uuid: str = ""
    guess: bool = False


@dataclass
class L2CapCreditConnection:
    """State of an LE credit-based L2CAP channel."""

    outgoing: bool = False
    cids: StreamCids = field(default_factory=StreamCids)
    psm: int = 0
    mtu: int = 0  # maximum pre-fragmented packet size
    mps: int = 0  # maximum fragment size
    tx_credits: int = 0