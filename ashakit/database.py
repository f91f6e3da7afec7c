"""Cache of GATT services and characteristics per remote device address."""

from __future__ import annotations

import dataclasses
import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .bytestream import hex_value
from .gatt import GATT_CCC, GATT_CHAR_DESCRIPTION, GattCharacteristic, GattService


def is_mac_filename(name: str) -> bool:
    """True if *name* has the form xx:xx:xx:xx:xx:xx with hex digits."""
    if len(name) != 17:
        return False
    return all(
        (c == ":") if i % 3 == 2 else (c in string.hexdigits)
        for i, c in enumerate(name)
    )


@dataclass
class _CacheInfo:
    services: list[GattService] = field(default_factory=list)
    characteristics: list[GattCharacteristic] = field(default_factory=list)


def _default_cache_dir() -> Path:
    return Path.home() / ".local" / "share" / "snoop_analyze"


class BtDatabase:
    """Loads bluez-style attribute caches and stores what captures reveal."""

    def __init__(
        self,
        default_mac: str = "",
        search_paths: Iterable[str | os.PathLike[str]] | None = None,
        cache_dir: str | os.PathLike[str] | None = None,
    ) -> None:
        self.default_mac = default_mac.lower()
        self.cache_dir = Path(cache_dir) if cache_dir is not None else _default_cache_dir()
        self._info: dict[str, _CacheInfo] = {}
        if search_paths is None:
            search_paths = [Path("/var/lib/bluetooth"), self.cache_dir]
        for path in search_paths:
            self.load_path(path)

    def __enter__(self) -> BtDatabase:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.save()

    def _key(self, mac: str) -> str:
        return mac if mac else self.default_mac

    def services(self, mac: str) -> list[GattService]:
        info = self._info.get(self._key(mac))
        return list(info.services) if info else []

    def characteristics(self, mac: str) -> list[GattCharacteristic]:
        info = self._info.get(self._key(mac))
        return list(info.characteristics) if info else []

    def cache_service(self, mac: str, service: GattService) -> None:
        """Store *service*, replacing any earlier one with the same uuid."""
        info = self._info.setdefault(self._key(mac), _CacheInfo())
        copy = dataclasses.replace(service)
        for i, old in enumerate(info.services):
            if old.uuid == service.uuid:
                info.services[i] = copy
                return
        info.services.append(copy)

    def cache_characteristic(self, mac: str, characteristic: GattCharacteristic) -> None:
        """Store *characteristic*, replacing any earlier one with the same uuid."""
        info = self._info.setdefault(self._key(mac), _CacheInfo())
        copy = dataclasses.replace(characteristic)
        for i, old in enumerate(info.characteristics):
            if old.uuid == characteristic.uuid:
                info.characteristics[i] = copy
                return
        info.characteristics.append(copy)

    def load_path(self, path: str | os.PathLike[str]) -> None:
        """Search *path* recursively and load every address-named file in a cache directory."""
        path_str = os.fspath(path)
        in_cache = len(path_str) > 5 and path_str.endswith("cache")
        try:
            entries = sorted(os.scandir(path_str), key=lambda e: e.name)
        except OSError:
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir(follow_symlinks=False):
                self.load_path(os.path.join(path_str, entry.name))
            elif in_cache and entry.is_file(follow_symlinks=False) and is_mac_filename(entry.name):
                self.load_database(os.path.join(path_str, entry.name), entry.name)

    def load_database(self, path: str | os.PathLike[str], mac: str) -> None:
        """Parse the [Attributes] section of one key-file cache for *mac*."""
        services: list[GattService] = []
        characteristics: list[GattCharacteristic] = []
        try:
            text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            text = ""

        section = ""
        for raw in text.splitlines():
            line = raw.rstrip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("[") and line.endswith("]"):
                section = line[1:-1]
                continue
            if section != "Attributes":
                continue
            key, sep, rest = line.partition("=")
            if not sep:
                continue
            values = rest.split(":")
            handle = int(key, 16) & 0xFFFF
            kind = values[0]
            if len(values) == 1:
                # Descriptor of the most recently read characteristic.
                if not characteristics:
                    continue
                if kind == GATT_CCC:
                    characteristics[-1].ccc = handle
                elif kind == GATT_CHAR_DESCRIPTION:
                    characteristics[-1].description = handle
            elif kind in ("2800", "2801"):
                if len(values) != 3:
                    continue
                services.append(GattService(handle, int(values[1], 16) & 0xFFFF, values[2]))
            elif kind == "2802":
                raise ValueError("include attributes are not supported")
            elif kind == "2803":
                if len(values) != 4:
                    continue
                characteristics.append(
                    GattCharacteristic(
                        handle=handle,
                        value=int(values[1], 16) & 0xFFFF,
                        properties=int(values[2], 16) & 0xFF,
                        uuid=values[3],
                    )
                )

        self._info[mac.lower()] = _CacheInfo(services, characteristics)

    def save(self) -> None:
        """Write every known device to <cache_dir>/cache/<mac>."""
        cache = self.cache_dir / "cache"
        cache.mkdir(mode=0o770, parents=True, exist_ok=True)
        for mac in sorted(self._info):
            if not mac or mac == self.default_mac:
                continue
            info = self._info[mac]
            services = {s.handle: s for s in info.services}
            characteristics = {c.handle: c for c in info.characteristics}
            lines = ["[Attributes]"]
            for handle in sorted(services.keys() | characteristics.keys()):
                if handle in services:
                    s = services[handle]
                    lines.append(f"{hex_value(handle, 4)}=2800:{hex_value(s.end_handle, 4)}:{s.uuid}")
                    continue
                c = characteristics[handle]
                lines.append(
                    f"{hex_value(handle, 4)}=2803:{hex_value(c.value, 4)}:"
                    f"{hex_value(c.properties, 2)}:{c.uuid}"
                )
                if c.ccc:
                    lines.append(f"{hex_value(c.ccc, 4)}={GATT_CCC}")
                if c.description:
                    lines.append(f"{hex_value(c.description, 4)}={GATT_CHAR_DESCRIPTION}")
            (cache / mac).write_text("\n".join(lines) + "\n", encoding="utf-8")