"""ITU G.722 wideband audio encoder (64 kbit/s, one code byte per sample pair)."""

from __future__ import annotations

import sys
from array import array
from dataclasses import dataclass, field
from enum import IntFlag
from typing import BinaryIO, Iterable, Optional


class G722Options(IntFlag):
    """Option flags accepted by the encoder."""

    NONE = 0
    SAMPLE_RATE_8000 = 0x0001
    PACKED = 0x0002
    FORMAT_DAC12 = 0x0004


_Q6 = (
    0, 35, 72, 110, 150, 190, 233, 276,
    323, 370, 422, 473, 530, 587, 650, 714,
    786, 858, 940, 1023, 1121, 1219, 1339, 1458,
    1612, 1765, 1980, 2195, 2557, 2919, 0, 0,
)
_ILN = (
    0, 63, 62, 31, 30, 29, 28, 27,
    26, 25, 24, 23, 22, 21, 20, 19,
    18, 17, 16, 15, 14, 13, 12, 11,
    10, 9, 8, 7, 6, 5, 4, 0,
)
_ILP = (
    0, 61, 60, 59, 58, 57, 56, 55,
    54, 53, 52, 51, 50, 49, 48, 47,
    46, 45, 44, 43, 42, 41, 40, 39,
    38, 37, 36, 35, 34, 33, 32, 0,
)
_WL = (-60, -30, 58, 172, 334, 538, 1198, 3042)
_RL42 = (0, 7, 6, 5, 4, 3, 2, 1, 7, 6, 5, 4, 3, 2, 1, 0)
_ILB = (
    2048, 2093, 2139, 2186, 2233, 2282, 2332,
    2383, 2435, 2489, 2543, 2599, 2656, 2714,
    2774, 2834, 2896, 2960, 3025, 3091, 3158,
    3228, 3298, 3371, 3444, 3520, 3597, 3676,
    3756, 3838, 3922, 4008,
)
_QM4 = (
    0, -20456, -12896, -8968,
    -6288, -4240, -2584, -1200,
    20456, 12896, 8968, 6288,
    4240, 2584, 1200, 0,
)
_QM2 = (-7408, -1616, 7408, 1616)
_QMF_COEFFS = (3, -11, 12, 32, -210, 951, 3876, -805, 362, -156, 53, -11)
_IHN = (0, 1, 0)
_IHP = (0, 3, 2)
_WH = (0, -214, 798)
_RH2 = (2, 1, 2, 1)

# One read of the command-line encoder: 320 samples of 16-bit audio.
_CHUNK_BYTES = 640


def _saturate(value: int) -> int:
    if value > 0x7FFF:
        return 0x7FFF
    if value < -0x8000:
        return -0x8000
    return value


def _scale(ilb_index: int, shift: int) -> int:
    base = _ILB[ilb_index]
    return (base << -shift) if shift < 0 else (base >> shift)


@dataclass
class _Band:
    s: int = 0
    sp: int = 0
    sz: int = 0
    r: list[int] = field(default_factory=lambda: [0] * 3)
    a: list[int] = field(default_factory=lambda: [0] * 3)
    ap: list[int] = field(default_factory=lambda: [0] * 3)
    p: list[int] = field(default_factory=lambda: [0] * 3)
    d: list[int] = field(default_factory=lambda: [0] * 7)
    b: list[int] = field(default_factory=lambda: [0] * 7)
    bp: list[int] = field(default_factory=lambda: [0] * 7)
    nb: int = 0
    det: int = 0

    def update(self, d: int) -> None:
        """Adaptive predictor update (block 4) for a quantised difference *d*."""
        self.d[0] = d
        self.r[0] = _saturate(self.s + d)
        self.p[0] = _saturate(self.sz + d)

        # UPPOL2
        sg = [p >> 15 for p in self.p]
        wd1 = _saturate(self.a[1] << 2)
        wd2 = -wd1 if sg[0] == sg[1] else wd1
        wd2 = min(wd2, 32767)
        ap2 = (wd2 >> 7) + (128 if sg[0] == sg[2] else -128)
        ap2 += (self.a[2] * 32512) >> 15
        self.ap[2] = max(-12288, min(12288, ap2))

        # UPPOL1
        wd1 = 192 if sg[0] == sg[1] else -192
        wd2 = (self.a[1] * 32640) >> 15
        ap1 = _saturate(wd1 + wd2)
        wd3 = _saturate(15360 - self.ap[2])
        if ap1 > wd3:
            ap1 = wd3
        elif ap1 < -wd3:
            ap1 = -wd3
        self.ap[1] = ap1

        # UPZERO
        wd1 = 0 if d == 0 else 128
        sg0 = d >> 15
        for i in range(1, 7):
            wd2 = wd1 if (self.d[i] >> 15) == sg0 else -wd1
            wd3 = (self.b[i] * 32640) >> 15
            self.bp[i] = _saturate(wd2 + wd3)

        # DELAYA
        sz = 0
        for i in range(6, 0, -1):
            self.d[i] = self.d[i - 1]
            self.b[i] = self.bp[i]
            wd1 = _saturate(self.d[i] + self.d[i])
            sz += (self.b[i] * wd1) >> 15
        self.sz = sz

        for i in (2, 1):
            self.r[i] = self.r[i - 1]
            self.p[i] = self.p[i - 1]
            self.a[i] = self.ap[i]

        # FILTEP
        wd1 = _saturate(self.r[1] + self.r[1])
        wd1 = (self.a[1] * wd1) >> 15
        wd2 = _saturate(self.r[2] + self.r[2])
        wd2 = (self.a[2] * wd2) >> 15
        self.sp = _saturate(wd1 + wd2)

        # PREDIC
        self.s = _saturate(self.sp + self.sz)


class G722Encoder:
    """Stateful G.722 encoder; history carries over between calls to encode()."""

    def __init__(self, rate: int = 64000, options: int = G722Options.NONE) -> None:
        self.options = G722Options(options)
        self.packed = bool(self.options & G722Options.PACKED)
        self.eight_k = bool(self.options & G722Options.SAMPLE_RATE_8000)
        if rate == 48000:
            self.bits_per_sample = 6
        elif rate == 56000:
            self.bits_per_sample = 7
        else:
            self.bits_per_sample = 8
        # Band-split filters are bypassed in ITU test mode.
        self.itu_test_mode = False
        self._x = [0] * 24
        self._low = _Band(det=32)
        self._high = _Band(det=8)

    def _split(self, first: int, second: int) -> tuple[int, int]:
        x = self._x
        del x[:2]
        x.extend((first, second))
        sumeven = 0
        sumodd = 0
        for i in range(12):
            sumodd += x[2 * i] * _QMF_COEFFS[i]
            sumeven += x[2 * i + 1] * _QMF_COEFFS[11 - i]
        return (sumeven + sumodd) >> 14, (sumeven - sumodd) >> 14

    def _encode_low(self, xlow: int) -> int:
        band = self._low
        el = _saturate(xlow - band.s)
        wd = el if el >= 0 else -(el + 1)
        i = next(
            (k for k in range(1, 30) if wd < (_Q6[k] * band.det) >> 12),
            30,
        )
        ilow = _ILN[i] if el < 0 else _ILP[i]

        ril = ilow >> 2
        dlow = (band.det * _QM4[ril]) >> 15

        wd = (band.nb * 127) >> 7
        band.nb = max(0, min(18432, wd + _WL[_RL42[ril]]))

        band.det = _scale((band.nb >> 6) & 31, 8 - (band.nb >> 11)) << 2
        band.update(dlow)
        return ilow

    def _encode_high(self, xhigh: int) -> int:
        band = self._high
        eh = _saturate(xhigh - band.s)
        wd = eh if eh >= 0 else -(eh + 1)
        mih = 2 if wd >= (564 * band.det) >> 12 else 1
        ihigh = _IHN[mih] if eh < 0 else _IHP[mih]

        dhigh = (band.det * _QM2[ihigh]) >> 15

        wd = (band.nb * 127) >> 7
        band.nb = max(0, min(22528, wd + _WH[_RH2[ihigh]]))

        band.det = _scale((band.nb >> 6) & 31, 10 - (band.nb >> 11)) << 2
        band.update(dhigh)
        return ihigh

    def encode(self, samples: Iterable[int]) -> bytes:
        """Encode signed 16-bit samples; each pair of samples yields one code byte."""
        try:
            pcm = array("h", samples)
        except OverflowError as e:
            raise ValueError("samples must be signed 16-bit values") from e

        if self.itu_test_mode:
            pairs = ((s >> 1, s >> 1) for s in pcm)
        else:
            if len(pcm) % 2:
                raise ValueError("sample count must be even")
            pairs = (self._split(pcm[j], pcm[j + 1]) for j in range(0, len(pcm), 2))

        out = bytearray()
        for xlow, xhigh in pairs:
            ilow = self._encode_low(xlow)
            ihigh = self._encode_high(xhigh)
            out.append(((ihigh << 6) | ilow) & 0xFF)
        return bytes(out)


def encode_stream(infile: BinaryIO, outfile: BinaryIO) -> int:
    """Encode raw little-endian 16-bit audio from *infile* into *outfile*.

    Returns the number of code bytes written. A trailing incomplete sample
    pair is dropped.
    """
    encoder = G722Encoder(64000, G722Options.PACKED)
    pending = b""
    written = 0
    while True:
        chunk = infile.read(_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        usable = len(pending) - len(pending) % 4
        if not usable:
            continue
        pcm = array("h")
        pcm.frombytes(pending[:usable])
        if sys.byteorder == "big":
            pcm.byteswap()
        pending = pending[usable:]
        code = encoder.encode(pcm)
        outfile.write(code)
        written += len(code)
    return written


def main(argv: Optional[list[str]] = None) -> int:
    """Encode standard input to standard output."""
    encode_stream(sys.stdin.buffer, sys.stdout.buffer)
    sys.stdout.buffer.flush()
    return 0