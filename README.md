# ashakit

Tools for looking at Bluetooth LE captures of ASHA (Audio Streaming for
Hearing Aids) traffic, and a G.722 encoder for producing the audio frames
that ASHA devices expect.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Analysing a capture

`ashakit-snoop-analyze` reads a btsnoop capture (monitor or HCI format) and
prints what happened on the link: connections and disconnections, data length
changes, remote feature support, GATT service, characteristic and descriptor
discovery, reads, writes, failed reads and writes, notifications, LE
credit-based L2CAP channels and, for each ASHA audio stream, one line per
audio frame. Packets that cannot be decoded are reported as
`Invalid packet <n>: <reason>` and the analysis carries on.

```
ashakit-snoop-analyze capture.snoop
```

Pass `-` or no file name to read the capture from standard input. Any
unrecognised option prints the usage text and exits with status 1.

Options:

- `--mac <mac_address>` — the address to assume for the remote device when
  the capture does not contain the connection setup. Characteristics found in
  earlier captures of that device are then used to name the handles, for
  example `--mac 00:00:5e:00:53:01`.
- `--extract` — write the audio of every stream, without the leading sequence
  byte, to a `<connection>_<cid>.g722` file in the current directory.

Attribute caches are read from `/var/lib/bluetooth` (bluez `cache`
directories, where readable) and from `~/.local/share/snoop_analyze`.
Services and characteristics discovered while parsing are written back to
`~/.local/share/snoop_analyze/cache/<mac>` when the analysis ends, so that
later captures of the same device, which often skip service discovery, can
still be decoded. When discovery is missing altogether, the analyzer guesses
the ASHA read-only properties and PSM characteristics from the shape of the
values read, and treats 161-byte outgoing frames as G.722 audio.

A stream line looks like this:

```
     183 << 0e02 right      0     7(-7) 161 bytes   0 seq    +0.000 ms
```

The columns are the packet number, `<<` for transmit or `>>` for receive, the
connection handle, the side (`left`/`right`, or `dev1`/`dev2` when the side
had to be guessed), the left and right credit counts and their difference,
the frame size, the one-byte sequence number, and how far the frame's
timestamp is from the 20 ms cadence of the stream.

### From Python

`ashakit.analyze.SnoopAnalyzer` drives an `ashakit.parser.BtParser` over the
packets of an `ashakit.snoopfile.BtSnoopFile` and writes its report to any
text stream:

```python
import io
from ashakit.analyze import SnoopAnalyzer
from ashakit.database import BtDatabase
from ashakit.parser import BtParser
from ashakit.snoopfile import BtSnoopFile

report = io.StringIO()
with open("capture.snoop", "rb") as f:
    database = BtDatabase(search_paths=[], cache_dir="cache-dir")
    with SnoopAnalyzer(BtParser(database), report) as analyzer:
        analyzer.run(BtSnoopFile(f))
print(report.getvalue())
```

The lower-level pieces can be used on their own:

- `ashakit.snoopfile.BtSnoopFile` — iterates `Packet` records of a btsnoop
  stream; a bad header raises `ashakit.bytestream.ParseError`.
- `ashakit.parser.BtParser` — decodes HCI events and commands, ATT and L2CAP
  signalling, and reports through its `on_*` callback attributes;
  `find_handle` and `handle_description` name an attribute handle.
- `ashakit.database.BtDatabase` — the attribute cache; `save()` (or leaving
  it as a context manager) writes it out.
- `ashakit.bytestream.BtBufferStream` — bounds-checked little-endian reads,
  UUIDs and addresses; `hex_bytes`, `hex_dump`, `hex_value` and `to_string`
  format values.
- `ashakit.gatt` — opcodes, well-known UUIDs (`uuid_name`) and the GATT and
  L2CAP records.

## Encoding G.722

`ashakit-g722-encode` reads raw signed 16-bit little-endian PCM at 16 kHz from
standard input and writes 64 kbit/s G.722 to standard output:

```
ashakit-g722-encode < speech.raw > speech.g722
```

Every two input samples become one output byte, so a 20 ms block of 320
samples becomes the 160 bytes carried by one ASHA audio frame. A trailing
incomplete sample pair is dropped.

In Python:

```python
from ashakit.g722 import encode_stream

with open("speech.raw", "rb") as infile, open("speech.g722", "wb") as outfile:
    encode_stream(infile, outfile)
```

For block-by-block use, `ashakit.g722.G722Encoder` keeps the codec state
between calls to `encode`, which takes an even number of 16-bit samples and
returns the code bytes.

## What it does not do

ashakit only reads captures and encodes audio. It does not talk to Bluetooth
adapters or hearing devices, does not stream audio to them, provides no audio
sink for a sound server and no graphical interface, and has no G.722
decoder.