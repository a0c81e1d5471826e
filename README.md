# canutils

Command-line tools for Linux SocketCAN interfaces, plus the small library
they are built on. The tools talk to the kernel directly through raw
`AF_CAN`, ISO-TP and netlink sockets, so they run on Linux only, and most of
them need a CAN interface (real, or a `vcan` one for testing).

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Commands

### cansequence

Sends CAN frames whose first data byte is a rising sequence number. With
`-r` it receives them instead and reports every gap in the sequence,
together with the socket overflow counter.

```
cansequence can0                 # send on can0 forever
cansequence can0 -r -q 3         # receive, quit after 3 wrong sequences
cansequence vcan0 -e -i 0x123 --loop=1000
```

Options: `-e/--extended`, `-i/--identifier=ID` (default 2), `--loop=COUNT`,
`-p/--poll`, `-q/--quit[=num]`, `-r/--receive`, `-v/--verbose`, `-h/--help`.
Without an interface argument `can0` is used.

### isotpsend / isotprecv

Send and receive one ISO 15765-2 PDU over the kernel's ISO-TP socket.
`isotpsend` reads space-separated hex bytes from standard input;
`isotprecv` prints the received PDU the same way.

```
echo 11 22 33 44 55 66 77 88 99 | isotpsend -s 123 -d 321 vcan0
isotprecv -s 321 -d 123 -l vcan0
isotpsend -s 123 -d 321 -D 4000 vcan0     # fixed 4000 byte test PDU
```

CAN IDs are hexadecimal; eight digits select an extended ID. Common
options: `-x <addr>[:<rxaddr>]` (extended addressing), `-p [tx]:[rx]`
(padding bytes), `-P l|c|a` (padding checks), `-L <mtu>:<tx_dl>:<tx_flags>`
(CAN FD link layer). `isotpsend` adds `-t`, `-f`, `-D`, `-b` and `-S`;
`isotprecv` adds `-b`, `-m`, `-w`, `-f` and `-l`.

### isotpperf

Shows a progress bar for each ISO-TP transfer between two IDs and, once it
is complete, the data rate, block size and STmin in use.

```
isotpperf -s 7E0 -d 7E8 can0
```

`-x <addr>` and `-X <addr>` select extended addressing for the source and
the flow control frames.

### cangw

Manages the kernel CAN gateway through netlink: add, delete, flush and list
routing rules between CAN interfaces, with filters, frame modifications and
XOR or CRC8 checksums.

```
cangw -A -s can0 -d vcan3 -e -f 123:C00007FF -m SET:IL:333.4.1122334455667788
cangw -L
cangw -F
```

`cangw -L` prints each rule as a `cangw -A ...` command line, so the output
can be saved and replayed in a start-up script.

## Library use

The pieces the commands are built on can be used on their own:

- `canutils.canframe` — `CanFrame` (`to_bytes` / `from_bytes` in the
  kernel's frame layout), `CanFilter`, `parse_can_id`, `single_id_filter`,
  `pack_filters` and `open_raw_socket`.
- `canutils.cansequence` — `SequenceChecker`, which tracks received sequence
  numbers and reports gaps, and `sequence_filter`.
- `canutils.isotpperf` — `PduProgress`, which turns frames into progress and
  throughput text, plus `render_bar` and `format_stmin`.
- `canutils.isotp` — `IsoTpOptions`, `FlowControlOptions`,
  `LinkLayerOptions`, their option parsers and `open_isotp_socket`.
- `canutils.gwrules` — parsing, encoding and describing gateway rule
  elements: `parse_mod`, `parse_fdmod`, `parse_filter`, `parse_xor`,
  `parse_crc8`, `parse_crc8_profile`, `Modification`, `XorChecksum`,
  `Crc8Checksum`.
- `canutils.cangw` — `GatewayRequest`, `encode_attribute`, `iter_messages`
  and `describe_rules`.

```python
from canutils.canframe import CanFrame, parse_can_id
from canutils.gwrules import parse_mod

frame = CanFrame(parse_can_id("123"), b"\x11\x22")
assert CanFrame.from_bytes(frame.to_bytes()) == frame

mod = parse_mod("SET:IL:333.4.1122334455667788")
print(mod.describe())   # -m SET:IL:333.4.1122334455667788
```

## What it does not do

The package has no tool that prints and explains the ISO-TP frames
exchanged between two CAN IDs (single, first, consecutive and flow control
frames, or UDS service names), and no interactive terminal display of
changing CAN content. `isotpperf` only reports transfer progress and data
rate.