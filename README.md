# ecudiag

A hardware abstraction layer for talking to vehicle ECUs. Diagnostic code gets
one interface for CAN and ISO-TP channels, whichever adapter is underneath:

- **SLCAN** serial adapters (`ecudiag.slcan`, with the line protocol in
  `ecudiag.slcan_protocol`). The ISO-TP transport runs in software
  (`ecudiag.isotp_engine`).
- **SocketCAN** network interfaces on Linux (`ecudiag.socketcan`). These use
  the kernel's raw CAN and CAN_ISOTP sockets.
- A **simulated** ISO-TP channel for unit testing diagnostic code
  (`ecudiag.simulation`).

The package depends only on the standard library.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra and run pytest:

```
pip install ".[test]"
pytest
```

## Core types

`ecudiag.hardware` holds the shared types:

- `Hardware` is the base class for adapters. It creates channels with
  `create_can_channel()` and `create_iso_tp_channel()`. It describes the
  device through the `info` property and reports `is_connected()`,
  `is_can_channel_open()` and `is_iso_tp_channel_open()`.
  `read_battery_voltage()` and `read_ignition_voltage()` return `None` when the
  adapter cannot measure them. None of the adapters here can.
- `HardwareScanner` lists devices with `list_devices()` and opens them with
  `open_device_by_index()` or `open_device_by_name()`.
- `CanChannel` and `IsoTPChannel` are the channel interfaces. Both work as
  context managers: the channel opens on entry and closes on exit.
- `CanFrame`, `IsoTPSettings`, `HardwareInfo` and `HardwareCapabilities` are
  frozen dataclasses. A `CanFrame` holds at most 8 data bytes.
- `SharedHardware` wraps one adapter behind a lock so that several threads can
  use it. Passing it another `SharedHardware` raises `TypeError`.
- Failures raise `HardwareError` or `ChannelError`. Each carries a `kind` enum
  member (`HardwareErrorKind`, `ChannelErrorKind`).

## Simulated channel

`SimulationIsoTpChannel` answers each written request with a canned response
that was registered for it. `read_bytes` raises `ChannelError` with
`BUFFER_EMPTY` when no reply is waiting.

```python
from ecudiag.simulation import SimulationIsoTpChannel

chan = SimulationIsoTpChannel()
chan.add_response(b"\x3e\x00", b"\x7e\x00")
chan.write_bytes(0x7E0, None, b"\x3e\x00", 100)
assert chan.read_bytes(100) == b"\x7e\x00"
```

## SLCAN

`SlCanDevice` takes an already opened serial-like object. The object needs
`read(size)` and `write(data)`, and `read` must return `b""` on timeout. A
pyserial `Serial` with a read timeout set works. Each channel runs a
background worker thread, so call `shutdown()` when you are done with it.

```python
from ecudiag.hardware import IsoTPSettings
from ecudiag.slcan import SlCanDevice

device = SlCanDevice(port, 100)
channel = device.create_iso_tp_channel()
channel.set_iso_tp_cfg(IsoTPSettings(can_speed=500_000))
channel.set_ids(0x7E0, 0x7E8)
with channel:
    channel.write_bytes(0x7E0, None, b"\x10\x03", 100)
    reply = channel.read_bytes(1000)
channel.shutdown()
```

A CAN channel from `create_can_channel()` must be given `set_can_cfg(baud,
use_extended)` before it is opened.

Supported bus speeds are 10k, 20k, 50k, 83.333k, 100k, 125k, 250k, 500k, 800k
and 1M bit/s. `ecudiag.slcan_protocol.speed_command` raises `SlCanError` for
any other speed. `encode_frame` builds the transmit command for a frame.

## SocketCAN

```python
from ecudiag.socketcan import SocketCanScanner

scanner = SocketCanScanner()
for info in scanner.list_devices():
    print(info.name)
device = scanner.open_device_by_name("can0")
```

The scanner lists the entries in `/sys/class/net` whose names contain `can`.
A different directory can be passed as `net_dir`.

- `set_can_cfg` is ignored, because the kernel configures the interface.
- On an ISO-TP channel, a payload sent to an address other than the configured
  send ID goes out as a single frame on a raw CAN socket. Payloads too long
  for one frame raise `UNSUPPORTED_REQUEST`.

## What this package does not do

- It supports no adapters beyond SLCAN, SocketCAN and the simulated channel.
  There is no J2534 PassThru or D-PDU support.
- It has no diagnostic protocol layer (UDS, KWP2000) and no command-line tool.
  It only provides the channels that such code would use.