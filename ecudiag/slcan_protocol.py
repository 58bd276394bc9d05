"""SLCAN serial line protocol: frame encoding, decoding and command exchange."""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import Enum
from typing import Optional, Protocol, Union

from .hardware import CanFrame, ChannelError, ChannelErrorKind

MAX_PACKET_SIZE = 32
ACK_TIMEOUT_S = 1.0
_HEX = b"0123456789ABCDEF"
_CR = 0x0D
_BELL = 0x07

_SPEED_COMMANDS = {
    10_000: b"S0\r",
    20_000: b"S1\r",
    50_000: b"S2\r",
    100_000: b"S3\r",
    125_000: b"S4\r",
    250_000: b"S5\r",
    500_000: b"S6\r",
    800_000: b"S7\r",
    1_000_000: b"S8\r",
    83_333: b"S9\r",  # not part of the original standard
}

_HEX_VALUES = {c: i for i, c in enumerate(b"0123456789abcdef")} | {
    c: i + 10 for i, c in enumerate(b"ABCDEF")
}


class SlCanErrorKind(Enum):
    """Reasons an SLCAN exchange can fail."""

    IO_ERROR = "IO error"
    OPERATION_FAILED = "Operation failed"
    UNSUPPORTED_SPEED = "Unsupported speed"
    READ_TIMEOUT = "Read timeout"
    RX_BUFFER_FULL = "Rx buffer full"
    DECODING_FAILED = "Decoding failed"
    NOT_ACKNOWLEDGED = "Not acknowledged"


class SlCanError(Exception):
    """Error raised while talking to an SLCAN adapter."""

    def __init__(self, kind: SlCanErrorKind, message: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message if message is not None else kind.value
        super().__init__(self.message)

    def to_channel_error(self) -> ChannelError:
        """Map this error onto the generic channel error."""
        if self.kind is SlCanErrorKind.IO_ERROR:
            return ChannelError(ChannelErrorKind.IO_ERROR, self.message)
        if self.kind is SlCanErrorKind.READ_TIMEOUT:
            return ChannelError(ChannelErrorKind.READ_TIMEOUT)
        return ChannelError(ChannelErrorKind.OTHER, self.kind.value)


class SerialLike(Protocol):
    """Minimal serial port interface: read with timeout and write."""

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> Optional[int]: ...


def speed_command(can_speed: int) -> bytes:
    """Return the command that sets the given bus speed."""
    try:
        return _SPEED_COMMANDS[can_speed]
    except KeyError:
        raise SlCanError(SlCanErrorKind.UNSUPPORTED_SPEED) from None


def hex_to_nibble(char: Union[int, str]) -> int:
    """Value of one hexadecimal digit, given as a byte value or a character."""
    code = ord(char) if isinstance(char, str) else char
    try:
        return _HEX_VALUES[code]
    except KeyError:
        raise SlCanError(SlCanErrorKind.DECODING_FAILED) from None


def _hex_value(chars: bytes) -> int:
    value = 0
    for c in chars:
        value = value << 4 | hex_to_nibble(c)
    return value


def encode_frame(frame: CanFrame) -> bytes:
    """Encode a frame as an SLCAN transmit command."""
    out = bytearray()
    if frame.extended:
        out.append(ord("T"))
        for byte in (frame.address & 0xFFFFFFFF).to_bytes(4, "big"):
            out += bytes((_HEX[byte >> 4], _HEX[byte & 0xF]))
    else:
        out.append(ord("t"))
        ident = frame.address & 0xFFF
        out += bytes((_HEX[ident >> 8], _HEX[(ident >> 4) & 0xF], _HEX[ident & 0xF]))
    out.append(_HEX[len(frame.data) & 0xF])
    for byte in frame.data:
        out += bytes((_HEX[byte >> 4], _HEX[byte & 0xF]))
    out.append(_CR)
    return bytes(out)


def _decode_frame(buf: bytes) -> CanFrame:
    if len(buf) < 5:
        raise SlCanError(SlCanErrorKind.DECODING_FAILED)
    kind = buf[0]
    if kind == ord("t"):
        id_end, extended = 4, False
    elif kind == ord("T"):
        if len(buf) < 10:
            raise SlCanError(SlCanErrorKind.DECODING_FAILED)
        id_end, extended = 9, True
    else:
        raise SlCanError(SlCanErrorKind.DECODING_FAILED)
    address = _hex_value(buf[1:id_end])
    dlc = hex_to_nibble(buf[id_end])
    start = id_end + 1
    if dlc > 8 or len(buf) < start + dlc * 2:
        raise SlCanError(SlCanErrorKind.DECODING_FAILED)
    data = bytes(_hex_value(buf[start + i * 2 : start + i * 2 + 2]) for i in range(dlc))
    return CanFrame(address, data, extended)


class SlCanPort:
    """SLCAN adapter attached to an already opened serial port."""

    def __init__(self, port: SerialLike, rx_queue_limit: int) -> None:
        self._port = port
        self._port_lock = threading.Lock()
        self._rx_queue: deque[CanFrame] = deque()
        self._rx_queue_limit = rx_queue_limit

    def _read_byte(self) -> Optional[int]:
        try:
            with self._port_lock:
                chunk = self._port.read(1)
        except OSError as exc:
            raise SlCanError(SlCanErrorKind.IO_ERROR, str(exc)) from exc
        return chunk[0] if len(chunk) == 1 else None

    def _read_ack_or_frame(self) -> Optional[CanFrame]:
        """Read one line: None for an acknowledgement, else the received frame."""
        buf = bytearray()
        while (byte := self._read_byte()) is not None:
            if byte not in (_CR, _BELL):
                if len(buf) == MAX_PACKET_SIZE:
                    raise SlCanError(SlCanErrorKind.RX_BUFFER_FULL)
                buf.append(byte)
                continue
            if not buf:
                if byte == _BELL:
                    raise SlCanError(SlCanErrorKind.NOT_ACKNOWLEDGED)
                return None
            return _decode_frame(bytes(buf))
        raise SlCanError(SlCanErrorKind.READ_TIMEOUT)

    def _send_command_with_ack(self, cmd: bytes) -> None:
        try:
            with self._port_lock:
                self._port.write(cmd)
        except OSError as exc:
            raise SlCanError(SlCanErrorKind.IO_ERROR, str(exc)) from exc
        # Frames may arrive before the acknowledgement; keep them for read().
        deadline = time.monotonic() + ACK_TIMEOUT_S
        while time.monotonic() <= deadline:
            frame = self._read_ack_or_frame()
            if frame is None:
                return
            if len(self._rx_queue) >= self._rx_queue_limit:
                raise SlCanError(SlCanErrorKind.RX_BUFFER_FULL)
            self._rx_queue.append(frame)
        raise SlCanError(SlCanErrorKind.READ_TIMEOUT)

    def open(self, can_speed: int) -> None:
        """Set the bus speed and open the CAN channel."""
        self._send_command_with_ack(speed_command(can_speed))
        self._send_command_with_ack(b"O\r")

    def close(self) -> None:
        """Close the CAN channel."""
        self._send_command_with_ack(b"C\r")

    def read(self) -> CanFrame:
        """Return the next received frame."""
        if self._rx_queue:
            return self._rx_queue.popleft()
        frame = self._read_ack_or_frame()
        if frame is None:
            raise SlCanError(SlCanErrorKind.DECODING_FAILED)
        return frame

    def write(self, frame: CanFrame) -> None:
        """Transmit a frame and wait for the adapter's acknowledgement."""
        self._send_command_with_ack(encode_frame(frame))

    def clear_rx_queue(self) -> None:
        """Drop frames queued while waiting for acknowledgements."""
        self._rx_queue.clear()