"""SLCAN adapter exposing combined CAN and software ISO-TP channels."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Iterable, Optional

from .hardware import (
    CanChannel,
    CanFrame,
    ChannelError,
    ChannelErrorKind,
    Hardware,
    HardwareCapabilities,
    HardwareInfo,
    IsoTPChannel,
    IsoTPSettings,
)
from .isotp_engine import IsoTpTransport
from .slcan_protocol import SerialLike, SlCanError, SlCanPort

log = logging.getLogger(__name__)

SLCAN_CAPABILITIES = HardwareCapabilities(iso_tp=True, can=True)
RESPONSE_TIMEOUT_S = 0.1
_IDLE_SLEEP_S = 0.01
_ACTIVE_SLEEP_S = 0.001
_MISMATCH = "CAN and ISO-TP cfg mismatched for channel"


class SlCanDevice(Hardware):
    """SLCAN adapter attached to an already opened serial port."""

    def __init__(self, port: SerialLike, rx_queue_limit: int) -> None:
        self.port = SlCanPort(port, rx_queue_limit)
        self._info = HardwareInfo(name="slcan", capabilities=SLCAN_CAPABILITIES)
        self.canbus_active = False
        self.isotp_active = False

    def create_iso_tp_channel(self) -> IsoTPChannel:
        return SlCanChannel(self)

    def create_can_channel(self) -> CanChannel:
        return _SlCanCanView(SlCanChannel(self))

    def is_iso_tp_channel_open(self) -> bool:
        return self.isotp_active

    def is_can_channel_open(self) -> bool:
        return self.canbus_active

    def read_battery_voltage(self) -> Optional[float]:
        return None

    def read_ignition_voltage(self) -> Optional[float]:
        return None

    @property
    def info(self) -> HardwareInfo:
        return self._info

    def is_connected(self) -> bool:
        # The serial port is opened before the device is created.
        return True

    def __repr__(self) -> str:
        return f"SlCanDevice {self._info.name}"


class _Target(Enum):
    CAN = auto()
    ISOTP = auto()


class _Action(Enum):
    CLEAR_RX = auto()
    CLEAR_TX = auto()
    SEND_DATA = auto()
    SET_CONFIG = auto()
    SET_FILTER = auto()
    OPEN = auto()
    CLOSE = auto()


@dataclass
class _Command:
    target: _Target
    action: _Action
    payload: Any = None
    reply: Optional["queue.Queue[Optional[ChannelError]]"] = None


class SlCanChannel(IsoTPChannel):
    """Channel running CAN and software ISO-TP over one SLCAN adapter.

    A background worker owns the serial port; requests are handed to it
    through a command queue.
    """

    def __init__(self, device: SlCanDevice) -> None:
        self.device = device
        self._commands: "queue.Queue[_Command]" = queue.Queue()
        self._can_rx: "queue.Queue[CanFrame]" = queue.Queue()
        self._isotp_rx: "queue.Queue[bytes]" = queue.Queue()
        self._can_lock = threading.Lock()
        self._isotp_lock = threading.Lock()
        self._stop = threading.Event()

        # Worker-owned state.
        self._iso_tp_cfg: Optional[IsoTPSettings] = None
        self._can_cfg: Optional[tuple[int, bool]] = None
        self._iso_tp_filter: Optional[tuple[int, int]] = None
        self._transport: Optional[IsoTpTransport] = None
        self._iso_tp_open = False
        self._can_open = False

        self._thread = threading.Thread(target=self._run, name="slcan-worker", daemon=True)
        self._thread.start()

    # ----- requests -----

    def _post(self, target: _Target, action: _Action, payload: Any = None) -> "queue.Queue":
        reply: "queue.Queue[Optional[ChannelError]]" = queue.Queue()
        self._commands.put(_Command(target, action, payload, reply))
        return reply

    @staticmethod
    def _await(reply: "queue.Queue", timeout_s: float) -> Optional[ChannelError]:
        try:
            return reply.get(timeout=timeout_s)
        except queue.Empty:
            raise ChannelError(
                ChannelErrorKind.READ_TIMEOUT, "Timeout waiting for channel response"
            ) from None

    def _request(
        self, target: _Target, action: _Action, payload: Any = None,
        timeout_s: float = RESPONSE_TIMEOUT_S,
    ) -> None:
        error = self._await(self._post(target, action, payload), timeout_s)
        if error is not None:
            raise error

    # ----- CAN side -----

    def set_can_cfg(self, baud: int, use_extended: bool) -> None:
        """Configure bus speed and identifier width for the CAN side."""
        with self._can_lock:
            self._request(_Target.CAN, _Action.SET_CONFIG, (baud, use_extended))

    def open_can(self) -> None:
        """Open the CAN side of the channel."""
        with self._can_lock:
            error = self._await(self._post(_Target.CAN, _Action.OPEN), RESPONSE_TIMEOUT_S)
            self.device.canbus_active = True
            if error is not None:
                raise error

    def close_can(self) -> None:
        """Close the CAN side of the channel."""
        with self._can_lock:
            error = self._await(self._post(_Target.CAN, _Action.CLOSE), RESPONSE_TIMEOUT_S)
            self.device.canbus_active = False
            if error is not None:
                raise error

    def write_packets(self, packets: Iterable[CanFrame], timeout_ms: int) -> None:
        """Send frames; with a non-zero timeout wait for each to be acknowledged."""
        with self._can_lock:
            for packet in packets:
                reply = self._post(_Target.CAN, _Action.SEND_DATA, packet)
                if timeout_ms != 0:
                    error = self._await(reply, timeout_ms / 1000.0)
                    if error is not None:
                        raise error

    def read_packets(self, max_packets: int, timeout_ms: int) -> list[CanFrame]:
        """Collect up to max_packets frames within the timeout (at least 1 ms)."""
        deadline = time.monotonic() + max(1, timeout_ms) / 1000.0
        frames: list[CanFrame] = []
        while len(frames) < max_packets:
            remaining = deadline - time.monotonic()
            if remaining < 0:
                break
            try:
                frames.append(self._can_rx.get(timeout=remaining))
            except queue.Empty:
                break
        return frames

    def clear_can_rx_buffer(self) -> None:
        """Drop received CAN frames."""
        _drain(self._can_rx)
        self._post(_Target.CAN, _Action.CLEAR_RX)

    def clear_can_tx_buffer(self) -> None:
        """Drop pending CAN transmissions."""
        self._post(_Target.CAN, _Action.CLEAR_TX)

    # ----- ISO-TP side -----

    def set_iso_tp_cfg(self, cfg: IsoTPSettings) -> None:
        with self._isotp_lock:
            self._request(_Target.ISOTP, _Action.SET_CONFIG, cfg)

    def open(self) -> None:
        with self._isotp_lock:
            error = self._await(self._post(_Target.ISOTP, _Action.OPEN), RESPONSE_TIMEOUT_S)
            self.device.isotp_active = True
            if error is not None:
                raise error

    def close(self) -> None:
        with self._isotp_lock:
            error = self._await(self._post(_Target.ISOTP, _Action.CLOSE), RESPONSE_TIMEOUT_S)
            self.device.isotp_active = False
            if error is not None:
                raise error

    def set_ids(self, send: int, recv: int) -> None:
        with self._isotp_lock:
            self._request(_Target.ISOTP, _Action.SET_FILTER, (send, recv))

    def read_bytes(self, timeout_ms: int) -> bytes:
        try:
            return self._isotp_rx.get(timeout=max(1, timeout_ms) / 1000.0)
        except queue.Empty:
            raise ChannelError(ChannelErrorKind.BUFFER_EMPTY) from None

    def write_bytes(
        self, addr: int, ext_id: Optional[int], buffer: bytes, timeout_ms: int
    ) -> None:
        with self._isotp_lock:
            reply = self._post(_Target.ISOTP, _Action.SEND_DATA, (addr, bytes(buffer)))
            if timeout_ms == 0:
                return
            error = self._await(reply, timeout_ms / 1000.0)
            if error is not None:
                raise error

    def clear_rx_buffer(self) -> None:
        _drain(self._isotp_rx)
        self._request(_Target.ISOTP, _Action.CLEAR_RX)

    def clear_tx_buffer(self) -> None:
        self._request(_Target.ISOTP, _Action.CLEAR_TX)

    def shutdown(self) -> None:
        """Stop the worker; the adapter channel is closed on the way out."""
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()

    # ----- worker -----

    def _port_call(self, func, *args) -> Any:
        try:
            return func(*args)
        except SlCanError as exc:
            raise exc.to_channel_error() from exc

    def _port_write(self, frame: CanFrame) -> None:
        self._port_call(self.device.port.write, frame)

    def _rebuild_transport(self) -> None:
        if self._iso_tp_cfg is not None and self._iso_tp_filter is not None:
            tx_id, rx_id = self._iso_tp_filter
            self._transport = IsoTpTransport(self._iso_tp_cfg, tx_id, rx_id, self._port_write)
        else:
            self._transport = None

    def _handle_can(self, action: _Action, payload: Any) -> None:
        port = self.device.port
        if action is _Action.CLEAR_RX:
            port.clear_rx_queue()
        elif action is _Action.SEND_DATA:
            self._port_write(payload)
        elif action is _Action.SET_CONFIG:
            baud, use_ext = payload
            cfg = self._iso_tp_cfg
            if cfg is not None and (cfg.can_speed != baud or cfg.can_use_ext_addr != use_ext):
                raise ChannelError(ChannelErrorKind.OTHER, _MISMATCH)
            self._can_cfg = (baud, use_ext)
        elif action is _Action.OPEN:
            if self._can_cfg is None:
                raise ChannelError(ChannelErrorKind.CONFIGURATION_ERROR)
            self._port_call(port.open, self._can_cfg[0])
            self._can_open = True
        elif action is _Action.CLOSE:
            self._can_cfg = None
            self._can_open = False
            self._port_call(port.close)

    def _handle_isotp(self, action: _Action, payload: Any) -> None:
        port = self.device.port
        if action is _Action.SET_CONFIG:
            ccfg = self._can_cfg
            if ccfg is not None and (ccfg[0] != payload.can_speed or ccfg[1] != payload.can_use_ext_addr):
                raise ChannelError(ChannelErrorKind.OTHER, _MISMATCH)
            self._iso_tp_cfg = payload
            self._rebuild_transport()
        elif action is _Action.OPEN:
            if self._iso_tp_cfg is None:
                raise ChannelError(ChannelErrorKind.CONFIGURATION_ERROR)
            self._port_call(port.open, self._iso_tp_cfg.can_speed)
            self._iso_tp_open = True
        elif action is _Action.CLOSE:
            self._iso_tp_cfg = None
            self._transport = None
            self._iso_tp_open = False
            self._port_call(port.close)
        elif action is _Action.SET_FILTER:
            self._iso_tp_filter = payload
            self._rebuild_transport()
        elif action is _Action.CLEAR_RX:
            port.clear_rx_queue()
            if self._transport is not None:
                self._transport.clear_rx()
        elif action is _Action.CLEAR_TX:
            if self._transport is not None:
                self._transport.clear_tx()
        elif action is _Action.SEND_DATA:
            if self._iso_tp_cfg is None or self._iso_tp_filter is None:
                raise ChannelError(ChannelErrorKind.CONFIGURATION_ERROR)
            if not self._iso_tp_open or self._transport is None:
                raise ChannelError(ChannelErrorKind.INTERFACE_NOT_OPEN)
            addr, data = payload
            self._transport.send(addr, data)

    def _dispatch(self, command: _Command) -> None:
        log.debug("SLCAN %s request: %s", command.target.name, command.action.name)
        handler = self._handle_can if command.target is _Target.CAN else self._handle_isotp
        error: Optional[ChannelError] = None
        try:
            handler(command.action, command.payload)
        except ChannelError as exc:
            error = exc
        if command.reply is not None:
            command.reply.put(error)

    def _service_bus(self) -> None:
        try:
            frame: Optional[CanFrame] = self.device.port.read()
        except SlCanError:
            frame = None
        if frame is not None:
            if self._can_cfg is not None:
                self._can_rx.put(frame)
            if self._transport is not None:
                payload = self._transport.on_frame(frame)
                if payload is not None:
                    self._isotp_rx.put(payload)
        if self._transport is not None:
            self._transport.poll()

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                idle = self._iso_tp_cfg is None and self._can_cfg is None
                try:
                    command = self._commands.get(
                        timeout=_IDLE_SLEEP_S if idle else _ACTIVE_SLEEP_S
                    )
                except queue.Empty:
                    command = None
                if command is not None:
                    self._dispatch(command)
                if self._iso_tp_open or self._can_open:
                    self._service_bus()
        finally:
            try:
                self.device.port.close()
            except SlCanError as exc:
                log.debug("Closing SLCAN channel on shutdown failed: %s", exc)


class _SlCanCanView(CanChannel):
    """The CAN side of an SlCanChannel."""

    def __init__(self, channel: SlCanChannel) -> None:
        self.channel = channel

    def open(self) -> None:
        self.channel.open_can()

    def close(self) -> None:
        self.channel.close_can()

    def write_packets(self, packets: Iterable[CanFrame], timeout_ms: int) -> None:
        self.channel.write_packets(packets, timeout_ms)

    def read_packets(self, max_packets: int, timeout_ms: int) -> list[CanFrame]:
        return self.channel.read_packets(max_packets, timeout_ms)

    def clear_rx_buffer(self) -> None:
        self.channel.clear_can_rx_buffer()

    def clear_tx_buffer(self) -> None:
        self.channel.clear_can_tx_buffer()

    def set_can_cfg(self, baud: int, use_extended: bool) -> None:
        self.channel.set_can_cfg(baud, use_extended)

    def shutdown(self) -> None:
        """Stop the underlying channel's worker."""
        self.channel.shutdown()


def _drain(q: "queue.Queue") -> None:
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            return