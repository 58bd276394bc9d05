"""Software ISO-TP transport layered on top of a raw CAN frame writer."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .hardware import CanFrame, ChannelError, ChannelErrorKind, IsoTPSettings

log = logging.getLogger(__name__)

PAD_BYTE = 0xCC
MAX_PAYLOAD = 0xFFF
# Frames sent in one poll when the receiver allows a block size of 0.
_TX_BATCH = 8


@dataclass
class IsoTpPayload:
    """State of a multi-frame transfer in progress."""

    data: bytearray = field(default_factory=bytearray)
    curr_size: int = 0
    max_size: int = 0
    cts: bool = False
    pci: int = 0x21
    max_cpy_size: int = 7
    ext_addr: bool = False
    bs: int = 0
    stmin: int = 0


def parse_packet(frame: CanFrame, iso_tp_ext: bool) -> tuple[int, bytes]:
    """Split a frame into its effective address and ISO-TP bytes."""
    if iso_tp_ext:
        return frame.address | frame.data[0], frame.data[1:]
    return frame.address, frame.data


class IsoTpTransport:
    """ISO-TP segmentation and reassembly driven by incoming frames and polling.

    ``write`` sends one CAN frame and raises ChannelError on failure.
    """

    def __init__(
        self,
        cfg: IsoTPSettings,
        tx_id: int,
        rx_id: int,
        write: Callable[[CanFrame], None],
    ) -> None:
        self.cfg = cfg
        self.tx_id = tx_id
        self.rx_id = rx_id
        self._write = write
        self._ext = cfg.extended_addresses is not None
        self._rx: Optional[IsoTpPayload] = None
        self._tx: Optional[IsoTpPayload] = None
        self._last_tx_time = time.monotonic()
        self._tx_frames_sent = 0
        self._rx_frames_received = 0

    def _prefix(self) -> bytearray:
        if self._ext:
            return bytearray((self.cfg.extended_addresses[0],))
        return bytearray()

    def _pad(self, frame_data: bytearray) -> bytearray:
        if self.cfg.pad_frame and len(frame_data) < 8:
            frame_data.extend([PAD_BYTE] * (8 - len(frame_data)))
        return frame_data

    def send(self, addr: int, data: bytes) -> None:
        """Start sending a payload to addr; long payloads continue in poll()."""
        data = bytes(data)
        single_limit = 6 if self._ext else 7
        if len(data) < single_limit:
            frame_data = self._prefix()
            frame_data.append(len(data))
            frame_data.extend(data)
            self._pad(frame_data)
            log.debug("Sending ISO-TP msg as 1 CAN frame %s", frame_data.hex())
            self._write(CanFrame(addr, bytes(frame_data), self.cfg.can_use_ext_addr))
            return
        if self._tx is not None:
            raise ChannelError(ChannelErrorKind.BUFFER_FULL)
        if len(data) > MAX_PAYLOAD:
            raise ChannelError(ChannelErrorKind.UNSUPPORTED_REQUEST)
        max_copy = 5 if self._ext else 6
        frame_data = self._prefix()
        frame_data.append(0x10 | ((len(data) >> 8) & 0x0F))
        frame_data.append(len(data) & 0xFF)
        frame_data.extend(data[:max_copy])
        try:
            self._write(CanFrame(addr, bytes(frame_data), self.cfg.can_use_ext_addr))
        except ChannelError as exc:
            log.warning("Could not send ISO-TP first frame: %s", exc)
            return
        self._tx = IsoTpPayload(
            data=bytearray(data),
            curr_size=max_copy,
            max_size=len(data),
            cts=False,
            pci=0x21,
            max_cpy_size=max_copy + 1,
            ext_addr=self._ext,
            bs=self.cfg.block_size,
            stmin=self.cfg.st_min,
        )

    def _send_flow_control(self) -> None:
        frame_data = self._prefix()
        frame_data.extend((0x30, self.cfg.block_size, self.cfg.st_min))
        self._pad(frame_data)
        try:
            self._write(CanFrame(self.tx_id, bytes(frame_data), self.cfg.can_use_ext_addr))
        except ChannelError as exc:
            self._rx = None
            log.error("Could not send FC to ECU: %s", exc)
        self._rx_frames_received = 0

    def on_frame(self, frame: CanFrame) -> Optional[bytes]:
        """Process one received frame; return a payload once it is complete."""
        if frame.address != self.rx_id:
            return None
        data = frame.data
        if self._ext:
            if len(data) < 2 or data[1] != self.cfg.extended_addresses[1]:
                return None
        pci_idx = 1 if self._ext else 0
        pci_raw = data[pci_idx] if len(data) > pci_idx else 0xFF
        pci = pci_raw & 0xF0
        log.debug("Incoming ISO-TP frame 0x%04X: %s", self.rx_id, data.hex())

        if pci == 0x00:
            start = 1 + pci_idx
            return bytes(data[start : start + pci_raw])

        if pci == 0x10:
            if self._rx is not None:
                log.warning("ISOTP Rx overwriting old payload!")
            size = ((data[pci_idx] & 0x0F) << 8) | data[1 + pci_idx]
            log.debug("ISOTP expecting data payload of %d bytes, sending FC", size)
            self._rx = IsoTpPayload(
                data=bytearray(data[pci_idx + 2 :]),
                curr_size=8 - 2 - pci_idx,
                max_size=size,
                cts=True,
                pci=0x21,
                max_cpy_size=6 if self._ext else 7,
                ext_addr=self._ext,
                bs=self.cfg.block_size,
                stmin=self.cfg.st_min,
            )
            self._send_flow_control()
            return None

        if pci == 0x20:
            rx = self._rx
            if rx is None:
                return None
            max_copy = max(0, min(rx.max_size - len(rx.data), rx.max_cpy_size))
            self._rx_frames_received += 1
            start = 1 + pci_idx
            rx.data.extend(data[start : start + max_copy])
            if len(rx.data) >= rx.max_size:
                self._rx = None
                return bytes(rx.data)
            if rx.bs > 0 and self._rx_frames_received >= rx.bs:
                self._send_flow_control()
            return None

        if pci == 0x30 and pci_raw == 0x30 and self._tx is not None:
            tx = self._tx
            tx.cts = True
            tx.bs = data[1 + pci_idx]
            tx.stmin = data[2 + pci_idx]
            if tx.stmin > 127:
                tx.stmin = 1  # microsecond values; 1 ms is the finest we time
            self._last_tx_time = time.monotonic()
            self._tx_frames_sent = 0
        return None

    def _may_send(self, tx: IsoTpPayload) -> bool:
        if not tx.cts:
            return False
        elapsed_ms = (time.monotonic() - self._last_tx_time) * 1000.0
        return tx.stmin == 0 or elapsed_ms >= tx.stmin

    def poll(self) -> None:
        """Send any consecutive frames the receiver currently allows."""
        tx = self._tx
        if tx is None:
            return
        send_complete = False
        frames: list[CanFrame] = []
        for _ in range(_TX_BATCH):
            if not self._may_send(tx):
                continue
            max_copy = min(tx.max_size - tx.curr_size, tx.max_cpy_size)
            frame_data = self._prefix()
            frame_data.append(tx.pci)
            frame_data.extend(tx.data[tx.curr_size : tx.curr_size + max_copy])
            frames.append(CanFrame(self.tx_id, bytes(frame_data), self.cfg.can_use_ext_addr))
            if tx.bs != 0:
                self._tx_frames_sent += 1
            tx.pci += 1
            tx.curr_size += max_copy
            if tx.pci == 0x30:
                tx.pci = 0x20
            self._last_tx_time = time.monotonic()
            if tx.curr_size >= tx.max_size:
                send_complete = True
                break
            if tx.bs != 0 and self._tx_frames_sent >= tx.bs:
                self._tx_frames_sent = 0
                tx.cts = False
                break
            if tx.bs != 0:
                break  # honour separation time between frames
        for frame in frames:
            try:
                self._write(frame)
            except ChannelError as exc:
                log.error("Could not send consecutive frame: %s", exc)
                send_complete = True
                break
        if send_complete:
            self._tx = None
            log.debug("ISO-TP send completed")

    def clear_rx(self) -> None:
        """Drop any partially received payload."""
        self._rx = None

    def clear_tx(self) -> None:
        """Abort the payload being sent."""
        self._tx = None

    def sending(self) -> bool:
        """Whether a multi-frame transmission is in progress."""
        return self._tx is not None