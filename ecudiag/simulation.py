"""Simulated ISO-TP channel answering requests from a lookup table."""

from __future__ import annotations

import threading
from collections import deque
from typing import Optional

from .hardware import ChannelError, ChannelErrorKind, IsoTPChannel, IsoTPSettings


class SimulationIsoTpChannel(IsoTPChannel):
    """ISO-TP channel that replies to known requests with canned responses."""

    def __init__(self) -> None:
        self._responses: dict[bytes, bytes] = {}
        self._rx_queue: deque[bytes] = deque()
        self._lock = threading.Lock()

    def add_response(self, req: bytes, resp: bytes) -> None:
        """Register the response sent back when req is written."""
        with self._lock:
            self._responses[bytes(req)] = bytes(resp)

    def clear_map(self) -> None:
        """Forget every registered response and pending reply."""
        with self._lock:
            self._responses.clear()
            self._rx_queue.clear()

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def set_ids(self, send: int, recv: int) -> None:
        pass

    def read_bytes(self, timeout_ms: int) -> bytes:
        with self._lock:
            if self._rx_queue:
                return self._rx_queue.popleft()
        raise ChannelError(ChannelErrorKind.BUFFER_EMPTY)

    def write_bytes(
        self, addr: int, ext_id: Optional[int], buffer: bytes, timeout_ms: int
    ) -> None:
        with self._lock:
            response = self._responses.get(bytes(buffer))
            if response is not None:
                self._rx_queue.append(response)

    def clear_rx_buffer(self) -> None:
        with self._lock:
            self._rx_queue.clear()

    def clear_tx_buffer(self) -> None:
        pass

    def set_iso_tp_cfg(self, cfg: IsoTPSettings) -> None:
        pass