"""Core hardware abstractions: errors, frames, channel interfaces and shared hardware."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional


class ChannelErrorKind(Enum):
    """Reasons a communication channel operation can fail."""

    INTERFACE_NOT_OPEN = "Interface was not opened"
    BUFFER_EMPTY = "No data in receive buffer"
    BUFFER_FULL = "Transmit buffer full"
    READ_TIMEOUT = "Timeout reading from channel"
    WRITE_TIMEOUT = "Timeout writing to channel"
    UNSUPPORTED_REQUEST = "Unsupported channel request"
    CONFIGURATION_ERROR = "Channel configuration error"
    IO_ERROR = "Device IO error"
    HARDWARE_ERROR = "Underlying hardware error"
    OTHER = "Other channel error"


class ChannelError(Exception):
    """Error raised by a communication channel."""

    def __init__(self, kind: ChannelErrorKind, message: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message if message is not None else kind.value
        super().__init__(self.message)


class HardwareErrorKind(Enum):
    """Reasons a hardware API call can fail."""

    API_ERROR = "Device library API error"
    CONFLICTING_CHANNEL = "Channel type conflicts with an already open channel"
    CHANNEL_NOT_SUPPORTED = "Channel type not supported on this hardware"
    DEVICE_NOT_FOUND = "Device not found"
    DEVICE_NOT_OPEN = "Device was not opened"
    DEVICE_LOCK_ERROR = "Device locked by another thread"


class HardwareError(Exception):
    """Error raised by a hardware API."""

    def __init__(
        self,
        kind: HardwareErrorKind,
        code: Optional[int] = None,
        desc: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.code = code
        self.desc = desc
        if kind is HardwareErrorKind.API_ERROR:
            message = f"Device library API error. Code {code}, Description: '{desc}'"
        else:
            message = kind.value
        super().__init__(message)

    @classmethod
    def api(cls, code: int, desc: str) -> "HardwareError":
        """Build a low level driver error carrying a code and description."""
        return cls(HardwareErrorKind.API_ERROR, code, desc)


@dataclass(frozen=True, order=True)
class HardwareCapabilities:
    """Communication protocols supported by a physical adapter."""

    iso_tp: bool = False
    can: bool = False
    kline: bool = False
    kline_kwp: bool = False
    sae_j1850: bool = False
    sci: bool = False
    ip: bool = False


@dataclass(frozen=True)
class HardwareInfo:
    """Descriptive information about a device."""

    name: str
    vendor: Optional[str] = None
    device_fw_version: Optional[str] = None
    api_version: Optional[str] = None
    library_version: Optional[str] = None
    library_location: Optional[str] = None
    capabilities: HardwareCapabilities = field(default_factory=HardwareCapabilities)


@dataclass(frozen=True)
class CanFrame:
    """A classic CAN data frame of at most 8 bytes."""

    address: int
    data: bytes = b""
    extended: bool = False

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) > 8:
            raise ValueError(f"CAN frame data is limited to 8 bytes, got {len(data)}")
        if self.address < 0:
            raise ValueError("CAN address must not be negative")
        object.__setattr__(self, "data", data)


@dataclass(frozen=True)
class IsoTPSettings:
    """Configuration of an ISO-TP channel."""

    block_size: int = 8
    st_min: int = 20
    extended_addresses: Optional[tuple[int, int]] = None
    pad_frame: bool = True
    can_speed: int = 500_000
    can_use_ext_addr: bool = False


class CanChannel(ABC):
    """A channel that sends and receives raw CAN frames."""

    @abstractmethod
    def open(self) -> None:
        """Open the channel."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel."""

    @abstractmethod
    def write_packets(self, packets: Iterable[CanFrame], timeout_ms: int) -> None:
        """Send frames, waiting up to timeout_ms (0 means non-blocking)."""

    @abstractmethod
    def read_packets(self, max_packets: int, timeout_ms: int) -> list[CanFrame]:
        """Receive up to max_packets frames."""

    @abstractmethod
    def clear_rx_buffer(self) -> None:
        """Drop any frames waiting to be read."""

    @abstractmethod
    def clear_tx_buffer(self) -> None:
        """Drop any frames waiting to be sent."""

    @abstractmethod
    def set_can_cfg(self, baud: int, use_extended: bool) -> None:
        """Configure bus speed and identifier width."""

    def __enter__(self) -> "CanChannel":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class IsoTPChannel(ABC):
    """A channel that sends and receives ISO-TP payloads."""

    @abstractmethod
    def open(self) -> None:
        """Open the channel."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel."""

    @abstractmethod
    def set_ids(self, send: int, recv: int) -> None:
        """Set the transmit and receive CAN identifiers."""

    @abstractmethod
    def read_bytes(self, timeout_ms: int) -> bytes:
        """Read one complete payload."""

    @abstractmethod
    def write_bytes(
        self, addr: int, ext_id: Optional[int], buffer: bytes, timeout_ms: int
    ) -> None:
        """Send a payload to addr, optionally with an extended address byte."""

    @abstractmethod
    def clear_rx_buffer(self) -> None:
        """Drop any payloads waiting to be read."""

    @abstractmethod
    def clear_tx_buffer(self) -> None:
        """Drop any payloads waiting to be sent."""

    @abstractmethod
    def set_iso_tp_cfg(self, cfg: IsoTPSettings) -> None:
        """Apply an ISO-TP configuration."""

    def __enter__(self) -> "IsoTPChannel":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class Hardware(ABC):
    """An adapter able to create communication channels."""

    @abstractmethod
    def create_iso_tp_channel(self) -> IsoTPChannel:
        """Create an ISO-TP channel on the device."""

    @abstractmethod
    def create_can_channel(self) -> CanChannel:
        """Create a CAN channel on the device."""

    @abstractmethod
    def is_iso_tp_channel_open(self) -> bool:
        """Whether an ISO-TP channel is open."""

    @abstractmethod
    def is_can_channel_open(self) -> bool:
        """Whether a CAN channel is open."""

    @abstractmethod
    def read_battery_voltage(self) -> Optional[float]:
        """Battery voltage on OBD pin 16, or None if unsupported."""

    @abstractmethod
    def read_ignition_voltage(self) -> Optional[float]:
        """Ignition pin voltage, or None if unsupported."""

    @property
    @abstractmethod
    def info(self) -> HardwareInfo:
        """Information describing the device."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the device is currently connected."""


class HardwareScanner(ABC):
    """Finds devices usable for diagnostics."""

    @abstractmethod
    def list_devices(self) -> list[HardwareInfo]:
        """List all devices known to the system."""

    @abstractmethod
    def open_device_by_index(self, idx: int) -> Hardware:
        """Open the device at idx of list_devices()."""

    @abstractmethod
    def open_device_by_name(self, name: str) -> Hardware:
        """Open the device with the given name."""


class SharedHardware(Hardware):
    """Thread-safe wrapper letting one device be used from several places."""

    def __init__(self, hardware: Hardware) -> None:
        if isinstance(hardware, SharedHardware):
            raise TypeError("Attempting to create a SharedHardware instance of a SharedHardware!")
        self._info = hardware.info
        self._hardware = hardware
        self._lock = threading.RLock()

    def create_iso_tp_channel(self) -> IsoTPChannel:
        with self._lock:
            return self._hardware.create_iso_tp_channel()

    def create_can_channel(self) -> CanChannel:
        with self._lock:
            return self._hardware.create_can_channel()

    def is_iso_tp_channel_open(self) -> bool:
        with self._lock:
            return self._hardware.is_iso_tp_channel_open()

    def is_can_channel_open(self) -> bool:
        with self._lock:
            return self._hardware.is_can_channel_open()

    def read_battery_voltage(self) -> Optional[float]:
        with self._lock:
            return self._hardware.read_battery_voltage()

    def read_ignition_voltage(self) -> Optional[float]:
        with self._lock:
            return self._hardware.read_ignition_voltage()

    @property
    def info(self) -> HardwareInfo:
        return self._info

    def is_connected(self) -> bool:
        with self._lock:
            return self._hardware.is_connected()

    def __repr__(self) -> str:
        return "SharedHardware"