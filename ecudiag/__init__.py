"""CAN and ISO-TP hardware abstraction for ECU diagnostics: SLCAN, SocketCAN and simulated channels."""

__version__ = "0.99.0"
__all__ = ["hardware", "simulation", "slcan_protocol", "isotp_engine", "slcan", "socketcan"]