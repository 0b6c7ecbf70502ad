"""USB protocol layer - HID transport, protocol tables, codec and exchanges."""

from .tables import (
    ProtocolTable,
    FlashGeometry,
    FrameLayout,
    StatusLayout,
    UsbIdentity,
    DEFAULT_TABLE,
    list_tables,
    get_table,
    find_table,
)
from .codec import (
    QoobCodec,
    StatusReport,
    Status,
    Reset,
    Bus,
    Erase,
    Read,
    Write,
    CHECKSUMS,
)
from .exchange import Exchange, ExchangeState, run_exchange
from .transport import HidTransport, open_transport
from .discovery import DeviceCandidate, DeviceInfo, enumerate_devices, identify

__all__ = [
    # Tables
    "ProtocolTable",
    "FlashGeometry",
    "FrameLayout",
    "StatusLayout",
    "UsbIdentity",
    "DEFAULT_TABLE",
    "list_tables",
    "get_table",
    "find_table",
    # Codec
    "QoobCodec",
    "StatusReport",
    "Status",
    "Reset",
    "Bus",
    "Erase",
    "Read",
    "Write",
    "CHECKSUMS",
    # Exchange
    "Exchange",
    "ExchangeState",
    "run_exchange",
    # Transport
    "HidTransport",
    "open_transport",
    # Discovery
    "DeviceCandidate",
    "DeviceInfo",
    "enumerate_devices",
    "identify",
]
