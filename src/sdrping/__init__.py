"""
sdrping - ARQ ping over a half-duplex radio link

A reliability test for point-to-point packet radio links. A master node
sends numbered DATA packets with stop-and-wait retransmission, a slave node
acknowledges them by packet id, and both report achieved goodput and
spectral efficiency.
"""

__version__ = "0.1.0"
__author__ = "sdrping developers"

from .config import RunConfig, SessionRole, load_config
from .protocol import FrameCodec, FrameStatus, PacketType, RetryController
from .session import MasterSession, SlaveSession
from .stats import RunStatistics
from .transport import PacketTransport, ReceivedFrame, TxConfig, UdpRadioTransport

__all__ = [
    "RunConfig",
    "SessionRole",
    "load_config",
    "FrameCodec",
    "FrameStatus",
    "PacketType",
    "RetryController",
    "MasterSession",
    "SlaveSession",
    "RunStatistics",
    "PacketTransport",
    "ReceivedFrame",
    "TxConfig",
    "UdpRadioTransport",
]
