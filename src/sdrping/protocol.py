"""
Ping protocol: frame construction, classification and stop-and-wait ARQ.

This module implements the packet-level side of the link test: building
DATA and ACK frames, deciding what a received frame means for the current
role, and the send/await-ack/retry loop the master runs for each packet.
"""

from typing import Callable, Optional, Tuple, TYPE_CHECKING
from enum import Enum
from dataclasses import dataclass
import struct
import time
import logging

import numpy as np

from .errors import FrameError
from .transport import LinkStats, PacketTransport, ReceivedFrame, TxConfig

if TYPE_CHECKING:
    from .stats import RunStatistics


HEADER_LENGTH = 8
FILL_LENGTH = 5
ACK_PAYLOAD_LENGTH = 10
MAX_PACKET_ID = 0xFFFF

DEFAULT_ACK_TIMEOUT = 0.240  # seconds before re-transmission
DEFAULT_POLL_QUANTUM = 0.001  # seconds per receive poll
DEFAULT_SETTLE_DELAY = 0.080  # seconds before every transmission
DEFAULT_MAX_ATTEMPTS = 500


class PacketType(Enum):
    """Packet types carried in header byte 2"""
    DATA = 59
    ACK = 77


class FrameStatus(Enum):
    """Verdict on a received frame for the role that received it"""
    ACCEPTED = "accepted"
    HEADER_ERROR = "header_error"
    TYPE_MISMATCH = "type_mismatch"
    PAYLOAD_ERROR = "payload_error"
    ID_MISMATCH = "id_mismatch"


class SendState(Enum):
    """States of the retry controller for the outstanding packet"""
    IDLE = 0
    SENDING = 1
    AWAITING_ACK = 2
    ACKED = 3
    TIMED_OUT = 4


class SessionEvent(Enum):
    """Progress events reported to a session observer, with their console codes"""
    TRANSMIT = ">"
    ACCEPTED = "."
    HEADER_ERROR = "x"
    PAYLOAD_ERROR = "X"
    ID_MISMATCH = "?"
    ACK_TIMEOUT = "T"

    @property
    def symbol(self) -> str:
        return self.value


_STATUS_EVENTS = {
    FrameStatus.ACCEPTED: SessionEvent.ACCEPTED,
    FrameStatus.HEADER_ERROR: SessionEvent.HEADER_ERROR,
    FrameStatus.PAYLOAD_ERROR: SessionEvent.PAYLOAD_ERROR,
    FrameStatus.ID_MISMATCH: SessionEvent.ID_MISMATCH,
}


@dataclass(frozen=True)
class SessionNotice:
    """Details passed along with a SessionEvent"""
    event: SessionEvent
    packet_id: int
    attempt: int = 0
    max_attempts: int = 0
    total_packets: int = 0
    payload_len: int = 0
    link_stats: Optional[LinkStats] = None
    received_id: Optional[int] = None  # id of the received ACK (id mismatches only)


Observer = Callable[[SessionNotice], None]


def event_for_status(status: FrameStatus) -> Optional[SessionEvent]:
    """Event to report for a classification; foreign traffic reports nothing"""
    return _STATUS_EVENTS.get(status)


@dataclass(frozen=True)
class FrameHeader:
    """
    The 8-byte frame header

    Layout:
    - Packet id (2 bytes, big-endian)
    - Packet type (1 byte): PacketType value, or an unknown byte from foreign traffic
    - Fill (5 bytes): random, never interpreted
    """
    packet_id: int
    type_code: int
    fill: bytes = b"\x00" * FILL_LENGTH

    @property
    def packet_type(self) -> Optional[PacketType]:
        try:
            return PacketType(self.type_code)
        except ValueError:
            return None

    def pack(self) -> bytes:
        if not 0 <= self.packet_id <= MAX_PACKET_ID:
            raise FrameError(f"Packet id {self.packet_id} out of range 0..{MAX_PACKET_ID}")
        if len(self.fill) != FILL_LENGTH:
            raise FrameError(f"Header fill must be {FILL_LENGTH} bytes, got {len(self.fill)}")
        return struct.pack('!HB', self.packet_id, self.type_code & 0xff) + self.fill

    @staticmethod
    def unpack(data: bytes) -> 'FrameHeader':
        if len(data) != HEADER_LENGTH:
            raise FrameError(f"Header must be {HEADER_LENGTH} bytes, got {len(data)}")
        packet_id, type_code = struct.unpack('!HB', data[:3])
        return FrameHeader(packet_id=packet_id, type_code=type_code, fill=bytes(data[3:]))


class FrameCodec:
    """Builds and interprets ping frames"""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        """
        Initialize the codec

        Args:
            rng: Random source for header fill and payload content; pass a
                seeded generator for reproducible frames
        """
        self.rng = rng if rng is not None else np.random.default_rng()

    def random_bytes(self, length: int) -> bytes:
        return self.rng.integers(0, 256, size=length, dtype=np.uint8).tobytes()

    def data_header(self, packet_id: int) -> bytes:
        return FrameHeader(packet_id, PacketType.DATA.value, self.random_bytes(FILL_LENGTH)).pack()

    def ack_header(self, packet_id: int) -> bytes:
        return FrameHeader(packet_id, PacketType.ACK.value, self.random_bytes(FILL_LENGTH)).pack()

    def data_payload(self, length: int) -> bytes:
        if length < 1:
            raise FrameError(f"Payload length must be positive, got {length}")
        return self.random_bytes(length)

    def ack_payload(self) -> bytes:
        return self.random_bytes(ACK_PAYLOAD_LENGTH)

    @staticmethod
    def parse_header(header: bytes) -> Tuple[int, Optional[PacketType]]:
        """Packet id and type of a received header (type is None for foreign codes)"""
        parsed = FrameHeader.unpack(header)
        return parsed.packet_id, parsed.packet_type

    @staticmethod
    def classify(frame: ReceivedFrame, expected_type: PacketType,
                 expected_id: Optional[int] = None) -> FrameStatus:
        """
        Classify a received frame for the role expecting `expected_type`

        Checks run in order: header validity, packet type, payload validity,
        packet id. A type mismatch is usually our own transmission heard back
        on the shared channel.

        Args:
            frame: Frame returned by the transport (found must be True)
            expected_type: ACK for the master, DATA for the slave
            expected_id: Outstanding packet id, or None if any id is acceptable

        Returns:
            FrameStatus verdict
        """
        if not frame.header_valid or len(frame.header) != HEADER_LENGTH:
            return FrameStatus.HEADER_ERROR

        header = FrameHeader.unpack(frame.header)
        if header.packet_type is not expected_type:
            return FrameStatus.TYPE_MISMATCH

        if not frame.payload_valid:
            return FrameStatus.PAYLOAD_ERROR

        if expected_id is not None and header.packet_id != expected_id:
            return FrameStatus.ID_MISMATCH

        return FrameStatus.ACCEPTED


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of delivering one packet"""
    packet_id: int
    acked: bool
    attempts: int


class RetryController:
    """
    Stop-and-wait delivery of one packet at a time.

    Each attempt waits the settle delay, transmits, then polls the transport
    one quantum at a time until a matching ACK arrives or the accumulated
    wait reaches the ACK timeout. Attempts repeat up to `max_attempts`.
    """

    def __init__(self, transport: PacketTransport, tx_config: TxConfig,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 ack_timeout: float = DEFAULT_ACK_TIMEOUT,
                 poll_quantum: float = DEFAULT_POLL_QUANTUM,
                 settle_delay: float = DEFAULT_SETTLE_DELAY,
                 stats: Optional['RunStatistics'] = None,
                 observer: Optional[Observer] = None,
                 total_packets: int = 0,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the controller

        Args:
            transport: Link used for sending and polling
            tx_config: Transmit properties for DATA frames
            max_attempts: Transmissions allowed per packet
            ack_timeout: Seconds of polling before an attempt times out
            poll_quantum: Seconds per receive poll
            settle_delay: Seconds to wait before each transmission
            stats: Statistics to update with transmissions and frame verdicts
            observer: Progress callback
            total_packets: Run length, for progress reporting
            sleep: Sleep function for the settle delay
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if poll_quantum <= 0:
            raise ValueError("poll_quantum must be positive")

        self.transport = transport
        self.tx_config = tx_config
        self.max_attempts = max_attempts
        self.ack_timeout = ack_timeout
        self.poll_quantum = poll_quantum
        self.settle_delay = settle_delay
        self.stats = stats
        self.observer = observer
        self.total_packets = total_packets
        self.sleep = sleep

        # Timer bookkeeping in whole microseconds
        self._quantum_us = max(1, int(round(poll_quantum * 1e6)))
        self._timeout_us = int(round(ack_timeout * 1e6))

        self.state = SendState.IDLE

    def deliver(self, packet_id: int, header: bytes, payload: bytes) -> DeliveryResult:
        """
        Transmit a packet until it is acknowledged or the attempt budget runs out

        Args:
            packet_id: Id carried in `header`, expected back in the ACK
            header: Packed DATA header
            payload: DATA payload

        Returns:
            DeliveryResult; acked is False only when all attempts timed out
        """
        attempts = 0
        self.state = SendState.IDLE

        while attempts < self.max_attempts:
            attempts += 1
            self._transmit(packet_id, header, payload, attempts)

            if self._await_ack(packet_id, attempts):
                self.state = SendState.ACKED
                logging.debug(f"ACK received for packet {packet_id} on attempt {attempts}")
                return DeliveryResult(packet_id, True, attempts)

            self.state = SendState.TIMED_OUT
            logging.debug(f"ACK timeout for packet {packet_id} (attempt {attempts}/{self.max_attempts})")
            if self.stats is not None:
                self.stats.ack_timeouts += 1
            self._notify(SessionEvent.ACK_TIMEOUT, packet_id, attempts)

        logging.warning(f"All {self.max_attempts} attempts failed for packet {packet_id}")
        return DeliveryResult(packet_id, False, attempts)

    def _transmit(self, packet_id: int, header: bytes, payload: bytes, attempt: int) -> None:
        self.state = SendState.SENDING
        self._notify(SessionEvent.TRANSMIT, packet_id, attempt)

        # Give the RF hardware time to settle
        self.sleep(self.settle_delay)
        self.transport.send(header, payload, self.tx_config)

        if self.stats is not None:
            self.stats.transmissions += 1
            if attempt > 1:
                self.stats.retransmissions += 1

        self.state = SendState.AWAITING_ACK

    def _await_ack(self, packet_id: int, attempt: int) -> bool:
        waited_us = 0

        while waited_us < self._timeout_us:
            frame = self.transport.receive(self.poll_quantum)
            waited_us += self._quantum_us

            if not frame.found:
                continue

            status = FrameCodec.classify(frame, PacketType.ACK, packet_id)
            if status is FrameStatus.ACCEPTED:
                self._notify(SessionEvent.ACCEPTED, packet_id, attempt, frame)
                return True

            if self.stats is not None:
                self.stats.record_status(status)
            event = event_for_status(status)
            if event is not None:
                received_id = None
                if status is FrameStatus.ID_MISMATCH:
                    received_id, _ = FrameCodec.parse_header(frame.header)
                self._notify(event, packet_id, attempt, frame, received_id)

        return False

    def _notify(self, event: SessionEvent, packet_id: int, attempt: int,
                frame: Optional[ReceivedFrame] = None,
                received_id: Optional[int] = None) -> None:
        if self.observer is None:
            return
        self.observer(SessionNotice(
            event=event,
            packet_id=packet_id,
            attempt=attempt,
            max_attempts=self.max_attempts,
            total_packets=self.total_packets,
            payload_len=frame.payload_len if frame is not None else 0,
            link_stats=frame.link_stats if frame is not None else None,
            received_id=received_id,
        ))
