"""
Master and slave ping sessions.

A process runs exactly one session. The master pushes `num_packets` DATA
frames through the RetryController and aborts if any packet exhausts its
attempt budget. The slave answers every valid DATA frame with an ACK that
carries the same packet id and stops after accepting the final id.
"""

from typing import Callable, Optional, Union
import logging
import time

from .config import RunConfig, SessionRole
from .protocol import (FrameCodec, FrameStatus, Observer, PacketType, RetryController,
                       SessionEvent, SessionNotice, event_for_status)
from .stats import RunStatistics
from .transport import PacketTransport, ReceivedFrame, TxConfig


class MasterSession:
    """Traffic generator: sends DATA frames and waits for their ACKs"""

    role = SessionRole.MASTER

    def __init__(self, transport: PacketTransport, config: RunConfig,
                 codec: Optional[FrameCodec] = None,
                 observer: Optional[Observer] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the master session

        Args:
            transport: Link to the slave
            config: Run configuration
            codec: Frame codec (a seeded one makes runs reproducible)
            observer: Progress callback
            sleep: Sleep function used for the settle delay
            clock: Time source for run statistics
        """
        self.transport = transport
        self.config = config
        self.codec = codec or FrameCodec()
        self.stats = RunStatistics(bandwidth=config.bandwidth, clock=clock)
        self.controller = RetryController(
            transport,
            config.tx_config,
            max_attempts=config.max_attempts,
            ack_timeout=config.ack_timeout,
            poll_quantum=config.poll_quantum,
            settle_delay=config.settle_delay,
            stats=self.stats,
            observer=observer,
            total_packets=config.num_packets,
            sleep=sleep,
        )
        self.next_packet_id = 0

    def run(self) -> RunStatistics:
        """
        Drive the whole transmit run

        Returns:
            Final statistics; stats.aborted is set if a packet was never acknowledged
        """
        logging.info(f"Master starting: {self.config.num_packets} packets of "
                     f"{self.config.payload_length} bytes, up to {self.config.max_attempts} attempts each")

        self.stats.start()
        self.transport.start()
        try:
            while self.next_packet_id < self.config.num_packets:
                packet_id = self.next_packet_id
                header = self.codec.data_header(packet_id)
                payload = self.codec.data_payload(self.config.payload_length)

                result = self.controller.deliver(packet_id, header, payload)
                if not result.acked:
                    logging.error(f"Transmitter reached maximum number of attempts on packet {packet_id}; bailing")
                    self.stats.aborted = True
                    self.stats.failed_packet_id = packet_id
                    break

                self.stats.bytes_transferred += len(payload)
                self.stats.packets_accepted += 1
                self.next_packet_id += 1
        finally:
            self.stats.stop()
            self.transport.stop()

        logging.info(f"Master finished: {self.stats.packets_accepted}/{self.config.num_packets} packets acknowledged")
        return self.stats


class SlaveSession:
    """Responder: accepts DATA frames and acknowledges them by id"""

    role = SessionRole.SLAVE

    def __init__(self, transport: PacketTransport, config: RunConfig,
                 codec: Optional[FrameCodec] = None,
                 observer: Optional[Observer] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 ack_tx_config: Optional[TxConfig] = None):
        self.transport = transport
        self.config = config
        self.codec = codec or FrameCodec()
        self.observer = observer
        self.sleep = sleep
        self.ack_tx_config = ack_tx_config or TxConfig.ack_default()
        self.stats = RunStatistics(bandwidth=config.bandwidth, clock=clock)

        # Last id read from a frame with a valid header (legacy termination only)
        self._last_seen_id = 0

    def run(self) -> RunStatistics:
        """
        Answer DATA frames until the final packet id has been accepted

        There is no receive timeout: the slave waits for the master indefinitely.
        """
        final_id = self.config.final_packet_id
        logging.info(f"Slave starting: waiting for packets 0..{final_id}")

        self.stats.start()
        self.transport.start()
        try:
            while True:
                frame = self._wait_for_frame()
                if self._handle(frame, final_id):
                    break
        finally:
            self.stats.stop()
            self.transport.stop()

        logging.info(f"Slave finished: {self.stats.packets_accepted} packets accepted")
        return self.stats

    def _wait_for_frame(self) -> ReceivedFrame:
        while True:
            frame = self.transport.receive(self.config.poll_quantum)
            if frame.found:
                return frame

    def _handle(self, frame: ReceivedFrame, final_id: int) -> bool:
        """Process one frame; returns True when the session should end"""
        status = FrameCodec.classify(frame, PacketType.DATA)

        if status is not FrameStatus.ACCEPTED:
            self.stats.record_status(status)

            if status is FrameStatus.PAYLOAD_ERROR:
                packet_id, _ = FrameCodec.parse_header(frame.header)
                self._last_seen_id = packet_id
                logging.debug(f"Payload CRC failed on packet {packet_id}")
            else:
                packet_id = self._last_seen_id

            event = event_for_status(status)
            if event is not None:
                self._notify(event, packet_id, frame)

            if self.config.legacy_termination and self._last_seen_id == final_id:
                logging.warning(f"Legacy termination after rejected frame (last id {self._last_seen_id})")
                return True
            return False

        packet_id, _ = FrameCodec.parse_header(frame.header)
        self._last_seen_id = packet_id

        self.stats.bytes_transferred += frame.payload_len
        self.stats.packets_accepted += 1
        self._notify(SessionEvent.ACCEPTED, packet_id, frame)

        self._send_ack(packet_id)

        return packet_id == final_id

    def _send_ack(self, packet_id: int) -> None:
        header = self.codec.ack_header(packet_id)
        payload = self.codec.ack_payload()

        # Give the RF hardware time to settle
        self.sleep(self.config.settle_delay)
        self.transport.send(header, payload, self.ack_tx_config)
        self.stats.transmissions += 1

    def _notify(self, event: SessionEvent, packet_id: int, frame: ReceivedFrame) -> None:
        if self.observer is None:
            return
        self.observer(SessionNotice(
            event=event,
            packet_id=packet_id,
            total_packets=self.config.num_packets,
            payload_len=frame.payload_len,
            link_stats=frame.link_stats,
        ))


def create_session(transport: PacketTransport, config: RunConfig,
                   **kwargs) -> Union[MasterSession, SlaveSession]:
    """Session object for the configured role"""
    if config.role is SessionRole.MASTER:
        return MasterSession(transport, config, **kwargs)
    return SlaveSession(transport, config, **kwargs)
