"""
Packet transport boundary and an emulated radio link.

The protocol core only ever talks to a PacketTransport: a send primitive and
a bounded-time receive poll that yields at most one candidate frame, with
independent header and payload validity verdicts. Real radios sit behind this
interface. For bench work without hardware, UdpRadioTransport emulates a
half-duplex radio over UDP datagrams and runs every received frame through a
simulated AWGN channel (ChannelModel) before checking its CRCs.
"""

from typing import Dict, Optional, Protocol, Tuple, runtime_checkable
from dataclasses import dataclass, field
import logging
import queue
import socket
import struct
import threading
import zlib

import numpy as np
from scipy.special import erfc

from .errors import TransportError


# Modulation schemes understood by the link: name -> (family, constellation size)
MODULATION_SCHEMES: Dict[str, Tuple[str, int]] = {
    'bpsk': ('psk', 2),
    'qpsk': ('psk', 4),
    'psk8': ('psk', 8),
    'psk16': ('psk', 16),
    'qam16': ('qam', 16),
    'qam32': ('qam', 32),
    'qam64': ('qam', 64),
    'qam128': ('qam', 128),
    'qam256': ('qam', 256),
    'ook': ('ook', 2),
}

FEC_SCHEMES = ('none', 'rep3', 'rep5', 'h74', 'h84', 'h128', 'v27', 'v29', 'v39', 'v615', 'rs8')

CRC_SCHEMES = ('none', 'checksum', 'crc8', 'crc16', 'crc24', 'crc32')

# Emulated wire format, after a 1-byte PHY mode prefix:
#   header (8) | payload length (2) | CRC32 of header+length (4) | payload | CRC32 of payload (4)
PHY_HEADER_FORMAT = '!8sHI'
PHY_HEADER_SIZE = struct.calcsize(PHY_HEADER_FORMAT)
CRC_SIZE = 4
MAX_DATAGRAM_SIZE = 65535


@dataclass(frozen=True)
class TxConfig:
    """Transmit properties forwarded opaquely to the transport"""
    modulation_scheme: str = 'qpsk'
    inner_fec: str = 'h74'
    outer_fec: str = 'none'
    crc_scheme: str = 'crc32'

    @classmethod
    def ack_default(cls) -> 'TxConfig':
        """Properties used for acknowledgements regardless of the data settings"""
        return cls(modulation_scheme='qpsk', crc_scheme='crc32')


@dataclass(frozen=True)
class LinkStats:
    """Signal measurements carried with a received frame (reporting only)"""
    rssi: float = 0.0
    evm: float = 0.0


@dataclass
class ReceivedFrame:
    """Result of a single receive poll"""
    found: bool
    header: bytes = b""
    header_valid: bool = False
    payload: bytes = b""
    payload_valid: bool = False
    link_stats: LinkStats = field(default_factory=LinkStats)

    @property
    def payload_len(self) -> int:
        return len(self.payload)

    @classmethod
    def not_found(cls) -> 'ReceivedFrame':
        return cls(found=False)


@runtime_checkable
class PacketTransport(Protocol):
    """
    Physical-layer send/receive primitive consumed by the sessions.

    send() may silently fail to get airtime; the sessions only notice through
    a missing acknowledgement. receive() returns within `timeout` seconds
    whether or not a frame was found.
    """

    def send(self, header: bytes, payload: bytes, tx_config: TxConfig) -> None:
        ...

    def receive(self, timeout: float) -> ReceivedFrame:
        ...

    def start(self) -> None:
        """Activate continuous background reception"""
        ...

    def stop(self) -> None:
        """Deactivate background reception"""
        ...


def bits_per_symbol(modulation_scheme: str) -> int:
    """Number of bits carried per symbol for a known modulation scheme"""
    try:
        _, order = MODULATION_SCHEMES[modulation_scheme]
    except KeyError:
        raise ValueError(f"Unknown modulation scheme: {modulation_scheme}")
    return int(np.log2(order))


@dataclass
class ChannelConfig:
    """Configuration for the simulated channel"""
    snr_db: float = 30.0
    drop_rate: float = 0.0  # probability a frame is never detected
    rssi_db: float = -40.0
    rssi_jitter_db: float = 1.0


class ChannelModel:
    """
    Simulated AWGN channel applied to emulated radio frames.

    Bit errors follow the textbook AWGN error rates for the frame's
    modulation at the configured SNR; whole frames are missed with
    probability `drop_rate`.
    """

    def __init__(self, config: Optional[ChannelConfig] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config or ChannelConfig()
        self.rng = rng if rng is not None else np.random.default_rng()

    def bit_error_rate(self, modulation_scheme: str) -> float:
        """
        Bit error probability for a modulation scheme at the channel's SNR

        Args:
            modulation_scheme: Name from MODULATION_SCHEMES

        Returns:
            Bit error rate in [0, 0.5]
        """
        family, order = MODULATION_SCHEMES[modulation_scheme]
        k = bits_per_symbol(modulation_scheme)
        snr = 10.0 ** (self.config.snr_db / 10.0)
        ebn0 = snr / k

        if family == 'ook':
            ber = 0.5 * erfc(np.sqrt(ebn0 / 2.0))
        elif family == 'psk' and order <= 4:
            ber = 0.5 * erfc(np.sqrt(ebn0))
        elif family == 'psk':
            ber = erfc(np.sqrt(k * ebn0) * np.sin(np.pi / order)) / k
        else:
            ber = (2.0 / k) * (1.0 - 1.0 / np.sqrt(order)) * erfc(np.sqrt(3.0 * k * ebn0 / (2.0 * (order - 1))))

        return float(min(max(ber, 0.0), 0.5))

    def should_drop(self) -> bool:
        return bool(self.rng.random() < self.config.drop_rate)

    def corrupt(self, data: bytes, modulation_scheme: str) -> bytes:
        """Flip bits of `data` independently with the channel's bit error rate"""
        ber = self.bit_error_rate(modulation_scheme)
        if ber <= 0.0 or not data:
            return data

        bits = np.unpackbits(np.frombuffer(data, dtype=np.uint8))
        flips = self.rng.random(bits.size) < ber
        if not flips.any():
            return data

        logging.debug(f"Channel flipped {int(flips.sum())} of {bits.size} bits (ber={ber:.2e})")
        return np.packbits(bits ^ flips.astype(np.uint8)).tobytes()

    def link_stats(self) -> LinkStats:
        """Measurements a receiver would report for a frame on this channel"""
        rssi = self.config.rssi_db + self.rng.normal(0.0, self.config.rssi_jitter_db)
        evm = -self.config.snr_db + self.rng.normal(0.0, 0.5)
        return LinkStats(rssi=float(rssi), evm=float(evm))


def encode_datagram(header: bytes, payload: bytes, tx_config: TxConfig) -> bytes:
    """
    Pack a frame into an emulated radio datagram

    Args:
        header: 8-byte frame header
        payload: Frame payload
        tx_config: Transmit properties; the modulation index rides in the PHY prefix

    Returns:
        Datagram bytes
    """
    if len(header) != 8:
        raise ValueError(f"Header must be 8 bytes, got {len(header)}")
    if tx_config.modulation_scheme not in MODULATION_SCHEMES:
        raise ValueError(f"Unknown modulation scheme: {tx_config.modulation_scheme}")

    mode = list(MODULATION_SCHEMES).index(tx_config.modulation_scheme)
    header_crc = zlib.crc32(header + struct.pack('!H', len(payload))) & 0xffffffff
    payload_crc = zlib.crc32(payload) & 0xffffffff

    data = struct.pack('B', mode)
    data += struct.pack(PHY_HEADER_FORMAT, header, len(payload), header_crc)
    data += payload
    data += struct.pack('!I', payload_crc)
    return data


def decode_datagram(datagram: bytes, channel: Optional[ChannelModel] = None) -> ReceivedFrame:
    """
    Unpack an emulated radio datagram, optionally through a channel model

    The PHY prefix is assumed to survive the channel; everything after it is
    subject to bit errors. Header and payload validity come from their CRCs.
    """
    if len(datagram) < 1 + PHY_HEADER_SIZE + CRC_SIZE:
        logging.debug(f"Datagram too short: {len(datagram)} bytes")
        return ReceivedFrame.not_found()

    mode = datagram[0]
    schemes = list(MODULATION_SCHEMES)
    if mode >= len(schemes):
        logging.debug(f"Unknown PHY mode {mode}")
        return ReceivedFrame.not_found()

    body = datagram[1:]
    link_stats = LinkStats()
    if channel is not None:
        body = channel.corrupt(body, schemes[mode])
        link_stats = channel.link_stats()

    header, payload_len, header_crc = struct.unpack(PHY_HEADER_FORMAT, body[:PHY_HEADER_SIZE])
    payload = body[PHY_HEADER_SIZE:-CRC_SIZE]
    payload_crc = struct.unpack('!I', body[-CRC_SIZE:])[0]

    header_valid = (zlib.crc32(body[:10]) & 0xffffffff) == header_crc
    payload_valid = (
        header_valid
        and payload_len == len(payload)
        and (zlib.crc32(payload) & 0xffffffff) == payload_crc
    )

    return ReceivedFrame(
        found=True,
        header=header,
        header_valid=header_valid,
        payload=payload,
        payload_valid=payload_valid,
        link_stats=link_stats,
    )


class UdpRadioTransport:
    """
    Emulated half-duplex radio over UDP.

    Each node binds a local port and sends its frames to the peer's port. A
    background thread reads datagrams, runs them through the channel model and
    queues the decoded frames; receive() is a bounded wait on that queue. With
    `hear_self` enabled the node also receives its own transmissions, as it
    would on a shared radio channel.
    """

    READ_TIMEOUT = 0.1  # reader thread wake-up interval (seconds)

    def __init__(self, local_address: Tuple[str, int], remote_address: Tuple[str, int],
                 channel: Optional[ChannelModel] = None, hear_self: bool = True,
                 max_queue: int = 64, carrier_frequency: float = 0.0):
        """
        Initialize the transport

        Args:
            local_address: (host, port) to bind; port 0 picks a free port
            remote_address: (host, port) of the peer node
            channel: Channel model applied to frames from the peer (None = ideal)
            hear_self: Queue our own transmissions as received frames
            max_queue: Receive queue depth; frames beyond it are dropped (overflow)
            carrier_frequency: Nominal carrier, informational only
        """
        self.local_address = local_address
        self.remote_address = remote_address
        self.channel = channel
        self.hear_self = hear_self
        self.carrier_frequency = carrier_frequency

        self._queue: "queue.Queue[ReceivedFrame]" = queue.Queue(maxsize=max_queue)
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[threading.Thread] = None
        self._running = threading.Event()
        self._overflow_lock = threading.Lock()

        self.frames_sent = 0
        self.overflows = 0

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        """Actual local address once started"""
        if self._sock is None:
            return None
        return self._sock.getsockname()

    def start(self) -> None:
        if self._running.is_set():
            return

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(self.local_address)
            sock.settimeout(self.READ_TIMEOUT)
        except OSError as e:
            raise TransportError(f"Cannot bind {self.local_address[0]}:{self.local_address[1]}: {e}")

        self._sock = sock
        self._running.set()
        self._reader = threading.Thread(target=self._read_loop, name="udp-radio-rx", daemon=True)
        self._reader.start()

        logging.info(f"Radio transport started: local={self.bound_address}, remote={self.remote_address}, "
                     f"carrier={self.carrier_frequency / 1e6:.4f} MHz")

    def stop(self) -> None:
        if not self._running.is_set():
            return

        self._running.clear()
        if self._reader is not None:
            # the reader wakes every READ_TIMEOUT; the socket stays open until it has exited
            self._reader.join()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

        logging.info(f"Radio transport stopped ({self.frames_sent} frames sent, {self.overflows} overflows)")

    def send(self, header: bytes, payload: bytes, tx_config: TxConfig) -> None:
        if self._sock is None:
            raise TransportError("Transport not started")

        datagram = encode_datagram(header, payload, tx_config)

        if self.hear_self:
            self._enqueue(decode_datagram(datagram))

        try:
            self._sock.sendto(datagram, self.remote_address)
            self.frames_sent += 1
        except OSError as e:
            # No airtime: the peer never sees it and the ARQ timer recovers
            logging.warning(f"Transmit failed: {e}")

    def receive(self, timeout: float) -> ReceivedFrame:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return ReceivedFrame.not_found()

    def _enqueue(self, frame: ReceivedFrame) -> None:
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            with self._overflow_lock:
                self.overflows += 1
            logging.warning("Receive queue overflow, frame dropped")

    def _read_loop(self) -> None:
        sock = self._sock
        while self._running.is_set():
            try:
                datagram, _ = sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    logging.error(f"Receive failed: {e}")
                break

            if self.channel is not None and self.channel.should_drop():
                logging.debug("Channel dropped frame")
                continue

            frame = decode_datagram(datagram, self.channel)
            if frame.found:
                self._enqueue(frame)
