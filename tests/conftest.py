from collections import deque

import numpy as np
import pytest

from sdrping.config import RunConfig, SessionRole
from sdrping.protocol import FrameCodec, FrameHeader, PacketType
from sdrping.transport import LinkStats, ReceivedFrame


def make_frame(packet_type, packet_id, payload=b"\x00" * 10, header_valid=True,
               payload_valid=True, type_code=None):
    """Received frame as a transport would hand it to a session"""
    code = type_code if type_code is not None else packet_type.value
    header = FrameHeader(packet_id, code, b"\xaa" * 5).pack()
    return ReceivedFrame(
        found=True,
        header=header,
        header_valid=header_valid,
        payload=payload,
        payload_valid=payload_valid,
        link_stats=LinkStats(rssi=-42.0, evm=-25.0),
    )


class ScriptedTransport:
    """
    In-memory transport driven by a script.

    `incoming` frames are returned one per poll. After every send, the
    optional responder is called with the sent header/payload and whatever it
    returns is queued for subsequent polls.
    """

    def __init__(self, responder=None, incoming=None, max_idle_polls=1_000_000):
        self.responder = responder
        self.pending = deque(incoming or [])
        self.sent = []
        self.polls = 0
        self.idle_polls = 0
        self.max_idle_polls = max_idle_polls
        self.started = 0
        self.stopped = 0

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1

    def send(self, header, payload, tx_config):
        self.sent.append((header, payload, tx_config))
        if self.responder is not None:
            self.pending.extend(self.responder(header, payload))

    def receive(self, timeout):
        self.polls += 1
        if self.pending:
            self.idle_polls = 0
            return self.pending.popleft()

        self.idle_polls += 1
        if self.idle_polls > self.max_idle_polls:
            raise RuntimeError("transport script exhausted")
        return ReceivedFrame.not_found()

    @property
    def sent_headers(self):
        return [FrameHeader.unpack(header) for header, _, _ in self.sent]

    @property
    def sent_ids(self):
        return [h.packet_id for h in self.sent_headers]


def ack_for(header, payload):
    """Responder that acknowledges every DATA frame immediately"""
    packet_id = FrameHeader.unpack(header).packet_id
    return [make_frame(PacketType.ACK, packet_id)]


@pytest.fixture
def master_config():
    return RunConfig(
        role=SessionRole.MASTER,
        num_packets=3,
        payload_length=32,
        settle_delay=0.0,
    )


@pytest.fixture
def slave_config():
    return RunConfig(
        role=SessionRole.SLAVE,
        num_packets=3,
        settle_delay=0.0,
    )


@pytest.fixture
def codec():
    return FrameCodec(np.random.default_rng(1234))


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping"""
    calls = []
    return calls
