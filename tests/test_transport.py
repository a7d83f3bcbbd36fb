import threading
import time
from dataclasses import replace

import numpy as np
import pytest

from sdrping.config import RunConfig, SessionRole
from sdrping.errors import TransportError
from sdrping.protocol import FrameCodec, FrameHeader, PacketType
from sdrping.session import MasterSession, SlaveSession
from sdrping.transport import (MODULATION_SCHEMES, ChannelConfig, ChannelModel, PacketTransport,
                               TxConfig, UdpRadioTransport, bits_per_symbol, decode_datagram,
                               encode_datagram)


HEADER = FrameHeader(7, PacketType.DATA.value, b"\x01\x02\x03\x04\x05").pack()
PAYLOAD = bytes(range(100))


def test_datagram_round_trip():
    frame = decode_datagram(encode_datagram(HEADER, PAYLOAD, TxConfig()))

    assert frame.found
    assert frame.header == HEADER and frame.header_valid
    assert frame.payload == PAYLOAD and frame.payload_valid


def test_corrupted_payload_keeps_header():
    datagram = bytearray(encode_datagram(HEADER, PAYLOAD, TxConfig()))
    datagram[30] ^= 0x01

    frame = decode_datagram(bytes(datagram))

    assert frame.header_valid
    assert not frame.payload_valid


def test_corrupted_header_invalidates_both():
    datagram = bytearray(encode_datagram(HEADER, PAYLOAD, TxConfig()))
    datagram[1] ^= 0x80

    frame = decode_datagram(bytes(datagram))

    assert not frame.header_valid
    assert not frame.payload_valid


def test_truncated_datagram_not_found():
    datagram = encode_datagram(HEADER, PAYLOAD, TxConfig())
    assert not decode_datagram(datagram[:10]).found


def test_truncated_payload_invalid():
    datagram = encode_datagram(HEADER, PAYLOAD, TxConfig())
    frame = decode_datagram(datagram[:-20] + datagram[-4:])

    assert frame.header_valid
    assert not frame.payload_valid


def test_encode_rejects_bad_input():
    with pytest.raises(ValueError):
        encode_datagram(HEADER[:4], PAYLOAD, TxConfig())
    with pytest.raises(ValueError):
        encode_datagram(HEADER, PAYLOAD, TxConfig(modulation_scheme="fsk"))


def test_bits_per_symbol():
    assert bits_per_symbol("bpsk") == 1
    assert bits_per_symbol("qpsk") == 2
    assert bits_per_symbol("qam256") == 8
    with pytest.raises(ValueError):
        bits_per_symbol("fsk")


@pytest.mark.parametrize("scheme", list(MODULATION_SCHEMES))
def test_ber_falls_with_snr(scheme):
    rates = [ChannelModel(ChannelConfig(snr_db=snr)).bit_error_rate(scheme) for snr in (0, 10, 20)]

    assert all(0.0 <= r <= 0.5 for r in rates)
    assert rates[0] > rates[1] > rates[2]


def test_denser_constellation_has_more_errors():
    channel = ChannelModel(ChannelConfig(snr_db=15))
    assert channel.bit_error_rate("qpsk") < channel.bit_error_rate("qam64")


def test_clean_channel_leaves_frames_intact():
    channel = ChannelModel(ChannelConfig(snr_db=40), rng=np.random.default_rng(3))
    datagram = encode_datagram(HEADER, PAYLOAD, TxConfig())

    frame = decode_datagram(datagram, channel)

    assert frame.payload_valid
    assert frame.payload == PAYLOAD


def test_noisy_channel_corrupts_frames():
    channel = ChannelModel(ChannelConfig(snr_db=0), rng=np.random.default_rng(3))
    datagram = encode_datagram(HEADER, bytes(1000), TxConfig(modulation_scheme="qam256"))

    frame = decode_datagram(datagram, channel)

    assert frame.found
    assert not frame.payload_valid


def test_drop_rate():
    rng = np.random.default_rng(0)
    assert not ChannelModel(ChannelConfig(drop_rate=0.0), rng).should_drop()
    assert ChannelModel(ChannelConfig(drop_rate=1.0), rng).should_drop()


def test_link_stats_track_config():
    channel = ChannelModel(ChannelConfig(snr_db=20, rssi_db=-60, rssi_jitter_db=0.0), np.random.default_rng(1))
    stats = channel.link_stats()

    assert stats.rssi == -60.0
    assert -23.0 < stats.evm < -17.0


@pytest.fixture
def radio_pair():
    a = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 0))
    b = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 0))
    a.start()
    b.start()
    a.remote_address = b.bound_address
    b.remote_address = a.bound_address
    yield a, b
    a.stop()
    b.stop()


def test_udp_transport_is_a_packet_transport():
    assert isinstance(UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 0)), PacketTransport)


def test_send_before_start():
    transport = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 0))
    with pytest.raises(TransportError):
        transport.send(HEADER, PAYLOAD, TxConfig())


def test_bind_failure():
    transport = UdpRadioTransport(("203.0.113.1", 0), ("127.0.0.1", 0))
    with pytest.raises(TransportError):
        transport.start()


def test_frames_cross_the_link(radio_pair):
    a, b = radio_pair

    a.send(HEADER, PAYLOAD, TxConfig())

    heard_self = a.receive(1.0)
    assert heard_self.found and heard_self.header == HEADER

    frame = b.receive(2.0)
    assert frame.found
    assert frame.header == HEADER and frame.payload == PAYLOAD
    assert frame.payload_valid
    assert a.frames_sent == 1


def test_receive_times_out(radio_pair):
    a, _ = radio_pair
    assert not a.receive(0.01).found


def test_hear_self_disabled():
    a = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 9), hear_self=False)
    a.start()
    try:
        a.send(HEADER, PAYLOAD, TxConfig())
        assert not a.receive(0.05).found
    finally:
        a.stop()


def test_queue_overflow_counted():
    a = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 9), max_queue=2)
    a.start()
    try:
        for _ in range(3):
            a.send(HEADER, PAYLOAD, TxConfig())
        assert a.overflows == 1
    finally:
        a.stop()


def test_stop_waits_for_reader_before_closing():
    a = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 9))
    a.start()
    reader = a._reader

    a.stop()

    assert not reader.is_alive()
    assert a.bound_address is None


def test_overflows_counted_from_both_threads(radio_pair):
    _, b = radio_pair
    small = UdpRadioTransport(("127.0.0.1", 0), b.bound_address, max_queue=1)
    small.start()
    try:
        b.remote_address = small.bound_address
        # one queued self copy fills the queue; the peer frame and a second self copy overflow
        small.send(HEADER, PAYLOAD, TxConfig())
        b.send(HEADER, PAYLOAD, TxConfig())
        small.send(HEADER, PAYLOAD, TxConfig())
        deadline = time.monotonic() + 2.0
        while small.overflows < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert small.overflows == 2
    finally:
        small.stop()


def test_start_and_stop_are_idempotent():
    a = UdpRadioTransport(("127.0.0.1", 0), ("127.0.0.1", 9))
    a.start()
    address = a.bound_address
    a.start()
    assert a.bound_address == address
    a.stop()
    a.stop()
    assert a.bound_address is None


def test_master_and_slave_over_udp(radio_pair):
    master_radio, slave_radio = radio_pair
    base = RunConfig(num_packets=5, payload_length=64, settle_delay=0.0)
    master_config = replace(base, role=SessionRole.MASTER)
    slave_config = replace(base, role=SessionRole.SLAVE)

    slave = SlaveSession(slave_radio, slave_config, codec=FrameCodec(np.random.default_rng(2)))
    result = {}
    thread = threading.Thread(target=lambda: result.update(stats=slave.run()), daemon=True)
    thread.start()

    master_stats = MasterSession(master_radio, master_config, codec=FrameCodec(np.random.default_rng(1))).run()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert not master_stats.aborted
    assert master_stats.bytes_transferred == 5 * 64
    assert result['stats'].packets_accepted >= 5
    # the master hears its own DATA frames on the shared channel
    assert master_stats.foreign_frames >= 5
