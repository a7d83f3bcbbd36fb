import pytest
import yaml
from click.testing import CliRunner

from sdrping import sdrping_cli
from sdrping.config import SessionRole
from sdrping.errors import TransportError
from sdrping.protocol import PacketType, SessionEvent, SessionNotice
from sdrping.sdrping_cli import ProgressPrinter, main, render_summary
from sdrping.stats import RunStatistics

from conftest import ScriptedTransport, ack_for, make_frame


class BrokenTransport(ScriptedTransport):
    def start(self):
        raise TransportError("Cannot bind 0.0.0.0:57340: address in use")


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner()


@pytest.fixture
def use_transport(monkeypatch):
    """Replace the emulated radio with a scripted transport"""
    built = []

    def install(transport):
        def build(config):
            built.append(config)
            return transport
        monkeypatch.setattr(sdrping_cli, "build_transport", build)
        return built

    return install


def test_master_success(runner, use_transport):
    configs = use_transport(ScriptedTransport(responder=ack_for))

    result = runner.invoke(main, ["master", "-N", "3", "-n", "16", "--settle-delay", "0"])

    assert result.exit_code == 0, result.output
    assert "Ping Summary (master)" in result.output
    assert "transmitting packet" in result.output
    (config,) = configs
    assert config.role is SessionRole.MASTER
    assert config.num_packets == 3
    assert config.payload_length == 16


def test_master_quiet_prints_symbols(runner, use_transport):
    use_transport(ScriptedTransport(responder=ack_for))

    result = runner.invoke(main, ["master", "-N", "2", "--settle-delay", "0", "-q"])

    assert result.exit_code == 0, result.output
    assert ".." in result.output
    assert "transmitting packet" not in result.output


def test_master_abort_exit_code(runner, use_transport):
    use_transport(ScriptedTransport())

    result = runner.invoke(main, ["master", "-N", "2", "-A", "1", "--settle-delay", "0"])

    assert result.exit_code == 5
    assert "maximum number of attempts on packet 0" in result.output


def test_invalid_packet_count(runner, use_transport):
    use_transport(ScriptedTransport())

    result = runner.invoke(main, ["master", "-N", "0"])

    assert result.exit_code == 3
    assert "num_packets" in result.output


def test_unknown_modulation(runner, use_transport):
    use_transport(ScriptedTransport())

    result = runner.invoke(main, ["master", "-m", "fsk"])

    assert result.exit_code == 3


def test_bad_argument_type(runner):
    result = runner.invoke(main, ["master", "-N", "lots"])
    assert result.exit_code == sdrping_cli.EXIT_ARGUMENT_ERROR


def test_transport_error(runner, use_transport):
    use_transport(BrokenTransport())

    result = runner.invoke(main, ["slave", "-N", "1"])

    assert result.exit_code == 1
    assert "Transport error" in result.output


def test_slave_run(runner, use_transport):
    frames = [make_frame(PacketType.DATA, 0), make_frame(PacketType.DATA, 1)]
    transport = ScriptedTransport(incoming=frames, max_idle_polls=10)
    use_transport(transport)

    result = runner.invoke(main, ["slave", "-N", "2", "--settle-delay", "0"])

    assert result.exit_code == 0, result.output
    assert "ping received" in result.output
    assert "Ping Summary (slave)" in result.output
    assert transport.sent_ids == [0, 1]


def test_config_file_and_overrides(runner, use_transport, tmp_path):
    path = tmp_path / "link.yaml"
    path.write_text(yaml.safe_dump({'num_packets': 4, 'payload_length': 8, 'settle_delay': 0.0,
                                    'legacy_termination': True}))
    configs = use_transport(ScriptedTransport(responder=ack_for))

    result = runner.invoke(main, ["-c", str(path), "master", "-N", "2", "--no-hear-self"])

    assert result.exit_code == 0, result.output
    (config,) = configs
    assert config.num_packets == 2
    assert config.payload_length == 8
    assert config.transport.hear_self is False


def test_slave_keeps_legacy_setting_from_file(runner, use_transport, tmp_path):
    path = tmp_path / "link.yaml"
    path.write_text(yaml.safe_dump({'legacy_termination': True, 'settle_delay': 0.0}))
    configs = use_transport(ScriptedTransport(incoming=[make_frame(PacketType.DATA, 0)], max_idle_polls=10))

    result = runner.invoke(main, ["-c", str(path), "slave", "-N", "1"])

    assert result.exit_code == 0, result.output
    assert configs[0].legacy_termination is True


def test_default_config_file_in_cwd(runner, use_transport, tmp_path):
    (tmp_path / "sdrping.yaml").write_text(yaml.safe_dump({'payload_length': 12, 'settle_delay': 0.0}))
    configs = use_transport(ScriptedTransport(responder=ack_for))

    result = runner.invoke(main, ["master", "-N", "1"])

    assert result.exit_code == 0, result.output
    assert configs[0].payload_length == 12


def test_bad_seed_in_config_file(runner, use_transport, tmp_path):
    path = tmp_path / "link.yaml"
    path.write_text("seed: abc\n")
    use_transport(ScriptedTransport(responder=ack_for))

    result = runner.invoke(main, ["-c", str(path), "master", "-N", "1"])

    assert result.exit_code == 3
    assert "seed" in result.output


def test_missing_config_file(runner):
    result = runner.invoke(main, ["-c", "missing.yaml", "config"])
    assert result.exit_code == 3


def test_show_config(runner, tmp_path):
    path = tmp_path / "link.yaml"
    path.write_text(yaml.safe_dump({'modulation_scheme': 'qam64'}))

    result = runner.invoke(main, ["-c", str(path), "config"])

    assert result.exit_code == 0, result.output
    assert "qam64" in result.output
    assert "carrier_frequency" in result.output


def test_format_bytes():
    assert sdrping_cli.format_bytes(200) == "200.0 B"
    assert sdrping_cli.format_bytes(20480) == "20.0 KB"


def test_id_mismatch_line_shows_both_ids(capsys):
    printer = ProgressPrinter(SessionRole.MASTER)

    printer(SessionNotice(SessionEvent.ID_MISMATCH, packet_id=7, received_id=6))

    out = capsys.readouterr().out
    assert "ack pid (   6) does not match tx pid (   7)" in out


def test_summary_reports_queue_overflows(capsys):
    render_summary(RunStatistics(), SessionRole.SLAVE, overflows=3)
    assert "Queue overflows" in capsys.readouterr().out


def test_summary_omits_zero_overflows(capsys):
    render_summary(RunStatistics(), SessionRole.SLAVE)
    assert "Queue overflows" not in capsys.readouterr().out
