"""
sdrping CLI - packet ping over a half-duplex radio link

Command-line interface for running one end of a link reliability test: the
master sends numbered DATA packets and waits for their acknowledgements, the
slave answers them. Both ends print a throughput summary when the run ends.
"""

import click
import sys
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import numpy as np
import yaml

# Rich library for colorized output
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

from .config import RunConfig, SessionRole, load_config
from .errors import ConfigError, TransportError
from .protocol import FrameCodec, SessionEvent, SessionNotice
from .session import create_session
from .stats import RunStatistics
from .transport import ChannelModel, UdpRadioTransport

# Initialize rich console
console = Console()

# Exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_ARGUMENT_ERROR = 2  # raised by click itself on bad command-line arguments
EXIT_CONFIG_ERROR = 3
EXIT_LINK_ERROR = 5

DEFAULT_CONFIG_FILE = 'sdrping.yaml'


class ProgressPrinter:
    """Prints per-packet progress as a session runs"""

    def __init__(self, role: SessionRole, verbose: bool = True):
        """
        Initialize progress printer

        Args:
            role: Role of the session being reported
            verbose: One line per event if True, one character per event otherwise
        """
        self.role = role
        self.verbose = verbose

    def __call__(self, notice: SessionNotice) -> None:
        if self.verbose:
            line = self._format_line(notice)
            if line:
                console.print(line, highlight=False)
        elif notice.event is not SessionEvent.TRANSMIT:
            console.print(notice.event.symbol, end="", highlight=False)

    def _format_line(self, notice: SessionNotice) -> Optional[str]:
        event = notice.event

        if event is SessionEvent.TRANSMIT:
            marker = '*' if notice.attempt > 1 else ' '
            return (f"transmitting packet {notice.packet_id:6d}/{notice.total_packets:6d} "
                    f"(attempt {notice.attempt:4d}/{notice.max_attempts:4d}) {marker}")

        if event is SessionEvent.ACCEPTED:
            if self.role is SessionRole.MASTER:
                return None
            stats = notice.link_stats
            rssi = stats.rssi if stats else 0.0
            snr = -stats.evm if stats else 0.0
            return (f"  ping received {notice.payload_len:4d} data bytes on packet [{notice.packet_id:4d}] "
                    f"rssi: {rssi:5.1f}dB, snr: {snr:5.1f}dB")

        if event is SessionEvent.HEADER_ERROR:
            return "[yellow]  rx header invalid![/]"
        if event is SessionEvent.PAYLOAD_ERROR:
            return f"[yellow]  rx payload invalid! [{notice.packet_id:4d}][/]"
        if event is SessionEvent.ID_MISMATCH:
            rx_id = notice.received_id if notice.received_id is not None else notice.packet_id
            return f"[yellow]  ack pid ({rx_id:4d}) does not match tx pid ({notice.packet_id:4d})[/]"
        if event is SessionEvent.ACK_TIMEOUT:
            return f"[dim]  ack timeout ({notice.packet_id})[/]"
        return None


def format_bytes(bytes_val: float) -> str:
    """
    Format bytes as human-readable string

    Args:
        bytes_val: Bytes value

    Returns:
        Formatted string (e.g., "1.5 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(bytes_val) < 1024.0:
            return f"{bytes_val:.1f} {unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f} PB"


def success(message: str) -> None:
    """Print success message in green"""
    console.print(f"✓ {message}", style="bold green")


def error(message: str) -> None:
    """Print error message in red"""
    console.print(f"✗ {message}", style="bold red")


def warning(message: str) -> None:
    """Print warning message in yellow"""
    console.print(f"⚠ {message}", style="bold yellow")


def info(message: str) -> None:
    """Print info message in blue"""
    console.print(f"ℹ {message}", style="blue")


def metric(label: str, value: str) -> None:
    """Print metric in cyan"""
    console.print(f"{label}: ", style="cyan", end="")
    console.print(value, style="bold cyan")


def setup_logging(verbose: bool) -> None:
    """
    Setup logging configuration

    Args:
        verbose: Enable verbose/debug logging
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_transport(config: RunConfig) -> UdpRadioTransport:
    """Emulated radio link for the configured node"""
    settings = config.transport
    rng = np.random.default_rng(config.seed)
    return UdpRadioTransport(
        local_address=(settings.local_host, settings.local_port),
        remote_address=(settings.remote_host, settings.remote_port),
        channel=ChannelModel(settings.channel_config(), rng=rng),
        hear_self=settings.hear_self,
        carrier_frequency=config.carrier_frequency,
    )


def render_summary(stats: RunStatistics, role: SessionRole, overflows: int = 0) -> None:
    """Print the end-of-run statistics table; `overflows` counts frames the receive queue dropped"""
    title = f"Ping Summary ({role.value})"
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="bold green")

    table.add_row("Execution time", f"{stats.elapsed_seconds:12.8f} s")
    table.add_row("Data rate", f"{stats.data_rate * 1e-3:12.8f} kbps")
    table.add_row("Spectral efficiency", f"{stats.spectral_efficiency:12.8f} b/s/Hz")
    table.add_row("Data transferred", format_bytes(stats.bytes_transferred))
    table.add_row("Packets accepted", str(stats.packets_accepted))
    table.add_row("Transmissions", str(stats.transmissions))
    if role is SessionRole.MASTER:
        table.add_row("Retransmissions", str(stats.retransmissions))
        table.add_row("ACK timeouts", str(stats.ack_timeouts))
        table.add_row("ID mismatches", str(stats.id_mismatches))
    table.add_row("Header errors", str(stats.header_errors))
    table.add_row("Payload errors", str(stats.payload_errors))
    if overflows:
        table.add_row("Queue overflows", str(overflows))

    console.print()
    console.print(table)


def run_session(config: RunConfig) -> int:
    """
    Run one session to completion and print its summary

    Returns:
        Exit code
    """
    transport = build_transport(config)
    codec = FrameCodec(np.random.default_rng(config.seed))
    printer = ProgressPrinter(config.role, verbose=config.verbose)
    session = create_session(transport, config, codec=codec, observer=printer)

    info(f"ping: starting node as {config.role.value}")
    metric("Carrier", f"{config.carrier_frequency / 1e6:.4f} MHz, {config.bandwidth / 1e3:.1f} kHz")
    metric("Packets", f"{config.num_packets} x {config.payload_length} bytes")
    if config.role is SessionRole.MASTER:
        tx = config.tx_config
        metric("Scheme", f"{tx.modulation_scheme}, fec {tx.inner_fec}/{tx.outer_fec}, {tx.crc_scheme}")
    try:
        stats = session.run()
    except KeyboardInterrupt:
        console.print()
        warning("Interrupted by user")
        render_summary(session.stats, config.role, getattr(transport, "overflows", 0))
        return EXIT_SUCCESS

    render_summary(stats, config.role, getattr(transport, "overflows", 0))

    if stats.aborted:
        error(f"Transmitter reached maximum number of attempts on packet {stats.failed_packet_id}; run aborted")
        return EXIT_LINK_ERROR

    success("Run complete")
    return EXIT_SUCCESS


def link_options(f):
    """Options shared by both roles"""
    options = [
        click.option('--frequency', '-f', 'carrier_frequency', type=float, help='Carrier frequency [Hz]'),
        click.option('--bandwidth', '-b', type=float, help='Bandwidth [Hz]'),
        click.option('--num-packets', '-N', type=int, help='Number of packets in the run'),
        click.option('--ack-timeout', type=float, help='Seconds to wait for an ACK'),
        click.option('--poll-quantum', type=float, help='Seconds per receive poll'),
        click.option('--settle-delay', type=float, help='Seconds to wait before each transmission'),
        click.option('--seed', type=int, help='Seed for frame content and channel simulation'),
        click.option('--local-host', help='Address to bind the emulated radio'),
        click.option('--local-port', type=int, help='Port to bind the emulated radio'),
        click.option('--remote-host', help='Peer node address'),
        click.option('--remote-port', type=int, help='Peer node port'),
        click.option('--snr-db', type=float, help='Simulated channel SNR [dB]'),
        click.option('--drop-rate', type=float, help='Simulated probability of a missed frame'),
        click.option('--no-hear-self', is_flag=True, help='Do not receive our own transmissions'),
        click.option('--quiet', '-q', is_flag=True, help='One character per event instead of one line'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def resolve_config(ctx, role: SessionRole, options: Dict[str, Any]) -> RunConfig:
    """Load the config file and apply command-line overrides"""
    quiet = options.pop('quiet', False)
    no_hear_self = options.pop('no_hear_self', False)

    config = load_config(ctx.obj['config'])
    config = config.with_overrides(role=role, **options)
    if quiet:
        config = config.with_overrides(verbose=False)
    if no_hear_self:
        config = config.with_overrides(hear_self=False)
    return config.validate()


def _run_command(ctx, role: SessionRole, options: Dict[str, Any]) -> int:
    try:
        config = resolve_config(ctx, role, options)
        return run_session(config)
    except ConfigError as e:
        error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except TransportError as e:
        error(f"Transport error: {e}")
        return EXIT_GENERAL_ERROR
    except Exception as e:
        error(f"Ping failed: {e}")
        if ctx.obj['verbose']:
            import traceback
            console.print(traceback.format_exc(), style="red dim")
        return EXIT_GENERAL_ERROR


@click.group()
@click.version_option(version="0.1.0")
@click.option('--config', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, config: Optional[str], verbose: bool):
    """
    sdrping - ARQ ping over a half-duplex radio link

    Exit Codes:
      0 - Success
      1 - General error
      2 - Command-line argument error
      3 - Configuration error
      5 - Link error (master gave up on a packet)
    """
    # Check for NO_COLOR environment variable
    if os.environ.get('NO_COLOR'):
        console.no_color = True

    if config is None and Path(DEFAULT_CONFIG_FILE).exists():
        config = DEFAULT_CONFIG_FILE

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose

    # Setup logging
    setup_logging(verbose)


@main.command()
@link_options
@click.option('--max-attempts', '-A', type=int, help='Maximum transmissions per packet')
@click.option('--payload-length', '-n', type=int, help='Payload length [bytes]')
@click.option('--modulation', '-m', 'modulation_scheme', help='Modulation scheme')
@click.option('--inner-fec', '-i', help='Inner FEC scheme')
@click.option('--outer-fec', '-k', help='Outer FEC scheme')
@click.option('--crc', 'crc_scheme', help='Data validity check')
@click.pass_context
def master(ctx, **options):
    """Send numbered DATA packets and wait for each ACK"""
    ctx.exit(_run_command(ctx, SessionRole.MASTER, options))


@main.command()
@link_options
@click.option('--legacy-termination', is_flag=True,
              help='Also end the run when a rejected frame carried the final id')
@click.pass_context
def slave(ctx, **options):
    """Acknowledge DATA packets until the final one arrives"""
    if not options['legacy_termination']:
        # Leave the config file's setting alone
        options['legacy_termination'] = None
    ctx.exit(_run_command(ctx, SessionRole.SLAVE, options))


@main.command(name='config')
@click.pass_context
def show_config(ctx):
    """Show the effective configuration"""
    try:
        config_path = ctx.obj['config']
        if config_path:
            info(f"Configuration file: {config_path}")
        else:
            info("No configuration file, using defaults")

        config = load_config(config_path).validate()
        content = yaml.safe_dump(config.to_dict(), sort_keys=False)
        console.print(Panel(content, title="Configuration", border_style="blue"))
        code = EXIT_SUCCESS
    except ConfigError as e:
        error(f"Configuration error: {e}")
        code = EXIT_CONFIG_ERROR
    ctx.exit(code)


@main.command()
def validate():
    """Validate installation and dependencies"""
    console.print()
    info("Validating sdrping installation...")
    console.print()

    # Check Python version
    py_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    success(f"Python version: {py_version}")

    # Check dependencies
    deps = {
        'numpy': 'numpy',
        'scipy': 'scipy',
        'click': 'click',
        'yaml': 'PyYAML',
        'rich': 'rich',
    }

    all_ok = True
    for module, package in deps.items():
        try:
            __import__(module)
            success(f"{package} installed")
        except ImportError:
            error(f"{package} NOT installed")
            all_ok = False

    console.print()
    if all_ok:
        success("All required dependencies are installed!")
        sys.exit(EXIT_SUCCESS)
    else:
        error("Some dependencies are missing. Please run: pip install -e .")
        sys.exit(EXIT_GENERAL_ERROR)


if __name__ == '__main__':
    sys.exit(main())
