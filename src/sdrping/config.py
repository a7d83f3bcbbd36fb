"""
Run configuration for sdrping.

Defaults match the classic ping test: 100 packets of 200 bytes over a
200 kHz channel at 462 MHz, QPSK with Hamming(7,4), a 240 ms ACK timeout and
an 80 ms settle delay. Values can come from a YAML file and be overridden
from the command line.
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass, field, fields, replace, asdict
from pathlib import Path
from enum import Enum
import logging

import yaml

from .errors import ConfigError
from .protocol import (DEFAULT_ACK_TIMEOUT, DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_QUANTUM,
                       DEFAULT_SETTLE_DELAY, MAX_PACKET_ID)
from .transport import CRC_SCHEMES, FEC_SCHEMES, MODULATION_SCHEMES, ChannelConfig, TxConfig


DEFAULT_PORT = 57340


class SessionRole(Enum):
    """Role of this node for the whole run"""
    MASTER = "master"
    SLAVE = "slave"


@dataclass
class TransportSettings:
    """Emulated radio link settings"""
    local_host: str = "0.0.0.0"
    local_port: int = DEFAULT_PORT
    remote_host: str = "127.0.0.1"
    remote_port: int = DEFAULT_PORT + 1
    hear_self: bool = True
    snr_db: float = 30.0
    drop_rate: float = 0.0

    def channel_config(self) -> ChannelConfig:
        return ChannelConfig(snr_db=self.snr_db, drop_rate=self.drop_rate)


@dataclass
class RunConfig:
    """Everything a session needs to know about the run"""
    carrier_frequency: float = 462e6  # [Hz]
    bandwidth: float = 200e3  # [Hz]
    num_packets: int = 100
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    payload_length: int = 200  # [bytes]
    modulation_scheme: str = "qpsk"
    inner_fec: str = "h74"
    outer_fec: str = "none"
    crc_scheme: str = "crc32"
    role: SessionRole = SessionRole.SLAVE
    verbose: bool = True
    ack_timeout: float = DEFAULT_ACK_TIMEOUT  # [s]
    poll_quantum: float = DEFAULT_POLL_QUANTUM  # [s]
    settle_delay: float = DEFAULT_SETTLE_DELAY  # [s]
    legacy_termination: bool = False
    seed: Optional[int] = None
    transport: TransportSettings = field(default_factory=TransportSettings)

    @property
    def tx_config(self) -> TxConfig:
        return TxConfig(
            modulation_scheme=self.modulation_scheme,
            inner_fec=self.inner_fec,
            outer_fec=self.outer_fec,
            crc_scheme=self.crc_scheme,
        )

    @property
    def final_packet_id(self) -> int:
        return self.num_packets - 1

    def validate(self) -> 'RunConfig':
        """
        Check value ranges and scheme names

        Returns:
            self, for chaining

        Raises:
            ConfigError: on the first invalid value found
        """
        if not 1 <= self.num_packets <= MAX_PACKET_ID + 1:
            raise ConfigError(f"num_packets must be in 1..{MAX_PACKET_ID + 1}, got {self.num_packets}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.payload_length < 1:
            raise ConfigError(f"payload_length must be positive, got {self.payload_length}")
        if self.bandwidth <= 0:
            raise ConfigError(f"bandwidth must be positive, got {self.bandwidth}")
        if self.carrier_frequency <= 0:
            raise ConfigError(f"carrier_frequency must be positive, got {self.carrier_frequency}")
        if self.ack_timeout <= 0:
            raise ConfigError(f"ack_timeout must be positive, got {self.ack_timeout}")
        if self.poll_quantum <= 0:
            raise ConfigError(f"poll_quantum must be positive, got {self.poll_quantum}")
        if self.poll_quantum > self.ack_timeout:
            raise ConfigError("poll_quantum must not exceed ack_timeout")
        if self.settle_delay < 0:
            raise ConfigError(f"settle_delay must not be negative, got {self.settle_delay}")
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int) or self.seed < 0):
            raise ConfigError(f"seed must be a non-negative integer, got {self.seed!r}")

        if self.modulation_scheme not in MODULATION_SCHEMES:
            raise ConfigError(f"Unknown modulation scheme: {self.modulation_scheme} "
                              f"(known: {', '.join(MODULATION_SCHEMES)})")
        for name, value in (("inner_fec", self.inner_fec), ("outer_fec", self.outer_fec)):
            if value not in FEC_SCHEMES:
                raise ConfigError(f"Unknown {name} scheme: {value} (known: {', '.join(FEC_SCHEMES)})")
        if self.crc_scheme not in CRC_SCHEMES:
            raise ConfigError(f"Unknown crc scheme: {self.crc_scheme} (known: {', '.join(CRC_SCHEMES)})")

        if not 0.0 <= self.transport.drop_rate <= 1.0:
            raise ConfigError(f"drop_rate must be in [0, 1], got {self.transport.drop_rate}")
        for name, port in (("local_port", self.transport.local_port),
                           ("remote_port", self.transport.remote_port)):
            if not 0 <= port <= 65535:
                raise ConfigError(f"{name} out of range: {port}")

        return self

    def with_overrides(self, **overrides: Any) -> 'RunConfig':
        """
        Copy of this config with non-None overrides applied

        Keys naming TransportSettings fields are applied to the transport
        section; anything else must be a RunConfig field.
        """
        run_names = {f.name for f in fields(RunConfig)}
        transport_names = {f.name for f in fields(TransportSettings)}

        run_values: Dict[str, Any] = {}
        transport_values: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in transport_names:
                transport_values[key] = value
            elif key in run_names:
                run_values[key] = value
            else:
                raise ConfigError(f"Unknown configuration option: {key}")

        if 'role' in run_values:
            run_values['role'] = _parse_role(run_values['role'])

        return replace(self, transport=replace(self.transport, **transport_values), **run_values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['role'] = self.role.value
        return data


def _parse_role(value: Any) -> SessionRole:
    if isinstance(value, SessionRole):
        return value
    try:
        return SessionRole(str(value).lower())
    except ValueError:
        raise ConfigError(f"role must be 'master' or 'slave', got {value!r}")


def config_from_mapping(data: Dict[str, Any]) -> RunConfig:
    """
    Build a RunConfig from a parsed mapping (e.g. a YAML document)

    Raises:
        ConfigError: for unknown keys or values of the wrong shape
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    data = dict(data)
    transport_data = data.pop('transport', None) or {}
    if not isinstance(transport_data, dict):
        raise ConfigError("'transport' section must be a mapping")

    transport_names = {f.name for f in fields(TransportSettings)}
    unknown = set(transport_data) - transport_names
    if unknown:
        raise ConfigError(f"Unknown transport option(s): {', '.join(sorted(unknown))}")

    config = RunConfig().with_overrides(**_coerce(RunConfig(), data))
    transport = replace(config.transport, **_coerce(config.transport, transport_data))
    return replace(config, transport=transport)


def _coerce(defaults: Any, values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert YAML scalars to the type of the matching default"""
    coerced = {}
    for key, value in values.items():
        default = getattr(defaults, key, None)
        if value is None or default is None or isinstance(default, (Enum, TransportSettings)):
            coerced[key] = value
            continue
        try:
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ValueError(f"expected true/false, got {value!r}")
                coerced[key] = value
            elif isinstance(value, bool):
                raise ValueError(f"expected {type(default).__name__}, got {value!r}")
            elif isinstance(default, int) and isinstance(value, float) and not value.is_integer():
                raise ValueError(f"expected a whole number, got {value!r}")
            else:
                coerced[key] = type(default)(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {e}")
    return coerced


def load_config(path: Optional[Path] = None) -> RunConfig:
    """
    Load configuration from a YAML file

    Args:
        path: YAML file; None or a missing default file gives the built-in defaults

    Returns:
        RunConfig (not yet validated)
    """
    if path is None:
        return RunConfig()

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}")

    if data is None:
        logging.info(f"Configuration file {path} is empty, using defaults")
        return RunConfig()

    logging.info(f"Loaded configuration from {path}")
    return config_from_mapping(data)
