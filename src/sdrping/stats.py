"""
Run-level statistics for a ping session.

Timing is wall-clock around the whole session loop; the derived data rate
counts only payload bytes that were acknowledged (master) or accepted
(slave). Event counters exist for reporting and never feed back into
protocol decisions.
"""

from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field
import time

from .protocol import FrameStatus


@dataclass
class RunStatistics:
    """Accumulated counters and timing for one session"""
    bandwidth: float = 0.0  # channel bandwidth [Hz]
    bytes_transferred: int = 0
    packets_accepted: int = 0
    transmissions: int = 0
    retransmissions: int = 0
    ack_timeouts: int = 0
    header_errors: int = 0
    payload_errors: int = 0
    id_mismatches: int = 0
    foreign_frames: int = 0
    aborted: bool = False
    failed_packet_id: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def start(self) -> None:
        self.start_time = self.clock()
        self.end_time = None

    def stop(self) -> None:
        self.end_time = self.clock()

    def record_status(self, status: FrameStatus) -> None:
        """Count a classified frame that was not accepted"""
        if status is FrameStatus.HEADER_ERROR:
            self.header_errors += 1
        elif status is FrameStatus.PAYLOAD_ERROR:
            self.payload_errors += 1
        elif status is FrameStatus.ID_MISMATCH:
            self.id_mismatches += 1
        elif status is FrameStatus.TYPE_MISMATCH:
            self.foreign_frames += 1

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else self.clock()
        return max(0.0, end - self.start_time)

    @property
    def data_rate(self) -> float:
        """Goodput in bits per second (0.0 if no measurable time elapsed)"""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return 8.0 * self.bytes_transferred / elapsed

    @property
    def spectral_efficiency(self) -> float:
        """Goodput per unit bandwidth in b/s/Hz"""
        if self.bandwidth <= 0:
            return 0.0
        return self.data_rate / self.bandwidth

    def as_dict(self) -> Dict[str, Any]:
        return {
            'bytes_transferred': self.bytes_transferred,
            'packets_accepted': self.packets_accepted,
            'transmissions': self.transmissions,
            'retransmissions': self.retransmissions,
            'ack_timeouts': self.ack_timeouts,
            'header_errors': self.header_errors,
            'payload_errors': self.payload_errors,
            'id_mismatches': self.id_mismatches,
            'foreign_frames': self.foreign_frames,
            'aborted': self.aborted,
            'failed_packet_id': self.failed_packet_id,
            'elapsed_seconds': self.elapsed_seconds,
            'data_rate_bps': self.data_rate,
            'spectral_efficiency': self.spectral_efficiency,
        }
