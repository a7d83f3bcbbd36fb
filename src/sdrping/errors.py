"""
Exception types for sdrping.

Expected protocol events (timeouts, corrupted frames, foreign traffic) are
never raised; they are reported through FrameStatus values. Exceptions are
reserved for bad input and for a transport that cannot be used.
"""


class SdrPingError(Exception):
    """Base class for all sdrping errors"""


class ConfigError(SdrPingError):
    """Invalid or unreadable run configuration"""


class FrameError(SdrPingError):
    """Malformed frame construction input"""


class TransportError(SdrPingError):
    """Transport could not be started or could not hand a frame to the link"""

