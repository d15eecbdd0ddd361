"""Error taxonomy shared by discovery, health checks and delivery."""


class MicRelayError(Exception):
    """Base class for all MicRelay errors."""


class ConfigurationError(MicRelayError):
    """No derivable subnet, invalid manual address, or no device to talk to."""


class TransportError(MicRelayError):
    """Timeout, refused connection or other network failure."""


class ValidationError(MicRelayError):
    """Captured artifact is too small or too short to deliver.

    ``kind`` is ``"too_small"`` or ``"too_short"``.
    """

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind


class ProtocolError(MicRelayError):
    """Device answered with a malformed or unexpected payload."""
